"""Run engine: the public operations that start and advance runs."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .assignees import AssigneeResolver, completion_satisfied
from .config import FlowkeeperConfig, load_config
from .contracts import DecisionStep, FlowVariable, WorkflowDefinition
from .errors import (
    DefinitionNotFound,
    DefinitionNotValid,
    InvalidDecisionOutcome,
    InvalidKickoffData,
    RunAlreadyTerminal,
    RunNotFound,
    RunNotTerminal,
    StepNotActive,
    UnresolvableAssignee,
    VariablesFrozen,
)
from .graph import StepGraph
from .models import Identity, KickoffData
from .persistence import (
    DefinitionRecord,
    DefinitionStatus,
    Run,
    RunStatus,
    StepExecution,
    StepStatus,
    WorkflowRepository,
    get_repository,
)
from .runtime import RunStateMachine, end_run
from .sla import compute_due_at
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_VARIABLE_TYPES: dict[str, tuple[type, ...]] = {
    "TEXT": (str,),
    "FILE": (str, dict),
    "NUMBER": (int, float),
    "BOOLEAN": (bool,),
}


def check_variable(variable: FlowVariable, value: Any) -> None:
    expected = _VARIABLE_TYPES.get(variable.type)
    if expected is None:
        return
    if variable.type == "NUMBER" and isinstance(value, bool):
        expected = ()
    if not isinstance(value, expected):
        raise InvalidKickoffData(
            f"Flow variable {variable.key} expects {variable.type}, got {type(value).__name__}",
            key=variable.key,
        )


def bind_variables(definition: WorkflowDefinition, supplied: Mapping[str, Any]) -> dict[str, Any]:
    """Bind kickoff values and declared defaults to the definition's flow variables."""
    declared = {variable.key: variable for variable in definition.variables}
    unknown = sorted(set(supplied) - set(declared))
    if unknown:
        raise InvalidKickoffData(
            f"Undeclared flow variables: {', '.join(unknown)}", keys=unknown
        )
    bindings: dict[str, Any] = {}
    for variable in definition.variables:
        value = supplied.get(variable.key, variable.default)
        if value is None or value == "":
            if variable.required:
                raise InvalidKickoffData(
                    f"Flow variable {variable.key} is required", key=variable.key
                )
            continue
        check_variable(variable, value)
        bindings[variable.key] = value
    return bindings


class RunEngine:
    """Start runs and apply external events to them.

    Every operation that changes a run happens inside the repository's
    ``edit_run`` scope, so transitions on one run are serialized and a
    rejected transition leaves the stored run untouched.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        config: Optional[FlowkeeperConfig] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository if repository is not None else get_repository()
        self._clock = clock
        self._resolver = AssigneeResolver(self.repository)
        self._graphs: dict[tuple[str, int], tuple[WorkflowDefinition, StepGraph]] = {}

    # ------------------------------------------------------------------
    # Definitions
    async def _published(self, definition_id: str) -> DefinitionRecord:
        versions = [
            record
            for record in await self.repository.list_definition_versions(definition_id)
            if record.status is not DefinitionStatus.ARCHIVED
        ]
        if not versions:
            raise DefinitionNotFound(definition_id)
        published = [r for r in versions if r.status is DefinitionStatus.PUBLISHED]
        if not published:
            raise DefinitionNotValid(definition_id, "no published version")
        return published[-1]

    def _remember(self, record: DefinitionRecord) -> tuple[WorkflowDefinition, StepGraph]:
        key = (record.definition_id, record.version)
        if key not in self._graphs:
            self._graphs[key] = (record.definition, StepGraph.build(record.definition))
        return self._graphs[key]

    async def _definition_for(self, run: Run) -> tuple[WorkflowDefinition, StepGraph]:
        key = (run.definition_id, run.definition_version)
        if key in self._graphs:
            return self._graphs[key]
        record = await self.repository.get_definition(run.definition_id, run.definition_version)
        if record is None:
            raise DefinitionNotFound(run.definition_id)
        return self._remember(record)

    def _machine(
        self, run: Run, definition: WorkflowDefinition, graph: StepGraph
    ) -> RunStateMachine:
        return RunStateMachine(
            run,
            definition,
            graph,
            self._resolver,
            self._clock,
            self.config.engine.max_auto_transitions,
        )

    # ------------------------------------------------------------------
    # Operations
    async def start_run(
        self, definition_id: str, kickoff: KickoffData | Mapping[str, Any]
    ) -> Run:
        """Start a run of the latest published version of ``definition_id``."""
        if not isinstance(kickoff, KickoffData):
            kickoff = KickoffData.model_validate(kickoff)
        record = await self._published(definition_id)
        definition, graph = self._remember(record)

        role_assignments = {}
        for role_id, email in kickoff.role_assignments.items():
            if definition.role(role_id) is None:
                raise InvalidKickoffData(f"Unknown role {role_id}", role_id=role_id)
            role_assignments[role_id] = Identity.contact(email)

        now = self._clock()
        run = Run(
            definition_id=definition_id,
            definition_version=record.version,
            started_by=kickoff.started_by,
            started_at=now,
            due_at=compute_due_at(definition.due, now),
            kickoff_data=dict(kickoff.form),
            variable_bindings=bind_variables(definition, kickoff.variables),
            role_assignments=role_assignments,
            steps=[
                StepExecution(step_id=node.step_id, step_index=node.index)
                for node in graph.nodes
            ],
        )
        await self._machine(run, definition, graph).start()
        await self.repository.create_run(run)
        logger.info(f"Started run {run.run_id} of {definition_id} v{record.version}")
        return run

    async def complete_step(
        self,
        run_id: str,
        step_id: str,
        result_data: Optional[Mapping[str, Any]] = None,
        completed_by: Optional[str] = None,
    ) -> Run:
        """Apply a completion event to the active execution of ``step_id``.

        A step with several assignees counts each event as one submission:
        ``completed_by`` names the assignee (identity or role id), otherwise
        the first open slot is used. The step completes only once its
        completion mode is satisfied.
        """
        data = dict(result_data or {})
        async with self.repository.edit_run(run_id) as run:
            if run.status is not RunStatus.IN_PROGRESS:
                raise StepNotActive(step_id, f"run is {run.status.value}")
            definition, graph = await self._definition_for(run)
            node = graph.get(step_id)
            if node is None:
                raise StepNotActive(step_id, "step is not part of this definition")
            execution = run.latest_execution(step_id)
            if execution is None or execution.status is not StepStatus.IN_PROGRESS:
                state = execution.status.value if execution else "unknown"
                raise StepNotActive(step_id, f"step is {state}")
            if isinstance(node.step, DecisionStep):
                allowed = [outcome.outcome_id for outcome in node.step.outcomes]
                if data.get("outcome") not in allowed:
                    raise InvalidDecisionOutcome(step_id, data.get("outcome"), allowed)

            if len(execution.assignees) > 1:
                if not self._record_submission(execution, completed_by, data):
                    logger.info(
                        f"Step {step_id} of run {run_id} waiting for more assignees "
                        f"({execution.completion.value})"
                    )
                    return run
                data = self._aggregate(execution, data)
            await self._machine(run, definition, graph).complete(execution, data)
        return run

    def _record_submission(
        self, execution: StepExecution, completed_by: Optional[str], data: dict[str, Any]
    ) -> bool:
        slot = next(
            (
                s
                for s in execution.open_slots()
                if completed_by is None
                or s.identity.matches(completed_by)
                or s.role_id == completed_by
            ),
            None,
        )
        if slot is None:
            raise StepNotActive(
                execution.step_id, f"{completed_by} has no open assignment on this step"
            )
        slot.completed_at = self._clock()
        slot.result_data = data
        done = sum(1 for s in execution.assignees if s.done)
        return completion_satisfied(execution.completion, len(execution.assignees), done)

    @staticmethod
    def _aggregate(execution: StepExecution, data: dict[str, Any]) -> dict[str, Any]:
        submissions = [
            {
                "role_id": slot.role_id,
                "assignee": str(slot.identity),
                "result_data": slot.result_data,
            }
            for slot in execution.assignees
            if slot.done
        ]
        return {**data, "submissions": submissions}

    async def cancel_run(self, run_id: str) -> Run:
        """Cancel a run, keeping its step history as it was."""
        async with self.repository.edit_run(run_id) as run:
            if run.status.terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            end_run(run, RunStatus.CANCELLED, self._clock(), skip_open=False)
        return run

    async def pause_run(self, run_id: str) -> Run:
        """Pause a run; its active steps go back to ``PENDING`` until resumed.

        Suspended executions keep their assignees, start time and due date.
        """
        async with self.repository.edit_run(run_id) as run:
            if run.status.terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            if run.status is RunStatus.IN_PROGRESS:
                run.status = RunStatus.PAUSED
                run.paused_at = self._clock()
                for execution in run.active_executions():
                    execution.status = StepStatus.PENDING
                    execution.suspended = True
                logger.info(f"Run {run_id} paused")
        return run

    async def resume_run(self, run_id: str) -> Run:
        async with self.repository.edit_run(run_id) as run:
            if run.status.terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            if run.status is RunStatus.PAUSED:
                run.status = RunStatus.IN_PROGRESS
                run.paused_at = None
                for execution in run.steps:
                    if execution.suspended:
                        execution.status = StepStatus.IN_PROGRESS
                        execution.suspended = False
                logger.info(f"Run {run_id} resumed")
        return run

    async def assign_step(
        self, run_id: str, step_id: str, assignments: Mapping[str, str | Identity]
    ) -> Run:
        """Bind roles to identities on behalf of a coordinator.

        A step held because its assignee could not be resolved is activated;
        an active step has its open slots for those roles reassigned.
        """
        async with self.repository.edit_run(run_id) as run:
            if run.status.terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            definition, graph = await self._definition_for(run)
            for role_id, who in assignments.items():
                if definition.role(role_id) is None:
                    raise UnresolvableAssignee(role_id, "role is not defined")
                run.role_assignments[role_id] = (
                    who if isinstance(who, Identity) else Identity.contact(who)
                )
            execution = run.latest_execution(step_id)
            if execution is None:
                raise StepNotActive(step_id, "step is not part of this definition")
            if execution.held:
                await self._machine(run, definition, graph).activate_held(execution)
                if run.status is RunStatus.PAUSED and execution.status is StepStatus.IN_PROGRESS:
                    execution.status = StepStatus.PENDING
                    execution.suspended = True
            elif execution.status is StepStatus.IN_PROGRESS or execution.suspended:
                for slot in execution.open_slots():
                    if slot.role_id in assignments:
                        slot.identity = run.role_assignments[slot.role_id]
                execution.assigned_to = execution.assignees[0].identity
                logger.info(f"Step {step_id} of run {run_id} reassigned")
            else:
                raise StepNotActive(step_id, f"step is {execution.status.value}")
        return run

    async def set_variable(self, run_id: str, key: str, value: Any) -> Run:
        async with self.repository.edit_run(run_id) as run:
            if run.status.terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            definition, _ = await self._definition_for(run)
            if (
                self.config.constraints.variables_set_only_at_initiation
                or definition.constraints.variables_set_only_at_initiation
            ):
                raise VariablesFrozen(key)
            variable = next((v for v in definition.variables if v.key == key), None)
            if variable is None:
                raise InvalidKickoffData(f"Undeclared flow variable {key}", key=key)
            check_variable(variable, value)
            run.variable_bindings[key] = value
        return run

    async def archive_run(self, run_id: str) -> Run:
        async with self.repository.edit_run(run_id) as run:
            if not run.status.terminal:
                raise RunNotTerminal(run_id, run.status.value)
            if run.archived_at is None:
                run.archived_at = self._clock()
        return run

    async def get_run(self, run_id: str) -> Run:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[Run]:
        return await self.repository.list_runs(status=status)
