"""Run state machine.

A run owns a small forest of cursors, one per open path. The root cursor
walks the main path; a branch step parks its cursor and fans out one child
per selected path, and the parent resumes after the branch only once every
child of that fan-out has finished. Control steps (branches, gotos, goto
destinations, milestone markers, terminate) pass straight through; action
steps (tasks, system steps, decisions) stop their cursor until an external
completion event arrives.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Deque, Optional, assert_never

from .assignees import AssigneeResolver
from .conditions import select_paths
from .constants import ROOT_CURSOR
from .contracts import (
    ACTION_STEPS,
    BranchStep,
    CompletionMode,
    DecisionStep,
    GotoDestinationStep,
    GotoStep,
    MilestoneStep,
    SystemStep,
    TaskStep,
    TerminateStep,
    WorkflowDefinition,
    assignee_refs,
)
from .errors import GotoTargetUnreachable, TransitionLoop, UnresolvableAssignee
from .graph import HopKind, StepGraph, StepNode
from .models import Identity, RunContext
from .persistence.models import (
    AssigneeSlot,
    Cursor,
    CursorStatus,
    MilestoneProgress,
    Run,
    RunStatus,
    StepExecution,
    StepStatus,
)
from .sla import compute_due_at
from .utils.clock import Clock

logger = logging.getLogger(__name__)


def end_run(run: Run, status: RunStatus, now: datetime, skip_open: bool = True) -> None:
    """Move ``run`` to a terminal status and close every open cursor.

    With ``skip_open`` the executions still pending or in progress are marked
    skipped; without it they are left untouched as history.
    """
    run.status = status
    if status is RunStatus.COMPLETED:
        run.completed_at = now
    else:
        run.cancelled_at = now
    for cursor in run.cursors:
        if cursor.open:
            cursor.status = CursorStatus.CLOSED
    if skip_open:
        for execution in run.steps:
            if execution.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                execution.status = StepStatus.SKIPPED
    logger.info(f"Run {run.run_id} finished as {status.value}")


def build_context(run: Run) -> RunContext:
    return RunContext(
        template_id=run.definition_id,
        run_id=run.run_id,
        initiator=run.started_by,
        kickoff=run.kickoff_data,
        variables=run.variable_bindings,
        step_outputs=run.step_outputs(),
        role_assignments=run.role_assignments,
    )


class RunStateMachine:
    """Advance one run until every open path waits on an external event."""

    def __init__(
        self,
        run: Run,
        definition: WorkflowDefinition,
        graph: StepGraph,
        resolver: AssigneeResolver,
        clock: Clock,
        max_auto_transitions: int,
    ) -> None:
        self.run = run
        self.definition = definition
        self.graph = graph
        self._resolver = resolver
        self._clock = clock
        self._limit = max_auto_transitions
        self._roles = definition.roles_by_id()
        self._queue: Deque[tuple[str, int]] = deque()
        self._transitions = 0

    # ------------------------------------------------------------------
    # Entry points
    async def start(self) -> None:
        root = Cursor(cursor_id=ROOT_CURSOR)
        self.run.cursors.append(root)
        first = self.graph.first_main()
        if first is None:
            root.status = CursorStatus.DONE
            end_run(self.run, RunStatus.COMPLETED, self._clock())
            return
        self._queue.append((root.cursor_id, first))
        await self._drain()

    async def complete(self, execution: StepExecution, result_data: dict[str, Any]) -> None:
        """Mark ``execution`` completed and move its cursor on."""
        now = self._clock()
        execution.status = StepStatus.COMPLETED
        execution.completed_at = now
        execution.result_data = result_data
        if execution.started_at is not None:
            execution.time_to_complete = (now - execution.started_at).total_seconds()
        logger.info(f"Step {execution.step_id} of run {self.run.run_id} completed")

        node = self.graph.node(execution.step_index)
        cursor = self.run.cursor(execution.cursor_id)
        if isinstance(node.step, DecisionStep):
            outcome = result_data["outcome"]
            self._skip_paths(node, keep={outcome})
            first = node.first_of.get(outcome)
            if first is not None:
                self._queue.append((cursor.cursor_id, first))
            else:
                self._follow(cursor, node.index)
        else:
            self._follow(cursor, node.index)
        await self._drain()

    async def activate_held(self, execution: StepExecution) -> None:
        """Retry assignee resolution for a step held for a coordinator."""
        cursor = self.run.cursor(execution.cursor_id)
        await self._activate(cursor, self.graph.node(execution.step_index), execution)

    def context(self) -> RunContext:
        return build_context(self.run)

    # ------------------------------------------------------------------
    # Cursor movement
    async def _drain(self) -> None:
        while self._queue and self.run.status is RunStatus.IN_PROGRESS:
            cursor_id, index = self._queue.popleft()
            cursor = self.run.cursor(cursor_id)
            if cursor.status is not CursorStatus.ACTIVE:
                continue
            self._transitions += 1
            if self._transitions > self._limit:
                raise TransitionLoop(self.run.run_id, self._limit)
            await self._enter(cursor, self.graph.node(index))

    async def _enter(self, cursor: Cursor, node: StepNode) -> None:
        step = node.step
        execution = self._prepare(node, cursor)
        cursor.step_index = node.index
        if cursor.parent_id is None:
            self.run.current_step_index = node.index
        self._note_milestone(node)

        if isinstance(step, ACTION_STEPS):
            await self._activate(cursor, node, execution)
            return

        self._pass_through(execution)
        if isinstance(step, BranchStep):
            self._open_branch(cursor, node, execution)
        elif isinstance(step, GotoStep):
            self._goto(cursor, node)
        elif isinstance(step, TerminateStep):
            end_run(self.run, RunStatus(step.status), self._clock())
            self._queue.clear()
        elif isinstance(step, (GotoDestinationStep, MilestoneStep)):
            self._follow(cursor, node.index)
        else:
            assert_never(step)

    def _follow(self, cursor: Cursor, index: int) -> None:
        hop = self.graph.successor(index)
        if hop.kind is HopKind.STEP:
            self._queue.append((cursor.cursor_id, hop.index))
        elif hop.kind is HopKind.JOIN:
            self._join(cursor, hop.index)
        else:
            cursor.status = CursorStatus.DONE
            cursor.step_index = None
            end_run(self.run, RunStatus.COMPLETED, self._clock())
            self._queue.clear()

    def _prepare(self, node: StepNode, cursor: Cursor) -> StepExecution:
        execution = self.run.latest_execution(node.step_id)
        if execution is None or execution.status is not StepStatus.PENDING:
            attempt = execution.attempt + 1 if execution is not None else 1
            execution = StepExecution(
                step_id=node.step_id, step_index=node.index, attempt=attempt
            )
            self.run.steps.append(execution)
        execution.cursor_id = cursor.cursor_id
        return execution

    def _pass_through(self, execution: StepExecution) -> None:
        now = self._clock()
        execution.status = StepStatus.COMPLETED
        execution.assigned_to = Identity.system()
        execution.started_at = now
        execution.completed_at = now
        execution.time_to_complete = 0.0

    def _note_milestone(self, node: StepNode) -> None:
        milestone_id = self.graph.effective_milestone(node.index)
        if milestone_id is None or self.run.reached(milestone_id):
            return
        self.run.milestones.append(
            MilestoneProgress(milestone_id=milestone_id, reached_at=self._clock())
        )
        logger.info(f"Run {self.run.run_id} reached milestone {milestone_id}")

    # ------------------------------------------------------------------
    # Action steps
    async def _activate(self, cursor: Cursor, node: StepNode, execution: StepExecution) -> None:
        step = node.step
        refs = assignee_refs(step)
        try:
            if refs:
                slots = await self._resolver.resolve_slots(refs, self._roles, self.context())
            elif isinstance(step, SystemStep):
                slots = [AssigneeSlot(identity=Identity.system())]
            else:
                slots = [AssigneeSlot(identity=Identity.user(self.run.started_by))]
        except UnresolvableAssignee as exc:
            execution.activation_error = exc.message
            logger.warning(
                f"Holding step {step.step_id} of run {self.run.run_id} for a coordinator: {exc.message}"
            )
            return

        now = self._clock()
        execution.activation_error = None
        execution.assignees = slots
        execution.assigned_to = slots[0].identity
        if isinstance(step, (TaskStep, SystemStep)):
            execution.completion = step.completion
        else:
            execution.completion = CompletionMode.ANY_ONE
        execution.status = StepStatus.IN_PROGRESS
        execution.started_at = now
        execution.due_at = compute_due_at(step.due, now, self.run.due_at)
        logger.info(
            f"Step {step.step_id} of run {self.run.run_id} assigned to "
            + ", ".join(str(slot.identity) for slot in slots)
        )

    def _skip_paths(self, node: StepNode, keep: set[str]) -> None:
        for path_id in node.first_of:
            if path_id in keep:
                continue
            for index in self.graph.subtree(node.index, path_id):
                execution = self.run.latest_execution(self.graph.node(index).step_id)
                if execution is not None and execution.status is StepStatus.PENDING:
                    execution.status = StepStatus.SKIPPED

    # ------------------------------------------------------------------
    # Branches
    def _open_branch(self, cursor: Cursor, node: StepNode, execution: StepExecution) -> None:
        step = node.step
        selected = select_paths(step, self.context())
        self._skip_paths(node, keep={path.path_id for path in selected})
        execution.result_data = {"paths": [path.path_id for path in selected]}
        if not selected:
            logger.info(f"Branch {step.step_id} of run {self.run.run_id} matched no path")
            self._follow(cursor, node.index)
            return

        group_id = str(uuid.uuid4())
        cursor.status = CursorStatus.WAITING
        cursor.waiting_on = group_id
        children = []
        for path in selected:
            child = Cursor(
                parent_id=cursor.cursor_id,
                group_id=group_id,
                branch_index=node.index,
                path_id=path.path_id,
            )
            self.run.cursors.append(child)
            children.append(child)
            first = node.first_of.get(path.path_id)
            if first is None:
                child.status = CursorStatus.DONE
            else:
                self._queue.append((child.cursor_id, first))
        logger.info(
            f"Branch {step.step_id} of run {self.run.run_id} opened "
            + ", ".join(path.path_id for path in selected)
        )
        if all(child.status is CursorStatus.DONE for child in children):
            cursor.status = CursorStatus.ACTIVE
            cursor.waiting_on = None
            self._follow(cursor, node.index)

    def _join(self, cursor: Cursor, branch_index: int) -> None:
        cursor.status = CursorStatus.DONE
        cursor.step_index = None
        siblings = [c for c in self.run.cursors if c.group_id == cursor.group_id]
        if any(c.status is not CursorStatus.DONE for c in siblings):
            return
        parent = self.run.cursor(cursor.parent_id)
        if parent.status is not CursorStatus.WAITING or parent.waiting_on != cursor.group_id:
            return
        parent.status = CursorStatus.ACTIVE
        parent.waiting_on = None
        logger.info(
            f"All paths of {self.graph.node(branch_index).step_id} finished in run {self.run.run_id}"
        )
        self._follow(parent, branch_index)

    # ------------------------------------------------------------------
    # Goto
    def _goto(self, cursor: Cursor, node: StepNode) -> None:
        step = node.step
        target = self.graph.get(step.target_step_id)
        if target is None or not isinstance(target.step, GotoDestinationStep):
            raise GotoTargetUnreachable(step.step_id, step.target_step_id)
        owner: Optional[Cursor] = cursor
        while owner is not None and (owner.branch_index, owner.path_id) != target.scope:
            owner = self.run.cursor(owner.parent_id) if owner.parent_id else None
        if owner is None:
            raise GotoTargetUnreachable(step.step_id, step.target_step_id)

        self._close_descendants(owner)
        owner.status = CursorStatus.ACTIVE
        owner.waiting_on = None
        logger.info(f"Run {self.run.run_id} jumps from {step.step_id} to {target.step_id}")
        self._queue.append((owner.cursor_id, target.index))

    def _close_descendants(self, owner: Cursor) -> None:
        closing = {owner.cursor_id}
        # children are always appended after their parent
        for cursor in self.run.cursors:
            if cursor.parent_id not in closing:
                continue
            closing.add(cursor.cursor_id)
            if cursor.open:
                cursor.status = CursorStatus.CLOSED
            for execution in self.run.steps:
                if execution.cursor_id != cursor.cursor_id:
                    continue
                if execution.status in (StepStatus.IN_PROGRESS, StepStatus.PENDING):
                    execution.status = StepStatus.SKIPPED
