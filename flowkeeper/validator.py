"""Definition validator.

``validate_definition`` checks a parsed definition against organisational
constraints and returns every issue it finds; it never mutates its input and
returns the same result for the same input. ``validate_document`` does the
same for raw mappings, reporting schema errors as issues instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional

from pydantic import ValidationError

from .conditions import parse_reference
from .constants import MAX_CONDITIONS_PER_PATH, MIN_BRANCH_PATHS, MIN_DECISION_OUTCOMES
from .contracts import (
    ACTION_STEPS,
    BeforeFlowDue,
    BranchStep,
    CompletionMode,
    ConditionType,
    Constraints,
    DecisionStep,
    FixedContactResolution,
    FlowVariableResolution,
    GotoDestinationStep,
    GotoStep,
    MilestoneStep,
    Resolution,
    RoundRobinResolution,
    RulesResolution,
    Step,
    SystemStep,
    TaskStep,
    TerminateStep,
    ValidationIssue,
    ValidationMode,
    ValidationResult,
    WorkflowDefinition,
    assignee_refs,
    nested_paths,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Visit:
    step: Step
    path: str
    parent: Optional[Step]
    depth: int
    branches: tuple[tuple[str, str], ...]
    outer_milestone: Optional[str]


class _Issues:
    def __init__(self, mode: ValidationMode) -> None:
        self.mode = mode
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(self, path: str, rule: str, message: str) -> None:
        if self.mode is ValidationMode.LENIENT:
            self.warn(path, rule, message)
            return
        self.errors.append(ValidationIssue(path=path, rule=rule, message=message))

    def warn(self, path: str, rule: str, message: str) -> None:
        self.warnings.append(
            ValidationIssue(path=path, rule=rule, message=message, severity="WARNING")
        )

    def result(self) -> ValidationResult:
        return ValidationResult(
            valid=not self.errors, errors=list(self.errors), warnings=list(self.warnings)
        )


def _walk(
    steps: list[Step],
    prefix: str,
    parent: Optional[Step],
    depth: int,
    branches: tuple[tuple[str, str], ...],
    outer_milestone: Optional[str],
) -> Iterator[_Visit]:
    for position, step in enumerate(steps):
        path = f"{prefix}[{position}]"
        yield _Visit(step, path, parent, depth, branches, outer_milestone)
        milestone = outer_milestone if parent is not None else step.milestone_id
        label = "outcomes" if isinstance(step, DecisionStep) else "paths"
        for path_id, children in nested_paths(step):
            child_branches = branches
            if isinstance(step, BranchStep):
                child_branches = branches + ((step.step_id, path_id),)
            yield from _walk(
                children,
                f"{path}.{label}[{path_id}].steps",
                step,
                depth + 1,
                child_branches,
                milestone,
            )


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    repeated: list[str] = []
    for value in values:
        if value in seen and value not in repeated:
            repeated.append(value)
        seen.add(value)
    return repeated


def validate_definition(
    definition: WorkflowDefinition,
    constraints: Optional[Constraints] = None,
    mode: ValidationMode = ValidationMode.STRICT,
) -> ValidationResult:
    """Validate ``definition`` against ``constraints``.

    Args:
        definition: Parsed definition to check.
        constraints: Organisational limits; defaults to the definition's own.
        mode: ``LENIENT`` reports every error as a warning.
    """

    constraints = constraints or definition.constraints
    issues = _Issues(mode)
    visits = list(_walk(definition.steps, "steps", None, 0, (), None))
    by_id = {visit.step.step_id: visit for visit in visits}

    _check_header(definition, issues)
    _check_milestones(definition, issues)
    _check_variables(definition, constraints, issues)
    _check_roles(definition, by_id, issues)

    for step_id in _duplicates([visit.step.step_id for visit in visits]):
        issues.error("steps", "UNIQUE_ID", f"Step id {step_id} is used more than once")

    for visit in visits:
        _check_step(definition, constraints, visit, by_id, issues)

    result = issues.result()
    logger.debug(
        f"Validated {definition.definition_id}: {len(result.errors)} errors, "
        f"{len(result.warnings)} warnings"
    )
    return result


def validate_document(
    data: Mapping[str, Any],
    constraints: Optional[Constraints] = None,
    mode: ValidationMode = ValidationMode.STRICT,
) -> tuple[Optional[WorkflowDefinition], ValidationResult]:
    """Parse and validate a raw definition mapping."""

    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        issues = _Issues(mode)
        for error in exc.errors():
            rule = "SCHEMA"
            if error["type"] == "union_tag_invalid" and error["loc"][-2:-1] == ("steps",):
                rule = "UNKNOWN_STEP_TYPE"
            elif error["type"] == "missing":
                rule = "REQUIRED_FIELD"
            issues.error(_format_loc(error["loc"]), rule, error["msg"])
        return None, issues.result()
    return definition, validate_definition(definition, constraints, mode)


def _format_loc(loc: tuple[Any, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "definition"


# ----------------------------------------------------------------------
# Definition-level checks
def _check_header(definition: WorkflowDefinition, issues: _Issues) -> None:
    if not definition.definition_id.strip():
        issues.error("definition_id", "REQUIRED_FIELD", "Definition id is required")
    if not definition.name.strip():
        issues.error("name", "REQUIRED_FIELD", "Definition name is required")
    if not definition.steps:
        issues.warn("steps", "EMPTY_DEFINITION", "Definition has no steps")


def _check_milestones(definition: WorkflowDefinition, issues: _Issues) -> None:
    for index, milestone in enumerate(definition.milestones):
        if not milestone.milestone_id.strip():
            issues.error(
                f"milestones[{index}].milestone_id",
                "REQUIRED_FIELD",
                "Milestone id is required",
            )
    for milestone_id in _duplicates([m.milestone_id for m in definition.milestones]):
        issues.error(
            "milestones", "UNIQUE_ID", f"Milestone id {milestone_id} is used more than once"
        )


def _check_variables(
    definition: WorkflowDefinition, constraints: Constraints, issues: _Issues
) -> None:
    for key in _duplicates([v.key for v in definition.variables]):
        issues.error("variables", "UNIQUE_ID", f"Flow variable {key} is declared more than once")
    for index, variable in enumerate(definition.variables):
        if variable.type not in constraints.variable_types_allowed:
            issues.error(
                f"variables[{index}].type",
                "VARIABLE_TYPE_NOT_ALLOWED",
                f"Variable type {variable.type} is not allowed; "
                f"use one of {', '.join(constraints.variable_types_allowed)}",
            )


def _check_roles(
    definition: WorkflowDefinition, by_id: dict[str, _Visit], issues: _Issues
) -> None:
    for role_id in _duplicates([role.role_id for role in definition.roles]):
        issues.error("roles", "UNIQUE_ID", f"Role id {role_id} is used more than once")
    declared = {variable.key for variable in definition.variables}
    for index, role in enumerate(definition.roles):
        _check_resolution(
            role.resolution, f"roles[{index}].resolution", declared, by_id, issues
        )


def _check_resolution(
    resolution: Resolution,
    path: str,
    declared: set[str],
    by_id: dict[str, _Visit],
    issues: _Issues,
) -> None:
    if isinstance(resolution, FixedContactResolution) and not resolution.email.strip():
        issues.error(f"{path}.email", "REQUIRED_FIELD", "Fixed contact needs an email")
    elif isinstance(resolution, RoundRobinResolution) and not resolution.emails:
        issues.error(f"{path}.emails", "ROUND_ROBIN_EMPTY", "Round robin needs at least one email")
    elif isinstance(resolution, FlowVariableResolution):
        if resolution.variable_key not in declared:
            issues.error(
                f"{path}.variable_key",
                "UNDECLARED_VARIABLE",
                f"Flow variable {resolution.variable_key} is not declared",
            )
    elif isinstance(resolution, RulesResolution):
        if resolution.source == "FLOW_VARIABLE" and resolution.key not in declared:
            issues.error(
                f"{path}.key",
                "UNDECLARED_VARIABLE",
                f"Flow variable {resolution.key} is not declared",
            )
        if resolution.source == "STEP_OUTPUT":
            step_id = resolution.key.split(".", 1)[0]
            if step_id not in by_id or "." not in resolution.key:
                issues.error(
                    f"{path}.key",
                    "INVALID_REFERENCE",
                    f"Step output {resolution.key} does not name a step and key",
                )
        for index, rule in enumerate(resolution.rules):
            _check_resolution(rule.then, f"{path}.rules[{index}].then", declared, by_id, issues)
        _check_resolution(resolution.default, f"{path}.default", declared, by_id, issues)


# ----------------------------------------------------------------------
# Step-level checks
def _check_step(
    definition: WorkflowDefinition,
    constraints: Constraints,
    visit: _Visit,
    by_id: dict[str, _Visit],
    issues: _Issues,
) -> None:
    step = visit.step
    path = visit.path
    if not step.step_id.strip():
        issues.error(f"{path}.step_id", "REQUIRED_FIELD", "Step id is required")

    milestone_ids = {m.milestone_id for m in definition.milestones}
    if step.milestone_id is not None and step.milestone_id not in milestone_ids:
        issues.error(
            f"{path}.milestone_id",
            "INVALID_REFERENCE",
            f"Milestone {step.milestone_id} does not exist",
        )
    if (
        visit.parent is not None
        and constraints.branch_must_fit_single_milestone
        and step.milestone_id is not None
        and step.milestone_id != visit.outer_milestone
    ):
        issues.error(
            f"{path}.milestone_id",
            "BRANCH_MILESTONE_CONSISTENCY",
            "Steps inside a branch must stay within the branch's milestone",
        )

    role_ids = {role.role_id for role in definition.roles}
    field = "assignee" if isinstance(step, DecisionStep) else "assignees"
    for ref in assignee_refs(step):
        if ref.role_id not in role_ids:
            issues.error(
                f"{path}.{field}",
                "INVALID_REFERENCE",
                f"Role {ref.role_id} does not exist",
            )

    if (
        isinstance(step, ACTION_STEPS)
        and isinstance(step.due, BeforeFlowDue)
        and definition.due is None
    ):
        issues.warn(
            f"{path}.due",
            "NO_FLOW_DUE",
            "Step is due before the run's due date, but the definition has none",
        )

    if isinstance(step, (TaskStep, SystemStep)):
        if step.completion is not CompletionMode.ANY_ONE and len(assignee_refs(step)) < 2:
            issues.warn(
                f"{path}.completion",
                "COMPLETION_MODE_IGNORED",
                f"Completion mode {step.completion.value} has no effect with a single assignee",
            )
    elif isinstance(step, MilestoneStep):
        if step.milestone_id is None:
            issues.error(f"{path}.milestone_id", "REQUIRED_FIELD", "Milestone marker needs a milestone")
        if visit.parent is not None and not constraints.milestones_inside_branches_allowed:
            issues.error(path, "MILESTONE_IN_BRANCH", "Milestones cannot be placed inside a branch")
    elif isinstance(step, DecisionStep):
        _check_container_depth(constraints, visit, issues)
        count = len(step.outcomes)
        if count > constraints.max_decision_outcomes:
            issues.error(
                f"{path}.outcomes",
                "MAX_DECISION_OUTCOMES",
                f"Decision has {count} outcomes; at most {constraints.max_decision_outcomes} allowed",
            )
        if count < MIN_DECISION_OUTCOMES:
            issues.error(f"{path}.outcomes", "MIN_OUTCOMES", "Decision needs at least two outcomes")
        for outcome_id in _duplicates([o.outcome_id for o in step.outcomes]):
            issues.error(f"{path}.outcomes", "UNIQUE_ID", f"Outcome id {outcome_id} is repeated")
    elif isinstance(step, BranchStep):
        _check_branch(definition, constraints, visit, step, by_id, issues)
    elif isinstance(step, GotoStep):
        _check_goto(constraints, visit, step, by_id, issues)
    elif isinstance(step, TerminateStep):
        if visit.parent is None or visit.parent.type not in constraints.terminate_allowed_inside:
            issues.error(
                path,
                "TERMINATE_PLACEMENT",
                "Terminate is only allowed inside "
                + ", ".join(constraints.terminate_allowed_inside),
            )


def _check_container_depth(constraints: Constraints, visit: _Visit, issues: _Issues) -> None:
    depth = visit.depth + 1
    if depth > constraints.max_branch_nesting_depth:
        issues.error(
            visit.path,
            "MAX_NESTING_DEPTH",
            f"Nesting depth {depth} exceeds {constraints.max_branch_nesting_depth}",
        )


def _check_branch(
    definition: WorkflowDefinition,
    constraints: Constraints,
    visit: _Visit,
    step: BranchStep,
    by_id: dict[str, _Visit],
    issues: _Issues,
) -> None:
    path = visit.path
    _check_container_depth(constraints, visit, issues)
    count = len(step.paths)
    if count > constraints.max_parallel_branches:
        issues.error(
            f"{path}.paths",
            "MAX_PARALLEL_PATHS",
            f"Branch has {count} paths; at most {constraints.max_parallel_branches} allowed",
        )
    if count < MIN_BRANCH_PATHS:
        issues.error(f"{path}.paths", "MIN_PATHS", "Branch needs at least two paths")
    for path_id in _duplicates([p.path_id for p in step.paths]):
        issues.error(f"{path}.paths", "UNIQUE_ID", f"Path id {path_id} is repeated")

    if step.type != "PARALLEL_BRANCH" and sum(1 for p in step.paths if p.is_else) > 1:
        issues.error(f"{path}.paths", "MULTIPLE_ELSE_PATHS", "Only one ELSE path is allowed")

    declared = {variable.key for variable in definition.variables}
    for branch_path in step.paths:
        where = f"{path}.paths[{branch_path.path_id}]"
        conditions = branch_path.conditions
        if step.type == "PARALLEL_BRANCH":
            if conditions:
                issues.warn(
                    f"{where}.conditions",
                    "CONDITION_IGNORED",
                    "Parallel paths always run; their conditions are ignored",
                )
            continue
        if len(conditions) > MAX_CONDITIONS_PER_PATH:
            issues.error(
                f"{where}.conditions",
                "MAX_CONDITIONS_PER_PATH",
                f"A path may have at most {MAX_CONDITIONS_PER_PATH} conditions",
            )
        real = [c for c in conditions if c.type is not ConditionType.ELSE]
        if len(real) > 1 and branch_path.condition_logic is None:
            issues.error(
                f"{where}.condition_logic",
                "REQUIRED_FIELD",
                "condition_logic (ALL or ANY) is required with more than one condition",
            )
        for index, condition in enumerate(real):
            for operand in (condition.left, condition.right):
                parts = parse_reference(operand)
                if parts is None:
                    continue
                if parts[0] in ("variables", "var") and parts[1:2] and parts[1] not in declared:
                    issues.error(
                        f"{where}.conditions[{index}]",
                        "UNDECLARED_VARIABLE",
                        f"Flow variable {parts[1]} is not declared",
                    )
                if parts[0] == "steps" and parts[1:2] and parts[1] not in by_id:
                    issues.error(
                        f"{where}.conditions[{index}]",
                        "INVALID_REFERENCE",
                        f"Step {parts[1]} does not exist",
                    )


def _check_goto(
    constraints: Constraints,
    visit: _Visit,
    step: GotoStep,
    by_id: dict[str, _Visit],
    issues: _Issues,
) -> None:
    path = visit.path
    if visit.parent is None or visit.parent.type not in constraints.goto_allowed_inside:
        issues.error(
            path,
            "GOTO_PLACEMENT",
            "Goto is only allowed inside " + ", ".join(constraints.goto_allowed_inside),
        )
    target = by_id.get(step.target_step_id)
    if target is None or not isinstance(target.step, GotoDestinationStep):
        issues.error(
            f"{path}.target_step_id",
            "GOTO_TARGET_NOT_FOUND",
            f"Goto target {step.target_step_id} is not a goto destination",
        )
        return
    if constraints.goto_targets_main_path_only:
        if target.parent is not None:
            issues.error(
                f"{path}.target_step_id",
                "GOTO_TARGET_MAIN_PATH",
                f"Goto target {step.target_step_id} must be on the main path",
            )
    elif visit.branches[: len(target.branches)] != target.branches:
        issues.error(
            f"{path}.target_step_id",
            "GOTO_TARGET_SCOPE",
            f"Goto target {step.target_step_id} is not on a path enclosing the goto",
        )
