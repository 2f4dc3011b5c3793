"""Workflow definition contracts.

A definition is an immutable template: milestones, roles with their
resolution strategies, declared flow variables, constraints, and a main path
of steps. Steps that open sub-paths (decisions and branches) nest further
step lists, so the model is recursive.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
)


class Contract(BaseModel):
    """Base for immutable definition parts."""

    model_config = ConfigDict(frozen=True)


class DueUnit(str, Enum):
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class CompletionMode(str, Enum):
    ANY_ONE = "ANY_ONE"
    ALL = "ALL"
    MAJORITY = "MAJORITY"


class ConditionType(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    NOT_EMPTY = "NOT_EMPTY"
    ELSE = "ELSE"


class ConditionLogic(str, Enum):
    ALL = "ALL"
    ANY = "ANY"


class ValidationMode(str, Enum):
    STRICT = "STRICT"
    LENIENT = "LENIENT"


class RelativeDue(Contract):
    """Due date relative to the moment a step (or run) is activated."""

    type: Literal["RELATIVE"] = "RELATIVE"
    value: int = Field(gt=0)
    unit: DueUnit = DueUnit.DAYS


class FixedDue(Contract):
    type: Literal["FIXED"] = "FIXED"
    date: AwareDatetime


class BeforeFlowDue(Contract):
    """Due a set time before the run's own due date."""

    type: Literal["BEFORE_FLOW_DUE"] = "BEFORE_FLOW_DUE"
    value: int = Field(gt=0)
    unit: DueUnit = DueUnit.DAYS


def _due_type(value: Any) -> str:
    # a bare {value, unit} is a relative due
    if isinstance(value, dict):
        return value.get("type", "RELATIVE")
    return getattr(value, "type", "RELATIVE")


StepDue = Annotated[
    Union[
        Annotated[RelativeDue, Tag("RELATIVE")],
        Annotated[FixedDue, Tag("FIXED")],
        Annotated[BeforeFlowDue, Tag("BEFORE_FLOW_DUE")],
    ],
    Discriminator(_due_type),
]
FlowDue = Annotated[
    Union[
        Annotated[RelativeDue, Tag("RELATIVE")],
        Annotated[FixedDue, Tag("FIXED")],
    ],
    Discriminator(_due_type),
]


class Milestone(Contract):
    milestone_id: str
    name: str
    sequence: int = 0


# ----------------------------------------------------------------------
# Resolutions
class RulePredicate(Contract):
    """Exactly one of ``contains``, ``equals`` or ``not_empty`` is expected."""

    contains: Optional[str] = None
    equals: Optional[str] = None
    not_empty: bool = False


class ContactTbdResolution(Contract):
    type: Literal["CONTACT_TBD"] = "CONTACT_TBD"


class FixedContactResolution(Contract):
    type: Literal["FIXED_CONTACT"] = "FIXED_CONTACT"
    email: str


class WorkspaceInitializerResolution(Contract):
    type: Literal["WORKSPACE_INITIALIZER"] = "WORKSPACE_INITIALIZER"


class KickoffFormFieldResolution(Contract):
    type: Literal["KICKOFF_FORM_FIELD"] = "KICKOFF_FORM_FIELD"
    field_key: str
    default_email: Optional[str] = None


class FlowVariableResolution(Contract):
    type: Literal["FLOW_VARIABLE"] = "FLOW_VARIABLE"
    variable_key: str
    default_email: Optional[str] = None


class Rule(Contract):
    when: RulePredicate = Field(validation_alias=AliasChoices("if", "when"))
    then: "Resolution"


class RulesResolution(Contract):
    """Pick a resolution by testing predicates against one source value.

    ``source`` names where the value comes from; ``key`` is the kickoff form
    field, the flow variable key, or ``"<stepId>.<outputKey>"`` for a step
    output. Rules are tried in order and the first match wins.
    """

    type: Literal["RULES"] = "RULES"
    source: Literal["KICKOFF_FORM_FIELD", "FLOW_VARIABLE", "STEP_OUTPUT"]
    key: str
    rules: list[Rule] = Field(default_factory=list)
    default: "Resolution"


class RoundRobinResolution(Contract):
    type: Literal["ROUND_ROBIN"] = "ROUND_ROBIN"
    emails: list[str] = Field(default_factory=list)


Resolution = Annotated[
    Union[
        ContactTbdResolution,
        FixedContactResolution,
        WorkspaceInitializerResolution,
        KickoffFormFieldResolution,
        FlowVariableResolution,
        RulesResolution,
        RoundRobinResolution,
    ],
    Field(discriminator="type"),
]


class RoleOptions(Contract):
    allow_view_all_actions: bool = False
    coordinator_toggle: bool = False


class Role(Contract):
    role_id: str
    name: str
    resolution: Resolution
    role_options: RoleOptions = RoleOptions()


class FlowVariable(Contract):
    key: str
    type: str = "TEXT"
    required: bool = False
    default: Any = None
    description: Optional[str] = None


class Constraints(Contract):
    """Organisational limits a definition is validated against."""

    max_parallel_branches: int = 3
    max_decision_outcomes: int = 3
    max_branch_nesting_depth: int = 2
    milestones_inside_branches_allowed: bool = False
    branch_must_fit_single_milestone: bool = True
    goto_targets_main_path_only: bool = True
    variables_set_only_at_initiation: bool = True
    variable_types_allowed: list[str] = Field(default_factory=lambda: ["TEXT", "FILE"])
    goto_allowed_inside: list[str] = Field(
        default_factory=lambda: ["DECISION", "SINGLE_CHOICE_BRANCH"]
    )
    terminate_allowed_inside: list[str] = Field(
        default_factory=lambda: ["DECISION", "SINGLE_CHOICE_BRANCH"]
    )


# ----------------------------------------------------------------------
# Steps
class AssigneeRef(Contract):
    role_id: str


class StepBase(Contract):
    step_id: str
    title: str = ""
    milestone_id: Optional[str] = None


class TaskStep(StepBase):
    """A human action completed by one or more assignees."""

    type: Literal[
        "FORM",
        "QUESTIONNAIRE",
        "FILE_REQUEST",
        "TODO",
        "APPROVAL",
        "ACKNOWLEDGEMENT",
        "ESIGN",
        "CUSTOM_ACTION",
        "WEB_APP",
        "PDF_FORM",
    ]
    assignees: AssigneeRef | list[AssigneeRef] | None = None
    completion: CompletionMode = CompletionMode.ANY_ONE
    due: Optional[StepDue] = None
    config: dict[str, Any] = Field(default_factory=dict)


class SystemStep(StepBase):
    """An automation; it completes through the same external event as a task."""

    type: Literal[
        "SYSTEM_WEBHOOK",
        "SYSTEM_EMAIL",
        "SYSTEM_UPDATE_WORKSPACE",
        "BUSINESS_RULE",
        "AI_AUTOMATION",
    ]
    assignees: AssigneeRef | list[AssigneeRef] | None = None
    completion: CompletionMode = CompletionMode.ANY_ONE
    due: Optional[StepDue] = None
    config: dict[str, Any] = Field(default_factory=dict)


class DecisionOutcome(Contract):
    outcome_id: str
    label: str = ""
    steps: list["Step"] = Field(default_factory=list)


class DecisionStep(StepBase):
    type: Literal["DECISION"] = "DECISION"
    assignee: AssigneeRef
    due: Optional[StepDue] = None
    outcomes: list[DecisionOutcome] = Field(default_factory=list)


class BranchCondition(Contract):
    """Compare ``left`` with ``right``; either side may be a ``{reference}``.

    ``NOT_EMPTY`` only looks at ``left``; ``ELSE`` marks a fallback path.
    """

    type: ConditionType
    left: str = ""
    right: str = ""


class BranchPath(Contract):
    path_id: str
    label: str = ""
    conditions: list[BranchCondition] = Field(default_factory=list)
    condition_logic: Optional[ConditionLogic] = None
    steps: list["Step"] = Field(default_factory=list)

    @property
    def is_else(self) -> bool:
        return any(c.type is ConditionType.ELSE for c in self.conditions)


class BranchStep(StepBase):
    type: Literal["SINGLE_CHOICE_BRANCH", "MULTI_CHOICE_BRANCH", "PARALLEL_BRANCH"]
    paths: list[BranchPath] = Field(default_factory=list)


class GotoStep(StepBase):
    type: Literal["GOTO"] = "GOTO"
    target_step_id: str


class GotoDestinationStep(StepBase):
    type: Literal["GOTO_DESTINATION"] = "GOTO_DESTINATION"


class TerminateStep(StepBase):
    type: Literal["TERMINATE"] = "TERMINATE"
    status: Literal["COMPLETED", "CANCELLED"] = "COMPLETED"


class MilestoneStep(StepBase):
    type: Literal["MILESTONE"] = "MILESTONE"


Step = Annotated[
    Union[
        TaskStep,
        SystemStep,
        DecisionStep,
        BranchStep,
        GotoStep,
        GotoDestinationStep,
        TerminateStep,
        MilestoneStep,
    ],
    Field(discriminator="type"),
]

ACTION_STEPS = (TaskStep, SystemStep, DecisionStep)


class WorkflowDefinition(Contract):
    definition_id: str
    name: str
    description: Optional[str] = None
    milestones: list[Milestone] = Field(default_factory=list)
    roles: list[Role] = Field(default_factory=list)
    variables: list[FlowVariable] = Field(default_factory=list)
    constraints: Constraints = Constraints()
    steps: list[Step] = Field(default_factory=list)
    due: Optional[FlowDue] = None

    def role(self, role_id: str) -> Optional[Role]:
        for role in self.roles:
            if role.role_id == role_id:
                return role
        return None

    def roles_by_id(self) -> dict[str, Role]:
        return {role.role_id: role for role in self.roles}


Rule.model_rebuild()
RulesResolution.model_rebuild()
DecisionOutcome.model_rebuild()
BranchPath.model_rebuild()
WorkflowDefinition.model_rebuild()


def assignee_refs(step: Step) -> list[AssigneeRef]:
    """Return the role references a step is assigned to."""
    if isinstance(step, DecisionStep):
        return [step.assignee]
    if isinstance(step, (TaskStep, SystemStep)):
        if step.assignees is None:
            return []
        if isinstance(step.assignees, list):
            return list(step.assignees)
        return [step.assignees]
    return []


def nested_paths(step: Step) -> list[tuple[str, list[Step]]]:
    """Return ``(path_id, steps)`` pairs for steps that open sub-paths."""
    if isinstance(step, DecisionStep):
        return [(outcome.outcome_id, outcome.steps) for outcome in step.outcomes]
    if isinstance(step, BranchStep):
        return [(path.path_id, path.steps) for path in step.paths]
    return []


# ----------------------------------------------------------------------
# Validation results
class ValidationIssue(BaseModel):
    path: str
    rule: str
    message: str
    severity: Literal["ERROR", "WARNING"] = "ERROR"


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    def rules(self) -> list[str]:
        """Rule identifiers of all errors, in order."""
        return [issue.rule for issue in self.errors]
