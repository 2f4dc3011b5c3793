"""Data models for persisted run and definition state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import CompletionMode, ValidationResult, WorkflowDefinition
from ..models import Identity


class RunStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class CursorStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WAITING = "WAITING"
    DONE = "DONE"
    CLOSED = "CLOSED"


class DefinitionStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


def _new_id() -> str:
    return str(uuid.uuid4())


class AssigneeSlot(BaseModel):
    """One resolved assignee of a step; group steps have several."""

    role_id: Optional[str] = None
    identity: Identity
    completed_at: Optional[datetime] = None
    result_data: Optional[dict[str, Any]] = None

    @property
    def done(self) -> bool:
        return self.completed_at is not None


class StepExecution(BaseModel):
    """Runtime record of one attempt at one step."""

    execution_id: str = Field(default_factory=_new_id)
    step_id: str
    step_index: int
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    cursor_id: Optional[str] = None
    assigned_to: Optional[Identity] = None
    assignees: list[AssigneeSlot] = Field(default_factory=list)
    completion: CompletionMode = CompletionMode.ANY_ONE
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_to_complete: Optional[float] = None
    due_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    reminder_count: int = 0
    last_reminder_at: Optional[datetime] = None
    result_data: Optional[dict[str, Any]] = None
    activation_error: Optional[str] = None
    # active step parked while its run is paused
    suspended: bool = False

    @property
    def held(self) -> bool:
        return self.status is StepStatus.PENDING and self.activation_error is not None

    def open_slots(self) -> list[AssigneeSlot]:
        return [slot for slot in self.assignees if not slot.done]


class Cursor(BaseModel):
    """Position of one open path of a run.

    The root cursor walks the main path; branch steps fan out one child per
    selected path, all sharing a ``group_id``.
    """

    cursor_id: str = Field(default_factory=_new_id)
    parent_id: Optional[str] = None
    group_id: Optional[str] = None
    branch_index: Optional[int] = None
    path_id: Optional[str] = None
    step_index: Optional[int] = None
    status: CursorStatus = CursorStatus.ACTIVE
    waiting_on: Optional[str] = None

    @property
    def open(self) -> bool:
        return self.status in (CursorStatus.ACTIVE, CursorStatus.WAITING)


class MilestoneProgress(BaseModel):
    milestone_id: str
    reached_at: datetime


class Run(BaseModel):
    """Persisted state of one execution of a definition."""

    run_id: str = Field(default_factory=_new_id)
    definition_id: str
    definition_version: int
    status: RunStatus = RunStatus.IN_PROGRESS
    current_step_index: int = 0
    started_by: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    kickoff_data: dict[str, Any] = Field(default_factory=dict)
    variable_bindings: dict[str, Any] = Field(default_factory=dict)
    role_assignments: dict[str, Identity] = Field(default_factory=dict)
    cursors: list[Cursor] = Field(default_factory=list)
    steps: list[StepExecution] = Field(default_factory=list)
    milestones: list[MilestoneProgress] = Field(default_factory=list)
    version: int = 0

    def cursor(self, cursor_id: str) -> Cursor:
        for cursor in self.cursors:
            if cursor.cursor_id == cursor_id:
                return cursor
        raise KeyError(cursor_id)

    def latest_execution(self, step_id: str) -> Optional[StepExecution]:
        latest = None
        for execution in self.steps:
            if execution.step_id == step_id:
                latest = execution
        return latest

    def executions(self, step_id: str) -> list[StepExecution]:
        return [execution for execution in self.steps if execution.step_id == step_id]

    def active_executions(self) -> list[StepExecution]:
        return [e for e in self.steps if e.status is StepStatus.IN_PROGRESS]

    def held_steps(self) -> list[StepExecution]:
        """Steps waiting for a coordinator because no assignee could be resolved."""
        return [e for e in self.steps if e.held]

    def step_outputs(self) -> dict[str, dict[str, Any]]:
        outputs: dict[str, dict[str, Any]] = {}
        for execution in self.steps:
            if execution.status is StepStatus.COMPLETED and execution.result_data:
                outputs[execution.step_id] = execution.result_data
        return outputs

    def reached(self, milestone_id: str) -> bool:
        return any(m.milestone_id == milestone_id for m in self.milestones)


class DefinitionRecord(BaseModel):
    """A stored version of a definition."""

    definition_id: str
    version: int = 1
    status: DefinitionStatus = DefinitionStatus.DRAFT
    definition: WorkflowDefinition
    validation: Optional[ValidationResult] = None
    created_at: datetime
    published_at: Optional[datetime] = None
