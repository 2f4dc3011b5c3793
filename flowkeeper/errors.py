"""Named failure kinds raised by flowkeeper operations."""

from __future__ import annotations

from typing import Any


class FlowkeeperError(Exception):
    """Base class for every error surfaced by the public API."""

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# ----------------------------------------------------------------------
# Structural errors
class DefinitionNotFound(FlowkeeperError):
    def __init__(self, definition_id: str):
        super().__init__(
            "DEFINITION_NOT_FOUND",
            f"No usable definition found: {definition_id}",
            definition_id=definition_id,
        )


class DefinitionNotValid(FlowkeeperError):
    """Raised when a definition fails validation or has never been published."""

    def __init__(self, definition_id: str, reason: str, validation: Any = None):
        super().__init__(
            "DEFINITION_NOT_VALID",
            f"Definition {definition_id} is not valid: {reason}",
            definition_id=definition_id,
        )
        self.validation = validation


# ----------------------------------------------------------------------
# Lookup and input errors
class RunNotFound(FlowkeeperError):
    def __init__(self, run_id: str):
        super().__init__("RUN_NOT_FOUND", f"Run not found: {run_id}", run_id=run_id)


class InvalidKickoffData(FlowkeeperError):
    def __init__(self, message: str, **details: Any):
        super().__init__("INVALID_KICKOFF_DATA", message, **details)


# ----------------------------------------------------------------------
# Transition errors
class TransitionError(FlowkeeperError):
    """A requested run transition was rejected and nothing was persisted."""


class StepNotActive(TransitionError):
    def __init__(self, step_id: str, reason: str):
        super().__init__(
            "STEP_NOT_ACTIVE",
            f"Step {step_id} cannot be completed: {reason}",
            step_id=step_id,
        )


class InvalidDecisionOutcome(TransitionError):
    def __init__(self, step_id: str, outcome: Any, allowed: list[str]):
        super().__init__(
            "INVALID_DECISION_OUTCOME",
            f"Outcome {outcome!r} is not one of {', '.join(allowed)} for decision {step_id}",
            step_id=step_id,
            outcome=outcome,
        )


class RunAlreadyTerminal(TransitionError):
    def __init__(self, run_id: str, status: str):
        super().__init__(
            "RUN_ALREADY_TERMINAL",
            f"Run {run_id} is already {status}",
            run_id=run_id,
            status=status,
        )


class RunNotTerminal(TransitionError):
    def __init__(self, run_id: str, status: str):
        super().__init__(
            "RUN_NOT_TERMINAL",
            f"Run {run_id} is still {status}",
            run_id=run_id,
            status=status,
        )


class VariablesFrozen(TransitionError):
    def __init__(self, key: str):
        super().__init__(
            "VARIABLES_FROZEN",
            f"Flow variable {key} can only be set when the run starts",
            key=key,
        )


class GotoTargetUnreachable(TransitionError):
    def __init__(self, step_id: str, target_step_id: str):
        super().__init__(
            "GOTO_TARGET_UNREACHABLE",
            f"Goto {step_id} cannot reach {target_step_id} from its current path",
            step_id=step_id,
            target_step_id=target_step_id,
        )


class TransitionLoop(TransitionError):
    def __init__(self, run_id: str, limit: int):
        super().__init__(
            "TRANSITION_LOOP",
            f"Run {run_id} exceeded {limit} automatic transitions",
            run_id=run_id,
        )


# ----------------------------------------------------------------------
# Resolution and persistence errors
class UnresolvableAssignee(FlowkeeperError):
    def __init__(self, role_id: str, reason: str):
        super().__init__(
            "UNRESOLVABLE_ASSIGNEE",
            f"Role {role_id} could not be resolved: {reason}",
            role_id=role_id,
        )
        self.role_id = role_id


class ConcurrentModification(FlowkeeperError):
    def __init__(self, run_id: str):
        super().__init__(
            "CONCURRENT_MODIFICATION",
            f"Run {run_id} was modified concurrently",
            run_id=run_id,
        )
