"""flowkeeper: workflow template validation and run engine."""

from .assignees import AssigneeResolver, completion_satisfied
from .contracts import Constraints, ValidationMode, ValidationResult, WorkflowDefinition
from .definitions import DefinitionService
from .errors import FlowkeeperError
from .execute import RunEngine
from .models import Identity, KickoffData, RunContext
from .notifications import get_notifier
from .persistence import get_repository
from .sla import SlaScheduler, compute_due_at
from .validator import validate_definition, validate_document

__version__ = "0.1.0"
__all__ = [
    "AssigneeResolver",
    "Constraints",
    "DefinitionService",
    "FlowkeeperError",
    "Identity",
    "KickoffData",
    "RunContext",
    "RunEngine",
    "SlaScheduler",
    "ValidationMode",
    "ValidationResult",
    "WorkflowDefinition",
    "completion_satisfied",
    "compute_due_at",
    "get_notifier",
    "get_repository",
    "validate_definition",
    "validate_document",
]
