"""Reference lookup and predicate evaluation.

Branch conditions and RULES resolutions both test a value drawn from the run
context. References are written ``{kickoff.<field>}``,
``{variables.<key>}``, ``{steps.<stepId>.<key>}`` or ``{initiator}``;
anything else is a literal.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from .contracts import (
    BranchCondition,
    BranchPath,
    BranchStep,
    ConditionLogic,
    ConditionType,
    RulePredicate,
)
from .models import RunContext

_REFERENCE = re.compile(r"^\{\s*([A-Za-z_][\w.\-]*)\s*\}$")


def parse_reference(text: str) -> Optional[tuple[str, ...]]:
    """Split ``{a.b.c}`` into ``("a", "b", "c")``; ``None`` for literals."""
    match = _REFERENCE.match(text.strip()) if text else None
    if match is None:
        return None
    return tuple(match.group(1).split("."))


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join(stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def lookup(parts: tuple[str, ...], context: RunContext) -> Any:
    """Return the raw context value a parsed reference points at."""
    head, rest = parts[0], parts[1:]
    if head == "initiator" and not rest:
        return context.initiator
    if head == "kickoff" and len(rest) == 1:
        return context.kickoff.get(rest[0])
    if head in ("variables", "var") and len(rest) == 1:
        return context.variables.get(rest[0])
    if head == "steps" and len(rest) == 2:
        return context.step_outputs.get(rest[0], {}).get(rest[1])
    return None


def resolve_operand(text: str, context: RunContext) -> str:
    parts = parse_reference(text)
    if parts is None:
        return text
    return stringify(lookup(parts, context))


def matches_predicate(predicate: RulePredicate, value: str) -> bool:
    """Case-sensitive test used by RULES resolutions."""
    if predicate.equals is not None:
        return value == predicate.equals
    if predicate.contains is not None:
        return predicate.contains in value
    if predicate.not_empty:
        return value.strip() != ""
    return False


def evaluate_condition(condition: BranchCondition, context: RunContext) -> bool:
    """Case-insensitive comparison used by branch paths."""
    left = resolve_operand(condition.left, context).strip().lower()
    right = resolve_operand(condition.right, context).strip().lower()
    kind = condition.type
    if kind is ConditionType.EQUALS:
        return left == right
    if kind is ConditionType.NOT_EQUALS:
        return left != right
    if kind is ConditionType.CONTAINS:
        return right in left
    if kind is ConditionType.NOT_CONTAINS:
        return right not in left
    if kind is ConditionType.NOT_EMPTY:
        return left != ""
    # ELSE never matches on its own; it is the fallback.
    return False


def path_matches(path: BranchPath, context: RunContext) -> bool:
    conditions = [c for c in path.conditions if c.type is not ConditionType.ELSE]
    if not conditions:
        return not path.is_else
    results = (evaluate_condition(c, context) for c in conditions)
    if path.condition_logic is ConditionLogic.ANY:
        return any(results)
    return all(results)


def select_paths(step: BranchStep, context: RunContext) -> list[BranchPath]:
    """Choose the paths a branch step opens, in definition order."""
    if step.type == "PARALLEL_BRANCH":
        return list(step.paths)
    fallback = [path for path in step.paths if path.is_else]
    if step.type == "SINGLE_CHOICE_BRANCH":
        for path in step.paths:
            if not path.is_else and path_matches(path, context):
                return [path]
        return fallback[:1]
    matched = [p for p in step.paths if not p.is_else and path_matches(p, context)]
    return matched or fallback
