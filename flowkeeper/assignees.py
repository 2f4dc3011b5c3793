"""Assignee resolution engine.

Turns a role's resolution strategy plus the run context into a concrete
identity, and decides when a group step has collected enough completions.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol, assert_never

from .conditions import matches_predicate, stringify
from .contracts import (
    AssigneeRef,
    CompletionMode,
    ContactTbdResolution,
    FixedContactResolution,
    FlowVariableResolution,
    KickoffFormFieldResolution,
    Resolution,
    Role,
    RoundRobinResolution,
    RulesResolution,
    WorkspaceInitializerResolution,
)
from .errors import UnresolvableAssignee
from .models import Identity, RunContext
from .persistence.models import AssigneeSlot

logger = logging.getLogger(__name__)


class RotationCursorStore(Protocol):
    async def increment_rotation_cursor(self, template_id: str, role_id: str) -> int:
        """Atomically bump and return the round-robin counter."""


class AssigneeResolver:
    """Resolve roles to identities for one template's runs."""

    def __init__(self, cursors: RotationCursorStore) -> None:
        self._cursors = cursors

    async def resolve(self, role: Role, context: RunContext) -> Identity:
        """Resolve ``role`` against ``context``.

        An explicit coordinator or kickoff assignment for the role always
        wins. Raises ``UnresolvableAssignee`` when nothing can be found.
        """
        assigned = context.role_assignments.get(role.role_id)
        if assigned is not None:
            return assigned
        identity = await self._resolve(role, role.resolution, context)
        logger.debug(f"Resolved role {role.role_id} to {identity}")
        return identity

    async def resolve_slots(
        self,
        refs: list[AssigneeRef],
        roles: Mapping[str, Role],
        context: RunContext,
    ) -> list[AssigneeSlot]:
        """Resolve every role reference of a step, in order.

        Round-robin turns are only taken once every other role of the step
        has resolved, so a step held for a coordinator consumes no turn.
        """
        pending: list[tuple[Role, Identity | RoundRobinResolution]] = []
        for ref in refs:
            role = roles.get(ref.role_id)
            if role is None:
                raise UnresolvableAssignee(ref.role_id, "role is not defined")
            assigned = context.role_assignments.get(role.role_id)
            if assigned is None:
                assigned = await self._resolve(role, role.resolution, context, rotate=False)
            pending.append((role, assigned))

        slots = []
        for role, resolved in pending:
            if isinstance(resolved, RoundRobinResolution):
                resolved = await self._take_turn(role, resolved, context)
            logger.debug(f"Resolved role {role.role_id} to {resolved}")
            slots.append(AssigneeSlot(role_id=role.role_id, identity=resolved))
        return slots

    async def _take_turn(
        self, role: Role, resolution: RoundRobinResolution, context: RunContext
    ) -> Identity:
        position = await self._cursors.increment_rotation_cursor(
            context.template_id, role.role_id
        )
        return Identity.contact(resolution.emails[(position - 1) % len(resolution.emails)])

    async def _resolve(
        self, role: Role, resolution: Resolution, context: RunContext, rotate: bool = True
    ) -> Identity | RoundRobinResolution:
        if isinstance(resolution, ContactTbdResolution):
            raise UnresolvableAssignee(role.role_id, "waiting for a coordinator to pick a contact")
        elif isinstance(resolution, FixedContactResolution):
            return Identity.contact(resolution.email)
        elif isinstance(resolution, WorkspaceInitializerResolution):
            return Identity.user(context.initiator)
        elif isinstance(resolution, KickoffFormFieldResolution):
            return self._from_value(
                role,
                context.kickoff.get(resolution.field_key),
                resolution.default_email,
                f"kickoff field {resolution.field_key} is empty",
            )
        elif isinstance(resolution, FlowVariableResolution):
            return self._from_value(
                role,
                context.variables.get(resolution.variable_key),
                resolution.default_email,
                f"flow variable {resolution.variable_key} is empty",
            )
        elif isinstance(resolution, RulesResolution):
            value = self._rule_source(resolution, context)
            for rule in resolution.rules:
                if matches_predicate(rule.when, value):
                    return await self._resolve(role, rule.then, context, rotate)
            return await self._resolve(role, resolution.default, context, rotate)
        elif isinstance(resolution, RoundRobinResolution):
            if not resolution.emails:
                raise UnresolvableAssignee(role.role_id, "round robin has no emails")
            if not rotate:
                return resolution
            return await self._take_turn(role, resolution, context)
        else:
            assert_never(resolution)

    @staticmethod
    def _from_value(
        role: Role, value: object, default_email: Optional[str], reason: str
    ) -> Identity:
        text = stringify(value).strip()
        if text:
            return Identity.contact(text)
        if default_email:
            return Identity.contact(default_email)
        raise UnresolvableAssignee(role.role_id, reason)

    @staticmethod
    def _rule_source(resolution: RulesResolution, context: RunContext) -> str:
        if resolution.source == "KICKOFF_FORM_FIELD":
            return stringify(context.kickoff.get(resolution.key))
        if resolution.source == "FLOW_VARIABLE":
            return stringify(context.variables.get(resolution.key))
        step_id, _, key = resolution.key.partition(".")
        return stringify(context.step_outputs.get(step_id, {}).get(key))


def completion_satisfied(mode: CompletionMode, total: int, completed: int) -> bool:
    """Whether ``completed`` of ``total`` assignees finish a step under ``mode``."""
    if total <= 0:
        return True
    if mode is CompletionMode.ANY_ONE:
        return completed >= 1
    if mode is CompletionMode.ALL:
        return completed >= total
    if mode is CompletionMode.MAJORITY:
        return completed * 2 > total
    assert_never(mode)
