"""Repository abstraction for definition and run persistence."""

from __future__ import annotations

from typing import AsyncContextManager, Optional, Protocol

from .models import DefinitionRecord, Run, RunStatus


class WorkflowRepository(Protocol):
    """Protocol for persistence backends."""

    async def save_definition(self, record: DefinitionRecord) -> None:
        """Insert or replace one version of a definition."""

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> DefinitionRecord | None:
        """Return one version, or the latest when ``version`` is omitted."""

    async def list_definition_versions(self, definition_id: str) -> list[DefinitionRecord]:
        """Return every version of a definition, oldest first."""

    async def list_definitions(self) -> list[DefinitionRecord]:
        """Return the latest version of every definition."""

    async def create_run(self, run: Run) -> None:
        """Persist a freshly started run."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    def edit_run(self, run_id: str) -> AsyncContextManager[Run]:
        """Atomic read-modify-write scope for one run.

        Yields a private copy of the run. The copy is persisted only when the
        block exits without an exception; concurrent edits of the same run
        are serialized. Raises ``RunNotFound`` for unknown ids.
        """

    async def list_runs(
        self, status: Optional[RunStatus] = None, definition_id: Optional[str] = None
    ) -> list[Run]:
        """Return runs, optionally filtered."""

    async def increment_rotation_cursor(self, template_id: str, role_id: str) -> int:
        """Atomically bump and return the round-robin counter for a role."""
