"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from ..errors import RunNotFound
from .models import DefinitionRecord, Run, RunStatus
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store definitions and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, Dict[int, DefinitionRecord]] = {}
        self._runs: Dict[str, Run] = {}
        self._run_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cursors: Dict[tuple[str, str], int] = {}
        self._cursor_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, record: DefinitionRecord) -> None:
        versions = self._definitions.setdefault(record.definition_id, {})
        versions[record.version] = record.model_copy(deep=True)

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> DefinitionRecord | None:
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        record = versions.get(version)
        return record.model_copy(deep=True) if record else None

    async def list_definition_versions(self, definition_id: str) -> list[DefinitionRecord]:
        versions = self._definitions.get(definition_id, {})
        return [versions[v].model_copy(deep=True) for v in sorted(versions)]

    async def list_definitions(self) -> list[DefinitionRecord]:
        return [
            versions[max(versions)].model_copy(deep=True)
            for versions in self._definitions.values()
            if versions
        ]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    @asynccontextmanager
    async def edit_run(self, run_id: str) -> AsyncIterator[Run]:
        async with self._run_locks[run_id]:
            stored = self._runs.get(run_id)
            if stored is None:
                raise RunNotFound(run_id)
            run = stored.model_copy(deep=True)
            yield run
            run.version = stored.version + 1
            self._runs[run_id] = run

    async def list_runs(
        self, status: Optional[RunStatus] = None, definition_id: Optional[str] = None
    ) -> list[Run]:
        runs = []
        for run in self._runs.values():
            if status is not None and run.status is not status:
                continue
            if definition_id is not None and run.definition_id != definition_id:
                continue
            runs.append(run.model_copy(deep=True))
        return runs

    # ------------------------------------------------------------------
    # Round robin
    async def increment_rotation_cursor(self, template_id: str, role_id: str) -> int:
        async with self._cursor_lock:
            key = (template_id, role_id)
            self._cursors[key] = self._cursors.get(key, 0) + 1
            return self._cursors[key]
