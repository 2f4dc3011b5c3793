"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..errors import RunNotFound
from .models import DefinitionRecord, Run, RunStatus
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist definitions and runs using PostgreSQL.

    Run edits hold a row lock (``SELECT ... FOR UPDATE``) for the duration of
    the edit, which serializes transitions on one run across processes.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                definition_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (definition_id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS role_cursors (
                template_id TEXT NOT NULL,
                role_id TEXT NOT NULL,
                position BIGINT NOT NULL,
                PRIMARY KEY (template_id, role_id)
            )
            """
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS runs_status ON runs (status)")

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, record: DefinitionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO definitions (definition_id, version, status, data)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (definition_id, version)
                DO UPDATE SET status = EXCLUDED.status, data = EXCLUDED.data
                """,
                record.definition_id,
                record.version,
                record.status.value,
                record.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> DefinitionRecord | None:
        conn = await self._connect()
        try:
            if version is None:
                row = await conn.fetchrow(
                    "SELECT data::text AS data FROM definitions WHERE definition_id = $1 ORDER BY version DESC LIMIT 1",
                    definition_id,
                )
            else:
                row = await conn.fetchrow(
                    "SELECT data::text AS data FROM definitions WHERE definition_id = $1 AND version = $2",
                    definition_id,
                    version,
                )
        finally:
            await conn.close()
        if not row:
            return None
        return DefinitionRecord.model_validate_json(row["data"])

    async def list_definition_versions(self, definition_id: str) -> list[DefinitionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data::text AS data FROM definitions WHERE definition_id = $1 ORDER BY version",
                definition_id,
            )
        finally:
            await conn.close()
        return [DefinitionRecord.model_validate_json(r["data"]) for r in rows]

    async def list_definitions(self) -> list[DefinitionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (definition_id) data::text AS data
                FROM definitions
                ORDER BY definition_id, version DESC
                """
            )
        finally:
            await conn.close()
        return [DefinitionRecord.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO runs (run_id, definition_id, status, started_at, version, data) VALUES ($1, $2, $3, $4, $5, $6::jsonb)",
                run.run_id,
                run.definition_id,
                run.status.value,
                run.started_at,
                run.version,
                run.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Run.model_validate_json(row["data"])

    @asynccontextmanager
    async def edit_run(self, run_id: str) -> AsyncIterator[Run]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data::text AS data FROM runs WHERE run_id = $1 FOR UPDATE",
                    run_id,
                )
                if not row:
                    raise RunNotFound(run_id)
                run = Run.model_validate_json(row["data"])
                yield run
                run.version += 1
                await conn.execute(
                    "UPDATE runs SET status = $1, version = $2, data = $3::jsonb WHERE run_id = $4",
                    run.status.value,
                    run.version,
                    run.model_dump_json(),
                    run_id,
                )
        finally:
            await conn.close()

    async def list_runs(
        self, status: Optional[RunStatus] = None, definition_id: Optional[str] = None
    ) -> list[Run]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if definition_id is not None:
            params.append(definition_id)
            clauses.append(f"definition_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT data::text AS data FROM runs {where} ORDER BY started_at", *params
            )
        finally:
            await conn.close()
        return [Run.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Round robin
    async def increment_rotation_cursor(self, template_id: str, role_id: str) -> int:
        conn = await self._connect()
        try:
            position = await conn.fetchval(
                """
                INSERT INTO role_cursors (template_id, role_id, position) VALUES ($1, $2, 1)
                ON CONFLICT (template_id, role_id)
                DO UPDATE SET position = role_cursors.position + 1
                RETURNING position
                """,
                template_id,
                role_id,
            )
        finally:
            await conn.close()
        return int(position)
