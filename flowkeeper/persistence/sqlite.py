"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from ..errors import ConcurrentModification, RunNotFound
from .models import DefinitionRecord, Run, RunStatus
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist definitions and runs using SQLite.

    Runs are stored as JSON documents next to a few indexed columns. Writes
    compare-and-swap on ``version`` so that two processes editing the same
    run cannot silently overwrite each other.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._run_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                definition_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (definition_id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS role_cursors (
                template_id TEXT NOT NULL,
                role_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (template_id, role_id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS runs_status ON runs (status)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, record: DefinitionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO definitions (definition_id, version, status, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (definition_id, version)
            DO UPDATE SET status = excluded.status, data = excluded.data
            """,
            record.definition_id,
            record.version,
            record.status.value,
            record.model_dump_json(),
        )

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> DefinitionRecord | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT data FROM definitions WHERE definition_id = ? ORDER BY version DESC LIMIT 1",
                definition_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT data FROM definitions WHERE definition_id = ? AND version = ?",
                definition_id,
                version,
            )
        if not row:
            return None
        return DefinitionRecord.model_validate_json(row["data"])

    async def list_definition_versions(self, definition_id: str) -> list[DefinitionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM definitions WHERE definition_id = ? ORDER BY version",
            definition_id,
        )
        return [DefinitionRecord.model_validate_json(r["data"]) for r in rows]

    async def list_definitions(self) -> list[DefinitionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT d.data FROM definitions d
            JOIN (
                SELECT definition_id, MAX(version) AS version
                FROM definitions GROUP BY definition_id
            ) latest
            ON d.definition_id = latest.definition_id AND d.version = latest.version
            ORDER BY d.definition_id
            """,
        )
        return [DefinitionRecord.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (run_id, definition_id, status, started_at, version, data) VALUES (?, ?, ?, ?, ?, ?)",
            run.run_id,
            run.definition_id,
            run.status.value,
            run.started_at.isoformat(),
            run.version,
            run.model_dump_json(),
        )

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM runs WHERE run_id = ?", run_id
        )
        if not row:
            return None
        return Run.model_validate_json(row["data"])

    @asynccontextmanager
    async def edit_run(self, run_id: str) -> AsyncIterator[Run]:
        async with self._run_locks[run_id]:
            run = await self.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            expected = run.version
            yield run
            run.version = expected + 1
            updated = await asyncio.to_thread(
                self._execute,
                "UPDATE runs SET status = ?, version = ?, data = ? WHERE run_id = ? AND version = ?",
                run.status.value,
                run.version,
                run.model_dump_json(),
                run_id,
                expected,
            )
            if updated != 1:
                raise ConcurrentModification(run_id)

    async def list_runs(
        self, status: Optional[RunStatus] = None, definition_id: Optional[str] = None
    ) -> list[Run]:
        query = "SELECT data FROM runs WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if definition_id is not None:
            query += " AND definition_id = ?"
            params.append(definition_id)
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Run.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Round robin
    async def increment_rotation_cursor(self, template_id: str, role_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetch_and_commit,
            """
            INSERT INTO role_cursors (template_id, role_id, position) VALUES (?, ?, 1)
            ON CONFLICT (template_id, role_id) DO UPDATE SET position = position + 1
            RETURNING position
            """,
            template_id,
            role_id,
        )
        return int(row["position"])

    def _fetch_and_commit(self, query: str, *params: Any) -> sqlite3.Row:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
            self._conn.commit()
            return rows[0]

    def close(self) -> None:
        self._conn.close()
