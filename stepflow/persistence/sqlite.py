"""SQLite implementations of the stepflow repositories."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import CleanupStatus, FailedCleanupRecord, StepRecord, WorkflowRun
from .repository import FailedCleanupStore, SemaphoreStateStore, WorkflowRepository


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class _SQLiteStore:
    """Connection handling shared by the SQLite repositories."""

    schema: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in self.schema:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteWorkflowRepository(_SQLiteStore, WorkflowRepository):
    """Persist workflow runs using SQLite."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS workflow_runs (
            workflow_id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            workflow_name TEXT NOT NULL,
            namespace TEXT NOT NULL,
            status TEXT NOT NULL,
            input TEXT,
            output TEXT,
            error TEXT,
            memo TEXT,
            started_at TEXT,
            closed_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS step_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            step_name TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            status TEXT,
            output TEXT
        )
        """,
    )

    async def create_workflow(
        self,
        workflow_id: str,
        run_id: str,
        workflow_name: str,
        namespace: str,
        input: Any = None,
        memo: dict | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO workflow_runs
            (workflow_id, run_id, workflow_name, namespace, status, input, memo, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow_id,
            run_id,
            workflow_name,
            namespace,
            "running",
            _dumps(input),
            _dumps(memo or {}),
            _now(),
        )

    async def mark_step_started(self, workflow_id: str, step_name: str) -> None:
        existing = await asyncio.to_thread(
            self._fetchone,
            "SELECT id FROM step_history WHERE workflow_id = ? AND step_name = ? AND completed_at IS NULL",
            workflow_id,
            step_name,
        )
        if existing:
            return
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_history (workflow_id, step_name, started_at) VALUES (?, ?, ?)",
            workflow_id,
            step_name,
            _now(),
        )

    async def mark_step_completed(
        self,
        workflow_id: str,
        step_name: str,
        status: str,
        output: Any = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history
            SET completed_at = ?, status = ?, output = ?
            WHERE workflow_id = ? AND step_name = ? AND completed_at IS NULL
            """,
            _now(),
            status,
            _dumps(output),
            workflow_id,
            step_name,
        )

    async def mark_workflow_completed(
        self,
        workflow_id: str,
        status: str = "completed",
        output: Any = None,
        error: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs SET status = ?, output = ?, error = ?, closed_at = ?
            WHERE workflow_id = ?
            """,
            status,
            _dumps(output),
            error,
            _now(),
            workflow_id,
        )

    def _row_to_run(self, row: sqlite3.Row, steps: list[StepRecord]) -> WorkflowRun:
        return WorkflowRun(
            workflow_id=row["workflow_id"],
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            namespace=row["namespace"],
            status=row["status"],
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
            memo=_loads(row["memo"]) or {},
            started_at=_parse_ts(row["started_at"]),
            closed_at=_parse_ts(row["closed_at"]),
            steps=steps,
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_runs WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        steps_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_history WHERE workflow_id = ? ORDER BY id",
            workflow_id,
        )
        steps = [
            StepRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_name=r["step_name"],
                started_at=_parse_ts(r["started_at"]),
                completed_at=_parse_ts(r["completed_at"]),
                status=r["status"],
                output=_loads(r["output"]),
            )
            for r in steps_rows
        ]
        return self._row_to_run(row, steps)

    async def list_workflows(self) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflow_runs ORDER BY started_at"
        )
        return [self._row_to_run(row, []) for row in rows]


class SQLiteSemaphoreStateStore(_SQLiteStore, SemaphoreStateStore):
    """Persist semaphore snapshots using SQLite."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS semaphore_state (
            runner_id TEXT PRIMARY KEY,
            state TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    )

    async def save_state(self, runner_id: str, state: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO semaphore_state (runner_id, state, updated_at) VALUES (?, ?, ?)",
            runner_id,
            _dumps(state),
            _now(),
        )

    async def load_state(self, runner_id: str) -> dict | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT state FROM semaphore_state WHERE runner_id = ?",
            runner_id,
        )
        return _loads(row["state"]) if row else None

    async def list_runner_ids(self) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT runner_id FROM semaphore_state ORDER BY runner_id"
        )
        return [row["runner_id"] for row in rows]


class SQLiteFailedCleanupStore(_SQLiteStore, FailedCleanupStore):
    """Persist failed cleanup records using SQLite."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS failed_cleanups (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            step_name TEXT NOT NULL,
            payload TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            error TEXT,
            last_attempt TEXT
        )
        """,
    )

    def _row_to_record(self, row: sqlite3.Row) -> FailedCleanupRecord:
        return FailedCleanupRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_name=row["step_name"],
            payload=_loads(row["payload"]),
            retry_count=row["retry_count"],
            status=CleanupStatus(row["status"]),
            error=row["error"] or "",
            last_attempt=_parse_ts(row["last_attempt"]),
        )

    async def record(self, record: FailedCleanupRecord) -> FailedCleanupRecord:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM failed_cleanups WHERE workflow_id = ? AND step_name = ? AND status = ?",
            record.workflow_id,
            record.step_name,
            CleanupStatus.PENDING.value,
        )
        if row:
            retry_count = max(row["retry_count"], record.retry_count)
            await asyncio.to_thread(
                self._execute,
                """
                UPDATE failed_cleanups SET payload = ?, error = ?, retry_count = ?, last_attempt = ?
                WHERE id = ?
                """,
                _dumps(record.payload),
                record.error,
                retry_count,
                _now(),
                row["id"],
            )
            return await self.get(row["id"])  # type: ignore[return-value]

        record_id = record.id or uuid.uuid4().hex
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO failed_cleanups
            (id, workflow_id, step_name, payload, retry_count, status, error, last_attempt)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record_id,
            record.workflow_id,
            record.step_name,
            _dumps(record.payload),
            record.retry_count,
            record.status.value,
            record.error,
            record.last_attempt.isoformat() if record.last_attempt else _now(),
        )
        return await self.get(record_id)  # type: ignore[return-value]

    async def fetch_pending(
        self, max_retries: int, limit: int
    ) -> list[FailedCleanupRecord]:
        query = (
            "SELECT * FROM failed_cleanups WHERE status = ? AND retry_count < ? "
            "ORDER BY last_attempt"
        )
        params: list[Any] = [CleanupStatus.PENDING.value, max_retries]
        if limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_record(row) for row in rows]

    async def update(
        self,
        record_id: str,
        retry_count: int,
        status: CleanupStatus,
        error: str = "",
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE failed_cleanups
            SET retry_count = ?, status = ?, error = COALESCE(NULLIF(?, ''), error), last_attempt = ?
            WHERE id = ?
            """,
            retry_count,
            status.value,
            error,
            _now(),
            record_id,
        )

    async def delete(self, record_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM failed_cleanups WHERE id = ?", record_id
        )

    async def get(self, record_id: str) -> FailedCleanupRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM failed_cleanups WHERE id = ?", record_id
        )
        return self._row_to_record(row) if row else None

    async def list_records(self) -> list[FailedCleanupRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM failed_cleanups ORDER BY last_attempt"
        )
        return [self._row_to_record(row) for row in rows]
