"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from .models import (
    ExecutionPage,
    ExecutionStats,
    StepEventStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
)
from .repository import DuplicateRecordError, OptimisticLockError, WorkflowRepository

_EXECUTION_COLUMNS = (
    "id",
    "workflow_name",
    "status",
    "input_data",
    "output_data",
    "result_id",
    "correlation_id",
    "parent_execution_id",
    "idempotency_key",
    "retry_count",
    "max_retries",
    "timeout_seconds",
    "error_message",
    "error_type",
    "error_stack_trace",
    "created_at",
    "updated_at",
    "completed_at",
    "run_started_at",
)

_STEP_COLUMNS = (
    "execution_id",
    "workflow_name",
    "step_name",
    "step_index",
    "total_steps",
    "status",
    "input_data",
    "output_data",
    "error_message",
    "error_type",
    "duration_ms",
    "started_at",
    "completed_at",
    "version",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so range filters compare lexicographically.
    return value.isoformat(timespec="microseconds") if value else None


def _execution_params(execution: WorkflowExecution) -> tuple:
    data = execution.model_dump()
    data["status"] = execution.status.value
    for col in ("created_at", "updated_at", "completed_at", "run_started_at"):
        data[col] = _ts(data[col])
    return tuple(data[col] for col in _EXECUTION_COLUMNS)


def _step_params(event: WorkflowStepEvent) -> tuple:
    data = event.model_dump()
    data["status"] = event.status.value
    for col in ("started_at", "completed_at"):
        data[col] = _ts(data[col])
    return tuple(data[col] for col in _STEP_COLUMNS)


class _SQLiteClaim:
    def __init__(self, repo: "SQLiteWorkflowRepository", existing: Optional[WorkflowExecution]) -> None:
        self._repo = repo
        self.existing = existing

    async def save(self, execution: WorkflowExecution) -> None:
        await self._repo.update_execution(execution)

    async def insert(self, execution: WorkflowExecution) -> None:
        await self._repo.insert_execution(execution)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist execution state using SQLite.

    SQLite has no ``SELECT ... FOR UPDATE``; idempotency claims are
    serialized per key inside this process instead. Use PostgreSQL when
    several processes share one store.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                input_data TEXT,
                output_data TEXT,
                result_id TEXT,
                correlation_id TEXT,
                parent_execution_id TEXT,
                idempotency_key TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                timeout_seconds REAL,
                error_message TEXT,
                error_type TEXT,
                error_stack_trace TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT,
                run_started_at TEXT NOT NULL,
                UNIQUE (idempotency_key, workflow_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_step_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                workflow_name TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                total_steps INTEGER,
                status TEXT NOT NULL,
                input_data TEXT,
                output_data TEXT,
                error_message TEXT,
                error_type TEXT,
                duration_ms INTEGER,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                UNIQUE (execution_id, step_index)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON workflow_executions (workflow_name, created_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._db_lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DuplicateRecordError(str(e)) from e
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

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        placeholders = ", ".join("?" for _ in _EXECUTION_COLUMNS)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_executions ({', '.join(_EXECUTION_COLUMNS)}) VALUES ({placeholders})",
            *_execution_params(execution),
        )

    async def update_execution(self, execution: WorkflowExecution) -> None:
        assignments = ", ".join(f"{col} = ?" for col in _EXECUTION_COLUMNS[1:])
        params = _execution_params(execution)
        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_executions SET {assignments} WHERE id = ?",
            *params[1:],
            params[0],
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return WorkflowExecution(**dict(row)) if row else None

    async def find_executions_by_workflow(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        total_row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS total FROM workflow_executions WHERE workflow_name = ?",
            workflow_name,
        )
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_executions WHERE workflow_name = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            workflow_name,
            size,
            page * size,
        )
        return ExecutionPage(
            items=[WorkflowExecution(**dict(r)) for r in rows],
            page=page,
            size=size,
            total=total_row["total"] if total_row else 0,
        )

    async def find_executions_by_status(
        self, status: WorkflowExecutionStatus, since: datetime | None = None
    ) -> list[WorkflowExecution]:
        if since is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_executions WHERE status = ? ORDER BY created_at",
                status.value,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_executions WHERE status = ? AND created_at > ? ORDER BY created_at",
                status.value,
                _ts(since),
            )
        return [WorkflowExecution(**dict(r)) for r in rows]

    async def find_executions_by_correlation_id(
        self, correlation_id: str
    ) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_executions WHERE correlation_id = ? ORDER BY created_at",
            correlation_id,
        )
        return [WorkflowExecution(**dict(r)) for r in rows]

    async def find_child_executions(
        self, parent_execution_id: str
    ) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_executions WHERE parent_execution_id = ? ORDER BY created_at",
            parent_execution_id,
        )
        return [WorkflowExecution(**dict(r)) for r in rows]

    async def count_executions_by_status(
        self, workflow_name: str, since: datetime
    ) -> list[ExecutionStats]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT status, COUNT(*) AS count FROM workflow_executions
            WHERE workflow_name = ? AND created_at >= ?
            GROUP BY status
            """,
            workflow_name,
            _ts(since),
        )
        return [ExecutionStats(status=r["status"], count=r["count"]) for r in rows]

    async def find_by_idempotency_key(
        self, idempotency_key: str, workflow_name: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_executions WHERE idempotency_key = ? AND workflow_name = ?",
            idempotency_key,
            workflow_name,
        )
        return WorkflowExecution(**dict(row)) if row else None

    @asynccontextmanager
    async def idempotency_claim(
        self, idempotency_key: str, workflow_name: str
    ) -> AsyncIterator[_SQLiteClaim]:
        async with self._key_locks[(idempotency_key, workflow_name)]:
            existing = await self.find_by_idempotency_key(idempotency_key, workflow_name)
            yield _SQLiteClaim(self, existing)

    # ------------------------------------------------------------------
    # Step events
    async def insert_step_event(self, event: WorkflowStepEvent) -> None:
        placeholders = ", ".join("?" for _ in _STEP_COLUMNS)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_step_event ({', '.join(_STEP_COLUMNS)}) VALUES ({placeholders})",
            *_step_params(event),
        )

    async def get_step_event(
        self, execution_id: str, step_index: int
    ) -> WorkflowStepEvent | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {', '.join(_STEP_COLUMNS)} FROM workflow_step_event WHERE execution_id = ? AND step_index = ?",
            execution_id,
            step_index,
        )
        return WorkflowStepEvent(**dict(row)) if row else None

    async def update_step_event(self, event: WorkflowStepEvent) -> None:
        params = dict(zip(_STEP_COLUMNS, _step_params(event)))
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_step_event
            SET status = ?, output_data = ?, error_message = ?, error_type = ?,
                duration_ms = ?, completed_at = ?, version = version + 1
            WHERE execution_id = ? AND step_index = ? AND version = ?
            """,
            params["status"],
            params["output_data"],
            params["error_message"],
            params["error_type"],
            params["duration_ms"],
            params["completed_at"],
            event.execution_id,
            event.step_index,
            event.version,
        )
        if updated == 0:
            raise OptimisticLockError(
                f"Step event {event.execution_id}:{event.step_index} was modified concurrently"
            )
        event.version += 1

    async def list_step_events(self, execution_id: str) -> list[WorkflowStepEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {', '.join(_STEP_COLUMNS)} FROM workflow_step_event WHERE execution_id = ? ORDER BY step_index",
            execution_id,
        )
        return [WorkflowStepEvent(**dict(r)) for r in rows]

    async def find_stale_running_steps(
        self, threshold: datetime
    ) -> list[WorkflowStepEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {', '.join(_STEP_COLUMNS)} FROM workflow_step_event WHERE status = ? AND started_at < ? ORDER BY started_at",
            StepEventStatus.RUNNING.value,
            _ts(threshold),
        )
        return [WorkflowStepEvent(**dict(r)) for r in rows]
