"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

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

_INSERT_EXECUTION = (
    f"INSERT INTO workflow_executions ({', '.join(_EXECUTION_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(_EXECUTION_COLUMNS) + 1))})"
)

_UPDATE_EXECUTION = (
    "UPDATE workflow_executions SET "
    + ", ".join(f"{col} = ${i}" for i, col in enumerate(_EXECUTION_COLUMNS[1:], start=2))
    + " WHERE id = $1"
)


def _execution_params(execution: WorkflowExecution) -> list[Any]:
    data = execution.model_dump()
    data["status"] = execution.status.value
    return [data[col] for col in _EXECUTION_COLUMNS]


def _to_execution(row: asyncpg.Record) -> WorkflowExecution:
    return WorkflowExecution(**dict(row))


def _to_step(row: asyncpg.Record) -> WorkflowStepEvent:
    return WorkflowStepEvent(**{col: row[col] for col in _STEP_COLUMNS})


class _PostgresClaim:
    """Writes go through the connection holding the ``FOR UPDATE`` lock."""

    def __init__(self, conn: asyncpg.Connection, existing: Optional[WorkflowExecution]) -> None:
        self._conn = conn
        self.existing = existing

    async def save(self, execution: WorkflowExecution) -> None:
        await self._conn.execute(_UPDATE_EXECUTION, *_execution_params(execution))

    async def insert(self, execution: WorkflowExecution) -> None:
        try:
            async with self._conn.transaction():
                await self._conn.execute(_INSERT_EXECUTION, *_execution_params(execution))
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(str(e)) from e


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist execution state using PostgreSQL."""

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
                timeout_seconds DOUBLE PRECISION,
                error_message TEXT,
                error_type TEXT,
                error_stack_trace TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                run_started_at TIMESTAMPTZ NOT NULL,
                UNIQUE (idempotency_key, workflow_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_step_event (
                id SERIAL PRIMARY KEY,
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
                duration_ms BIGINT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 0,
                UNIQUE (execution_id, step_index)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON workflow_executions (workflow_name, created_at)"
        )

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(_INSERT_EXECUTION, *_execution_params(execution))
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(str(e)) from e
        finally:
            await conn.close()

    async def update_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(_UPDATE_EXECUTION, *_execution_params(execution))
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
        return _to_execution(row) if row else None

    async def find_executions_by_workflow(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        conn = await self._connect()
        try:
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM workflow_executions WHERE workflow_name = $1",
                workflow_name,
            )
            rows = await conn.fetch(
                "SELECT * FROM workflow_executions WHERE workflow_name = $1 ORDER BY created_at DESC LIMIT $2 OFFSET $3",
                workflow_name,
                size,
                page * size,
            )
        finally:
            await conn.close()
        return ExecutionPage(
            items=[_to_execution(r) for r in rows], page=page, size=size, total=total or 0
        )

    async def find_executions_by_status(
        self, status: WorkflowExecutionStatus, since: datetime | None = None
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            if since is None:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_executions WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_executions WHERE status = $1 AND created_at > $2 ORDER BY created_at",
                    status.value,
                    since,
                )
        finally:
            await conn.close()
        return [_to_execution(r) for r in rows]

    async def find_executions_by_correlation_id(
        self, correlation_id: str
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_executions WHERE correlation_id = $1 ORDER BY created_at",
                correlation_id,
            )
        finally:
            await conn.close()
        return [_to_execution(r) for r in rows]

    async def find_child_executions(
        self, parent_execution_id: str
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_executions WHERE parent_execution_id = $1 ORDER BY created_at",
                parent_execution_id,
            )
        finally:
            await conn.close()
        return [_to_execution(r) for r in rows]

    async def count_executions_by_status(
        self, workflow_name: str, since: datetime
    ) -> list[ExecutionStats]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS count FROM workflow_executions
                WHERE workflow_name = $1 AND created_at >= $2
                GROUP BY status
                """,
                workflow_name,
                since,
            )
        finally:
            await conn.close()
        return [ExecutionStats(status=r["status"], count=r["count"]) for r in rows]

    async def find_by_idempotency_key(
        self, idempotency_key: str, workflow_name: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_executions WHERE idempotency_key = $1 AND workflow_name = $2",
                idempotency_key,
                workflow_name,
            )
        finally:
            await conn.close()
        return _to_execution(row) if row else None

    @asynccontextmanager
    async def idempotency_claim(
        self, idempotency_key: str, workflow_name: str
    ) -> AsyncIterator[_PostgresClaim]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM workflow_executions
                    WHERE idempotency_key = $1 AND workflow_name = $2
                    FOR UPDATE
                    """,
                    idempotency_key,
                    workflow_name,
                )
                yield _PostgresClaim(conn, _to_execution(row) if row else None)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Step events
    async def insert_step_event(self, event: WorkflowStepEvent) -> None:
        data = event.model_dump()
        data["status"] = event.status.value
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_step_event ({', '.join(_STEP_COLUMNS)}) "
                f"VALUES ({', '.join(f'${i}' for i in range(1, len(_STEP_COLUMNS) + 1))})",
                *[data[col] for col in _STEP_COLUMNS],
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(str(e)) from e
        finally:
            await conn.close()

    async def get_step_event(
        self, execution_id: str, step_index: int
    ) -> WorkflowStepEvent | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_step_event WHERE execution_id = $1 AND step_index = $2",
                execution_id,
                step_index,
            )
        finally:
            await conn.close()
        return _to_step(row) if row else None

    async def update_step_event(self, event: WorkflowStepEvent) -> None:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE workflow_step_event
                SET status = $1, output_data = $2, error_message = $3, error_type = $4,
                    duration_ms = $5, completed_at = $6, version = version + 1
                WHERE execution_id = $7 AND step_index = $8 AND version = $9
                """,
                event.status.value,
                event.output_data,
                event.error_message,
                event.error_type,
                event.duration_ms,
                event.completed_at,
                event.execution_id,
                event.step_index,
                event.version,
            )
        finally:
            await conn.close()
        if status == "UPDATE 0":
            raise OptimisticLockError(
                f"Step event {event.execution_id}:{event.step_index} was modified concurrently"
            )
        event.version += 1

    async def list_step_events(self, execution_id: str) -> list[WorkflowStepEvent]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_step_event WHERE execution_id = $1 ORDER BY step_index",
                execution_id,
            )
        finally:
            await conn.close()
        return [_to_step(r) for r in rows]

    async def find_stale_running_steps(
        self, threshold: datetime
    ) -> list[WorkflowStepEvent]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_step_event WHERE status = $1 AND started_at < $2 ORDER BY started_at",
                StepEventStatus.RUNNING.value,
                threshold,
            )
        finally:
            await conn.close()
        return [_to_step(r) for r in rows]
