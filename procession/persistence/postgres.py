"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from ..contracts import utcnow
from .models import ACTIVE_STATUSES, UPDATABLE_FIELDS, WorkflowExecution
from .repository import ExecutionStore

_COLUMNS = (
    "id, pattern_id, user_id, tenant_id, application_id, current_step, "
    "step_data, status, created_at, updated_at"
)


class PostgresExecutionStore(ExecutionStore):
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
                pattern_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                tenant_id TEXT,
                application_id TEXT,
                current_step TEXT NOT NULL,
                step_data JSONB,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_tenant ON workflow_executions (tenant_id)"
        )

    @staticmethod
    def _to_model(row: asyncpg.Record) -> WorkflowExecution:
        step_data = row["step_data"]
        if isinstance(step_data, str):
            step_data = json.loads(step_data)
        return WorkflowExecution(
            id=row["id"],
            pattern_id=row["pattern_id"],
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            application_id=row["application_id"],
            current_step=row["current_step"],
            step_data=step_data or {},
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def _fetch(self, query: str, *params: Any) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._to_model(r) for r in rows]

    # ------------------------------------------------------------------
    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_executions ({_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                execution.id,
                execution.pattern_id,
                execution.user_id,
                execution.tenant_id,
                execution.application_id,
                execution.current_step,
                json.dumps(execution.step_data),
                execution.status,
                execution.created_at,
                execution.updated_at,
            )
        finally:
            await conn.close()
        return execution.model_copy(deep=True)

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_executions WHERE id = $1", execution_id
        )
        return rows[0] if rows else None

    async def update(
        self, execution_id: str, **fields: Any
    ) -> WorkflowExecution | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            params.append(json.dumps(value) if name == "step_data" else value)
            assignments.append(f"{name} = ${len(params)}")
        params.append(utcnow())
        assignments.append(f"updated_at = ${len(params)}")
        params.append(execution_id)

        conn = await self._connect()
        try:
            await conn.execute(
                f"UPDATE workflow_executions SET {', '.join(assignments)} "
                f"WHERE id = ${len(params)}",
                *params,
            )
        finally:
            await conn.close()
        return await self.get(execution_id)

    async def list_by_user(
        self, user_id: str, tenant_id: str | None = None
    ) -> list[WorkflowExecution]:
        if tenant_id is None:
            return await self._fetch(
                f"SELECT {_COLUMNS} FROM workflow_executions WHERE user_id = $1 ORDER BY created_at",
                user_id,
            )
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_executions "
            "WHERE user_id = $1 AND tenant_id = $2 ORDER BY created_at",
            user_id,
            tenant_id,
        )

    async def list_by_tenant(self, tenant_id: str) -> list[WorkflowExecution]:
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_executions WHERE tenant_id = $1 ORDER BY created_at",
            tenant_id,
        )

    async def list_active(self) -> list[WorkflowExecution]:
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_executions "
            "WHERE status = ANY($1::text[]) ORDER BY created_at",
            sorted(ACTIVE_STATUSES),
        )
