"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import utcnow
from .models import ACTIVE_STATUSES, UPDATABLE_FIELDS, WorkflowExecution
from .repository import ExecutionStore

_COLUMNS = (
    "id, pattern_id, user_id, tenant_id, application_id, current_step, "
    "step_data, status, created_at, updated_at"
)


class SQLiteExecutionStore(ExecutionStore):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                pattern_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                tenant_id TEXT,
                application_id TEXT,
                current_step TEXT NOT NULL,
                step_data TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_tenant ON workflow_executions (tenant_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _to_model(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            pattern_id=row["pattern_id"],
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            application_id=row["application_id"],
            current_step=row["current_step"],
            step_data=json.loads(row["step_data"]) if row["step_data"] else {},
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Store API
    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_executions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.pattern_id,
            execution.user_id,
            execution.tenant_id,
            execution.application_id,
            execution.current_step,
            json.dumps(execution.step_data),
            execution.status,
            execution.created_at.isoformat(),
            execution.updated_at.isoformat(),
        )
        return execution.model_copy(deep=True)

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return self._to_model(row) if row else None

    async def update(
        self, execution_id: str, **fields: Any
    ) -> WorkflowExecution | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(json.dumps(value) if name == "step_data" else value)
        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())

        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_executions SET {', '.join(assignments)} WHERE id = ?",
            *params,
            execution_id,
        )
        return await self.get(execution_id)

    async def list_by_user(
        self, user_id: str, tenant_id: str | None = None
    ) -> list[WorkflowExecution]:
        if tenant_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_COLUMNS} FROM workflow_executions WHERE user_id = ? ORDER BY created_at",
                user_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_COLUMNS} FROM workflow_executions WHERE user_id = ? AND tenant_id = ? ORDER BY created_at",
                user_id,
                tenant_id,
            )
        return [self._to_model(r) for r in rows]

    async def list_by_tenant(self, tenant_id: str) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflow_executions WHERE tenant_id = ? ORDER BY created_at",
            tenant_id,
        )
        return [self._to_model(r) for r in rows]

    async def list_active(self) -> list[WorkflowExecution]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflow_executions WHERE status IN ({placeholders}) ORDER BY created_at",
            *sorted(ACTIVE_STATUSES),
        )
        return [self._to_model(r) for r in rows]
