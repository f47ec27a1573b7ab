"""In-memory implementation of the execution store."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import utcnow
from .models import ACTIVE_STATUSES, UPDATABLE_FIELDS, WorkflowExecution
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}

    # ------------------------------------------------------------------
    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        if execution.id in self._executions:
            raise ValueError(f"Execution {execution.id} already exists")
        self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def update(
        self, execution_id: str, **fields: Any
    ) -> WorkflowExecution | None:
        record = self._executions.get(execution_id)
        if record is None:
            return None
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        changes = {**fields, "updated_at": utcnow()}
        updated = record.model_copy(update=changes, deep=True)
        self._executions[execution_id] = WorkflowExecution.model_validate(
            updated.model_dump()
        )
        return self._executions[execution_id].model_copy(deep=True)

    async def list_by_user(
        self, user_id: str, tenant_id: str | None = None
    ) -> list[WorkflowExecution]:
        return [
            record.model_copy(deep=True)
            for record in self._executions.values()
            if record.user_id == user_id
            and (tenant_id is None or record.tenant_id == tenant_id)
        ]

    async def list_by_tenant(self, tenant_id: str) -> list[WorkflowExecution]:
        return [
            record.model_copy(deep=True)
            for record in self._executions.values()
            if record.tenant_id == tenant_id
        ]

    async def list_active(self) -> list[WorkflowExecution]:
        return [
            record.model_copy(deep=True)
            for record in self._executions.values()
            if record.status in ACTIVE_STATUSES
        ]
