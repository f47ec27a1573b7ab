"""Store abstraction for execution state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import WorkflowExecution


class ExecutionStore(Protocol):
    """Protocol for execution persistence backends."""

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution and return the stored record."""

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update(
        self, execution_id: str, **fields: Any
    ) -> WorkflowExecution | None:
        """Apply a partial update and return the stored record."""

    async def list_by_user(
        self, user_id: str, tenant_id: str | None = None
    ) -> list[WorkflowExecution]:
        """Return a user's executions, optionally restricted to one tenant."""

    async def list_by_tenant(self, tenant_id: str) -> list[WorkflowExecution]:
        """Return every execution belonging to ``tenant_id``."""

    async def list_active(self) -> list[WorkflowExecution]:
        """Return executions that are neither completed, failed nor cancelled."""
