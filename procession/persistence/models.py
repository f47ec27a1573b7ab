"""Data models for persisted execution state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import utcnow

ExecutionStatus = Literal[
    "pending", "in_progress", "paused", "completed", "failed", "cancelled"
]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
ACTIVE_STATUSES = frozenset({"pending", "in_progress", "paused"})

# Fields the engine is allowed to change after creation.
UPDATABLE_FIELDS = frozenset({"current_step", "step_data", "status"})


class WorkflowExecution(BaseModel):
    """Persisted workflow execution record."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pattern_id: str
    user_id: str
    tenant_id: Optional[str] = None
    application_id: Optional[str] = None
    current_step: str
    step_data: dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
