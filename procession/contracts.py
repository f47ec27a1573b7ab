"""Core data contracts for procession workflows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue


# Step and condition payloads are JSON values: str, int, float, bool, None,
# lists and string-keyed maps of the same.
FieldValue = JsonValue
StepData = Dict[str, FieldValue]

StepType = Literal["manual", "automated", "approval", "integration", "condition"]
NotificationTrigger = Literal["step_start", "step_complete", "overdue", "escalation"]
Channel = Literal["email", "sms", "in_app", "slack", "webhook"]
Priority = Literal["low", "medium", "high", "urgent"]
WorkflowEventType = Literal[
    "step_started",
    "step_completed",
    "step_failed",
    "workflow_completed",
    "escalation_triggered",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowCondition(BaseModel):
    """A routing predicate on a step.

    An entry with only ``else_step`` set acts as the branch taken when no
    predicate matches.
    """

    model_config = ConfigDict(frozen=True)

    field: Optional[str] = None
    operator: Optional[str] = None
    value: FieldValue = None
    next_step: Optional[str] = None
    else_step: Optional[str] = None


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    rule: str
    message: str


class ExternalService(BaseModel):
    """Endpoint called by integration steps to validate step data."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    method: Literal["GET", "POST"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class WorkflowValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rules: List[ValidationRule] = Field(default_factory=list)
    external_service: Optional[ExternalService] = None


class NotificationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Channel = "email"
    trigger: NotificationTrigger
    recipients: List[str] = Field(default_factory=list)
    template: str = ""
    delay: Optional[int] = Field(default=None, description="Delay in minutes")


class EscalationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    after_hours: Optional[float] = None
    escalate_to: List[str] = Field(default_factory=list)
    notification: Optional[NotificationRule] = None


class WorkflowStep(BaseModel):
    """One node in a workflow pattern."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    type: StepType
    assignee_roles: List[str] = Field(default_factory=list)
    required_fields: List[str] = Field(default_factory=list)
    validation: Optional[WorkflowValidation] = None
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    notifications: List[NotificationRule] = Field(default_factory=list)
    sla_hours: Optional[float] = None
    escalation_rules: List[EscalationRule] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)

    @property
    def has_escalation(self) -> bool:
        """Return ``True`` when an SLA timer should be armed for this step."""
        return bool(self.sla_hours) and bool(self.escalation_rules)


class WorkflowTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: Literal["form_submit", "approval_granted", "timer", "external_event"]
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    start_step: str


class PatternMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    estimated_duration: float = 0
    complexity: Literal["simple", "medium", "complex"] = "medium"
    category: str = "general"
    tags: List[str] = Field(default_factory=list)


class WorkflowPattern(BaseModel):
    """Immutable workflow definition handed to the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    type: Literal["sequential", "parallel", "conditional", "approval_chain"] = (
        "sequential"
    )
    steps: List[WorkflowStep] = Field(default_factory=list)
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    metadata: PatternMetadata = Field(default_factory=PatternMetadata)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        """Return the position of ``step_id`` or ``-1`` when absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def next_in_sequence(self, step_id: str) -> Optional[WorkflowStep]:
        """Return the positional successor of ``step_id``, if any."""
        index = self.step_index(step_id)
        if index < 0 or index >= len(self.steps) - 1:
            return None
        return self.steps[index + 1]

    def progress_of(self, step_id: str) -> int:
        """Percent complete when ``step_id`` is current."""
        index = self.step_index(step_id)
        if index < 0 or not self.steps:
            return 0
        return int(index / len(self.steps) * 100 + 0.5)


class AssignmentRecord(BaseModel):
    step_id: str
    assignee: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowContext(BaseModel):
    """In-memory working state of an active execution."""

    execution_id: str
    pattern_id: str
    user_id: str
    tenant_id: Optional[str] = None
    application_id: Optional[str] = None
    current_step: str
    step_data: StepData = Field(default_factory=dict)
    global_data: StepData = Field(default_factory=dict)
    assignee_history: List[AssignmentRecord] = Field(default_factory=list)

    def merge(self, data: StepData) -> None:
        """Merge ``data`` into both step-scoped and cumulative data."""
        self.step_data = {**self.step_data, **data}
        self.global_data = {**self.global_data, **data}


class TaskAssignment(BaseModel):
    step_id: str
    assignee_id: str
    assignee_role: Optional[str] = None
    assigned_at: datetime
    due_at: datetime
    priority: Priority = "medium"


class WorkflowEvent(BaseModel):
    """Audit event emitted on every engine transition."""

    type: WorkflowEventType
    execution_id: str
    step_id: Optional[str] = None
    user_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    """Progress update delivered to subscribed observers."""

    type: Literal["workflow_execution_progress"] = "workflow_execution_progress"
    execution_id: str
    status: str
    current_step: str
    progress: int = Field(ge=0, le=100)
    error: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()


class NotificationRequest(BaseModel):
    """Outbound notification accepted by a notification sink."""

    channel: Channel = "email"
    recipients: List[str] = Field(default_factory=list)
    subject: str
    body: str = ""
    priority: Priority = "medium"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "NotificationRequest":
        return cls.model_validate_json(data)
