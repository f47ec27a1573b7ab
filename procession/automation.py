"""Process automation layer on top of the execution engine.

The layer wraps the engine's advance path with advisor-assisted validation
and routing, evaluates escalation after every step, retries failed steps from
a bounded recovery queue and buffers every outbound notification for a
background sender.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Literal,
    Optional,
    Set,
    Tuple,
)

from pydantic import BaseModel, Field

from .advisor import DecisionAdvisor, GuardedAdvisor, RoutingSuggestion
from .config import AutomationSettings
from .contracts import (
    NotificationRequest,
    StepData,
    WorkflowEvent,
    WorkflowPattern,
    WorkflowStep,
    utcnow,
)
from .engine import ExecutionEngine
from .exceptions import (
    ConfigurationError,
    ExecutionNotFound,
    ProcessionError,
    ValidationFailed,
)
from .notifications import NotificationSink

if TYPE_CHECKING:
    from .monitor import ProcessMonitor

logger = logging.getLogger(__name__)

ProcessStatus = Literal["running", "paused", "completed", "failed", "cancelled"]

# Step types that finish without a person acting on them.
AUTOMATED_STEP_TYPES = frozenset({"automated", "integration", "condition"})
# Failures that retrying the step cannot fix.
NON_RECOVERABLE_ERRORS = frozenset(
    {"ValidationFailed", "ConfigurationError", "PatternStepNotFound", "cancelled"}
)


class EscalationRecord(BaseModel):
    step_id: str
    reason: str
    escalated_to: str
    escalated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


class ProcessMetrics(BaseModel):
    """Per-process metrics. Durations are in seconds."""

    total_duration: float = 0.0
    step_durations: Dict[str, float] = Field(default_factory=dict)
    ai_decision_accuracy: float = 0.0
    validation_success_rate: float = 0.0
    escalation_rate: float = 0.0
    automation_efficiency: float = 0.0


class ProcessExecution(BaseModel):
    """Automation-level tracking of one workflow execution."""

    execution_id: str
    workflow_id: str
    organization_id: str
    user_id: str
    status: ProcessStatus = "running"
    current_step: str
    progress: int = 0
    ai_decisions_used: int = 0
    routing_requests: int = 0
    validations_run: int = 0
    validations_passed: int = 0
    automated_steps: int = 0
    validation_errors: List[str] = Field(default_factory=list)
    escalations: List[EscalationRecord] = Field(default_factory=list)
    last_error: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    metrics: ProcessMetrics = Field(default_factory=ProcessMetrics)

    @property
    def is_active(self) -> bool:
        return self.status in ("running", "paused")

    def open_escalations(self) -> List[EscalationRecord]:
        return [record for record in self.escalations if not record.resolved]


class RecoveryEntry(BaseModel):
    execution_id: str
    failed_step: str
    error: str
    retry_attempt: int = 0
    recovery_strategy: Literal["retry"] = "retry"
    enqueued_at: datetime = Field(default_factory=utcnow)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def compute_metrics(process: ProcessExecution) -> ProcessMetrics:
    """Derive the final metrics of ``process``.

    Ratios are clamped to ``[0, 1]``; a process with more escalations than
    automated steps reports zero efficiency rather than a negative one.
    """
    metrics = process.metrics.model_copy(deep=True)
    total_steps = len(metrics.step_durations)
    escalations = len(process.escalations)
    if process.end_time is not None:
        metrics.total_duration = (process.end_time - process.start_time).total_seconds()
    if total_steps:
        metrics.automation_efficiency = _clamp(
            (process.automated_steps - escalations) / total_steps
        )
        metrics.escalation_rate = _clamp(escalations / total_steps)
    else:
        metrics.automation_efficiency = 0.0
        metrics.escalation_rate = 0.0
    metrics.ai_decision_accuracy = (
        process.ai_decisions_used / process.routing_requests
        if process.routing_requests
        else 0.0
    )
    metrics.validation_success_rate = (
        process.validations_passed / process.validations_run
        if process.validations_run
        else 1.0
    )
    return metrics


class ProcessAutomationEngine:
    """Decorates an :class:`ExecutionEngine` with automation behavior.

    Every query and command takes the organization id and refuses to act on a
    process belonging to another organization.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        advisor: Optional[DecisionAdvisor] = None,
        settings: Optional[AutomationSettings] = None,
        *,
        sink: Optional[NotificationSink] = None,
        monitor: Optional["ProcessMonitor"] = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or AutomationSettings()
        self.advisor = advisor or GuardedAdvisor()
        self.sink = sink or engine.sink
        self.monitor = monitor
        self._processes: Dict[str, ProcessExecution] = {}
        self._finished: Dict[str, ProcessExecution] = {}
        self._patterns: Dict[str, WorkflowPattern] = {}
        self._step_started: Dict[Tuple[str, str], float] = {}
        self._milestones: Dict[str, Set[int]] = {}
        self._recovery: Dict[str, RecoveryEntry] = {}
        self._notifications: Deque[NotificationRequest] = deque()
        self._tasks: List[asyncio.Task] = []
        engine.add_listener(self._on_event)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def start_automated_process(
        self,
        pattern: WorkflowPattern,
        user_id: str,
        application_id: Optional[str],
        organization_id: str,
        initial_data: Optional[StepData] = None,
    ) -> ProcessExecution:
        """Start ``pattern`` for ``organization_id`` and track it."""
        if not organization_id:
            raise ValueError("organization_id is required")
        if not pattern.steps:
            raise ConfigurationError(f"Workflow pattern '{pattern.id}' has no steps")

        execution_id = str(uuid.uuid4())
        process = ProcessExecution(
            execution_id=execution_id,
            workflow_id=pattern.id,
            organization_id=organization_id,
            user_id=user_id,
            current_step=pattern.steps[0].id,
        )
        self._processes[execution_id] = process
        self._patterns[execution_id] = pattern
        self._milestones[execution_id] = set()

        if pattern.triggers:
            self._queue_notification(
                NotificationRequest(
                    channel="email",
                    recipients=[user_id],
                    subject=f"Process Started: {pattern.name}",
                    body=f"Your {pattern.name} workflow has been started and is now processing.",
                    priority="medium",
                    metadata={"execution_id": execution_id, "workflow_id": pattern.id},
                )
            )

        try:
            await self.engine.start_workflow(
                pattern,
                user_id,
                application_id,
                initial_data,
                tenant_id=organization_id,
                execution_id=execution_id,
            )
        except Exception:
            if (
                execution_id in self._processes
                and execution_id not in self._recovery
                and not self.engine.is_active(execution_id)
            ):
                await self._finalize(process, "failed")
            raise
        await self._report(process)
        logger.info(
            f"Automated process {pattern.id} started execution_id={execution_id} "
            f"organization={organization_id}"
        )
        return process.model_copy(deep=True)

    async def advance_process(
        self,
        organization_id: str,
        execution_id: str,
        step_data: Optional[StepData] = None,
        user_id: Optional[str] = None,
    ) -> ProcessExecution:
        """Advance a process through the engine with advisor assistance.

        Raises:
            ExecutionNotFound: If the process is unknown to this organization.
            ValidationFailed: If the engine or the advisor rejects the data.
        """
        process = self._require_active(organization_id, execution_id)
        data = dict(step_data or {})
        pattern = self.engine.get_execution_pattern(execution_id)
        context = self.engine.get_context(execution_id)
        step = pattern.get_step(context.current_step)

        override: Optional[str] = None
        if self.settings.enable_ai_decisions and step is not None:
            verdict = await self.advisor.validate(data, step, context)
            if verdict is not None:
                process.validations_run += 1
                errors = verdict.errors
                if errors:
                    messages = [issue.message for issue in errors]
                    process.validation_errors.extend(messages)
                    error = ValidationFailed(
                        f"Validation failed: {', '.join(messages)}",
                        fields=[issue.field for issue in errors],
                        execution_id=execution_id,
                        step_id=step.id,
                    )
                    await self.engine.fail_workflow(execution_id, error)
                    raise error
                process.validations_passed += 1
                for issue in verdict.issues:
                    logger.info(
                        f"Advisor {issue.severity} on {issue.field} for "
                        f"execution_id={execution_id}: {issue.message}"
                    )

            process.routing_requests += 1
            suggestion = await self.advisor.route(context, pattern, step, data)
            if self._usable_route(suggestion, pattern):
                override = suggestion.next_step
                process.ai_decisions_used += 1
            elif suggestion is not None:
                logger.warning(
                    f"Ignoring routing suggestion {suggestion.next_step!r} "
                    f"(confidence {suggestion.confidence}) for execution_id={execution_id}"
                )

        await self.engine.advance_workflow(
            execution_id, data, user_id, next_step_override=override
        )
        # advancing resumes a paused execution
        if process.status == "paused" and not self.engine.is_paused(execution_id):
            process.status = "running"

        if process.is_active and step is not None and self.engine.is_active(execution_id):
            await self._check_escalation(process, step, data)
        if step is not None:
            self._progress_notification(process, step.name)
        await self._report(process)
        return process.model_copy(deep=True)

    async def pause_process(self, organization_id: str, execution_id: str) -> None:
        process = self._require_active(organization_id, execution_id)
        await self.engine.pause_workflow(execution_id)
        process.status = "paused"
        await self._report(process)

    async def resume_process(self, organization_id: str, execution_id: str) -> None:
        process = self._require_active(organization_id, execution_id)
        process.status = "running"
        await self.engine.resume_workflow(execution_id)
        await self._report(process)

    async def cancel_process(
        self, organization_id: str, execution_id: str, reason: str = ""
    ) -> None:
        self._require_active(organization_id, execution_id)
        await self.engine.cancel_workflow(execution_id, reason=reason)

    async def resolve_escalation(
        self,
        organization_id: str,
        execution_id: str,
        step_id: str,
        resolution: str,
    ) -> Optional[EscalationRecord]:
        """Mark the oldest open escalation of ``step_id`` resolved."""
        process = self._find(organization_id, execution_id)
        for record in process.escalations:
            if record.step_id == step_id and not record.resolved:
                record.resolved_at = utcnow()
                record.resolution = resolution
                await self._report(process)
                return record.model_copy()
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_process(self, organization_id: str, execution_id: str) -> ProcessExecution:
        return self._find(organization_id, execution_id).model_copy(deep=True)

    def list_active_processes(self, organization_id: str) -> List[ProcessExecution]:
        return [
            process.model_copy(deep=True)
            for process in self._processes.values()
            if process.organization_id == organization_id
        ]

    def list_processes(
        self, organization_id: str, status: Optional[ProcessStatus] = None
    ) -> List[ProcessExecution]:
        processes = [*self._processes.values(), *self._finished.values()]
        return [
            process.model_copy(deep=True)
            for process in processes
            if process.organization_id == organization_id
            and (status is None or process.status == status)
        ]

    def recovery_entries(self, organization_id: str) -> List[RecoveryEntry]:
        return [
            entry.model_copy()
            for execution_id, entry in self._recovery.items()
            if self._owner(execution_id) == organization_id
        ]

    @property
    def pending_notifications(self) -> int:
        return len(self._notifications)

    def _owner(self, execution_id: str) -> Optional[str]:
        process = self._processes.get(execution_id) or self._finished.get(execution_id)
        return process.organization_id if process else None

    def _find(self, organization_id: str, execution_id: str) -> ProcessExecution:
        process = self._processes.get(execution_id) or self._finished.get(execution_id)
        if process is None or process.organization_id != organization_id:
            raise ExecutionNotFound(execution_id)
        return process

    def _require_active(self, organization_id: str, execution_id: str) -> ProcessExecution:
        process = self._processes.get(execution_id)
        if process is None or process.organization_id != organization_id:
            raise ExecutionNotFound(execution_id)
        return process

    def _usable_route(
        self, suggestion: Optional[RoutingSuggestion], pattern: WorkflowPattern
    ) -> bool:
        return (
            suggestion is not None
            and bool(suggestion.next_step)
            and pattern.get_step(suggestion.next_step) is not None
            and suggestion.confidence >= self.settings.routing_confidence_threshold
        )

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------
    async def _on_event(self, event: WorkflowEvent) -> None:
        process = self._processes.get(event.execution_id)
        if process is None:
            return
        pattern = self._patterns[event.execution_id]
        key = (event.execution_id, event.step_id or "")

        if event.type == "step_started":
            self._step_started[key] = time.monotonic()
            process.current_step = event.step_id or process.current_step
            process.progress = pattern.progress_of(process.current_step)
        elif event.type == "step_completed":
            started = self._step_started.pop(key, None)
            duration = time.monotonic() - started if started is not None else 0.0
            process.metrics.step_durations[event.step_id] = duration
            step = pattern.get_step(event.step_id) if event.step_id else None
            if step is not None and step.type in AUTOMATED_STEP_TYPES:
                process.automated_steps += 1
        elif event.type == "escalation_triggered":
            targets = event.data.get("escalated_to") or []
            process.escalations.append(
                EscalationRecord(
                    step_id=event.step_id or process.current_step,
                    reason=event.data.get("reason", "SLA exceeded"),
                    escalated_to=", ".join(targets),
                )
            )
        elif event.type == "workflow_completed":
            process.progress = 100
            await self._finalize(process, "completed")
            return
        elif event.type == "step_failed":
            await self._on_failure(process, event)
            return
        await self._report(process)

    async def _on_failure(self, process: ProcessExecution, event: WorkflowEvent) -> None:
        error_type = event.data.get("error_type", "")
        error = event.data.get("error", "")
        if error_type == "cancelled":
            self._recovery.pop(process.execution_id, None)
            await self._finalize(process, "cancelled")
            return

        process.last_error = error
        failed_step = event.step_id or process.current_step
        self._queue_notification(
            NotificationRequest(
                channel="email",
                recipients=[process.user_id],
                subject=f"Process Error: {process.workflow_id}",
                body=f"Step '{failed_step}' failed with error: {error}",
                priority="high",
                metadata={"execution_id": process.execution_id, "error": error},
            )
        )

        recoverable = error_type not in NON_RECOVERABLE_ERRORS
        if self.settings.enable_auto_recovery and recoverable:
            entry = self._recovery.get(process.execution_id)
            if entry is None:
                self._recovery[process.execution_id] = RecoveryEntry(
                    execution_id=process.execution_id,
                    failed_step=failed_step,
                    error=error,
                )
                logger.info(
                    f"Queued recovery for execution_id={process.execution_id} step={failed_step}"
                )
            else:
                entry.error = error
                entry.failed_step = failed_step
            await self._report(process)
            return

        self._recovery.pop(process.execution_id, None)
        await self._finalize(process, "failed")

    async def _finalize(self, process: ProcessExecution, status: ProcessStatus) -> None:
        execution_id = process.execution_id
        process.status = status
        process.end_time = utcnow()
        process.metrics = compute_metrics(process)

        self._processes.pop(execution_id, None)
        self._patterns.pop(execution_id, None)
        self._milestones.pop(execution_id, None)
        for key in [k for k in self._step_started if k[0] == execution_id]:
            del self._step_started[key]
        self._finished[execution_id] = process

        if status == "completed":
            minutes = round(process.metrics.total_duration / 60)
            self._queue_notification(
                NotificationRequest(
                    channel="email",
                    recipients=[process.user_id],
                    subject=f"Process Completed: {process.workflow_id}",
                    body=f"Your workflow has been completed successfully in {minutes} minutes.",
                    priority="medium",
                    metadata={
                        "execution_id": execution_id,
                        "duration": process.metrics.total_duration,
                        "efficiency": process.metrics.automation_efficiency,
                    },
                )
            )
        logger.info(
            f"Process execution_id={execution_id} {status}: "
            f"efficiency={process.metrics.automation_efficiency:.2f} "
            f"escalation_rate={process.metrics.escalation_rate:.2f}"
        )
        await self._report(process)

    async def _report(self, process: ProcessExecution) -> None:
        if self.monitor is None or not self.settings.enable_realtime_monitoring:
            return
        try:
            await self.monitor.update_process(process)
        except Exception as e:
            logger.error(f"Monitor update failed for {process.execution_id}: {e}")

    # ------------------------------------------------------------------
    # Escalation and progress
    # ------------------------------------------------------------------
    async def _check_escalation(
        self,
        process: ProcessExecution,
        step: WorkflowStep,
        data: StepData,
    ) -> None:
        elapsed_seconds = (utcnow() - process.start_time).total_seconds()
        elapsed_hours = elapsed_seconds / self.engine.settings.seconds_per_hour
        context = self.engine.get_context(process.execution_id)
        verdict = await self.advisor.assess_escalation(
            context, step, {**context.global_data, **data}, elapsed_hours
        )
        if verdict is None or not verdict.should_escalate:
            return

        for record in process.open_escalations():
            if record.step_id == step.id and record.reason == verdict.reason:
                return

        process.escalations.append(
            EscalationRecord(
                step_id=step.id,
                reason=verdict.reason,
                escalated_to=verdict.escalate_to,
            )
        )
        self._queue_notification(
            NotificationRequest(
                channel="email",
                recipients=[verdict.escalate_to],
                subject=f"Process Escalation Required: {process.workflow_id}",
                body=f"Process step '{step.name}' requires your attention. Reason: {verdict.reason}",
                priority="urgent",
                metadata={"execution_id": process.execution_id, "step_id": step.id},
            )
        )
        logger.warning(
            f"Escalated execution_id={process.execution_id} step={step.id} "
            f"to {verdict.escalate_to}: {verdict.reason}"
        )

    def _progress_notification(self, process: ProcessExecution, step_name: str) -> None:
        milestones = self._milestones.get(process.execution_id)
        if milestones is None or process.progress % 25 != 0:
            return
        if process.progress in milestones:
            return
        milestones.add(process.progress)
        self._queue_notification(
            NotificationRequest(
                channel="email",
                recipients=[process.user_id],
                subject=f"Process Update: {process.progress}% Complete",
                body=(
                    f"Your workflow is {process.progress}% complete. "
                    f"Currently processing: {step_name}"
                ),
                priority="low",
                metadata={
                    "execution_id": process.execution_id,
                    "progress": process.progress,
                },
            )
        )

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------
    def _queue_notification(self, request: NotificationRequest) -> None:
        self._notifications.append(request)

    async def drain_notifications(self) -> int:
        """Send every queued notification; failures are logged and dropped."""
        sent = 0
        while self._notifications:
            request = self._notifications.popleft()
            try:
                await self.sink.send(request)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send notification '{request.subject}': {e}")
        return sent

    async def process_recovery_queue(self) -> int:
        """Attempt one retry for every queued recovery entry.

        Returns the number of executions recovered.
        """
        recovered = 0
        for entry in list(self._recovery.values()):
            try:
                if await self._attempt_recovery(entry):
                    recovered += 1
            except Exception as e:
                logger.error(f"Recovery failed for {entry.execution_id}: {e}")
        return recovered

    async def _attempt_recovery(self, entry: RecoveryEntry) -> bool:
        execution_id = entry.execution_id
        process = self._processes.get(execution_id)
        if entry.retry_attempt >= self.settings.max_retry_attempts:
            self._recovery.pop(execution_id, None)
            logger.error(
                f"Recovery failed for {execution_id} after {entry.retry_attempt} attempts"
            )
            if process is not None:
                await self._finalize(process, "failed")
            return False

        entry.retry_attempt += 1
        logger.info(
            f"Attempting recovery for {execution_id}, attempt {entry.retry_attempt}"
        )
        try:
            await self.engine.retry_execution(execution_id)
        except ExecutionNotFound:
            self._recovery.pop(execution_id, None)
            if process is not None:
                await self._finalize(process, "failed")
            return False
        except ProcessionError as e:
            entry.error = e.message
            logger.warning(f"Recovery attempt {entry.retry_attempt} for {execution_id} failed: {e}")
            return False

        self._recovery.pop(execution_id, None)
        if process is not None:
            process.status = "running"
            process.last_error = None
            await self._report(process)
        return True

    def collect_metrics(self) -> Dict[str, int]:
        """Log and return a snapshot of process counts."""
        snapshot = {
            "active": len(self._processes),
            "completed": sum(1 for p in self._finished.values() if p.status == "completed"),
            "failed": sum(1 for p in self._finished.values() if p.status == "failed"),
            "recovering": len(self._recovery),
            "queued_notifications": len(self._notifications),
        }
        total = snapshot["active"] + len(self._finished)
        logger.info(
            f"Process Automation Metrics: {snapshot['completed']}/{total} completed, "
            f"{snapshot['recovering']} recovering"
        )
        return snapshot

    async def _every(self, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"Background job {getattr(job, '__name__', job)} failed: {e}")

    async def _collect_metrics_job(self) -> None:
        self.collect_metrics()

    def start(self) -> None:
        """Start the notification, recovery and metrics background tasks."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._every(self.settings.notification_interval_seconds, self.drain_notifications)
            ),
            asyncio.create_task(
                self._every(self.settings.recovery_interval_seconds, self.process_recovery_queue)
            ),
            asyncio.create_task(
                self._every(self.settings.metrics_interval_seconds, self._collect_metrics_job)
            ),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.drain_notifications()
