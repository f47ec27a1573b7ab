"""Execution engine driving workflow patterns from start to completion."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from string import Template
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .broadcast import ProgressBroadcaster, progress_event
from .collaborators import (
    ApprovalRequest,
    ApprovalService,
    HttpIntegrationClient,
    InMemoryApprovalService,
    IntegrationClient,
    StaticUserDirectory,
    UserDirectory,
)
from .conditions import check_step_data, select_branch
from .config import EngineSettings
from .contracts import (
    AssignmentRecord,
    EscalationRule,
    NotificationRequest,
    StepData,
    TaskAssignment,
    WorkflowContext,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowPattern,
    WorkflowStep,
    utcnow,
)
from .exceptions import (
    ConfigurationError,
    ExecutionNotFound,
    ExternalServiceFailure,
    PatternStepNotFound,
    ProcessionError,
)
from .notifications import LoggingNotificationSink, NotificationSink
from .patterns import PatternRepository
from .persistence import ACTIVE_STATUSES, ExecutionStore, WorkflowExecution
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

EventListener = Callable[[WorkflowEvent], Awaitable[None]]

SYSTEM_USER = "system"
PRIORITIES = ("low", "medium", "high", "urgent")
RETRYABLE_STATUSES = ACTIVE_STATUSES | {"failed"}


class ExecutionEngine:
    """Owns the working state of every active execution.

    One instance is built at process start and injected into every consumer.
    Operations on the same execution id are serialized by a per-execution
    lock; different executions interleave freely.
    """

    def __init__(
        self,
        patterns: PatternRepository,
        store: ExecutionStore,
        sink: Optional[NotificationSink] = None,
        *,
        directory: Optional[UserDirectory] = None,
        approvals: Optional[ApprovalService] = None,
        integrations: Optional[IntegrationClient] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.patterns = patterns
        self.store = store
        self.sink = sink or LoggingNotificationSink()
        self.settings = settings or EngineSettings()
        self.directory = directory or StaticUserDirectory()
        self.approvals = approvals or InMemoryApprovalService()
        self.integrations = integrations or HttpIntegrationClient(
            timeout=self.settings.integration_timeout_seconds
        )
        self.broadcaster = broadcaster
        self.escalation_timers = TaskScheduler("escalation")
        self._continuations = TaskScheduler("continuation")
        self._contexts: Dict[str, WorkflowContext] = {}
        self._execution_patterns: Dict[str, WorkflowPattern] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._paused: Set[str] = set()
        self._listeners: List[EventListener] = []

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    async def start_workflow(
        self,
        pattern: WorkflowPattern,
        user_id: str,
        application_id: Optional[str] = None,
        initial_data: Optional[StepData] = None,
        *,
        tenant_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Persist a new execution and dispatch the pattern's first step.

        ``execution_id`` lets callers that track the execution elsewhere pick
        its id up front so they observe every event it emits.
        """
        if not pattern.steps:
            raise ConfigurationError(f"Workflow pattern '{pattern.id}' has no steps")

        data = dict(initial_data or {})
        first = pattern.steps[0]
        execution = await self.store.create(
            WorkflowExecution(
                **({"id": execution_id} if execution_id else {}),
                pattern_id=pattern.id,
                user_id=user_id,
                tenant_id=tenant_id,
                application_id=application_id,
                current_step=first.id,
                step_data=data,
                status="in_progress",
            )
        )
        context = WorkflowContext(
            execution_id=execution.id,
            pattern_id=pattern.id,
            user_id=user_id,
            tenant_id=tenant_id,
            application_id=application_id,
            current_step=first.id,
            step_data=dict(data),
            global_data=dict(data),
        )
        self._register(context, pattern)
        logger.info(
            f"Started workflow {pattern.id} execution_id={execution.id} user={user_id}"
        )

        async with self._lock_for(execution.id):
            try:
                await self._execute_step(context, pattern, first)
            except Exception as e:
                await self._fail(context, e)
                raise
            await self._publish(context, pattern, "in_progress")
        return await self.store.get(execution.id) or execution

    async def advance_workflow(
        self,
        execution_id: str,
        step_data: Optional[StepData] = None,
        user_id: Optional[str] = None,
        *,
        next_step_override: Optional[str] = None,
    ) -> Optional[WorkflowExecution]:
        """Complete the current step with ``step_data`` and move on.

        ``next_step_override`` takes precedence over the pattern's routing
        when it names a step of the pattern.

        Raises:
            ExecutionNotFound: If the execution is not active.
            PatternStepNotFound: If the current step left the pattern.
            ValidationFailed: If ``step_data`` violates the step's rules.
        """
        async with self._lock_for(execution_id):
            context = self._require_context(execution_id)
            self._paused.discard(execution_id)
            await self._advance(
                context, dict(step_data or {}), user_id or context.user_id, next_step_override
            )
        return await self.store.get(execution_id)

    async def pause_workflow(self, execution_id: str) -> None:
        """Stop timers and mark the execution pending; it stays queryable."""
        async with self._lock_for(execution_id):
            context = self._require_context(execution_id)
            self.escalation_timers.cancel_execution(execution_id)
            self._continuations.cancel_execution(execution_id)
            self._paused.add(execution_id)
            await self.store.update(execution_id, status="pending")
            await self._publish(context, self._execution_patterns[execution_id], "pending")
        logger.info(f"Paused execution_id={execution_id}")

    async def resume_workflow(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Re-dispatch the current step, rebuilding the context if needed."""
        record = await self._redispatch(execution_id, ACTIVE_STATUSES)
        logger.info(f"Resumed execution_id={execution_id}")
        return record

    async def retry_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Re-dispatch the current step of an active or failed execution."""
        record = await self._redispatch(execution_id, RETRYABLE_STATUSES)
        logger.info(f"Retried execution_id={execution_id}")
        return record

    async def cancel_workflow(
        self, execution_id: str, user_id: Optional[str] = None, reason: str = ""
    ) -> None:
        """Cancel and evict an active execution."""
        async with self._lock_for(execution_id):
            context = self._require_context(execution_id)
            pattern = self._execution_patterns[execution_id]
            self._evict(execution_id)
            await self.store.update(execution_id, status="cancelled")
            await self._emit(
                "step_failed",
                context,
                context.current_step,
                user_id or context.user_id,
                {"error": "Workflow cancelled", "error_type": "cancelled", "reason": reason},
            )
            await self._publish(context, pattern, "cancelled")
        logger.info(f"Cancelled execution_id={execution_id}")

    async def complete_workflow(self, execution_id: str) -> None:
        async with self._lock_for(execution_id):
            context = self._require_context(execution_id)
            await self._complete(context, self._execution_patterns[execution_id])

    async def fail_workflow(self, execution_id: str, error: Exception | str) -> None:
        async with self._lock_for(execution_id):
            context = self._require_context(execution_id)
            if not isinstance(error, Exception):
                error = ProcessionError(str(error))
            await self._fail(context, error)

    async def load_active_executions(self) -> int:
        """Rebuild contexts for every non-terminal execution in the store."""
        restored = 0
        for record in await self.store.list_active():
            if record.id in self._contexts:
                continue
            try:
                async with self._lock_for(record.id):
                    await self._restore(record.id, ACTIVE_STATUSES)
                restored += 1
            except ProcessionError as e:
                logger.warning(f"Skipping execution {record.id} on load: {e}")
        logger.info(f"Loaded {restored} active executions")
        return restored

    async def restore_execution(self, execution_id: str) -> WorkflowContext:
        """Rebuild the context of ``execution_id`` from the store without dispatching."""
        async with self._lock_for(execution_id):
            context = self._contexts.get(execution_id)
            if context is None:
                context = await self._restore(execution_id, ACTIVE_STATUSES)
            return context.model_copy(deep=True)

    async def shutdown(self) -> None:
        """Cancel every pending escalation timer and continuation."""
        await self.escalation_timers.shutdown()
        await self._continuations.shutdown()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_execution_status(self, execution_id: str) -> WorkflowExecution:
        record = await self.store.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def list_user_executions(
        self, user_id: str, tenant_id: Optional[str] = None
    ) -> List[WorkflowExecution]:
        return await self.store.list_by_user(user_id, tenant_id)

    async def list_tenant_executions(self, tenant_id: str) -> List[WorkflowExecution]:
        return await self.store.list_by_tenant(tenant_id)

    def get_context(self, execution_id: str) -> WorkflowContext:
        """Return a copy of the active context of ``execution_id``."""
        return self._require_context(execution_id).model_copy(deep=True)

    def get_execution_pattern(self, execution_id: str) -> WorkflowPattern:
        self._require_context(execution_id)
        return self._execution_patterns[execution_id]

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._contexts

    def is_paused(self, execution_id: str) -> bool:
        return execution_id in self._paused

    def active_execution_ids(self) -> List[str]:
        return list(self._contexts)

    def has_escalation_timer(self, execution_id: str, step_id: str) -> bool:
        return self.escalation_timers.has((execution_id, step_id))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(
        self,
        event_type: WorkflowEventType,
        context: WorkflowContext,
        step_id: Optional[str],
        user_id: str,
        data: Optional[dict] = None,
    ) -> None:
        event = WorkflowEvent(
            type=event_type,
            execution_id=context.execution_id,
            step_id=step_id,
            user_id=user_id,
            data=data or {},
        )
        logger.debug(
            f"Workflow event {event_type} execution_id={context.execution_id} step={step_id}"
        )
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Workflow event listener failed for {event_type}: {e}")

    async def _publish(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        if self.broadcaster is None:
            return
        event = progress_event(
            context.execution_id, pattern, context.current_step, status, error
        )
        try:
            await self.broadcaster.publish(context.execution_id, event)
        except Exception as e:
            logger.error(f"Progress broadcast failed for {context.execution_id}: {e}")

    # ------------------------------------------------------------------
    # Active set bookkeeping
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _lock_for(self, execution_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            # locks are kept only for registered executions
            if execution_id not in self._contexts and self._locks.get(execution_id) is lock:
                del self._locks[execution_id]

    def _require_context(self, execution_id: str) -> WorkflowContext:
        context = self._contexts.get(execution_id)
        if context is None:
            raise ExecutionNotFound(execution_id)
        return context

    def _register(self, context: WorkflowContext, pattern: WorkflowPattern) -> None:
        self._contexts[context.execution_id] = context
        self._execution_patterns[context.execution_id] = pattern

    def _evict(self, execution_id: str) -> None:
        self._contexts.pop(execution_id, None)
        self._execution_patterns.pop(execution_id, None)
        self._locks.pop(execution_id, None)
        self._paused.discard(execution_id)
        self.escalation_timers.cancel_execution(execution_id)
        self._continuations.cancel_execution(execution_id)

    async def _load_pattern(self, pattern_id: str, execution_id: str) -> WorkflowPattern:
        try:
            return await self.patterns.get_pattern(pattern_id)
        except KeyError as e:
            raise ConfigurationError(
                f"Unknown workflow pattern '{pattern_id}'", execution_id=execution_id
            ) from e

    async def _restore(
        self, execution_id: str, allowed_statuses: Iterable[str]
    ) -> WorkflowContext:
        record = await self.store.get(execution_id)
        if record is None or record.status not in allowed_statuses:
            raise ExecutionNotFound(execution_id)
        pattern = await self._load_pattern(record.pattern_id, execution_id)
        self._resolve_step(pattern, record.current_step, execution_id)

        context = WorkflowContext(
            execution_id=record.id,
            pattern_id=record.pattern_id,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            application_id=record.application_id,
            current_step=record.current_step,
            global_data=dict(record.step_data),
        )
        self._register(context, pattern)
        if record.status in ("pending", "paused"):
            self._paused.add(execution_id)
        logger.debug(f"Restored execution_id={execution_id} at step {record.current_step}")
        return context

    @staticmethod
    def _resolve_step(
        pattern: WorkflowPattern, step_id: str, execution_id: Optional[str]
    ) -> WorkflowStep:
        step = pattern.get_step(step_id)
        if step is None:
            raise PatternStepNotFound(step_id, pattern.id, execution_id)
        return step

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def _advance(
        self,
        context: WorkflowContext,
        step_data: StepData,
        user_id: str,
        next_step_override: Optional[str],
    ) -> None:
        execution_id = context.execution_id
        pattern = self._execution_patterns[execution_id]
        try:
            step = self._resolve_step(pattern, context.current_step, execution_id)
            check_step_data(step, step_data, execution_id)
            context.merge(step_data)
            self.escalation_timers.cancel((execution_id, step.id))
            self._continuations.cancel((execution_id, step.id))

            await self._emit("step_completed", context, step.id, user_id, {"step_data": step_data})
            await self._notify_step(context, step, "step_complete", [context.user_id])

            next_step = self._next_step(pattern, step, context, next_step_override)
            if next_step is None:
                await self._complete(context, pattern)
                return
            await self._enter_step(context, pattern, next_step)
        except Exception as e:
            await self._fail(context, e)
            raise
        await self._publish(context, pattern, "in_progress")

    def _next_step(
        self,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        context: WorkflowContext,
        override: Optional[str],
    ) -> Optional[WorkflowStep]:
        if pattern.step_index(step.id) == len(pattern.steps) - 1:
            return None

        if override:
            target = pattern.get_step(override)
            if target is not None:
                return target
            logger.warning(
                f"Ignoring routing override '{override}' for execution_id="
                f"{context.execution_id}: not a step of {pattern.id}"
            )

        if step.conditions:
            branch = select_branch(step.conditions, context.global_data)
            if branch is not None:
                return self._resolve_step(pattern, branch, context.execution_id)

        return pattern.next_in_sequence(step.id)

    async def _enter_step(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        depth: int = 0,
    ) -> None:
        context.current_step = step.id
        context.step_data = {}
        await self.store.update(
            context.execution_id,
            current_step=step.id,
            step_data=dict(context.global_data),
            status="in_progress",
        )
        await self._execute_step(context, pattern, step, depth)

    async def _redispatch(
        self, execution_id: str, allowed_statuses: Iterable[str]
    ) -> Optional[WorkflowExecution]:
        async with self._lock_for(execution_id):
            context = self._contexts.get(execution_id)
            if context is None:
                context = await self._restore(execution_id, allowed_statuses)
            pattern = self._execution_patterns[execution_id]
            self._paused.discard(execution_id)
            try:
                step = self._resolve_step(pattern, context.current_step, execution_id)
                await self.store.update(execution_id, status="in_progress")
                await self._execute_step(context, pattern, step)
            except Exception as e:
                await self._fail(context, e)
                raise
            await self._publish(context, pattern, "in_progress")
        return await self.store.get(execution_id)

    async def _complete(self, context: WorkflowContext, pattern: WorkflowPattern) -> None:
        execution_id = context.execution_id
        self._evict(execution_id)
        await self.store.update(
            execution_id, status="completed", step_data=dict(context.global_data)
        )
        await self._emit(
            "workflow_completed",
            context,
            context.current_step,
            context.user_id,
            {"final_data": dict(context.global_data)},
        )
        await self._send(
            NotificationRequest(
                channel="email",
                recipients=[context.user_id],
                subject=f"Workflow completed: {pattern.name}",
                body=f"Your {pattern.name} workflow has completed.",
                priority="medium",
                metadata={"execution_id": execution_id, "pattern_id": pattern.id},
            )
        )
        await self._publish(context, pattern, "completed")
        logger.info(f"Completed workflow {pattern.id} execution_id={execution_id}")

    async def _fail(self, context: WorkflowContext, error: Exception) -> None:
        execution_id = context.execution_id
        pattern = self._execution_patterns.get(execution_id)
        if isinstance(error, ProcessionError) and error.execution_id is None:
            error.execution_id = execution_id
        message = getattr(error, "message", None) or str(error)
        step_id = getattr(error, "step_id", None) or context.current_step

        self._evict(execution_id)
        try:
            await self.store.update(execution_id, status="failed")
        except Exception as e:
            logger.error(f"Could not persist failure of execution_id={execution_id}: {e}")

        await self._emit(
            "step_failed",
            context,
            step_id,
            context.user_id,
            {"error": message, "error_type": type(error).__name__},
        )
        if pattern is not None:
            await self._publish(context, pattern, "failed", error=message)
        logger.error(f"Workflow execution_id={execution_id} failed at {step_id}: {message}")

    # ------------------------------------------------------------------
    # Step dispatch
    # ------------------------------------------------------------------
    async def _execute_step(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        depth: int = 0,
    ) -> None:
        await self._emit(
            "step_started", context, step.id, context.user_id, {"step_type": step.type}
        )
        if step.has_escalation:
            self._arm_escalation(context, step)

        if step.type == "manual":
            await self._execute_manual(context, step)
        elif step.type == "automated":
            await self._execute_automated(context, step)
        elif step.type == "approval":
            await self._execute_approval(context, step)
        elif step.type == "integration":
            await self._execute_integration(context, step)
        elif step.type == "condition":
            await self._execute_condition(context, pattern, step, depth)
        else:
            raise ConfigurationError(
                f"Unsupported step type '{step.type}'",
                execution_id=context.execution_id,
                step_id=step.id,
            )

    async def _execute_manual(self, context: WorkflowContext, step: WorkflowStep) -> None:
        assignment = await self._assign_task(context, step)
        context.assignee_history.append(
            AssignmentRecord(step_id=step.id, assignee=assignment.assignee_id)
        )
        await self._notify_step(
            context,
            step,
            "step_start",
            [assignment.assignee_id],
            always=True,
            metadata={
                "due_at": assignment.due_at.isoformat(),
                "priority": assignment.priority,
            },
        )

    async def _execute_automated(self, context: WorkflowContext, step: WorkflowStep) -> None:
        stamp = int(time.time() * 1000)
        outputs: StepData = {name: f"automated_{name}_{stamp}" for name in step.outputs}
        context.merge(outputs)
        self._schedule_continuation(
            context, step, outputs, self.settings.automated_settle_seconds
        )

    async def _execute_approval(self, context: WorkflowContext, step: WorkflowStep) -> None:
        approvers = await self.directory.find_approvers(step.assignee_roles)
        sla_hours = step.sla_hours or self.settings.default_sla_hours
        for approver in approvers:
            await self.approvals.request_approval(
                ApprovalRequest(
                    execution_id=context.execution_id,
                    step_id=step.id,
                    requester_id=context.user_id,
                    approver_id=approver,
                    tenant_id=context.tenant_id,
                    sla_hours=sla_hours,
                )
            )
            context.assignee_history.append(
                AssignmentRecord(step_id=step.id, assignee=approver)
            )
        await self._notify_step(context, step, "step_start", approvers, always=True)

    async def _execute_integration(
        self, context: WorkflowContext, step: WorkflowStep
    ) -> None:
        service = step.validation.external_service if step.validation else None
        if service is None:
            logger.info(
                f"Integration step {step.id} has no external service; "
                f"execution_id={context.execution_id} waits for an external advance"
            )
            return

        try:
            result = await asyncio.wait_for(
                self.integrations.call(service, dict(context.global_data)),
                self.settings.integration_timeout_seconds,
            )
        except ExternalServiceFailure as e:
            raise ExternalServiceFailure(
                e.message, execution_id=context.execution_id, step_id=step.id
            ) from e
        except Exception as e:
            raise ExternalServiceFailure(
                f"External service {service.endpoint} failed: {e}",
                execution_id=context.execution_id,
                step_id=step.id,
            ) from e

        data: StepData = {"validation_result": result}
        context.merge(data)
        self._schedule_continuation(
            context, step, data, self.settings.integration_settle_seconds
        )

    async def _execute_condition(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        depth: int,
    ) -> None:
        execution_id = context.execution_id
        if not step.conditions:
            raise ConfigurationError(
                f"Condition step '{step.id}' has no conditions",
                execution_id=execution_id,
                step_id=step.id,
            )
        if depth >= len(pattern.steps):
            raise ConfigurationError(
                "Condition steps form a cycle", execution_id=execution_id, step_id=step.id
            )

        branch_id = select_branch(step.conditions, context.global_data)
        if branch_id is not None:
            branch = self._resolve_step(pattern, branch_id, execution_id)
        else:
            branch = pattern.next_in_sequence(step.id)
            if branch is None:
                raise ConfigurationError(
                    f"Condition step '{step.id}' matched no branch and has no successor",
                    execution_id=execution_id,
                    step_id=step.id,
                )

        self.escalation_timers.cancel((execution_id, step.id))
        await self._emit(
            "step_completed", context, step.id, SYSTEM_USER, {"branch": branch.id}
        )
        await self._enter_step(context, pattern, branch, depth + 1)

    async def _assign_task(
        self, context: WorkflowContext, step: WorkflowStep
    ) -> TaskAssignment:
        role = step.assignee_roles[0] if step.assignee_roles else None
        assignee = await self.directory.resolve_assignee(role, context)
        assigned_at = utcnow()
        sla_hours = step.sla_hours or self.settings.default_sla_hours
        priority = context.global_data.get("priority")
        return TaskAssignment(
            step_id=step.id,
            assignee_id=assignee,
            assignee_role=role,
            assigned_at=assigned_at,
            due_at=assigned_at + timedelta(hours=sla_hours),
            priority=priority if priority in PRIORITIES else "medium",
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _arm_escalation(self, context: WorkflowContext, step: WorkflowStep) -> None:
        execution_id = context.execution_id
        delay = (step.sla_hours or 0) * self.settings.seconds_per_hour
        self.escalation_timers.schedule(
            (execution_id, step.id),
            delay,
            lambda: self._on_escalation(execution_id, step.id),
        )

    async def _on_escalation(self, execution_id: str, step_id: str) -> None:
        async with self._lock_for(execution_id):
            context = self._contexts.get(execution_id)
            if context is None or context.current_step != step_id:
                return
            step = self._execution_patterns[execution_id].get_step(step_id)
            if step is None:
                return
            logger.warning(
                f"SLA of {step.sla_hours}h exceeded for execution_id={execution_id} step={step_id}"
            )
            for rule in step.escalation_rules:
                await self._send_escalation(context, step, rule)
                await self._emit(
                    "escalation_triggered",
                    context,
                    step.id,
                    context.user_id,
                    {
                        "escalation_level": 1,
                        "escalated_to": list(rule.escalate_to),
                        "reason": "SLA exceeded",
                        "sla_hours": step.sla_hours,
                    },
                )

    def _schedule_continuation(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        data: StepData,
        delay: float,
    ) -> None:
        execution_id = context.execution_id
        self._continuations.schedule(
            (execution_id, step.id),
            delay,
            lambda: self._continue(execution_id, step.id, data),
        )

    async def _continue(self, execution_id: str, step_id: str, data: StepData) -> None:
        async with self._lock_for(execution_id):
            context = self._contexts.get(execution_id)
            if (
                context is None
                or context.current_step != step_id
                or execution_id in self._paused
            ):
                logger.debug(f"Dropping stale continuation for {execution_id}/{step_id}")
                return
            try:
                await self._advance(context, data, SYSTEM_USER, None)
            except Exception as e:
                logger.error(f"Automatic advance of execution_id={execution_id} failed: {e}")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    async def _send(self, request: NotificationRequest) -> None:
        try:
            await self.sink.send(request)
        except Exception as e:
            logger.error(f"Failed to send notification '{request.subject}': {e}")

    @staticmethod
    def _render(template: str, context: WorkflowContext, step: WorkflowStep) -> str:
        values = {key: str(value) for key, value in context.global_data.items()}
        values.update(
            execution_id=context.execution_id,
            user_id=context.user_id,
            step_id=step.id,
            step_name=step.name,
        )
        return Template(template).safe_substitute(values)

    async def _notify_step(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        trigger: str,
        default_recipients: List[str],
        always: bool = False,
        metadata: Optional[dict] = None,
    ) -> None:
        base_metadata = {
            "execution_id": context.execution_id,
            "step_id": step.id,
            "trigger": trigger,
            **(metadata or {}),
        }
        rules = [rule for rule in step.notifications if rule.trigger == trigger]
        if not rules and always and default_recipients:
            await self._send(
                NotificationRequest(
                    channel="in_app",
                    recipients=list(default_recipients),
                    subject=f"Action required: {step.name}",
                    body=step.description or f"Step '{step.name}' is waiting for you.",
                    priority=metadata.get("priority", "medium") if metadata else "medium",
                    metadata=base_metadata,
                )
            )
            return

        for rule in rules:
            await self._send(
                NotificationRequest(
                    channel=rule.type,
                    recipients=list(rule.recipients or default_recipients),
                    subject=f"{step.name}: {trigger.replace('_', ' ')}",
                    body=self._render(rule.template, context, step),
                    metadata=base_metadata,
                )
            )

    async def _send_escalation(
        self, context: WorkflowContext, step: WorkflowStep, rule: EscalationRule
    ) -> None:
        notification = rule.notification
        body = (
            self._render(notification.template, context, step)
            if notification is not None and notification.template
            else f"Step '{step.name}' has exceeded its SLA of {step.sla_hours} hours."
        )
        await self._send(
            NotificationRequest(
                channel=notification.type if notification is not None else "email",
                recipients=list(rule.escalate_to),
                subject=f"Escalation: {step.name} is overdue",
                body=body,
                priority="urgent",
                metadata={
                    "execution_id": context.execution_id,
                    "step_id": step.id,
                    "trigger": "escalation",
                },
            )
        )
