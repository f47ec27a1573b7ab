"""Per-tenant analytics, alerting and dashboards over process history.

Every public query takes an organization id and filters the history and the
alert buffer by it before aggregating anything.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .automation import ProcessExecution, ProcessMetrics
from .config import MonitorSettings
from .contracts import NotificationRequest, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)

AlertType = Literal[
    "sla_breach", "failure_spike", "performance_degradation", "escalation_required"
]
AlertSeverity = Literal["low", "medium", "high", "critical"]

NOTIFY_SEVERITIES = frozenset({"high", "critical"})
HISTORY_LIMIT = 10000


class ProcessAlert(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: AlertType
    severity: AlertSeverity
    organization_id: str
    message: str
    process_id: Optional[str] = None
    step_id: Optional[str] = None
    triggered_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ErrorFrequency(BaseModel):
    error: str
    count: int


class StepBottleneck(BaseModel):
    step_id: str
    average_duration: float


class ProcessSummary(BaseModel):
    execution_id: str
    workflow_id: str
    organization_id: str
    status: str
    current_step: str
    progress: int
    start_time: datetime


class ProcessAnalytics(BaseModel):
    organization_id: str
    total_processes: int = 0
    active_processes: int = 0
    completed_processes: int = 0
    failed_processes: int = 0
    cancelled_processes: int = 0
    average_completion_time: float = 0.0
    automation_efficiency: float = 0.0
    escalation_rate: float = 0.0
    most_common_failures: List[ErrorFrequency] = Field(default_factory=list)
    throughput_per_hour: int = 0
    average_step_duration: float = 0.0
    bottleneck_steps: List[StepBottleneck] = Field(default_factory=list)
    processes: List[ProcessSummary] = Field(default_factory=list)


class PerformanceSnapshot(BaseModel):
    queue_size: int
    error_rate: float
    throughput_per_hour: int
    average_step_duration: float


class HourlyTrend(BaseModel):
    hour: datetime
    completed: int = 0
    failed: int = 0


class DailyTrend(BaseModel):
    date: str
    efficiency: float = 0.0
    throughput: int = 0


class ProcessTrends(BaseModel):
    hourly: List[HourlyTrend] = Field(default_factory=list)
    daily: List[DailyTrend] = Field(default_factory=list)


class ProcessDashboard(BaseModel):
    organization_id: str
    analytics: ProcessAnalytics
    recent_alerts: List[ProcessAlert]
    active_processes: List[ProcessSummary]
    performance: PerformanceSnapshot
    trends: ProcessTrends
    generated_at: datetime = Field(default_factory=utcnow)


class PerformanceReport(BaseModel):
    organization_id: str
    summary: ProcessAnalytics
    insights: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


def _summary(process: ProcessExecution) -> ProcessSummary:
    return ProcessSummary(
        execution_id=process.execution_id,
        workflow_id=process.workflow_id,
        organization_id=process.organization_id,
        status=process.status,
        current_step=process.current_step,
        progress=process.progress,
        start_time=process.start_time,
    )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class ProcessMonitor:
    """Rolling view over process executions reported by the automation layer."""

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        settings: Optional[MonitorSettings] = None,
        *,
        alert_recipients: Sequence[str] = ("operations",),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sink = sink
        self.settings = settings or MonitorSettings()
        self.alert_recipients = list(alert_recipients)
        self._clock = clock
        self._history: Dict[str, ProcessExecution] = {}
        self._alerts: Deque[ProcessAlert] = deque(maxlen=self.settings.alert_buffer_size)
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    async def update_process(self, process: ProcessExecution) -> List[ProcessAlert]:
        """Record the latest state of ``process`` and evaluate alert rules."""
        snapshot = process.model_copy(deep=True)
        self._history.pop(snapshot.execution_id, None)
        self._history[snapshot.execution_id] = snapshot
        while len(self._history) > HISTORY_LIMIT:
            del self._history[next(iter(self._history))]
        return await self._check_process_alerts(snapshot)

    register_process = update_process

    def _tenant(self, organization_id: str) -> List[ProcessExecution]:
        return [
            p for p in self._history.values() if p.organization_id == organization_id
        ]

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    async def _check_process_alerts(self, process: ProcessExecution) -> List[ProcessAlert]:
        now = self._clock()
        org = process.organization_id
        raised: List[ProcessAlert] = []

        running_hours = (now - process.start_time).total_seconds() / 3600
        if process.is_active and running_hours > self.settings.sla_breach_hours:
            alert = await self._create_alert(
                "sla_breach",
                "high",
                org,
                f"Process {process.execution_id} has exceeded "
                f"{self.settings.sla_breach_hours:g}-hour SLA",
                process_id=process.execution_id,
                metadata={"running_time": running_hours},
            )
            raised.extend([alert] if alert else [])

        if process.status == "failed":
            hour_ago = now - timedelta(hours=1)
            recent_failures = sum(
                1
                for p in self._tenant(org)
                if p.status == "failed" and (p.end_time or p.start_time) > hour_ago
            )
            if recent_failures > self.settings.failure_spike_threshold:
                alert = await self._create_alert(
                    "failure_spike",
                    "critical",
                    org,
                    f"High failure rate: {recent_failures} failures in the last hour",
                    metadata={"failure_count": recent_failures},
                )
                raised.extend([alert] if alert else [])

        efficiency = process.metrics.automation_efficiency
        if process.status == "completed" and efficiency < self.settings.efficiency_floor:
            alert = await self._create_alert(
                "performance_degradation",
                "medium",
                org,
                f"Low automation efficiency: {round(efficiency * 100)}%",
                process_id=process.execution_id,
                metadata={"efficiency": efficiency},
            )
            raised.extend([alert] if alert else [])

        unresolved = process.open_escalations()
        if unresolved:
            alert = await self._create_alert(
                "escalation_required",
                "high",
                org,
                f"Process has {len(unresolved)} unresolved escalation(s)",
                process_id=process.execution_id,
                step_id=unresolved[-1].step_id,
                metadata={"unresolved_escalations": len(unresolved)},
            )
            raised.extend([alert] if alert else [])
        return raised

    async def _create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        organization_id: str,
        message: str,
        process_id: Optional[str] = None,
        step_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ProcessAlert]:
        for existing in self._alerts:
            if (
                existing.type == alert_type
                and existing.organization_id == organization_id
                and existing.process_id == process_id
                and not existing.acknowledged
            ):
                return None

        alert = ProcessAlert(
            type=alert_type,
            severity=severity,
            organization_id=organization_id,
            message=message,
            process_id=process_id,
            step_id=step_id,
            triggered_at=self._clock(),
            metadata={**(metadata or {}), "organization_id": organization_id},
        )
        self._alerts.appendleft(alert)
        logger.warning(f"[{severity}] {alert_type} for {organization_id}: {message}")
        if severity in NOTIFY_SEVERITIES:
            await self._send_alert_notification(alert)
        return alert

    async def _send_alert_notification(self, alert: ProcessAlert) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.send(
                NotificationRequest(
                    channel="email",
                    recipients=list(self.alert_recipients),
                    subject=f"[{alert.severity.upper()}] {alert.type.replace('_', ' ')}",
                    body=alert.message,
                    priority="urgent" if alert.severity == "critical" else "high",
                    metadata={
                        "alert_id": alert.id,
                        "organization_id": alert.organization_id,
                        "process_id": alert.process_id,
                    },
                )
            )
        except Exception as e:
            logger.error(f"Failed to send alert notification {alert.id}: {e}")

    def get_alerts(
        self, organization_id: str, limit: int = 20, include_acknowledged: bool = True
    ) -> List[ProcessAlert]:
        alerts = [
            alert.model_copy()
            for alert in self._alerts
            if alert.organization_id == organization_id
            and (include_acknowledged or not alert.acknowledged)
        ]
        return alerts[:limit]

    def acknowledge_alert(self, organization_id: str, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id and alert.organization_id == organization_id:
                alert.acknowledged = True
                return True
        return False

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    def get_analytics(self, organization_id: str) -> ProcessAnalytics:
        processes = self._tenant(organization_id)
        now = self._clock()
        total = len(processes)
        completed = [p for p in processes if p.status == "completed" and p.end_time]

        failures = Counter(error for p in processes for error in p.validation_errors)
        step_samples: Dict[str, List[float]] = {}
        for p in processes:
            for step_id, duration in p.metrics.step_durations.items():
                step_samples.setdefault(step_id, []).append(duration)
        bottlenecks = sorted(
            (
                StepBottleneck(step_id=step_id, average_duration=_mean(samples))
                for step_id, samples in step_samples.items()
            ),
            key=lambda b: b.average_duration,
            reverse=True,
        )[:5]
        hour_ago = now - timedelta(hours=1)

        return ProcessAnalytics(
            organization_id=organization_id,
            total_processes=total,
            active_processes=sum(1 for p in processes if p.is_active),
            completed_processes=sum(1 for p in processes if p.status == "completed"),
            failed_processes=sum(1 for p in processes if p.status == "failed"),
            cancelled_processes=sum(1 for p in processes if p.status == "cancelled"),
            average_completion_time=_mean(
                [(p.end_time - p.start_time).total_seconds() for p in completed]
            ),
            automation_efficiency=_mean(
                [p.metrics.automation_efficiency for p in processes]
            ),
            escalation_rate=(
                sum(len(p.escalations) for p in processes) / total if total else 0.0
            ),
            most_common_failures=[
                ErrorFrequency(error=error, count=count)
                for error, count in failures.most_common(5)
            ],
            throughput_per_hour=sum(1 for p in completed if p.end_time > hour_ago),
            average_step_duration=_mean(
                [d for samples in step_samples.values() for d in samples]
            ),
            bottleneck_steps=bottlenecks,
            processes=[_summary(p) for p in processes],
        )

    def get_history(self, organization_id: str, limit: int = 50) -> List[ProcessExecution]:
        processes = sorted(
            self._tenant(organization_id), key=lambda p: p.start_time, reverse=True
        )
        return [p.model_copy(deep=True) for p in processes[:limit]]

    def get_process_metrics(
        self, organization_id: str, execution_id: str
    ) -> Optional[ProcessMetrics]:
        process = self._history.get(execution_id)
        if process is None or process.organization_id != organization_id:
            return None
        return process.metrics.model_copy(deep=True)

    def get_dashboard(self, organization_id: str) -> ProcessDashboard:
        analytics = self.get_analytics(organization_id)
        processes = self._tenant(organization_id)
        active = [_summary(p) for p in processes if p.is_active][:10]
        finished = [p for p in processes if not p.is_active]
        return ProcessDashboard(
            organization_id=organization_id,
            analytics=analytics,
            recent_alerts=self.get_alerts(organization_id, limit=10),
            active_processes=active,
            performance=PerformanceSnapshot(
                queue_size=analytics.active_processes,
                error_rate=(
                    analytics.failed_processes / len(finished) if finished else 0.0
                ),
                throughput_per_hour=analytics.throughput_per_hour,
                average_step_duration=analytics.average_step_duration,
            ),
            trends=self._trends(processes),
        )

    def _trends(self, processes: List[ProcessExecution]) -> ProcessTrends:
        now = self._clock()
        current_hour = now.replace(minute=0, second=0, microsecond=0)
        hourly = [HourlyTrend(hour=current_hour - timedelta(hours=i)) for i in range(23, -1, -1)]
        by_hour = {trend.hour: trend for trend in hourly}

        today = now.date()
        days = [today - timedelta(days=i) for i in range(6, -1, -1)]
        daily_efficiency: Dict[str, List[float]] = {d.isoformat(): [] for d in days}

        for p in processes:
            if p.end_time is None:
                continue
            trend = by_hour.get(p.end_time.replace(minute=0, second=0, microsecond=0))
            if trend is not None:
                if p.status == "completed":
                    trend.completed += 1
                elif p.status == "failed":
                    trend.failed += 1
            day = p.end_time.date().isoformat()
            if day in daily_efficiency and p.status == "completed":
                daily_efficiency[day].append(p.metrics.automation_efficiency)

        daily = [
            DailyTrend(date=day, efficiency=_mean(values), throughput=len(values))
            for day, values in daily_efficiency.items()
        ]
        return ProcessTrends(hourly=hourly, daily=daily)

    def generate_performance_report(self, organization_id: str) -> PerformanceReport:
        analytics = self.get_analytics(organization_id)
        insights: List[str] = []
        recommendations: List[str] = []

        if analytics.total_processes and analytics.automation_efficiency < 0.7:
            insights.append(
                "Automation efficiency is below optimal (70%). Manual interventions are high."
            )
            recommendations.append(
                "Review escalation triggers and improve AI decision accuracy."
            )
        if analytics.escalation_rate > 0.3:
            insights.append(
                "High escalation rate detected. Processes frequently require manual intervention."
            )
            recommendations.append(
                "Analyze escalation patterns and adjust workflow complexity."
            )
        if analytics.bottleneck_steps:
            top = analytics.bottleneck_steps[0]
            insights.append(f"Step '{top.step_id}' is a performance bottleneck.")
            recommendations.append(
                f"Optimize step '{top.step_id}' processing or add parallel execution."
            )
        if (
            analytics.total_processes
            and analytics.failed_processes / analytics.total_processes > 0.1
        ):
            insights.append(
                "Process failure rate is above 10%. System reliability may be impacted."
            )
            recommendations.append(
                "Investigate common failure patterns and implement preventive measures."
            )

        return PerformanceReport(
            organization_id=organization_id,
            summary=analytics,
            insights=insights,
            recommendations=recommendations,
        )

    # ------------------------------------------------------------------
    # Periodic health check
    # ------------------------------------------------------------------
    async def check_tenant_health(self) -> List[ProcessAlert]:
        """Raise a failure-spike alert for each tenant whose failure rate is too high."""
        raised: List[ProcessAlert] = []
        organizations = {p.organization_id for p in self._history.values() if p.organization_id}
        for organization_id in sorted(organizations):
            analytics = self.get_analytics(organization_id)
            if not analytics.failed_processes:
                continue
            rate = analytics.failed_processes / analytics.total_processes
            if rate > self.settings.tenant_failure_rate:
                alert = await self._create_alert(
                    "failure_spike",
                    "high",
                    organization_id,
                    f"Org {organization_id} failure rate: {round(rate * 100)}%",
                    metadata={"organization_failure_rate": rate},
                )
                if alert is not None:
                    raised.append(alert)
        return raised

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.check_interval_seconds)
            try:
                await self.check_tenant_health()
            except Exception as e:
                logger.error(f"Tenant health check failed: {e}")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
