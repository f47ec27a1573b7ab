"""Tests for per-tenant process monitoring."""

from datetime import datetime, timedelta, timezone

import pytest

from procession.automation import EscalationRecord, ProcessExecution, ProcessMetrics
from procession.config import MonitorSettings
from procession.monitor import ProcessMonitor
from procession.notifications import InMemoryNotificationSink

NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def _process(execution_id, org="org-1", status="running", **overrides) -> ProcessExecution:
    fields = {
        "execution_id": execution_id,
        "workflow_id": "expense_claim",
        "organization_id": org,
        "user_id": "alice",
        "status": status,
        "current_step": "submit",
        "start_time": NOW - timedelta(minutes=30),
    }
    if status in ("completed", "failed", "cancelled"):
        fields["end_time"] = NOW - timedelta(minutes=5)
    fields.update(overrides)
    return ProcessExecution(**fields)


def _monitor(**settings) -> tuple[ProcessMonitor, InMemoryNotificationSink]:
    sink = InMemoryNotificationSink()
    monitor = ProcessMonitor(sink, MonitorSettings(**settings), clock=lambda: NOW)
    return monitor, sink


@pytest.mark.asyncio
async def test_sla_breach_alert_is_raised_once_and_notified():
    monitor, sink = _monitor(sla_breach_hours=24)
    stale = _process("p-1", start_time=NOW - timedelta(hours=25))

    [alert] = await monitor.update_process(stale)
    assert alert.type == "sla_breach"
    assert alert.severity == "high"
    assert alert.process_id == "p-1"
    assert alert.metadata["organization_id"] == "org-1"
    assert await monitor.update_process(stale) == []

    [notification] = sink.to("operations")
    assert notification.subject == "[HIGH] sla breach"

    assert monitor.acknowledge_alert("org-1", alert.id)
    assert not monitor.acknowledge_alert("org-2", alert.id)
    assert monitor.get_alerts("org-1", include_acknowledged=False) == []
    assert len(await monitor.update_process(stale)) == 1


@pytest.mark.asyncio
async def test_failure_spike_counts_recent_tenant_failures():
    monitor, sink = _monitor(failure_spike_threshold=2)
    for i in range(2):
        assert await monitor.update_process(_process(f"f-{i}", status="failed")) == []
    await monitor.update_process(_process("other", org="org-2", status="failed"))

    [alert] = await monitor.update_process(_process("f-2", status="failed"))
    assert alert.type == "failure_spike"
    assert alert.severity == "critical"
    assert alert.metadata["failure_count"] == 3
    assert sink.to("operations")[0].priority == "urgent"

    assert monitor.get_alerts("org-2") == []


@pytest.mark.asyncio
async def test_low_efficiency_and_open_escalation_alerts():
    monitor, sink = _monitor(efficiency_floor=0.5)
    slow = _process(
        "p-1",
        status="completed",
        metrics=ProcessMetrics(automation_efficiency=0.2),
    )
    [alert] = await monitor.update_process(slow)
    assert alert.type == "performance_degradation"
    assert alert.severity == "medium"
    assert sink.sent == []

    escalated = _process(
        "p-2",
        escalations=[
            EscalationRecord(step_id="review", reason="SLA exceeded", escalated_to="mgr")
        ],
    )
    [alert] = await monitor.update_process(escalated)
    assert alert.type == "escalation_required"
    assert alert.step_id == "review"

    alerts = monitor.get_alerts("org-1")
    assert [a.type for a in alerts] == ["escalation_required", "performance_degradation"]
    assert len(monitor.get_alerts("org-1", limit=1)) == 1


@pytest.mark.asyncio
async def test_alert_buffer_is_bounded():
    monitor, _ = _monitor(alert_buffer_size=3, sla_breach_hours=1)
    for i in range(5):
        await monitor.update_process(_process(f"p-{i}", start_time=NOW - timedelta(hours=2)))
    assert [a.process_id for a in monitor.get_alerts("org-1")] == ["p-4", "p-3", "p-2"]


@pytest.mark.asyncio
async def test_analytics_are_scoped_to_tenant():
    monitor, _ = _monitor()
    await monitor.update_process(
        _process(
            "done",
            status="completed",
            start_time=NOW - timedelta(minutes=40),
            end_time=NOW - timedelta(minutes=10),
            metrics=ProcessMetrics(
                automation_efficiency=0.8,
                step_durations={"submit": 4.0, "auto_approve": 1.0},
            ),
        )
    )
    await monitor.update_process(
        _process(
            "broken",
            status="failed",
            validation_errors=["Amount must be positive", "Amount must be positive"],
            metrics=ProcessMetrics(step_durations={"submit": 2.0}),
        )
    )
    await monitor.update_process(_process("live"))
    await monitor.update_process(_process("elsewhere", org="org-2", status="completed"))

    analytics = monitor.get_analytics("org-1")
    assert analytics.total_processes == 3
    assert analytics.active_processes == 1
    assert analytics.completed_processes == 1
    assert analytics.failed_processes == 1
    assert analytics.average_completion_time == 1800
    assert analytics.throughput_per_hour == 1
    assert analytics.most_common_failures[0].error == "Amount must be positive"
    assert analytics.most_common_failures[0].count == 2
    assert [b.step_id for b in analytics.bottleneck_steps] == ["submit", "auto_approve"]
    assert analytics.bottleneck_steps[0].average_duration == 3.0
    assert {p.execution_id for p in analytics.processes} == {"done", "broken", "live"}

    assert monitor.get_process_metrics("org-1", "done").automation_efficiency == 0.8
    assert monitor.get_process_metrics("org-2", "done") is None
    assert [p.execution_id for p in monitor.get_history("org-2")] == ["elsewhere"]


@pytest.mark.asyncio
async def test_dashboard_and_performance_report():
    monitor, _ = _monitor()
    await monitor.update_process(
        _process(
            "done",
            status="completed",
            metrics=ProcessMetrics(automation_efficiency=0.4, step_durations={"review": 9.0}),
        )
    )
    await monitor.update_process(_process("broken", status="failed"))
    await monitor.update_process(_process("live"))

    dashboard = monitor.get_dashboard("org-1")
    assert dashboard.organization_id == "org-1"
    assert [p.execution_id for p in dashboard.active_processes] == ["live"]
    assert dashboard.performance.queue_size == 1
    assert dashboard.performance.error_rate == 0.5
    assert len(dashboard.trends.hourly) == 24
    assert len(dashboard.trends.daily) == 7
    assert dashboard.trends.daily[-1].date == NOW.date().isoformat()
    assert dashboard.trends.daily[-1].throughput == 1
    assert sum(t.completed for t in dashboard.trends.hourly) == 1
    assert sum(t.failed for t in dashboard.trends.hourly) == 1

    report = monitor.generate_performance_report("org-1")
    assert any("bottleneck" in insight for insight in report.insights)
    assert any("below optimal" in insight for insight in report.insights)
    assert any("failure rate" in insight for insight in report.insights)

    empty = monitor.generate_performance_report("org-9")
    assert empty.insights == []


@pytest.mark.asyncio
async def test_tenant_health_check_flags_failing_tenants():
    monitor, _ = _monitor(tenant_failure_rate=0.2, failure_spike_threshold=100)
    await monitor.update_process(_process("ok", status="completed"))
    await monitor.update_process(_process("bad", status="failed"))
    await monitor.update_process(_process("fine", org="org-2", status="completed"))

    [alert] = await monitor.check_tenant_health()
    assert alert.organization_id == "org-1"
    assert alert.type == "failure_spike"
    assert alert.severity == "high"
    assert await monitor.check_tenant_health() == []
