"""Tests for the execution engine."""

import asyncio

import pytest

from procession.collaborators import StaticUserDirectory
from procession.contracts import WorkflowPattern
from procession.engine import ExecutionEngine
from procession.exceptions import (
    ConfigurationError,
    ExecutionNotFound,
    ExternalServiceFailure,
    ValidationFailed,
)
from procession.notifications import InMemoryNotificationSink
from procession.patterns import InMemoryPatternRepository
from procession.persistence import InMemoryExecutionStore, SQLiteExecutionStore


def _engine(settings, *patterns, store=None, **kwargs):
    sink = InMemoryNotificationSink()
    engine = ExecutionEngine(
        InMemoryPatternRepository(patterns),
        store or InMemoryExecutionStore(),
        sink,
        settings=settings,
        **kwargs,
    )
    events = []

    async def record(event):
        events.append(event)

    engine.add_listener(record)
    return engine, sink, events


def _pattern(pattern_id, steps):
    return WorkflowPattern.model_validate({"id": pattern_id, "name": pattern_id, "steps": steps})


class FakeIntegrations:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else {"valid": True}
        self.error = error

    async def call(self, service, data):
        self.calls.append((service.endpoint, dict(data)))
        if self.error is not None:
            raise self.error
        return self.result


VERIFY_PATTERN = _pattern(
    "verified_order",
    [
        {"id": "submit", "name": "Submit Order", "type": "manual"},
        {
            "id": "verify",
            "name": "Verify Order",
            "type": "integration",
            "validation": {
                "external_service": {"endpoint": "http://validator.local/check"}
            },
        },
        {"id": "ship", "name": "Ship Order", "type": "manual"},
    ],
)


@pytest.mark.asyncio
async def test_start_dispatches_first_manual_step(fast_settings, review_pattern):
    engine, sink, events = _engine(fast_settings, review_pattern)

    execution = await engine.start_workflow(
        review_pattern, "alice", "app-1", {"priority": "high"}, tenant_id="org-1"
    )

    assert execution.status == "in_progress"
    assert execution.current_step == "start"
    assert execution.tenant_id == "org-1"
    assert [e.type for e in events] == ["step_started"]

    [notification] = sink.to("alice")
    assert notification.subject == "Action required: Submit Document"
    assert notification.priority == "high"
    assert "due_at" in notification.metadata

    context = engine.get_context(execution.id)
    assert [r.assignee for r in context.assignee_history] == ["alice"]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_start_rejects_pattern_without_steps(fast_settings):
    engine, _, _ = _engine(fast_settings)
    with pytest.raises(ConfigurationError):
        await engine.start_workflow(_pattern("empty", []), "alice")


@pytest.mark.asyncio
async def test_conditions_route_to_branch(fast_settings, expense_pattern):
    engine, _, _ = _engine(fast_settings, expense_pattern)

    high = await engine.start_workflow(expense_pattern, "alice")
    record = await engine.advance_workflow(high.id, {"amount": 1500})
    assert record.current_step == "manager_review"
    assert record.step_data["amount"] == 1500

    low = await engine.start_workflow(expense_pattern, "alice")
    record = await engine.advance_workflow(low.id, {"amount": 50})
    assert record.current_step == "auto_approve"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_next_step_override_wins_when_valid(fast_settings, expense_pattern):
    engine, _, _ = _engine(fast_settings, expense_pattern)

    first = await engine.start_workflow(expense_pattern, "alice")
    record = await engine.advance_workflow(
        first.id, {"amount": 50}, next_step_override="manager_review"
    )
    assert record.current_step == "manager_review"

    second = await engine.start_workflow(expense_pattern, "alice")
    record = await engine.advance_workflow(
        second.id, {"amount": 50}, next_step_override="not_a_step"
    )
    assert record.current_step == "auto_approve"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_last_step_completes_despite_matching_condition(fast_settings):
    pattern = _pattern(
        "loop_back",
        [
            {"id": "draft", "name": "Draft", "type": "manual"},
            {
                "id": "sign_off",
                "name": "Sign Off",
                "type": "manual",
                "conditions": [
                    {"field": "redo", "operator": "equals", "value": True, "next_step": "draft"}
                ],
            },
        ],
    )
    engine, _, events = _engine(fast_settings, pattern)
    execution = await engine.start_workflow(pattern, "alice")

    record = await engine.advance_workflow(execution.id, {"redo": True})
    assert record.current_step == "sign_off"

    record = await engine.advance_workflow(
        execution.id, {"redo": True}, next_step_override="draft"
    )
    assert record.status == "completed"
    assert not engine.is_active(execution.id)
    assert events[-1].type == "workflow_completed"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_unknown_executions_leave_no_locks_behind(fast_settings, review_pattern):
    engine, _, _ = _engine(fast_settings, review_pattern)

    for _ in range(5):
        with pytest.raises(ExecutionNotFound):
            await engine.advance_workflow("missing-id", {"title": "x"})
        with pytest.raises(ExecutionNotFound):
            await engine.pause_workflow("missing-id")
        with pytest.raises(ExecutionNotFound):
            await engine.cancel_workflow("missing-id")
        with pytest.raises(ExecutionNotFound):
            await engine.restore_execution("missing-id")
    assert engine._locks == {}

    execution = await engine.start_workflow(review_pattern, "alice")
    assert set(engine._locks) == {execution.id}
    await engine.cancel_workflow(execution.id)
    assert engine._locks == {}
    await engine.shutdown()


@pytest.mark.asyncio
async def test_validation_failure_fails_execution(fast_settings, expense_pattern):
    engine, _, events = _engine(fast_settings, expense_pattern)
    execution = await engine.start_workflow(expense_pattern, "alice")

    with pytest.raises(ValidationFailed) as exc_info:
        await engine.advance_workflow(execution.id, {"amount": -5})

    assert exc_info.value.fields == ["amount"]
    assert exc_info.value.execution_id == execution.id
    assert (await engine.get_execution_status(execution.id)).status == "failed"
    assert not engine.is_active(execution.id)
    assert events[-1].type == "step_failed"
    assert events[-1].data["error_type"] == "ValidationFailed"

    with pytest.raises(ExecutionNotFound):
        await engine.advance_workflow(execution.id, {"amount": 5})


@pytest.mark.asyncio
async def test_automated_step_self_advances_to_completion(
    fast_settings, expense_pattern, wait_until
):
    engine, sink, events = _engine(fast_settings, expense_pattern)
    execution = await engine.start_workflow(expense_pattern, "alice")
    await engine.advance_workflow(execution.id, {"amount": 50})

    async def completed():
        return (await engine.get_execution_status(execution.id)).status == "completed"

    await wait_until(completed)
    record = await engine.get_execution_status(execution.id)
    assert record.step_data["approval_code"].startswith("automated_approval_code_")
    assert events[-1].type == "workflow_completed"
    assert events[-1].data["final_data"]["amount"] == 50
    assert any(n.subject == "Workflow completed: Expense Claim" for n in sink.to("alice"))

    with pytest.raises(ExecutionNotFound):
        await engine.advance_workflow(execution.id, {})
    with pytest.raises(ExecutionNotFound):
        engine.get_context(execution.id)


@pytest.mark.asyncio
async def test_escalation_timer_fires_and_is_cancelled_on_advance(
    fast_settings, review_pattern, wait_until
):
    engine, sink, events = _engine(fast_settings, review_pattern)
    execution = await engine.start_workflow(review_pattern, "alice")
    await engine.advance_workflow(execution.id, {"title": "Q3 report"})
    assert engine.has_escalation_timer(execution.id, "review")

    await wait_until(lambda: any(e.type == "escalation_triggered" for e in events))
    [escalation] = [e for e in events if e.type == "escalation_triggered"]
    assert escalation.step_id == "review"
    assert escalation.data["escalated_to"] == ["mgr"]
    assert escalation.data["reason"] == "SLA exceeded"
    [urgent] = sink.to("mgr")
    assert urgent.priority == "urgent"

    second = await engine.start_workflow(review_pattern, "bob")
    await engine.advance_workflow(second.id, {"title": "Q4"})
    assert engine.has_escalation_timer(second.id, "review")
    await engine.advance_workflow(second.id, {"approved": True})
    assert not engine.has_escalation_timer(second.id, "review")
    await engine.shutdown()


@pytest.mark.asyncio
async def test_fired_callbacks_for_cancelled_execution_do_nothing(fast_settings, review_pattern):
    engine, sink, events = _engine(fast_settings, review_pattern)
    execution = await engine.start_workflow(review_pattern, "alice")
    await engine.advance_workflow(execution.id, {"title": "Q3 report"})
    await engine.cancel_workflow(execution.id)
    seen = len(events)

    await engine._on_escalation(execution.id, "review")
    await engine._continue(execution.id, "review", {"approved": True})

    assert len(events) == seen
    assert sink.to("mgr") == []
    assert (await engine.get_execution_status(execution.id)).status == "cancelled"
    assert engine._locks == {}
    await engine.shutdown()


@pytest.mark.asyncio
async def test_approval_step_requests_every_approver(fast_settings, review_pattern):
    directory = StaticUserDirectory({"reviewer": ["rita", "ravi"]})
    engine, sink, _ = _engine(fast_settings, review_pattern, directory=directory)
    execution = await engine.start_workflow(review_pattern, "alice", tenant_id="org-1")
    await engine.advance_workflow(execution.id, {"title": "Q3 report"})

    requests = engine.approvals.requests
    assert [r.approver_id for r in requests] == ["rita", "ravi"]
    assert all(r.sla_hours == 1 and r.tenant_id == "org-1" for r in requests)
    assert sink.to("rita") and sink.to("ravi")
    await engine.shutdown()


@pytest.mark.asyncio
async def test_condition_step_routes_without_input(fast_settings):
    pattern = _pattern(
        "tiered_support",
        [
            {"id": "intake", "name": "Intake", "type": "manual"},
            {
                "id": "triage",
                "name": "Triage",
                "type": "condition",
                "conditions": [
                    {"field": "tier", "operator": "equals", "value": "gold", "next_step": "vip"},
                    {"else_step": "standard"},
                ],
            },
            {"id": "standard", "name": "Standard Queue", "type": "manual"},
            {"id": "vip", "name": "VIP Queue", "type": "manual"},
        ],
    )
    engine, _, events = _engine(fast_settings, pattern)

    gold = await engine.start_workflow(pattern, "alice")
    record = await engine.advance_workflow(gold.id, {"tier": "gold"})
    assert record.current_step == "vip"
    triage = [e for e in events if e.type == "step_completed" and e.step_id == "triage"]
    assert triage[0].data == {"branch": "vip"}

    silver = await engine.start_workflow(pattern, "bob")
    record = await engine.advance_workflow(silver.id, {"tier": "silver"})
    assert record.current_step == "standard"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_condition_cycle_is_a_configuration_error(fast_settings):
    pattern = _pattern(
        "looping",
        [
            {"id": "intake", "name": "Intake", "type": "manual"},
            {
                "id": "loop_a",
                "name": "Loop A",
                "type": "condition",
                "conditions": [{"field": "x", "operator": "equals", "value": 1, "next_step": "loop_b"}],
            },
            {
                "id": "loop_b",
                "name": "Loop B",
                "type": "condition",
                "conditions": [{"field": "x", "operator": "equals", "value": 1, "next_step": "loop_a"}],
            },
        ],
    )
    engine, _, _ = _engine(fast_settings, pattern)
    execution = await engine.start_workflow(pattern, "alice")

    with pytest.raises(ConfigurationError):
        await engine.advance_workflow(execution.id, {"x": 1})
    assert (await engine.get_execution_status(execution.id)).status == "failed"


@pytest.mark.asyncio
async def test_integration_step_merges_result_and_continues(fast_settings, wait_until):
    integrations = FakeIntegrations(result={"valid": True, "score": 0.9})
    engine, _, _ = _engine(fast_settings, VERIFY_PATTERN, integrations=integrations)
    execution = await engine.start_workflow(VERIFY_PATTERN, "alice")
    await engine.advance_workflow(execution.id, {"order_id": "o-1"})

    async def shipped():
        return (await engine.get_execution_status(execution.id)).current_step == "ship"

    await wait_until(shipped)
    assert integrations.calls == [("http://validator.local/check", {"order_id": "o-1"})]
    context = engine.get_context(execution.id)
    assert context.global_data["validation_result"] == {"valid": True, "score": 0.9}
    await engine.shutdown()


@pytest.mark.asyncio
async def test_integration_failure_fails_execution(fast_settings):
    integrations = FakeIntegrations(error=ExternalServiceFailure("validator down"))
    engine, _, events = _engine(fast_settings, VERIFY_PATTERN, integrations=integrations)
    execution = await engine.start_workflow(VERIFY_PATTERN, "alice")

    with pytest.raises(ExternalServiceFailure) as exc_info:
        await engine.advance_workflow(execution.id, {"order_id": "o-1"})

    assert exc_info.value.step_id == "verify"
    assert exc_info.value.execution_id == execution.id
    assert (await engine.get_execution_status(execution.id)).status == "failed"
    assert events[-1].data["error_type"] == "ExternalServiceFailure"


@pytest.mark.asyncio
async def test_pause_holds_continuation_until_resume(fast_settings, expense_pattern, wait_until):
    settings = fast_settings.model_copy(update={"automated_settle_seconds": 0.05})
    engine, _, _ = _engine(settings, expense_pattern)
    execution = await engine.start_workflow(expense_pattern, "alice")
    await engine.advance_workflow(execution.id, {"amount": 50})

    await engine.pause_workflow(execution.id)
    assert engine.is_paused(execution.id)
    await asyncio.sleep(0.1)
    record = await engine.get_execution_status(execution.id)
    assert record.status == "pending"
    assert record.current_step == "auto_approve"

    record = await engine.resume_workflow(execution.id)
    assert record.status == "in_progress"
    assert not engine.is_paused(execution.id)

    async def completed():
        return (await engine.get_execution_status(execution.id)).status == "completed"

    await wait_until(completed)


@pytest.mark.asyncio
async def test_cancel_evicts_and_emits_failure(fast_settings, review_pattern):
    engine, _, events = _engine(fast_settings, review_pattern)
    execution = await engine.start_workflow(review_pattern, "alice")
    await engine.advance_workflow(execution.id, {"title": "Q3"})

    await engine.cancel_workflow(execution.id, "bob", reason="duplicate")

    assert (await engine.get_execution_status(execution.id)).status == "cancelled"
    assert not engine.is_active(execution.id)
    assert not engine.has_escalation_timer(execution.id, "review")
    assert events[-1].type == "step_failed"
    assert events[-1].data["error_type"] == "cancelled"
    assert events[-1].data["reason"] == "duplicate"
    with pytest.raises(ExecutionNotFound):
        await engine.cancel_workflow(execution.id)


@pytest.mark.asyncio
async def test_step_notification_rules_render_templates(fast_settings):
    pattern = _pattern(
        "notified",
        [
            {
                "id": "draft",
                "name": "Draft",
                "type": "manual",
                "notifications": [
                    {
                        "type": "slack",
                        "trigger": "step_start",
                        "recipients": ["#drafts"],
                        "template": "Draft $title started by $user_id",
                    },
                    {"type": "email", "trigger": "step_complete", "template": "$step_name done"},
                ],
            },
            {"id": "publish", "name": "Publish", "type": "manual"},
        ],
    )
    engine, sink, _ = _engine(fast_settings, pattern)
    execution = await engine.start_workflow(pattern, "alice", initial_data={"title": "Launch"})

    [started] = sink.to("#drafts")
    assert started.channel == "slack"
    assert started.body == "Draft Launch started by alice"

    await engine.advance_workflow(execution.id, {})
    completed = [n for n in sink.to("alice") if n.metadata.get("trigger") == "step_complete"]
    assert [n.body for n in completed] == ["Draft done"]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_execution(fast_settings, review_pattern):
    engine, _, events = _engine(fast_settings, review_pattern)

    async def broken(event):
        raise RuntimeError("listener down")

    engine.add_listener(broken)
    execution = await engine.start_workflow(review_pattern, "alice")
    record = await engine.advance_workflow(execution.id, {"title": "Q3"})
    assert record.current_step == "review"
    assert [e.type for e in events][:2] == ["step_started", "step_completed"]

    engine.remove_listener(broken)
    await engine.shutdown()


@pytest.mark.asyncio
async def test_restore_from_store_after_restart(fast_settings, review_pattern, tmp_path):
    db_path = tmp_path / "executions.db"
    first, _, _ = _engine(fast_settings, review_pattern, store=SQLiteExecutionStore(db_path))
    execution = await first.start_workflow(review_pattern, "alice", tenant_id="org-1")
    await first.advance_workflow(execution.id, {"title": "Q3"})
    await first.shutdown()

    second, _, _ = _engine(fast_settings, review_pattern, store=SQLiteExecutionStore(db_path))
    assert await second.load_active_executions() == 1
    context = second.get_context(execution.id)
    assert context.current_step == "review"
    assert context.global_data == {"title": "Q3"}
    assert not second.has_escalation_timer(execution.id, "review")

    record = await second.advance_workflow(execution.id, {"approved": True})
    assert record.current_step == "end"
    assert [r.id for r in await second.list_tenant_executions("org-1")] == [execution.id]
    assert len(await second.list_user_executions("alice")) == 1
    await second.shutdown()
