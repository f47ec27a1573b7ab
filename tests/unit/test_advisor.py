"""Tests for the decision advisors."""

import asyncio
from types import SimpleNamespace

import pytest

from procession.advisor import (
    GuardedAdvisor,
    PydanticAIAdvisor,
    RoutingSuggestion,
    RuleBasedAdvisor,
    ValidationIssue,
    ValidationVerdict,
    build_advisor,
)
from procession.config import AutomationSettings, ProcessionConfig
from procession.contracts import WorkflowContext, WorkflowStep


def _step(**overrides) -> WorkflowStep:
    fields = {"id": "submit", "name": "Submit", "type": "manual", "required_fields": ["title", "amount"]}
    fields.update(overrides)
    return WorkflowStep.model_validate(fields)


def _context(**data) -> WorkflowContext:
    return WorkflowContext(
        execution_id="exec-1",
        pattern_id="expense_claim",
        user_id="alice",
        current_step="submit",
        global_data=data,
    )


class FakeAgent:
    """Stands in for a pydantic-ai agent and records prompts."""

    def __init__(self, output=None, delay: float = 0.0, error: Exception | None = None):
        self.output = output
        self.delay = delay
        self.error = error
        self.prompts = []

    async def run(self, prompt):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output=self.output)


@pytest.mark.asyncio
async def test_rule_based_validation_flags_missing_required_fields():
    advisor = RuleBasedAdvisor()

    verdict = await advisor.validate({"title": ""}, _step())
    assert not verdict.is_valid
    assert [i.field for i in verdict.errors] == ["title", "amount"]
    assert verdict.score == pytest.approx(0.6)

    verdict = await advisor.validate({"title": "Trip", "amount": 10}, _step())
    assert verdict.is_valid
    assert verdict.score == 1.0


@pytest.mark.asyncio
async def test_rule_based_advisor_has_no_routing_opinion(expense_pattern):
    advisor = RuleBasedAdvisor()
    step = expense_pattern.get_step("submit")
    assert await advisor.route(_context(), expense_pattern, step, {"amount": 5}) is None


@pytest.mark.asyncio
async def test_rule_based_escalation_policy():
    advisor = RuleBasedAdvisor(AutomationSettings(high_value_amount=5000))
    step = _step(sla_hours=2, escalation_rules=[{"escalate_to": ["finance_lead"]}])

    overdue = await advisor.assess_escalation(_context(), step, {}, elapsed_hours=3)
    assert overdue.should_escalate
    assert overdue.escalate_to == "finance_lead"

    high_value = await advisor.assess_escalation(_context(), step, {"amount": "7500"}, 1)
    assert high_value.should_escalate
    assert high_value.escalate_to == "senior_manager"

    critical = await advisor.assess_escalation(_context(), step, {"priority": "critical"}, 1)
    assert critical.reason == "Critical priority item"

    normal = await advisor.assess_escalation(_context(), step, {"amount": 10}, 1)
    assert not normal.should_escalate
    assert normal.reason == "Normal processing conditions"


@pytest.mark.asyncio
async def test_pydantic_ai_advisor_returns_agent_output(expense_pattern):
    verdict = ValidationVerdict(
        is_valid=False,
        score=0.4,
        issues=[ValidationIssue(field="amount", message="Amount looks wrong")],
    )
    suggestion = RoutingSuggestion(next_step="manager_review", confidence=0.9)
    validation_agent = FakeAgent(output=verdict)
    routing_agent = FakeAgent(output=suggestion)
    advisor = PydanticAIAdvisor(
        validation_agent=validation_agent, routing_agent=routing_agent
    )
    step = expense_pattern.get_step("submit")

    assert await advisor.validate({"amount": 3}, step) == verdict
    assert "Required fields: amount" in validation_agent.prompts[0]

    result = await advisor.route(_context(amount=3), expense_pattern, step, {"amount": 3})
    assert result == suggestion
    assert "manager_review: Manager Review (manual)" in routing_agent.prompts[0]
    assert "submit: Submit Claim" not in routing_agent.prompts[0]


@pytest.mark.asyncio
async def test_pydantic_ai_advisor_without_model_refuses_to_build_agents():
    advisor = PydanticAIAdvisor()
    with pytest.raises(RuntimeError):
        await advisor.validate({}, _step())


@pytest.mark.asyncio
async def test_guarded_advisor_absorbs_timeouts_and_errors(expense_pattern):
    slow = PydanticAIAdvisor(
        validation_agent=FakeAgent(output=ValidationVerdict(), delay=1.0),
        routing_agent=FakeAgent(error=RuntimeError("provider unavailable")),
    )
    advisor = GuardedAdvisor(slow, timeout=0.05)

    assert await advisor.validate({}, _step()) is None
    step = expense_pattern.get_step("submit")
    assert await advisor.route(_context(), expense_pattern, step, {}) is None

    verdict = await advisor.assess_escalation(_context(), _step(), {"urgency": "high"}, 0)
    assert verdict.should_escalate


@pytest.mark.asyncio
async def test_guarded_advisor_without_inner_falls_back_to_rules():
    advisor = GuardedAdvisor()
    assert await advisor.validate({}, _step()) is None
    assert await advisor.route(_context(), None, _step(), {}) is None
    verdict = await advisor.assess_escalation(_context(), _step(), {}, 0)
    assert not verdict.should_escalate


def test_build_advisor_selects_inner_from_config():
    config = ProcessionConfig()
    assert isinstance(build_advisor(config).inner, RuleBasedAdvisor)

    config = ProcessionConfig(advisor={"model": "test", "timeout_seconds": 3})
    advisor = build_advisor(config)
    assert isinstance(advisor.inner, PydanticAIAdvisor)
    assert advisor.timeout == 3
