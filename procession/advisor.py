"""Decision advisors consulted by the automation layer.

An advisor may validate step data, suggest the next step and judge whether a
process needs escalation. Every answer is optional: ``None`` means "no
opinion" and the caller falls back to its own logic.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field
from pydantic_ai import Agent

from .conditions import is_missing, to_number
from .config import AutomationSettings, ProcessionConfig
from .contracts import StepData, WorkflowContext, WorkflowPattern, WorkflowStep

logger = logging.getLogger(__name__)

Severity = Literal["error", "warning", "info"]


class ValidationIssue(BaseModel):
    field: str
    message: str
    severity: Severity = "error"
    suggested_fix: Optional[str] = None


class ValidationVerdict(BaseModel):
    is_valid: bool = True
    score: float = Field(default=1.0, ge=0.0, le=1.0)
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]


class RoutingSuggestion(BaseModel):
    next_step: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    priority: Literal["low", "medium", "high", "urgent"] = "medium"


class EscalationVerdict(BaseModel):
    should_escalate: bool = False
    reason: str = ""
    escalate_to: str = ""


class DecisionAdvisor(Protocol):
    async def validate(
        self,
        data: StepData,
        step: WorkflowStep,
        context: Optional[WorkflowContext] = None,
    ) -> Optional[ValidationVerdict]:
        """Judge incoming step data."""

    async def route(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        data: StepData,
    ) -> Optional[RoutingSuggestion]:
        """Suggest the step that should follow ``step``."""

    async def assess_escalation(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        data: StepData,
        elapsed_hours: float,
    ) -> Optional[EscalationVerdict]:
        """Decide whether the process needs a human's attention."""


class RuleBasedAdvisor(DecisionAdvisor):
    """Deterministic advisor used when no model is configured.

    It never suggests routes, so pattern conditions stay authoritative.
    """

    def __init__(self, settings: Optional[AutomationSettings] = None) -> None:
        self.settings = settings or AutomationSettings()

    async def validate(
        self,
        data: StepData,
        step: WorkflowStep,
        context: Optional[WorkflowContext] = None,
    ) -> Optional[ValidationVerdict]:
        issues = [
            ValidationIssue(
                field=field,
                message=f"Required field '{field}' is missing or empty",
                severity="error",
                suggested_fix=f"Please provide a value for {field}",
            )
            for field in step.required_fields
            if is_missing(data.get(field))
        ]
        score = 1.0 if not issues else max(0.3, 1.0 - len(issues) * 0.2)
        return ValidationVerdict(is_valid=not issues, score=score, issues=issues)

    async def route(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        data: StepData,
    ) -> Optional[RoutingSuggestion]:
        return None

    async def assess_escalation(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        data: StepData,
        elapsed_hours: float,
    ) -> Optional[EscalationVerdict]:
        limit = step.sla_hours or self.settings.escalation_threshold_hours
        if elapsed_hours > limit:
            target = "manager"
            if step.escalation_rules and step.escalation_rules[0].escalate_to:
                target = step.escalation_rules[0].escalate_to[0]
            return EscalationVerdict(
                should_escalate=True,
                reason=f"SLA exceeded: {elapsed_hours:.2f}h > {limit}h",
                escalate_to=target,
            )

        amount = to_number(data.get("amount"))
        if amount is not None and amount > self.settings.high_value_amount:
            return EscalationVerdict(
                should_escalate=True,
                reason="High-value transaction requires approval",
                escalate_to="senior_manager",
            )

        if data.get("priority") == "critical" or data.get("urgency") == "high":
            return EscalationVerdict(
                should_escalate=True,
                reason="Critical priority item",
                escalate_to="senior_manager",
            )

        return EscalationVerdict(
            should_escalate=False, reason="Normal processing conditions"
        )


VALIDATION_PROMPT = (
    "You validate business data submitted to a workflow step. Check required "
    "field completeness, data types and formats, consistency and business rule "
    "compliance. Report each problem as an issue with severity 'error' when the "
    "step must not proceed, otherwise 'warning' or 'info'."
)

ROUTING_PROMPT = (
    "You route business workflow executions. Given the current step, the "
    "submitted data and the available steps, choose the id of the step that "
    "should run next, with a confidence between 0 and 1 and a short reasoning. "
    "Only choose ids from the available steps."
)


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, default=str)


class PydanticAIAdvisor(DecisionAdvisor):
    """Advisor backed by pydantic-ai agents with structured outputs.

    Agents are created on first use so that a missing model provider only
    surfaces when a decision is actually requested.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        validation_agent: Optional[Agent] = None,
        routing_agent: Optional[Agent] = None,
        settings: Optional[AutomationSettings] = None,
    ) -> None:
        self.model = model
        self._validation_agent = validation_agent
        self._routing_agent = routing_agent
        self._rules = RuleBasedAdvisor(settings)

    def _agent(self, output_type: type, system_prompt: str) -> Agent:
        if self.model is None:
            raise RuntimeError("No model configured for the decision advisor")
        return Agent(self.model, output_type=output_type, system_prompt=system_prompt)

    @property
    def validation_agent(self) -> Agent:
        if self._validation_agent is None:
            self._validation_agent = self._agent(ValidationVerdict, VALIDATION_PROMPT)
        return self._validation_agent

    @property
    def routing_agent(self) -> Agent:
        if self._routing_agent is None:
            self._routing_agent = self._agent(RoutingSuggestion, ROUTING_PROMPT)
        return self._routing_agent

    async def validate(
        self,
        data: StepData,
        step: WorkflowStep,
        context: Optional[WorkflowContext] = None,
    ) -> Optional[ValidationVerdict]:
        prompt = (
            f"Step: {step.name} - {step.description}\n"
            f"Step type: {step.type}\n"
            f"Required fields: {', '.join(step.required_fields) or 'None specified'}\n"
            f"Data to validate:\n{_dump(data)}"
        )
        result = await self.validation_agent.run(prompt)
        return result.output

    async def route(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        data: StepData,
    ) -> Optional[RoutingSuggestion]:
        available = ", ".join(
            f"{s.id}: {s.name} ({s.type})" for s in pattern.steps if s.id != step.id
        )
        prompt = (
            f"Workflow: {pattern.name} ({pattern.type})\n"
            f"Current step: {step.name} - {step.description}\n"
            f"Step type: {step.type}\n"
            f"Input data:\n{_dump(data)}\n"
            f"Current context:\n{_dump(context.global_data)}\n"
            f"Available next steps: {available}"
        )
        result = await self.routing_agent.run(prompt)
        return result.output

    async def assess_escalation(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        data: StepData,
        elapsed_hours: float,
    ) -> Optional[EscalationVerdict]:
        return await self._rules.assess_escalation(context, step, data, elapsed_hours)


class GuardedAdvisor(DecisionAdvisor):
    """Bound every call to ``inner`` by a timeout and absorb its failures.

    Validation and routing degrade to "no opinion". Escalation degrades to
    the rule-based policy because escalation must still be evaluated.
    """

    def __init__(
        self,
        inner: Optional[DecisionAdvisor] = None,
        timeout: float = 10.0,
        fallback: Optional[RuleBasedAdvisor] = None,
    ) -> None:
        self.inner = inner
        self.timeout = timeout
        self.fallback = fallback or RuleBasedAdvisor()

    async def _ask(self, name: str, call) -> Any:
        try:
            return await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Advisor {name} timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Advisor {name} failed: {e}")
        return None

    async def validate(
        self,
        data: StepData,
        step: WorkflowStep,
        context: Optional[WorkflowContext] = None,
    ) -> Optional[ValidationVerdict]:
        if self.inner is None:
            return None
        return await self._ask("validation", self.inner.validate(data, step, context))

    async def route(
        self,
        context: WorkflowContext,
        pattern: WorkflowPattern,
        step: WorkflowStep,
        data: StepData,
    ) -> Optional[RoutingSuggestion]:
        if self.inner is None:
            return None
        return await self._ask(
            "routing", self.inner.route(context, pattern, step, data)
        )

    async def assess_escalation(
        self,
        context: WorkflowContext,
        step: WorkflowStep,
        data: StepData,
        elapsed_hours: float,
    ) -> Optional[EscalationVerdict]:
        verdict = None
        if self.inner is not None:
            verdict = await self._ask(
                "escalation",
                self.inner.assess_escalation(context, step, data, elapsed_hours),
            )
        if verdict is None:
            verdict = await self.fallback.assess_escalation(
                context, step, data, elapsed_hours
            )
        return verdict


def build_advisor(config: ProcessionConfig) -> GuardedAdvisor:
    """Create the advisor described by ``config``."""
    rules = RuleBasedAdvisor(config.automation)
    inner: DecisionAdvisor = rules
    if config.advisor.model:
        inner = PydanticAIAdvisor(config.advisor.model, settings=config.automation)
    return GuardedAdvisor(inner, timeout=config.advisor.timeout_seconds, fallback=rules)


__all__ = [
    "DecisionAdvisor",
    "EscalationVerdict",
    "GuardedAdvisor",
    "PydanticAIAdvisor",
    "RoutingSuggestion",
    "RuleBasedAdvisor",
    "ValidationIssue",
    "ValidationVerdict",
    "build_advisor",
]
