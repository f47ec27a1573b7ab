"""Error taxonomy for the process execution core."""

from __future__ import annotations

from typing import Iterable, Optional


class ProcessionError(Exception):
    """Base exception for execution core errors.

    Carries the execution, step and tenant the error relates to so that
    logs and callers can tell which workflow instance was affected.
    """

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.execution_id = execution_id
        self.step_id = step_id
        self.tenant_id = tenant_id

    def __str__(self) -> str:
        context_parts = []
        if self.execution_id:
            context_parts.append(f"execution_id={self.execution_id}")
        if self.step_id:
            context_parts.append(f"step_id={self.step_id}")
        if self.tenant_id:
            context_parts.append(f"tenant_id={self.tenant_id}")

        if context_parts:
            return f"{self.message} ({', '.join(context_parts)})"
        return self.message


class ExecutionNotFound(ProcessionError):  # noqa: N818
    """No active context exists for the given execution id."""

    def __init__(self, execution_id: str) -> None:
        super().__init__("Workflow execution not found", execution_id=execution_id)


class PatternStepNotFound(ProcessionError):  # noqa: N818
    """The pattern and the execution disagree about a step id."""

    def __init__(
        self, step_id: str, pattern_id: str, execution_id: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Step '{step_id}' not found in workflow pattern '{pattern_id}'",
            execution_id=execution_id,
            step_id=step_id,
        )
        self.pattern_id = pattern_id


StepNotFound = PatternStepNotFound


class ValidationFailed(ProcessionError):  # noqa: N818
    """Caller-supplied step data was rejected."""

    def __init__(
        self,
        message: str,
        fields: Iterable[str] = (),
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, execution_id=execution_id, step_id=step_id)
        self.fields = list(fields)


class ConfigurationError(ProcessionError):
    """A pattern or step is configured in a way the engine cannot run."""


class ExternalServiceFailure(ProcessionError):  # noqa: N818
    """An integration step's external call failed."""


class OperationTimeout(ProcessionError):  # noqa: N818
    """A long-running operation exceeded its time bound."""


__all__ = [
    "ProcessionError",
    "ExecutionNotFound",
    "PatternStepNotFound",
    "StepNotFound",
    "ValidationFailed",
    "ConfigurationError",
    "ExternalServiceFailure",
    "OperationTimeout",
]
