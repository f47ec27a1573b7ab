"""Condition evaluation and step-data validation.

Step data is a map of JSON values. Operators coerce those values as follows:

* ``equals`` / ``not_equals`` compare without coercion; booleans never equal
  numbers and ``1`` equals ``1.0``.
* ``greater_than`` / ``less_than`` coerce both sides to numbers. Booleans
  count as 0/1, numeric strings are parsed, anything else is not a number
  and the comparison is false.
* ``contains`` tests substring membership on the stringified values.
* ``in`` tests membership of the field value in a list literal.

Unknown operators evaluate to ``False`` and are logged.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .contracts import FieldValue, StepData, WorkflowCondition, WorkflowStep
from .exceptions import ValidationFailed

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MISSING = object()


def to_number(value: object) -> Optional[float]:
    """Coerce a field value to a float, or ``None`` when it is not numeric."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def to_text(value: object) -> str:
    """Stringify a field value for substring matching."""
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def values_equal(left: object, right: object) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    return left == right


def _compare(left: object, right: object, op: Callable[[float, float], bool]) -> bool:
    a, b = to_number(left), to_number(right)
    if a is None or b is None:
        return False
    return op(a, b)


def evaluate_condition(condition: WorkflowCondition, data: Mapping[str, FieldValue]) -> bool:
    """Return whether ``condition`` holds against ``data``."""
    if condition.field is None or condition.operator is None:
        return False

    actual = data.get(condition.field, _MISSING)
    expected = condition.value
    operator = condition.operator

    if operator == "equals":
        return actual is not _MISSING and values_equal(actual, expected)
    if operator == "not_equals":
        return actual is _MISSING or not values_equal(actual, expected)
    if operator == "greater_than":
        return _compare(actual, expected, lambda a, b: a > b)
    if operator == "less_than":
        return _compare(actual, expected, lambda a, b: a < b)
    if operator == "contains":
        if actual is _MISSING:
            return False
        return to_text(expected) in to_text(actual)
    if operator == "in":
        if actual is _MISSING or not isinstance(expected, list):
            return False
        return any(values_equal(actual, item) for item in expected)

    logger.warning(
        f"Unknown condition operator '{operator}' on field '{condition.field}'; "
        "treating as false"
    )
    return False


def select_branch(
    conditions: Sequence[WorkflowCondition], data: Mapping[str, FieldValue]
) -> Optional[str]:
    """Pick the step id a list of conditions routes to.

    Conditions are evaluated in declaration order and the first matching one
    that names a ``next_step`` wins. When nothing matches, the first declared
    ``else_step`` is returned. ``None`` means the conditions express no
    routing preference.
    """
    for condition in conditions:
        if condition.next_step and evaluate_condition(condition, data):
            return condition.next_step

    for condition in conditions:
        if condition.else_step:
            return condition.else_step
    return None


def is_missing(value: object) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return True
    return False


def validate_field(value: object, rule: str) -> bool:
    """Check a single value against a named validation rule.

    Unknown rules pass.
    """
    if rule == "required":
        return not is_missing(value)
    if rule == "email":
        return bool(_EMAIL_RE.match(to_text(value)))
    if rule == "number":
        return to_number(value) is not None
    if rule == "positive":
        number = to_number(value)
        return number is not None and number > 0
    return True


def check_step_data(
    step: WorkflowStep,
    step_data: StepData,
    execution_id: Optional[str] = None,
) -> None:
    """Validate incoming ``step_data`` against the step's declared rules.

    Raises:
        ValidationFailed: carrying every offending field.
    """
    errors: Dict[str, str] = {}

    for field in step.required_fields:
        if is_missing(step_data.get(field, _MISSING)):
            errors.setdefault(field, f"Required field missing: {field}")

    if step.validation is not None:
        for rule in step.validation.rules:
            if rule.field in errors:
                continue
            if not validate_field(step_data.get(rule.field, _MISSING), rule.rule):
                errors[rule.field] = rule.message

    if errors:
        messages: List[str] = list(errors.values())
        raise ValidationFailed(
            "; ".join(messages),
            fields=list(errors.keys()),
            execution_id=execution_id,
            step_id=step.id,
        )
