"""Trigger conditions: ``{field, operator, value}`` checks ANDed over an event payload."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List

from billing.validation import ErrorCode, FieldError, ValidationError

from .events import BaseEvent, UnknownFieldError, payload_class

logger = logging.getLogger(__name__)


def _number(value: Any) -> Decimal:
    return Decimal(str(value))


def _equals(actual, expected) -> bool:
    if actual is None:
        return expected is None
    if isinstance(actual, bool):
        return str(actual).lower() == str(expected).lower()
    if isinstance(actual, (int, Decimal)):
        try:
            return _number(actual) == _number(expected)
        except InvalidOperation:
            return False
    return str(actual) == str(expected)


def _contains(actual, expected) -> bool:
    if actual is None:
        return False
    return str(expected).lower() in str(actual).lower()


def _in(actual, expected) -> bool:
    if not isinstance(expected, (list, tuple)):
        expected = [v.strip() for v in str(expected).split(',')]
    return any(_equals(actual, candidate) for candidate in expected)


def _gt(actual, expected) -> bool:
    try:
        return actual is not None and _number(actual) > _number(expected)
    except InvalidOperation:
        return False


def _lt(actual, expected) -> bool:
    try:
        return actual is not None and _number(actual) < _number(expected)
    except InvalidOperation:
        return False


def _not_empty(actual, expected) -> bool:
    return actual not in (None, "", [], {})


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda actual, expected: not _equals(actual, expected),
    "contains": _contains,
    "in": _in,
    "gt": _gt,
    "lt": _lt,
    "not_empty": _not_empty,
}


def validate_conditions(event_type: str, conditions: Any) -> List[Dict[str, Any]]:
    if conditions in (None, ""):
        return []
    if not isinstance(conditions, list):
        raise ValidationError(
            "Conditions must be a list",
            fields=[FieldError(field="conditions", code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Conditions must be a list")],
            code=ErrorCode.TRIGGER_INVALID,
        )

    allowed_fields = payload_class(event_type).field_names()
    errors = []
    for i, condition in enumerate(conditions):
        if not isinstance(condition, dict):
            errors.append(FieldError(field=f"conditions.{i}", code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Condition must be an object"))
            continue
        if condition.get("field") not in allowed_fields:
            errors.append(FieldError(
                field=f"conditions.{i}.field",
                code=ErrorCode.FIELD_INVALID.value,
                message=f"'{condition.get('field')}' is not a field of {event_type}; expected one of {', '.join(allowed_fields)}",
            ))
        if condition.get("operator") not in OPERATORS:
            errors.append(FieldError(
                field=f"conditions.{i}.operator",
                code=ErrorCode.FIELD_INVALID.value,
                message=f"Unknown operator '{condition.get('operator')}'",
            ))
        elif condition["operator"] != "not_empty" and "value" not in condition:
            errors.append(FieldError(field=f"conditions.{i}.value", code=ErrorCode.FIELD_REQUIRED.value, message="A value is required"))

    if errors:
        raise ValidationError("Invalid trigger conditions", fields=errors, code=ErrorCode.TRIGGER_INVALID)
    return conditions


def evaluate(event: BaseEvent, conditions: List[Dict[str, Any]]) -> bool:
    """True when every condition holds. A condition on an undeclared field never holds."""
    for condition in conditions:
        operator = OPERATORS.get(condition.get("operator"))
        if operator is None:
            logger.warning(f"Unknown condition operator '{condition.get('operator')}'")
            return False
        try:
            actual = event.get_field(condition.get("field"))
        except UnknownFieldError:
            logger.warning(f"Condition references unknown field '{condition.get('field')}'")
            return False
        if not operator(actual, condition.get("value")):
            return False
    return True
