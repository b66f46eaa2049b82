"""
Condition evaluation for automation rules.

Conditions are ANDed. Each one reads a (possibly dotted) field from the
evaluation context and compares it with the configured value. Evaluation
never raises: bad data or an unknown operator simply fails the condition.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger("automation_conditions")

_MISSING = object()
_BLOCKED_KEYS = {"__proto__", "constructor", "prototype"}


def _is_blocked(key: str) -> bool:
    return key in _BLOCKED_KEYS or key.startswith("__")


def get_field_value(data: Mapping[str, Any], path: str) -> Any:
    """Walk `path` (``custom_fields.region``) through nested maps; missing -> None."""
    current: Any = data
    for part in (path or "").split("."):
        if _is_blocked(part):
            return None
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def coerce_str(value: Any) -> str:
    """String form used by equality and membership checks."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        if math.isnan(value):
            return "NaN"
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else coerce_str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, list) and len(value) == 0)


def _contains(field_value: Any, compare_value: Any) -> Optional[bool]:
    """True/False for strings and lists; None when the field type does not support it."""
    if isinstance(field_value, str):
        if not isinstance(compare_value, str):
            return None
        return compare_value.lower() in field_value.lower()
    if isinstance(field_value, (list, tuple)):
        needle = coerce_str(compare_value)
        return any(coerce_str(item) == needle for item in field_value)
    return None


def evaluate_operator(operator: str, field_value: Any, compare_value: Any) -> bool:
    op = getattr(operator, "value", operator)
    if op == "equals":
        return coerce_str(field_value) == coerce_str(compare_value)
    if op == "not_equals":
        return coerce_str(field_value) != coerce_str(compare_value)
    if op == "contains":
        return bool(_contains(field_value, compare_value))
    if op == "not_contains":
        found = _contains(field_value, compare_value)
        return True if found is None else not found
    if op in {"greater_than", "less_than"}:
        left = _to_number(field_value)
        right = _to_number(compare_value)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "is_empty":
        return _is_empty(field_value)
    if op == "is_not_empty":
        return not _is_empty(field_value)
    if op in {"in", "not_in"}:
        if not isinstance(compare_value, (list, tuple)):
            return op == "not_in"
        needle = coerce_str(field_value)
        found = any(coerce_str(item) == needle for item in compare_value)
        return found if op == "in" else not found
    logger.warning("Unknown condition operator=%r; condition evaluates to false", op)
    return False


def evaluate_condition(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    try:
        field = str(condition.get("field") or "")
        value = get_field_value(context, field)
        return evaluate_operator(condition.get("operator"), value, condition.get("value"))
    except Exception as exc:
        logger.warning("Condition evaluation failed condition=%s err=%s", condition, exc)
        return False


def evaluate_conditions(conditions: Optional[Iterable[Mapping[str, Any]]], context: Mapping[str, Any]) -> bool:
    """All conditions must hold; an empty list always holds."""
    for condition in conditions or []:
        if hasattr(condition, "model_dump"):
            condition = condition.model_dump(mode="json")
        if not evaluate_condition(condition, context):
            return False
    return True


def build_condition_context(
    data: Optional[Mapping[str, Any]],
    previous_data: Optional[Mapping[str, Any]] = None,
    snapshot: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Stored snapshot overlaid with the event payload, plus `previous`."""
    context: dict[str, Any] = dict(snapshot or {})
    context.update(data or {})
    context["previous"] = dict(previous_data or {})
    return context
