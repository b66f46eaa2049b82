"""
Trigger matching: which of a project's automations react to an event.

Matching is a pure filter over already-loaded automations. Every key present
in an automation's `trigger_config` must agree with the event; absent keys
match anything.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from ..schemas.automation import TriggerType
from ..schemas.event import AutomationEvent

_DEFAULT_INACTIVE_DAYS = 30
_DEFAULT_CREATED_DAYS = 7
_DEFAULT_DAYS_BEFORE = 7


def _norm(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _present(config: Mapping[str, Any], key: str) -> bool:
    return config.get(key) not in (None, "")


def _int_metadata(event: AutomationEvent, key: str) -> Optional[int]:
    raw = event.metadata.get(key)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _config_days(config: Mapping[str, Any], key: str, default: int) -> int:
    try:
        days = int(config.get(key) or default)
    except (TypeError, ValueError):
        days = default
    return min(max(days, 1), 365)


def _matches_time_thresholds(config: Mapping[str, Any], event: AutomationEvent) -> bool:
    trigger = event.trigger_type
    if trigger == TriggerType.TIME_ENTITY_INACTIVE:
        inactive = _int_metadata(event, "inactive_days")
        return inactive is not None and inactive >= _config_days(config, "days", _DEFAULT_INACTIVE_DAYS)
    if trigger == TriggerType.TIME_CREATED_AGO:
        created = _int_metadata(event, "created_days_ago")
        return created is not None and created == _config_days(config, "days", _DEFAULT_CREATED_DAYS)
    if trigger == TriggerType.TIME_CLOSE_DATE_APPROACHING:
        until = _int_metadata(event, "days_until_close")
        return until is not None and until <= _config_days(config, "days_before", _DEFAULT_DAYS_BEFORE)
    return True


def matches_trigger_config(config: Optional[Mapping[str, Any]], event: AutomationEvent) -> bool:
    config = config or {}
    data = event.data or {}
    previous = event.previous_data or {}

    if _present(config, "entity_type") and config["entity_type"] != event.entity_type:
        return False

    if _present(config, "field_name"):
        field_name = str(config["field_name"])
        current = _norm(data.get(field_name))
        before = _norm(previous.get(field_name))
        if current == before:
            return False
        if _present(config, "from_value") and before != _norm(config["from_value"]):
            return False
        if _present(config, "to_value") and current != _norm(config["to_value"]):
            return False

    for key, source, field in (
        ("from_stage", previous, "stage"),
        ("to_stage", data, "stage"),
        ("from_status", previous, "status"),
        ("to_status", data, "status"),
        ("disposition", data, "disposition"),
        ("direction", data, "direction"),
        ("meeting_type", data, "meeting_type"),
        ("outcome", data, "outcome"),
    ):
        if _present(config, key) and _norm(source.get(field)) != _norm(config[key]):
            return False

    if _present(config, "sequence_id"):
        sequence_id = event.metadata.get("sequence_id") or data.get("sequence_id")
        if _norm(sequence_id) != _norm(config["sequence_id"]):
            return False

    return _matches_time_thresholds(config, event)


def match_automations(event: AutomationEvent, automations: Iterable[Any]) -> list[Any]:
    """Active automations whose trigger type and trigger config match `event`."""
    trigger_type = getattr(event.trigger_type, "value", event.trigger_type)
    matched = []
    for automation in automations:
        if not automation.is_active:
            continue
        if automation.trigger_type != trigger_type:
            continue
        if matches_trigger_config(automation.trigger_config, event):
            matched.append(automation)
    return matched
