import logging
import math

from crm_automations.services.conditions import (
    build_condition_context,
    coerce_str,
    evaluate_conditions,
    get_field_value,
)


def _cond(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


def test_empty_conditions_always_pass():
    assert evaluate_conditions([], {}) is True
    assert evaluate_conditions(None, {"amount": 1}) is True


def test_conditions_are_conjunctive():
    data = {"stage": "proposal", "amount": 60000}
    assert evaluate_conditions([_cond("stage", "equals", "proposal"), _cond("amount", "greater_than", 50000)], data)
    assert not evaluate_conditions([_cond("stage", "equals", "proposal"), _cond("amount", "greater_than", 90000)], data)


def test_equality_uses_string_coercion():
    assert evaluate_conditions([_cond("amount", "equals", "5")], {"amount": 5})
    assert evaluate_conditions([_cond("amount", "equals", 5)], {"amount": 5.0})
    assert evaluate_conditions([_cond("flag", "equals", "true")], {"flag": True})
    assert evaluate_conditions([_cond("missing", "equals", None)], {})
    assert evaluate_conditions([_cond("missing", "equals", "null")], {})
    assert evaluate_conditions([_cond("stage", "not_equals", "lost")], {"stage": "won"})
    assert coerce_str(2.5) == "2.5"
    assert coerce_str(False) == "false"


def test_contains_on_strings_and_lists():
    assert evaluate_conditions([_cond("name", "contains", "ACME")], {"name": "Big acme corp"})
    assert evaluate_conditions([_cond("tags", "contains", "vip")], {"tags": ["new", "vip"]})
    assert evaluate_conditions([_cond("ids", "contains", 3)], {"ids": [1, 2, 3]})
    assert not evaluate_conditions([_cond("tags", "contains", "VIP")], {"tags": ["vip"]})
    assert evaluate_conditions([_cond("name", "not_contains", "globex")], {"name": "Acme"})


def test_contains_on_other_types():
    assert not evaluate_conditions([_cond("amount", "contains", "1")], {"amount": 100})
    assert evaluate_conditions([_cond("amount", "not_contains", "1")], {"amount": 100})
    assert not evaluate_conditions([_cond("missing", "contains", "x")], {})
    assert evaluate_conditions([_cond("missing", "not_contains", "x")], {})


def test_string_contains_needs_a_string_value():
    assert not evaluate_conditions([_cond("code", "contains", 5)], {"code": "abc5"})
    assert evaluate_conditions([_cond("code", "not_contains", 5)], {"code": "abc5"})
    assert evaluate_conditions([_cond("code", "contains", "5")], {"code": "abc5"})


def test_numeric_comparisons():
    assert evaluate_conditions([_cond("amount", "greater_than", 50000)], {"amount": "60000"})
    assert evaluate_conditions([_cond("amount", "less_than", "10.5")], {"amount": 10})
    for bad in (None, "", "abc", True, False, math.nan, [1]):
        assert not evaluate_conditions([_cond("amount", "greater_than", 0)], {"amount": bad})
        assert not evaluate_conditions([_cond("amount", "less_than", 100)], {"amount": bad})
    assert not evaluate_conditions([_cond("amount", "greater_than", "n/a")], {"amount": 5})


def test_is_empty_law():
    for value in (None, "", []):
        assert evaluate_conditions([_cond("x", "is_empty")], {"x": value})
        assert not evaluate_conditions([_cond("x", "is_not_empty")], {"x": value})
    assert evaluate_conditions([_cond("x", "is_empty")], {})
    for value in (0, False, "0", [None], {}):
        assert not evaluate_conditions([_cond("x", "is_empty")], {"x": value})
        assert evaluate_conditions([_cond("x", "is_not_empty")], {"x": value})


def test_membership_operators():
    assert evaluate_conditions([_cond("stage", "in", ["proposal", "negotiation"])], {"stage": "proposal"})
    assert evaluate_conditions([_cond("probability", "in", ["50", "75"])], {"probability": 50})
    assert evaluate_conditions([_cond("stage", "not_in", ["closed_won"])], {"stage": "proposal"})
    assert not evaluate_conditions([_cond("stage", "in", "proposal")], {"stage": "proposal"})
    assert evaluate_conditions([_cond("stage", "not_in", "proposal")], {"stage": "proposal"})


def test_unknown_operator_fails_and_logs(caplog):
    with caplog.at_level(logging.WARNING, logger="automation_conditions"):
        assert not evaluate_conditions([_cond("stage", "starts_with", "pro")], {"stage": "proposal"})
    assert "Unknown condition operator" in caplog.text


def test_dotted_paths_and_blocked_keys():
    data = {"custom_fields": {"region": "EMEA", "nested": {"tier": 2}}, "constructor": "x"}
    assert get_field_value(data, "custom_fields.region") == "EMEA"
    assert get_field_value(data, "custom_fields.nested.tier") == 2
    assert get_field_value(data, "custom_fields.nested.tier.more") is None
    assert get_field_value(data, "constructor") is None
    assert get_field_value(data, "custom_fields.__proto__") is None
    assert get_field_value(data, "__class__") is None
    assert evaluate_conditions([_cond("constructor", "is_empty")], data)


def test_context_overlays_event_data_on_snapshot():
    snapshot = {"stage": "prospecting", "amount": 100, "owner_id": "u1"}
    context = build_condition_context({"stage": "proposal"}, {"stage": "prospecting"}, snapshot)
    assert context["stage"] == "proposal"
    assert context["amount"] == 100
    assert evaluate_conditions([_cond("previous.stage", "equals", "prospecting")], context)


def test_evaluation_is_deterministic():
    conditions = [_cond("amount", "greater_than", 10), _cond("name", "contains", "a")]
    data = {"amount": 11, "name": "Acme"}
    assert evaluate_conditions(conditions, data) == evaluate_conditions(conditions, data)
    assert data == {"amount": 11, "name": "Acme"}
