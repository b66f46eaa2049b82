import uuid

from crm_automations.schemas.automation import AutomationOut
from crm_automations.schemas.event import AutomationEvent
from crm_automations.services.trigger_matcher import match_automations, matches_trigger_config

PROJECT_ID = "11111111-1111-1111-1111-111111111111"


def _automation(trigger_type, trigger_config=None, is_active=True):
    return AutomationOut(
        id=str(uuid.uuid4()),
        project_id=PROJECT_ID,
        name="rule",
        is_active=is_active,
        trigger_type=trigger_type,
        trigger_config=trigger_config or {},
        conditions=[],
        actions=[{"type": "create_task", "config": {}}],
    )


def _event(trigger_type, entity_type="opportunity", data=None, previous_data=None, metadata=None):
    return AutomationEvent(
        project_id=PROJECT_ID,
        trigger_type=trigger_type,
        entity_type=entity_type,
        entity_id="e-1",
        data=data or {},
        previous_data=previous_data,
        metadata=metadata or {},
    )


def test_inactive_and_other_trigger_types_are_excluded():
    active = _automation("entity.created")
    inactive = _automation("entity.created", is_active=False)
    other = _automation("entity.updated")
    matched = match_automations(_event("entity.created"), [active, inactive, other])
    assert [a.id for a in matched] == [active.id]


def test_entity_type_filter():
    people_only = _automation("entity.created", {"entity_type": "person"})
    assert match_automations(_event("entity.created", entity_type="person"), [people_only]) == [people_only]
    assert match_automations(_event("entity.created", entity_type="organization"), [people_only]) == []


def test_absent_keys_are_wildcards():
    rule = _automation("opportunity.stage_changed")
    event = _event("opportunity.stage_changed", data={"stage": "negotiation"}, previous_data={"stage": "proposal"})
    assert match_automations(event, [rule]) == [rule]


def test_field_changed_requires_an_actual_change():
    config = {"field_name": "amount"}
    changed = _event("field.changed", data={"amount": 200}, previous_data={"amount": 100})
    same = _event("field.changed", data={"amount": 100}, previous_data={"amount": 100.0})
    assert matches_trigger_config(config, changed)
    assert not matches_trigger_config(config, same)


def test_field_changed_from_and_to_values():
    event = _event("field.changed", data={"priority": "high"}, previous_data={"priority": "low"})
    assert matches_trigger_config({"field_name": "priority", "to_value": "high"}, event)
    assert matches_trigger_config({"field_name": "priority", "from_value": "low", "to_value": "high"}, event)
    assert not matches_trigger_config({"field_name": "priority", "to_value": "urgent"}, event)
    assert not matches_trigger_config({"field_name": "priority", "from_value": "medium"}, event)


def test_stage_and_status_transitions():
    stage_event = _event("opportunity.stage_changed", data={"stage": "negotiation"}, previous_data={"stage": "proposal"})
    assert matches_trigger_config({"to_stage": "negotiation"}, stage_event)
    assert matches_trigger_config({"from_stage": "proposal", "to_stage": "negotiation"}, stage_event)
    assert not matches_trigger_config({"from_stage": "prospecting"}, stage_event)

    status_event = _event(
        "rfp.status_changed", entity_type="rfp", data={"status": "submitted"}, previous_data={"status": "preparing"}
    )
    assert matches_trigger_config({"to_status": "submitted"}, status_event)
    assert not matches_trigger_config({"to_status": "won"}, status_event)
    assert not matches_trigger_config({"from_status": "reviewing"}, status_event)


def test_call_meeting_and_sequence_filters():
    call = _event("call.dispositioned", entity_type="call", data={"disposition": "interested", "direction": "outbound"})
    assert matches_trigger_config({"disposition": "interested", "direction": "outbound"}, call)
    assert not matches_trigger_config({"direction": "inbound"}, call)

    meeting = _event("meeting.outcome", entity_type="meeting", data={"meeting_type": "demo", "outcome": "positive"})
    assert matches_trigger_config({"meeting_type": "demo", "outcome": "positive"}, meeting)
    assert not matches_trigger_config({"outcome": "negative"}, meeting)

    sequence_id = str(uuid.uuid4())
    by_metadata = _event("sequence.completed", entity_type="person", metadata={"sequence_id": sequence_id})
    by_data = _event("sequence.completed", entity_type="person", data={"sequence_id": sequence_id})
    assert matches_trigger_config({"sequence_id": sequence_id}, by_metadata)
    assert matches_trigger_config({"sequence_id": sequence_id}, by_data)
    assert not matches_trigger_config({"sequence_id": str(uuid.uuid4())}, by_metadata)


def test_time_trigger_thresholds():
    inactive = _event("time.entity_inactive", entity_type="organization", metadata={"inactive_days": 45})
    assert matches_trigger_config({"days": 30}, inactive)
    assert matches_trigger_config({}, inactive)
    assert not matches_trigger_config({"days": 60}, inactive)

    created = _event("time.created_ago", entity_type="person", metadata={"created_days_ago": 7})
    assert matches_trigger_config({"days": 7}, created)
    assert matches_trigger_config({}, created)
    assert not matches_trigger_config({"days": 3}, created)

    closing = _event("time.close_date_approaching", metadata={"days_until_close": 3})
    assert matches_trigger_config({"days_before": 7}, closing)
    assert not matches_trigger_config({"days_before": 2}, closing)


def test_matching_is_deterministic():
    rules = [_automation("entity.updated", {"entity_type": "opportunity"}), _automation("entity.updated")]
    event = _event("entity.updated")
    first = [a.id for a in match_automations(event, rules)]
    second = [a.id for a in match_automations(event, rules)]
    assert first == second == [r.id for r in rules]
