import uuid

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from crm_automations.models import Automation, AutomationExecution, Base
from crm_automations.schemas.automation import AutomationOut, ExecutionStatus
from crm_automations.schemas.event import AutomationEvent
from crm_automations.services.automation_actions import ActionResult
from crm_automations.services.execution_recorder import derive_status, record_execution

PROJECT_ID = str(uuid.uuid4())


def _make_factory():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _seed_automation(SessionLocal) -> AutomationOut:
    with SessionLocal() as db:
        row = Automation(
            project_id=PROJECT_ID,
            name="Recorder rule",
            is_active=True,
            trigger_type="entity.created",
            trigger_config={},
            conditions=[],
            actions=[{"type": "create_task", "config": {}}],
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return AutomationOut.model_validate(row)


def _event():
    return AutomationEvent(
        project_id=PROJECT_ID,
        trigger_type="entity.created",
        entity_type="person",
        entity_id="p-1",
        data={"email": "a@example.com"},
    )


def _ok(kind="create_task"):
    return ActionResult(action_type=kind, success=True, result={"ok": True})


def _fail(kind="fire_webhook", error="HTTP 500"):
    return ActionResult(action_type=kind, success=False, error=error, attempts=3)


def test_status_law():
    assert derive_status([], conditions_passed=False) == ExecutionStatus.SKIPPED
    assert derive_status([_ok(), _ok()], conditions_passed=True) == ExecutionStatus.SUCCESS
    assert derive_status([_ok(), _fail()], conditions_passed=True) == ExecutionStatus.PARTIAL_FAILURE
    assert derive_status([_fail(), _fail()], conditions_passed=True) == ExecutionStatus.FAILED
    assert derive_status([], conditions_passed=True) == ExecutionStatus.FAILED
    assert derive_status([], conditions_passed=True, error="db down") == ExecutionStatus.FAILED


def test_skipped_run_has_no_results_or_error():
    SessionLocal = _make_factory()
    automation = _seed_automation(SessionLocal)

    row = record_execution(SessionLocal, automation, _event(), [_ok()], 5, conditions_passed=False)

    assert row.status == "skipped"
    assert row.conditions_met is False
    assert row.actions_results == []
    assert row.error_message is None
    assert row.trigger_event["entity_id"] == "p-1"


def test_error_message_only_when_failed():
    SessionLocal = _make_factory()
    automation = _seed_automation(SessionLocal)

    partial = record_execution(SessionLocal, automation, _event(), [_ok(), _fail()], 12, True)
    failed = record_execution(
        SessionLocal, automation, _event(), [_fail(error="HTTP 500"), _fail("send_email", "Template not found")], 12, True
    )
    crashed = record_execution(SessionLocal, automation, _event(), [], 3, True, error="entity lookup failed")

    assert partial.status == "partial_failure" and partial.error_message is None
    assert len(partial.actions_results) == 2
    assert failed.status == "failed"
    assert failed.error_message == "HTTP 500; Template not found"
    assert crashed.status == "failed" and crashed.error_message == "entity lookup failed"
    assert partial.actions_results[1] == {"action_type": "fire_webhook", "success": False, "error": "HTTP 500", "attempts": 3}


def test_recording_never_touches_the_automation():
    SessionLocal = _make_factory()
    automation = _seed_automation(SessionLocal)
    with SessionLocal() as db:
        before = db.get(Automation, automation.id).updated_at

    record_execution(SessionLocal, automation, _event(), [_ok()], 1, True)

    with SessionLocal() as db:
        assert db.get(Automation, automation.id).updated_at == before
        assert db.query(AutomationExecution).count() == 1


class _BrokenSession:
    def __init__(self, counter):
        self.counter = counter

    def add(self, row):
        pass

    def commit(self):
        self.counter.append(1)
        raise RuntimeError("database is locked")

    def rollback(self):
        pass

    def close(self):
        pass


def test_write_failures_are_retried_then_dropped(caplog):
    attempts = []
    sleeps = []
    automation = AutomationOut(
        id=str(uuid.uuid4()),
        project_id=PROJECT_ID,
        name="r",
        trigger_type="entity.created",
    )

    row = record_execution(
        lambda: _BrokenSession(attempts),
        automation,
        _event(),
        [_ok()],
        1,
        True,
        max_attempts=3,
        sleep=sleeps.append,
    )

    assert row is None
    assert len(attempts) == 3
    assert len(sleeps) == 2
    assert "Dropping execution record" in caplog.text
