"""
Time-based trigger scanner.

Periodically looks for records that satisfy the active time triggers
(overdue tasks, inactive records, approaching close dates, creation
anniversaries) and feeds one event per record into the engine. A record is
emitted at most once per trigger per scan window; `AutomationTimeCheck`
holds the marks.
"""

from __future__ import annotations

import datetime
import logging
import math
import threading
from collections import defaultdict
from typing import Any, Callable, Optional

from sqlalchemy.orm import Query, Session

from ..core.config import Settings, settings
from ..core.db import SessionLocal
from ..models import Automation, AutomationTimeCheck
from ..schemas.automation import TIME_TRIGGER_TYPES, TriggerType
from ..schemas.event import AutomationEvent
from .entity_store import EntityStore, row_to_dict

logger = logging.getLogger("time_triggers")

_DAY = datetime.timedelta(days=1)
_CLOSED_STAGES = ("closed_won", "closed_lost")
_CLOSED_RFP_STATUSES = ("won", "lost", "no_bid", "submitted")
_DEFAULT_SCANNED_ENTITY = "organization"


def _ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def _clamp_days(value: Any, default: int) -> int:
    try:
        days = int(value if value is not None else default)
    except (TypeError, ValueError):
        days = default
    return min(max(days, 1), 365)


def window_key(now: datetime.datetime, hours: int) -> str:
    hours = max(1, int(hours))
    bucket = int(_ensure_utc(now).timestamp() // (hours * 3600))
    return f"{hours}h:{bucket}"


def _entity_types_for(trigger_type: str, config: dict[str, Any]) -> list[str]:
    configured = config.get("entity_type")
    if trigger_type == TriggerType.TIME_TASK_OVERDUE:
        return ["task"]
    if trigger_type == TriggerType.TIME_CLOSE_DATE_APPROACHING:
        if configured in ("opportunity", "rfp"):
            return [configured]
        return ["opportunity", "rfp"] if not configured else []
    return [configured or _DEFAULT_SCANNED_ENTITY]


def _group_automations(automations: list[Automation]) -> dict[tuple[str, str, str], list[dict[str, Any]]]:
    groups: dict[tuple[str, str, str], list[dict[str, Any]]] = defaultdict(list)
    for automation in automations:
        config = dict(automation.trigger_config or {})
        for entity_type in _entity_types_for(automation.trigger_type, config):
            groups[(automation.project_id, automation.trigger_type, entity_type)].append(config)
    return groups


def _not_marked(db: Session, model: type, trigger_type: str, entity_type: str, window: str):
    return ~(
        db.query(AutomationTimeCheck.id)
        .filter(
            AutomationTimeCheck.trigger_type == trigger_type,
            AutomationTimeCheck.entity_type == entity_type,
            AutomationTimeCheck.entity_id == model.id,
            AutomationTimeCheck.window_key == window,
        )
        .exists()
    )


def _candidates(
    store: EntityStore,
    project_id: str,
    trigger_type: str,
    entity_type: str,
    configs: list[dict[str, Any]],
    now: datetime.datetime,
) -> tuple[Optional[Query], Callable[[Any], Optional[dict[str, Any]]]]:
    """Query for qualifying rows plus a function computing each row's event metadata."""
    model = store.model_for(entity_type)
    query = store.query(entity_type, project_id)

    if trigger_type == TriggerType.TIME_TASK_OVERDUE:
        query = query.filter(model.due_date.isnot(None), model.due_date < now, model.status.in_(["pending", "in_progress"]))

        def _overdue(row: Any) -> dict[str, Any]:
            return {"days_overdue": int((now - _ensure_utc(row.due_date)) // _DAY)}

        return query.order_by(model.due_date.asc()), _overdue

    if trigger_type == TriggerType.TIME_ENTITY_INACTIVE:
        min_days = min(_clamp_days(c.get("days"), 30) for c in configs)
        query = query.filter(model.updated_at < now - min_days * _DAY)

        def _inactive(row: Any) -> dict[str, Any]:
            return {"inactive_days": int((now - _ensure_utc(row.updated_at)) // _DAY)}

        return query.order_by(model.updated_at.asc()), _inactive

    if trigger_type == TriggerType.TIME_CLOSE_DATE_APPROACHING:
        max_days = max(_clamp_days(c.get("days_before"), 7) for c in configs)
        if entity_type == "opportunity":
            column = model.expected_close_date
            query = query.filter(model.stage.notin_(_CLOSED_STAGES))
        else:
            column = model.due_date
            query = query.filter(model.status.notin_(_CLOSED_RFP_STATUSES))
        query = query.filter(column.isnot(None), column >= now, column <= now + max_days * _DAY)

        def _closing(row: Any) -> dict[str, Any]:
            value = row.expected_close_date if entity_type == "opportunity" else row.due_date
            return {"days_until_close": int(math.floor((_ensure_utc(value) - now) / _DAY))}

        return query.order_by(column.asc()), _closing

    if trigger_type == TriggerType.TIME_CREATED_AGO:
        days = sorted({_clamp_days(c.get("days"), 7) for c in configs})
        oldest = now - (days[-1] + 1) * _DAY
        newest = now - days[0] * _DAY
        query = query.filter(model.created_at > oldest, model.created_at <= newest)

        def _created(row: Any) -> Optional[dict[str, Any]]:
            age = int((now - _ensure_utc(row.created_at)) // _DAY)
            return {"created_days_ago": age} if age in days else None

        return query.order_by(model.created_at.asc()), _created

    return None, lambda row: None


def scan_time_triggers(
    db: Session,
    emit: Callable[[AutomationEvent], bool],
    *,
    now: Optional[datetime.datetime] = None,
    cfg: Optional[Settings] = None,
) -> dict[str, int]:
    """One scan pass over every active time-based automation."""
    cfg = cfg or settings
    now = _ensure_utc(now or datetime.datetime.now(datetime.timezone.utc))
    window = window_key(now, cfg.automation_scan_window_hours)
    batch_size = max(1, cfg.automation_scan_batch_size)
    store = EntityStore(db)

    automations = (
        db.query(Automation)
        .filter(
            Automation.is_active.is_(True),
            Automation.trigger_type.in_([t.value for t in TIME_TRIGGER_TYPES]),
        )
        .all()
    )
    groups = _group_automations(automations)
    stats = {"groups": len(groups), "emitted": 0, "refused": 0, "errors": 0}

    for (project_id, trigger_type, entity_type), configs in groups.items():
        try:
            query, metadata_for = _candidates(store, project_id, trigger_type, entity_type, configs, now)
            if query is None:
                continue
            model = store.model_for(entity_type)
            rows = query.filter(_not_marked(db, model, trigger_type, entity_type, window)).limit(batch_size).all()
            for row in rows:
                metadata = metadata_for(row)
                if metadata is None:
                    continue
                event = AutomationEvent(
                    project_id=project_id,
                    trigger_type=trigger_type,
                    entity_type=entity_type,
                    entity_id=row.id,
                    data=row_to_dict(row),
                    metadata={**metadata, "scan_window": window},
                    occurred_at=now,
                )
                if not emit(event):
                    stats["refused"] += 1
                    logger.warning(
                        "Time trigger event refused; retrying next cycle trigger=%s entity=%s/%s",
                        trigger_type,
                        entity_type,
                        row.id,
                    )
                    break
                db.add(
                    AutomationTimeCheck(
                        project_id=project_id,
                        trigger_type=trigger_type,
                        entity_type=entity_type,
                        entity_id=row.id,
                        window_key=window,
                        emitted_at=now,
                    )
                )
                stats["emitted"] += 1
            db.commit()
        except Exception as exc:
            db.rollback()
            stats["errors"] += 1
            logger.exception(
                "Time trigger scan failed project_id=%s trigger=%s entity_type=%s err=%s",
                project_id,
                trigger_type,
                entity_type,
                exc,
            )
    return stats


def run_time_trigger_scanner(
    stop_event: threading.Event,
    emit: Callable[[AutomationEvent], bool],
    *,
    interval_sec: Optional[int] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    interval = max(10, int(interval_sec or settings.automation_scanner_interval_sec))
    logger.info("Time trigger scanner started (interval=%ss window=%sh)", interval, settings.automation_scan_window_hours)
    while not stop_event.is_set():
        try:
            with session_factory() as db:
                stats = scan_time_triggers(db, emit)
            if stats["emitted"] or stats["refused"] or stats["errors"]:
                logger.info(
                    "Time trigger scan groups=%s emitted=%s refused=%s errors=%s",
                    stats["groups"],
                    stats["emitted"],
                    stats["refused"],
                    stats["errors"],
                )
        except Exception as exc:
            logger.exception("Time trigger scan cycle failed: %s", exc)
        stop_event.wait(interval)
    logger.info("Time trigger scanner stopped")
