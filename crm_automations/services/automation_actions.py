"""
Action executors for automation runs.

Each action is parsed into its typed config, dispatched through a registry
keyed on `ActionType` and committed on its own. A failing action is captured
in its `ActionResult` and rolled back; the remaining actions still run.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.config import Settings, parse_backoff_schedule, settings
from ..core.errors import (
    ActionError,
    ActionTimeoutError,
    EntityNotFoundError,
    RetryableActionError,
    UnknownEntityTypeError,
    log_exception,
)
from ..models import ActivityLog, EmailTemplate, EntityTag, Tag, Task
from ..schemas.automation import ActionType, TriggerType, parse_action
from ..schemas.event import AutomationEvent
from .automation_providers import ProviderSet, backoff_seconds
from .entity_store import EntityStore

logger = logging.getLogger("automation_actions")

RETRYABLE_ACTIONS = frozenset({ActionType.FIRE_WEBHOOK, ActionType.SEND_EMAIL})

_ENTITY_LINK_FIELDS = {
    "person": "person_id",
    "organization": "organization_id",
    "opportunity": "opportunity_id",
    "rfp": "rfp_id",
}


@dataclass
class ActionResult:
    action_type: str
    success: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class ExecutionContext:
    event: AutomationEvent
    automation_id: str
    automation_name: str
    db: Session
    providers: ProviderSet
    entity: dict[str, Any] = field(default_factory=dict)
    cfg: Settings = field(default_factory=lambda: settings)
    follow_ups: list[AutomationEvent] = field(default_factory=list)
    _staged: list[AutomationEvent] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.store = EntityStore(self.db)

    @property
    def project_id(self) -> str:
        return self.event.project_id

    @property
    def entity_type(self) -> str:
        return self.event.entity_type

    @property
    def entity_id(self) -> str:
        return self.event.entity_id

    @property
    def data(self) -> dict[str, Any]:
        merged = dict(self.entity)
        merged.update(self.event.data or {})
        return merged

    def stage_follow_up(self, event: AutomationEvent) -> None:
        self._staged.append(event)


def action_timeout(action_type: str, cfg: Settings) -> float:
    if action_type == ActionType.FIRE_WEBHOOK:
        return cfg.automation_webhook_timeout_sec
    if action_type == ActionType.RUN_AI_RESEARCH:
        return cfg.automation_research_timeout_sec
    if action_type == ActionType.SEND_EMAIL:
        return cfg.automation_email_timeout_sec
    return cfg.automation_default_action_timeout_sec


def _meta(ctx: ExecutionContext) -> dict[str, Any]:
    return {
        "automation_id": ctx.automation_id,
        "automation_name": ctx.automation_name,
        "entity_type": ctx.entity_type,
        "entity_id": ctx.entity_id,
    }


def _entity_links(ctx: ExecutionContext) -> dict[str, str]:
    link = _ENTITY_LINK_FIELDS.get(ctx.entity_type)
    return {link: ctx.entity_id} if link else {}


def _apply_update(
    ctx: ExecutionContext,
    values: dict[str, Any],
    follow_up_types: tuple[TriggerType, ...],
    metadata: Optional[dict[str, Any]] = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    before, after = ctx.store.update(ctx.entity_type, ctx.entity_id, ctx.project_id, values)
    ctx.entity = after
    if any(before.get(key.split(".", 1)[0]) != after.get(key.split(".", 1)[0]) for key in values):
        for trigger_type in follow_up_types:
            ctx.stage_follow_up(
                ctx.event.follow_up(
                    trigger_type,
                    data=after,
                    previous_data=before,
                    metadata={**(metadata or {}), "automation_id": ctx.automation_id},
                )
            )
    return before, after


# --- Executors -------------------------------------------------------------------


def _create_task(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    config = action.config
    due_date = None
    if config.due_in_days is not None:
        due_date = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=config.due_in_days)
    task = ctx.store.insert(
        Task,
        project_id=ctx.project_id,
        title=config.title or f"Auto-task: {ctx.automation_name}"[:255],
        description=config.description,
        priority=config.priority,
        status="pending",
        due_date=due_date,
        assigned_to=config.assign_to,
        **_entity_links(ctx),
    )
    return {"task_id": task.id}


def _update_field(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    field_name = action.config.field_name
    if not EntityStore.is_updatable(ctx.entity_type, field_name):
        raise ActionError(f'Field "{field_name}" is not allowed for {ctx.entity_type}')
    _apply_update(
        ctx,
        {field_name: action.config.value},
        (TriggerType.FIELD_CHANGED, TriggerType.ENTITY_UPDATED),
        metadata={"field_name": field_name},
    )
    return {"field": field_name, "value": action.config.value}


def _change_stage(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    if ctx.entity_type != "opportunity":
        raise ActionError("change_stage only applies to opportunities")
    stage = action.config.stage
    before, _ = _apply_update(
        ctx,
        {"stage": stage},
        (TriggerType.OPPORTUNITY_STAGE_CHANGED, TriggerType.ENTITY_UPDATED),
    )
    return {"stage": stage, "previous_stage": before.get("stage")}


def _change_status(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    if ctx.entity_type != "rfp":
        raise ActionError("change_status only applies to RFPs")
    status = action.config.status
    before, _ = _apply_update(
        ctx,
        {"status": status},
        (TriggerType.RFP_STATUS_CHANGED, TriggerType.ENTITY_UPDATED),
    )
    return {"status": status, "previous_status": before.get("status")}


def _assign_owner(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    user_id = action.config.user_id
    _apply_update(
        ctx,
        {"owner_id": user_id},
        (TriggerType.FIELD_CHANGED, TriggerType.ENTITY_UPDATED),
        metadata={"field_name": "owner_id"},
    )
    return {"owner_id": user_id}


def _send_notification(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    config = action.config
    message = config.message or f'Automation "{ctx.automation_name}" triggered'
    title = config.title or ctx.automation_name
    ids = []
    for user_id in config.recipients():
        ids.append(
            ctx.providers.notifier.notify(
                ctx.db,
                project_id=ctx.project_id,
                user_id=user_id,
                title=title,
                message=message,
                action_url=f"/{ctx.entity_type}s/{ctx.entity_id}",
            )
        )
    return {"notified_users": len(ids), "notification_ids": [i for i in ids if i]}


def _recipient(ctx: ExecutionContext, to_email: Optional[str]) -> tuple[Optional[str], dict[str, Any]]:
    if to_email:
        return to_email, {}
    data = ctx.data
    if ctx.entity_type == "person":
        return (str(data.get("email") or "") or None), data
    contact_id = data.get("primary_contact_id") or data.get("person_id")
    if not contact_id:
        return None, {}
    person = ctx.store.get("person", str(contact_id), ctx.project_id)
    if not person or person.get("deleted_at"):
        return None, {}
    return (person.get("email") or None), person


def _send_email(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    config = action.config
    template = (
        ctx.db.query(EmailTemplate)
        .filter(EmailTemplate.id == config.template_id, EmailTemplate.project_id == ctx.project_id)
        .first()
    )
    if template is None:
        raise ActionError("Template not found")
    to_email, person = _recipient(ctx, config.to_email)
    if not to_email:
        raise ActionError("No recipient email found")
    values = dict(ctx.data)
    values["person"] = person
    return ctx.providers.email.send(
        ctx.db,
        project_id=ctx.project_id,
        template=template,
        to_email=to_email,
        values=values,
        meta=_meta(ctx),
        timeout=action_timeout(ActionType.SEND_EMAIL, ctx.cfg),
    )


def _enroll_in_sequence(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    data = ctx.data
    if ctx.entity_type == "person":
        person_id = ctx.entity_id
    else:
        person_id = data.get("person_id") or data.get("primary_contact_id")
    if not person_id:
        raise ActionError(f"No person linked to this {ctx.entity_type}")
    enrollment_id = ctx.providers.sequences.enroll(
        ctx.db,
        project_id=ctx.project_id,
        sequence_id=action.config.sequence_id,
        person_id=str(person_id),
        created_by=data.get("owner_id") or data.get("created_by"),
    )
    return {"enrollment_id": enrollment_id, "person_id": str(person_id)}


def _project_tag(ctx: ExecutionContext, tag_id: str) -> Tag:
    tag = ctx.db.query(Tag).filter(Tag.id == tag_id, Tag.project_id == ctx.project_id).first()
    if tag is None:
        raise ActionError("Tag not found in this project")
    return tag


def _entity_tag_query(ctx: ExecutionContext, tag_id: str):
    return ctx.db.query(EntityTag).filter(
        EntityTag.tag_id == tag_id,
        EntityTag.entity_type == ctx.entity_type,
        EntityTag.entity_id == ctx.entity_id,
    )


def _add_tag(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    tag = _project_tag(ctx, action.config.tag_id)
    if _entity_tag_query(ctx, tag.id).first() is not None:
        return {"tag_id": tag.id, "already_tagged": True}
    ctx.store.insert(EntityTag, tag_id=tag.id, entity_type=ctx.entity_type, entity_id=ctx.entity_id)
    return {"tag_id": tag.id, "already_tagged": False}


def _remove_tag(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    tag = _project_tag(ctx, action.config.tag_id)
    removed = _entity_tag_query(ctx, tag.id).delete(synchronize_session=False)
    return {"tag_id": tag.id, "removed": bool(removed)}


def _run_ai_research(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    return ctx.providers.research.request(
        ctx.db,
        project_id=ctx.project_id,
        entity_type=ctx.entity_type,
        entity_id=ctx.entity_id,
        research_type=action.config.research_type,
        prompt=action.config.prompt,
        meta={"automation_id": ctx.automation_id, "automation_name": ctx.automation_name},
        timeout=action_timeout(ActionType.RUN_AI_RESEARCH, ctx.cfg),
    )


def _create_activity(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    config = action.config
    activity = ctx.store.insert(
        ActivityLog,
        project_id=ctx.project_id,
        entity_type=ctx.entity_type,
        entity_id=ctx.entity_id,
        action="automation",
        activity_type=config.type,
        subject=config.subject or f"Automation: {ctx.automation_name}"[:255],
        notes=config.notes,
        meta={"automation_id": ctx.automation_id, "automation_name": ctx.automation_name},
        **_entity_links(ctx),
    )
    return {"activity_id": activity.id}


def build_webhook_payload(config: Any, ctx: ExecutionContext) -> dict[str, Any]:
    payload = dict(config.payload_template or {})
    payload.update(
        {
            "automation_id": ctx.automation_id,
            "automation_name": ctx.automation_name,
            "entity_type": ctx.entity_type,
            "entity_id": ctx.entity_id,
            "trigger_type": getattr(ctx.event.trigger_type, "value", ctx.event.trigger_type),
            "data": ctx.data,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
    )
    return payload


def _fire_webhook(action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    config = action.config
    return ctx.providers.webhook.post(
        config.url,
        build_webhook_payload(config, ctx),
        secret=config.secret,
        headers=config.headers,
        timeout=action_timeout(ActionType.FIRE_WEBHOOK, ctx.cfg),
    )


_EXECUTORS: dict[ActionType, Callable[[Any, ExecutionContext], dict[str, Any]]] = {
    ActionType.CREATE_TASK: _create_task,
    ActionType.UPDATE_FIELD: _update_field,
    ActionType.CHANGE_STAGE: _change_stage,
    ActionType.CHANGE_STATUS: _change_status,
    ActionType.ASSIGN_OWNER: _assign_owner,
    ActionType.SEND_NOTIFICATION: _send_notification,
    ActionType.SEND_EMAIL: _send_email,
    ActionType.ENROLL_IN_SEQUENCE: _enroll_in_sequence,
    ActionType.ADD_TAG: _add_tag,
    ActionType.REMOVE_TAG: _remove_tag,
    ActionType.RUN_AI_RESEARCH: _run_ai_research,
    ActionType.CREATE_ACTIVITY: _create_activity,
    ActionType.FIRE_WEBHOOK: _fire_webhook,
}

_missing_executors = set(ActionType) - set(_EXECUTORS)
if _missing_executors:
    raise RuntimeError(f"No executor registered for: {sorted(t.value for t in _missing_executors)}")


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid action config: " + "; ".join(parts)


def _abandon_session(ctx: ExecutionContext, future: Future) -> None:
    """Move the run onto a fresh session; the stale one is rolled back once the action returns."""
    stale = ctx.db
    ctx.db = Session(bind=stale.get_bind(), autoflush=False)
    ctx.store = EntityStore(ctx.db)

    def _discard(_: Future) -> None:
        try:
            stale.rollback()
        finally:
            stale.close()

    future.add_done_callback(_discard)


def _run_bounded(kind: ActionType, executor: Callable, action: Any, ctx: ExecutionContext) -> dict[str, Any]:
    timeout = action_timeout(kind, ctx.cfg)
    if timeout <= 0:
        return executor(action, ctx)

    # the executor works on a copy so a straggler cannot touch the run's staged events
    attempt_ctx = dataclasses.replace(ctx, _staged=[])
    future: Future = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(executor(action, attempt_ctx))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=_target, name=f"automation-action-{kind.value}", daemon=True).start()
    try:
        result = future.result(timeout=timeout)
    except FuturesTimeoutError:
        logger.warning(
            "Action timed out automation_id=%s action=%s entity=%s/%s timeout=%ss",
            ctx.automation_id,
            kind.value,
            ctx.entity_type,
            ctx.entity_id,
            timeout,
        )
        _abandon_session(ctx, future)
        raise ActionTimeoutError(f"Action timed out after {timeout:g}s") from None
    ctx.entity = attempt_ctx.entity
    ctx._staged.extend(attempt_ctx._staged)
    return result


def execute_action(
    raw_action: Any,
    ctx: ExecutionContext,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ActionResult:
    """Run one action; never raises."""
    if hasattr(raw_action, "model_dump"):
        raw_action = raw_action.model_dump(mode="json")
    action_type = str((raw_action or {}).get("type") or "unknown")
    try:
        action = parse_action(raw_action)
    except ValidationError as exc:
        return ActionResult(action_type=action_type, success=False, error=_validation_message(exc), attempts=0)

    kind = ActionType(action.type)
    executor = _EXECUTORS[kind]
    max_attempts = max(1, ctx.cfg.automation_action_max_attempts) if kind in RETRYABLE_ACTIONS else 1
    schedule = parse_backoff_schedule(ctx.cfg.automation_action_backoff_sec)

    attempt = 0
    while True:
        attempt += 1
        ctx._staged.clear()
        try:
            result = _run_bounded(kind, executor, action, ctx)
            ctx.db.commit()
        except RetryableActionError as exc:
            ctx.db.rollback()
            if attempt < max_attempts:
                delay = backoff_seconds(attempt, schedule)
                logger.warning(
                    "Action retry automation_id=%s action=%s attempt=%s/%s delay=%ss err=%s",
                    ctx.automation_id,
                    kind.value,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                if delay > 0:
                    sleep(delay)
                continue
            return ActionResult(action_type=kind.value, success=False, error=str(exc), attempts=attempt)
        except (ActionError, EntityNotFoundError, UnknownEntityTypeError, ValueError) as exc:
            ctx.db.rollback()
            return ActionResult(action_type=kind.value, success=False, error=str(exc), attempts=attempt)
        except Exception as exc:
            ctx.db.rollback()
            log_exception(
                logger,
                "Action crashed",
                extra={"automation_id": ctx.automation_id, "action": kind.value, "entity_id": ctx.entity_id},
                exc=exc,
            )
            return ActionResult(action_type=kind.value, success=False, error=str(exc) or type(exc).__name__, attempts=attempt)

        ctx.follow_ups.extend(ctx._staged)
        ctx._staged.clear()
        return ActionResult(action_type=kind.value, success=True, result=result, attempts=attempt)


def execute_actions(
    actions: list[Any],
    ctx: ExecutionContext,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ActionResult]:
    """Run every action in declared order; a failure never stops the rest."""
    results = []
    for raw_action in actions or []:
        result = execute_action(raw_action, ctx, sleep=sleep)
        if not result.success:
            logger.warning(
                "Action failed automation_id=%s action=%s entity=%s/%s err=%s",
                ctx.automation_id,
                result.action_type,
                ctx.entity_type,
                ctx.entity_id,
                result.error,
            )
        results.append(result)
    return results
