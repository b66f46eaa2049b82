"""
Automation engine: event intake, trigger matching and per-automation runs.

Events are accepted through `emit`, which never blocks: they go onto a
bounded queue and `emit` returns False when the queue is full. Dispatcher
threads take events off the queue, load the project's candidate automations,
and hand each match to a bounded worker pool. Every run owns its database
session and its own audit record.

A run goes Matched -> ConditionsEvaluated -> ActionsExecuted -> Recorded.
Follow-up events produced by mutating actions are re-emitted one level
deeper; events deeper than `AUTOMATION_MAX_CASCADE_DEPTH` are refused.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings
from ..core.db import SessionLocal
from ..core.errors import EntityNotFoundError, log_exception
from ..models import Automation, AutomationExecution
from ..schemas.automation import AutomationOut
from ..schemas.event import AutomationEvent
from .automation_actions import ExecutionContext, execute_actions
from .automation_providers import ProviderSet, build_providers
from .conditions import build_condition_context, evaluate_conditions
from .entity_store import EntityStore
from .execution_recorder import record_execution
from .trigger_matcher import match_automations

logger = logging.getLogger("automation_engine")


def load_candidates(db: Session, project_id: str, trigger_type: str) -> list[AutomationOut]:
    """Active automations of a project for one trigger type, as detached snapshots."""
    rows = (
        db.query(Automation)
        .filter(
            Automation.project_id == project_id,
            Automation.trigger_type == trigger_type,
            Automation.is_active.is_(True),
        )
        .order_by(Automation.created_at.asc())
        .all()
    )
    return [AutomationOut.model_validate(row) for row in rows]


class AutomationEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        providers: Optional[ProviderSet] = None,
        cfg: Optional[Settings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg or settings
        self.session_factory = session_factory
        self.providers = providers or build_providers(self.cfg)
        self.sleep = sleep
        self.clock = clock
        self.max_depth = self.cfg.automation_max_cascade_depth
        self.cooldown_sec = max(0.0, float(self.cfg.automation_cooldown_sec))
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, self.cfg.automation_queue_size))
        self._cooldowns: dict[tuple[str, str], float] = {}
        self._cooldown_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._dispatchers: list[threading.Thread] = []
        self._pool: Optional[ThreadPoolExecutor] = None

    # --- intake ----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._dispatchers) and not self._stop_event.is_set()

    def queue_size(self) -> int:
        return self._queue.qsize()

    def emit(self, event: AutomationEvent) -> bool:
        """Accept an event for asynchronous processing; False when refused."""
        if event.depth > self.max_depth:
            logger.warning(
                "Cascade depth exceeded; dropping event trigger=%s entity=%s/%s depth=%s max=%s",
                event.trigger_type.value,
                event.entity_type,
                event.entity_id,
                event.depth,
                self.max_depth,
            )
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(
                "Automation queue full (size=%s); event refused trigger=%s entity=%s/%s",
                self._queue.maxsize,
                event.trigger_type.value,
                event.entity_type,
                event.entity_id,
            )
            return False
        return True

    # --- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._dispatchers:
            return
        self._stop_event.clear()
        workers = max(1, self.cfg.automation_worker_concurrency)
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automation-worker")
        for idx in range(max(1, self.cfg.automation_dispatcher_threads)):
            thread = threading.Thread(
                target=self._dispatch_loop,
                name=f"automation-dispatcher-{idx}",
                daemon=True,
            )
            thread.start()
            self._dispatchers.append(thread)
        logger.info(
            "Automation engine started (dispatchers=%s workers=%s queue=%s max_depth=%s cooldown=%ss)",
            len(self._dispatchers),
            workers,
            self._queue.maxsize,
            self.max_depth,
            self.cooldown_sec,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Finish every accepted event (and its cascade), then shut down."""
        if not self._dispatchers:
            return
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Automation engine stop timed out with %s events pending", self._queue.unfinished_tasks)
                break
            time.sleep(0.05)
        self._stop_event.set()
        for thread in self._dispatchers:
            thread.join(timeout=5)
        self._dispatchers = []
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        logger.info("Automation engine stopped")

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.process_event(event)
            except Exception as exc:
                log_exception(logger, "Automation dispatch failed", extra={"trigger": event.trigger_type.value}, exc=exc)
            finally:
                self._queue.task_done()

    def run_pending(self, max_events: Optional[int] = None) -> int:
        """Process queued events in the calling thread; used when no dispatcher runs."""
        processed = 0
        while max_events is None or processed < max_events:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                self.process_event(event)
            finally:
                self._queue.task_done()
            processed += 1
        return processed

    # --- processing ------------------------------------------------------------

    def _cooldown_key(self, automation: Any, event: AutomationEvent) -> tuple[str, str]:
        return (automation.id, event.entity_id)

    def _in_cooldown(self, automation: Any, event: AutomationEvent) -> bool:
        if self.cooldown_sec <= 0:
            return False
        with self._cooldown_lock:
            last = self._cooldowns.get(self._cooldown_key(automation, event))
        return last is not None and self.clock() - last < self.cooldown_sec

    def _mark_cooldown(self, automation: Any, event: AutomationEvent) -> None:
        if self.cooldown_sec <= 0:
            return
        now = self.clock()
        with self._cooldown_lock:
            self._cooldowns[self._cooldown_key(automation, event)] = now
            stale = [key for key, ts in self._cooldowns.items() if now - ts > self.cooldown_sec * 2]
            for key in stale:
                del self._cooldowns[key]

    def process_event(self, event: AutomationEvent) -> list[Optional[AutomationExecution]]:
        """Match and run every candidate automation for one event."""
        if event.depth > self.max_depth:
            logger.warning("Refusing event beyond cascade depth depth=%s max=%s", event.depth, self.max_depth)
            return []
        with self.session_factory() as db:
            candidates = load_candidates(db, event.project_id, event.trigger_type.value)
        matched = [a for a in match_automations(event, candidates) if not self._skip_for_cooldown(a, event)]
        if not matched:
            return []

        if self._pool is None or len(matched) == 1:
            return [self.run_automation(automation, event) for automation in matched]
        futures = [self._pool.submit(self.run_automation, automation, event) for automation in matched]
        wait(futures)
        records = []
        for future in futures:
            exc = future.exception()
            if exc is not None:
                log_exception(logger, "Automation run crashed", extra={"trigger": event.trigger_type.value}, exc=exc)
                records.append(None)
            else:
                records.append(future.result())
        return records

    def _skip_for_cooldown(self, automation: Any, event: AutomationEvent) -> bool:
        if self._in_cooldown(automation, event):
            logger.info(
                "Cooldown active automation_id=%s entity=%s/%s; skipping",
                automation.id,
                event.entity_type,
                event.entity_id,
            )
            return True
        return False

    def run_automation(self, automation: Any, event: AutomationEvent) -> Optional[AutomationExecution]:
        """One isolated run; always ends with an execution record attempt."""
        started = time.monotonic()
        results: list = []
        conditions_passed = True
        error: Optional[str] = None
        follow_ups: list[AutomationEvent] = []

        db = self.session_factory()
        ctx: Optional[ExecutionContext] = None
        try:
            snapshot = EntityStore(db).get(event.entity_type, event.entity_id, event.project_id) or {}
            context = build_condition_context(event.data, event.previous_data, snapshot)
            conditions_passed = evaluate_conditions(automation.conditions, context)
            if conditions_passed:
                self._mark_cooldown(automation, event)
                ctx = ExecutionContext(
                    event=event,
                    automation_id=automation.id,
                    automation_name=automation.name,
                    db=db,
                    providers=self.providers,
                    entity=snapshot,
                    cfg=self.cfg,
                )
                results = execute_actions(automation.actions, ctx, sleep=self.sleep)
                follow_ups = ctx.follow_ups
        except Exception as exc:
            (ctx.db if ctx is not None else db).rollback()
            error = str(exc) or type(exc).__name__
            conditions_passed = True
            results = []
            log_exception(
                logger,
                "Automation run failed before actions completed",
                extra={"automation_id": automation.id, "entity": f"{event.entity_type}/{event.entity_id}"},
                exc=exc,
            )
        finally:
            # a timed-out action keeps the original session until it finishes
            (ctx.db if ctx is not None else db).close()

        duration_ms = int((time.monotonic() - started) * 1000)
        record = record_execution(
            self.session_factory,
            automation,
            event,
            results,
            duration_ms,
            conditions_passed,
            error,
            max_attempts=self.cfg.automation_record_max_attempts,
            sleep=self.sleep,
        )
        if record is not None:
            logger.info(
                "Automation run automation_id=%s trigger=%s entity=%s/%s status=%s duration_ms=%s",
                automation.id,
                event.trigger_type.value,
                event.entity_type,
                event.entity_id,
                record.status,
                duration_ms,
            )

        for follow_up in follow_ups:
            self.emit(follow_up)
        return record


def dry_run(db: Session, automation: Any, entity_type: str, entity_id: str) -> dict[str, Any]:
    """Evaluate trigger config and conditions against a stored record without acting."""
    entity = EntityStore(db).get(entity_type, entity_id, automation.project_id)
    if entity is None:
        raise EntityNotFoundError(entity_type, entity_id)
    config = automation.trigger_config or {}
    trigger_matched = not config.get("entity_type") or config.get("entity_type") == entity_type
    conditions_met = evaluate_conditions(automation.conditions, build_condition_context(entity, None))
    return {
        "would_trigger": bool(automation.is_active and trigger_matched and conditions_met),
        "trigger_matched": trigger_matched,
        "conditions_met": conditions_met,
        "actions": [{"type": a.get("type"), "config": a.get("config") or {}} for a in automation.actions],
        "entity_data": entity,
    }


_engine: Optional[AutomationEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> Optional[AutomationEngine]:
    return _engine


def set_engine(engine: Optional[AutomationEngine]) -> None:
    global _engine
    with _engine_lock:
        _engine = engine


def emit_automation_event(event: AutomationEvent) -> bool:
    """Hand an event to the process-wide engine; False when none is running or it refused."""
    engine = _engine
    if engine is None:
        logger.warning("No automation engine configured; event dropped trigger=%s", event.trigger_type.value)
        return False
    return engine.emit(event)
