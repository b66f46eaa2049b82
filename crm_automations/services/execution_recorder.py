"""
Execution recorder: one immutable audit row per automation run.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import AutomationExecution
from ..schemas.automation import ExecutionStatus
from ..schemas.event import AutomationEvent

logger = logging.getLogger("execution_recorder")

_RECORD_BACKOFF_SEC = (0.1, 0.5, 1.0)


def _result_dict(result: Any) -> dict[str, Any]:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return dict(result)


def derive_status(
    results: Sequence[Any],
    *,
    conditions_passed: bool,
    error: Optional[str] = None,
) -> ExecutionStatus:
    if not conditions_passed:
        return ExecutionStatus.SKIPPED
    if error is not None:
        return ExecutionStatus.FAILED
    outcomes = [bool(_result_dict(r).get("success")) for r in results]
    if not outcomes or not any(outcomes):
        return ExecutionStatus.FAILED
    if all(outcomes):
        return ExecutionStatus.SUCCESS
    return ExecutionStatus.PARTIAL_FAILURE


def derive_error_message(status: ExecutionStatus, results: Sequence[Any], error: Optional[str] = None) -> Optional[str]:
    if status != ExecutionStatus.FAILED:
        return None
    if error is not None:
        return error
    errors = [str(_result_dict(r).get("error") or "") for r in results]
    return "; ".join(e for e in errors if e) or "No actions executed"


def record_execution(
    session_factory: Callable[[], Session],
    automation: Any,
    event: AutomationEvent,
    results: Sequence[Any],
    duration_ms: int,
    conditions_passed: bool,
    error: Optional[str] = None,
    *,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[AutomationExecution]:
    """
    Persist the outcome of one run.

    The write gets its own session and is retried a few times; when every
    attempt fails the record is logged and dropped so the run itself is not
    affected. Returns the stored row, or None when it was dropped.
    """
    status = derive_status(results, conditions_passed=conditions_passed, error=error)
    actions_results = [] if status == ExecutionStatus.SKIPPED else [_result_dict(r) for r in results]
    values = dict(
        automation_id=automation.id,
        project_id=event.project_id,
        status=status.value,
        conditions_met=bool(conditions_passed),
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        trigger_event=event.snapshot(),
        actions_results=actions_results,
        duration_ms=max(0, int(duration_ms)),
        error_message=derive_error_message(status, results, error),
    )

    attempts = max(1, max_attempts or settings.automation_record_max_attempts)
    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            row = AutomationExecution(**values)
            db.add(row)
            db.commit()
            db.refresh(row)
            db.expunge(row)
            return row
        except Exception as exc:
            db.rollback()
            if attempt >= attempts:
                logger.error(
                    "Dropping execution record automation_id=%s entity=%s/%s status=%s after %s attempts err=%s",
                    automation.id,
                    event.entity_type,
                    event.entity_id,
                    status.value,
                    attempt,
                    exc,
                )
                return None
            logger.warning(
                "Execution record write failed automation_id=%s attempt=%s/%s err=%s",
                automation.id,
                attempt,
                attempts,
                exc,
            )
            sleep(_RECORD_BACKOFF_SEC[min(attempt - 1, len(_RECORD_BACKOFF_SEC) - 1)])
        finally:
            db.close()
    return None
