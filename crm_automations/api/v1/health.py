"""
Health endpoint: database reachability and automation engine state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...core.config import settings


router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
def health(request: Request, db: Session = Depends(get_db)) -> dict:
    db_ok = True
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        db_ok = False

    engine_status = {"running": False, "queue_size": 0}
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is not None:
        engine_status = {"running": engine.running, "queue_size": engine.queue_size()}

    return {
        "status": "ok" if db_ok else "degraded",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "database": db_ok,
        "automation_engine": engine_status,
        "time_triggers_enabled": settings.enable_time_triggers,
    }
