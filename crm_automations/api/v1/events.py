"""
Event ingestion: CRM write paths post entity events here for automation.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ...schemas.event import EventAccepted, EventIn
from ...services.automation_engine import get_engine


router = APIRouter(prefix="/api/v1/projects/{project_id}/events", tags=["events"])


@router.post("", response_model=EventAccepted, status_code=202)
def emit_event(project_id: str, payload: EventIn, request: Request) -> EventAccepted:
    engine = getattr(request.app.state, "automation_engine", None) or get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Automation engine is not running")
    event = payload.to_event(project_id)
    if not engine.emit(event):
        raise HTTPException(status_code=503, detail="Automation queue is full; retry later")
    return EventAccepted(
        accepted=True,
        trigger_type=event.trigger_type.value,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
    )
