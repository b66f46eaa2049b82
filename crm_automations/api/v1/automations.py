"""
API endpoints for managing automation rules and inspecting their executions.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...core.errors import EntityNotFoundError
from ...core.pagination import DEFAULT_LIMIT, clamp_limit, clamp_offset
from ...models import Automation, AutomationExecution
from ...schemas.automation import (
    AutomationCreate,
    AutomationListOut,
    AutomationOut,
    AutomationUpdate,
    DryRunIn,
    DryRunOut,
    ExecutionListOut,
    ExecutionOut,
    ExecutionStatus,
    TriggerType,
)
from ...services.automation_engine import dry_run


router = APIRouter(prefix="/api/v1/projects/{project_id}/automations", tags=["automations"])


def _get_automation(db: Session, project_id: str, automation_id: str) -> Automation:
    automation = (
        db.query(Automation)
        .filter(Automation.id == automation_id, Automation.project_id == project_id)
        .first()
    )
    if not automation:
        raise HTTPException(status_code=404, detail="Automation not found")
    return automation


def _dump_trigger_config(config) -> dict:
    return config.model_dump(mode="json", exclude_none=True) if config is not None else {}


@router.get("", response_model=AutomationListOut)
def list_automations(
    project_id: str,
    is_active: Optional[bool] = Query(None),
    trigger_type: Optional[TriggerType] = Query(None),
    limit: int = Query(DEFAULT_LIMIT, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> AutomationListOut:
    limit = clamp_limit(limit)
    offset = clamp_offset(offset)
    query = db.query(Automation).filter(Automation.project_id == project_id)
    if is_active is not None:
        query = query.filter(Automation.is_active.is_(is_active))
    if trigger_type is not None:
        query = query.filter(Automation.trigger_type == trigger_type.value)
    rows = query.order_by(Automation.created_at.desc()).offset(offset).limit(limit).all()
    return AutomationListOut(
        automations=[AutomationOut.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=AutomationOut, status_code=201)
def create_automation(project_id: str, payload: AutomationCreate, db: Session = Depends(get_db)) -> AutomationOut:
    automation = Automation(
        project_id=project_id,
        name=payload.name,
        description=payload.description,
        is_active=payload.is_active,
        trigger_type=payload.trigger_type.value,
        trigger_config=_dump_trigger_config(payload.trigger_config),
        conditions=[c.model_dump(mode="json") for c in payload.conditions],
        actions=[a.model_dump(mode="json") for a in payload.actions],
        created_by=payload.created_by,
    )
    db.add(automation)
    db.commit()
    db.refresh(automation)
    return AutomationOut.model_validate(automation)


@router.get("/{automation_id}", response_model=AutomationOut)
def get_automation(project_id: str, automation_id: str, db: Session = Depends(get_db)) -> AutomationOut:
    return AutomationOut.model_validate(_get_automation(db, project_id, automation_id))


@router.patch("/{automation_id}", response_model=AutomationOut)
def update_automation(
    project_id: str,
    automation_id: str,
    payload: AutomationUpdate,
    db: Session = Depends(get_db),
) -> AutomationOut:
    automation = _get_automation(db, project_id, automation_id)
    data = payload.model_dump(exclude_unset=True)
    if "actions" in data and payload.actions is None:
        raise HTTPException(status_code=422, detail="actions cannot be null")
    for key in ("name", "description", "is_active"):
        if key in data:
            if key != "description" and data[key] is None:
                raise HTTPException(status_code=422, detail=f"{key} cannot be null")
            setattr(automation, key, data[key])
    if payload.trigger_type is not None:
        automation.trigger_type = payload.trigger_type.value
    if "trigger_config" in data:
        automation.trigger_config = _dump_trigger_config(payload.trigger_config)
    if "conditions" in data:
        automation.conditions = [c.model_dump(mode="json") for c in payload.conditions or []]
    if payload.actions is not None:
        automation.actions = [a.model_dump(mode="json") for a in payload.actions]
    db.add(automation)
    db.commit()
    db.refresh(automation)
    return AutomationOut.model_validate(automation)


@router.delete("/{automation_id}", status_code=204)
def delete_automation(project_id: str, automation_id: str, db: Session = Depends(get_db)) -> Response:
    automation = _get_automation(db, project_id, automation_id)
    db.delete(automation)
    db.commit()
    return Response(status_code=204)


@router.get("/{automation_id}/executions", response_model=ExecutionListOut)
def list_executions(
    project_id: str,
    automation_id: str,
    status: Optional[ExecutionStatus] = Query(None),
    limit: int = Query(DEFAULT_LIMIT, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> ExecutionListOut:
    _get_automation(db, project_id, automation_id)
    limit = clamp_limit(limit)
    offset = clamp_offset(offset)
    query = db.query(AutomationExecution).filter(
        AutomationExecution.automation_id == automation_id,
        AutomationExecution.project_id == project_id,
    )
    if status is not None:
        query = query.filter(AutomationExecution.status == status.value)
    rows = query.order_by(AutomationExecution.executed_at.desc()).offset(offset).limit(limit).all()
    return ExecutionListOut(
        executions=[ExecutionOut.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.post("/{automation_id}/test", response_model=DryRunOut)
def test_automation(
    project_id: str,
    automation_id: str,
    payload: DryRunIn,
    db: Session = Depends(get_db),
) -> DryRunOut:
    automation = AutomationOut.model_validate(_get_automation(db, project_id, automation_id))
    try:
        result = dry_run(db, automation, payload.entity_type, payload.entity_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return DryRunOut(**result)
