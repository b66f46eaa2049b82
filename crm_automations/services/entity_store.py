"""
Entity store: typed access to the CRM tables automations read and write.

Rows are handed out as plain attribute maps so runs never share ORM state.
Writes are flushed; the caller owns commit/rollback.
"""

from __future__ import annotations

import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Float, Integer, inspect
from sqlalchemy.orm import Query, Session

from ..core.errors import EntityNotFoundError, UnknownEntityTypeError
from ..models import Call, Meeting, Opportunity, Organization, Person, Rfp, Task


ENTITY_MODELS: dict[str, type] = {
    "organization": Organization,
    "person": Person,
    "opportunity": Opportunity,
    "rfp": Rfp,
    "task": Task,
    "meeting": Meeting,
    "call": Call,
}

# Columns automations may set through `update_field`, per entity type.
UPDATABLE_FIELDS: dict[str, frozenset[str]] = {
    "organization": frozenset({"name", "domain", "industry", "website", "phone", "linkedin_url", "description"}),
    "person": frozenset(
        {"first_name", "last_name", "email", "phone", "mobile_phone", "job_title", "department", "linkedin_url", "notes"}
    ),
    "opportunity": frozenset(
        {"name", "amount", "stage", "expected_close_date", "probability", "description", "lost_reason", "won_reason"}
    ),
    "rfp": frozenset({"title", "status", "due_date", "description"}),
    "task": frozenset({"title", "description", "priority", "status", "due_date"}),
    "meeting": frozenset({"title", "description", "status", "outcome_notes", "next_steps"}),
    "call": frozenset({"status", "disposition", "disposition_notes", "duration_seconds"}),
}

CUSTOM_FIELD_PREFIX = "custom_fields."


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return value


def row_to_dict(row: Any) -> dict[str, Any]:
    """Column attributes of an ORM row, JSON friendly."""
    mapper = inspect(row).mapper
    return {attr.key: _json_value(getattr(row, attr.key)) for attr in mapper.column_attrs}


def _parse_datetime(value: Any) -> Optional[datetime.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, datetime.date):
        parsed = datetime.datetime.combine(value, datetime.time())
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid datetime value {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def _coerce_for_column(model: type, field_name: str, value: Any) -> Any:
    column_type = inspect(model).columns[field_name].type
    if value is None:
        return None
    if isinstance(column_type, DateTime):
        return _parse_datetime(value)
    if isinstance(column_type, Integer):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Field {field_name!r} expects an integer, got {value!r}") from exc
    if isinstance(column_type, Float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Field {field_name!r} expects a number, got {value!r}") from exc
    return value if isinstance(value, str) else str(value)


class EntityStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    @staticmethod
    def model_for(entity_type: str) -> type:
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise UnknownEntityTypeError(entity_type)
        return model

    def _load(self, entity_type: str, entity_id: str, project_id: str) -> Any:
        model = self.model_for(entity_type)
        row = (
            self.db.query(model)
            .filter(model.id == str(entity_id), model.project_id == project_id)
            .first()
        )
        if row is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return row

    def get(self, entity_type: str, entity_id: str, project_id: str) -> Optional[dict[str, Any]]:
        try:
            return row_to_dict(self._load(entity_type, entity_id, project_id))
        except EntityNotFoundError:
            return None

    def update(
        self,
        entity_type: str,
        entity_id: str,
        project_id: str,
        values: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Apply `values` to one row; returns (before, after) snapshots."""
        row = self._load(entity_type, entity_id, project_id)
        model = type(row)
        before = row_to_dict(row)
        for field_name, value in values.items():
            if field_name.startswith(CUSTOM_FIELD_PREFIX):
                key = field_name[len(CUSTOM_FIELD_PREFIX):]
                merged = dict(row.custom_fields or {})
                merged[key] = value
                row.custom_fields = merged
                continue
            setattr(row, field_name, _coerce_for_column(model, field_name, value))
        row.updated_at = datetime.datetime.now(datetime.timezone.utc)
        self.db.add(row)
        self.db.flush()
        return before, row_to_dict(row)

    def insert(self, model: type, **values: Any) -> Any:
        row = model(**values)
        self.db.add(row)
        self.db.flush()
        return row

    def query(self, entity_type: str, project_id: str, *, include_deleted: bool = False) -> Query:
        model = self.model_for(entity_type)
        query = self.db.query(model).filter(model.project_id == project_id)
        if not include_deleted:
            query = query.filter(model.deleted_at.is_(None))
        return query

    @staticmethod
    def is_updatable(entity_type: str, field_name: str) -> bool:
        if field_name.startswith(CUSTOM_FIELD_PREFIX):
            key = field_name[len(CUSTOM_FIELD_PREFIX):]
            return bool(key) and "." not in key and not key.startswith("__")
        return field_name in UPDATABLE_FIELDS.get(entity_type, frozenset())
