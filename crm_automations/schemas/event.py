"""
Pydantic schemas for automation events.

An event is a transient fact about one CRM record. It is never persisted as
its own row; the execution recorder keeps a snapshot of it per run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from .automation import EntityType, TriggerType


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AutomationEvent(BaseModel):
    project_id: str
    trigger_type: TriggerType
    entity_type: str
    entity_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    previous_data: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_now)
    # 0 for events from collaborators; +1 per engine-originated hop
    depth: int = Field(default=0, ge=0)

    def follow_up(
        self,
        trigger_type: TriggerType,
        *,
        data: dict[str, Any],
        previous_data: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "AutomationEvent":
        """Derive an engine-originated event about the same record, one level deeper."""
        return AutomationEvent(
            project_id=self.project_id,
            trigger_type=trigger_type,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            data=data,
            previous_data=previous_data,
            metadata=metadata or {},
            depth=self.depth + 1,
        )

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class EventIn(BaseModel):
    """Event body accepted by the ingestion endpoint."""

    trigger_type: TriggerType
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    previous_data: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_event(self, project_id: str) -> AutomationEvent:
        return AutomationEvent(project_id=project_id, depth=0, **self.model_dump())


class EventAccepted(BaseModel):
    accepted: bool
    trigger_type: str
    entity_type: str
    entity_id: str
