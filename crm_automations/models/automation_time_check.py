"""
Scan marks for time-based triggers.

One row per (trigger, entity, scan window) records that the scanner already
emitted an event for that entity in that window.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class AutomationTimeCheck(Base):
    __tablename__ = "automation_time_checks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(36), index=True)
    trigger_type: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(64))
    window_key: Mapped[str] = mapped_column(String(32))
    emitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "trigger_type",
            "entity_type",
            "entity_id",
            "window_key",
            name="uq_automation_time_checks_trigger_entity_window",
        ),
    )
