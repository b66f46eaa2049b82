"""
Audit record of one automation run against one event.

Rows are written once by the execution recorder and never updated. There is
no foreign key to `automations` so the audit trail outlives deleted rules.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class AutomationExecution(Base):
    __tablename__ = "automation_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    automation_id: Mapped[str] = mapped_column(String(36), index=True)
    project_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(32))  # success | partial_failure | failed | skipped
    conditions_met: Mapped[bool] = mapped_column(Boolean, default=True)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trigger_event: Mapped[dict] = mapped_column(JSONB, default=dict)
    actions_results: Mapped[list] = mapped_column(JSONB, default=list)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_automation_executions_automation_executed", "automation_id", "executed_at"),
    )
