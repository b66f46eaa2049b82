"""
SQLAlchemy model base class for the CRM automation backend.

This package defines ORM models for automations, their execution audit log,
the time-trigger scan marks, and the CRM tables the automation actions write
to. All models should inherit from the declarative `Base` defined here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return compiler.process(JSON(), **kw)


from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


from .automation import Automation  # noqa: E402,F401
from .automation_execution import AutomationExecution  # noqa: E402,F401
from .automation_time_check import AutomationTimeCheck  # noqa: E402,F401
from .entities import Organization, Person, Opportunity, Rfp, Meeting, Call  # noqa: E402,F401
from .task import Task  # noqa: E402,F401
from .activity import ActivityLog  # noqa: E402,F401
from .tag import Tag, EntityTag  # noqa: E402,F401
from .notification import Notification  # noqa: E402,F401
from .email import EmailTemplate, EmailDraft  # noqa: E402,F401
from .sequence import Sequence, SequenceEnrollment  # noqa: E402,F401
from .research_job import ResearchJob  # noqa: E402,F401

__all__ = [
    "Base",
    "utcnow",

    # Automations
    "Automation",
    "AutomationExecution",
    "AutomationTimeCheck",

    # CRM entities
    "Organization",
    "Person",
    "Opportunity",
    "Rfp",
    "Meeting",
    "Call",
    "Task",

    # Action side effects
    "ActivityLog",
    "Tag",
    "EntityTag",
    "Notification",
    "EmailTemplate",
    "EmailDraft",
    "Sequence",
    "SequenceEnrollment",
    "ResearchJob",
]
