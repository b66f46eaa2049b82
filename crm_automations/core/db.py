"""
Database session management for the CRM automation backend.

Uses SQLAlchemy 2.x style `Session` and declarative models. Provides a
session factory and dependency helper for use with FastAPI. Engine workers
open one session per automation run through `SessionLocal`.
"""

from __future__ import annotations

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def build_engine(database_url: str):
    """Create an engine; SQLite URLs skip pool sizing and allow cross-thread use."""
    if database_url.startswith("sqlite"):
        extra = {}
        if ":memory:" in database_url or database_url.rstrip("/").endswith(":"):
            # one shared connection, otherwise every action thread sees an empty database
            extra["poolclass"] = StaticPool
        return create_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            **extra,
        )
    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=_env_int("DB_POOL_SIZE", 5),
        max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
        pool_recycle=_env_int("DB_POOL_RECYCLE_SEC", 1800),
        pool_timeout=_env_int("DB_POOL_TIMEOUT_SEC", 30),
    )


# Create SQLAlchemy engine
engine = build_engine(settings.database_url)

# Create a configured session factory
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    """Yield a database session for FastAPI dependencies."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
