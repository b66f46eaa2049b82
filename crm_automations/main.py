"""
Entry point for the CRM automation backend.

This module creates the FastAPI application, includes the API routers and
starts the automation engine and the time-based trigger scanner in-process.
Run with:

    uvicorn crm_automations.main:app --reload

"""

from __future__ import annotations

import logging
import os
import threading

from fastapi import FastAPI

from .api import api_router
from .core.config import get_app_env, settings
from .core.db import SessionLocal, engine
from .core.errors import log_exception
from .models import Base
from .services.automation_engine import AutomationEngine, set_engine
from .services.time_triggers import run_time_trigger_scanner


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def create_app() -> FastAPI:
    app = FastAPI(title="CRM Automations", version="0.1.0")
    app.include_router(api_router)
    app.state.automation_engine = None
    app.state.time_trigger_stop = None
    app.state.time_trigger_thread = None

    @app.on_event("startup")
    def _startup() -> None:
        logger = logging.getLogger("startup")
        logger.info("Starting CRM automations env=%s", get_app_env())
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                raise
        if _env_flag("ENABLE_AUTOMATION_ENGINE"):
            automation_engine = AutomationEngine(SessionLocal)
            automation_engine.start()
            set_engine(automation_engine)
            app.state.automation_engine = automation_engine
            if settings.enable_time_triggers:
                stop_event = threading.Event()
                thread = threading.Thread(
                    target=run_time_trigger_scanner,
                    args=(stop_event, automation_engine.emit),
                    daemon=True,
                    name="time-trigger-scanner",
                )
                thread.start()
                app.state.time_trigger_stop = stop_event
                app.state.time_trigger_thread = thread

    @app.on_event("shutdown")
    def _shutdown() -> None:
        stop_event = getattr(app.state, "time_trigger_stop", None)
        if stop_event:
            stop_event.set()
        thread = getattr(app.state, "time_trigger_thread", None)
        if thread:
            thread.join(timeout=5)
        automation_engine = getattr(app.state, "automation_engine", None)
        if automation_engine:
            automation_engine.stop(timeout=30)
            set_engine(None)

    return app


app = create_app()
