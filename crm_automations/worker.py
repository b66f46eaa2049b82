"""
Automation worker process entrypoint.

Runs the automation engine and the time-based trigger scanner without the
HTTP app. Events reach this process through the scanner; live events are
posted to the API process.
"""

from __future__ import annotations

import logging
import os
import signal
import threading

from .core.config import settings
from .core.db import SessionLocal, engine
from .models import Base
from .services.automation_engine import AutomationEngine, set_engine
from .services.time_triggers import run_time_trigger_scanner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


def main() -> int:
    logger.info("Worker booted (pid=%s)", os.getpid())
    if settings.auto_create_db:
        Base.metadata.create_all(bind=engine)

    stop_event = threading.Event()

    def _request_stop(signum, frame) -> None:
        logger.info("Received signal %s; stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    automation_engine = AutomationEngine(SessionLocal)
    automation_engine.start()
    set_engine(automation_engine)
    try:
        if settings.enable_time_triggers:
            run_time_trigger_scanner(stop_event, automation_engine.emit)
        else:
            logger.info("Time triggers disabled; worker idles until stopped")
            stop_event.wait()
    except Exception:
        logger.exception("Worker loop error")
        return 1
    finally:
        automation_engine.stop(timeout=60)
        set_engine(None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
