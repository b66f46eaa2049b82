"""
Error types and logging helpers shared across the backend.
"""

from __future__ import annotations

import logging
from typing import Any, Optional


class ActionError(RuntimeError):
    """Permanent failure of one automation action; never retried."""


class RetryableActionError(ActionError):
    """Transient failure (network, 5xx, SMTP); retried for webhook and email actions."""


class ActionTimeoutError(RetryableActionError):
    """The action did not finish within its configured timeout."""


class EntityNotFoundError(LookupError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class UnknownEntityTypeError(ValueError):
    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    extra: Optional[dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """Log `message` with traceback and optional context fields."""
    details = ""
    if extra:
        details = " " + " ".join(f"{key}={value}" for key, value in extra.items())
    if exc is not None:
        logger.error("%s%s err=%s", message, details, exc, exc_info=exc)
    else:
        logger.exception("%s%s", message, details)
