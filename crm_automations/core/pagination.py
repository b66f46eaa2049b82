"""Pagination helpers with hard caps."""

from __future__ import annotations

import os


DEFAULT_LIMIT = 50
DEFAULT_MAX_LIMIT = 100


def get_max_limit() -> int:
    raw = os.getenv("API_MAX_PAGE_SIZE", str(DEFAULT_MAX_LIMIT))
    try:
        val = int(raw)
    except Exception:
        val = DEFAULT_MAX_LIMIT
    if val < 1:
        return DEFAULT_MAX_LIMIT
    return val


def clamp_limit(limit: int) -> int:
    max_size = get_max_limit()
    if limit < 1:
        return 1
    return min(limit, max_size)


def clamp_offset(offset: int) -> int:
    return max(0, offset)
