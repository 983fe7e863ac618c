"""Provide utility helpers for timestamps."""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Milliseconds since the Unix epoch, the unit every task timestamp uses."""
    return time.time_ns() // 1_000_000


def deadline_from_ms(value: Optional[int]) -> float:
    """Map the stored sentinel for "no deadline" to +infinity."""
    return math.inf if value is None else value


def birthline_from_ms(value: Optional[int]) -> float:
    """Map the stored sentinel for "no birthline" to -infinity."""
    return -math.inf if value is None else value


def ms_or_none(value: Optional[float]) -> Optional[int]:
    if value is None or math.isinf(value):
        return None
    return int(value)
