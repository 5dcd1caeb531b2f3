# queuewarden/utils/time_utils.py
"""
QueueWarden Time Utilities
--------------------------

Small set of clock and backoff helpers shared by the decision engine,
the operation registry and the worker loop.

 - now_ts / monotonic_ts / iso_now
 - format_utc for notification bodies ("2025-01-31 12:00:00 UTC")
 - format_duration for log lines ("1h2m3s")
 - compute_backoff for retry loops (exponential with jitter)
"""

from __future__ import annotations

import time
import random
import datetime
from typing import Optional

# -------------------------
# Core helpers
# -------------------------
def now_ts() -> float:
    """Unix timestamp (UTC) with float seconds."""
    return time.time()

def monotonic_ts() -> float:
    """Monotonic timestamp (not affected by system clock changes)."""
    return time.monotonic()

def iso_now() -> str:
    """Return current UTC time in ISO8601 format."""
    return to_iso(now_ts())

def to_iso(ts: float) -> str:
    """Format a unix timestamp as ISO8601 (UTC, Z suffix)."""
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")

def format_utc(ts: Optional[float] = None) -> str:
    """Format a unix timestamp as 'YYYY-MM-DD HH:MM:SS UTC'."""
    dt = datetime.datetime.fromtimestamp(now_ts() if ts is None else ts, tz=datetime.timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S") + " UTC"

def format_duration(seconds: float, compact: bool = True) -> str:
    """Format seconds into '1d2h3m4s' or human string."""
    seconds = int(max(0, seconds))
    d, r = divmod(seconds, 86400)
    h, r = divmod(r, 3600)
    m, s = divmod(r, 60)
    parts = []
    if d: parts.append(f"{d}d")
    if h: parts.append(f"{h}h")
    if m: parts.append(f"{m}m")
    if s or not parts: parts.append(f"{s}s")
    return "".join(parts) if compact else " ".join(parts)

# -------------------------
# Backoff utilities
# -------------------------
def compute_backoff(attempt: int, base: float = 0.5, factor: float = 2.0, jitter: float = 0.1, max_delay: float = 30.0) -> float:
    """Compute exponential backoff with jitter."""
    delay = min(base * (factor ** attempt), max_delay)
    if jitter:
        delay *= (1.0 + (random.random() - 0.5) * jitter)
    return delay

__all__ = [
    "now_ts", "monotonic_ts", "iso_now", "to_iso", "format_utc",
    "format_duration", "compute_backoff",
]
