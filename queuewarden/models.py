# queuewarden/models.py
"""
QueueWarden shared data models.

 - QueueObservation     -> one queue's pending/consumer snapshot for one poll cycle
 - Verdict              -> per-workload decision: none | restart | stop
 - IdleState            -> when a queue was first seen idle (empty, with consumers)
 - OperationRecord      -> an in-flight lifecycle operation and its cancellation handle
 - NotificationMessage  -> the {to, subject, message} payload sent to the alert channel
"""

from __future__ import annotations

import re
import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from queuewarden.utils.time_utils import now_ts

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", re.IGNORECASE)


def split_recipients(value: str) -> List[str]:
    """Split a ';' or ',' separated recipient list, dropping blanks."""
    return [p.strip() for p in re.split(r"[;,]", value or "") if p.strip()]


def invalid_recipients(value: str) -> List[str]:
    return [e for e in split_recipients(value) if not EMAIL_PATTERN.match(e)]


# ---------------------------
# Queue observations & verdicts
# ---------------------------
@dataclass(frozen=True)
class QueueObservation:
    name: str
    pending_count: int
    consumer_count: int
    observed_at: float = field(default_factory=now_ts)

    @property
    def has_messages(self) -> bool:
        return self.pending_count > 0

    @property
    def has_consumers(self) -> bool:
        return self.consumer_count > 0


class Verdict(str, Enum):
    NONE = "none"
    RESTART = "restart"
    STOP = "stop"


@dataclass
class IdleState:
    queue_name: str
    idle_since: float

    def idle_duration(self, now: Optional[float] = None) -> float:
        """Seconds idle; clamped at zero if the wall clock stepped backwards."""
        now = now_ts() if now is None else now
        return max(0.0, now - self.idle_since)


# ---------------------------
# In-flight operations
# ---------------------------
@dataclass(eq=False)
class OperationRecord:
    """
    Exists only while a lifecycle operation is in flight for `workload_id`.
    Identity matters: release() removes a record only if it is still the one registered.
    """
    workload_id: str
    action: Verdict
    started_at: float = field(default_factory=now_ts)
    task: Optional[asyncio.Task] = None

    def age(self, now: Optional[float] = None) -> float:
        now = now_ts() if now is None else now
        return max(0.0, now - self.started_at)

    def cancel(self) -> bool:
        """Request cooperative cancellation of the operation task."""
        if self.task is None or self.task.done():
            return False
        return self.task.cancel()


# ---------------------------
# Notifications
# ---------------------------
class NotificationMessage(BaseModel):
    """Alert payload; serialized as {"to", "subject", "message"}."""
    to: str = Field(..., description="One or more recipients separated by ';' or ','")
    subject: str = Field(..., max_length=998)
    message: str = Field(..., description="Plain-text body")

    @field_validator("subject")
    @classmethod
    def subject_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("subject is required")
        return v

    @field_validator("to")
    @classmethod
    def recipients_must_be_valid(cls, v: str) -> str:
        if not split_recipients(v):
            raise ValueError("at least one recipient is required")
        bad = invalid_recipients(v)
        if bad:
            raise ValueError(f"invalid email format: {', '.join(bad)}")
        return v


__all__ = [
    "QueueObservation",
    "Verdict",
    "IdleState",
    "OperationRecord",
    "NotificationMessage",
    "split_recipients",
    "invalid_recipients",
]
