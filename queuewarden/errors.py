# queuewarden/errors.py
"""
QueueWarden exception hierarchy.

 - ConfigError            -> invalid configuration; fatal at startup only
 - BrokerError            -> broker unreachable / query failed; retried next cycle
 - ContainerManagerError  -> lifecycle API call failed; action reported as FAILURE
 - NotificationError      -> publisher internal; never escapes publish()
"""

from __future__ import annotations

from typing import List, Optional


class QueueWardenError(Exception):
    """Base class for all QueueWarden errors."""


class ConfigError(QueueWardenError):
    """Configuration could not be loaded or failed validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = message + ":\n  - " + "\n  - ".join(self.errors)
        super().__init__(message)


class BrokerError(QueueWardenError):
    """Broker connection or queue metadata query failed."""


class ContainerManagerError(QueueWardenError):
    """Compute-lifecycle API call failed."""


class NotificationError(QueueWardenError):
    """Notification channel could not be initialized or used."""


__all__ = [
    "QueueWardenError",
    "ConfigError",
    "BrokerError",
    "ContainerManagerError",
    "NotificationError",
]
