# queuewarden/services/notifications.py
"""
QueueWarden notification publisher (aio-pika)

Publishes {"to", "subject", "message"} JSON documents as persistent AMQP messages to
the notification queue; a downstream mailer turns them into e-mail.

Delivery is best effort. publish() never raises (except CancelledError):
 - initial connection failure is not fatal, publish() reconnects lazily
 - after MAX_INIT_FAILURES consecutive connection failures, publishes inside the
   INIT_RETRY_BACKOFF window are skipped with a warning
 - a failed send drops the channel so the next publish reconnects
 - FAILURE_WARNING_THRESHOLD consecutive failures log an "operators may not be
   receiving alerts" warning on every further failure
"""

from __future__ import annotations

import json
import asyncio
from typing import Any, Dict, List, Optional, Union

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPException
from pydantic import ValidationError

from queuewarden.config import BrokerSettings
from queuewarden.errors import NotificationError
from queuewarden.models import NotificationMessage
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import monotonic_ts, format_utc

LOG = get_logger("queuewarden.services.notifications")
LAD = StructuredLoggerAdapter(LOG, {"component": "notifications"})

MAX_INIT_FAILURES = 3
INIT_RETRY_BACKOFF = 30.0
FAILURE_WARNING_THRESHOLD = 5


# -------------------------
# Message builders
# -------------------------
def _payload(to: str, subject: str, body: str) -> Dict[str, str]:
    return {"to": to, "subject": subject, "message": body}


def _minutes(seconds: float) -> str:
    return f"{seconds / 60.0:g}"


def restart_success(to: str, workload: str, queues: List[str]) -> Dict[str, str]:
    return _payload(
        to,
        f"Container Restart: SUCCESS - {workload}",
        f"Container '{workload}' restarted successfully.\n\n"
        f"Consumers detected on queues: {', '.join(queues)}\n\n"
        f"Timestamp: {format_utc()}",
    )


def restart_warning(to: str, workload: str, queues: List[str], verification_timeout: float) -> Dict[str, str]:
    return _payload(
        to,
        f"Container Restart: WARNING - {workload}",
        f"Container '{workload}' restarted but no consumers detected after "
        f"{_minutes(verification_timeout)} minutes.\n\n"
        f"Queues: {', '.join(queues)}\n\n"
        f"Timestamp: {format_utc()}",
    )


def restart_failure(to: str, workload: str, error: str) -> Dict[str, str]:
    return _payload(
        to,
        f"Container Restart: FAILURE - {workload}",
        f"Failed to restart container '{workload}'.\n\nError: {error}\n\nTimestamp: {format_utc()}",
    )


def stop_success(to: str, workload: str, queues: List[str]) -> Dict[str, str]:
    return _payload(
        to,
        f"Container Stop: SUCCESS - {workload}",
        f"Container '{workload}' stopped due to idle queues.\n\n"
        f"Idle queues: {', '.join(queues)}\n\n"
        f"Timestamp: {format_utc()}",
    )


def stop_failure(to: str, workload: str, error: str) -> Dict[str, str]:
    return _payload(
        to,
        f"Container Stop: FAILURE - {workload}",
        f"Failed to stop container '{workload}'.\n\nError: {error}\n\nTimestamp: {format_utc()}",
    )


def timeout_error(operation_timeout: float) -> str:
    return f"timed out after {_minutes(operation_timeout)} minutes"


# -------------------------
# Publisher
# -------------------------
class NotificationPublisher:
    def __init__(self, settings: BrokerSettings):
        self.settings = settings
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._lock = asyncio.Lock()
        self._last_init_attempt: Optional[float] = None
        self._init_failures = 0
        self._consecutive_failures = 0
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self._channel is not None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def initialize(self):
        """Try to connect once; a failure is logged and retried on the next publish."""
        try:
            async with self._lock:
                await self._connect()
        except NotificationError:
            LAD.warning("Initial notification publisher connection failed, will retry on publish")

    async def _connect(self):
        LAD.info("Initializing notification publisher for queue %s", self.settings.notification_queue_name)
        await self._close_connection()
        self._last_init_attempt = monotonic_ts()
        try:
            self._connection = await aio_pika.connect_robust(
                self.settings.amqp_url, timeout=self.settings.request_timeout_seconds)
            self._channel = await self._connection.channel()
            await self._channel.declare_queue(self.settings.notification_queue_name, durable=True)
        except (AMQPException, OSError, asyncio.TimeoutError) as e:
            self._init_failures += 1
            self._channel = None
            LAD.error("Failed to initialize notification publisher (attempt %d): %s", self._init_failures, e)
            raise NotificationError(f"cannot connect notification publisher: {e}") from e
        self._init_failures = 0
        LAD.info("Notification publisher initialized for queue %s", self.settings.notification_queue_name)

    async def _send(self, body: bytes):
        await self._channel.default_exchange.publish(
            Message(body, content_type="application/json", delivery_mode=DeliveryMode.PERSISTENT),
            routing_key=self.settings.notification_queue_name,
        )

    def _in_backoff(self) -> bool:
        return (self._init_failures >= MAX_INIT_FAILURES
                and self._last_init_attempt is not None
                and monotonic_ts() - self._last_init_attempt < INIT_RETRY_BACKOFF)

    async def publish(self, message: Union[NotificationMessage, Dict[str, Any]]):
        if self._closed:
            LAD.warning("Notification publisher is closed, cannot publish notification")
            return
        try:
            msg = message if isinstance(message, NotificationMessage) else NotificationMessage.model_validate(message)
        except ValidationError as e:
            LAD.error("Dropping invalid notification: %s", e)
            return

        async with self._lock:
            if self._channel is None:
                if self._in_backoff():
                    LAD.warning("Notification publisher not initialized and in backoff period, skipping notification to %s",
                                msg.to)
                    return
                LAD.warning("Notification publisher not initialized, attempting to reconnect")
                try:
                    await self._connect()
                except NotificationError:
                    return

            try:
                await self._send(json.dumps(msg.model_dump()).encode("utf-8"))
            except Exception as e:
                self._consecutive_failures += 1
                self._channel = None
                LAD.error("Failed to publish notification to %s: %s", msg.to, e)
                if self._consecutive_failures >= FAILURE_WARNING_THRESHOLD:
                    LAD.warning("Notification publishing has failed %d consecutive times. "
                                "Operators may not be receiving alerts.", self._consecutive_failures)
                return

            self._consecutive_failures = 0
        LAD.info("Published notification: to=%s subject=%s", msg.to, msg.subject)

    async def _close_connection(self):
        conn, self._connection, self._channel = self._connection, None, None
        if conn is not None and not conn.is_closed:
            try:
                await conn.close()
            except (AMQPException, OSError) as e:
                LAD.warning("Error closing previous notification connection: %s", e)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            await self._close_connection()
        LAD.info("Notification publisher closed")


__all__ = [
    "NotificationPublisher",
    "MAX_INIT_FAILURES",
    "INIT_RETRY_BACKOFF",
    "FAILURE_WARNING_THRESHOLD",
    "restart_success",
    "restart_warning",
    "restart_failure",
    "stop_success",
    "stop_failure",
    "timeout_error",
]
