# queuewarden/queue/rabbitmq_monitor.py
"""
QueueWarden RabbitMQ queue monitor (async)

Reads queue metadata from the RabbitMQ management HTTP API via aiohttp:
 - list_queues()        -> every queue in the vhost as a QueueObservation
                           (system queues such as amq.* are skipped)
 - consumer_count(name) -> consumers attached to one queue (0 on any error)
 - is_connected / initialize() -> connection state and explicit reconnect

A failed list_queues() marks the monitor disconnected; the worker treats that as
"retry next cycle", never as fatal.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional
from urllib.parse import quote

import aiohttp

from queuewarden.config import BrokerSettings
from queuewarden.errors import BrokerError
from queuewarden.models import QueueObservation
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import now_ts

LOG = get_logger("queuewarden.queue.rabbitmq")
LAD = StructuredLoggerAdapter(LOG, {"component": "broker"})


class RabbitMQQueueMonitor:
    """
    Broker collaborator. One aiohttp session per monitor; concurrent initialize()
    callers serialize on a lock so only one reconnect runs at a time.
    """

    def __init__(self, settings: BrokerSettings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self._session = session
        self._owns_session = session is None
        self._connected = False
        self._init_lock = asyncio.Lock()
        self._vhost = quote(settings.vhost, safe="")

    # -------------------------
    # Connection state
    # -------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected

    async def initialize(self):
        """Connect (or reconnect) and verify the management API answers."""
        async with self._init_lock:
            if self._connected:
                return
            LAD.info("Initializing RabbitMQ management connection to %s (vhost=%s)",
                     self.settings.management_url, self.settings.vhost)
            try:
                if self._session is None or self._session.closed:
                    self._session = aiohttp.ClientSession(
                        auth=aiohttp.BasicAuth(self.settings.username, self.settings.password),
                        timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds),
                    )
                    self._owns_session = True
                overview = await self._get_json("/api/overview")
            except BrokerError:
                self._connected = False
                LAD.error("Failed to initialize RabbitMQ management connection")
                raise
            self._connected = True
            LAD.info("RabbitMQ connection initialized (cluster=%s, version=%s)",
                     (overview or {}).get("cluster_name"), (overview or {}).get("rabbitmq_version"))

    async def close(self):
        self._connected = False
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            LAD.info("RabbitMQ management connection closed")
        self._session = None

    # -------------------------
    # Queue metadata
    # -------------------------
    async def list_queues(self) -> List[QueueObservation]:
        if not self._connected:
            LAD.warning("Broker not connected, attempting to reconnect")
            await self.initialize()
        try:
            payload = await self._get_json(f"/api/queues/{self._vhost}")
        except BrokerError:
            LAD.error("Error retrieving queues from broker")
            self._connected = False
            raise

        observed_at = now_ts()
        out: List[QueueObservation] = []
        for q in payload or []:
            name = q.get("name")
            if not name or self._is_system_queue(name):
                continue
            out.append(QueueObservation(
                name=name,
                pending_count=int(q.get("messages") or 0),
                consumer_count=int(q.get("consumers") or 0),
                observed_at=observed_at,
            ))
        LAD.debug("Retrieved %d queues from broker", len(out))
        return out

    async def consumer_count(self, queue_name: str) -> int:
        if not self._connected:
            LAD.warning("Broker not connected, attempting to reconnect")
            await self.initialize()
        try:
            q = await self._get_json(f"/api/queues/{self._vhost}/{quote(queue_name, safe='')}")
        except BrokerError:
            LAD.exception("Error getting consumer count for queue %s", queue_name, extra={"queue": queue_name})
            return 0
        if not q:
            return 0
        return int(q.get("consumers") or 0)

    # -------------------------
    # Helpers
    # -------------------------
    def _is_system_queue(self, name: str) -> bool:
        return any(name.startswith(p) for p in self.settings.system_queue_prefixes)

    async def _get_json(self, path: str) -> Any:
        """GET a management API path; 404 -> None; anything else non-2xx -> BrokerError."""
        if self._session is None:
            raise BrokerError("management session not initialized")
        url = f"{self.settings.management_url}{path}"
        try:
            async with self._session.get(url) as resp:
                if resp.status == 404:
                    return None
                if resp.status >= 400:
                    text = await resp.text()
                    raise BrokerError(f"GET {path} failed status={resp.status} body={text[:200]}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise BrokerError(f"GET {path} failed: {e}") from e


__all__ = ["RabbitMQQueueMonitor"]
