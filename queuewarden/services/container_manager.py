# queuewarden/services/container_manager.py
"""
QueueWarden container manager (Kubernetes Deployments via aiohttp)

Each workload id is a Deployment name in the configured namespace. Scaling is done
by patching spec.replicas through the API server with the in-cluster service-account
token, the same way the autoscaler patched deployments before.

 - restart(workload)  -> remember replicas, scale to 0, wait, scale back to the original count
 - stop(workload)     -> scale to 0
 - wait_for_consumers(queues, timeout) -> poll the broker until every queue has a consumer

Every wait is a plain asyncio.sleep, so cancelling the calling task interrupts it.
"""

from __future__ import annotations

import ssl
import asyncio
import pathlib
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import aiohttp

from queuewarden.config import KubernetesSettings, ManagerSettings
from queuewarden.errors import BrokerError, ContainerManagerError
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import monotonic_ts, format_duration

LOG = get_logger("queuewarden.services.container_manager")
LAD = StructuredLoggerAdapter(LOG, {"component": "container_manager"})

PATCH_CONTENT_TYPE = "application/strategic-merge-patch+json"


class ContainerManager:
    def __init__(self,
                 settings: KubernetesSettings,
                 manager: ManagerSettings,
                 broker,
                 session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.manager = manager
        self.broker = broker
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._ssl: Union[ssl.SSLContext, bool] = True
        self._initialized = False

    # -------------------------
    # Lifecycle
    # -------------------------
    async def initialize(self):
        LAD.info("Initializing Kubernetes client for %s (namespace=%s)",
                 self.settings.api_server, self.settings.namespace)
        token_path = pathlib.Path(self.settings.token_path)
        try:
            self._token = token_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            LAD.error("Failed to read service account token from %s", token_path)
            raise ContainerManagerError(f"service account token unavailable at {token_path}: {e}") from e
        if not self._token:
            raise ContainerManagerError(f"service account token at {token_path} is empty")

        self._ssl = True
        if self.settings.ca_path and pathlib.Path(self.settings.ca_path).exists():
            self._ssl = ssl.create_default_context(cafile=self.settings.ca_path)
        else:
            LAD.warning("CA bundle %s not found; using default trust store", self.settings.ca_path)

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds))
            self._owns_session = True
        self._initialized = True
        LAD.info("Kubernetes client initialized")

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._initialized = False
        LAD.debug("Container manager closed")

    # -------------------------
    # Actions
    # -------------------------
    async def restart(self, workload_id: str):
        try:
            if not self._initialized:
                await self.initialize()
            LAD.info("Restarting %s", workload_id, extra={"workload": workload_id})

            original = await self._get_replicas(workload_id)
            if not original:
                original = 1

            await self._patch_replicas(workload_id, 0)
            LAD.info("%s scaled to 0", workload_id, extra={"workload": workload_id})

            # API server / controller propagation, then the configured gap between down and up
            await asyncio.sleep(self.settings.propagation_delay_seconds)
            LAD.debug("Waiting %ss before scaling %s back up", self.manager.restart_delay_seconds, workload_id)
            await asyncio.sleep(self.manager.restart_delay_seconds)

            LAD.info("Scaling up %s to %d replicas", workload_id, original, extra={"workload": workload_id})
            await self._patch_replicas(workload_id, original)
            LAD.info("%s restarted successfully", workload_id, extra={"workload": workload_id})
        except asyncio.CancelledError:
            LAD.info("Restart of %s cancelled", workload_id, extra={"workload": workload_id})
            raise
        except Exception:
            LAD.exception("Failed to restart %s", workload_id, extra={"workload": workload_id})
            raise

    async def stop(self, workload_id: str):
        try:
            if not self._initialized:
                await self.initialize()
            LAD.info("Stopping %s", workload_id, extra={"workload": workload_id})
            await self._patch_replicas(workload_id, 0)
            LAD.info("%s stopped successfully", workload_id, extra={"workload": workload_id})
        except asyncio.CancelledError:
            LAD.info("Stop of %s cancelled", workload_id, extra={"workload": workload_id})
            raise
        except Exception:
            LAD.exception("Failed to stop %s", workload_id, extra={"workload": workload_id})
            raise

    async def wait_for_consumers(self, queue_names: List[str], timeout: float) -> bool:
        """
        Poll until every queue reports at least one consumer (True) or `timeout`
        seconds pass (False). Broker errors are logged and polling continues.
        """
        poll = float(self.manager.receiver_poll_interval_seconds)
        start = monotonic_ts()
        deadline = start + timeout
        LAD.info("Waiting up to %s for consumers on queues: %s", format_duration(timeout), ", ".join(queue_names))

        while monotonic_ts() < deadline:
            try:
                if not self.broker.is_connected:
                    LAD.warning("Broker not connected during consumer wait, attempting reconnect")
                    await self.broker.initialize()

                all_have_consumers = True
                for name in queue_names:
                    if await self.broker.consumer_count(name) == 0:
                        all_have_consumers = False
                        break
                if all_have_consumers:
                    LAD.info("All queues have consumers after %s", format_duration(monotonic_ts() - start))
                    return True
            except (BrokerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                LAD.warning("Error checking for consumers during wait: %s", e)

            remaining = deadline - monotonic_ts()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll, remaining))

        LAD.warning("Timeout waiting for consumers on queues after %s", format_duration(timeout))
        return False

    # -------------------------
    # Kubernetes API
    # -------------------------
    def _deployment_url(self, workload_id: str) -> str:
        return (f"{self.settings.api_server}/apis/apps/v1/namespaces/"
                f"{quote(self.settings.namespace, safe='')}/deployments/{quote(workload_id, safe='')}")

    def _headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    async def _get_replicas(self, workload_id: str) -> int:
        doc = await self._request("GET", workload_id)
        return int(((doc or {}).get("spec") or {}).get("replicas") or 0)

    async def _patch_replicas(self, workload_id: str, replicas: int):
        await self._request("PATCH", workload_id, {"spec": {"replicas": int(replicas)}})

    async def _request(self, method: str, workload_id: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        if self._session is None:
            raise ContainerManagerError("kubernetes session not initialized")
        url = self._deployment_url(workload_id)
        headers = self._headers(PATCH_CONTENT_TYPE if payload is not None else None)
        try:
            async with self._session.request(method, url, json=payload, headers=headers, ssl=self._ssl) as resp:
                if resp.status not in (200, 201):
                    text = await resp.text()
                    raise ContainerManagerError(
                        f"{method} deployment {workload_id} failed status={resp.status} body={text[:200]}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise ContainerManagerError(f"{method} deployment {workload_id} failed: {e}") from e


__all__ = ["ContainerManager"]
