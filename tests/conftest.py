"""
QueueWarden Pytest Configuration
--------------------------------

Centralized fixtures and in-memory collaborators for all tests.

Features:
 - FakeBroker / FakeContainerManager / FakeNotifier (no network I/O)
 - ManagerSettings built with model_construct so timeouts can be sub-second
 - Auto-clean QUEUEWARDEN_* environment variables
 - wait_until() helper for polling async state
"""

import os
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import pytest

from queuewarden.config import ManagerSettings
from queuewarden.errors import BrokerError, ContainerManagerError
from queuewarden.models import QueueObservation

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("queuewarden.tests")
LOG.setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """
    Drop QUEUEWARDEN_* variables so a developer's shell cannot change config tests.
    """
    for var in list(os.environ):
        if var.startswith("QUEUEWARDEN_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TZ", "UTC")
    yield


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
DEFAULT_MAPPINGS = {"app-a": ["q1", "q2"], "app-b": ["q3"]}


def make_settings(**overrides) -> ManagerSettings:
    """Unvalidated settings: lets tests use fractions of a minute/second."""
    values = dict(
        polling_interval_seconds=0.01,
        idle_timeout_minutes=10,
        restart_verification_timeout_minutes=0.001,
        restart_delay_seconds=0,
        operation_timeout_minutes=1,
        stuck_operation_cleanup_minutes=2,
        receiver_poll_interval_seconds=0.01,
        shutdown_grace_seconds=1,
        queue_container_mappings={k: list(v) for k, v in DEFAULT_MAPPINGS.items()},
        notification_email_recipient="ops@example.com",
    )
    values.update(overrides)
    return ManagerSettings.model_construct(**values)


@pytest.fixture
def settings():
    return make_settings()


# -----------------------------------------------------------------------------
# Fake collaborators
# -----------------------------------------------------------------------------
class FakeBroker:
    def __init__(self, queues: Optional[Dict[str, Tuple[int, int]]] = None, connected: bool = True):
        self.queues: Dict[str, Tuple[int, int]] = dict(queues or {})
        self.connected = connected
        self.fail_init = 0
        self.list_error: Optional[Exception] = None
        self.init_calls = 0
        self.list_calls = 0
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def set(self, name: str, pending: int, consumers: int):
        self.queues[name] = (pending, consumers)

    async def initialize(self):
        self.init_calls += 1
        if self.fail_init:
            self.fail_init -= 1
            raise BrokerError("broker unavailable")
        self.connected = True

    async def list_queues(self) -> List[QueueObservation]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [QueueObservation(name=n, pending_count=p, consumer_count=c) for n, (p, c) in self.queues.items()]

    async def consumer_count(self, queue_name: str) -> int:
        return self.queues.get(queue_name, (0, 0))[1]

    async def close(self):
        self.closed = True


class FakeContainerManager:
    def __init__(self):
        self.restarts: List[str] = []
        self.stops: List[str] = []
        self.init_calls = 0
        self.fail_init = 0
        self.error: Optional[Exception] = None
        self.hang = False
        self.ignore_cancel = False
        self.cancel_linger = 0.5
        self.consumers_appear = True
        self.delay = 0.0
        self.cancelled: List[str] = []
        self.closed = False

    async def initialize(self):
        self.init_calls += 1
        if self.fail_init:
            self.fail_init -= 1
            raise ContainerManagerError("api server unavailable")

    async def _act(self, workload: str):
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.hang:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.append(workload)
            if self.ignore_cancel:
                # keeps running after cancellation, like a blocking SDK call would
                await asyncio.sleep(self.cancel_linger)
            raise
        if self.error is not None:
            raise self.error

    async def restart(self, workload: str):
        self.restarts.append(workload)
        await self._act(workload)

    async def stop(self, workload: str):
        self.stops.append(workload)
        await self._act(workload)

    async def wait_for_consumers(self, queue_names: List[str], timeout: float) -> bool:
        return self.consumers_appear

    async def close(self):
        self.closed = True


class FakeNotifier:
    def __init__(self):
        self.sent: List[dict] = []
        self.closed = False
        self.init_calls = 0

    async def initialize(self):
        self.init_calls += 1

    async def publish(self, message):
        self.sent.append(dict(message))

    @property
    def subjects(self) -> List[str]:
        return [m["subject"] for m in self.sent]

    async def close(self):
        self.closed = True


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def containers():
    return FakeContainerManager()


@pytest.fixture
def notifier():
    return FakeNotifier()


# -----------------------------------------------------------------------------
# Async helpers
# -----------------------------------------------------------------------------
async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
