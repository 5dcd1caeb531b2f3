# queuewarden/worker.py
"""
QueueWarden Monitoring Worker
-----------------------------

The polling driver and operation lifecycle manager.

Every polling interval:
  1) sweep stuck operations (records older than the stuck threshold)
  2) make sure the broker is connected (skip the cycle if it cannot reconnect)
  3) list queues, update gauges, ask the DecisionEngine for verdicts
  4) for each restart/stop verdict: claim the workload, then launch the action as
     an independent asyncio task bounded by the per-operation timeout

Cleanup of a claim always funnels through the `finally` block of _run_operation,
whether the action completes, fails, times out (wait_for cancels the handler and
waits for it), or is cancelled at shutdown. If the task cannot even be created the
claim is released on the spot. A task cancelled before its first step never enters
that `finally`, so a done-callback releases such claims. The sweep is the
last-resort net for anything that still leaks.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from queuewarden.config import ManagerSettings
from queuewarden.decision_engine import DecisionEngine
from queuewarden.errors import BrokerError
from queuewarden.metrics import (
    QW_CYCLES,
    QW_DECISIONS,
    QW_OPERATIONS,
    QW_OPERATION_SECONDS,
    record_queue_gauges,
)
from queuewarden.models import OperationRecord, Verdict
from queuewarden.operations import OperationRegistry
from queuewarden.services import notifications as notices
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import compute_backoff, format_duration, monotonic_ts, now_ts, to_iso

LOG = get_logger("queuewarden.worker")
LAD = StructuredLoggerAdapter(LOG, {"component": "worker"})

INIT_MAX_ATTEMPTS = 3


# ---------------------------------------------------------------------
# Exception wrapper for resilient async loops
# ---------------------------------------------------------------------
class ResilientLoop:
    """Run `func` every `interval` seconds; unexpected errors back off and retry."""
    def __init__(self, label: str, func: Callable[[], Awaitable[Any]], interval: float):
        self.label = label
        self.func = func
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"loop:{self.label}")
        LAD.info("ResilientLoop '%s' started", self.label)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.wait([self._task])
            self._task = None
            LAD.info("ResilientLoop '%s' stopped", self.label)

    async def _loop(self):
        attempt = 0
        while self._running:
            try:
                await self.func()
                attempt = 0
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                attempt += 1
                delay = compute_backoff(attempt, base=2, factor=1.5, max_delay=30)
                LAD.warning("Loop '%s' error (%s); retrying in %.2fs", self.label, e, delay, exc_info=True)
                try:
                    await asyncio.sleep(delay)
                except asyncio.CancelledError:
                    break


# ---------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------
class MonitoringWorker:
    """
    Wires the broker, the DecisionEngine, the OperationRegistry, the container
    manager and the notifier together. All collaborators are injected.
    """

    init_retry_delay: float = 5.0

    def __init__(self,
                 settings: ManagerSettings,
                 broker,
                 containers,
                 notifier,
                 engine: Optional[DecisionEngine] = None,
                 registry: Optional[OperationRegistry] = None):
        self.settings = settings
        self.broker = broker
        self.containers = containers
        self.notifier = notifier
        if engine is None:
            engine = DecisionEngine(settings.queue_container_mappings, settings.idle_timeout)
        self.engine = engine
        self.registry = registry if registry is not None else OperationRegistry()
        self.recipient = settings.notification_email_recipient
        self.loop: Optional[ResilientLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._initialized = False
        self._cycles = 0
        self._last_cycle_at: Optional[float] = None

    # -------------------------
    # Startup / shutdown
    # -------------------------
    @property
    def is_initialization_complete(self) -> bool:
        return self._initialized

    async def initialize(self):
        LAD.info("QueueWarden MonitoringWorker starting")
        for attempt in range(1, INIT_MAX_ATTEMPTS + 1):
            try:
                await self.broker.initialize()
                await self.containers.initialize()
                break
            except Exception:
                LAD.exception("Failed to initialize services (attempt %d/%d)", attempt, INIT_MAX_ATTEMPTS)
                if attempt >= INIT_MAX_ATTEMPTS:
                    LAD.critical("Failed to initialize after %d attempts, stopping service", INIT_MAX_ATTEMPTS)
                    raise
                await asyncio.sleep(self.init_retry_delay * attempt)
        self._initialized = True
        LAD.info("All services initialized successfully")

    async def start(self):
        if self.loop is None:
            self.loop = ResilientLoop("monitor", self.run_cycle, self.settings.polling_interval)
        await self.loop.start()

    async def stop(self):
        """Stop polling, cancel in-flight operations, wait up to the grace period."""
        if self.loop is not None:
            await self.loop.stop()

        tasks = [t for t in self._tasks if not t.done()]
        if not tasks:
            LAD.info("QueueWarden MonitoringWorker stopped")
            return

        LAD.info("Cancelling and waiting for %d background operations to complete", len(tasks))
        for t in tasks:
            t.cancel()
        _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_seconds)
        if pending:
            LAD.warning("Timeout waiting for background operations to complete after %ss, still running: %s",
                        self.settings.shutdown_grace_seconds, ", ".join(sorted(t.get_name() for t in pending)))
        else:
            LAD.info("All background operations completed")
        LAD.info("QueueWarden MonitoringWorker stopped")

    # -------------------------
    # Polling cycle
    # -------------------------
    async def run_cycle(self):
        self._cycles += 1
        self._last_cycle_at = now_ts()

        self.registry.sweep(self.settings.stuck_operation_threshold)

        if not self.broker.is_connected:
            LAD.warning("Broker not connected, attempting to reconnect")
            try:
                await self.broker.initialize()
            except BrokerError as e:
                LAD.warning("Broker reconnect failed, skipping cycle: %s", e)
                QW_CYCLES.labels(status="disconnected").inc()
                return

        LAD.debug("Retrieving queue information from broker")
        try:
            queues = await self.broker.list_queues()
        except BrokerError as e:
            LAD.error("Error retrieving queues, will retry next cycle: %s", e)
            QW_CYCLES.labels(status="error").inc()
            return

        if not queues:
            LAD.warning("No queues found on broker")
            QW_CYCLES.labels(status="empty").inc()
            return

        record_queue_gauges(
            (q.name, q.pending_count, q.consumer_count) for q in queues if self.engine.is_mapped(q.name)
        )
        LAD.debug("Retrieved %d queues, analyzing for actions", len(queues))

        verdicts = self.engine.decide(queues)
        for workload, verdict in verdicts.items():
            QW_DECISIONS.labels(verdict=verdict.value).inc()
            if verdict is Verdict.NONE:
                continue
            try:
                self._dispatch(workload, verdict)
            except Exception:
                LAD.exception("Error dispatching %s for %s", verdict.value, workload,
                              extra={"workload": workload, "action": verdict.value})
        QW_CYCLES.labels(status="ok").inc()

    # -------------------------
    # Claim -> launch
    # -------------------------
    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro, name=name)

    def _dispatch(self, workload: str, verdict: Verdict) -> Optional[OperationRecord]:
        record = self.registry.claim(workload, verdict)
        if record is None:
            QW_OPERATIONS.labels(action=verdict.value, outcome="skipped").inc()
            return None

        ctx = {"workload": workload, "action": verdict.value}
        LAD.info("Queuing %s operation for %s", verdict.value, workload, extra=ctx)
        coro = self._run_operation(record)
        try:
            task = self._spawn(coro, name=f"{verdict.value}:{workload}")
        except Exception:
            coro.close()
            LAD.exception("Failed to start %s operation task for %s, cleaning up", verdict.value, workload, extra=ctx)
            self.registry.release(record)
            QW_OPERATIONS.labels(action=verdict.value, outcome="launch_failed").inc()
            return None

        record.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(functools.partial(self._release_unstarted, record))
        LAD.info("%s operation task started for %s", verdict.value.capitalize(), workload, extra=ctx)
        return record

    def _release_unstarted(self, record: OperationRecord, task: asyncio.Task):
        # a task cancelled before its first step never enters _run_operation's finally
        if self.registry.release(record):
            QW_OPERATIONS.labels(action=record.action.value, outcome="cancelled").inc()
            LAD.warning("%s operation for %s was cancelled before it started; claim released",
                        record.action.value.capitalize(), record.workload_id,
                        extra={"workload": record.workload_id, "action": record.action.value})

    async def _run_operation(self, record: OperationRecord):
        workload, action = record.workload_id, record.action
        ctx = {"workload": workload, "action": action.value}
        handler = self._handle_restart if action is Verdict.RESTART else self._handle_stop
        timeout = self.settings.operation_timeout
        started = monotonic_ts()
        outcome = "failure"
        try:
            try:
                outcome = await asyncio.wait_for(handler(workload), timeout=timeout)
            except asyncio.TimeoutError:
                outcome = "timeout"
                LAD.error("%s operation for %s timed out after %s", action.value.capitalize(), workload,
                          format_duration(timeout), extra=ctx)
                error = notices.timeout_error(timeout)
                if action is Verdict.RESTART:
                    await self.notifier.publish(notices.restart_failure(self.recipient, workload, error))
                else:
                    await self.notifier.publish(notices.stop_failure(self.recipient, workload, error))
            except Exception:
                LAD.exception("Unhandled exception in %s operation for %s", action.value, workload, extra=ctx)
        except asyncio.CancelledError:
            outcome = "cancelled"
            LAD.warning("%s operation for %s cancelled", action.value.capitalize(), workload, extra=ctx)
            raise
        finally:
            self.registry.release(record)
            QW_OPERATIONS.labels(action=action.value, outcome=outcome).inc()
            QW_OPERATION_SECONDS.labels(action=action.value).observe(monotonic_ts() - started)
            LAD.debug("%s operation cleanup completed for %s", action.value.capitalize(), workload, extra=ctx)

    # -------------------------
    # Actions
    # -------------------------
    async def _handle_restart(self, workload: str) -> str:
        ctx = {"workload": workload, "action": "restart"}
        LAD.warning("Starting restart operation for %s", workload, extra=ctx)
        queues = self.engine.queues_for(workload)
        self.engine.clear_idle_states(queues)
        try:
            await self.containers.restart(workload)
            verification = self.settings.restart_verification_timeout
            has_consumers = await self.containers.wait_for_consumers(queues, verification)
        except Exception as e:
            LAD.error("Failed to restart %s: %s", workload, e, extra=ctx)
            await self.notifier.publish(notices.restart_failure(self.recipient, workload, str(e)))
            return "failure"

        if has_consumers:
            LAD.info("%s restarted successfully, consumers detected", workload, extra=ctx)
            await self.notifier.publish(notices.restart_success(self.recipient, workload, queues))
            return "success"
        LAD.warning("%s restarted but no consumers detected after %s", workload,
                    format_duration(verification), extra=ctx)
        await self.notifier.publish(notices.restart_warning(self.recipient, workload, queues, verification))
        return "warning"

    async def _handle_stop(self, workload: str) -> str:
        ctx = {"workload": workload, "action": "stop"}
        LAD.warning("Starting stop operation for %s", workload, extra=ctx)
        queues = self.engine.queues_for(workload)
        self.engine.clear_idle_states(queues)
        try:
            await self.containers.stop(workload)
        except Exception as e:
            LAD.error("Failed to stop %s: %s", workload, e, extra=ctx)
            await self.notifier.publish(notices.stop_failure(self.recipient, workload, str(e)))
            return "failure"
        LAD.info("%s stopped successfully due to idle queues", workload, extra=ctx)
        await self.notifier.publish(notices.stop_success(self.recipient, workload, queues))
        return "success"

    # -------------------------
    # Introspection
    # -------------------------
    def status(self) -> Dict[str, Any]:
        now = now_ts()
        return {
            "initialized": self._initialized,
            "broker_connected": bool(self.broker.is_connected),
            "cycles": self._cycles,
            "last_cycle_at": to_iso(self._last_cycle_at) if self._last_cycle_at else None,
            "in_flight": [
                {
                    "workload": r.workload_id,
                    "action": r.action.value,
                    "started_at": to_iso(r.started_at),
                    "age_seconds": round(r.age(now), 3),
                }
                for r in self.registry.snapshot()
            ],
            "idle_states": {q: to_iso(ts) for q, ts in self.engine.idle_states_snapshot().items()},
        }


__all__ = ["MonitoringWorker", "ResilientLoop", "INIT_MAX_ATTEMPTS"]
