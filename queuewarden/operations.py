# queuewarden/operations.py
"""
QueueWarden in-flight operation registry
----------------------------------------

The only state mutated concurrently by the polling driver (claim, sweep) and by
lifecycle tasks (release). Every mutation runs under a single lock, and claim is a
single check-and-insert so two cycles can never both see "absent" for one workload.

Invariant: at most one OperationRecord per workload id at any instant.

Release is by identity: a task that was force-removed by the stuck sweep and only
later reaches its finally block cannot remove a newer claim for the same workload.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from queuewarden.metrics import QW_IN_FLIGHT, QW_STUCK
from queuewarden.models import OperationRecord, Verdict
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import now_ts, format_duration

LOG = get_logger("queuewarden.operations")
LAD = StructuredLoggerAdapter(LOG, {"component": "operations"})


class OperationRegistry:
    def __init__(self, clock: Callable[[], float] = now_ts):
        self._records: Dict[str, OperationRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def claim(self, workload_id: str, action: Verdict) -> Optional[OperationRecord]:
        """
        Atomically register an operation for workload_id.
        Returns the new record, or None if one is already in flight.
        """
        with self._lock:
            existing = self._records.get(workload_id)
            if existing is not None:
                LAD.debug("Operation already in progress for %s (%s, running %s), skipping",
                          workload_id, existing.action.value, format_duration(existing.age(self._clock())),
                          extra={"workload": workload_id})
                return None
            record = OperationRecord(workload_id=workload_id, action=action, started_at=self._clock())
            self._records[workload_id] = record
            QW_IN_FLIGHT.set(len(self._records))
            return record

    def release(self, record: OperationRecord) -> bool:
        """Remove record if it is still the registered one. Returns True if removed."""
        with self._lock:
            if self._records.get(record.workload_id) is not record:
                return False
            del self._records[record.workload_id]
            QW_IN_FLIGHT.set(len(self._records))
            return True

    def sweep(self, threshold: float) -> List[OperationRecord]:
        """
        Force-remove every record older than `threshold` seconds and request
        cancellation of its task. Returns the removed records.
        """
        with self._lock:
            now = self._clock()
            if self._records:
                LAD.debug("Checking %d operations for stuck detection", len(self._records))
            stuck = [r for r in self._records.values() if r.age(now) > threshold]
            for record in stuck:
                del self._records[record.workload_id]
            QW_IN_FLIGHT.set(len(self._records))

        for record in stuck:
            QW_STUCK.inc()
            cancelled = record.cancel()
            LAD.warning(
                "Forcefully cleaned up stuck %s operation for %s after %s (threshold %s, cancel requested=%s)",
                record.action.value, record.workload_id, format_duration(record.age(now)),
                format_duration(threshold), cancelled,
                extra={"workload": record.workload_id, "action": record.action.value},
            )
        return stuck

    def get(self, workload_id: str) -> Optional[OperationRecord]:
        with self._lock:
            return self._records.get(workload_id)

    def snapshot(self) -> List[OperationRecord]:
        with self._lock:
            return list(self._records.values())

    def __contains__(self, workload_id: str) -> bool:
        with self._lock:
            return workload_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = ["OperationRegistry"]
