# queuewarden/decision_engine.py
"""
QueueWarden Decision Engine
---------------------------

Turns one polling cycle's queue observations into one verdict per workload.

Rules are evaluated per workload, over the queues it owns, first match wins:

  1. any queue has messages AND consumers     -> NONE     (never interrupt active draining)
  2. any queue has messages and NO consumers  -> RESTART  (stuck: work waiting, nobody consuming)
  3. every queue is empty: track idle time for each queue that has consumers;
     STOP once every consumer-bearing queue has been idle >= idle timeout
  4. otherwise                                -> NONE

Idle tracking is "first cycle wins": an entry's idle_since is set once and never
overwritten. Entries are NOT cleared when a queue becomes busy again; they are cleared
only by clear_idle_states(), which the worker calls when a lifecycle action starts for
the owning workload. A queue that goes idle -> busy -> idle therefore keeps the
timestamp of its first idle episode.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional

from queuewarden.models import IdleState, QueueObservation, Verdict
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import now_ts, format_duration

LOG = get_logger("queuewarden.decision_engine")
LAD = StructuredLoggerAdapter(LOG, {"component": "decision_engine"})


class DecisionEngine:
    """
    Owns the workload -> queues mapping and the per-queue IdleState table.
    decide() and clear_idle_states() are serialized by one lock, because lifecycle
    actions clear idle state concurrently with the next cycle's evaluation.
    """

    def __init__(self,
                 mappings: Dict[str, List[str]],
                 idle_timeout: float,
                 clock: Callable[[], float] = now_ts):
        self._workload_queues: Dict[str, List[str]] = {w: list(qs) for w, qs in mappings.items()}
        self._queue_owner: Dict[str, str] = {}
        for workload, queues in self._workload_queues.items():
            for q in queues:
                self._queue_owner[q] = workload
        self.idle_timeout = float(idle_timeout)
        self._clock = clock
        self._idle_states: Dict[str, IdleState] = {}
        self._lock = threading.Lock()
        LAD.info("DecisionEngine initialized with %d workload mappings", len(self._workload_queues))

    # -------------------------
    # Public API
    # -------------------------
    def decide(self, observations: Iterable[QueueObservation]) -> Dict[str, Verdict]:
        """
        Group observations by owning workload and return a verdict for each workload
        that had at least one observed queue. Unmapped queue names are ignored.
        """
        grouped: Dict[str, List[QueueObservation]] = {}
        for obs in observations:
            workload = self._queue_owner.get(obs.name)
            if workload is None:
                continue
            grouped.setdefault(workload, []).append(obs)

        verdicts: Dict[str, Verdict] = {}
        with self._lock:
            now = self._clock()
            for workload, queues in grouped.items():
                verdict = self._decide_for_workload(workload, queues, now)
                verdicts[workload] = verdict
                if verdict is not Verdict.NONE:
                    LAD.info("Decision for %s: %s", workload, verdict.value,
                             extra={"workload": workload, "verdict": verdict.value})
        return verdicts

    def queues_for(self, workload_id: str) -> List[str]:
        return list(self._workload_queues.get(workload_id, []))

    @property
    def workloads(self) -> List[str]:
        return list(self._workload_queues)

    def is_mapped(self, queue_name: str) -> bool:
        return queue_name in self._queue_owner

    def clear_idle_states(self, queue_names: Iterable[str]) -> int:
        """Drop idle tracking for the given queues. Returns how many entries were removed."""
        removed = 0
        with self._lock:
            for name in queue_names:
                if self._idle_states.pop(name, None) is not None:
                    removed += 1
                    LAD.debug("Cleared idle state for queue %s", name, extra={"queue": name})
        return removed

    def idle_state(self, queue_name: str) -> Optional[IdleState]:
        with self._lock:
            return self._idle_states.get(queue_name)

    def idle_states_snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {name: st.idle_since for name, st in self._idle_states.items()}

    # -------------------------
    # Rules
    # -------------------------
    def _decide_for_workload(self, workload: str, queues: List[QueueObservation], now: float) -> Verdict:
        # Rule 1: protect active processing
        for q in queues:
            if q.has_messages and q.has_consumers:
                LAD.debug("Queue %s has %d messages with %d consumers -> %s working normally",
                          q.name, q.pending_count, q.consumer_count, workload)
                return Verdict.NONE

        # Rule 2: messages waiting with nobody consuming
        for q in queues:
            if q.has_messages and not q.has_consumers:
                LAD.info("Queue %s has %d messages with no consumers -> restart %s",
                         q.name, q.pending_count, workload,
                         extra={"workload": workload, "queue": q.name})
                return Verdict.RESTART

        # Rule 3: every queue is empty here; track idle time for consumer-bearing queues
        consumer_queues = [q for q in queues if q.has_consumers]
        if not consumer_queues:
            return Verdict.NONE

        for q in consumer_queues:
            if q.name not in self._idle_states:
                self._idle_states[q.name] = IdleState(queue_name=q.name, idle_since=now)
                LAD.debug("Queue %s marked as idle", q.name, extra={"queue": q.name})

        all_idle_long_enough = True
        for q in consumer_queues:
            state = self._idle_states.get(q.name)
            if state is None:
                LAD.debug("Queue %s has consumers but idle state not yet tracked", q.name)
                return Verdict.NONE
            idle_for = state.idle_duration(now)
            if idle_for < self.idle_timeout:
                all_idle_long_enough = False
                LAD.debug("Queue %s idle for %s, waiting for %s",
                          q.name, format_duration(idle_for), format_duration(self.idle_timeout))

        if all_idle_long_enough:
            LAD.info("All queues for %s idle for %s -> stop", workload, format_duration(self.idle_timeout),
                     extra={"workload": workload})
            return Verdict.STOP
        return Verdict.NONE


__all__ = ["DecisionEngine"]
