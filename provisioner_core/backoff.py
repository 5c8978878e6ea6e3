"""
provisioner_core/backoff.py
───────────────────────────
ProvisionRetryStrategy: the per-template circuit breaker.

Why per template?
─────────────────
A template that cannot start (bad image, exhausted quota, broken registry
credentials) fails every attempt. Without a gate, the capacity planner would
ask for it again on every scheduling cycle and generate a retry storm. The
breaker remembers consecutive failures per template name and keeps the
template closed for an exponentially growing interval:

    failure #1 → closed for  5s
    failure #2 → closed for 10s
    failure #3 → closed for 20s
    ...
    capped at MAX_INTERVAL_S (10 minutes)

A single success deletes the record, so the next failure starts again at the
initial interval. Scoping by template means a failing GPU template never
blocks a healthy CPU template in the same cloud.

Thread safety
─────────────
Provisioning units run on a thread pool and report outcomes concurrently.
Every read-modify-write goes through self._lock so two failures landing at the
same time cannot lose an interval doubling.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from containeragents.shared.models import RetryRecord

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

INITIAL_INTERVAL_S: float = 5.0
"""Backoff after the first failure of a template."""

MAX_INTERVAL_S: float = 600.0
"""Upper bound for the doubled interval (10 minutes)."""


class ProvisionRetryStrategy:
    """
    Exponential-backoff admission gate keyed by template name.

    Public API:
        failure(name)             → record one more consecutive failure
        success(name)             → forget the template's failure history
        is_enabled(name, now)     → may this template be provisioned now?
        next_retry_time(name)     → wall-clock time the gate re-opens (0 if open)
        prune(active_names)       → drop records of templates no longer configured

    Args:
        initial_interval_s: Interval set on the first failure.
        max_interval_s:     Cap for the doubled interval.
        clock:              Wall-clock source, seconds since the epoch.
    """

    def __init__(
        self,
        initial_interval_s: float = INITIAL_INTERVAL_S,
        max_interval_s: float = MAX_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if initial_interval_s <= 0 or max_interval_s < initial_interval_s:
            raise ValueError(
                f"Invalid backoff bounds: initial={initial_interval_s}, max={max_interval_s}"
            )
        self._initial = initial_interval_s
        self._max = max_interval_s
        self._clock = clock
        self._records: Dict[str, RetryRecord] = {}
        self._lock = threading.Lock()

    # ── Outcome reporting ─────────────────────────────────────────────────────

    def failure(self, name: str) -> RetryRecord:
        """
        Record a failed provisioning attempt for `name`.

        First failure creates a record at the initial interval. Each further
        failure doubles the interval, capped at the maximum. The last-failure
        timestamp is always refreshed.

        Returns:
            A copy of the updated record.
        """
        with self._lock:
            record = self._records.get(name)
            if record is None:
                record = RetryRecord(interval_s=self._initial)
                self._records[name] = record
            else:
                record.interval_s = min(record.interval_s * 2, self._max)
            record.last_failure = self._clock()
            snapshot = record.model_copy()

        logger.warning(
            "Template %s failed to provision; closed for %.0fs",
            name, snapshot.interval_s,
        )
        return snapshot

    def success(self, name: str) -> None:
        """Remove any failure record for `name`, fully resetting its backoff."""
        with self._lock:
            removed = self._records.pop(name, None)
        if removed is not None:
            logger.info("Template %s provisioned successfully; backoff reset", name)

    # ── Admission ─────────────────────────────────────────────────────────────

    def next_retry_time(self, name: str) -> float:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                return 0.0
            return record.last_failure + record.interval_s

    def is_enabled(self, name: str, now: Optional[float] = None) -> bool:
        """
        True if no record exists for `name`, or its cooldown has elapsed.

        Args:
            name: Template name.
            now:  Wall-clock time to evaluate at. Defaults to the strategy clock.
        """
        if now is None:
            now = self._clock()
        return now >= self.next_retry_time(name)

    # ── Maintenance ───────────────────────────────────────────────────────────

    def prune(self, active_names: Iterable[str]) -> int:
        """
        Drop records for templates that are no longer configured.

        Called by the reclamation sweep so the map does not grow without bound
        as templates are renamed or removed.

        Returns:
            Number of records removed.
        """
        keep = set(active_names)
        with self._lock:
            stale = [name for name in self._records if name not in keep]
            for name in stale:
                del self._records[name]
        if stale:
            logger.info("Pruned backoff records for removed templates: %s", stale)
        return len(stale)

    def get_record(self, name: str) -> Optional[RetryRecord]:
        """Return a copy of the record for `name`, or None if it is open."""
        with self._lock:
            record = self._records.get(name)
            return record.model_copy() if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __repr__(self) -> str:
        return (
            f"ProvisionRetryStrategy(records={len(self)}, "
            f"initial={self._initial}s, max={self._max}s)"
        )
