"""
containeragents/telemetry/events.py
───────────────────────────────────
ProvisioningEventLog: the observability sink for provisioning outcomes.

Provisioning failures never propagate to whoever asked for capacity; the
circuit breaker throttles the template and the failure is recorded here.
Operators read it through ProvisioningService.get_metrics() or recent().

Event kinds
───────────
    Provision        agent came online
    ProvisionFailed  a provisioning unit failed (reason in the message)
    Deleted          an agent's remote resource was deleted on terminate
    DeletedFailed    that delete failed; reclamation will retry it
    Reclaimed        the reclamation sweep deleted a leaked resource

Memory is bounded: only the last `capacity` events are kept, while the
per-kind counters cover the whole process lifetime.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from typing import Deque, Dict, List, Optional

from containeragents.shared.models import ProvisioningEvent

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

PROVISION = "Provision"
PROVISION_FAILED = "ProvisionFailed"
DELETED = "Deleted"
DELETED_FAILED = "DeletedFailed"
RECLAIMED = "Reclaimed"

DEFAULT_CAPACITY: int = 1000
"""Events retained in memory."""


class ProvisioningEventLog:
    """Thread-safe bounded event log with lifetime counters per kind."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be ≥ 1, got {capacity}")
        self._events: Deque[ProvisioningEvent] = deque(maxlen=capacity)
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def record(
        self,
        kind: str,
        cloud_name: str,
        subject: str,
        template_name: Optional[str] = None,
        message: str = "",
    ) -> ProvisioningEvent:
        event = ProvisioningEvent(
            kind=kind,
            cloud_name=cloud_name,
            subject=subject,
            template_name=template_name,
            message=message,
        )
        with self._lock:
            self._events.append(event)
            self._counts[kind] += 1
        logger.debug("Event %s cloud=%s subject=%s %s", kind, cloud_name, subject, message)
        return event

    def recent(self, limit: int = 50, kind: Optional[str] = None) -> List[ProvisioningEvent]:
        """Newest-last slice of the retained events, optionally of one kind."""
        with self._lock:
            events = [e for e in self._events if kind is None or e.kind == kind]
        return events[-limit:] if limit > 0 else []

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
