"""
provisioner_core/clock.py
─────────────────────────
Time source for the readiness poll loop.

The poller never calls time.sleep(). It asks a clock for the current
monotonic time and sleeps through clock.sleep(seconds, cancel_event), which
waits on a threading.Event. Setting the event wakes the sleeper immediately,
so a shutdown or an explicit cancel never has to wait out a poll interval.

Tests substitute a fake clock whose sleep() just advances its own time.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class SystemClock:
    """Monotonic clock with event-interruptible sleeps."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Block for `seconds` or until `cancel_event` is set.

        Returns:
            True if the sleep was cut short by the cancel event.
        """
        if cancel_event is None:
            time.sleep(max(0.0, seconds))
            return False
        return cancel_event.wait(max(0.0, seconds))
