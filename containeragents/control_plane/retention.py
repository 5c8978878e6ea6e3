"""
containeragents/control_plane/retention.py
──────────────────────────────────────────
When does an online agent go away?

Each template carries a RetentionPolicy; for_policy() turns it into one of
three strategies. ProvisioningService.enforce_retention() asks the strategy
of every agent it owns and terminates those that answer True.

    IdleRetentionStrategy(n)   terminate after n idle minutes.
                               n == 0 → never. An agent that never ran a
                               task (idle start within NEVER_CONNECTED_LAPSE_S
                               of its connect time) is never terminated, unless
                               it connected within the lapse of the scheduler
                               itself starting (it survived a restart).
    OnceRetentionStrategy      one task per agent: stop accepting work and
                               terminate when the first task completes, or
                               after ONCE_IDLE_MINUTES idle.
    AlwaysRetentionStrategy    never; only reclamation or terminate() removes it.
"""

from __future__ import annotations

import logging
from typing import Optional

from containeragents.control_plane.scheduler_api import Computer
from containeragents.shared.models import RetentionKind, RetentionPolicy

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

NEVER_CONNECTED_LAPSE_S: float = 5.0

ONCE_IDLE_MINUTES: int = 10


class RetentionStrategy:
    """Base strategy: keep everything."""

    def check(self, computer: Computer, now: float) -> bool:
        """True if `computer` should be terminated now."""
        return False

    def task_completed(self, computer: Computer) -> bool:
        """Called after a task finished on `computer`. True = terminate."""
        return False


class AlwaysRetentionStrategy(RetentionStrategy):
    pass


class IdleRetentionStrategy(RetentionStrategy):
    """
    Args:
        idle_minutes:          Idle time before termination. 0 disables it.
        scheduler_started_at:  Wall-clock start of the scheduler, used to
                               recognise agents that reconnected after a restart.
    """

    def __init__(self, idle_minutes: int, scheduler_started_at: Optional[float] = None) -> None:
        if idle_minutes < 0:
            raise ValueError(f"idle_minutes must be ≥ 0, got {idle_minutes}")
        self.idle_minutes = idle_minutes
        self.scheduler_started_at = scheduler_started_at

    def check(self, computer: Computer, now: float) -> bool:
        if self.idle_minutes == 0:
            return False
        if not computer.is_idle or not computer.accepting_tasks:
            return False
        if computer.connect_time is None:
            return False

        never_connected = computer.idle_start - computer.connect_time < NEVER_CONNECTED_LAPSE_S
        if (
            self.scheduler_started_at is not None
            and computer.idle_start - self.scheduler_started_at < NEVER_CONNECTED_LAPSE_S
        ):
            never_connected = False
        if never_connected:
            return False

        idle_s = now - computer.idle_start
        if idle_s > self.idle_minutes * 60:
            logger.info(
                "Agent %s idle for %.0fs (limit %d min); terminating",
                computer.name, idle_s, self.idle_minutes,
            )
            return True
        return False


class OnceRetentionStrategy(RetentionStrategy):
    def check(self, computer: Computer, now: float) -> bool:
        if not computer.is_idle or not computer.accepting_tasks:
            return False
        if now - computer.idle_start > ONCE_IDLE_MINUTES * 60:
            logger.info("Agent %s idle past %d min; terminating", computer.name, ONCE_IDLE_MINUTES)
            computer.set_accepting_tasks(False)
            return True
        return False

    def task_completed(self, computer: Computer) -> bool:
        computer.set_accepting_tasks(False)
        logger.info("Agent %s finished its task; terminating", computer.name)
        return True


def for_policy(
    policy: RetentionPolicy, scheduler_started_at: Optional[float] = None
) -> RetentionStrategy:
    if policy.kind == RetentionKind.IDLE:
        return IdleRetentionStrategy(policy.idle_minutes, scheduler_started_at)
    if policy.kind == RetentionKind.ONCE:
        return OnceRetentionStrategy()
    return AlwaysRetentionStrategy()
