"""
tests/test_retention.py
───────────────────────
Retention strategies evaluated directly against Computer objects.

Test groups:
    Group 1 — Idle retention (5 tests)
    Group 2 — Once / Always retention (3 tests)
"""

from __future__ import annotations

import pytest

from containeragents.control_plane.retention import (
    AlwaysRetentionStrategy,
    IdleRetentionStrategy,
    OnceRetentionStrategy,
    for_policy,
)
from containeragents.control_plane.scheduler_api import Computer
from containeragents.shared.models import Agent, LaunchMethod, RetentionKind, RetentionPolicy


def _computer(clock) -> Computer:
    agent = Agent(name="t1-abcde", cloud_name="k8s", template_name="t1", launch_method=LaunchMethod.PUSH)
    computer = Computer(agent, clock)
    computer.set_online(True)
    return computer


def _run_task(computer, clock, seconds: float = 60.0) -> None:
    computer.task_started()
    clock.advance(seconds)
    computer.task_completed()


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Idle
# ─────────────────────────────────────────────────────────────────────────────

class TestIdle:

    def test_terminates_after_idle_minutes(self, clock):
        computer = _computer(clock)
        _run_task(computer, clock)
        strategy = IdleRetentionStrategy(2)

        assert not strategy.check(computer, clock.now() + 119)
        assert strategy.check(computer, clock.now() + 121)

    def test_zero_minutes_never_terminates(self, clock):
        computer = _computer(clock)
        _run_task(computer, clock)
        assert not IdleRetentionStrategy(0).check(computer, clock.now() + 10 ** 7)

    def test_never_used_agent_is_kept(self, clock):
        computer = _computer(clock)
        assert not IdleRetentionStrategy(1, scheduler_started_at=clock.now() - 3600).check(
            computer, clock.now() + 3600
        )

    def test_agent_reconnected_after_restart_is_reclaimed(self, clock):
        computer = _computer(clock)
        strategy = IdleRetentionStrategy(1, scheduler_started_at=clock.now() - 1)
        assert strategy.check(computer, clock.now() + 61)

    def test_busy_agent_is_kept(self, clock):
        computer = _computer(clock)
        _run_task(computer, clock)
        computer.task_started()
        assert not IdleRetentionStrategy(1).check(computer, clock.now() + 3600)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Once / Always
# ─────────────────────────────────────────────────────────────────────────────

class TestOnceAndAlways:

    def test_once_terminates_after_first_task(self, clock):
        computer = _computer(clock)
        strategy = OnceRetentionStrategy()

        assert strategy.task_completed(computer)
        assert not computer.accepting_tasks

    def test_always_never_terminates(self, clock):
        computer = _computer(clock)
        _run_task(computer, clock)
        strategy = AlwaysRetentionStrategy()
        assert not strategy.check(computer, clock.now() + 10 ** 7)
        assert not strategy.task_completed(computer)

    @pytest.mark.parametrize("kind,expected", [
        (RetentionKind.IDLE, IdleRetentionStrategy),
        (RetentionKind.ONCE, OnceRetentionStrategy),
        (RetentionKind.ALWAYS, AlwaysRetentionStrategy),
    ])
    def test_for_policy(self, kind, expected):
        assert isinstance(for_policy(RetentionPolicy(kind=kind)), expected)
