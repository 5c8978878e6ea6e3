"""
tests/conftest.py
─────────────────
Shared fixtures: a fake clock, a simulated platform, and builders for clouds
and templates.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Optional

import pytest

from containeragents.control_plane.scheduler_api import InMemoryScheduler
from containeragents.remote.memory import SimulatedRemoteClient
from containeragents.shared.models import (
    AgentTemplate,
    CloudConfig,
    CloudKind,
    LaunchMethod,
    RetentionPolicy,
)


class FakeClock:
    """
    now()/sleep() source where sleeping only advances virtual time.

    `on_sleep` callbacks run after every sleep; tests use them to simulate
    agents dialling back while the poller waits.
    """

    def __init__(self, start: float = 1_000_000.0) -> None:
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: List[float] = []
        self.on_sleep: List[Callable[[], None]] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        with self._lock:
            self._now += seconds
            self.sleeps.append(seconds)
        for callback in list(self.on_sleep):
            callback()
        return cancel_event is not None and cancel_event.is_set()

    def __call__(self) -> float:
        return self.now()


def make_template(
    name: str = "t1",
    label: str = "linux",
    launch_method: LaunchMethod = LaunchMethod.PUSH,
    startup_timeout_minutes: float = 5.0,
    **overrides,
) -> AgentTemplate:
    return AgentTemplate(
        name=name,
        label=label,
        image="example/agent:latest",
        command=overrides.pop("command", "agent -url ${rootUrl} -name ${nodeName} -secret ${secret}"),
        launch_method=launch_method,
        startup_timeout_minutes=startup_timeout_minutes,
        retention=overrides.pop("retention", RetentionPolicy()),
        **overrides,
    )


def make_cloud(
    name: str = "k8s",
    kind: CloudKind = CloudKind.KUBERNETES,
    templates: Optional[List[AgentTemplate]] = None,
    **overrides,
) -> CloudConfig:
    return CloudConfig(
        name=name,
        kind=kind,
        templates=templates if templates is not None else [make_template()],
        **overrides,
    )


def bring_online(scheduler: InMemoryScheduler) -> Callable[[], None]:
    """Callback setting every registered node online, as a push agent would."""

    def callback() -> None:
        for computer in scheduler.list_computers():
            if not computer.is_online:
                computer.set_online(True)

    return callback


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> SimulatedRemoteClient:
    return SimulatedRemoteClient()
