"""
provisioner_core/readiness.py
─────────────────────────────
ReadinessPoller: waits for a freshly created remote resource to become a
working scheduler agent.

State machine
─────────────

    CREATED ──► WAITING_REMOTE_RUNNING ──► WAITING_AGENT_ONLINE ──► ONLINE
                        │                          │
                        └──────────► FAILED(reason) ◄┘

  CREATED                 entered the moment the create call returned.
  WAITING_REMOTE_RUNNING  poll client.get() every poll_interval_s:
                            Running            → WAITING_AGENT_ONLINE
                            Failed             → FAILED(remote_failed)
                            Succeeded          → FAILED(remote_exited)
                            not found          → FAILED(remote_missing)
                            Pending / Unknown  → keep waiting
                          Once half the startup timeout has elapsed the
                          container logs are fetched once and logged.
  WAITING_AGENT_ONLINE    PUSH: the agent dials back by itself. Wait for the
                          scheduler's Computer to be online and accepting,
                          while re-checking that the remote is still Running
                          and the node still exists (agent_deleted).
                          PULL: wait for an address, launch the agent over the
                          transport, call computer.connect(), then wait online
                          exactly like PUSH.

Every iteration re-checks the overall deadline (startup timeout measured from
CREATED; 0 disables it) → FAILED(timeout). Sleeps go through
clock.sleep(..., cancel_event), so setting the event ends the wait at once
→ FAILED(cancelled).

Outcomes are returned as a ReadinessResult, never raised. The caller decides
on cleanup and circuit-breaker reporting.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from containeragents.remote.base import (
    LaunchFailedError,
    RemoteResourceClient,
    RemoteResourceError,
)
from containeragents.shared.models import (
    Agent,
    AgentTemplate,
    FailureReason,
    LaunchMethod,
    ReadinessResult,
    ReadinessState,
    RemotePhase,
    RemoteStatus,
)
from provisioner_core.clock import SystemClock

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

KUBERNETES_POLL_INTERVAL_S: float = 1.0
ACI_POLL_INTERVAL_S: float = 5.0
"""Container groups take tens of seconds to schedule; polling faster only burns ARM quota."""

MAX_LOG_CHARS: int = 4000
"""Longest log excerpt written to the provisioning log."""


class _Failed(Exception):
    """Internal: unwinds the state machine to run() with a failure reason."""

    def __init__(self, reason: FailureReason, message: str) -> None:
        self.reason = reason
        self.message = message
        super().__init__(message)


class ReadinessPoller:
    """
    One readiness wait for one agent.

    Args:
        client:          Remote client for the agent's cloud. The caller holds
                         the connection lease for the duration of run().
        scheduler:       SchedulerApi; only get_computer() is used.
        agent:           The agent whose resource was just created. Its `host`
                         is filled in as soon as the platform reports an address.
        template:        The template the agent was built from (launch method,
                         startup timeout, pull-launch settings).
        poll_interval_s: Seconds between polls.
        launcher:        PullLauncher, required for LaunchMethod.PULL.
        clock:           now()/sleep() source. Defaults to SystemClock.
        cancel_event:    Set to abandon the wait.
    """

    def __init__(
        self,
        client: RemoteResourceClient,
        scheduler,
        agent: Agent,
        template: AgentTemplate,
        poll_interval_s: float = KUBERNETES_POLL_INTERVAL_S,
        launcher=None,
        clock=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError(f"poll_interval_s must be > 0, got {poll_interval_s}")
        self._client = client
        self._scheduler = scheduler
        self._agent = agent
        self._template = template
        self._poll_interval_s = poll_interval_s
        self._launcher = launcher
        self._clock = clock or SystemClock()
        self._cancel_event = cancel_event or threading.Event()

        self.state = ReadinessState.CREATED
        self._started_at = 0.0
        self._deadline: Optional[float] = None
        self._logs_fetched = False

    @property
    def resource_id(self) -> str:
        return self._agent.resource_id or self._agent.name

    def cancel(self) -> None:
        self._cancel_event.set()

    # ── Driver ────────────────────────────────────────────────────────────────

    def run(self) -> ReadinessResult:
        """Drive the state machine to ONLINE or FAILED."""
        self._started_at = self._clock.now()
        timeout_s = self._template.startup_timeout_s
        self._deadline = self._started_at + timeout_s if timeout_s > 0 else None

        try:
            self._transition(ReadinessState.WAITING_REMOTE_RUNNING)
            self._wait_remote_running()

            self._transition(ReadinessState.WAITING_AGENT_ONLINE)
            if self._template.launch_method == LaunchMethod.PULL:
                self._launch_pull()
            self._wait_agent_online()
        except _Failed as f:
            self.state = ReadinessState.FAILED
            logger.warning(
                "Agent %s not ready (%s): %s", self._agent.name, f.reason.value, f.message
            )
            return ReadinessResult(
                state=ReadinessState.FAILED,
                reason=f.reason,
                message=f.message,
                elapsed_s=self._elapsed(),
            )

        self._transition(ReadinessState.ONLINE)
        return ReadinessResult(state=ReadinessState.ONLINE, elapsed_s=self._elapsed())

    # ── States ────────────────────────────────────────────────────────────────

    def _wait_remote_running(self) -> None:
        while True:
            self._check_deadline()
            status = self._poll_remote()
            if status.phase == RemotePhase.RUNNING:
                return
            self._maybe_fetch_logs()
            self._sleep()

    def _launch_pull(self) -> None:
        if self._launcher is None:
            raise _Failed(
                FailureReason.LAUNCH_FAILED,
                f"Template {self._template.name} uses pull launch but no launcher is configured",
            )
        while not self._agent.host:
            self._check_deadline()
            self._poll_remote()
            if self._agent.host:
                break
            self._sleep()

        remaining = None
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - self._clock.now())
        try:
            self._launcher.launch(
                self._agent,
                self._agent.host,
                self._template.root_fs,
                self._template.agent_command,
                self._cancel_event,
                timeout_s=remaining,
            )
        except LaunchFailedError as e:
            if self._cancel_event.is_set():
                raise _Failed(FailureReason.CANCELLED, e.reason) from e
            self._check_deadline()
            raise _Failed(FailureReason.LAUNCH_FAILED, e.reason) from e

        computer = self._require_computer()
        computer.connect()

    def _wait_agent_online(self) -> None:
        while True:
            self._check_deadline()
            computer = self._require_computer()
            if computer.is_online and computer.accepting_tasks:
                return
            status = self._poll_remote()
            if status.phase != RemotePhase.RUNNING:
                raise _Failed(
                    FailureReason.REMOTE_EXITED,
                    f"Resource {self.resource_id} left Running ({status.phase.value}) "
                    f"before the agent came online",
                )
            self._sleep()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _poll_remote(self) -> RemoteStatus:
        try:
            status = self._client.get(self.resource_id)
        except RemoteResourceError as e:
            raise _Failed(FailureReason.REMOTE_FAILED, e.reason) from e

        if status is None:
            raise _Failed(
                FailureReason.REMOTE_MISSING, f"Resource {self.resource_id} disappeared"
            )
        if status.phase == RemotePhase.FAILED:
            raise _Failed(
                FailureReason.REMOTE_FAILED,
                f"Resource {self.resource_id} failed: {status.message}".rstrip(": "),
            )
        if status.phase == RemotePhase.SUCCEEDED:
            raise _Failed(
                FailureReason.REMOTE_EXITED,
                f"Resource {self.resource_id} terminated: {status.message}".rstrip(": "),
            )
        if status.address:
            self._agent.host = status.address
        return status

    def _require_computer(self):
        computer = self._scheduler.get_computer(self._agent.name)
        if computer is None:
            raise _Failed(
                FailureReason.AGENT_DELETED,
                f"Agent {self._agent.name} was removed while waiting",
            )
        return computer

    def _check_deadline(self) -> None:
        if self._deadline is not None and self._clock.now() >= self._deadline:
            raise _Failed(
                FailureReason.TIMEOUT,
                f"Agent {self._agent.name} not online after "
                f"{self._template.startup_timeout_s:.0f}s (state={self.state.value})",
            )

    def _sleep(self) -> None:
        if self._clock.sleep(self._poll_interval_s, self._cancel_event):
            raise _Failed(FailureReason.CANCELLED, f"Wait for {self._agent.name} cancelled")

    def _maybe_fetch_logs(self) -> None:
        if self._logs_fetched or self._deadline is None:
            return
        half = (self._deadline - self._started_at) / 2
        if self._elapsed() < half:
            return
        self._logs_fetched = True
        try:
            logs = self._client.fetch_logs(self.resource_id)
        except RemoteResourceError as e:
            logger.info("Could not fetch logs for %s: %s", self.resource_id, e.reason)
            return
        if logs:
            logger.info(
                "Resource %s still not running after %.0fs. Container log:\n%s",
                self.resource_id, self._elapsed(), logs[-MAX_LOG_CHARS:],
            )

    def _transition(self, state: ReadinessState) -> None:
        logger.debug(
            "Agent %s: %s → %s", self._agent.name, self.state.value, state.value
        )
        self.state = state

    def _elapsed(self) -> float:
        return self._clock.now() - self._started_at
