"""
containeragents/remote/transport.py
───────────────────────────────────
Pull-style agent launch over a shell transport.

For LaunchMethod.PULL the container image runs an SSH-style daemon and nothing
else. Once the platform reports the resource Running, the provisioner:

  1. connects to <address>:<ssh_port> with the template's credential,
     retrying CONNECT_ATTEMPTS times CONNECT_RETRY_INTERVAL_S apart
     (the daemon usually needs a few seconds after the container starts),
     but never past the time left of the readiness wait,
  2. copies the agent executable into the agent's working directory,
  3. starts it with the template's agent command.

The transport itself (SSH library, key exchange, channels) is a collaborator
behind the Transport / Session protocols.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

from containeragents.remote.base import LaunchFailedError
from containeragents.remote.credentials import CredentialNotFoundError, CredentialStore
from containeragents.shared.models import Agent, Credential
from provisioner_core.clock import SystemClock

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

CONNECT_ATTEMPTS: int = 3
CONNECT_RETRY_INTERVAL_S: float = 10.0

AGENT_EXECUTABLE_NAME: str = "agent.jar"


class Session(Protocol):
    def copy_file(self, data: bytes, remote_path: str) -> None:
        ...

    def exec_command(self, command: str) -> None:
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    def connect(self, host: str, port: int, credential: Credential) -> Session:
        ...


class PullLauncher:
    """
    Starts agents inside running containers.

    Sessions stay open while the agent runs; release(agent_name) closes the
    one belonging to a terminated agent.
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        agent_executable: bytes,
        connect_attempts: int = CONNECT_ATTEMPTS,
        retry_interval_s: float = CONNECT_RETRY_INTERVAL_S,
        clock=None,
    ) -> None:
        if connect_attempts < 1:
            raise ValueError(f"connect_attempts must be ≥ 1, got {connect_attempts}")
        self._transport = transport
        self._credentials = credentials
        self._agent_executable = agent_executable
        self._connect_attempts = connect_attempts
        self._retry_interval_s = retry_interval_s
        self._clock = clock or SystemClock()
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def launch(
        self,
        agent: Agent,
        host: str,
        root_fs: str,
        agent_command: str,
        cancel_event: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        """
        Connect to `host`, copy the agent executable and start it.

        `timeout_s` bounds the connect retries (the time left of the readiness
        wait); no retry starts once it has elapsed.

        Raises:
            LaunchFailedError: on missing credentials, exhausted connect
                               attempts, cancellation, or a failed copy/exec.
        """
        try:
            credential = self._credentials.lookup(agent.ssh_credentials_id)
        except CredentialNotFoundError as e:
            raise LaunchFailedError(e.reason) from e

        deadline = self._clock.now() + timeout_s if timeout_s is not None else None
        session = self._connect(agent.name, host, agent.ssh_port, credential, cancel_event, deadline)
        work_dir = root_fs.rstrip("/") or "/"
        remote_path = f"{work_dir.rstrip('/')}/{AGENT_EXECUTABLE_NAME}"
        try:
            session.copy_file(self._agent_executable, remote_path)
            session.exec_command(f"cd {work_dir} && {agent_command}")
        except Exception as e:
            session.close()
            raise LaunchFailedError(
                f"Failed to start agent {agent.name} on {host}: {e}"
            ) from e

        with self._lock:
            self._sessions[agent.name] = session
        logger.info("Started agent %s on %s:%d", agent.name, host, agent.ssh_port)

    def release(self, agent_name: str) -> None:
        with self._lock:
            session = self._sessions.pop(agent_name, None)
        if session is None:
            return
        try:
            session.close()
        except Exception as e:
            logger.warning("Error closing session for %s: %s", agent_name, e)

    def _connect(
        self,
        agent_name: str,
        host: str,
        port: int,
        credential: Credential,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float] = None,
    ) -> Session:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._connect_attempts + 1):
            try:
                return self._transport.connect(host, port, credential)
            except Exception as e:
                last_error = e
                logger.info(
                    "Connect to %s (%s:%d) failed, attempt %d/%d: %s",
                    agent_name, host, port, attempt, self._connect_attempts, e,
                )
            if attempt == self._connect_attempts:
                break
            delay = self._retry_interval_s
            if deadline is not None:
                remaining = deadline - self._clock.now()
                if remaining <= 0:
                    raise LaunchFailedError(
                        f"Gave up connecting to {agent_name} at {host}:{port} after "
                        f"{attempt} attempt(s), startup deadline reached: {last_error}"
                    )
                delay = min(delay, remaining)
            if self._clock.sleep(delay, cancel_event):
                raise LaunchFailedError(f"Launch of {agent_name} cancelled")
        raise LaunchFailedError(
            f"Could not connect to {agent_name} at {host}:{port} after "
            f"{self._connect_attempts} attempts: {last_error}"
        )
