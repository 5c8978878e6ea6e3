"""
containeragents/control_plane/scheduler_api.py
──────────────────────────────────────────────
The host job scheduler, as seen by the provisioner.

The provisioner does not run jobs. It only needs to:

  • register an Agent as a node before its remote resource exists
    (add_node), so the scheduler counts it as pending capacity,
  • remove it again on failure, retention expiry or termination (remove_node),
  • ask whether the node's Computer is online and accepting tasks,
  • read the configured clouds and list live agents for reclamation,
  • know its own root URL, instance identity and per-agent secret, which are
    substituted into container commands.

SchedulerApi is that surface. InMemoryScheduler implements it in-process:
it is what the tests drive, and what a dry run of the provisioner uses when
no real scheduler is attached.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from containeragents.shared.models import Agent, CloudConfig

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """
    Raised when the scheduler refuses to register a node.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class Computer:
    """
    Scheduler-side runtime view of one agent node.

    Tracks connectivity, whether the node accepts new tasks, and the task
    counters the retention strategies read. All mutators take the instance
    lock; readers see a consistent snapshot of each individual field.
    """

    def __init__(self, agent: Agent, clock: Callable[[], float] = time.time) -> None:
        self.agent = agent
        self._clock = clock
        self._lock = threading.Lock()
        self._online = False
        self._accepting_tasks = True
        self.connect_requested = False
        self.connect_time: Optional[float] = None
        self.idle_start: float = clock()
        self.busy_executors: int = 0
        self.completed_tasks: int = 0

    @property
    def name(self) -> str:
        return self.agent.name

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def accepting_tasks(self) -> bool:
        return self._accepting_tasks

    @property
    def is_idle(self) -> bool:
        return self.busy_executors == 0

    def connect(self) -> None:
        """Ask the scheduler to open the agent channel (pull-style launch)."""
        with self._lock:
            self.connect_requested = True

    def set_online(self, online: bool = True) -> None:
        with self._lock:
            if online and not self._online:
                now = self._clock()
                self.connect_time = now
                self.idle_start = now
            self._online = online

    def set_accepting_tasks(self, accepting: bool) -> None:
        with self._lock:
            self._accepting_tasks = accepting

    def task_started(self) -> None:
        with self._lock:
            self.busy_executors += 1

    def task_completed(self) -> None:
        with self._lock:
            self.busy_executors = max(0, self.busy_executors - 1)
            self.completed_tasks += 1
            if self.busy_executors == 0:
                self.idle_start = self._clock()

    def __repr__(self) -> str:
        return (
            f"Computer(name={self.name!r}, online={self._online}, "
            f"accepting={self._accepting_tasks}, busy={self.busy_executors})"
        )


class SchedulerApi(Protocol):
    root_url: str
    instance_id: str

    def add_node(self, agent: Agent) -> Computer:
        ...

    def remove_node(self, agent: Agent) -> bool:
        ...

    def get_computer(self, name: str) -> Optional[Computer]:
        ...

    def get_cloud(self, name: str) -> Optional[CloudConfig]:
        ...

    def list_clouds(self) -> List[CloudConfig]:
        ...

    def list_agents(self) -> List[Agent]:
        ...

    def agent_secret(self, name: str) -> str:
        ...


class InMemoryScheduler:
    """
    Thread-safe, process-local SchedulerApi.

    Args:
        clouds:       Configured clouds, in order.
        root_url:     URL agents dial back to. Substituted for ${rootUrl}.
        instance_id:  Identity tagged onto every remote resource. Random if omitted.
        auto_connect: If True, Computer.connect() brings the node online at
                      once, which simulates a successful pull-style handshake.
        clock:        Wall-clock source handed to every Computer.
    """

    def __init__(
        self,
        clouds: Optional[Iterable[CloudConfig]] = None,
        root_url: str = "http://localhost:8080/",
        instance_id: Optional[str] = None,
        auto_connect: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root_url = root_url
        self.instance_id = instance_id or uuid.uuid4().hex[:12]
        self.auto_connect = auto_connect
        self._clock = clock
        self._secret_key = uuid.uuid4().bytes
        self._clouds: Dict[str, CloudConfig] = {c.name: c for c in clouds or ()}
        self._computers: Dict[str, Computer] = {}
        self._lock = threading.Lock()

    # ── Clouds ────────────────────────────────────────────────────────────────

    def get_cloud(self, name: str) -> Optional[CloudConfig]:
        return self._clouds.get(name)

    def list_clouds(self) -> List[CloudConfig]:
        return list(self._clouds.values())

    def set_clouds(self, clouds: Iterable[CloudConfig]) -> None:
        """Replace the cloud configuration (templates renamed, clouds removed...)."""
        self._clouds = {c.name: c for c in clouds}

    # ── Nodes ─────────────────────────────────────────────────────────────────

    def add_node(self, agent: Agent) -> Computer:
        """
        Register `agent` as a pending node.

        Raises:
            RegistrationError: if a node with the same name already exists.
        """
        with self._lock:
            if agent.name in self._computers:
                raise RegistrationError(f"Node {agent.name!r} is already registered")
            computer = _AutoConnectComputer(agent, self._clock) if self.auto_connect \
                else Computer(agent, self._clock)
            self._computers[agent.name] = computer
        logger.debug("Registered node %s (cloud=%s)", agent.name, agent.cloud_name)
        return computer

    def remove_node(self, agent: Agent) -> bool:
        """Remove the node. Returns False if it was not registered."""
        with self._lock:
            computer = self._computers.pop(agent.name, None)
        if computer is not None:
            computer.set_online(False)
            logger.debug("Removed node %s", agent.name)
        return computer is not None

    def get_computer(self, name: str) -> Optional[Computer]:
        with self._lock:
            return self._computers.get(name)

    def list_agents(self) -> List[Agent]:
        with self._lock:
            return [c.agent for c in self._computers.values()]

    def list_computers(self) -> List[Computer]:
        with self._lock:
            return list(self._computers.values())

    def agent_secret(self, name: str) -> str:
        """Per-agent handshake secret. Substituted for ${secret}."""
        return hmac.new(self._secret_key, name.encode(), hashlib.sha256).hexdigest()


class _AutoConnectComputer(Computer):
    def connect(self) -> None:
        super().connect()
        self.set_online(True)
