"""
containeragents/control_plane/provisioning_service.py
─────────────────────────────────────────────────────
ProvisioningService: the per-request provisioning workflow.

Pipeline
────────
provision(cloud, label, count) runs admission synchronously, then submits
`count` independent units to a thread pool. Each unit:

  1. generates an agent name           (provisioner_core.naming)
  2. registers the Agent as a node     (scheduler.add_node)
  3. builds the ResourceSpec and creates the remote resource inside a
     connection lease; ACI deployments are registered for later cleanup
  4. drives the ReadinessPoller to ONLINE or FAILED (same lease)
  5. ONLINE → breaker.success(template), `IP` env property, Provision event
  6. FAILED → teardown (remove node, delete remote; both idempotent),
     breaker.failure(template), ProvisionFailed event

The unit's future resolves to a ProvisionResult. It never raises: failures
are surfaced to the circuit breaker and the event log, not to the caller,
because capacity requests are re-evaluated on the next planning cycle.

Per-cloud state
───────────────
Each cloud gets its own ProvisionRetryStrategy and its own CloudConnection,
created on first use. Units share nothing else; a failing unit never affects
its siblings.

Thread safety
─────────────
Thread-safe. The per-cloud maps are guarded by self._lock (creation only);
breakers, connections, the scheduler and the event log are thread-safe in
their own right. Agent objects are owned by the unit that created them.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from containeragents.control_plane.admission_controller import (
    AdmissionRejectedError,
    admit,
)
from containeragents.control_plane.resource_spec import build_resource_spec
from containeragents.control_plane.retention import for_policy
from containeragents.control_plane.scheduler_api import RegistrationError
from containeragents.control_plane.template_registry import TemplateRegistry
from containeragents.reclamation.deployments import DeploymentRegistry
from containeragents.remote.aci import AciContainerGroupClient
from containeragents.remote.base import RemoteResourceClient, RemoteResourceError
from containeragents.remote.connection import CloudConnection, ConnectionClosedError
from containeragents.remote.credentials import (
    CredentialNotFoundError,
    CredentialStore,
    StaticCredentialStore,
)
from containeragents.remote.kubernetes import KubernetesPodClient
from containeragents.shared.models import (
    Agent,
    AgentTemplate,
    CloudConfig,
    CloudKind,
    FailureReason,
    ProvisionResult,
    ReadinessState,
)
from containeragents.telemetry import events as ev
from containeragents.telemetry.events import ProvisioningEventLog
from provisioner_core.backoff import (
    INITIAL_INTERVAL_S,
    MAX_INTERVAL_S,
    ProvisionRetryStrategy,
)
from provisioner_core.clock import SystemClock
from provisioner_core.naming import AGENT_SUFFIX_LENGTH, generate_name
from provisioner_core.readiness import (
    ACI_POLL_INTERVAL_S,
    KUBERNETES_POLL_INTERVAL_S,
    ReadinessPoller,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_MAX_WORKERS: int = 32
"""Upper bound of concurrently running provisioning units and deletes."""


class ProvisioningService:
    """
    Provisioning orchestrator for every cloud the scheduler knows about.

    Public API:
        provision(cloud, label, count)   → List[Future[ProvisionResult]]
        can_provision(cloud, label)      → bool
        terminate(agent)                 → Future[bool]
        enforce_retention(now)           → List[Future[bool]]
        task_completed(agent_name)       → Optional[Future[bool]]
        get_metrics()                    → Dict
        shutdown(wait)                   → None

    Args:
        scheduler:      SchedulerApi (InMemoryScheduler in tests).
        credentials:    Credential lookup. Defaults to an empty store.
        client_factory: CloudConfig → RemoteResourceClient. Defaults to the
                        Kubernetes / ACI REST adapters, chosen by cloud kind.
        launcher:       PullLauncher for pull-style templates.
        clock:          Monotonic now()/sleep() source for readiness waits.
        wall_clock:     Epoch-seconds source for the circuit breakers and
                        retention checks.
        max_workers:    Thread pool size.
        event_log:      Observability sink. Created if omitted.
        deployments:    ACI deployment registry. Created if omitted.
        initial_backoff_s / max_backoff_s: circuit breaker bounds.
    """

    def __init__(
        self,
        scheduler,
        credentials: Optional[CredentialStore] = None,
        client_factory: Optional[Callable[[CloudConfig], RemoteResourceClient]] = None,
        launcher=None,
        clock=None,
        wall_clock: Callable[[], float] = time.time,
        max_workers: int = DEFAULT_MAX_WORKERS,
        event_log: Optional[ProvisioningEventLog] = None,
        deployments: Optional[DeploymentRegistry] = None,
        initial_backoff_s: float = INITIAL_INTERVAL_S,
        max_backoff_s: float = MAX_INTERVAL_S,
    ) -> None:
        self._scheduler = scheduler
        self._credentials = credentials or StaticCredentialStore()
        self._client_factory = client_factory or self._default_client_factory
        self._launcher = launcher
        self._clock = clock or SystemClock()
        self._wall_clock = wall_clock
        self._initial_backoff_s = initial_backoff_s
        self._max_backoff_s = max_backoff_s

        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provision")
        self.events = event_log or ProvisioningEventLog()
        self.deployments = deployments or DeploymentRegistry()

        self._breakers: Dict[str, ProvisionRetryStrategy] = {}
        self._connections: Dict[str, CloudConnection] = {}
        self._registries: Dict[str, tuple] = {}
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._in_flight = 0
        self._started_at = wall_clock()

        logger.info("ProvisioningService initialised (max_workers=%d)", max_workers)

    # ── Per-cloud state ───────────────────────────────────────────────────────

    def breaker(self, cloud_name: str) -> ProvisionRetryStrategy:
        breaker = self._breakers.get(cloud_name)
        if breaker is None:
            with self._lock:
                breaker = self._breakers.get(cloud_name)
                if breaker is None:
                    breaker = ProvisionRetryStrategy(
                        self._initial_backoff_s, self._max_backoff_s, self._wall_clock
                    )
                    self._breakers[cloud_name] = breaker
        return breaker

    def connection(self, cloud: CloudConfig) -> CloudConnection:
        connection = self._connections.get(cloud.name)
        if connection is None:
            with self._lock:
                connection = self._connections.get(cloud.name)
                if connection is None:
                    connection = CloudConnection(cloud, self._client_factory)
                    self._connections[cloud.name] = connection
        return connection

    def existing_connection(self, cloud_name: str) -> Optional[CloudConnection]:
        """The connection of a still-configured cloud, or None."""
        cloud = self._scheduler.get_cloud(cloud_name)
        return self.connection(cloud) if cloud is not None else None

    def registry(self, cloud: CloudConfig) -> TemplateRegistry:
        cached = self._registries.get(cloud.name)
        if cached is not None and cached[0] is cloud:
            return cached[1]
        registry = TemplateRegistry(cloud.templates)
        with self._lock:
            self._registries[cloud.name] = (cloud, registry)
        return registry

    def clouds(self) -> List[CloudConfig]:
        return self._scheduler.list_clouds()

    @property
    def scheduler(self):
        return self._scheduler

    def _default_client_factory(self, cloud: CloudConfig) -> RemoteResourceClient:
        if cloud.kind == CloudKind.KUBERNETES:
            return KubernetesPodClient.from_cloud(cloud, self._credentials)
        if cloud.kind == CloudKind.ACI:
            return AciContainerGroupClient.from_cloud(cloud, self._credentials)
        raise ValueError(f"Unsupported cloud kind {cloud.kind!r}")

    # ── Admission ─────────────────────────────────────────────────────────────

    def _require_cloud(self, cloud_name: str) -> CloudConfig:
        cloud = self._scheduler.get_cloud(cloud_name)
        if cloud is None:
            raise AdmissionRejectedError(f"Unknown cloud {cloud_name!r}")
        return cloud

    def can_provision(self, cloud_name: str, label: Optional[str] = None) -> bool:
        """True if provision(cloud_name, label) would be admitted right now."""
        try:
            cloud = self._require_cloud(cloud_name)
            admit(cloud.name, self.registry(cloud), self.breaker(cloud.name), label)
        except AdmissionRejectedError as e:
            logger.debug("Cannot provision %r on %s: %s", label, cloud_name, e.reason)
            return False
        return True

    def provision(
        self, cloud_name: str, label: Optional[str] = None, count: int = 1
    ) -> List["Future[ProvisionResult]"]:
        """
        Admit the request and schedule `count` independent provisioning units.

        Raises:
            AdmissionRejectedError: unknown cloud, no matching template, or the
                                    template is in backoff. Nothing is scheduled.
        """
        if self._cancel_event.is_set():
            raise AdmissionRejectedError("ProvisioningService is shut down")
        cloud = self._require_cloud(cloud_name)
        template = admit(cloud.name, self.registry(cloud), self.breaker(cloud.name), label, count)

        logger.info(
            "Provisioning %d agent(s) of template %s on cloud %s (label=%r)",
            count, template.name, cloud.name, label,
        )
        return [self.executor.submit(self._provision_one, cloud, template) for _ in range(count)]

    # ── One provisioning unit ─────────────────────────────────────────────────

    def _provision_one(self, cloud: CloudConfig, template: AgentTemplate) -> ProvisionResult:
        with self._lock:
            self._in_flight += 1
        started = self._clock.now()
        agent = Agent(
            name=generate_name(template.name, AGENT_SUFFIX_LENGTH),
            cloud_name=cloud.name,
            template_name=template.name,
            launch_method=template.launch_method,
            label=template.label,
            retention=template.retention,
            ssh_credentials_id=template.ssh_credentials_id,
            ssh_port=template.ssh_port,
        )
        try:
            return self._run_unit(cloud, template, agent, started)
        except Exception as e:
            logger.exception("Unexpected error provisioning %s", agent.name)
            return self._fail(
                cloud, template, agent, started, FailureReason.CREATION_FAILED,
                f"Unexpected error: {e.__class__.__name__}: {e}",
            )
        finally:
            with self._lock:
                self._in_flight -= 1

    def _run_unit(
        self, cloud: CloudConfig, template: AgentTemplate, agent: Agent, started: float
    ) -> ProvisionResult:
        try:
            self._scheduler.add_node(agent)
        except RegistrationError as e:
            return self._fail(
                cloud, template, agent, started, FailureReason.REGISTRATION_FAILED,
                e.reason, registered=False,
            )

        try:
            with self.connection(cloud).lease() as client:
                try:
                    spec = build_resource_spec(
                        cloud, template, agent, self._scheduler, self._credentials
                    )
                    if spec.deployment_name:
                        agent.deployment_name = spec.deployment_name
                        self.deployments.register(
                            cloud.name, cloud.resource_group, spec.deployment_name
                        )
                    agent.resource_id = client.create(spec)
                except (RemoteResourceError, CredentialNotFoundError) as e:
                    return self._fail(
                        cloud, template, agent, started, FailureReason.CREATION_FAILED, e.reason
                    )

                poller = ReadinessPoller(
                    client,
                    self._scheduler,
                    agent,
                    template,
                    poll_interval_s=self._poll_interval(cloud),
                    launcher=self._launcher,
                    clock=self._clock,
                    cancel_event=self._cancel_event,
                )
                result = poller.run()
        except ConnectionClosedError as e:
            return self._fail(
                cloud, template, agent, started, FailureReason.CANCELLED, e.reason
            )
        except (RemoteResourceError, CredentialNotFoundError) as e:
            # client construction (token, credentials) failed
            return self._fail(
                cloud, template, agent, started, FailureReason.CREATION_FAILED, e.reason
            )

        if not result.ok:
            return self._fail(
                cloud, template, agent, started, result.reason or FailureReason.TIMEOUT,
                result.message,
            )

        self.breaker(cloud.name).success(template.name)
        if agent.host:
            agent.env["IP"] = agent.host
        self.events.record(ev.PROVISION, cloud.name, agent.name, template.name,
                           f"online after {result.elapsed_s:.1f}s")
        logger.info("Agent %s online on cloud %s (%.1fs)", agent.name, cloud.name, result.elapsed_s)
        return ProvisionResult(
            cloud_name=cloud.name,
            template_name=template.name,
            agent_name=agent.name,
            agent=agent,
            state=ReadinessState.ONLINE,
            elapsed_s=self._clock.now() - started,
        )

    def _fail(
        self,
        cloud: CloudConfig,
        template: AgentTemplate,
        agent: Agent,
        started: float,
        reason: FailureReason,
        message: str,
        registered: bool = True,
    ) -> ProvisionResult:
        try:
            if registered:
                self._teardown(cloud, agent)
        finally:
            self.breaker(cloud.name).failure(template.name)
        self.events.record(ev.PROVISION_FAILED, cloud.name, agent.name, template.name,
                           f"{reason.value}: {message}")
        logger.warning(
            "Provisioning %s (template %s, cloud %s) failed: %s: %s",
            agent.name, template.name, cloud.name, reason.value, message,
        )
        return ProvisionResult(
            cloud_name=cloud.name,
            template_name=template.name,
            agent_name=agent.name,
            agent=agent,
            state=ReadinessState.FAILED,
            reason=reason,
            message=message,
            elapsed_s=self._clock.now() - started,
        )

    def _teardown(self, cloud: CloudConfig, agent: Agent) -> None:
        """Remove the node and delete whatever remote resource may exist. Never raises."""
        self._scheduler.remove_node(agent)
        if self._launcher is not None:
            self._launcher.release(agent.name)

        connection = self.connection(cloud)
        if agent.resource_id is None and not connection.initialized:
            # the client was never built, so nothing can have been created
            logger.debug("No remote resource to clean up for %s", agent.name)
            return
        try:
            with connection.lease() as client:
                client.delete(agent.resource_id or agent.name, agent.deployment_name)
        except (RemoteResourceError, ConnectionClosedError) as e:
            logger.warning("Cleanup of %s failed, left for reclamation: %s", agent.name, e.reason)
        except Exception as e:
            logger.warning("Cleanup of %s failed, left for reclamation: %s", agent.name, e)

    def _poll_interval(self, cloud: CloudConfig) -> float:
        if cloud.poll_interval_s is not None:
            return cloud.poll_interval_s
        if cloud.kind == CloudKind.ACI:
            return ACI_POLL_INTERVAL_S
        return KUBERNETES_POLL_INTERVAL_S

    # ── Termination & retention ───────────────────────────────────────────────

    def terminate(self, agent: Agent) -> "Future[bool]":
        """
        Remove `agent`'s node and delete its remote resource, asynchronously.

        Safe to call for agents whose resource never existed or was already
        deleted. The future resolves to True if a resource was deleted.
        """
        return self.executor.submit(self._terminate, agent)

    def _terminate(self, agent: Agent) -> bool:
        self._scheduler.remove_node(agent)
        if self._launcher is not None:
            self._launcher.release(agent.name)

        connection = self.existing_connection(agent.cloud_name)
        if connection is None:
            logger.warning(
                "Cloud %s of agent %s is no longer configured; leaving its resource to reclamation",
                agent.cloud_name, agent.name,
            )
            return False

        resource_id = agent.resource_id or agent.name
        try:
            with connection.lease() as client:
                deleted = client.delete(resource_id, agent.deployment_name)
                still_there = not deleted and client.get(resource_id) is not None
        except (RemoteResourceError, ConnectionClosedError) as e:
            self.events.record(ev.DELETED_FAILED, agent.cloud_name, agent.name,
                               agent.template_name, e.reason)
            logger.warning("Terminate of %s failed: %s", agent.name, e.reason)
            return False

        if deleted:
            self.events.record(ev.DELETED, agent.cloud_name, agent.name, agent.template_name)
        elif still_there:
            self.events.record(ev.DELETED_FAILED, agent.cloud_name, agent.name,
                               agent.template_name, "resource still present after delete")
            logger.warning("Resource %s still present after delete", resource_id)
        else:
            logger.debug("Resource %s of %s was already gone", resource_id, agent.name)
        return deleted

    def enforce_retention(self, now: Optional[float] = None) -> List["Future[bool]"]:
        """
        Apply every online agent's retention policy; terminate those that expired.

        Returns:
            One terminate future per agent being torn down.
        """
        now = self._wall_clock() if now is None else now
        futures = []
        for agent in self._scheduler.list_agents():
            computer = self._scheduler.get_computer(agent.name)
            if computer is None or not computer.is_online:
                continue
            strategy = for_policy(agent.retention, self._started_at)
            if strategy.check(computer, now):
                futures.append(self.terminate(agent))
        return futures

    def task_completed(self, agent_name: str) -> Optional["Future[bool]"]:
        """Report a finished task; terminates once-retention agents."""
        computer = self._scheduler.get_computer(agent_name)
        if computer is None:
            return None
        computer.task_completed()
        strategy = for_policy(computer.agent.retention, self._started_at)
        if strategy.task_completed(computer):
            return self.terminate(computer.agent)
        return None

    # ── Metrics & lifecycle ───────────────────────────────────────────────────

    def get_metrics(self) -> dict:
        """
        Current provisioning metrics.

        Metrics:
            in_flight:    Provisioning units currently running.
            agents:       Nodes registered with the scheduler.
            events:       Lifetime count per event kind.
            backoff:      Per cloud, the interval of every template in backoff.
            leases:       Per cloud, connection leases currently held.
        """
        with self._lock:
            breakers = dict(self._breakers)
            connections = dict(self._connections)
            in_flight = self._in_flight
        backoff = {}
        for cloud_name, breaker in breakers.items():
            cloud = self._scheduler.get_cloud(cloud_name)
            names = cloud.template_names if cloud is not None else []
            records = {n: breaker.get_record(n) for n in names}
            backoff[cloud_name] = {n: r.interval_s for n, r in records.items() if r is not None}
        return {
            "in_flight": in_flight,
            "agents": len(self._scheduler.list_agents()),
            "events": self.events.counts(),
            "backoff": backoff,
            "leases": {name: c.active_leases for name, c in connections.items()},
            "pending_deployments": len(self.deployments),
        }

    def shutdown(self, wait: bool = True) -> None:
        """Cancel readiness waits, stop the pool and close every connection."""
        self._cancel_event.set()
        self.executor.shutdown(wait=wait)
        with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            connection.close()
        logger.info("ProvisioningService shut down")

    def __enter__(self) -> "ProvisioningService":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
