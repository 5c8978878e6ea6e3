"""
containeragents/remote/memory.py
────────────────────────────────
SimulatedRemoteClient: an in-process container platform.

Used by the test-suite and by dry runs of the provisioner with no cluster
attached. Resources are plain records in a dict; their phase follows a
script:

    client.script_template("t1", [PENDING, PENDING, RUNNING])

makes every resource created from template t1 report Pending on the first two
get() calls and Running from the third on (the last phase sticks). Without a
script a resource is Running immediately.

Every create / delete is recorded in `create_calls` / `delete_calls`, which is
what the reclamation tests count.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from containeragents.remote.base import RemoteResourceClient, RemoteResourceError
from containeragents.shared.models import (
    DeploymentStatus,
    RemotePhase,
    RemoteStatus,
    ResourceSpec,
    TAG_TEMPLATE,
)

logger = logging.getLogger(__name__)


class _SimResource:
    def __init__(self, name: str, tags: Dict[str, str], script: List[RemotePhase], address: str) -> None:
        self.name = name
        self.tags = tags
        self.script = script
        self.address = address
        self.polls = 0
        self.forced_phase: Optional[RemotePhase] = None

    def next_phase(self) -> RemotePhase:
        if self.forced_phase is not None:
            return self.forced_phase
        index = min(self.polls, len(self.script) - 1)
        self.polls += 1
        return self.script[index]


class SimulatedRemoteClient(RemoteResourceClient):
    """
    Thread-safe fake platform with scriptable phase transitions.

    Args:
        default_script: Phases used for resources with no template script.
        deployments:    If True, every create also records a deployment
                        (like ACI), reachable through get_deployment().
    """

    kind = "simulated"

    def __init__(
        self,
        default_script: Optional[Iterable[RemotePhase]] = None,
        deployments: bool = False,
    ) -> None:
        self._default_script = list(default_script or [RemotePhase.RUNNING])
        self._template_scripts: Dict[str, List[RemotePhase]] = {}
        self._resources: Dict[str, _SimResource] = {}
        self._deployments: Dict[str, DeploymentStatus] = {}
        self._track_deployments = deployments
        self._lock = threading.Lock()
        self._next_ip = 1

        self.create_calls: List[str] = []
        self.delete_calls: List[str] = []
        self.deployment_delete_calls: List[str] = []
        self.logs: Dict[str, str] = {}
        self.log_requests: List[str] = []
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.closed = False

    # ── Scripting ─────────────────────────────────────────────────────────────

    def script_template(self, template_name: str, phases: Iterable[RemotePhase]) -> None:
        phases = list(phases)
        if not phases:
            raise ValueError("A phase script needs at least one phase")
        self._template_scripts[template_name] = phases

    def set_phase(self, resource_id: str, phase: RemotePhase) -> None:
        with self._lock:
            self._resources[resource_id].forced_phase = phase

    def add_existing(self, name: str, tags: Dict[str, str], phase: RemotePhase = RemotePhase.RUNNING) -> None:
        """Seed a resource that was created outside this client (e.g. before a restart)."""
        with self._lock:
            self._resources[name] = _SimResource(name, dict(tags), [phase], self._allocate_ip())

    def add_deployment(self, name: str, state: str, timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            self._deployments[name] = DeploymentStatus(
                name=name,
                provisioning_state=state,
                timestamp=timestamp or datetime.now(timezone.utc),
            )

    @property
    def resource_names(self) -> List[str]:
        with self._lock:
            return sorted(self._resources)

    # ── RemoteResourceClient ──────────────────────────────────────────────────

    def create(self, spec: ResourceSpec) -> str:
        if self.create_error is not None:
            raise self.create_error
        script = self._template_scripts.get(spec.tags.get(TAG_TEMPLATE, ""), self._default_script)
        with self._lock:
            if spec.name in self._resources:
                raise RemoteResourceError(f"Resource {spec.name!r} already exists")
            self._resources[spec.name] = _SimResource(
                spec.name, dict(spec.tags), list(script), self._allocate_ip()
            )
            self.create_calls.append(spec.name)
            if self._track_deployments and spec.deployment_name:
                self._deployments[spec.deployment_name] = DeploymentStatus(
                    name=spec.deployment_name,
                    provisioning_state="Succeeded",
                    timestamp=datetime.now(timezone.utc),
                )
        logger.debug("Simulated create of %s", spec.name)
        return spec.name

    def get(self, resource_id: str) -> Optional[RemoteStatus]:
        with self._lock:
            resource = self._resources.get(resource_id)
            if resource is None:
                return None
            phase = resource.next_phase()
            address = resource.address if phase == RemotePhase.RUNNING else None
        return RemoteStatus(phase=phase, address=address)

    def delete(self, resource_id: str, deployment_name: Optional[str] = None) -> bool:
        with self._lock:
            self.delete_calls.append(resource_id)
            if self.delete_error is not None:
                logger.warning("Simulated delete of %s failed: %s", resource_id, self.delete_error)
                return False
            removed = self._resources.pop(resource_id, None)
            if deployment_name:
                deployment = self._deployments.get(deployment_name)
                if deployment is not None and deployment.succeeded:
                    del self._deployments[deployment_name]
                    self.deployment_delete_calls.append(deployment_name)
        return removed is not None

    def list(self, tags: Dict[str, str]) -> List[str]:
        with self._lock:
            return sorted(
                r.name for r in self._resources.values()
                if all(r.tags.get(k) == v for k, v in tags.items())
            )

    def fetch_logs(self, resource_id: str) -> str:
        self.log_requests.append(resource_id)
        return self.logs.get(resource_id, "")

    def get_deployment(self, name: str) -> Optional[DeploymentStatus]:
        with self._lock:
            deployment = self._deployments.get(name)
            return deployment.model_copy() if deployment is not None else None

    def delete_deployment(self, name: str) -> bool:
        with self._lock:
            self.deployment_delete_calls.append(name)
            return self._deployments.pop(name, None) is not None

    def close(self) -> None:
        self.closed = True

    def _allocate_ip(self) -> str:
        address = f"10.0.0.{self._next_ip}"
        self._next_ip += 1
        return address
