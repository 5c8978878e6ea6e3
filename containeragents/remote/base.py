"""
containeragents/remote/base.py
──────────────────────────────
RemoteResourceClient: the contract every platform adapter fulfils.

The provisioning core treats a pod or a container group as opaque remote
state. It only ever needs five things from a platform:

    create(spec)          → start a resource, return its identifier
    get(resource_id)      → current phase + address, or None if not found
    delete(resource_id)   → remove it; deleting a missing resource is a no-op
    list(tags)            → names of resources carrying all the given tags
    fetch_logs(id)        → best-effort container output for diagnostics

Deployment-backed platforms (ACI) additionally expose get_deployment() and
delete_deployment() so the reclamation task can tidy up ARM deployment
records. The defaults here make those no-ops for everyone else.

Error model
───────────
Adapters raise RemoteConnectionError for transport trouble (refused, timed
out, 5xx after retries) and RemoteResourceError for everything else the
platform rejects. delete() and fetch_logs() never raise.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from containeragents.shared.models import DeploymentStatus, RemoteStatus, ResourceSpec


class RemoteResourceError(Exception):
    """
    Raised when the platform rejects or cannot complete a request.

    Attributes:
        reason: Human-readable explanation, including the platform's message.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class RemoteConnectionError(RemoteResourceError):
    """The platform could not be reached (socket error, timeout, 429/5xx)."""


class RemoteResourceClient(ABC):
    """Abstract adapter over one remote container platform."""

    kind: str = "abstract"

    @abstractmethod
    def create(self, spec: ResourceSpec) -> str:
        """Create the resource described by `spec` and return its identifier."""

    @abstractmethod
    def get(self, resource_id: str) -> Optional[RemoteStatus]:
        """Return the resource's status, or None if it does not exist."""

    @abstractmethod
    def delete(self, resource_id: str, deployment_name: Optional[str] = None) -> bool:
        """
        Delete the resource. Returns False if it was already gone or the
        delete failed; never raises.
        """

    @abstractmethod
    def list(self, tags: Dict[str, str]) -> List[str]:
        """Names of every resource carrying all of `tags`."""

    def fetch_logs(self, resource_id: str) -> str:
        return ""

    def get_deployment(self, name: str) -> Optional[DeploymentStatus]:
        return None

    def delete_deployment(self, name: str) -> bool:
        return False

    def close(self) -> None:
        pass


class LaunchFailedError(Exception):
    """
    Raised when a pull-style agent could not be started over the transport.

    Attributes:
        reason: Human-readable explanation, including the last transport error.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
