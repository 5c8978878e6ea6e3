"""
containeragents/remote — everything that talks to a container platform.

Public API:
    RemoteResourceClient     — abstract create / get / delete / list contract
    KubernetesPodClient      — pods through the Kubernetes REST API
    AciContainerGroupClient  — container groups through ARM deployments
    SimulatedRemoteClient    — in-process platform for tests and dry runs
    CloudConnection          — lazily created, leased client per cloud
    PullLauncher             — SSH-style pull launch of the agent executable
    StaticCredentialStore    — dictionary-backed credential lookup
"""

from containeragents.remote.base import (
    LaunchFailedError,
    RemoteConnectionError,
    RemoteResourceClient,
    RemoteResourceError,
)
from containeragents.remote.credentials import (
    CredentialNotFoundError,
    CredentialStore,
    StaticCredentialStore,
)
from containeragents.remote.connection import CloudConnection, ConnectionClosedError
from containeragents.remote.http import RestSession
from containeragents.remote.kubernetes import KubernetesPodClient
from containeragents.remote.aci import AciContainerGroupClient
from containeragents.remote.memory import SimulatedRemoteClient
from containeragents.remote.transport import PullLauncher

__all__ = [
    "LaunchFailedError",
    "RemoteConnectionError",
    "RemoteResourceClient",
    "RemoteResourceError",
    "CredentialNotFoundError",
    "CredentialStore",
    "StaticCredentialStore",
    "CloudConnection",
    "ConnectionClosedError",
    "RestSession",
    "KubernetesPodClient",
    "AciContainerGroupClient",
    "SimulatedRemoteClient",
    "PullLauncher",
]
