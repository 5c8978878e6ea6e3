"""
containeragents/shared/models.py
────────────────────────────────
The single source of truth for every data structure in the provisioner.

Design philosophy
-----------------
Configuration arrives already parsed: clouds and templates are pydantic
models, validated once at load time, and read-only to the provisioning code.
Runtime records (Agent, RetryRecord) are mutable models owned by exactly one
actor at a time. Outcomes (ReadinessResult, ProvisionResult, SweepReport) are
explicit result objects, so callers branch on a field instead of catching
heterogeneous exceptions.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

# ── Resource tags ────────────────────────────────────────────────────────────

TAG_APP: str = "app"
APP_NAME: str = "container-agent"
TAG_INSTANCE: str = "containeragents.io/instance"
"""Identity of the scheduler instance that owns the resource. Reclamation selects on it."""
TAG_CLOUD: str = "containeragents.io/cloud"
TAG_TEMPLATE: str = "containeragents.io/template"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class CloudKind(str, Enum):
    """
    Which remote platform a cloud provisions onto.

    KUBERNETES → one pod per agent in a namespace of an orchestrated cluster.
    ACI        → one container group per agent, created through an ARM
                 deployment in a resource group.
    """
    KUBERNETES = "kubernetes"
    ACI = "aci"


class LaunchMethod(str, Enum):
    """
    How the agent process gets attached to the scheduler.

    PUSH → the container starts the agent itself and dials back to the
           scheduler (JNLP style). The provisioner only waits.
    PULL → the container runs an SSH-style daemon. The provisioner connects
           in, copies the agent executable and starts it.
    """
    PUSH = "push"
    PULL = "pull"


class RemotePhase(str, Enum):
    """Lifecycle status of a pod / container group, as the platform reports it."""
    PENDING = "Pending"
    RUNNING = "Running"
    FAILED = "Failed"
    SUCCEEDED = "Succeeded"
    UNKNOWN = "Unknown"


class RetentionKind(str, Enum):
    """
    When an online agent is torn down.

    IDLE   → after `idle_minutes` without work (0 = never).
    ONCE   → after its first completed task.
    ALWAYS → never; only reclamation or an explicit terminate removes it.
    """
    IDLE = "idle"
    ONCE = "once"
    ALWAYS = "always"


class ReadinessState(str, Enum):
    """
    States of the readiness poller.

    CREATED                → remote creation call returned / was accepted.
    WAITING_REMOTE_RUNNING → polling the platform until the phase is Running.
    WAITING_AGENT_ONLINE   → waiting for the scheduler to see the agent online.
    ONLINE                 → terminal success.
    FAILED                 → terminal failure; see FailureReason.
    """
    CREATED = "created"
    WAITING_REMOTE_RUNNING = "waiting-remote-running"
    WAITING_AGENT_ONLINE = "waiting-agent-online"
    ONLINE = "online"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a provisioning attempt ended in FAILED."""
    TIMEOUT = "timeout"
    REMOTE_FAILED = "remote_failed"
    REMOTE_EXITED = "remote_exited"
    REMOTE_MISSING = "remote_missing"
    AGENT_DELETED = "agent_deleted"
    LAUNCH_FAILED = "launch_failed"
    CANCELLED = "cancelled"
    REGISTRATION_FAILED = "registration_failed"
    CREATION_FAILED = "creation_failed"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: TEMPLATE BUILDING BLOCKS
# ─────────────────────────────────────────────────────────────────────────────

class EnvVar(BaseModel):
    key: str = Field(..., min_length=1)
    value: str = ""


class PortMapping(BaseModel):
    port: int = Field(..., ge=1, le=65535)
    protocol: str = Field("TCP", description="TCP or UDP")


class VolumeMount(BaseModel):
    """
    A volume mounted into the agent container.

    Kubernetes templates use `empty_dir`, `host_path`, `secret` or
    `persistent_volume_claim`. ACI templates use `azure_file`, whose storage
    account key is resolved through `credentials_id` at creation time.
    """
    kind: str = Field(..., description="empty_dir | host_path | secret | persistent_volume_claim | azure_file")
    mount_path: str = Field(..., min_length=1)
    source: str = Field("", description="Host path, secret name, claim name or file share name")
    storage_account: str = Field("", description="Azure file volumes only")
    credentials_id: str = Field("", description="Credential holding the storage account key")
    read_only: bool = False


class RegistryEndpoint(BaseModel):
    """A private image registry and the credential used to pull from it."""
    server: str = Field("index.docker.io", description="Registry host, without scheme")
    credentials_id: str = Field(..., min_length=1)


class RetentionPolicy(BaseModel):
    kind: RetentionKind = RetentionKind.IDLE
    idle_minutes: int = Field(
        0, ge=0,
        description="Idle minutes before an IDLE agent is terminated. 0 = never."
    )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

class AgentTemplate(BaseModel):
    """
    Blueprint for one kind of ephemeral agent.

    Fields:
        name                    → Identifies the template. Base of generated names
                                  and the key of the circuit breaker.
        label                   → Whitespace-separated label atoms this template
                                  offers, e.g. "linux docker build".
        image                   → Container image to run.
        command                 → Container command. May contain ${rootUrl},
                                  ${nodeName}, ${secret} and ${instanceIdentity}.
        launch_method           → PUSH or PULL (see LaunchMethod).
        startup_timeout_minutes → Deadline for the whole readiness wait.
                                  0 disables the deadline.
    """
    name: str = Field(..., min_length=1)
    label: str = Field("", description="Space-separated label atoms")
    image: str = Field(..., min_length=1)
    command: str = Field("", description="Command line, split on whitespace after expansion")
    args: List[str] = Field(default_factory=list)
    env_vars: List[EnvVar] = Field(default_factory=list)

    cpu_request: str = Field("500m", description="CPU request, platform notation")
    memory_request: str = Field("512Mi")
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    ports: List[PortMapping] = Field(default_factory=list)
    os_type: str = Field("Linux")
    root_fs: str = Field("/home/agent", description="Agent working directory")

    launch_method: LaunchMethod = LaunchMethod.PUSH
    ssh_credentials_id: str = Field("", description="PULL only: credential for the transport")
    ssh_port: int = Field(22, ge=1, le=65535)
    agent_command: str = Field(
        "java -jar agent.jar",
        description="PULL only: how the copied agent executable is started"
    )

    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    startup_timeout_minutes: float = Field(5.0, ge=0)

    volumes: List[VolumeMount] = Field(default_factory=list)
    registries: List[RegistryEndpoint] = Field(default_factory=list)

    @property
    def label_set(self) -> Set[str]:
        return set(self.label.split())

    @property
    def startup_timeout_s(self) -> float:
        return self.startup_timeout_minutes * 60.0


class CloudConfig(BaseModel):
    """
    One configured cloud: a platform endpoint plus its ordered templates.

    Tagged variant: `kind` decides which remote client the provisioner builds
    and which of the platform fields are meaningful.

        KUBERNETES → endpoint (API server URL), namespace
        ACI        → subscription_id, resource_group (endpoint optional,
                     defaults to the public ARM endpoint)
    """
    name: str = Field(..., min_length=1)
    kind: CloudKind
    credentials_id: str = Field("", description="Credential used to talk to the platform")
    templates: List[AgentTemplate] = Field(default_factory=list)

    endpoint: str = Field("", description="Kubernetes API server or ARM endpoint URL")
    namespace: str = Field("default")
    verify_tls: bool = True
    subscription_id: str = ""
    resource_group: str = ""
    location: str = Field("", description="ACI region. Empty = the resource group's location")
    log_analytics_credentials_id: str = Field(
        "", description="ACI only: credential holding the Log Analytics workspace id and key"
    )

    poll_interval_s: Optional[float] = Field(
        None, gt=0,
        description="Readiness poll interval. None = platform default."
    )

    @property
    def template_names(self) -> List[str]:
        return [t.name for t in self.templates]


def load_clouds(raw: Iterable[Dict[str, Any]]) -> List[CloudConfig]:
    """
    Validate plain dicts (e.g. parsed YAML/JSON) into CloudConfig objects.

    Raises:
        pydantic.ValidationError: on the first malformed cloud.
        ValueError: if two clouds share a name.
    """
    clouds = [CloudConfig.model_validate(item) for item in raw]
    seen: Set[str] = set()
    for cloud in clouds:
        if cloud.name in seen:
            raise ValueError(f"Duplicate cloud name {cloud.name!r}")
        seen.add(cloud.name)
    return clouds


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: CREDENTIALS & REMOTE RESOURCES
# ─────────────────────────────────────────────────────────────────────────────

class Credential(BaseModel):
    """
    Opaque secret returned by the credential lookup.

    `secret` is a password, bearer token or storage key depending on use;
    `private_key` is only set for key-based transport credentials.
    """
    credential_id: str
    username: str = ""
    secret: str = ""
    private_key: Optional[str] = None
    tenant_id: str = Field("", description="Azure AD tenant for service-principal credentials")


class RegistryCredential(BaseModel):
    server: str
    username: str
    password: str


class ResourceSpec(BaseModel):
    """
    Platform-neutral description of one remote resource to create.

    Built by control_plane/resource_spec.py from a template and an agent;
    turned into a pod manifest or an ARM template by the remote adapters.
    """
    name: str
    image: str
    command: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cpu_request: str = "500m"
    memory_request: str = "512Mi"
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    ports: List[PortMapping] = Field(default_factory=list)
    os_type: str = "Linux"
    working_dir: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)
    volumes: List[VolumeMount] = Field(default_factory=list)
    volume_secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="Storage account keys resolved for azure_file volumes, keyed by mount path"
    )
    registry_credentials: List[RegistryCredential] = Field(default_factory=list)
    registry_secret_name: Optional[str] = None
    deployment_name: Optional[str] = None
    log_workspace_id: Optional[str] = None
    log_workspace_key: Optional[str] = None


class RemoteStatus(BaseModel):
    phase: RemotePhase
    address: Optional[str] = None
    message: str = ""


class DeploymentStatus(BaseModel):
    name: str
    provisioning_state: str
    timestamp: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.provisioning_state.lower() == "succeeded"

    @property
    def failed(self) -> bool:
        return self.provisioning_state.lower() == "failed"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: RUNTIME RECORDS
# ─────────────────────────────────────────────────────────────────────────────

class Agent(BaseModel):
    """
    A scheduler-visible node backed by one remote resource.

    Created before the remote resource exists so the scheduler counts it as
    pending capacity. Owned by the provisioning task that created it until
    that task hands it to the scheduler as online.
    """
    name: str
    cloud_name: str
    template_name: str
    launch_method: LaunchMethod
    label: str = ""
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    ssh_credentials_id: str = ""
    ssh_port: int = 22

    host: Optional[str] = None
    resource_id: Optional[str] = None
    deployment_name: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RetryRecord(BaseModel):
    """Circuit breaker state for one template. Exists only while failing."""
    last_failure: float = 0.0
    interval_s: float


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: OUTCOMES
# ─────────────────────────────────────────────────────────────────────────────

class ReadinessResult(BaseModel):
    state: ReadinessState
    reason: Optional[FailureReason] = None
    message: str = ""
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == ReadinessState.ONLINE


class ProvisionResult(BaseModel):
    """What a provisioning future resolves to. Never raised, always returned."""
    cloud_name: str
    template_name: str
    agent_name: Optional[str] = None
    agent: Optional[Agent] = None
    state: ReadinessState
    reason: Optional[FailureReason] = None
    message: str = ""
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == ReadinessState.ONLINE


class SweepReport(BaseModel):
    """Outcome of one reclamation pass over one cloud."""
    cloud_name: str
    listed: List[str] = Field(default_factory=list)
    live: List[str] = Field(default_factory=list)
    leaked: List[str] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ProvisioningEvent(BaseModel):
    """One entry in the observability sink (telemetry/events.py)."""
    kind: str = Field(..., description="Provision | ProvisionFailed | Deleted | DeletedFailed | Reclaimed")
    cloud_name: str
    subject: str = Field(..., description="Agent or resource name")
    template_name: Optional[str] = None
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
