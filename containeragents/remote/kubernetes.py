"""
containeragents/remote/kubernetes.py
────────────────────────────────────
KubernetesPodClient: one pod per agent, through the Kubernetes REST API.

Resource identifier = pod name = agent name. All pods live in the cloud's
namespace and carry the ResourceSpec tags as labels, which is what list()
selects on during reclamation.

Phase mapping
─────────────
The pod phase is taken as-is, with one correction: a Pending pod whose
container has already terminated, or is stuck pulling its image
(ImagePullBackOff / ErrImagePull), will never start. It is reported as
Failed so the readiness poller gives up immediately instead of waiting out
the whole startup timeout.

Registry credentials
────────────────────
If the ResourceSpec carries registry credentials, a kubernetes.io/dockerconfigjson
secret named `<pod>-registry` (or spec.registry_secret_name) is created first
and referenced from imagePullSecrets. The pod records the secret name in an
annotation, and delete() removes that secret once the pod is gone. A failed
secret delete is logged; the result of delete() reflects the pod only.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from containeragents.remote.base import RemoteResourceClient, RemoteResourceError
from containeragents.remote.credentials import CredentialStore
from containeragents.remote.http import RestSession
from containeragents.shared.models import (
    CloudConfig,
    RemotePhase,
    RemoteStatus,
    ResourceSpec,
    VolumeMount,
)
from provisioner_core.naming import VOLUME_SUFFIX_LENGTH, generate_name

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

CONTAINER_NAME: str = "agent"

IMAGE_PULL_FAILURES = frozenset({"ImagePullBackOff", "ErrImagePull", "InvalidImageName"})

LOG_TAIL_LINES: int = 100

REGISTRY_SECRET_ANNOTATION: str = "containeragents.io/registry-secret"
"""Pod annotation naming the pull secret delete() removes with the pod."""


class KubernetesPodClient(RemoteResourceClient):
    """
    RemoteResourceClient for a Kubernetes namespace.

    Args:
        http:      RestSession bound to the API server.
        namespace: Namespace every pod is created in.
    """

    kind = "kubernetes"

    def __init__(self, http: RestSession, namespace: str = "default") -> None:
        self._http = http
        self.namespace = namespace

    @classmethod
    def from_cloud(cls, cloud: CloudConfig, credentials: CredentialStore) -> "KubernetesPodClient":
        token = credentials.lookup(cloud.credentials_id).secret if cloud.credentials_id else None
        http = RestSession(
            cloud.endpoint,
            token_provider=(lambda: token) if token else None,
            verify=cloud.verify_tls,
        )
        return cls(http, cloud.namespace)

    # ── Paths ─────────────────────────────────────────────────────────────────

    def _pods(self) -> str:
        return f"/api/v1/namespaces/{self.namespace}/pods"

    def _pod(self, name: str) -> str:
        return f"{self._pods()}/{name}"

    def _secrets(self) -> str:
        return f"/api/v1/namespaces/{self.namespace}/secrets"

    # ── RemoteResourceClient ──────────────────────────────────────────────────

    def create(self, spec: ResourceSpec) -> str:
        secret_name = None
        if spec.registry_credentials:
            secret_name = spec.registry_secret_name or f"{spec.name}-registry"
            self._http.request(
                "POST", self._secrets(), json=self._registry_secret(spec, secret_name)
            )

        manifest = build_pod_manifest(spec, self.namespace, secret_name)
        try:
            self._http.request("POST", self._pods(), json=manifest)
        except RemoteResourceError:
            if secret_name:
                self._delete_registry_secret(secret_name)
            raise
        logger.info("Created pod %s/%s (image=%s)", self.namespace, spec.name, spec.image)
        return spec.name

    def get(self, resource_id: str) -> Optional[RemoteStatus]:
        pod = self._http.get_json(self._pod(resource_id))
        if pod is None:
            return None
        return pod_status(pod)

    def delete(self, resource_id: str, deployment_name: Optional[str] = None) -> bool:
        try:
            response = self._http.request("DELETE", self._pod(resource_id), allow_missing=True)
        except RemoteResourceError as e:
            logger.warning("Failed to delete pod %s/%s: %s", self.namespace, resource_id, e.reason)
            return False

        if response is None:
            logger.debug("Pod %s/%s already gone", self.namespace, resource_id)
            # the secret may still exist if the pod create itself failed
            self._delete_registry_secret(f"{resource_id}-registry")
            return False

        logger.info("Deleted pod %s/%s", self.namespace, resource_id)
        secret_name = _annotations(response).get(REGISTRY_SECRET_ANNOTATION)
        if secret_name:
            self._delete_registry_secret(secret_name)
        return True

    def list(self, tags: Dict[str, str]) -> List[str]:
        selector = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        body = self._http.get_json(self._pods(), params={"labelSelector": selector}) or {}
        return [item["metadata"]["name"] for item in body.get("items", [])]

    def fetch_logs(self, resource_id: str) -> str:
        try:
            response = self._http.request(
                "GET",
                f"{self._pod(resource_id)}/log",
                params={"container": CONTAINER_NAME, "tailLines": LOG_TAIL_LINES},
                allow_missing=True,
                headers={"Accept": "text/plain"},
            )
        except RemoteResourceError as e:
            logger.debug("No logs for pod %s: %s", resource_id, e.reason)
            return ""
        return "" if response is None else response.text

    def close(self) -> None:
        self._http.close()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _delete_registry_secret(self, secret_name: str) -> None:
        try:
            self._http.request("DELETE", f"{self._secrets()}/{secret_name}", allow_missing=True)
        except RemoteResourceError as e:
            logger.warning(
                "Failed to delete registry secret %s/%s: %s", self.namespace, secret_name, e.reason
            )

    def _registry_secret(self, spec: ResourceSpec, secret_name: str) -> Dict[str, Any]:
        auths = {}
        for cred in spec.registry_credentials:
            token = base64.b64encode(f"{cred.username}:{cred.password}".encode()).decode()
            auths[cred.server] = {"username": cred.username, "password": cred.password, "auth": token}
        payload = base64.b64encode(json.dumps({"auths": auths}).encode()).decode()
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "kubernetes.io/dockerconfigjson",
            "metadata": {"name": secret_name, "namespace": self.namespace, "labels": dict(spec.tags)},
            "data": {".dockerconfigjson": payload},
        }


def build_pod_manifest(
    spec: ResourceSpec, namespace: str, pull_secret: Optional[str] = None
) -> Dict[str, Any]:
    """Translate a ResourceSpec into a v1 Pod manifest."""
    resources: Dict[str, Dict[str, str]] = {
        "requests": {"cpu": spec.cpu_request, "memory": spec.memory_request},
    }
    limits = {}
    if spec.cpu_limit:
        limits["cpu"] = spec.cpu_limit
    if spec.memory_limit:
        limits["memory"] = spec.memory_limit
    if limits:
        resources["limits"] = limits

    container: Dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": spec.image,
        "env": [{"name": k, "value": v} for k, v in spec.env.items()],
        "resources": resources,
        "tty": True,
    }
    if spec.command:
        container["command"] = list(spec.command)
    if spec.working_dir:
        container["workingDir"] = spec.working_dir
    if spec.ports:
        container["ports"] = [
            {"containerPort": p.port, "protocol": p.protocol.upper()} for p in spec.ports
        ]

    volumes = []
    mounts = []
    for volume in spec.volumes:
        name = generate_name("volume", VOLUME_SUFFIX_LENGTH)
        volumes.append({"name": name, **_volume_source(volume)})
        mounts.append({"name": name, "mountPath": volume.mount_path, "readOnly": volume.read_only})
    if mounts:
        container["volumeMounts"] = mounts

    pod_spec: Dict[str, Any] = {
        "restartPolicy": "Never",
        "containers": [container],
        "nodeSelector": {"kubernetes.io/os": spec.os_type.lower()},
    }
    if volumes:
        pod_spec["volumes"] = volumes
    metadata: Dict[str, Any] = {"name": spec.name, "namespace": namespace, "labels": dict(spec.tags)}
    if pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": pull_secret}]
        metadata["annotations"] = {REGISTRY_SECRET_ANNOTATION: pull_secret}

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": metadata,
        "spec": pod_spec,
    }


def _volume_source(volume: VolumeMount) -> Dict[str, Any]:
    if volume.kind == "empty_dir":
        return {"emptyDir": {}}
    if volume.kind == "host_path":
        return {"hostPath": {"path": volume.source}}
    if volume.kind == "secret":
        return {"secret": {"secretName": volume.source}}
    if volume.kind == "persistent_volume_claim":
        return {"persistentVolumeClaim": {"claimName": volume.source, "readOnly": volume.read_only}}
    raise RemoteResourceError(f"Volume kind {volume.kind!r} is not supported on Kubernetes")


def pod_status(pod: Dict[str, Any]) -> RemoteStatus:
    """Map a pod object onto RemoteStatus, failing fast on unstartable pods."""
    status = pod.get("status") or {}
    raw_phase = status.get("phase", "Unknown")
    try:
        phase = RemotePhase(raw_phase)
    except ValueError:
        phase = RemotePhase.UNKNOWN
    message = status.get("message", "") or status.get("reason", "") or ""

    if phase == RemotePhase.PENDING:
        for container in status.get("containerStatuses") or []:
            state = container.get("state") or {}
            terminated = state.get("terminated")
            waiting = state.get("waiting") or {}
            if terminated:
                phase = RemotePhase.FAILED
                message = terminated.get("message") or terminated.get("reason") or "container terminated"
                break
            if waiting.get("reason") in IMAGE_PULL_FAILURES:
                phase = RemotePhase.FAILED
                message = f"{waiting['reason']}: {waiting.get('message', '')}".rstrip(": ")
                break

    return RemoteStatus(phase=phase, address=status.get("podIP"), message=message)


def _annotations(response) -> Dict[str, str]:
    try:
        body = response.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    return (body.get("metadata") or {}).get("annotations") or {}
