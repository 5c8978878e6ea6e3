"""
containeragents/remote/aci.py
─────────────────────────────
AciContainerGroupClient: one Azure container group per agent, created through
an ARM template deployment in the cloud's resource group.

Create is asynchronous
──────────────────────
create() PUTs a deployment named `<template>-<8 random chars>` and returns as
soon as ARM accepts it. The container group itself appears some seconds
later. Until it does, get() answers from the deployment:

    deployment Failed              → Failed
    deployment Accepted/Running    → Pending
    deployment missing             → None (not found)

Once the group exists its instance view decides the phase.

Deletion
────────
delete() removes the container group, then the deployment record, but only
when that deployment succeeded. Failed deployments are left in place for
diagnosis; the reclamation task removes them after FAILED_DEPLOYMENT_TTL.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from containeragents.remote.base import (
    RemoteConnectionError,
    RemoteResourceClient,
    RemoteResourceError,
)
from containeragents.remote.credentials import CredentialStore
from containeragents.remote.http import RestSession
from containeragents.shared.models import (
    CloudConfig,
    Credential,
    DeploymentStatus,
    RemotePhase,
    RemoteStatus,
    ResourceSpec,
)
from provisioner_core.naming import (
    DEPLOYMENT_SUFFIX_LENGTH,
    VOLUME_SUFFIX_LENGTH,
    generate_name,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

ARM_ENDPOINT: str = "https://management.azure.com"
LOGIN_ENDPOINT: str = "https://login.microsoftonline.com"

DEPLOYMENTS_API_VERSION: str = "2021-04-01"
CONTAINER_GROUPS_API_VERSION: str = "2021-10-01"

TOKEN_REFRESH_MARGIN_S: float = 300.0
"""Refresh an ARM token this long before it expires."""

LOG_TAIL_LINES: int = 100

_INSTANCE_STATES: Dict[str, RemotePhase] = {
    "running": RemotePhase.RUNNING,
    "pending": RemotePhase.PENDING,
    "waiting": RemotePhase.PENDING,
    "creating": RemotePhase.PENDING,
    "failed": RemotePhase.FAILED,
    "stopped": RemotePhase.SUCCEEDED,
    "terminated": RemotePhase.SUCCEEDED,
    "succeeded": RemotePhase.SUCCEEDED,
}


class ArmTokenProvider:
    """
    OAuth2 client-credentials token for ARM, cached until shortly before expiry.

    A credential without a tenant is treated as a ready-made bearer token.
    """

    def __init__(
        self,
        credential: Credential,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credential = credential
        self._session = session if session is not None else requests.Session()
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        if not self._credential.tenant_id:
            return self._credential.secret
        with self._lock:
            if self._token is None or self._clock() >= self._expires_at - TOKEN_REFRESH_MARGIN_S:
                self._refresh()
            return self._token

    def _refresh(self) -> None:
        url = f"{LOGIN_ENDPOINT}/{self._credential.tenant_id}/oauth2/v2.0/token"
        try:
            response = self._session.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._credential.username,
                    "client_secret": self._credential.secret,
                    "scope": f"{ARM_ENDPOINT}/.default",
                },
                timeout=30,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteConnectionError(f"Token request failed: {e}") from e
        if response.status_code != 200:
            raise RemoteResourceError(
                f"Token request for {self._credential.credential_id} → {response.status_code}"
            )
        body = response.json()
        self._token = body["access_token"]
        self._expires_at = self._clock() + float(body.get("expires_in", 3600))
        logger.debug("Refreshed ARM token for %s", self._credential.credential_id)


class AciContainerGroupClient(RemoteResourceClient):
    """
    RemoteResourceClient for Azure Container Instances in one resource group.

    Args:
        http:            RestSession bound to the ARM endpoint.
        subscription_id: Azure subscription.
        resource_group:  Resource group holding container groups and deployments.
        location:        Region. Empty = the resource group's location.
    """

    kind = "aci"

    def __init__(
        self,
        http: RestSession,
        subscription_id: str,
        resource_group: str,
        location: str = "",
    ) -> None:
        self._http = http
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.location = location
        self._deployments: Dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_cloud(cls, cloud: CloudConfig, credentials: CredentialStore) -> "AciContainerGroupClient":
        credential = credentials.lookup(cloud.credentials_id)
        http = RestSession(
            cloud.endpoint or ARM_ENDPOINT,
            token_provider=ArmTokenProvider(credential),
            verify=cloud.verify_tls,
        )
        return cls(http, cloud.subscription_id, cloud.resource_group, cloud.location)

    # ── Paths ─────────────────────────────────────────────────────────────────

    def _group_root(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    def _container_group(self, name: str) -> str:
        return f"{self._group_root()}/providers/Microsoft.ContainerInstance/containerGroups/{name}"

    def _deployment(self, name: str) -> str:
        return f"{self._group_root()}/providers/Microsoft.Resources/deployments/{name}"

    # ── RemoteResourceClient ──────────────────────────────────────────────────

    def create(self, spec: ResourceSpec) -> str:
        deployment_name = spec.deployment_name or generate_name(spec.name, DEPLOYMENT_SUFFIX_LENGTH)
        template, parameters = build_deployment_template(spec, self.location)
        self._http.request(
            "PUT",
            self._deployment(deployment_name),
            params={"api-version": DEPLOYMENTS_API_VERSION},
            json={
                "properties": {
                    "mode": "Incremental",
                    "template": template,
                    "parameters": parameters,
                }
            },
        )
        with self._lock:
            self._deployments[spec.name] = deployment_name
        logger.info(
            "Submitted deployment %s for container group %s in %s",
            deployment_name, spec.name, self.resource_group,
        )
        return spec.name

    def get(self, resource_id: str) -> Optional[RemoteStatus]:
        group = self._http.get_json(
            self._container_group(resource_id),
            params={"api-version": CONTAINER_GROUPS_API_VERSION},
        )
        if group is not None:
            return container_group_status(group)

        with self._lock:
            deployment_name = self._deployments.get(resource_id)
        if deployment_name is None:
            return None
        deployment = self.get_deployment(deployment_name)
        if deployment is None:
            return None
        if deployment.failed:
            return RemoteStatus(
                phase=RemotePhase.FAILED, message=f"Deployment {deployment_name} failed"
            )
        if deployment.succeeded:
            # deployment finished but the group is gone
            return None
        return RemoteStatus(phase=RemotePhase.PENDING, message=deployment.provisioning_state)

    def delete(self, resource_id: str, deployment_name: Optional[str] = None) -> bool:
        with self._lock:
            known = self._deployments.pop(resource_id, None)
        deployment_name = deployment_name or known
        try:
            response = self._http.request(
                "DELETE",
                self._container_group(resource_id),
                params={"api-version": CONTAINER_GROUPS_API_VERSION},
                allow_missing=True,
            )
        except RemoteResourceError as e:
            logger.warning("Delete of container group %s failed: %s", resource_id, e.reason)
            return False
        deleted = response is not None
        if deleted:
            logger.info("Deleted container group %s", resource_id)

        if deployment_name:
            try:
                deployment = self.get_deployment(deployment_name)
                if deployment is not None and deployment.succeeded:
                    self.delete_deployment(deployment_name)
            except RemoteResourceError as e:
                logger.warning("Delete of deployment %s failed: %s", deployment_name, e.reason)
        return deleted

    def list(self, tags: Dict[str, str]) -> List[str]:
        names: List[str] = []
        path: Optional[str] = f"{self._group_root()}/providers/Microsoft.ContainerInstance/containerGroups"
        params: Optional[Dict[str, str]] = {"api-version": CONTAINER_GROUPS_API_VERSION}
        while path:
            body = self._http.get_json(path, params=params) or {}
            for item in body.get("value", []):
                item_tags = item.get("tags") or {}
                if all(item_tags.get(k, "").lower() == v.lower() for k, v in tags.items()):
                    names.append(item["name"])
            path = body.get("nextLink")
            params = None
        return names

    def fetch_logs(self, resource_id: str) -> str:
        try:
            body = self._http.get_json(
                f"{self._container_group(resource_id)}/containers/{resource_id}/logs",
                params={"api-version": CONTAINER_GROUPS_API_VERSION, "tail": LOG_TAIL_LINES},
            )
        except RemoteResourceError as e:
            logger.debug("No logs for container group %s: %s", resource_id, e.reason)
            return ""
        return (body or {}).get("content", "") or ""

    def get_deployment(self, name: str) -> Optional[DeploymentStatus]:
        body = self._http.get_json(
            self._deployment(name), params={"api-version": DEPLOYMENTS_API_VERSION}
        )
        if body is None:
            return None
        properties = body.get("properties") or {}
        timestamp = properties.get("timestamp")
        return DeploymentStatus(
            name=name,
            provisioning_state=properties.get("provisioningState", "Unknown"),
            timestamp=_parse_timestamp(timestamp) if timestamp else None,
        )

    def delete_deployment(self, name: str) -> bool:
        response = self._http.request(
            "DELETE",
            self._deployment(name),
            params={"api-version": DEPLOYMENTS_API_VERSION},
            allow_missing=True,
        )
        if response is not None:
            logger.info("Deleted deployment %s", name)
        return response is not None

    def close(self) -> None:
        self._http.close()


# ── Template & status mapping ─────────────────────────────────────────────────

def build_deployment_template(spec: ResourceSpec, location: str = ""):
    """
    Build the ARM template and its parameters for one container group.

    Secrets (registry passwords, storage keys, the Log Analytics key) travel
    as secureString parameters, never inline in the template.

    Returns:
        (template, parameters)
    """
    parameters_def: Dict[str, Any] = {}
    parameters: Dict[str, Any] = {}

    def secure(name: str, value: str) -> str:
        parameters_def[name] = {"type": "secureString"}
        parameters[name] = {"value": value}
        return f"[parameters('{name}')]"

    ports = [{"port": p.port, "protocol": p.protocol.upper()} for p in spec.ports]

    container_properties: Dict[str, Any] = {
        "image": spec.image,
        "command": list(spec.command),
        "environmentVariables": [{"name": k, "value": v} for k, v in spec.env.items()],
        "ports": [{"port": p["port"]} for p in ports],
        "resources": {
            "requests": {
                "cpu": _cores(spec.cpu_request),
                "memoryInGB": _gigabytes(spec.memory_request),
            }
        },
        "volumeMounts": [],
    }

    volumes = []
    for volume in spec.volumes:
        if volume.kind != "azure_file":
            raise RemoteResourceError(f"Volume kind {volume.kind!r} is not supported on ACI")
        name = generate_name("volume", VOLUME_SUFFIX_LENGTH)
        container_properties["volumeMounts"].append(
            {"name": name, "mountPath": volume.mount_path, "readOnly": volume.read_only}
        )
        volumes.append({
            "name": name,
            "azureFile": {
                "shareName": volume.source,
                "storageAccountName": volume.storage_account,
                "storageAccountKey": secure(
                    f"storageKey{len(volumes)}", spec.volume_secrets.get(volume.mount_path, "")
                ),
                "readOnly": volume.read_only,
            },
        })

    group_properties: Dict[str, Any] = {
        "containers": [{"name": spec.name, "properties": container_properties}],
        "osType": spec.os_type,
        "restartPolicy": "Never",
        "ipAddress": {"type": "Public", "ports": ports},
        "imageRegistryCredentials": [
            {
                "server": cred.server,
                "username": cred.username,
                "password": secure(f"registryPassword{i}", cred.password),
            }
            for i, cred in enumerate(spec.registry_credentials)
        ],
        "volumes": volumes,
    }
    if not ports:
        group_properties.pop("ipAddress")
    if spec.log_workspace_id:
        group_properties["diagnostics"] = {
            "logAnalytics": {
                "workspaceId": spec.log_workspace_id,
                "workspaceKey": secure("workspaceKey", spec.log_workspace_key or ""),
                "logType": "ContainerInsights",
            }
        }

    template = {
        "$schema": "https://schema.management.azure.com/schemas/2015-01-01/deploymentTemplate.json#",
        "contentVersion": "1.0.0.0",
        "parameters": parameters_def,
        "resources": [{
            "type": "Microsoft.ContainerInstance/containerGroups",
            "apiVersion": CONTAINER_GROUPS_API_VERSION,
            "name": spec.name,
            "location": location or "[resourceGroup().location]",
            "tags": dict(spec.tags),
            "properties": group_properties,
        }],
    }
    return template, parameters


def container_group_status(group: Dict[str, Any]) -> RemoteStatus:
    properties = group.get("properties") or {}
    address = (properties.get("ipAddress") or {}).get("ip")

    if (properties.get("provisioningState") or "").lower() == "failed":
        return RemoteStatus(phase=RemotePhase.FAILED, address=address, message="provisioning failed")

    state = ((properties.get("instanceView") or {}).get("state") or "").lower()
    message = ""
    containers = properties.get("containers") or []
    if containers:
        current = ((containers[0].get("properties") or {}).get("instanceView") or {}).get("currentState") or {}
        message = current.get("detailStatus", "") or ""
        if not state:
            state = (current.get("state") or "").lower()

    phase = _INSTANCE_STATES.get(state, RemotePhase.PENDING if not state else RemotePhase.UNKNOWN)
    return RemoteStatus(phase=phase, address=address, message=message)


def _cores(value: str) -> float:
    if value.endswith("m"):
        return float(value[:-1]) / 1000
    return float(value)


_MEMORY = re.compile(r"^([0-9.]+)\s*(Gi|G|Mi|M)?$")


def _gigabytes(value: str) -> float:
    match = _MEMORY.match(value.strip())
    if match is None:
        raise RemoteResourceError(f"Unparseable memory request {value!r}")
    amount, unit = float(match.group(1)), match.group(2)
    if unit == "Mi":
        return round(amount / 1024, 2)
    if unit == "M":
        return round(amount / 1000, 2)
    return amount


def _parse_timestamp(value: str) -> datetime:
    # ARM sends 7 fractional digits; fromisoformat accepts at most 6
    value = value.replace("Z", "+00:00")
    value = re.sub(r"(\.\d{6})\d+", r"\1", value)
    return datetime.fromisoformat(value)
