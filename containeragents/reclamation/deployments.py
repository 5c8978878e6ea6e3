"""
containeragents/reclamation/deployments.py
──────────────────────────────────────────
DeploymentRegistry: ARM deployment records waiting to be tidied up.

Every ACI agent leaves an ARM deployment record behind. A resource group
holds a limited number of them, so they must be deleted eventually, but a
failed deployment is the operator's best diagnostic and should survive for a
while. The provisioner registers each deployment name at creation time and
the reclamation task sweeps the registry:

    Succeeded and older than SUCCEEDED_DEPLOYMENT_TTL_S  → delete, forget
    any other state, older than FAILED_DEPLOYMENT_TTL_S  → delete, forget
    deployment not found                                 → forget
    otherwise                                            → keep for next sweep
    lookup/delete raised                                 → retry on the next
                                                           sweep, at most
                                                           MAX_DELETE_ATTEMPTS

With a `path`, the registry is mirrored to a JSON file so a restarted process
still cleans up deployments created before the restart.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from containeragents.remote.base import RemoteResourceError
from containeragents.remote.connection import CloudConnection, ConnectionClosedError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

SUCCEEDED_DEPLOYMENT_TTL_S: float = 60 * 60.0
FAILED_DEPLOYMENT_TTL_S: float = 8 * 60 * 60.0
MAX_DELETE_ATTEMPTS: int = 3


class DeploymentRecord(BaseModel):
    cloud_name: str
    resource_group: str
    deployment_name: str
    attempts_remaining: int = MAX_DELETE_ATTEMPTS
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeploymentRegistry:
    """
    Thread-safe queue of deployment records.

    Args:
        path: Optional JSON file the registry is loaded from and saved to.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._records: List[DeploymentRecord] = []
        self._lock = threading.Lock()
        self._load()

    def register(self, cloud_name: str, resource_group: str, deployment_name: str) -> None:
        logger.info("Registering deployment %s in %s for cleanup", deployment_name, resource_group)
        with self._lock:
            self._records.append(DeploymentRecord(
                cloud_name=cloud_name,
                resource_group=resource_group,
                deployment_name=deployment_name,
            ))
        self._save()

    def records(self) -> List[DeploymentRecord]:
        with self._lock:
            return [r.model_copy() for r in self._records]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def sweep(
        self,
        connection_for: Callable[[str], Optional[CloudConnection]],
        now: Optional[datetime] = None,
        succeeded_ttl_s: float = SUCCEEDED_DEPLOYMENT_TTL_S,
        failed_ttl_s: float = FAILED_DEPLOYMENT_TTL_S,
    ) -> List[str]:
        """
        One cleanup pass over every registered deployment.

        Args:
            connection_for: Cloud name → CloudConnection, or None if the cloud
                            no longer exists (its records are dropped).
            now:            Evaluation time (aware datetime). Defaults to now.

        Returns:
            Names of the deployments deleted in this pass.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            pending, self._records = self._records, []

        keep: List[DeploymentRecord] = []
        deleted: List[str] = []
        for record in pending:
            connection = connection_for(record.cloud_name)
            if connection is None:
                logger.info(
                    "Cloud %s is gone; forgetting deployment %s",
                    record.cloud_name, record.deployment_name,
                )
                continue
            try:
                outcome = self._check(connection, record, now, succeeded_ttl_s, failed_ttl_s)
            except (RemoteResourceError, ConnectionClosedError) as e:
                logger.warning(
                    "Failed to get/delete deployment %s: %s", record.deployment_name, e.reason
                )
                if record.attempts_remaining > 0:
                    record.attempts_remaining -= 1
                    keep.append(record)
                continue
            if outcome == "deleted":
                deleted.append(record.deployment_name)
            elif outcome == "keep":
                keep.append(record)

        with self._lock:
            # records registered while we were sweeping go after the survivors
            self._records = keep + self._records
        self._save()
        return deleted

    @staticmethod
    def _check(
        connection: CloudConnection,
        record: DeploymentRecord,
        now: datetime,
        succeeded_ttl_s: float,
        failed_ttl_s: float,
    ) -> str:
        with connection.lease() as client:
            deployment = client.get_deployment(record.deployment_name)
            if deployment is None:
                logger.debug("Deployment %s not found, skipping", record.deployment_name)
                return "gone"

            created = deployment.timestamp or record.registered_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            age_s = (now - created).total_seconds()

            if deployment.succeeded and age_s > succeeded_ttl_s:
                logger.info("Succeeded deployment %s older than %.0fs, deleting",
                            record.deployment_name, succeeded_ttl_s)
                client.delete_deployment(record.deployment_name)
                return "deleted"
            if not deployment.succeeded and age_s > failed_ttl_s:
                logger.info("%s deployment %s older than %.0fs, deleting",
                            deployment.provisioning_state, record.deployment_name, failed_ttl_s)
                client.delete_deployment(record.deployment_name)
                return "deleted"
        return "keep"

    # ── Persistence ───────────────────────────────────────────────────────────

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
            self._records = [DeploymentRecord.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Cannot load deployment registry %s: %s", self._path, e)

    def _save(self) -> None:
        if self._path is None:
            return
        with self._lock:
            payload = [r.model_dump(mode="json") for r in self._records]
        try:
            self._path.write_text(json.dumps(payload, indent=2))
        except OSError as e:
            logger.warning("Cannot write deployment registry %s: %s", self._path, e)
