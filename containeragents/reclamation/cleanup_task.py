"""
containeragents/reclamation/cleanup_task.py
───────────────────────────────────────────
ReclamationTask: periodic garbage collection of leaked remote resources.

A resource leaks when its agent is gone but the pod / container group is
not: the process restarted mid-provisioning, a teardown delete failed, an
operator removed the node by hand. Each sweep, per configured cloud:

  1. list every remote resource tagged with this instance and this cloud
  2. subtract the live set (names of agents the scheduler still knows,
     including agents still being provisioned)
  3. delete the remainder concurrently, waiting for all deletes
  4. record a Reclaimed event per deleted resource

then prune circuit-breaker records of templates that no longer exist and
sweep the ARM deployment registry.

A failure on one cloud (or one delete) is logged and the sweep moves on.
Sweeps are idempotent: a second sweep with nothing leaked deletes nothing.

Period
──────
KUBERNETES_SWEEP_PERIOD_S if any Kubernetes cloud is configured, else
ACI_SWEEP_PERIOD_S. The background thread waits on an Event so stop()
returns promptly.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import wait
from typing import List, Optional

from containeragents.control_plane.resource_spec import instance_selector
from containeragents.remote.base import RemoteResourceError
from containeragents.remote.connection import ConnectionClosedError
from containeragents.shared.models import CloudConfig, CloudKind, SweepReport
from containeragents.telemetry import events as ev

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

KUBERNETES_SWEEP_PERIOD_S: float = 15 * 60.0
"""Sweep period when at least one Kubernetes cloud is configured."""

ACI_SWEEP_PERIOD_S: float = 30 * 60.0


class ReclamationTask:
    """
    Leak sweeper bound to one ProvisioningService.

    Args:
        service:   The ProvisioningService whose scheduler, connections,
                   breakers, event log and deployment registry are swept.
        period_s:  Fixed sweep period. Derived from the cloud kinds if omitted.
    """

    def __init__(self, service, period_s: Optional[float] = None) -> None:
        self._service = service
        self._period_s = period_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()
        self.sweep_count = 0

    @property
    def period_s(self) -> float:
        if self._period_s is not None:
            return self._period_s
        kinds = {c.kind for c in self._service.clouds()}
        if CloudKind.KUBERNETES in kinds or not kinds:
            return KUBERNETES_SWEEP_PERIOD_S
        return ACI_SWEEP_PERIOD_S

    # ── Sweep ─────────────────────────────────────────────────────────────────

    def sweep(self) -> List[SweepReport]:
        """One reclamation pass over every configured cloud."""
        with self._sweep_lock:
            reports = [self._sweep_cloud(cloud) for cloud in self._service.clouds()]

            for cloud in self._service.clouds():
                pruned = self._service.breaker(cloud.name).prune(cloud.template_names)
                if pruned:
                    logger.info("Pruned %d stale backoff record(s) on cloud %s", pruned, cloud.name)

            deleted = self._service.deployments.sweep(self._service.existing_connection)
            if deleted:
                logger.info("Deleted %d deployment record(s): %s", len(deleted), ", ".join(deleted))

            self.sweep_count += 1
        return reports

    def _sweep_cloud(self, cloud: CloudConfig) -> SweepReport:
        report = SweepReport(cloud_name=cloud.name)
        scheduler = self._service.scheduler
        selector = instance_selector(scheduler.instance_id, cloud.name)
        connection = self._service.connection(cloud)

        try:
            with connection.lease() as client:
                report.listed = client.list(selector)

                live = set()
                for agent in scheduler.list_agents():
                    if agent.cloud_name == cloud.name:
                        live.add(agent.name)
                        if agent.resource_id:
                            live.add(agent.resource_id)
                report.live = sorted(live.intersection(report.listed))
                report.leaked = [name for name in report.listed if name not in live]
                if not report.leaked:
                    logger.debug("Cloud %s: %d resource(s), none leaked", cloud.name, len(report.listed))
                    return report

                logger.info(
                    "Cloud %s: reclaiming %d leaked resource(s): %s",
                    cloud.name, len(report.leaked), ", ".join(report.leaked),
                )
                futures = {
                    self._service.executor.submit(client.delete, name): name
                    for name in report.leaked
                }
                wait(futures)
        except (RemoteResourceError, ConnectionClosedError) as e:
            logger.warning("Reclamation of cloud %s failed: %s", cloud.name, e.reason)
            report.error = e.reason
            return report
        except Exception as e:
            logger.exception("Reclamation of cloud %s failed", cloud.name)
            report.error = f"{e.__class__.__name__}: {e}"
            return report

        for future, name in futures.items():
            try:
                deleted = future.result()
            except Exception as e:
                logger.warning("Deleting leaked resource %s failed: %s", name, e)
                deleted = False
            if deleted:
                report.deleted.append(name)
                self._service.events.record(ev.RECLAIMED, cloud.name, name)
            else:
                report.failed.append(name)
        return report

    # ── Background loop ───────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reclamation", daemon=True)
        self._thread.start()
        logger.info("Reclamation task started (period %.0fs)", self.period_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reclamation task stopped after %d sweep(s)", self.sweep_count)

    def _run(self) -> None:
        while not self._stop_event.wait(self.period_s):
            try:
                self.sweep()
            except Exception:
                logger.exception("Reclamation sweep failed")

    def __enter__(self) -> "ReclamationTask":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"ReclamationTask(period_s={self.period_s:.0f}, sweeps={self.sweep_count})"
