"""
tests/test_reclamation.py
─────────────────────────
ReclamationTask sweeps and the ARM deployment registry.

Test groups:
    Group 1 — Leak sweep (8 tests)
    Group 2 — Sweep period and background loop (3 tests)
    Group 3 — DeploymentRegistry (7 tests)
    Group 4 — End-to-end scenario (1 test)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import bring_online, make_cloud
from containeragents.control_plane.provisioning_service import ProvisioningService
from containeragents.control_plane.resource_spec import ownership_tags
from containeragents.control_plane.scheduler_api import InMemoryScheduler
from containeragents.reclamation.cleanup_task import (
    ACI_SWEEP_PERIOD_S,
    KUBERNETES_SWEEP_PERIOD_S,
    ReclamationTask,
)
from containeragents.reclamation.deployments import DeploymentRegistry
from containeragents.remote.base import RemoteResourceError
from containeragents.remote.connection import CloudConnection
from containeragents.remote.credentials import CredentialNotFoundError
from containeragents.remote.memory import SimulatedRemoteClient
from containeragents.shared.models import CloudKind
from containeragents.telemetry import events as ev


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

class _FailingListClient(SimulatedRemoteClient):
    def list(self, tags):
        raise RemoteResourceError("list forbidden")


def _make_service(clock, remotes, clouds) -> ProvisioningService:
    scheduler = InMemoryScheduler(clouds=clouds, instance_id="inst-1", clock=clock)
    clock.on_sleep.append(bring_online(scheduler))
    return ProvisioningService(
        scheduler,
        client_factory=lambda cloud: remotes[cloud.name],
        clock=clock,
        wall_clock=clock,
        max_workers=4,
    )


@pytest.fixture
def service(clock, remote):
    svc = _make_service(clock, {"k8s": remote}, [make_cloud()])
    yield svc
    svc.shutdown()


def _leak(remote, name, instance_id="inst-1", cloud_name="k8s", template="t1"):
    remote.add_existing(name, ownership_tags(instance_id, cloud_name, template))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Leak sweep
# ─────────────────────────────────────────────────────────────────────────────

class TestSweep:

    def test_deletes_only_leaked_resources(self, service, remote):
        live = service.provision("k8s", "linux")[0].result(timeout=10)
        _leak(remote, "t1-leak1")

        (report,) = ReclamationTask(service).sweep()

        assert report.leaked == ["t1-leak1"]
        assert report.deleted == ["t1-leak1"]
        assert report.live == [live.agent_name]
        assert remote.resource_names == [live.agent_name]
        assert service.events.counts()[ev.RECLAIMED] == 1

    def test_sweep_is_idempotent(self, service, remote):
        _leak(remote, "t1-leak1")
        task = ReclamationTask(service)
        task.sweep()
        deletes_after_first = len(remote.delete_calls)

        (report,) = task.sweep()

        assert report.leaked == []
        assert len(remote.delete_calls) == deletes_after_first
        assert task.sweep_count == 2

    def test_other_instances_are_left_alone(self, service, remote):
        _leak(remote, "t1-other", instance_id="someone-else")
        _leak(remote, "t1-othercloud", cloud_name="elsewhere")

        (report,) = ReclamationTask(service).sweep()

        assert report.listed == []
        assert remote.resource_names == ["t1-other", "t1-othercloud"]

    def test_failed_delete_is_reported(self, service, remote):
        _leak(remote, "t1-leak1")
        remote.delete_error = RemoteResourceError("forbidden")

        (report,) = ReclamationTask(service).sweep()

        assert report.failed == ["t1-leak1"]
        assert report.deleted == []
        assert ev.RECLAIMED not in service.events.counts()

    def test_one_cloud_failing_does_not_stop_the_sweep(self, clock):
        healthy = SimulatedRemoteClient()
        _leak(healthy, "t1-leak1", cloud_name="good")
        clouds = [make_cloud("bad"), make_cloud("good")]
        svc = _make_service(clock, {"bad": _FailingListClient(), "good": healthy}, clouds)
        try:
            bad, good = ReclamationTask(svc).sweep()
        finally:
            svc.shutdown()

        assert bad.error == "list forbidden"
        assert good.deleted == ["t1-leak1"]

    def test_cloud_without_client_does_not_stop_the_sweep(self, clock):
        healthy = SimulatedRemoteClient()
        _leak(healthy, "t1-leak1", cloud_name="good")

        def factory(cloud):
            if cloud.name == "bad":
                raise CredentialNotFoundError("No credential with id 'nope'")
            return healthy

        clouds = [make_cloud("bad", CloudKind.ACI), make_cloud("good")]
        scheduler = InMemoryScheduler(clouds=clouds, instance_id="inst-1", clock=clock)
        svc = ProvisioningService(scheduler, client_factory=factory, clock=clock, wall_clock=clock)
        svc.breaker("good").failure("removed-template")
        task = ReclamationTask(svc)
        try:
            bad, good = task.sweep()
        finally:
            svc.shutdown()

        assert "nope" in bad.error
        assert good.deleted == ["t1-leak1"]
        assert healthy.resource_names == []
        assert svc.breaker("good").get_record("removed-template") is None
        assert task.sweep_count == 1

    def test_clouds_with_similar_names_keep_their_resources(self, clock):
        shared = SimulatedRemoteClient()
        clouds = [make_cloud("Build Cloud"), make_cloud("build_cloud")]
        svc = _make_service(clock, {"Build Cloud": shared, "build_cloud": shared}, clouds)
        try:
            live = svc.provision("build_cloud", "linux")[0].result(timeout=10)
            first, second = ReclamationTask(svc).sweep()
        finally:
            svc.shutdown()

        assert live.ok
        assert first.listed == []
        assert second.live == [live.agent_name]
        assert shared.resource_names == [live.agent_name]

    def test_prunes_backoff_of_removed_templates(self, service):
        service.breaker("k8s").failure("renamed-template")
        service.breaker("k8s").failure("t1")

        ReclamationTask(service).sweep()

        assert service.breaker("k8s").get_record("renamed-template") is None
        assert service.breaker("k8s").get_record("t1") is not None


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Period and loop
# ─────────────────────────────────────────────────────────────────────────────

class TestSchedule:

    def test_kubernetes_period(self, service):
        assert ReclamationTask(service).period_s == KUBERNETES_SWEEP_PERIOD_S

    def test_aci_only_period(self, clock, remote):
        svc = _make_service(clock, {"aci": remote}, [make_cloud("aci", CloudKind.ACI)])
        try:
            assert ReclamationTask(svc).period_s == ACI_SWEEP_PERIOD_S
        finally:
            svc.shutdown()

    def test_start_and_stop(self, service):
        task = ReclamationTask(service, period_s=3600)
        with task:
            assert task._thread is not None and task._thread.is_alive()
        assert task._thread is None
        assert task.sweep_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — DeploymentRegistry
# ─────────────────────────────────────────────────────────────────────────────

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def aci_remote() -> SimulatedRemoteClient:
    return SimulatedRemoteClient(deployments=True)


@pytest.fixture
def aci_connection(aci_remote) -> CloudConnection:
    return CloudConnection(make_cloud("aci", CloudKind.ACI), lambda cloud: aci_remote)


class TestDeploymentRegistry:

    def _registry(self, *names) -> DeploymentRegistry:
        registry = DeploymentRegistry()
        for name in names:
            registry.register("aci", "rg", name)
        return registry

    def test_old_succeeded_deployment_deleted(self, aci_remote, aci_connection):
        aci_remote.add_deployment("d-old", "Succeeded", NOW - timedelta(hours=2))
        aci_remote.add_deployment("d-new", "Succeeded", NOW - timedelta(minutes=10))
        registry = self._registry("d-old", "d-new")

        deleted = registry.sweep(lambda name: aci_connection, now=NOW)

        assert deleted == ["d-old"]
        assert [r.deployment_name for r in registry.records()] == ["d-new"]

    def test_failed_deployment_kept_for_diagnosis(self, aci_remote, aci_connection):
        aci_remote.add_deployment("d-recent", "Failed", NOW - timedelta(hours=2))
        aci_remote.add_deployment("d-ancient", "Failed", NOW - timedelta(hours=9))
        registry = self._registry("d-recent", "d-ancient")

        deleted = registry.sweep(lambda name: aci_connection, now=NOW)

        assert deleted == ["d-ancient"]
        assert len(registry) == 1

    def test_missing_deployment_forgotten(self, aci_connection):
        registry = self._registry("d-gone")

        assert registry.sweep(lambda name: aci_connection, now=NOW) == []
        assert len(registry) == 0

    def test_removed_cloud_forgotten(self):
        registry = self._registry("d1")

        registry.sweep(lambda name: None, now=NOW)

        assert len(registry) == 0

    def test_errors_retry_a_bounded_number_of_times(self, aci_connection):
        aci_connection.close()
        registry = self._registry("d1")

        for expected in (2, 1, 0):
            registry.sweep(lambda name: aci_connection, now=NOW)
            assert registry.records()[0].attempts_remaining == expected
        registry.sweep(lambda name: aci_connection, now=NOW)

        assert len(registry) == 0

    def test_persisted_records_survive_restart(self, tmp_path):
        path = tmp_path / "deployments.json"
        DeploymentRegistry(path).register("aci", "rg", "d1")

        reloaded = DeploymentRegistry(path)

        assert [r.deployment_name for r in reloaded.records()] == ["d1"]

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "deployments.json"
        path.write_text("{not json")

        assert len(DeploymentRegistry(path)) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 4 — End-to-end scenario
# ─────────────────────────────────────────────────────────────────────────────

class TestScenario:

    def test_three_resources_two_live_one_delete(self, service, remote):
        results = [f.result(timeout=10) for f in service.provision("k8s", "linux", 2)]
        assert all(r.ok for r in results)
        _leak(remote, "t1-orphan")
        deletes_before = list(remote.delete_calls)

        (report,) = ReclamationTask(service).sweep()

        assert len(report.listed) == 3
        assert remote.delete_calls[len(deletes_before):] == ["t1-orphan"]
