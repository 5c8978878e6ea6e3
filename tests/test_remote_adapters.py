"""
tests/test_remote_adapters.py
─────────────────────────────
REST session retries and the Kubernetes / ACI adapters, with a mocked
requests.Session underneath.

Test groups:
    Group 1 — RestSession (5 tests)
    Group 2 — KubernetesPodClient (11 tests)
    Group 3 — AciContainerGroupClient (8 tests)
    Group 4 — ArmTokenProvider (2 tests)
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from containeragents.remote.aci import (
    AciContainerGroupClient,
    ArmTokenProvider,
    _cores,
    _gigabytes,
    _parse_timestamp,
    build_deployment_template,
    container_group_status,
)
from containeragents.remote.base import RemoteConnectionError, RemoteResourceError
from containeragents.remote.http import RestSession
from containeragents.remote.kubernetes import (
    REGISTRY_SECRET_ANNOTATION,
    KubernetesPodClient,
    build_pod_manifest,
    pod_status,
)
from containeragents.shared.models import (
    Credential,
    PortMapping,
    RegistryCredential,
    RemotePhase,
    ResourceSpec,
)


def _response(status: int = 200, body=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {}
    response.text = text
    return response


def _spec(**overrides) -> ResourceSpec:
    values = dict(
        name="t1-abcde",
        image="example/agent:latest",
        command=["agent", "-name", "t1-abcde"],
        env={"A": "1"},
        tags={"app": "container-agent"},
    )
    values.update(overrides)
    return ResourceSpec(**values)


@pytest.fixture
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def http(session, sleeps) -> RestSession:
    return RestSession("https://api.example", token_provider=lambda: "tok", session=session, sleep=sleeps.append)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — RestSession
# ─────────────────────────────────────────────────────────────────────────────

class TestRestSession:

    def test_retries_transient_status(self, http, session, sleeps):
        session.request.side_effect = [_response(503), _response(429), _response(200, {"ok": True})]

        response = http.request("GET", "/x")

        assert response.json() == {"ok": True}
        assert sleeps == [0.5, 1.0]

    def test_connection_errors_exhaust_retries(self, http, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(RemoteConnectionError):
            http.request("GET", "/x")
        assert session.request.call_count == 4

    def test_missing_allowed(self, http, session):
        session.request.return_value = _response(404)
        assert http.request("GET", "/x", allow_missing=True) is None

    def test_client_error_raises(self, http, session):
        session.request.return_value = _response(403, text="forbidden")
        with pytest.raises(RemoteResourceError) as exc:
            http.request("GET", "/x")
        assert "403" in exc.value.reason

    def test_bearer_token_and_url(self, http, session):
        session.request.return_value = _response(200)

        http.request("GET", "/api/v1/pods", params={"a": "b"})

        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.example/api/v1/pods")
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["params"] == {"a": "b"}


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Kubernetes
# ─────────────────────────────────────────────────────────────────────────────

class TestKubernetes:

    def test_create_posts_pod(self, http, session):
        session.request.return_value = _response(201)
        client = KubernetesPodClient(http, "builds")

        assert client.create(_spec()) == "t1-abcde"

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.example/api/v1/namespaces/builds/pods")
        assert kwargs["json"]["metadata"]["name"] == "t1-abcde"
        assert kwargs["json"]["spec"]["restartPolicy"] == "Never"

    def test_create_with_registry_credentials_posts_secret_first(self, http, session):
        session.request.return_value = _response(201)
        client = KubernetesPodClient(http)
        spec = _spec(registry_credentials=[RegistryCredential(server="r.io", username="u", password="p")])

        client.create(spec)

        secret_call, pod_call = session.request.call_args_list
        secret = secret_call.kwargs["json"]
        assert secret["type"] == "kubernetes.io/dockerconfigjson"
        config = json.loads(base64.b64decode(secret["data"][".dockerconfigjson"]))
        assert config["auths"]["r.io"]["username"] == "u"
        assert pod_call.kwargs["json"]["spec"]["imagePullSecrets"] == [{"name": "t1-abcde-registry"}]

    def test_get_missing_pod(self, http, session):
        session.request.return_value = _response(404)
        assert KubernetesPodClient(http).get("gone") is None

    def test_delete_missing_pod(self, http, session):
        session.request.return_value = _response(404)
        assert KubernetesPodClient(http).delete("gone") is False

    def test_delete_removes_the_annotated_secret(self, http, session):
        deleted_pod = {"metadata": {"annotations": {REGISTRY_SECRET_ANNOTATION: "shared-pull"}}}
        session.request.side_effect = [_response(200, deleted_pod), _response(200)]

        assert KubernetesPodClient(http, "builds").delete("t1-abcde") is True

        secret_call = session.request.call_args_list[1]
        assert secret_call.args == ("DELETE", "https://api.example/api/v1/namespaces/builds/secrets/shared-pull")

    def test_secret_delete_failure_keeps_pod_result(self, http, session):
        deleted_pod = {"metadata": {"annotations": {REGISTRY_SECRET_ANNOTATION: "t1-abcde-registry"}}}
        session.request.side_effect = [_response(200, deleted_pod), _response(403, text="forbidden")]

        assert KubernetesPodClient(http).delete("t1-abcde") is True
        assert session.request.call_count == 2

    def test_delete_without_pull_secret_is_one_call(self, http, session):
        session.request.return_value = _response(200, {"metadata": {"name": "t1-abcde"}})

        assert KubernetesPodClient(http).delete("t1-abcde") is True
        assert session.request.call_count == 1

    def test_overridden_secret_name_is_recorded_on_the_pod(self, http, session):
        session.request.return_value = _response(201)
        spec = _spec(
            registry_credentials=[RegistryCredential(server="r.io", username="u", password="p")],
            registry_secret_name="shared-pull",
        )

        KubernetesPodClient(http).create(spec)

        pod = session.request.call_args_list[1].kwargs["json"]
        assert pod["spec"]["imagePullSecrets"] == [{"name": "shared-pull"}]
        assert pod["metadata"]["annotations"] == {REGISTRY_SECRET_ANNOTATION: "shared-pull"}

    def test_list_uses_label_selector(self, http, session):
        session.request.return_value = _response(200, {"items": [{"metadata": {"name": "p1"}}]})

        names = KubernetesPodClient(http).list({"b": "2", "a": "1"})

        assert names == ["p1"]
        assert session.request.call_args.kwargs["params"] == {"labelSelector": "a=1,b=2"}

    def test_pending_pod_with_image_pull_failure_is_failed(self):
        pod = {"status": {
            "phase": "Pending",
            "containerStatuses": [{"state": {"waiting": {"reason": "ErrImagePull", "message": "not found"}}}],
        }}
        status = pod_status(pod)
        assert status.phase == RemotePhase.FAILED
        assert status.message.startswith("ErrImagePull")

    def test_manifest_limits_and_ports(self):
        manifest = build_pod_manifest(
            _spec(cpu_limit="2", memory_limit="4Gi", ports=[PortMapping(port=22)]), "default"
        )
        container = manifest["spec"]["containers"][0]
        assert container["resources"]["limits"] == {"cpu": "2", "memory": "4Gi"}
        assert container["ports"] == [{"containerPort": 22, "protocol": "TCP"}]
        assert manifest["spec"]["nodeSelector"] == {"kubernetes.io/os": "linux"}


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — ACI
# ─────────────────────────────────────────────────────────────────────────────

def _aci(http) -> AciContainerGroupClient:
    return AciContainerGroupClient(http, "sub", "rg", "westeurope")


class TestAci:

    def test_create_puts_deployment(self, http, session):
        session.request.return_value = _response(201)

        assert _aci(http).create(_spec(deployment_name="t1-deploy01")) == "t1-abcde"

        args, kwargs = session.request.call_args
        assert args[0] == "PUT"
        assert args[1].endswith("/resourceGroups/rg/providers/Microsoft.Resources/deployments/t1-deploy01")
        assert kwargs["params"] == {"api-version": "2021-04-01"}

    def test_get_falls_back_to_failed_deployment(self, http, session):
        client = _aci(http)
        session.request.return_value = _response(201)
        client.create(_spec(deployment_name="t1-deploy01"))
        session.request.side_effect = [
            _response(404),
            _response(200, {"properties": {"provisioningState": "Failed"}}),
        ]

        assert client.get("t1-abcde").phase == RemotePhase.FAILED

    def test_get_unknown_group_is_missing(self, http, session):
        session.request.return_value = _response(404)
        assert _aci(http).get("t1-abcde") is None

    def test_list_filters_tags_and_follows_next_link(self, http, session):
        session.request.side_effect = [
            _response(200, {"value": [
                {"name": "g1", "tags": {"app": "container-agent"}},
                {"name": "g2", "tags": {"app": "other"}},
            ], "nextLink": "https://api.example/next"}),
            _response(200, {"value": [{"name": "g3", "tags": {"app": "Container-Agent"}}]}),
        ]

        assert _aci(http).list({"app": "container-agent"}) == ["g1", "g3"]

    def test_secrets_travel_as_secure_parameters(self):
        spec = _spec(
            registry_credentials=[RegistryCredential(server="r.io", username="u", password="hunter2")],
            log_workspace_id="ws",
            log_workspace_key="key",
        )

        template, parameters = build_deployment_template(spec)

        assert "hunter2" not in json.dumps(template)
        assert parameters["registryPassword0"] == {"value": "hunter2"}
        assert template["parameters"]["workspaceKey"] == {"type": "secureString"}

    def test_container_group_status(self):
        group = {"properties": {"ipAddress": {"ip": "1.2.3.4"}, "instanceView": {"state": "Running"}}}
        status = container_group_status(group)
        assert status.phase == RemotePhase.RUNNING
        assert status.address == "1.2.3.4"

    def test_resource_units(self):
        assert _cores("500m") == 0.5
        assert _cores("2") == 2.0
        assert _gigabytes("512Mi") == 0.5
        assert _gigabytes("4Gi") == 4.0

    def test_arm_timestamp_with_seven_fractional_digits(self):
        parsed = _parse_timestamp("2024-01-01T12:00:00.1234567Z")
        assert parsed == datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4 — ARM tokens
# ─────────────────────────────────────────────────────────────────────────────

class TestArmToken:

    def test_credential_without_tenant_is_a_bearer_token(self):
        provider = ArmTokenProvider(Credential(credential_id="c", secret="raw"), session=MagicMock())
        assert provider() == "raw"

    def test_token_is_cached_until_near_expiry(self, clock):
        session = MagicMock()
        session.post.return_value = _response(200, {"access_token": "a1", "expires_in": 3600})
        provider = ArmTokenProvider(
            Credential(credential_id="c", username="id", secret="s", tenant_id="t"),
            session=session,
            clock=clock,
        )

        assert provider() == "a1"
        assert provider() == "a1"
        assert session.post.call_count == 1

        clock.advance(3400)
        provider()
        assert session.post.call_count == 2
