"""Tests for the GCP Compute Engine provider."""

import uuid
from unittest.mock import patch, MagicMock
import pytest

from google.api_core import exceptions as gcp_exceptions

from remote.base.config import GCPConfig
from remote.base.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderInvalidStateError,
    ProviderNotFoundError,
    ProviderUnavailableError,
)
from remote.base.models import InstanceStatus, ProviderKind
from remote.gcp.provider import GcpProvider, _build_clients

from tests.conftest import make_config


def _config(name: str | None = "web", profile: str = "my-project", **kwargs):
    return make_config(
        alias="web", instance_id=name, provider_kind=ProviderKind.GCP, profile=profile,
        instance_type="e2-micro", **kwargs,
    )


def _op(name: str = "op-123") -> MagicMock:
    op = MagicMock()
    op.name = name
    return op


def _instance(status: str = "RUNNING", nat_ip: str | None = "35.1.2.3") -> MagicMock:
    inst = MagicMock()
    inst.name = "web"
    inst.status = status
    inst.machine_type = "zones/us-central1-a/machineTypes/e2-micro"
    inst.creation_timestamp = "2024-01-01"
    inst.labels = {"team": "infra"}
    access = MagicMock()
    access.nat_i_p = nat_ip
    iface = MagicMock()
    iface.network_i_p = "10.0.0.1"
    iface.access_configs = [access]
    inst.network_interfaces = [iface]
    return inst


@pytest.fixture
def svc():
    with (
        patch("remote.gcp.provider.compute_v1.InstancesClient") as MockInstances,
        patch("remote.gcp.provider.compute_v1.ZoneOperationsClient") as MockOps,
    ):
        yield GcpProvider(), MockInstances.return_value, MockOps.return_value


# --- clients ---

class TestClients:
    def test_project_and_zone_from_profile(self, svc):
        provider, _, _ = svc
        clients = provider.clients("my-project/europe-west1-b")
        assert clients.project_id == "my-project"
        assert clients.zone == "europe-west1-b"

    def test_missing_project_is_auth_error(self, svc, monkeypatch):
        provider, _, _ = svc
        monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
        monkeypatch.delenv("GCLOUD_PROJECT", raising=False)
        with pytest.raises(ProviderAuthError, match="project_id"):
            provider.clients("default")

    def test_client_builder_rejects_missing_project(self):
        config = GCPConfig.model_construct(project_id=None, zone="us-central1-a", credentials=None)
        with pytest.raises(ProviderAuthError, match="No GCP project"):
            _build_clients(config)


# --- describe ---

class TestDescribe:
    def test_running(self, svc):
        provider, client, _ = svc
        client.get.return_value = _instance()
        observed = provider.describe(_config())
        assert observed.status is InstanceStatus.RUNNING
        assert observed.instance_type == "e2-micro"
        assert observed.public_address == "35.1.2.3"
        assert observed.private_address == "10.0.0.1"
        assert client.get.call_args.kwargs["instance"] == "web"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("PROVISIONING", InstanceStatus.STARTING),
            ("STAGING", InstanceStatus.STARTING),
            ("STOPPING", InstanceStatus.STOPPING),
            ("SUSPENDED", InstanceStatus.STOPPED),
            # GCE calls a stopped VM TERMINATED
            ("TERMINATED", InstanceStatus.STOPPED),
        ],
    )
    def test_state_mapping(self, svc, raw, expected):
        provider, client, _ = svc
        client.get.return_value = _instance(status=raw, nat_ip=None)
        assert provider.describe(_config()).status is expected

    def test_not_found(self, svc):
        provider, client, _ = svc
        client.get.side_effect = gcp_exceptions.NotFound("nope")
        with pytest.raises(ProviderNotFoundError):
            provider.describe(_config())

    def test_permission_denied(self, svc):
        provider, client, _ = svc
        client.get.side_effect = gcp_exceptions.PermissionDenied("no")
        with pytest.raises(ProviderAuthError):
            provider.describe(_config())

    def test_unavailable_is_retried(self, svc):
        provider, client, _ = svc
        client.get.side_effect = [gcp_exceptions.ServiceUnavailable("later"), _instance()]
        with patch("remote.base.retry.time.sleep"):
            assert provider.describe(_config()).status is InstanceStatus.RUNNING
        assert client.get.call_count == 2

    def test_unavailable_exhausted(self, svc):
        provider, client, _ = svc
        client.get.side_effect = gcp_exceptions.ServiceUnavailable("later")
        with patch("remote.base.retry.time.sleep"):
            with pytest.raises(ProviderUnavailableError):
                provider.describe(_config())


# --- start / stop / resize / terminate ---

class TestLifecycle:
    def test_start(self, svc):
        provider, client, ops = svc
        client.start.return_value = _op()
        provider.start(_config())
        client.start.assert_called_once_with(project="my-project", zone="us-central1-a", instance="web")
        ops.wait.assert_called_once_with(project="my-project", zone="us-central1-a", operation="op-123")

    def test_stop(self, svc):
        provider, client, ops = svc
        client.stop.return_value = _op()
        provider.stop(_config())
        client.stop.assert_called_once()
        ops.wait.assert_called_once()

    def test_terminate(self, svc):
        provider, client, ops = svc
        client.delete.return_value = _op()
        provider.terminate(_config())
        client.delete.assert_called_once()

    def test_start_not_found(self, svc):
        provider, client, _ = svc
        client.start.side_effect = gcp_exceptions.NotFound("nope")
        with pytest.raises(ProviderNotFoundError):
            provider.start(_config())

    def test_failed_precondition_is_invalid_state(self, svc):
        provider, client, _ = svc
        client.stop.side_effect = gcp_exceptions.FailedPrecondition("busy")
        with pytest.raises(ProviderInvalidStateError):
            provider.stop(_config())

    def test_resize_stopped(self, svc):
        provider, client, ops = svc
        client.get.return_value = _instance(status="TERMINATED", nat_ip=None)
        client.set_machine_type.return_value = _op()
        provider.resize(_config(), "e2-standard-4")
        request = client.set_machine_type.call_args.kwargs[
            "instances_set_machine_type_request_resource"
        ]
        assert request.machine_type == "zones/us-central1-a/machineTypes/e2-standard-4"
        ops.wait.assert_called_once()

    def test_resize_running_refused(self, svc):
        provider, client, _ = svc
        client.get.return_value = _instance(status="RUNNING")
        with pytest.raises(ProviderInvalidStateError, match="RUNNING"):
            provider.resize(_config(), "e2-standard-4")
        client.set_machine_type.assert_not_called()

    def test_resize_unavailable_is_retried_once_per_attempt(self, svc):
        provider, client, _ = svc
        client.get.side_effect = gcp_exceptions.ServiceUnavailable("later")
        with patch("remote.base.retry.time.sleep"):
            with pytest.raises(ProviderUnavailableError):
                provider.resize(_config(), "e2-standard-4")
        assert client.get.call_count == 3
        client.set_machine_type.assert_not_called()

    def test_unprovisioned(self, svc):
        provider, client, _ = svc
        with pytest.raises(ProviderNotFoundError):
            provider.start(_config(name=None))
        client.start.assert_not_called()


# --- list_available ---

class TestListAvailable:
    def test_success(self, svc):
        provider, client, _ = svc
        client.list.return_value = [_instance()]
        found = list(provider.list_available("my-project"))
        assert len(found) == 1
        assert found[0].instance_id == "web"
        assert found[0].raw_state == "RUNNING"
        assert found[0].instance_type == "e2-micro"
        assert found[0].tags == {"team": "infra"}

    def test_empty(self, svc):
        provider, client, _ = svc
        client.list.return_value = []
        assert list(provider.list_available("my-project")) == []


# --- create ---

class TestCreate:
    def test_success(self, svc):
        provider, client, ops = svc
        client.insert.return_value = _op()
        name = provider.create(
            _config(name=None), "projects/debian-cloud/global/images/family/debian-12"
        )
        assert name == "web"
        request = client.insert.call_args.kwargs["request"]
        assert request.project == "my-project"
        assert request.zone == "us-central1-a"
        assert uuid.UUID(request.request_id)
        resource = request.instance_resource
        assert resource.name == "web"
        assert resource.machine_type == "zones/us-central1-a/machineTypes/e2-micro"
        ops.wait.assert_called_once()

    def test_already_exists(self, svc):
        provider, client, _ = svc
        client.insert.side_effect = gcp_exceptions.AlreadyExists("exists")
        with pytest.raises(ProviderInvalidStateError, match="already exists"):
            provider.create(_config(name=None), "img")

    def test_generic_error(self, svc):
        provider, client, _ = svc
        client.insert.side_effect = gcp_exceptions.BadRequest("bad image")
        with pytest.raises(ProviderError):
            provider.create(_config(name=None), "img")

    def test_retried_insert_reuses_request_id(self, svc):
        provider, client, ops = svc
        client.insert.side_effect = [gcp_exceptions.ServiceUnavailable("later"), _op()]
        with patch("remote.base.retry.time.sleep"):
            assert provider.create(_config(name=None), "img") == "web"
        ids = [c.kwargs["request"].request_id for c in client.insert.call_args_list]
        assert len(ids) == 2
        assert ids[0] == ids[1]
        ops.wait.assert_called_once()

    def test_each_create_gets_its_own_request_id(self, svc):
        provider, client, _ = svc
        client.insert.return_value = _op()
        provider.create(_config(name=None), "img")
        provider.create(_config(name=None), "img")
        first, second = (c.kwargs["request"].request_id for c in client.insert.call_args_list)
        assert first != second

    def test_failed_wait_is_mapped(self, svc):
        provider, client, ops = svc
        client.insert.return_value = _op()
        ops.wait.side_effect = gcp_exceptions.PermissionDenied("no")
        with pytest.raises(ProviderAuthError, match="waiting"):
            provider.create(_config(name=None), "img")
