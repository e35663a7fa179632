"""GCP Compute Engine implementation of the provider blueprint."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Any, NamedTuple, NoReturn

from google.api_core import exceptions as gcp_exceptions
from google.cloud import compute_v1

from remote.base.client_cache import ClientCache
from remote.base.config import GCPConfig
from remote.base.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderInvalidStateError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
)
from remote.base.models import (
    InstanceConfig,
    InstanceStatus,
    ObservedStatus,
    ProviderInstanceDescriptor,
    ProviderKind,
)
from remote.base.provider import ProviderBlueprint
from remote.base.retry import retry

# Order matters: subclasses before their bases.
_ERROR_MAP: tuple[tuple[type[Exception], type[ProviderError]], ...] = (
    (gcp_exceptions.NotFound, ProviderNotFoundError),
    (gcp_exceptions.Unauthenticated, ProviderAuthError),
    (gcp_exceptions.PermissionDenied, ProviderAuthError),
    (gcp_exceptions.TooManyRequests, RateLimitedError),
    (gcp_exceptions.ResourceExhausted, RateLimitedError),
    (gcp_exceptions.FailedPrecondition, ProviderInvalidStateError),
    (gcp_exceptions.Conflict, ProviderInvalidStateError),
    (gcp_exceptions.ServiceUnavailable, ProviderUnavailableError),
    (gcp_exceptions.InternalServerError, ProviderUnavailableError),
    (gcp_exceptions.DeadlineExceeded, ProviderUnavailableError),
)

# GCE reports a stopped VM as TERMINATED; a deleted one is simply gone.
_STATE_MAP: dict[str, InstanceStatus] = {
    "PROVISIONING": InstanceStatus.STARTING,
    "STAGING": InstanceStatus.STARTING,
    "REPAIRING": InstanceStatus.STARTING,
    "RUNNING": InstanceStatus.RUNNING,
    "STOPPING": InstanceStatus.STOPPING,
    "SUSPENDING": InstanceStatus.STOPPING,
    "STOPPED": InstanceStatus.STOPPED,
    "SUSPENDED": InstanceStatus.STOPPED,
    "TERMINATED": InstanceStatus.STOPPED,
}


def _handle(e: Exception, msg: str) -> NoReturn:
    for sdk_exc, exc in _ERROR_MAP:
        if isinstance(e, sdk_exc):
            raise exc(msg) from e
    raise ProviderError(msg) from e


class _Clients(NamedTuple):
    project_id: str
    zone: str
    instances: Any
    zone_ops: Any


def _build_clients(config: GCPConfig) -> _Clients:
    if not config.project_id:
        raise ProviderAuthError(
            "No GCP project configured; use a '<project>[/<zone>]' profile or set GOOGLE_CLOUD_PROJECT"
        )
    return _Clients(
        project_id=config.project_id,
        zone=config.zone,
        instances=compute_v1.InstancesClient(credentials=config.credentials),
        zone_ops=compute_v1.ZoneOperationsClient(credentials=config.credentials),
    )


def _machine_type(inst: Any) -> str:
    return inst.machine_type.split("/")[-1] if inst.machine_type else ""


def _public_address(inst: Any) -> str | None:
    for iface in inst.network_interfaces or []:
        for ac in iface.access_configs or []:
            if ac.nat_i_p:
                return ac.nat_i_p  # type: ignore[no-any-return]
    return None


class GcpProvider(ProviderBlueprint):
    """GCP Compute Engine provider.

    The registry profile names the project and, optionally, the zone:
    ``my-project`` or ``my-project/europe-west1-b``. The instance name is
    the provider instance ID.
    """

    kind = ProviderKind.GCP

    def clients(self, profile: str) -> _Clients:
        try:
            config = GCPConfig.from_profile(profile)
        except ValueError as e:
            raise ProviderAuthError(f"Invalid GCP profile '{profile}': {e}") from e
        return ClientCache().get_or_create(self.kind.value, config, _build_clients)  # type: ignore[no-any-return]

    def _wait(self, clients: _Clients, operation: Any) -> None:
        """Block until a zone operation completes."""
        clients.zone_ops.wait(
            project=clients.project_id,
            zone=clients.zone,
            operation=operation.name,
        )

    def _target(self, config: InstanceConfig) -> tuple[_Clients, str]:
        if config.provider_instance_id is None:
            raise ProviderNotFoundError(f"'{config.alias}' has no GCE instance name yet")
        return self.clients(config.profile), config.provider_instance_id

    @retry()
    def describe(self, config: InstanceConfig) -> ObservedStatus:
        """Describe one Compute Engine instance.

        Raises:
            ProviderNotFoundError: If the instance does not exist (or was deleted).
        """
        clients, name = self._target(config)
        return self._fetch(clients, name)

    def _fetch(self, clients: _Clients, name: str) -> ObservedStatus:
        try:
            inst = clients.instances.get(
                project=clients.project_id, zone=clients.zone, instance=name
            )
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to describe instance '{name}'")
        return ObservedStatus(
            status=_STATE_MAP.get(inst.status, InstanceStatus.UNKNOWN),
            raw_state=inst.status,
            instance_type=_machine_type(inst) or None,
            public_address=_public_address(inst),
            private_address=(
                inst.network_interfaces[0].network_i_p
                if inst.network_interfaces
                else None
            ),
        )

    @retry()
    def start(self, config: InstanceConfig) -> None:
        clients, name = self._target(config)
        try:
            op = clients.instances.start(
                project=clients.project_id, zone=clients.zone, instance=name
            )
            self._wait(clients, op)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to start '{name}'")

    @retry()
    def stop(self, config: InstanceConfig) -> None:
        clients, name = self._target(config)
        try:
            op = clients.instances.stop(
                project=clients.project_id, zone=clients.zone, instance=name
            )
            self._wait(clients, op)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to stop '{name}'")

    @retry()
    def resize(self, config: InstanceConfig, new_type: str) -> None:
        """Change the machine type; GCE only accepts this on a stopped VM.

        Raises:
            ProviderInvalidStateError: If the instance is not stopped.
        """
        clients, name = self._target(config)
        observed = self._fetch(clients, name)
        if observed.status is not InstanceStatus.STOPPED:
            raise ProviderInvalidStateError(
                f"Cannot resize '{name}' while it is {observed.raw_state}"
            )
        request = compute_v1.InstancesSetMachineTypeRequest(
            machine_type=f"zones/{clients.zone}/machineTypes/{new_type}"
        )
        try:
            op = clients.instances.set_machine_type(
                project=clients.project_id,
                zone=clients.zone,
                instance=name,
                instances_set_machine_type_request_resource=request,
            )
            self._wait(clients, op)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to set machine type of '{name}' to {new_type}")

    @retry()
    def terminate(self, config: InstanceConfig) -> None:
        """Delete the Compute Engine instance."""
        clients, name = self._target(config)
        try:
            op = clients.instances.delete(
                project=clients.project_id, zone=clients.zone, instance=name
            )
            self._wait(clients, op)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to terminate '{name}'")

    @retry()
    def _list_pager(self, clients: _Clients) -> Any:
        try:
            return clients.instances.list(project=clients.project_id, zone=clients.zone)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to list instances in {clients.project_id}/{clients.zone}")

    def list_available(self, profile: str) -> Iterator[ProviderInstanceDescriptor]:
        """Yield the instances in the profile's project and zone."""
        clients = self.clients(profile)
        pager = self._list_pager(clients)
        try:
            for inst in pager:
                yield ProviderInstanceDescriptor(
                    instance_id=inst.name,
                    name=inst.name,
                    status=_STATE_MAP.get(inst.status, InstanceStatus.UNKNOWN),
                    raw_state=inst.status,
                    instance_type=_machine_type(inst) or None,
                    public_address=_public_address(inst),
                    launch_time=str(inst.creation_timestamp or ""),
                    tags=dict(inst.labels or {}),
                )
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to list instances in {clients.project_id}/{clients.zone}")

    def create(self, config: InstanceConfig, image_id: str, **options: Any) -> str:
        """Launch a Compute Engine instance named after the alias.

        The insert carries one ``request_id`` for all of its retries, so a
        retried insert that had already gone through returns the original
        operation instead of creating (or colliding with) a second VM.

        Args:
            config: Record to provision.
            image_id: Source image URL or family
                      (e.g. ``projects/debian-cloud/global/images/family/debian-12``).
            **options: ``network``, ``disk_size_gb``.

        Returns:
            Instance name (GCE uses name as identifier).
        """
        if not config.instance_type:
            raise ProviderError(f"'{config.alias}' needs a machine type before provisioning")
        clients = self.clients(config.profile)
        name = config.alias

        instance = compute_v1.Instance()
        instance.name = name
        instance.machine_type = f"zones/{clients.zone}/machineTypes/{config.instance_type}"
        disk = compute_v1.AttachedDisk()
        disk.auto_delete = True
        disk.boot = True
        init = compute_v1.AttachedDiskInitializeParams()
        init.source_image = image_id
        init.disk_size_gb = options.get("disk_size_gb") or 10
        disk.initialize_params = init
        instance.disks = [disk]

        network_interface = compute_v1.NetworkInterface()
        network_interface.network = options.get("network") or "global/networks/default"
        access = compute_v1.AccessConfig()
        access.name = "External NAT"
        network_interface.access_configs = [access]
        instance.network_interfaces = [network_interface]

        request = compute_v1.InsertInstanceRequest(
            project=clients.project_id,
            zone=clients.zone,
            instance_resource=instance,
            request_id=str(uuid.uuid4()),
        )
        op = self._insert(clients, request)
        try:
            self._wait(clients, op)
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed waiting for instance '{name}' to be created")
        return name

    @retry()
    def _insert(self, clients: _Clients, request: Any) -> Any:
        name = request.instance_resource.name
        try:
            return clients.instances.insert(request=request)
        except gcp_exceptions.AlreadyExists as e:
            raise ProviderInvalidStateError(f"Instance '{name}' already exists") from e
        except gcp_exceptions.GoogleAPICallError as e:
            _handle(e, f"Failed to create instance '{name}'")
