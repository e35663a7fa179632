"""AWS EC2 implementation of the provider blueprint."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Any, NoReturn

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    ProfileNotFound,
)

from remote.base.client_cache import ClientCache
from remote.base.config import AWSConfig
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

_ERROR_MAP: dict[str, type[ProviderError]] = {
    "InvalidInstanceID.NotFound": ProviderNotFoundError,
    "InvalidInstanceID.Malformed": ProviderNotFoundError,
    "IncorrectInstanceState": ProviderInvalidStateError,
    "IncorrectState": ProviderInvalidStateError,
    "AuthFailure": ProviderAuthError,
    "UnauthorizedOperation": ProviderAuthError,
    "InvalidClientTokenId": ProviderAuthError,
    "ExpiredToken": ProviderAuthError,
    "RequestExpired": ProviderAuthError,
    "SignatureDoesNotMatch": ProviderAuthError,
    "RequestLimitExceeded": RateLimitedError,
    "Throttling": RateLimitedError,
    "ThrottlingException": RateLimitedError,
    "ServiceUnavailable": ProviderUnavailableError,
    "Unavailable": ProviderUnavailableError,
    "InternalError": ProviderUnavailableError,
}

_STATE_MAP: dict[str, InstanceStatus] = {
    "pending": InstanceStatus.STARTING,
    "running": InstanceStatus.RUNNING,
    "stopping": InstanceStatus.STOPPING,
    "shutting-down": InstanceStatus.STOPPING,
    "stopped": InstanceStatus.STOPPED,
    "terminated": InstanceStatus.TERMINATED,
}


def _handle(e: Exception, msg: str) -> NoReturn:
    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        exc = _ERROR_MAP.get(error.get("Code", ""))
        detail = error.get("Message")
        raise (exc or ProviderError)(f"{msg}: {detail}" if detail else msg) from e
    if isinstance(e, (ProfileNotFound, NoCredentialsError)):
        raise ProviderAuthError(f"{msg}: {e}") from e
    if isinstance(e, EndpointConnectionError):
        raise ProviderUnavailableError(f"{msg}: {e}") from e
    raise ProviderError(f"{msg}: {e}") from e


def _name_tag(inst: dict[str, Any]) -> str:
    for tag in inst.get("Tags", []):
        if tag["Key"] == "Name":
            return tag["Value"]  # type: ignore[no-any-return]
    return ""


def _status(raw_state: str) -> InstanceStatus:
    return _STATE_MAP.get(raw_state, InstanceStatus.UNKNOWN)


def _require_id(config: InstanceConfig) -> str:
    if config.provider_instance_id is None:
        raise ProviderNotFoundError(f"'{config.alias}' has no EC2 instance ID yet")
    return config.provider_instance_id


def _build_client(config: AWSConfig) -> Any:
    try:
        session = boto3.Session(
            profile_name=config.profile_name,
            region_name=config.region_name,
        )
        return session.client("ec2")
    except BotoCoreError as e:
        _handle(e, f"Failed to open EC2 session for profile '{config.profile_name}'")


class AwsProvider(ProviderBlueprint):
    """AWS EC2 provider.

    One ``ec2`` client is built per credential profile and shared through
    :class:`ClientCache`.
    """

    kind = ProviderKind.AWS

    def __init__(self, region_name: str | None = None) -> None:
        """
        Args:
            region_name: Region override applied to every profile; when None
                the environment or the profile's own region is used.
        """
        self.region_name = region_name

    def client(self, profile: str) -> Any:
        config = AWSConfig(profile_name=profile or None, region_name=self.region_name)
        return ClientCache().get_or_create(self.kind.value, config, _build_client)

    @retry()
    def describe(self, config: InstanceConfig) -> ObservedStatus:
        """Describe one EC2 instance.

        Raises:
            ProviderNotFoundError: If the instance does not exist.
        """
        instance_id = _require_id(config)
        try:
            resp = self.client(config.profile).describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to describe instance '{instance_id}'")
        instances = [
            inst
            for reservation in resp.get("Reservations", [])
            for inst in reservation.get("Instances", [])
        ]
        if not instances:
            raise ProviderNotFoundError(f"Could not find instance {instance_id}")
        inst = instances[0]
        raw_state = inst["State"]["Name"]
        return ObservedStatus(
            status=_status(raw_state),
            raw_state=raw_state,
            instance_type=inst.get("InstanceType"),
            public_address=inst.get("PublicDnsName") or inst.get("PublicIpAddress") or None,
            private_address=inst.get("PrivateIpAddress"),
        )

    @retry()
    def start(self, config: InstanceConfig) -> None:
        """Start a stopped EC2 instance.

        Raises:
            ProviderInvalidStateError: If EC2 reports the instance cannot start.
        """
        instance_id = _require_id(config)
        try:
            self.client(config.profile).start_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to start instance '{instance_id}'")

    @retry()
    def stop(self, config: InstanceConfig) -> None:
        """Stop a running EC2 instance (preserves EBS volumes)."""
        instance_id = _require_id(config)
        try:
            self.client(config.profile).stop_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to stop instance '{instance_id}'")

    @retry()
    def resize(self, config: InstanceConfig, new_type: str) -> None:
        """Change the instance type. EC2 refuses this unless the instance is stopped."""
        instance_id = _require_id(config)
        try:
            self.client(config.profile).modify_instance_attribute(
                InstanceId=instance_id,
                InstanceType={"Value": new_type},
            )
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to set type of '{instance_id}' to {new_type}")

    @retry()
    def terminate(self, config: InstanceConfig) -> None:
        """Terminate an EC2 instance permanently."""
        instance_id = _require_id(config)
        try:
            self.client(config.profile).terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to terminate instance '{instance_id}'")

    @retry()
    def _describe_page(self, profile: str, token: str | None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if token:
            params["NextToken"] = token
        try:
            return self.client(profile).describe_instances(**params)  # type: ignore[no-any-return]
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to list instances for profile '{profile}'")

    def list_available(self, profile: str) -> Iterator[ProviderInstanceDescriptor]:
        """Yield every instance visible to *profile*, one page at a time."""
        token: str | None = None
        while True:
            resp = self._describe_page(profile, token)
            for reservation in resp.get("Reservations", []):
                for inst in reservation.get("Instances", []):
                    raw_state = inst["State"]["Name"]
                    yield ProviderInstanceDescriptor(
                        instance_id=inst["InstanceId"],
                        name=_name_tag(inst),
                        status=_status(raw_state),
                        raw_state=raw_state,
                        instance_type=inst.get("InstanceType"),
                        public_address=inst.get("PublicDnsName") or None,
                        launch_time=str(inst.get("LaunchTime", "")),
                        tags={t["Key"]: t["Value"] for t in inst.get("Tags", [])},
                    )
            token = resp.get("NextToken")
            if not token:
                return

    def create(self, config: InstanceConfig, image_id: str, **options: Any) -> str:
        """Launch an EC2 instance named after the alias.

        One ``ClientToken`` is generated per call and reused by every retry,
        so EC2 launches at most one instance even when a retried request had
        already succeeded.

        Supported options:
            key_name, security_group_ids, subnet_id.

        Returns:
            Instance ID.
        """
        if not config.instance_type:
            raise ProviderError(f"'{config.alias}' needs an instance type before provisioning")
        params: dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": config.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": uuid.uuid4().hex,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": "Name", "Value": config.alias}],
                }
            ],
        }
        if options.get("key_name"):
            params["KeyName"] = options["key_name"]
        if options.get("security_group_ids"):
            params["SecurityGroupIds"] = options["security_group_ids"]
        if options.get("subnet_id"):
            params["SubnetId"] = options["subnet_id"]
        return self._run_instances(config, params)

    @retry()
    def _run_instances(self, config: InstanceConfig, params: dict[str, Any]) -> str:
        try:
            resp = self.client(config.profile).run_instances(**params)
        except (ClientError, BotoCoreError) as e:
            _handle(e, f"Failed to create instance '{config.alias}'")
        return resp["Instances"][0]["InstanceId"]  # type: ignore[no-any-return]
