"""
Data model shared by the registry, the controller and the providers.

Records are pydantic models so the registry can validate what it reads
from disk and dump it back as plain YAML-friendly data.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from remote.base.exceptions import UnsupportedProviderError


class ProviderKind(str, Enum):
    """Cloud backends a record can be managed by."""

    AWS = "aws"
    GCP = "gcp"

    @classmethod
    def parse(cls, value: str | ProviderKind) -> ProviderKind:
        """Case-insensitive lookup, ``"AWS"`` and ``"aws"`` are the same."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            supported = ", ".join(k.value for k in cls)
            raise UnsupportedProviderError(
                f"Unsupported cloud provider '{value}' (supported: {supported})"
            ) from None


class InstanceStatus(str, Enum):
    """Lifecycle states of a configured instance."""

    UNKNOWN = "unknown"
    UNPROVISIONED = "unprovisioned"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class InstanceConfig(BaseModel):
    """One configured remote instance, as persisted in the registry."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    alias: str
    provider_kind: ProviderKind
    profile: str = "default"
    provider_instance_id: str | None = None
    instance_type: str | None = None
    cached_status: InstanceStatus = InstanceStatus.UNKNOWN
    last_refreshed: datetime | None = None
    ssh_user: str | None = None
    key_path: str | None = None
    revision: int = Field(default=0, ge=0)
    # Set while an invocation has a provider request in flight for this record.
    pending_operation: str | None = None
    pending_since: datetime | None = None
    # Bumped when a claim is taken or released, not on status refreshes.
    transition_seq: int = Field(default=0, ge=0)

    @field_validator("alias")
    @classmethod
    def alias_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("alias must be a non-empty string")
        return value

    @field_validator("provider_kind", mode="before")
    @classmethod
    def parse_kind(cls, value: object) -> object:
        if isinstance(value, str):
            try:
                return ProviderKind.parse(value)
            except UnsupportedProviderError as exc:
                raise ValueError(str(exc)) from exc
        return value

    @field_validator("provider_instance_id", "instance_type", "ssh_user", "key_path")
    @classmethod
    def empty_as_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def is_provisioned(self) -> bool:
        return self.provider_instance_id is not None

    @property
    def lifecycle_state(self) -> InstanceStatus:
        """Cached status, or ``UNPROVISIONED`` when no cloud resource exists yet."""
        if not self.is_provisioned:
            return InstanceStatus.UNPROVISIONED
        return self.cached_status

    def describe(self) -> str:
        """Multi-line human summary used by ``ls``."""
        refreshed = self.last_refreshed.isoformat() if self.last_refreshed else "never"
        return (
            f"Alias: {self.alias}\n"
            f"Cloud: {self.provider_kind.value}\n"
            f"Profile: {self.profile}\n"
            f"Instance ID: {self.provider_instance_id or '-'}\n"
            f"Type: {self.instance_type or '-'}\n"
            f"Status: {self.lifecycle_state.value} (refreshed {refreshed})\n"
            f"User: {self.ssh_user or '-'}\n"
            f"Key Path: {self.key_path or '-'}"
        )


class ObservedStatus(BaseModel):
    """What a provider reports about one instance right now."""

    model_config = ConfigDict(frozen=True)

    status: InstanceStatus
    raw_state: str = ""
    instance_type: str | None = None
    public_address: str | None = None
    private_address: str | None = None


class ProviderInstanceDescriptor(BaseModel):
    """An instance visible to a profile, whether or not it is registered."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    name: str = ""
    status: InstanceStatus = InstanceStatus.UNKNOWN
    raw_state: str = ""
    instance_type: str | None = None
    public_address: str | None = None
    launch_time: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    def describe(self) -> str:
        tags = ", ".join(f'"{k}"="{v}"' for k, v in self.tags.items())
        return (
            f"Instance ID: {self.instance_id}\n"
            f"Name: {self.name or '-'}\n"
            f"Type: {self.instance_type or '-'}\n"
            f"Tags: {tags}\n"
            f"State: {self.raw_state or self.status.value}"
        )
