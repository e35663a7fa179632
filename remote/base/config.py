"""
Pydantic configuration models.

Validates provider configs and tool settings when they are built instead
of silently passing bad values to SDK clients or the poll loop.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_GCP_ZONE = "us-central1-a"


class AWSConfig(BaseModel):
    """Configuration for the EC2 provider.

    A registry profile is a named profile from ``~/.aws/config``. The region
    is resolved in order:
    1. The explicit value.
    2. Environment variables (AWS_DEFAULT_REGION, AWS_REGION).
    3. Left as None so boto3 falls back to the profile's own region.
    """

    model_config = ConfigDict(extra="forbid")

    profile_name: str | None = Field(default=None, description="Named AWS profile")
    region_name: str | None = Field(default=None, description="AWS region (e.g. 'us-east-1')")

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to environment variables for the region."""
        if not values.get("region_name"):
            values["region_name"] = os.environ.get("AWS_DEFAULT_REGION") or os.environ.get(
                "AWS_REGION"
            )
        return values

    @classmethod
    def from_profile(cls, profile: str) -> AWSConfig:
        return cls(profile_name=profile or None)


class GCPConfig(BaseModel):
    """Configuration for the Compute Engine provider.

    A registry profile reads ``<project>`` or ``<project>/<zone>``.
    Credentials are resolved in order:
    1. Explicit values passed in.
    2. Environment variables (GOOGLE_CLOUD_PROJECT, GOOGLE_APPLICATION_CREDENTIALS,
       CLOUDSDK_COMPUTE_ZONE).
    3. If neither is set, credentials are left as None so the GCP SDK can fall
       back to Application Default Credentials (ADC).
    """

    model_config = ConfigDict(extra="forbid")

    project_id: str | None = Field(default=None, description="GCP project ID")
    zone: str = Field(default=DEFAULT_GCP_ZONE, description="Compute zone")
    credentials: Any | None = Field(default=None, description="GCP credentials object")
    credentials_path: str | None = Field(
        default=None, description="Path to service account JSON key file"
    )

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to environment variables for missing config."""
        if not values.get("project_id"):
            values["project_id"] = os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get(
                "GCLOUD_PROJECT"
            )
        if not values.get("zone"):
            values["zone"] = os.environ.get("CLOUDSDK_COMPUTE_ZONE") or DEFAULT_GCP_ZONE
        if not values.get("credentials_path"):
            values["credentials_path"] = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        return values

    @model_validator(mode="after")
    def validate_project_and_credentials(self) -> GCPConfig:
        """Ensure project_id is set and load credentials from path if needed."""
        if self.project_id is None:
            raise ValueError(
                "GCP project_id is required. Use a '<project>[/<zone>]' profile or set "
                "GOOGLE_CLOUD_PROJECT / GCLOUD_PROJECT."
            )
        if self.credentials is None and self.credentials_path:
            path = Path(self.credentials_path).expanduser()
            if not path.exists():
                raise ValueError(f"Credentials file not found: {self.credentials_path}")
            from google.oauth2 import service_account  # lazy import

            self.credentials = service_account.Credentials.from_service_account_file(
                str(path)
            )
        return self

    @classmethod
    def from_profile(cls, profile: str) -> GCPConfig:
        """Split a ``<project>[/<zone>]`` profile; ``default`` defers to the environment."""
        values: dict[str, Any] = {}
        if profile and profile != "default":
            project, _, zone = profile.partition("/")
            values["project_id"] = project or None
            if zone:
                values["zone"] = zone
        return cls(**values)


class RemoteSettings(BaseModel):
    """Tool-level settings: where the registry lives and how long to wait."""

    model_config = ConfigDict(extra="forbid")

    config_dir: Path = Field(default=Path("~/.config/remote"))
    registry_file: str = "profiles.yaml"
    lock_timeout: float = Field(default=10.0, gt=0)
    poll_attempts: int = Field(default=40, ge=1)
    poll_interval: float = Field(default=3.0, ge=0)
    poll_max_interval: float = Field(default=15.0, ge=0)
    claim_ttl: float = Field(default=900.0, gt=0)
    log_level: str = "WARNING"

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to REMOTE_* environment variables."""
        env_map = {
            "config_dir": "REMOTE_CONFIG_DIR",
            "lock_timeout": "REMOTE_LOCK_TIMEOUT",
            "poll_attempts": "REMOTE_POLL_ATTEMPTS",
            "poll_interval": "REMOTE_POLL_INTERVAL",
            "claim_ttl": "REMOTE_CLAIM_TTL",
            "log_level": "REMOTE_LOG_LEVEL",
        }
        for field, env_var in env_map.items():
            if values.get(field) is None and os.environ.get(env_var):
                values[field] = os.environ[env_var]
        return values

    @property
    def registry_path(self) -> Path:
        return self.config_dir.expanduser() / self.registry_file


__all__ = [
    "AWSConfig",
    "GCPConfig",
    "RemoteSettings",
    "DEFAULT_GCP_ZONE",
]
