"""
Remote exception hierarchy.

Every failure surfaced to the caller inherits from :class:`RemoteError`.
Registry, lifecycle, provider and transport errors each have their own
branch; the ``kind`` attribute is the short name printed by the CLI.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from remote.base.models import InstanceStatus


# ── Base ──────────────────────────────────────────────────────────────
class RemoteError(Exception):
    """Root exception for all remote errors."""

    kind = "Error"


# ── Registry ──────────────────────────────────────────────────────────
class RegistryError(RemoteError):
    """Base exception for registry operations."""

    kind = "Registry"


class DuplicateAliasError(RegistryError):
    """An instance with this alias is already configured."""

    kind = "DuplicateAlias"


class AliasNotFoundError(RegistryError):
    """No instance is configured under this alias."""

    kind = "NotFound"


class NoActiveInstanceError(AliasNotFoundError):
    """No active instance has been selected."""


class DuplicateInstanceIdError(RegistryError):
    """Another alias already manages this provider instance."""

    kind = "DuplicateInstanceId"


class RegistryCorruptError(RegistryError):
    """The registry file exists but cannot be understood."""

    kind = "RegistryCorrupt"


class ConcurrentModificationError(RegistryError):
    """The record changed underneath an in-flight operation."""

    kind = "ConcurrentModification"


class LockTimeoutError(RegistryError):
    """The registry lock could not be acquired in time."""

    kind = "LockTimeout"


# ── Lifecycle ─────────────────────────────────────────────────────────
class LifecycleError(RemoteError):
    """Base exception for lifecycle transitions."""

    kind = "Lifecycle"


class InvalidTransitionError(LifecycleError):
    """The instance is in the wrong state for the requested operation."""

    kind = "InvalidTransition"


class ResizeRequiresStopError(LifecycleError):
    """Resize was requested while the instance is running."""

    kind = "ResizeRequiresStop"


class ConfirmationTimeoutError(LifecycleError):
    """The provider never reported the target state within the poll cap."""

    kind = "ConfirmationTimeout"

    def __init__(self, message: str, last_status: InstanceStatus | None = None) -> None:
        super().__init__(message)
        self.last_status = last_status


# ── Provider ──────────────────────────────────────────────────────────
class ProviderError(RemoteError):
    """Base exception for cloud provider failures (the *Other* category)."""

    kind = "Provider"


class ProviderAuthError(ProviderError):
    """Credentials are missing, expired or not allowed to do this."""

    kind = "ProviderAuth"


class ProviderNotFoundError(ProviderError):
    """The provider does not know this instance."""

    kind = "ProviderNotFound"


class RateLimitedError(ProviderError):
    """The provider throttled the request."""

    kind = "RateLimited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderError):
    """The provider endpoint is unreachable or failing."""

    kind = "ProviderUnavailable"


class ProviderInvalidStateError(ProviderError):
    """The provider refused the request in the instance's current state."""

    kind = "InvalidState"


class UnsupportedProviderError(ProviderError):
    """No provider implementation is registered under this name."""

    kind = "UnsupportedProvider"


# ── Transport ─────────────────────────────────────────────────────────
class TransportError(RemoteError):
    """ssh / scp could not be run against the instance."""

    kind = "Transport"
