"""remote: manage a small catalogue of cloud development instances.

Entry point for the library. Open the registry, wrap it in a controller
and drive the active instance::

    from remote import LifecycleController, Registry, RemoteSettings

    registry = Registry.from_settings(RemoteSettings())
    LifecycleController(registry).start()
"""

__version__ = "0.3.0"

from .base import (
    InstanceConfig,
    InstanceStatus,
    ObservedStatus,
    ProviderBlueprint,
    ProviderInstanceDescriptor,
    ProviderKind,
)
from .base.config import RemoteSettings
from .controller import LifecycleController, StatusReport, TransitionResult
from .factory import provider_factory
from .registry import Registry

__all__ = [
    "InstanceConfig",
    "InstanceStatus",
    "LifecycleController",
    "ObservedStatus",
    "ProviderBlueprint",
    "ProviderInstanceDescriptor",
    "ProviderKind",
    "Registry",
    "RemoteSettings",
    "StatusReport",
    "TransitionResult",
    "provider_factory",
]
