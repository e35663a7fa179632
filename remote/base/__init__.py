"""Provider blueprint, data model and core utilities.

Every cloud backend inherits from :class:`ProviderBlueprint`. Import the
models here to type-hint your own code or to write a new provider.
"""

from .models import (
    InstanceConfig,
    InstanceStatus,
    ObservedStatus,
    ProviderInstanceDescriptor,
    ProviderKind,
)
from .provider import ProviderBlueprint


__all__ = [
    "InstanceConfig",
    "InstanceStatus",
    "ObservedStatus",
    "ProviderBlueprint",
    "ProviderInstanceDescriptor",
    "ProviderKind",
]
