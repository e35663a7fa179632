"""Provider factory.

Provides :func:`provider_factory`, the single entry-point the lifecycle
controller uses to obtain a provider. Dispatch happens on the record's
``provider_kind``; callers only ever see :class:`ProviderBlueprint`.
"""

from __future__ import annotations

from remote.aws.provider import AwsProvider
from remote.base.exceptions import UnsupportedProviderError
from remote.base.models import ProviderKind
from remote.base.provider import ProviderBlueprint
from remote.gcp.provider import GcpProvider


# provider kind -> implementation
PROVIDER_REGISTRY: dict[ProviderKind, type[ProviderBlueprint]] = {
    ProviderKind.AWS: AwsProvider,
    ProviderKind.GCP: GcpProvider,
}

_instances: dict[ProviderKind, ProviderBlueprint] = {}


def provider_factory(kind: ProviderKind | str) -> ProviderBlueprint:
    """
    Return the provider implementation for *kind*.

    Providers are stateless apart from their SDK client cache, so one
    instance per kind is shared for the life of the process.

    Args:
        kind: A :class:`ProviderKind` or its name (case-insensitive).
    Returns:
        The provider for that kind.
    Raises:
        UnsupportedProviderError: If no implementation is registered.
    """
    kind = ProviderKind.parse(kind)
    if kind not in _instances:
        provider_class = PROVIDER_REGISTRY.get(kind)
        if provider_class is None:
            raise UnsupportedProviderError(f"No provider registered for '{kind.value}'")
        _instances[kind] = provider_class()
    return _instances[kind]
