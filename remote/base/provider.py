"""Provider capability blueprint."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any, ClassVar

from remote.base.models import (
    InstanceConfig,
    ObservedStatus,
    ProviderInstanceDescriptor,
    ProviderKind,
)


class ProviderBlueprint(ABC):
    """Abstract interface every cloud backend implements.

    Maps to AWS EC2 and GCP Compute Engine. Implementations translate the
    calls below into SDK requests and map SDK failures onto the
    :mod:`remote.base.exceptions` provider taxonomy. They keep no status
    cache; the registry owns that.
    """

    kind: ClassVar[ProviderKind]

    @abstractmethod
    def describe(self, config: InstanceConfig) -> ObservedStatus:
        """Return the provider's current view of the instance.

        Raises:
            ProviderNotFoundError: If the provider does not know the instance.
        """

    @abstractmethod
    def start(self, config: InstanceConfig) -> None:
        """Start a stopped instance.

        Raises:
            ProviderInvalidStateError: If the instance is not startable.
        """

    @abstractmethod
    def stop(self, config: InstanceConfig) -> None:
        """Stop a running instance (keep disk).

        Raises:
            ProviderInvalidStateError: If the instance is not stoppable.
        """

    @abstractmethod
    def resize(self, config: InstanceConfig, new_type: str) -> None:
        """Change the machine type of a stopped instance.

        Raises:
            ProviderInvalidStateError: If the instance is running.
        """

    @abstractmethod
    def terminate(self, config: InstanceConfig) -> None:
        """Destroy the instance. Irreversible."""

    @abstractmethod
    def list_available(self, profile: str) -> Iterator[ProviderInstanceDescriptor]:
        """Lazily enumerate the instances visible to *profile*."""

    @abstractmethod
    def create(self, config: InstanceConfig, image_id: str, **options: Any) -> str:
        """Launch a new instance of ``config.instance_type`` and return its ID.

        Args:
            config: Record being provisioned; ``alias`` is used as the
                instance name.
            image_id: OS image identifier (AMI ID / image family).
            **options: Provider-specific options:

                **AWS (EC2):**
                    - ``key_name``: EC2 key pair name for SSH access.
                    - ``security_group_ids``: List of security group IDs.
                    - ``subnet_id``: VPC subnet ID.

                **GCP (Compute Engine):**
                    - ``network``: Network name (default ``global/networks/default``).
                    - ``disk_size_gb``: Boot disk size (default 10).
        """
