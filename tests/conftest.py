"""Shared fixtures: a temporary registry and an in-memory provider."""

from __future__ import annotations

import time
from collections.abc import Iterator
from typing import Any

import pytest

from remote.base.client_cache import ClientCache
from remote.base.exceptions import ProviderInvalidStateError, ProviderNotFoundError
from remote.base.models import (
    InstanceConfig,
    InstanceStatus,
    ObservedStatus,
    ProviderInstanceDescriptor,
    ProviderKind,
)
from remote.base.provider import ProviderBlueprint
from remote.controller import LifecycleController
from remote.registry import Registry

# Where each transient state settles on the next describe.
_SETTLES_TO = {
    InstanceStatus.STARTING: InstanceStatus.RUNNING,
    InstanceStatus.STOPPING: InstanceStatus.STOPPED,
}


class FakeProvider(ProviderBlueprint):
    """Provider backed by a dict; transient states last for one describe."""

    kind = ProviderKind.AWS

    def __init__(self) -> None:
        self.instances: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.stuck = False
        self.on_describe: Any = None
        # Seconds start/stop take before the state changes, like a slow API.
        self.call_delay = 0.0
        self._next_id = 0

    def add(self, instance_id: str, status: InstanceStatus, instance_type: str = "t3.small") -> None:
        self.instances[instance_id] = {
            "status": status,
            "type": instance_type,
            "address": f"{instance_id}.compute.example.com",
        }

    def status_of(self, instance_id: str) -> InstanceStatus:
        return self.instances[instance_id]["status"]  # type: ignore[no-any-return]

    def _get(self, config: InstanceConfig) -> dict[str, Any]:
        try:
            return self.instances[config.provider_instance_id or ""]
        except KeyError:
            raise ProviderNotFoundError(f"Could not find instance {config.provider_instance_id}") from None

    def describe(self, config: InstanceConfig) -> ObservedStatus:
        self.calls.append(("describe", config.provider_instance_id or ""))
        inst = self._get(config)
        observed = ObservedStatus(
            status=inst["status"],
            raw_state=inst["status"].value,
            instance_type=inst["type"],
            public_address=inst["address"] if inst["status"] is InstanceStatus.RUNNING else None,
        )
        if not self.stuck and inst["status"] in _SETTLES_TO:
            inst["status"] = _SETTLES_TO[inst["status"]]
        if self.on_describe is not None:
            hook, self.on_describe = self.on_describe, None
            hook()
        return observed

    def start(self, config: InstanceConfig) -> None:
        self.calls.append(("start", config.provider_instance_id or ""))
        inst = self._get(config)
        if inst["status"] is not InstanceStatus.STOPPED:
            raise ProviderInvalidStateError(f"cannot start while {inst['status'].value}")
        time.sleep(self.call_delay)
        inst["status"] = InstanceStatus.STARTING

    def stop(self, config: InstanceConfig) -> None:
        self.calls.append(("stop", config.provider_instance_id or ""))
        inst = self._get(config)
        if inst["status"] is not InstanceStatus.RUNNING:
            raise ProviderInvalidStateError(f"cannot stop while {inst['status'].value}")
        time.sleep(self.call_delay)
        inst["status"] = InstanceStatus.STOPPING

    def resize(self, config: InstanceConfig, new_type: str) -> None:
        self.calls.append(("resize", config.provider_instance_id or ""))
        inst = self._get(config)
        if inst["status"] is not InstanceStatus.STOPPED:
            raise ProviderInvalidStateError(f"cannot resize while {inst['status'].value}")
        inst["type"] = new_type

    def terminate(self, config: InstanceConfig) -> None:
        self.calls.append(("terminate", config.provider_instance_id or ""))
        self._get(config)["status"] = InstanceStatus.TERMINATED

    def list_available(self, profile: str) -> Iterator[ProviderInstanceDescriptor]:
        for instance_id, inst in sorted(self.instances.items()):
            yield ProviderInstanceDescriptor(
                instance_id=instance_id,
                status=inst["status"],
                raw_state=inst["status"].value,
                instance_type=inst["type"],
            )

    def create(self, config: InstanceConfig, image_id: str, **options: Any) -> str:
        self._next_id += 1
        instance_id = f"i-new{self._next_id}"
        self.calls.append(("create", instance_id))
        self.add(instance_id, InstanceStatus.STARTING, config.instance_type or "t3.small")
        return instance_id

    def state_changing_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] != "describe"]


@pytest.fixture(autouse=True)
def _fresh_client_cache() -> Iterator[None]:
    ClientCache().clear()
    yield
    ClientCache().clear()


@pytest.fixture
def registry(tmp_path) -> Registry:
    return Registry(tmp_path / "remote" / "profiles.yaml", lock_timeout=1.0)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def controller(registry: Registry, provider: FakeProvider, sleeps: list[float]) -> LifecycleController:
    return LifecycleController(
        registry,
        lambda kind: provider,
        poll_attempts=5,
        poll_interval=1.0,
        poll_max_interval=3.0,
        sleep=sleeps.append,
    )


def make_config(alias: str = "dev", instance_id: str | None = "i-dev", **kwargs: Any) -> InstanceConfig:
    values: dict[str, Any] = {
        "alias": alias,
        "provider_kind": ProviderKind.AWS,
        "profile": "default",
        "provider_instance_id": instance_id,
        "instance_type": "t3.small",
    }
    values.update(kwargs)
    return InstanceConfig(**values)
