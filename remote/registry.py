"""Persisted catalogue of configured instances.

The registry file (``~/.config/remote/profiles.yaml`` by default) holds
every :class:`InstanceConfig` plus the alias of the active instance::

    active: dev
    instances:
    - alias: dev
      provider_kind: aws
      profile: default
      provider_instance_id: i-0abc123
      instance_type: t3.small
      cached_status: stopped
      revision: 4

Every public operation re-reads the file while holding the registry lock
and, when it changes something, writes the whole document back through a
temporary file and ``os.replace`` before releasing the lock. A crash
therefore leaves either the previous or the new document on disk, never
a mix.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from remote.base.config import RemoteSettings
from remote.base.exceptions import (
    AliasNotFoundError,
    ConcurrentModificationError,
    DuplicateAliasError,
    DuplicateInstanceIdError,
    NoActiveInstanceError,
    RegistryCorruptError,
    RegistryError,
)
from remote.base.models import InstanceConfig
from remote.locking import exclusive_lock

# Fields callers may not change through ``update``.
_IDENTITY_FIELDS = ("alias", "provider_kind", "profile")

# Keys written by the first releases of the tool.
_LEGACY_KEYS = {"instance_id": "provider_instance_id", "user": "ssh_user", "cloud": "provider_kind"}


class RegistryView:
    """In-memory registry state, only valid inside :meth:`Registry.transaction`."""

    def __init__(self, active: str | None, instances: dict[str, InstanceConfig]) -> None:
        self._active = active
        self._instances = instances

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def active(self) -> str | None:
        return self._active

    def __contains__(self, alias: object) -> bool:
        return alias in self._instances

    def aliases(self) -> list[str]:
        return sorted(self._instances)

    def get(self, alias: str) -> InstanceConfig:
        try:
            return self._instances[alias]
        except KeyError:
            raise AliasNotFoundError(
                f"No instance with alias '{alias}' found, you may need to create it first"
            ) from None

    def get_active(self) -> InstanceConfig:
        if self._active is None:
            raise NoActiveInstanceError(
                "No active instance; select one with 'remote instance <alias>'"
            )
        return self.get(self._active)

    def owner_of(self, provider_instance_id: str) -> str | None:
        """Alias already managing *provider_instance_id*, if any."""
        for alias, config in self._instances.items():
            if config.provider_instance_id == provider_instance_id:
                return alias
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, config: InstanceConfig) -> InstanceConfig:
        if config.alias in self._instances:
            raise DuplicateAliasError(f"Instance with alias '{config.alias}' already exists")
        self._check_instance_id(config)
        stored = config.model_copy(update={"revision": 0})
        self._instances[config.alias] = stored
        return stored

    def put(self, config: InstanceConfig) -> InstanceConfig:
        """Replace an existing record, bumping its revision."""
        current = self.get(config.alias)
        for field in _IDENTITY_FIELDS:
            if getattr(config, field) != getattr(current, field):
                raise RegistryError(
                    f"Cannot change '{field}' of '{config.alias}'; remove and re-create it instead"
                )
        self._check_instance_id(config)
        try:
            stored = InstanceConfig.model_validate(
                {**config.model_dump(), "revision": current.revision + 1}
            )
        except ValidationError as exc:
            raise RegistryError(f"Invalid update for '{config.alias}': {exc}") from exc
        self._instances[config.alias] = stored
        return stored

    def delete(self, alias: str) -> InstanceConfig:
        removed = self.get(alias)
        del self._instances[alias]
        if self._active == alias:
            self._active = None
        return removed

    def set_active(self, alias: str) -> None:
        self.get(alias)
        self._active = alias

    def _check_instance_id(self, config: InstanceConfig) -> None:
        if config.provider_instance_id is None:
            return
        owner = self.owner_of(config.provider_instance_id)
        if owner is not None and owner != config.alias:
            raise DuplicateInstanceIdError(
                f"Instance {config.provider_instance_id} is already managed as '{owner}'"
            )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def dump(self) -> dict[str, Any]:
        return {
            "active": self._active,
            "instances": [
                self._instances[alias].model_dump(mode="json", exclude_none=True)
                for alias in sorted(self._instances)
            ],
        }


class Registry:
    """Alias → :class:`InstanceConfig` catalogue backed by one YAML file."""

    def __init__(self, path: Path, *, lock_timeout: float = 10.0) -> None:
        self.path = Path(path).expanduser()
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self.lock_timeout = lock_timeout

    @classmethod
    def from_settings(cls, settings: RemoteSettings) -> Registry:
        return cls(settings.registry_path, lock_timeout=settings.lock_timeout)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[RegistryView]:
        """Hold the registry lock around a read-modify-write.

        The yielded view is written back atomically when the block exits
        cleanly and something changed; on an exception nothing is written.
        """
        with exclusive_lock(self.lock_path, self.lock_timeout):
            view = self._load()
            before = view.dump()
            yield view
            after = view.dump()
            if after != before:
                self._write(after)

    def snapshot(self) -> RegistryView:
        """Consistent read of the current registry (lock held only while reading)."""
        with exclusive_lock(self.lock_path, self.lock_timeout):
            return self._load()

    def create(self, config: InstanceConfig, *, activate: bool = False) -> InstanceConfig:
        """Register a new instance; optionally make it active in the same write.

        Raises:
            DuplicateAliasError: If the alias is taken.
            DuplicateInstanceIdError: If another alias manages the same cloud instance.
        """
        with self.transaction() as view:
            stored = view.add(config)
            if activate:
                view.set_active(stored.alias)
        return stored

    def remove(self, alias: str) -> InstanceConfig:
        """Forget *alias* locally; clears the active alias if it pointed here.

        The cloud resource is left untouched.
        """
        with self.transaction() as view:
            return view.delete(alias)

    def set_active(self, alias: str) -> None:
        with self.transaction() as view:
            view.set_active(alias)

    def get_active(self) -> InstanceConfig:
        return self.snapshot().get_active()

    def get(self, alias: str) -> InstanceConfig:
        return self.snapshot().get(alias)

    def resolve(self, alias: str | None = None) -> InstanceConfig:
        """``get(alias)`` when an alias is given, otherwise the active instance."""
        view = self.snapshot()
        return view.get(alias) if alias is not None else view.get_active()

    @property
    def active_alias(self) -> str | None:
        return self.snapshot().active

    def list(self) -> Iterator[InstanceConfig]:
        """Yield every record ordered by alias.

        Each call reads a fresh snapshot, so the sequence can be restarted
        by calling ``list()`` again.
        """
        view = self.snapshot()
        for alias in view.aliases():
            yield view.get(alias)

    def update(
        self,
        alias: str,
        mutator: Callable[[InstanceConfig], InstanceConfig],
        *,
        expected_revision: int | None = None,
    ) -> InstanceConfig:
        """Apply *mutator* to the record and persist the result.

        Args:
            alias: Record to change.
            mutator: Receives the stored record, returns the changed one
                (typically via ``model_copy(update=...)``).
            expected_revision: When given, the stored revision must still
                match or :class:`ConcurrentModificationError` is raised.

        Returns:
            The stored record with its new revision.
        """
        with self.transaction() as view:
            current = view.get(alias)
            if expected_revision is not None and current.revision != expected_revision:
                raise ConcurrentModificationError(
                    f"'{alias}' changed while this command was running "
                    f"(revision {expected_revision} -> {current.revision})"
                )
            return view.put(mutator(current.model_copy()))

    # ------------------------------------------------------------------
    # Disk I/O
    # ------------------------------------------------------------------
    def _load(self) -> RegistryView:
        if not self.path.exists():
            return RegistryView(None, {})
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise RegistryCorruptError(f"Failed to parse registry file {self.path}: {exc}") from exc
        if data is None:
            return RegistryView(None, {})
        if not isinstance(data, Mapping):
            raise RegistryCorruptError(f"Registry file {self.path} is not a mapping")

        raw_instances = data.get("instances") or []
        if not isinstance(raw_instances, list):
            raise RegistryCorruptError(f"'instances' in {self.path} must be a list")

        view = RegistryView(None, {})
        for index, entry in enumerate(raw_instances):
            if not isinstance(entry, Mapping):
                raise RegistryCorruptError(f"Entry #{index} in {self.path} is not a mapping")
            try:
                config = InstanceConfig.model_validate(_upgrade_entry(entry))
            except ValidationError as exc:
                raise RegistryCorruptError(
                    f"Entry #{index} in {self.path} is invalid: {exc}"
                ) from exc
            try:
                view._check_instance_id(config)
            except DuplicateInstanceIdError as exc:
                raise RegistryCorruptError(f"{self.path}: {exc}") from exc
            if config.alias in view:
                raise RegistryCorruptError(f"Alias '{config.alias}' appears twice in {self.path}")
            view._instances[config.alias] = config

        active = data.get("active")
        if active is not None:
            if not isinstance(active, str) or active not in view:
                raise RegistryCorruptError(
                    f"Active instance '{active}' in {self.path} is not a configured alias"
                )
            view._active = active
        return view

    def _write(self, payload: Mapping[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)


def _upgrade_entry(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Rename keys from the original file layout to the current field names."""
    upgraded = dict(entry)
    for old, new in _LEGACY_KEYS.items():
        if old in upgraded and new not in upgraded:
            upgraded[new] = upgraded.pop(old)
    return upgraded
