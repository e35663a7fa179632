"""
SDK client cache.

Providers resolve one SDK client per credential profile. ``status --all``
touches every record, and several records usually share a profile, so
clients are built once per provider + validated config.
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Any, Callable

from pydantic import BaseModel


class ClientCache:
    """Thread-safe, in-process cache of SDK clients keyed by provider + config hash."""

    _instance: ClientCache | None = None
    _cache: dict[str, Any]
    _lock: threading.Lock

    def __new__(cls) -> ClientCache:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._cache = {}
            cls._instance._lock = threading.Lock()
        return cls._instance

    @staticmethod
    def _make_key(provider: str, config: BaseModel) -> str:
        """Produce a deterministic cache key from provider and config."""
        serialised = json.dumps(
            {"provider": provider, "config": config.model_dump(exclude={"credentials"})},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(serialised.encode()).hexdigest()

    def get_or_create(
        self,
        provider: str,
        config: BaseModel,
        factory: Callable[[BaseModel], Any],
    ) -> Any:
        """Return a cached client or create one via *factory*.

        Args:
            provider: Provider name (e.g. 'aws').
            config: Validated provider config model.
            factory: Callable(config) that creates a new SDK client.

        Returns:
            The cached (or newly-created) client.
        """
        key = self._make_key(provider, config)
        with self._lock:
            if key not in self._cache:
                self._cache[key] = factory(config)
            return self._cache[key]

    def clear(self) -> None:
        """Flush all cached clients."""
        with self._lock:
            self._cache.clear()
