"""
Retry utilities for provider calls.

Throttling and unavailable endpoints are retried inside the provider
boundary with exponential backoff; every other error propagates on the
first attempt so the controller sees it unchanged.
"""

from __future__ import annotations

import time
from functools import wraps
from typing import Callable, Any

from remote.base.exceptions import ProviderUnavailableError, RateLimitedError
from remote.base.logger import remote_logger

# Provider errors considered transient / retryable.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    RateLimitedError,
    ProviderUnavailableError,
)


def _provider_name(args: tuple[Any, ...]) -> str | None:
    kind = getattr(args[0], "kind", None) if args else None
    return getattr(kind, "value", None)


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    retryable_exceptions: tuple[type[BaseException], ...] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> Callable:
    """Decorator: retry a provider method on transient errors.

    Args:
        max_attempts: Maximum number of total attempts (including the first).
        base_delay: Initial delay in seconds before the first retry.
        max_delay: Cap on the delay between retries.
        backoff_factor: Multiplier applied to the delay after each retry.
        retryable_exceptions: Exception types that trigger a retry.
            Defaults to :data:`TRANSIENT_ERRORS`.
        sleep: Override for :func:`time.sleep`.

    Returns:
        Decorated function that retries on transient failures. A
        ``retry_after`` attribute on the raised error (seconds, as sent by
        the provider) lengthens the wait but never beyond *max_delay*.
    """
    if retryable_exceptions is None:
        retryable_exceptions = TRANSIENT_ERRORS

    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = base_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retryable_exceptions as exc:
                    if attempt == max_attempts:
                        remote_logger.error(
                            f"All {max_attempts} attempts failed for {fn.__qualname__}: {exc}",
                            provider=_provider_name(args),
                            operation=fn.__name__,
                        )
                        raise
                    hinted = getattr(exc, "retry_after", None) or 0.0
                    wait = min(max(delay, hinted), max_delay)
                    remote_logger.warning(
                        f"Attempt {attempt}/{max_attempts} for {fn.__qualname__} "
                        f"failed ({exc}), retrying in {wait:.1f}s",
                        provider=_provider_name(args),
                        operation=fn.__name__,
                    )
                    (sleep or time.sleep)(wait)
                    delay = min(delay * backoff_factor, max_delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator
