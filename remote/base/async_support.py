"""
Async fan-out helpers.

Provider SDKs are synchronous. ``status --all`` refreshes every record in
one go, so the describe calls are pushed onto threads with
:func:`asyncio.to_thread` and gathered, while the registry writes that
follow stay on the calling thread.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Iterable
from typing import Any, Callable, Coroutine, TypeVar

T = TypeVar("T")
K = TypeVar("K")


def async_wrap(
    fn: Callable[..., T],
) -> Callable[..., Coroutine[Any, Any, T]]:
    """Return an async version of *fn* that runs it in a thread.

    The wrapper preserves the original function's signature and docstring.
    """

    @functools.wraps(fn)
    async def _wrapper(*args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    return _wrapper


def gather_in_threads(
    calls: Iterable[tuple[K, Callable[[], T]]],
) -> list[tuple[K, T | BaseException]]:
    """Run each ``(key, thunk)`` in a worker thread and wait for all of them.

    Exceptions are returned in place of results rather than raised, so one
    failing call never hides the others.

    Returns:
        ``(key, result_or_exception)`` pairs in input order.
    """
    pending = list(calls)

    async def _run() -> list[T | BaseException]:
        return await asyncio.gather(
            *(async_wrap(thunk)() for _, thunk in pending),
            return_exceptions=True,
        )

    if not pending:
        return []
    results = asyncio.run(_run())
    return [(key, result) for (key, _), result in zip(pending, results)]
