"""
Exclusive access guard for the vector store + registry pair.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")


class ExclusiveGuard:
    """
    Serialise async operations that touch shared state.

    At most one operation runs inside the guard at a time; waiting callers
    are admitted in first-come-first-served order.  A failing operation
    releases the guard and its exception propagates to its own caller only.

    The guard is NOT reentrant: calling :meth:`run` from inside an operation
    that is already running under the same guard deadlocks.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def run(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        async with self._lock:
            return await operation(*args, **kwargs)

    def locked(self) -> bool:
        return self._lock.locked()
