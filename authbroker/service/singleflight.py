from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Hashable, Optional, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Collapse concurrent calls for the same key into one execution.

    The first caller for a key runs ``fn``; callers arriving while it is in
    flight await the same future and receive its result or its exception.
    The slot is released as soon as the call settles, so the next caller
    starts a fresh execution.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def _current(self, key: Hashable) -> Optional[asyncio.Future]:
        existing = self._inflight.get(key)
        # Futures are bound to their loop; a leftover from another loop is ignored
        if existing is None or existing.get_loop() is not asyncio.get_running_loop():
            return None
        return existing

    def in_flight(self, key: Hashable) -> bool:
        return self._current(key) is not None

    async def settled(self, key: Hashable) -> None:
        """Wait for the call in flight for ``key`` to finish, whatever its outcome."""
        existing = self._current(key)
        if existing is not None:
            await asyncio.wait({existing})

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        existing = self._current(key)
        if existing is not None:
            # shield: a cancelled waiter must not cancel the shared call
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as exc:
            future.set_exception(exc)
            # Mark retrieved so an unawaited failure is not reported as lost
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]
