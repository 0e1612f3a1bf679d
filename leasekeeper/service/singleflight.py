from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Generic, Hashable, Tuple, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Collapse concurrent calls for the same key into one execution.

    The first caller for a key runs ``fn``; callers arriving while it is in
    flight await the same future and receive its result (or its exception).
    The key is released as soon as the call finishes, so later calls run
    ``fn`` again.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._in_flight: Dict[Hashable, asyncio.Future] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> Tuple[T, bool]:
        """Run ``fn`` under ``key``; returns ``(result, shared)``."""
        async with self._lock:
            pending = self._in_flight.get(key)
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                self._in_flight[key] = pending
                leader = True
            else:
                leader = False

        if not leader:
            # shield: a cancelled waiter must not cancel the leader's future
            return await asyncio.shield(pending), True

        try:
            result = await fn()
        except asyncio.CancelledError:
            pending.cancel()
            raise
        except Exception as exc:
            pending.set_exception(exc)
            # Retrieve so an unawaited failure is not reported as unhandled.
            pending.exception()
            raise
        else:
            pending.set_result(result)
            return result, False
        finally:
            async with self._lock:
                self._in_flight.pop(key, None)

    async def in_flight(self) -> int:
        async with self._lock:
            return len(self._in_flight)
