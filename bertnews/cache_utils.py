from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable


class SingleFlight[K: Hashable, V]:
    """
    Collapse concurrent fills of the same key into one computation.

    The first caller for a key runs `fill`; callers arriving while it is in
    flight await the same result (or exception). Nothing is retained once
    the computation settles, so results must be cached by the caller.
    """

    def __init__(self) -> None:
        self._inflight: dict[K, asyncio.Future[V]] = {}

    def inflight(self, key: K) -> bool:
        return key in self._inflight

    async def do(self, key: K, fill: Callable[[], Awaitable[V]]) -> V:
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        fut: asyncio.Future[V] = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            result = await fill()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # Mark retrieved so an unawaited failure does not warn at GC
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            del self._inflight[key]
