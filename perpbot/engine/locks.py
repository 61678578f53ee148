"""Per-bot execution locks and per-key in-flight de-duplication.

Both are process-local; a multi-process deployment relies on the retry
queue's atomic claim and the snapshot version check instead.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


class BotLockRegistry:
    """One asyncio.Lock per bot id, created on first use."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get(self, bot_id: int) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(bot_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[bot_id] = lock
            return lock

    @asynccontextmanager
    async def hold(self, bot_id: int):
        """Serialize validate→size→execute for one bot."""
        lock = await self.get(bot_id)
        if lock.locked():
            logger.debug(f"[bot {bot_id}] Waiting for in-flight execution")
        async with lock:
            yield

    @asynccontextmanager
    async def try_hold(self, bot_id: int):
        """Hold the bot's lock if it is free; yields False without waiting otherwise."""
        lock = await self.get(bot_id)
        if lock.locked():
            yield False
            return
        async with lock:
            yield True


class SingleFlight:
    """Concurrent callers for the same key share one in-flight call."""

    def __init__(self):
        self._inflight: dict[Hashable, asyncio.Future] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        fut = self._inflight.get(key)
        if fut is not None:
            return await asyncio.shield(fut)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            result = await fn()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # Mark retrieved so a future nobody else awaited doesn't warn
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    def inflight(self, key: Hashable) -> bool:
        return key in self._inflight
