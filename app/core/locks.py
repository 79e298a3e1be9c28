import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable

from redis.exceptions import LockError, RedisError

from app.core.config import settings
from app.core.exceptions import SessionBusy
from app.core.logger import get_logger
from app.core.redis import RedisClient

logger = get_logger("locks")


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """
    One asyncio.Lock per key, created on first use and dropped once nobody
    holds or waits on it. Unrelated keys never contend.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def active_keys(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    async def close(self):
        pass


class RedisKeyedLock(KeyedLock):
    """
    The process-local lock plus a Redis lock on the same key, so writers in
    different API workers take turns too. A write commits and publishes
    while holding both, which keeps channel order equal to commit order
    across workers.

    The Redis lock expires after ``timeout`` seconds in case its holder dies.
    Waiting longer than ``blocking_timeout`` raises ``SessionBusy``.
    """

    def __init__(self, client: RedisClient, timeout: float, blocking_timeout: float):
        super().__init__()
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def lock_name(self, key: Hashable) -> str:
        return self.client.channel_key(f"lock:{key}")

    @asynccontextmanager
    async def hold(self, key: Hashable):
        async with super().hold(key):
            lock = self.client.redis.lock(
                self.lock_name(key), timeout=self.timeout, blocking_timeout=self.blocking_timeout
            )
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                raise SessionBusy("Consultation is temporarily unavailable, try again",
                                  details={"consultation_id": str(key)}) from e
            if not acquired:
                raise SessionBusy("Consultation is busy, try again", details={"consultation_id": str(key)})
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError as e:
                    logger.warning(f"Write lock for {key} expired before it was released: {e}")

    async def close(self):
        await self.client.close()


def build_session_locks() -> KeyedLock:
    if settings.CHANNEL_BACKEND == "redis":
        return RedisKeyedLock(
            RedisClient(),
            timeout=settings.SESSION_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=settings.SESSION_LOCK_WAIT_SECONDS,
        )
    return KeyedLock()


# Shared by the message store and the presence coordinator so that appends,
# read marks and phase transitions for one consultation are linearizable.
session_locks = build_session_locks()
