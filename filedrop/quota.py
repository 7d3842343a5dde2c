import asyncio
import logging

from filedrop.kvstore import KVStore
from filedrop.models import Quota

logger = logging.getLogger(__name__)


class LockPool:
    """A fixed set of locks handed out by key; unrelated keys may share one."""

    def __init__(self, size: int = 64):
        self._locks = [asyncio.Lock() for _ in range(size)]

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]


class QuotaLedger:
    """Per-user ``{max, used}`` image counters kept in the key-value store.

    The store has no compare-and-swap, so read-modify-write cycles issued by
    this process are serialized per user. Callers still re-check the value
    returned by ``increment`` because other processes share the counter.
    """

    def __init__(self, kv: KVStore, *, default_max: int):
        self.kv = kv
        self.default_max = default_max
        self.locks = LockPool()

    @staticmethod
    def _hkey(username: str) -> str:
        return f"users:{username}:quota"

    async def get(self, username: str) -> Quota:
        raw = await self.kv.hget(self._hkey(username), "quota")
        if raw:
            try:
                return Quota.model_validate_json(raw)
            except ValueError:
                logger.warning("Discarding unreadable quota for %s", username)
        return Quota(max=self.default_max, used=0)

    async def set(self, username: str, quota: Quota) -> None:
        await self.kv.hset(self._hkey(username), "quota", quota.model_dump_json())

    async def increment(self, username: str, delta: int) -> Quota:
        async with self.locks.lock_for(username):
            quota = await self.get(username)
            updated = Quota(max=quota.max, used=max(quota.used + delta, 0))
            await self.set(username, updated)
        return updated

    async def reset(self, username: str, max_images: int) -> Quota:
        quota = Quota(max=max_images, used=0)
        async with self.locks.lock_for(username):
            await self.set(username, quota)
        return quota
