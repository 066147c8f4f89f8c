"""
Webhook event deduplication - bounded ledger of processed Stripe event ids.

Stripe retries deliveries until it sees a 2xx, so the same event id can
arrive several times (and concurrently). mark_seen() is a single atomic
check-then-set: exactly one caller wins for a given id.

Two backends share the same async contract:
- DedupLedger: in-process OrderedDict guarded by an asyncio.Lock (FIFO eviction)
- RedisDedupLedger: Lua script on Redis so several replicas share one ledger
"""
import asyncio
import logging
from collections import OrderedDict

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from billing_sentinel.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


class DedupLedger:
    """Bounded ordered set of seen event ids. Oldest id is evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("Ledger capacity must be at least 1")
        self.capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()
        self._lock = asyncio.Lock()

    async def seen(self, event_id: str) -> bool:
        async with self._lock:
            return event_id in self._ids

    async def mark_seen(self, event_id: str) -> bool:
        """
        Record an event id. Returns True if it was new, False if already seen.
        Check and insert happen under one lock acquisition.
        """
        async with self._lock:
            if event_id in self._ids:
                return False
            self._ids[event_id] = None
            while len(self._ids) > self.capacity:
                evicted, _ = self._ids.popitem(last=False)
                logger.debug("Dedup ledger evicted oldest event id %s", evicted)
            return True

    async def forget(self, event_id: str) -> None:
        """Release an id so a redelivery of the same event can be processed."""
        async with self._lock:
            self._ids.pop(event_id, None)

    def snapshot(self) -> list[str]:
        """Resident ids, oldest first."""
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)


# KEYS[1] = set of ids, KEYS[2] = insertion-ordered list, ARGV[1] = id, ARGV[2] = capacity
_MARK_SEEN_LUA = """
if redis.call('sadd', KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call('rpush', KEYS[2], ARGV[1])
local cap = tonumber(ARGV[2])
while redis.call('llen', KEYS[2]) > cap do
    local oldest = redis.call('lpop', KEYS[2])
    redis.call('srem', KEYS[1], oldest)
end
return 1
"""

_FORGET_LUA = """
redis.call('srem', KEYS[1], ARGV[1])
redis.call('lrem', KEYS[2], 0, ARGV[1])
return 1
"""


class RedisDedupLedger:
    """
    Redis-backed ledger with the same contract as DedupLedger.
    A Redis failure fails closed: the error propagates
    and the delivery is rejected so Stripe retries it later.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        namespace: str = "billing_sentinel:webhook_seen",
        redis=None,
    ):
        self.capacity = capacity
        self._set_key = f"{namespace}:ids"
        self._list_key = f"{namespace}:order"
        self._redis = redis

    async def _client(self):
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def seen(self, event_id: str) -> bool:
        redis = await self._client()
        return bool(await redis.sismember(self._set_key, event_id))

    async def mark_seen(self, event_id: str) -> bool:
        redis = await self._client()
        result = await redis.eval(
            _MARK_SEEN_LUA, 2, self._set_key, self._list_key, event_id, self.capacity,
        )
        return bool(int(result))

    async def forget(self, event_id: str) -> None:
        redis = await self._client()
        await redis.eval(_FORGET_LUA, 2, self._set_key, self._list_key, event_id)


def build_ledger(backend: str, capacity: int, redis=None) -> "DedupLedger | RedisDedupLedger":
    """Create the configured ledger backend."""
    if backend == "redis":
        return RedisDedupLedger(capacity=capacity, redis=redis)
    if backend != "memory":
        logger.warning("Unknown dedup backend '%s' - using in-memory ledger", backend)
    return DedupLedger(capacity=capacity)
