from typing import Dict, Optional, List, Tuple

from .config import TESTING, REDIS_URL

if not TESTING:
    import redis.asyncio as redis  # type: ignore
    RedisClient = redis.Redis
else:
    RedisClient = None

# Key names used by the evaluation queue
JOBS_HASH = "evalq:jobs"
WAITING_ZSET = "evalq:waiting"
DELAYED_ZSET = "evalq:delayed"
SEQUENCE_KEY = "evalq:seq"


class AsyncInMemoryRedis:
    """The subset of redis commands the job queue uses, held in dicts."""

    def __init__(self):
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._counters: Dict[str, int] = {}

    async def ping(self):
        return True

    async def hset(self, name: str, key: str, value: str):
        h = self._hashes.setdefault(name, {})
        h[key] = value
        return 1

    async def hget(self, name: str, key: str) -> Optional[str]:
        h = self._hashes.get(name, {})
        return h.get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def hdel(self, name: str, *keys: str) -> int:
        h = self._hashes.get(name, {})
        removed = 0
        for k in keys:
            if k in h:
                del h[k]
                removed += 1
        return removed

    async def incr(self, name: str) -> int:
        self._counters[name] = self._counters.get(name, 0) + 1
        return self._counters[name]

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for store in (self._hashes, self._zsets, self._counters):
                if name in store:
                    del store[name]
                    removed += 1
        return removed

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = score
        return added

    async def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    async def zrangebyscore(self, name: str, min_score: float, max_score: float) -> List[str]:
        z = self._zsets.get(name, {})
        items = sorted(z.items(), key=lambda kv: kv[1])
        return [m for m, s in items if min_score <= s <= max_score]

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        return removed

    async def zpopmin(self, name: str, count: int = 1) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        if not z:
            return []
        # Get members sorted by score
        items = sorted(z.items(), key=lambda kv: kv[1])
        popped = items[:count]
        for m, _ in popped:
            del z[m]
        return popped

    async def aclose(self):
        return None


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None


async def get_redis():
    global _inmemory_client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    else:
        return RedisClient.from_url(REDIS_URL, decode_responses=True)  # type: ignore
