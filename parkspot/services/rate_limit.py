import logging
import time
from typing import Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)


def _minute_bucket(ts: Optional[float] = None) -> int:
    return int((ts or time.time()) // 60)


class UserRateLimiter:
    """Fixed one-minute window per user and action.

    Counts live in Redis when a URL is configured, otherwise in this process.
    """

    def __init__(
        self,
        per_minute: int,
        redis_url: Optional[str] = None,
        prefix: str = "ps:rl",
        max_local_keys: int = 10_000,
    ):
        self.limit = max(1, per_minute)
        self.prefix = prefix
        self.max_local_keys = max_local_keys
        self._redis: Optional[Redis] = (
            Redis.from_url(redis_url, encoding="utf-8", decode_responses=True) if redis_url else None
        )
        self._mem: Dict[str, Tuple[int, float]] = {}

    def _prune_local(self, now: float) -> None:
        current = _minute_bucket(now)
        self._mem = {k: v for k, v in self._mem.items() if _minute_bucket(v[1]) == current}

    async def allow(self, action: str, user_id: Optional[str]) -> bool:
        if not user_id:
            return True
        key = f"{self.prefix}:{action}:{user_id}:{_minute_bucket()}"
        if self._redis is not None:
            try:
                val = await self._redis.incr(key)
                if val == 1:
                    await self._redis.expire(key, 120)
                return val <= self.limit
            except RedisError:
                log.warning("rate_limit.redis_unavailable action=%s; using local counter", action)
        # Fallback in-memory counter (per-process only)
        mem_key = f"{action}:{user_id}"
        now = time.time()
        if mem_key not in self._mem and len(self._mem) >= self.max_local_keys:
            self._prune_local(now)
        count, bucket_ts = self._mem.get(mem_key, (0, now))
        if _minute_bucket(bucket_ts) != _minute_bucket(now):
            count = 0
            bucket_ts = now
        count += 1
        self._mem[mem_key] = (count, bucket_ts)
        return count <= self.limit
