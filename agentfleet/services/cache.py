"""
Redis-backed shared state: status cache, debounce keys, task monitor state and leases
"""
import json
import logging
import secrets
from typing import List, Optional

import redis.asyncio as redis

from agentfleet.config import settings
from agentfleet.models.task import RecordedAction

logger = logging.getLogger(__name__)

# Deletes the key only while it still holds our owner token
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


def create_redis(url: Optional[str] = None) -> redis.Redis:
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)


class RedisLease:
    """
    Expiring, owner-verified lease (SET NX EX).

    Unlike a lock there is no blocking acquire; a caller that does not get the
    lease is expected to wait for the holder's outcome some other way.
    """

    def __init__(self, client: redis.Redis, key: str, ttl: int):
        self._redis = client
        self.key = key
        self.ttl = ttl
        self.owner = secrets.token_hex(16)
        self.acquired = False

    async def acquire(self) -> bool:
        self.acquired = bool(await self._redis.set(self.key, self.owner, nx=True, ex=self.ttl))
        if self.acquired:
            logger.debug(f"[lease] acquired {self.key} (ttl={self.ttl}s)")
        return self.acquired

    async def release(self) -> bool:
        if not self.acquired:
            return False
        self.acquired = False
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, self.owner)
        if not released:
            logger.warning(f"[lease] {self.key} expired before release")
        return bool(released)

    async def is_held(self) -> bool:
        return await self._redis.exists(self.key) > 0


class FleetCache:
    """Namespaced accessors over a redis.asyncio client"""

    def __init__(self, client: redis.Redis, prefix: str = "fleet"):
        self.redis = client
        self.prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    # Container status cache

    async def get_status(self, tenant_id: str) -> Optional[str]:
        return await self.redis.get(self._key("container", "status", tenant_id))

    async def set_status(self, tenant_id: str, status: str, ttl: int = settings.STATUS_CACHE_TTL_SECONDS) -> None:
        await self.redis.set(self._key("container", "status", tenant_id), status, ex=ttl)

    async def drop_status(self, tenant_id: str) -> None:
        await self.redis.delete(self._key("container", "status", tenant_id))

    # Debounce / dedupe

    async def claim_window(self, name: str, ttl: int) -> bool:
        """True for the first caller inside a ttl-second window"""
        return bool(await self.redis.set(self._key("window", name), "1", nx=True, ex=max(1, int(ttl))))

    def lease(self, name: str, ttl: int) -> RedisLease:
        return RedisLease(self.redis, self._key("lease", name), ttl)

    # Task monitor state

    def _task_keys(self, tenant_id: str, task_id: str):
        return (
            self._key("task", "start", tenant_id, task_id),
            self._key("task", "tokens", tenant_id, task_id),
            self._key("task", "actions", tenant_id, task_id),
        )

    async def init_task(self, tenant_id: str, task_id: str, start_time: float, ttl: int) -> None:
        start_key, tokens_key, actions_key = self._task_keys(tenant_id, task_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(start_key, repr(start_time), ex=ttl)
            pipe.set(tokens_key, 0, ex=ttl)
            pipe.delete(actions_key)
            await pipe.execute()

    async def task_exists(self, tenant_id: str, task_id: str) -> bool:
        start_key, _, _ = self._task_keys(tenant_id, task_id)
        return await self.redis.exists(start_key) > 0

    async def push_task_action(self, tenant_id: str, task_id: str, action: RecordedAction, ttl: int) -> None:
        _, _, actions_key = self._task_keys(tenant_id, task_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(actions_key, action.model_dump_json())
            pipe.expire(actions_key, ttl)
            await pipe.execute()

    async def add_task_tokens(self, tenant_id: str, task_id: str, tokens: int, ttl: int) -> int:
        _, tokens_key, _ = self._task_keys(tenant_id, task_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incrby(tokens_key, tokens)
            pipe.expire(tokens_key, ttl)
            total, _ = await pipe.execute()
        return int(total)

    async def load_task(self, tenant_id: str, task_id: str):
        """Returns (start_time, tokens, actions) or None when the state has expired"""
        start_key, tokens_key, actions_key = self._task_keys(tenant_id, task_id)
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.get(start_key)
            pipe.get(tokens_key)
            pipe.lrange(actions_key, 0, -1)
            start, tokens, raw_actions = await pipe.execute()
        if start is None:
            return None
        actions: List[RecordedAction] = [RecordedAction(**json.loads(a)) for a in raw_actions or []]
        return float(start), int(tokens or 0), actions

    async def clear_task(self, tenant_id: str, task_id: str) -> None:
        await self.redis.delete(*self._task_keys(tenant_id, task_id))
