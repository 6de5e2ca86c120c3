from __future__ import annotations

import contextlib
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authguard.logging import get_logger
from authguard.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# (key, value, ttl_seconds or None)
ValueWrite = Tuple[str, str, Optional[int]]
# (set_key, member)
SetMember = Tuple[str, str]


class RedisCache:
    """Coordination store for limiter counters, CAPTCHA state and signing keys.

    The client is created by ``connect()`` and released by ``close()``; no
    module-level connection exists. Every command failure surfaces as
    ``StoreUnavailable`` so callers can pick fail-open or fail-closed per tier.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window consume with optional block. Mirrors rate-limiter-flexible:
    # the window TTL is set only when the key has none, and the first point past
    # the limit stretches the TTL to the block duration.
    _CONSUME_SCRIPT = """
local consumed = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = redis.call('PTTL', KEYS[1])
local points = tonumber(ARGV[2])
local duration_ms = tonumber(ARGV[3])
local block_ms = tonumber(ARGV[4])
local cost = tonumber(ARGV[1])

if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], duration_ms)
  ttl = duration_ms
end

if block_ms > 0 and consumed > points and (consumed - cost) <= points then
  redis.call('PEXPIRE', KEYS[1], block_ms)
  ttl = block_ms
end

return {consumed, ttl}
"""

    # INCR and EXPIRE as one step so a crash between them cannot leave a counter without TTL
    _INCR_EXPIRE_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[1])
return count
"""

    # Release a lock only while we still own it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client: aioredis.Redis | None = None
        self._consume_script = None
        self._incr_expire_script = None
        self._release_lock_script = None

    async def connect(self) -> "RedisCache":
        """Open the connection pool and verify connectivity."""
        if self.client is not None:
            return self
        client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            await client.aclose()
            raise StoreUnavailable("redis connection failed", {"error": str(exc)}) from exc
        self.client = client
        self._consume_script = client.register_script(self._CONSUME_SCRIPT)
        self._incr_expire_script = client.register_script(self._INCR_EXPIRE_SCRIPT)
        self._release_lock_script = client.register_script(self._RELEASE_LOCK_SCRIPT)
        logger.info("redis_connected")
        return self

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        if self.client is None:
            return
        client, self.client = self.client, None
        await client.aclose()
        await client.connection_pool.disconnect()
        logger.info("redis_closed")

    async def __aenter__(self) -> "RedisCache":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def ping(self) -> bool:
        async with self._command("ping"):
            return bool(await self._client.ping())

    @property
    def _client(self) -> aioredis.Redis:
        if self.client is None:
            raise StoreUnavailable("redis client is not connected")
        return self.client

    @contextlib.asynccontextmanager
    async def _command(self, op: str):
        try:
            yield
        except (RedisError, OSError) as exc:
            logger.warning("redis_command_failed", op=op, error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable(f"redis {op} failed", {"op": op}) from exc

    # =========================================================================
    # Counters
    # =========================================================================

    async def consume_points(
        self, key: str, points: int, duration_ms: int, block_ms: int, cost: int = 1
    ) -> Tuple[int, int]:
        """Atomically consume points; returns (consumed, ms until the key expires)."""
        async with self._command("consume"):
            consumed, ttl = await self._consume_script(
                keys=[key], args=[max(1, cost), points, duration_ms, block_ms]
            )
        return int(consumed), max(0, int(ttl))

    async def peek_points(self, key: str) -> Tuple[int, int]:
        async with self._command("peek"):
            pipe = self._client.pipeline(transaction=False)
            pipe.get(key)
            pipe.pttl(key)
            value, ttl = await pipe.execute()
        if value is None:
            return 0, 0
        return int(value), max(0, int(ttl))

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        async with self._command("incr"):
            return int(await self._incr_expire_script(keys=[key], args=[ttl_seconds]))

    # =========================================================================
    # Plain values
    # =========================================================================

    async def get(self, key: str) -> Optional[str]:
        async with self._command("get"):
            return await self._client.get(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        async with self._command("mget"):
            return list(await self._client.mget(list(keys)))

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        async with self._command("set"):
            return bool(await self._client.set(key, value, ex=ex, nx=nx))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._command("delete"):
            return int(await self._client.delete(*keys))

    async def pttl(self, key: str) -> int:
        async with self._command("pttl"):
            return int(await self._client.pttl(key))

    async def scan_keys(self, pattern: str) -> List[str]:
        """SCAN-based key listing; never uses KEYS on a shared instance."""
        async with self._command("scan"):
            return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    # =========================================================================
    # Lists and sets
    # =========================================================================

    async def append_record(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._command("rpush"):
            pipe = self._client.pipeline(transaction=True)
            pipe.rpush(key, value)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def list_records(self, key: str) -> List[str]:
        async with self._command("lrange"):
            return list(await self._client.lrange(key, 0, -1))

    async def smembers(self, key: str) -> Set[str]:
        async with self._command("smembers"):
            return set(await self._client.smembers(key))

    async def sismember(self, key: str, member: str) -> bool:
        async with self._command("sismember"):
            return bool(await self._client.sismember(key, member))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._command("srem"):
            return int(await self._client.srem(key, *members))

    # =========================================================================
    # Transactions and locks
    # =========================================================================

    async def commit(
        self,
        writes: Iterable[ValueWrite] = (),
        *,
        set_adds: Iterable[SetMember] = (),
        set_removes: Iterable[SetMember] = (),
    ) -> None:
        """Apply a group of writes in one MULTI/EXEC so readers never see a partial state."""
        async with self._command("commit"):
            pipe = self._client.pipeline(transaction=True)
            for key, value, ttl in writes:
                pipe.set(key, value, ex=ttl if ttl and ttl > 0 else None)
            for set_key, member in set_adds:
                pipe.sadd(set_key, member)
            for set_key, member in set_removes:
                pipe.srem(set_key, member)
            await pipe.execute()

    async def acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        return await self.set(key, token, ex=ttl_seconds, nx=True)

    async def release_lock(self, key: str, token: str) -> bool:
        async with self._command("release_lock"):
            return bool(await self._release_lock_script(keys=[key], args=[token]))

    # =========================================================================
    # Pub/sub
    # =========================================================================

    async def publish(self, channel: str, message: str) -> int:
        async with self._command("publish"):
            return int(await self._client.publish(channel, message))

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Yield message payloads published on ``channel`` until cancelled."""
        pubsub = self._client.pubsub()
        try:
            async with self._command("subscribe"):
                await pubsub.subscribe(channel)
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        yield message["data"]
        finally:
            with contextlib.suppress(RedisError, OSError):
                await pubsub.unsubscribe(channel)
            await pubsub.aclose()
