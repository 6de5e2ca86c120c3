from __future__ import annotations

import asyncio
import fnmatch
import heapq
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from authguard.storage.redis_cache import RedisCache, SetMember, ValueWrite


class LocalCache:
    """Process-local stand-in for ``RedisCache``.

    Backs the per-IP fallback limiter when Redis is down and runs the whole
    pipeline in TEST_MODE. Counts are accurate only within one process.
    All state sits behind a single ``asyncio.Lock``. Writes first purge keys
    whose expiry has passed, so keys that are never read again do not pile up.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        # (expires_at, key); entries superseded by a later expiry are skipped
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = asyncio.Lock()
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    async def connect(self) -> "LocalCache":
        return self

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
            self._expires.clear()
            self._expiry_heap.clear()

    async def ping(self) -> bool:
        return True

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self._now_ms():
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    def _ttl_ms(self, key: str) -> int:
        expires_at = self._expires.get(key)
        if expires_at is None:
            return -1
        return max(0, int(expires_at - self._now_ms()))

    def _purge_expired(self) -> None:
        now = self._now_ms()
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expires_at, key = heapq.heappop(heap)
            if self._expires.get(key) == expires_at:
                self._data.pop(key, None)
                self._expires.pop(key, None)

    def _expire_in(self, key: str, ttl_ms: Optional[float]) -> None:
        if ttl_ms and ttl_ms > 0:
            expires_at = self._now_ms() + ttl_ms
            self._expires[key] = expires_at
            heapq.heappush(self._expiry_heap, (expires_at, key))
        else:
            self._expires.pop(key, None)

    # counters
    async def consume_points(
        self, key: str, points: int, duration_ms: int, block_ms: int, cost: int = 1
    ) -> Tuple[int, int]:
        cost = max(1, cost)
        async with self._lock:
            self._purge_expired()
            consumed = (int(self._data[key]) if self._alive(key) else 0) + cost
            self._data[key] = str(consumed)
            if self._ttl_ms(key) < 0:
                self._expire_in(key, duration_ms)
            if block_ms > 0 and consumed > points and consumed - cost <= points:
                self._expire_in(key, block_ms)
            return consumed, self._ttl_ms(key)

    async def peek_points(self, key: str) -> Tuple[int, int]:
        async with self._lock:
            if not self._alive(key):
                return 0, 0
            return int(self._data[key]), max(0, self._ttl_ms(key))

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            self._purge_expired()
            count = (int(self._data[key]) if self._alive(key) else 0) + 1
            self._data[key] = str(count)
            self._expire_in(key, ttl_seconds * 1000)
            return count

    # plain values
    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            if not self._alive(key):
                return None
            value = self._data[key]
            return value if isinstance(value, str) else None

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [await self.get(key) for key in keys]

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        async with self._lock:
            self._purge_expired()
            if nx and self._alive(key):
                return False
            self._data[key] = value
            self._expire_in(key, ex * 1000 if ex else None)
            return True

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return removed

    async def pttl(self, key: str) -> int:
        async with self._lock:
            if not self._alive(key):
                return -2
            return self._ttl_ms(key)

    async def scan_keys(self, pattern: str) -> List[str]:
        async with self._lock:
            return [key for key in list(self._data) if self._alive(key) and fnmatch.fnmatchcase(key, pattern)]

    # lists and sets
    async def append_record(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._purge_expired()
            records = self._data[key] if self._alive(key) else []
            records.append(value)
            self._data[key] = records
            self._expire_in(key, ttl_seconds * 1000)

    async def list_records(self, key: str) -> List[str]:
        async with self._lock:
            if not self._alive(key):
                return []
            return list(self._data[key])

    async def smembers(self, key: str) -> Set[str]:
        async with self._lock:
            if not self._alive(key):
                return set()
            return set(self._data[key])

    async def sismember(self, key: str, member: str) -> bool:
        return member in await self.smembers(key)

    async def srem(self, key: str, *members: str) -> int:
        async with self._lock:
            if not self._alive(key):
                return 0
            current: Set[str] = self._data[key]
            removed = len(current.intersection(members))
            current.difference_update(members)
            return removed

    # transactions and locks
    async def commit(
        self,
        writes: Iterable[ValueWrite] = (),
        *,
        set_adds: Iterable[SetMember] = (),
        set_removes: Iterable[SetMember] = (),
    ) -> None:
        async with self._lock:
            self._purge_expired()
            for key, value, ttl in writes:
                self._data[key] = value
                self._expire_in(key, ttl * 1000 if ttl and ttl > 0 else None)
            for set_key, member in set_adds:
                members = self._data[set_key] if self._alive(set_key) else set()
                members.add(member)
                self._data[set_key] = members
            for set_key, member in set_removes:
                if self._alive(set_key):
                    self._data[set_key].discard(member)

    async def acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        return await self.set(key, token, ex=ttl_seconds, nx=True)

    async def release_lock(self, key: str, token: str) -> bool:
        async with self._lock:
            if self._alive(key) and self._data[key] == token:
                self._data.pop(key, None)
                self._expires.pop(key, None)
                return True
            return False

    # pub/sub
    async def publish(self, channel: str, message: str) -> int:
        queues = list(self._subscribers.get(channel, []))
        for queue in queues:
            queue.put_nowait(message)
        return len(queues)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(channel, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].remove(queue)


# Anything the defense services can run against
CoordinationStore = Union[RedisCache, LocalCache]
