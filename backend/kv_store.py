"""
Key-Value Store
===============
Persistence layer for sessions, carts, inventory ledger records and orders.

This module provides:
- KeyValueStore interface (get / set-with-TTL / delete / conditional write)
- RedisKeyValueStore backed by redis.asyncio with a Lua compare-and-set
- InMemoryKeyValueStore for tests and local development
- atomic_update: the CAS retry loop every read-modify-write goes through

pip install redis structlog
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from errors import StoreContention, StoreUnavailable

# Resolved on first use, after configure_logging()
logger = structlog.get_logger(component="kv_store")

Clock = Callable[[], float]


# =============================================================================
# INTERFACE
# =============================================================================

class KeyValueStore(ABC):
    """Async key-value store with a conditional-write primitive."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        """SET NX. Returns True if the key was written."""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Write `value` only if the current value equals `expected`.

        `expected=None` means the key must not exist.
        """
        pass

    @abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


# =============================================================================
# REDIS
# =============================================================================

# KEYS[1] key | ARGV[1] "1" if key must be absent | ARGV[2] expected
# ARGV[3] new value | ARGV[4] ttl seconds (0 = none)
CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
    if current then return 0 end
else
    if current ~= ARGV[2] then return 0 end
end
local ttl = tonumber(ARGV[4])
if ttl > 0 then
    redis.call('SET', KEYS[1], ARGV[3], 'EX', ttl)
else
    redis.call('SET', KEYS[1], ARGV[3])
end
return 1
"""


def _ttl_arg(ttl_seconds: Optional[float]) -> Optional[int]:
    if not ttl_seconds:
        return None
    return max(1, math.ceil(ttl_seconds))


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Every call is bounded by `timeout`; Redis errors and timeouts surface as
    StoreUnavailable so callers never see raw client exceptions.
    """

    def __init__(self, url: str = None, timeout: float = None, client: redis.Redis = None):
        self._url = url or settings.REDIS_URL
        self._timeout = timeout or settings.STORE_TIMEOUT_SECONDS
        self._redis = client
        self._cas = None

    async def initialize(self):
        """Connect and register the CAS script"""
        if self._redis is None:
            self._redis = redis.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
            )
        self._cas = self._redis.register_script(CAS_SCRIPT)
        if not await self.ping():
            raise StoreUnavailable(f"Redis not reachable at {self._url.split('@')[-1]}")
        logger.info("redis_connected", url=self._url.split("@")[-1])

    async def _call(self, op: str, key: str, awaitable):
        try:
            async with asyncio.timeout(self._timeout):
                return await awaitable
        except (RedisError, TimeoutError) as e:
            logger.error("store_call_failed", op=op, key=key, error=str(e))
            raise StoreUnavailable(f"Store {op} failed: {e}", key=key) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key, self._redis.get(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self._call("set", key, self._redis.set(key, value, ex=_ttl_arg(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", key, self._redis.delete(key)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        result = await self._call(
            "set_if_absent", key,
            self._redis.set(key, value, ex=_ttl_arg(ttl_seconds), nx=True),
        )
        return bool(result)

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        args = [
            "1" if expected is None else "0",
            expected or "",
            value,
            _ttl_arg(ttl_seconds) or 0,
        ]
        result = await self._call("compare_and_set", key, self._cas(keys=[key], args=args))
        return result == 1

    async def scan(self, prefix: str) -> list[str]:
        async def collect():
            return [k async for k in self._redis.scan_iter(match=f"{prefix}*", count=500)]
        return await self._call("scan", prefix, collect())

    async def ping(self) -> bool:
        try:
            async with asyncio.timeout(self._timeout):
                return bool(await self._redis.ping())
        except (RedisError, TimeoutError, OSError) as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            logger.info("redis_closed")


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryKeyValueStore(KeyValueStore):
    """In-memory store with per-key expiry (swap for Redis in production)"""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl_seconds: Optional[float]):
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        # Yield so concurrent callers interleave the way they would against Redis
        await asyncio.sleep(0)
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        async with self._lock:
            self._put(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl_seconds)
            return True

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            self._put(key, value, ttl_seconds)
            return True

    async def scan(self, prefix: str) -> list[str]:
        async with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


# =============================================================================
# CONDITIONAL UPDATE
# =============================================================================

async def atomic_update(
    store: KeyValueStore,
    key: str,
    mutate: Callable[[Optional[str]], Optional[str]],
    ttl_seconds: Optional[float] = None,
    max_retries: int = None,
) -> Optional[str]:
    """
    Read-modify-write `key` under optimistic concurrency.

    `mutate` receives the current raw value (None if absent) and returns the
    new raw value, or None to leave the key untouched. It may raise to abort.
    Returns the value that is current after the call.
    """
    max_retries = max_retries or settings.CAS_MAX_RETRIES

    for attempt in range(1, max_retries + 1):
        current = await store.get(key)
        updated = mutate(current)
        if updated is None:
            return current
        if await store.compare_and_set(key, current, updated, ttl_seconds):
            return updated
        logger.debug("cas_conflict", key=key, attempt=attempt)

    logger.error("cas_retries_exhausted", key=key, attempts=max_retries)
    raise StoreContention(f"Too much contention on {key}", key=key)


async def create_store(backend: str = None) -> KeyValueStore:
    """Build and connect the configured store backend"""
    backend = backend or settings.STORE_BACKEND
    if backend == "memory":
        logger.warning("using_in_memory_store")
        return InMemoryKeyValueStore()

    store = RedisKeyValueStore()
    await store.initialize()
    return store
