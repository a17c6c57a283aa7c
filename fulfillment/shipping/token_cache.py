import asyncio
import time
from typing import Dict, Optional, Tuple
from fulfillment.cache._cache import redis_client
from fulfillment.config.settings import config_settings

VENDOR_TOKEN_KEY = "shipping:vendor_token"


class TokenCache:
    """Keyed cache with an explicit TTL and invalidation. Implementations must be safe to share across tasks."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def invalidate(self, key: str) -> None:
        raise NotImplementedError


class LocalTokenCache(TokenCache):
    """Process-local cache. Fine for a single worker process and for tests."""

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)


class RedisTokenCache(TokenCache):
    """Shared across processes; redis owns the expiry."""

    def __init__(self, client):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(key)
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=int(ttl_seconds))

    async def invalidate(self, key: str) -> None:
        await self.client.delete(key)


def build_token_cache(kind: Optional[str] = None) -> TokenCache:
    kind = (kind or config_settings.SHIPPING_TOKEN_CACHE).lower()
    if kind == "redis":
        return RedisTokenCache(redis_client)
    if kind == "local":
        return LocalTokenCache()
    raise ValueError(f"unknown token cache backend {kind!r}")
