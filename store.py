import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the backing key-value store fails"""


class TokenStore:
    """
    Key-value store with per-key TTL used for clients, providers, sessions,
    authorization codes, refresh tokens and rate-limit counters.

    Values are JSON objects. `delete` is atomic and reports whether the key
    existed, so a successful delete is what decides single-use consumption.
    """

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStore(TokenStore):
    """Single-process store backed by a dict. Data is lost on restart."""

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and time.time() >= expires_at:
            self._data.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        self._data[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> bool:
        if self._live(key) is None:
            return False
        # No await between the check and the pop, so this is atomic on the event loop
        return self._data.pop(key, None) is not None

    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        records = []
        for key in sorted(k for k in list(self._data) if k.startswith(prefix)):
            raw = self._live(key)
            if raw is not None:
                records.append(json.loads(raw))
        return records

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed"""
        now = time.time()
        expired = [
            key for key, (_, expires_at) in self._data.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def cleanup_expired(self, interval: int):
        """Background task to clean up expired sessions, codes and tokens"""
        while True:
            try:
                removed = self.purge_expired()
                if removed:
                    logger.info(f"Cleaned up {removed} expired store entries")
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")
                await asyncio.sleep(60)  # Wait 1 minute on error


class RedisStore(TokenStore):
    """Store backed by Redis. Expiry is delegated to Redis key TTLs."""

    def __init__(self, url: str):
        self.client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StoreError(f"Redis GET failed for {key.split(':', 1)[0]}: {e}") from e
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl or None)
        except RedisError as e:
            raise StoreError(f"Redis SET failed for {key.split(':', 1)[0]}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return await self.client.delete(key) == 1
        except RedisError as e:
            raise StoreError(f"Redis DEL failed for {key.split(':', 1)[0]}: {e}") from e

    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        try:
            keys = sorted([key async for key in self.client.scan_iter(match=f"{prefix}*")])
            if not keys:
                return []
            values = await self.client.mget(keys)
        except RedisError as e:
            raise StoreError(f"Redis SCAN failed for {prefix}: {e}") from e
        return [json.loads(raw) for raw in values if raw is not None]

    async def close(self) -> None:
        await self.client.aclose()


def create_store(config) -> TokenStore:
    """Select the store backend from configuration"""
    if config.redis_url:
        logger.info("Using Redis token store")
        return RedisStore(config.redis_url)
    if config.is_production:
        logger.warning("REDIS_URL not set - using in-memory token store (single instance only)")
    else:
        logger.info("Using in-memory token store")
    return MemoryStore()
