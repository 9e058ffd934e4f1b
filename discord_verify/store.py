"""Redis storage — the single durable source of truth."""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from discord_verify.exceptions import StoreUnavailableError
from discord_verify.logging_config import get_logger

logger = get_logger(__name__)


class RedisStore:
    """
    Thin async wrapper around Redis.

    Every Redis failure is re-raised as StoreUnavailableError so callers only
    deal with the service's own error taxonomy.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise StoreUnavailableError("ping", e) from e

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            logger.error("store_get_failed", key=key, error=str(e))
            raise StoreUnavailableError("get", e) from e

    async def set(self, key: str, value: str) -> None:
        try:
            await self.client.set(key, value)
        except RedisError as e:
            logger.error("store_set_failed", key=key, error=str(e))
            raise StoreUnavailableError("set", e) from e

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.setex(key, ttl_seconds, value)
        except RedisError as e:
            logger.error("store_setex_failed", key=key, error=str(e))
            raise StoreUnavailableError("setex", e) from e

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            return bool(await self.client.delete(key))
        except RedisError as e:
            logger.error("store_delete_failed", key=key, error=str(e))
            raise StoreUnavailableError("delete", e) from e

    async def set_many(self, values: dict[str, str]) -> None:
        """Write several keys in one MULTI/EXEC transaction: all or nothing."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key, value in values.items():
                    pipe.set(key, value)
                await pipe.execute()
        except RedisError as e:
            logger.error("store_set_many_failed", keys=list(values), error=str(e))
            raise StoreUnavailableError("set_many", e) from e

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several keys in one transaction. Returns how many existed."""
        if not keys:
            return 0
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.delete(key)
                results = await pipe.execute()
        except RedisError as e:
            logger.error("store_delete_many_failed", keys=keys, error=str(e))
            raise StoreUnavailableError("delete_many", e) from e
        return sum(int(r) for r in results)

    async def keys_matching(self, pattern: str) -> list[str]:
        """SCAN for keys matching a glob. Best-effort; not for correctness."""
        try:
            return [key async for key in self.client.scan_iter(match=pattern, count=500)]
        except RedisError as e:
            logger.error("store_scan_failed", pattern=pattern, error=str(e))
            raise StoreUnavailableError("scan", e) from e

    async def close(self) -> None:
        await self.client.aclose()
