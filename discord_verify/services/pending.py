"""
Pending verification registry — issue, look up and consume /verify tokens.

Redis is authoritative: a token is only handed out after its record is
stored there with the TTL. The in-process dict is a read cache in front of
it and never holds anything Redis does not.
"""
import asyncio
import time
import uuid
from typing import Callable, Optional

from pydantic import ValidationError

from discord_verify.logging_config import get_logger
from discord_verify.models.verification import PendingVerification
from discord_verify.store import RedisStore
from discord_verify.utils import keys

logger = get_logger(__name__)

TOKEN_TTL_SECONDS = 600


class PendingVerificationRegistry:
    def __init__(
        self,
        store: RedisStore,
        ttl_seconds: int = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: dict[str, PendingVerification] = {}
        # token -> consumed_at; stops a slow lookup from re-caching a consumed token
        self._consumed: dict[str, float] = {}
        # writers only; readers copy out of the dict without awaiting
        self._lock = asyncio.Lock()

    async def create(self, discord_user_id: str, discord_username: str, guild_id: str) -> str:
        """
        Issue a fresh token for this user/server.
        Raises StoreUnavailableError if Redis does not accept the record.
        """
        token = str(uuid.uuid4())
        record = PendingVerification(
            discord_user_id=discord_user_id,
            discord_username=discord_username,
            guild_id=guild_id,
            created_at=int(self.clock()),
        )
        await self.store.set_with_ttl(
            keys.pending_verification(token),
            record.model_dump_json(),
            self.ttl_seconds,
        )

        async with self._lock:
            self._cache[token] = record
            self._prune_locked()

        logger.info(
            "pending_verification_created",
            token=token,
            discord_user_id=discord_user_id,
            guild_id=guild_id,
        )
        return token

    async def lookup(self, token: str) -> Optional[PendingVerification]:
        """Cache first, then Redis. Expired or consumed tokens are absent."""
        now = self.clock()

        record = self._cache.get(token)
        if record is not None:
            if record.is_expired(now, self.ttl_seconds):
                async with self._lock:
                    self._cache.pop(token, None)
                return None
            return record

        if token in self._consumed:
            return None

        raw = await self.store.get(keys.pending_verification(token))
        if raw is None:
            return None
        try:
            record = PendingVerification.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("pending_verification_corrupt", token=token, error=str(e))
            return None
        if record.is_expired(now, self.ttl_seconds):
            return None

        async with self._lock:
            if token in self._consumed:
                return None
            self._cache.setdefault(token, record)
        return record

    async def consume(self, token: str) -> bool:
        """
        Delete the token from cache and Redis.

        Returns True only for the call that actually claimed the token; a
        repeated consume is a no-op returning False. If Redis fails, the
        claim is rolled back and StoreUnavailableError propagates.
        """
        async with self._lock:
            if token in self._consumed:
                return False
            self._consumed[token] = self.clock()
            cached = self._cache.pop(token, None)

        try:
            existed = await self.store.delete(keys.pending_verification(token))
        except Exception:
            async with self._lock:
                self._consumed.pop(token, None)
                if cached is not None:
                    self._cache.setdefault(token, cached)
            raise

        if cached is None and not existed:
            # never issued, or already expired out of Redis
            logger.debug("pending_verification_consume_noop", token=token)
            return False

        logger.info("pending_verification_consumed", token=token)
        return True

    def _prune_locked(self) -> None:
        now = self.clock()
        for token in [t for t, r in self._cache.items() if r.is_expired(now, self.ttl_seconds)]:
            del self._cache[token]
        for token in [t for t, at in self._consumed.items() if now - at >= self.ttl_seconds]:
            del self._consumed[token]
