"""
/setuproles wizard sessions, one per (server, operator), in process memory.

Sessions expire SETUP_SESSION_TTL_SECONDS after their last change; expired
entries are dropped on every table access. Opening the wizard again
replaces the operator's session. take_validated() removes the session before
it is handed to the reconciler, whatever the reconciler's outcome.
"""
import asyncio
import time
from typing import Callable

from discord_verify.exceptions import InvalidSetupSessionError, SetupSessionExpiredError
from discord_verify.logging_config import get_logger
from discord_verify.models.roles import RoleKey, RoleMode
from discord_verify.models.setup_session import SetupSession

logger = get_logger(__name__)

SESSION_TTL_SECONDS = 900

SessionKey = tuple[str, str]


class SetupSessionTable:
    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._sessions: dict[SessionKey, SetupSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _purge_locked(self, now: float) -> None:
        expired = [k for k, s in self._sessions.items() if now - s.touched_at >= self.ttl_seconds]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.info("setup_sessions_expired", count=len(expired))

    async def open(self, guild_id: str, operator_id: str) -> SetupSession:
        async with self._lock:
            now = self.clock()
            self._purge_locked(now)
            session = SetupSession(guild_id=guild_id, operator_id=operator_id, touched_at=now)
            replaced = self._sessions.get((guild_id, operator_id)) is not None
            self._sessions[(guild_id, operator_id)] = session
        logger.info("setup_session_opened", guild_id=guild_id, operator_id=operator_id, replaced=replaced)
        return session

    def peek(self, guild_id: str, operator_id: str) -> SetupSession | None:
        """Live session or None. Lock-free; never mutates the table."""
        session = self._sessions.get((guild_id, operator_id))
        if session is None or self.clock() - session.touched_at >= self.ttl_seconds:
            return None
        return session

    async def _mutate(
        self, guild_id: str, operator_id: str, change: Callable[[SetupSession], None]
    ) -> SetupSession:
        async with self._lock:
            now = self.clock()
            self._purge_locked(now)
            session = self._sessions.get((guild_id, operator_id))
            if session is None:
                raise SetupSessionExpiredError(guild_id, operator_id)
            change(session)
            session.touched_at = now
            return session

    async def select_mode(self, guild_id: str, operator_id: str, mode: RoleMode) -> SetupSession:
        session = await self._mutate(guild_id, operator_id, lambda s: s.select_mode(mode))
        logger.info("setup_mode_selected", guild_id=guild_id, operator_id=operator_id, mode=mode.value)
        return session

    async def select_custom(
        self, guild_id: str, operator_id: str, role_keys: frozenset[RoleKey]
    ) -> SetupSession:
        session = await self._mutate(guild_id, operator_id, lambda s: s.select_custom(role_keys))
        logger.info(
            "setup_custom_selected",
            guild_id=guild_id,
            operator_id=operator_id,
            role_keys=sorted(str(k) for k in role_keys),
        )
        return session

    async def take_validated(self, guild_id: str, operator_id: str) -> SetupSession:
        """
        Validate the session and remove it from the table.

        An invalid session raises InvalidSetupSessionError and stays in the
        table so the operator can fix the selection.
        """
        async with self._lock:
            now = self.clock()
            self._purge_locked(now)
            session = self._sessions.get((guild_id, operator_id))
            if session is None:
                raise SetupSessionExpiredError(guild_id, operator_id)
            error = session.validate()
            if error is not None:
                session.touched_at = now
                raise InvalidSetupSessionError(error, guild_id, operator_id)
            del self._sessions[(guild_id, operator_id)]
            return session

