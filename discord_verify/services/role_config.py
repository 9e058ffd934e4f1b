"""
Role configuration — read a server's role setup from Redis and check it
against the roles that actually exist on Discord.

Stale role ids are not cleaned up here: they are simply left out of the
returned RoleConfig, and the next /setuproles run overwrites them.
"""
from typing import Optional

from discord_verify.logging_config import get_logger
from discord_verify.models.roles import ALL_ROLE_KEYS, RoleConfig, RoleKey, RoleMode
from discord_verify.services.discord_api import DiscordClient, DiscordRole
from discord_verify.store import RedisStore
from discord_verify.utils import keys

logger = get_logger(__name__)


class RoleConfigResolver:
    def __init__(self, store: RedisStore, discord: DiscordClient):
        self.store = store
        self.discord = discord

    async def stored_mode(self, guild_id: str) -> RoleMode:
        return RoleMode.parse(await self.store.get(keys.role_mode(guild_id)))

    async def stored_role_ids(self, guild_id: str) -> dict[RoleKey, str]:
        """Role-key -> role-id mappings exactly as persisted, unvalidated."""
        mapping: dict[RoleKey, str] = {}
        for key in ALL_ROLE_KEYS:
            role_id = await self.store.get(keys.managed_role(guild_id, key))
            if role_id:
                mapping[key] = role_id
        return mapping

    async def load(self, guild_id: str, live_roles: Optional[list[DiscordRole]] = None) -> RoleConfig:
        """
        Current configuration with only still-existing role ids.
        ``live_roles`` may be passed in to save a Discord round-trip.
        """
        mode = await self.stored_mode(guild_id)
        verified_role_id = await self.store.get(keys.verified_role(guild_id))
        log_channel_id = await self.stored_log_channel(guild_id)
        stored = await self.stored_role_ids(guild_id)

        if verified_role_id is None and not stored:
            return RoleConfig(guild_id=guild_id, mode=mode, log_channel_id=log_channel_id)

        if live_roles is None:
            live_roles = await self.discord.list_roles(guild_id)
        live_ids = {role.id for role in live_roles}

        if verified_role_id is not None and verified_role_id not in live_ids:
            logger.warning("verified_role_missing", guild_id=guild_id, role_id=verified_role_id)
            verified_role_id = None

        role_ids = {}
        for key, role_id in stored.items():
            if role_id in live_ids:
                role_ids[key] = role_id
            else:
                logger.info("managed_role_missing", guild_id=guild_id, role_key=str(key), role_id=role_id)

        return RoleConfig(
            guild_id=guild_id,
            mode=mode,
            verified_role_id=verified_role_id,
            role_ids=role_ids,
            log_channel_id=log_channel_id,
        )

    async def set_verified_role(self, guild_id: str, role_id: str) -> None:
        await self.store.set(keys.verified_role(guild_id), role_id)
        logger.info("verified_role_set", guild_id=guild_id, role_id=role_id)

    async def stored_verified_role(self, guild_id: str) -> Optional[str]:
        return await self.store.get(keys.verified_role(guild_id))

    async def stored_log_channel(self, guild_id: str) -> Optional[str]:
        return await self.store.get(keys.log_channel(guild_id))

    async def set_log_channel(self, guild_id: str, channel_id: str) -> None:
        await self.store.set(keys.log_channel(guild_id), channel_id)
        logger.info("log_channel_set", guild_id=guild_id, channel_id=channel_id)
