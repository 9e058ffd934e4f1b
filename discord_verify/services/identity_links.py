"""
Identity links — Discord user <-> SSO user, stored in both directions.

Both directions (plus the linked-at timestamp) are written and removed in
one Redis transaction, so a reader never sees half a link.
"""
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from discord_verify.exceptions import LinkConflictError
from discord_verify.logging_config import get_logger
from discord_verify.store import RedisStore
from discord_verify.utils import keys

logger = get_logger(__name__)


class IdentityLinkStore:
    def __init__(self, store: RedisStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    async def sso_id_for(self, discord_user_id: str) -> Optional[str]:
        return await self.store.get(keys.platform_to_sso(discord_user_id))

    async def discord_id_for(self, sso_user_id: str) -> Optional[str]:
        return await self.store.get(keys.sso_to_platform(sso_user_id))

    async def linked_at(self, discord_user_id: str) -> Optional[datetime]:
        raw = await self.store.get(keys.linked_at(discord_user_id))
        if raw is None:
            return None
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except ValueError:
            return None

    async def check_conflict(self, discord_user_id: str, sso_user_id: str) -> None:
        """Raise LinkConflictError if either side is bound to someone else."""
        existing_sso = await self.sso_id_for(discord_user_id)
        existing_discord = await self.discord_id_for(sso_user_id)
        if (existing_sso is not None and existing_sso != sso_user_id) or (
            existing_discord is not None and existing_discord != discord_user_id
        ):
            raise LinkConflictError(
                discord_user_id,
                sso_user_id,
                existing={"sso_user_id": existing_sso, "discord_user_id": existing_discord},
            )

    async def link(self, discord_user_id: str, sso_user_id: str) -> bool:
        """
        Store the pair. Returns False if exactly this pair already exists.

        A pair conflicting with an existing link raises LinkConflictError and
        writes nothing; the caller has to unlink first.
        """
        existing_sso = await self.sso_id_for(discord_user_id)
        existing_discord = await self.discord_id_for(sso_user_id)

        if existing_sso == sso_user_id and existing_discord == discord_user_id:
            return False
        if (existing_sso is not None and existing_sso != sso_user_id) or (
            existing_discord is not None and existing_discord != discord_user_id
        ):
            raise LinkConflictError(
                discord_user_id,
                sso_user_id,
                existing={"sso_user_id": existing_sso, "discord_user_id": existing_discord},
            )

        await self.store.set_many({
            keys.platform_to_sso(discord_user_id): sso_user_id,
            keys.sso_to_platform(sso_user_id): discord_user_id,
            keys.linked_at(discord_user_id): str(int(self.clock())),
        })
        logger.info("identity_linked", discord_user_id=discord_user_id, sso_user_id=sso_user_id)
        return True

    async def unlink(self, discord_user_id: str) -> Optional[str]:
        """Remove the link of a Discord user. Returns the SSO id it pointed to, if any."""
        sso_user_id = await self.sso_id_for(discord_user_id)
        if sso_user_id is None:
            return None

        to_delete = [keys.platform_to_sso(discord_user_id), keys.linked_at(discord_user_id)]
        # only drop the inverse if it still points back at us
        if await self.discord_id_for(sso_user_id) == discord_user_id:
            to_delete.append(keys.sso_to_platform(sso_user_id))

        await self.store.delete_many(to_delete)
        logger.info("identity_unlinked", discord_user_id=discord_user_id, sso_user_id=sso_user_id)
        return sso_user_id

    async def count(self) -> int:
        """Number of linked Discord users (best-effort)."""
        return len(await self.store.keys_matching(keys.all_platform_links_pattern()))
