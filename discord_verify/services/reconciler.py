"""
Role reconciler — converge a server's managed roles to a newly chosen mode.

    current  = role keys with a persisted role id (re-read from Redis)
    desired  = role keys the new mode / custom selection implies
    delete   = current - desired     role deleted on Discord, mapping dropped
    create   = desired - current     existing role with the same name reused,
                                     otherwise created; mapping stored
    keep     = current & desired     left alone, unless the role vanished on
                                     Discord, then recreated under the same key

Every Discord call is followed immediately by its Redis write, so an
interrupted run leaves Redis matching whatever was really applied. One
failing role is recorded in the report and the rest of the diff goes on.
Running twice with the same selection makes no create/delete calls.
"""
from dataclasses import dataclass, field
from typing import Optional

from discord_verify.exceptions import DiscordNotFoundError, VerifyBotError
from discord_verify.logging_config import get_logger
from discord_verify.models.roles import RoleKey, RoleMode, keys_for_mode
from discord_verify.services.discord_api import DiscordClient, DiscordRole
from discord_verify.services.role_config import RoleConfigResolver
from discord_verify.store import RedisStore
from discord_verify.utils import keys

logger = get_logger(__name__)

AUDIT_REASON = "Role setup via /setuproles"


@dataclass
class ReconcileReport:
    guild_id: str
    previous_mode: RoleMode
    mode: RoleMode
    created: dict[RoleKey, str] = field(default_factory=dict)
    reused: dict[RoleKey, str] = field(default_factory=dict)
    recreated: dict[RoleKey, str] = field(default_factory=dict)
    kept: dict[RoleKey, str] = field(default_factory=dict)
    deleted: list[RoleKey] = field(default_factory=list)
    failed: dict[RoleKey, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def active_roles(self) -> dict[RoleKey, str]:
        """Every role key that ends the run mapped to a live role."""
        return {**self.kept, **self.created, **self.reused, **self.recreated}


class _LiveRoles:
    """Discord's role list for one run, updated as the run changes it."""

    def __init__(self, roles: list[DiscordRole]):
        self.by_id: dict[str, DiscordRole] = {r.id: r for r in roles}

    def exists(self, role_id: str) -> bool:
        return role_id in self.by_id

    def find_by_name(self, name: str, exclude: set[str]) -> Optional[DiscordRole]:
        for role in sorted(self.by_id.values(), key=lambda r: r.position, reverse=True):
            if role.name == name and role.id not in exclude:
                return role
        return None

    def add(self, role: DiscordRole) -> None:
        self.by_id[role.id] = role

    def remove(self, role_id: str) -> None:
        self.by_id.pop(role_id, None)


class RoleReconciler:
    def __init__(self, store: RedisStore, discord: DiscordClient, resolver: RoleConfigResolver):
        self.store = store
        self.discord = discord
        self.resolver = resolver

    async def reconcile(
        self,
        guild_id: str,
        mode: RoleMode,
        custom_keys: frozenset[RoleKey] = frozenset(),
    ) -> ReconcileReport:
        """
        Apply ``mode`` to the server and persist it.

        Raises UpstreamUnavailableError only when the run cannot start
        (reading Redis, listing roles) or the final mode write fails; per-role
        failures end up in ``report.failed``.
        """
        previous_mode = await self.resolver.stored_mode(guild_id)
        persisted = await self.resolver.stored_role_ids(guild_id)

        if previous_mode is not RoleMode.CUSTOM:
            stray = set(persisted) - keys_for_mode(previous_mode)
            if stray:
                logger.warning(
                    "reconcile_stray_mappings",
                    guild_id=guild_id,
                    previous_mode=previous_mode.value,
                    role_keys=sorted(str(k) for k in stray),
                )

        current = set(persisted)
        desired = set(keys_for_mode(mode, custom_keys))
        to_delete = sorted(current - desired)
        to_create = sorted(desired - current)
        to_keep = sorted(current & desired)

        logger.info(
            "reconcile_started",
            guild_id=guild_id,
            previous_mode=previous_mode.value,
            mode=mode.value,
            delete=[str(k) for k in to_delete],
            create=[str(k) for k in to_create],
            keep=[str(k) for k in to_keep],
        )

        live = _LiveRoles(await self.discord.list_roles(guild_id))
        verified_role_id = await self.resolver.stored_verified_role(guild_id)
        # never adopt @everyone, the verified role, or a role mapped to another key
        reserved = {guild_id, *persisted.values()}
        if verified_role_id:
            reserved.add(verified_role_id)

        report = ReconcileReport(guild_id=guild_id, previous_mode=previous_mode, mode=mode)

        for key in to_delete:
            await self._delete(guild_id, key, persisted[key], live, report)

        for key in to_create:
            await self._ensure(guild_id, key, live, reserved, report, report.created)

        for key in to_keep:
            role_id = persisted[key]
            if live.exists(role_id):
                report.kept[key] = role_id
                continue
            logger.warning("managed_role_vanished", guild_id=guild_id, role_key=str(key), role_id=role_id)
            await self._ensure(guild_id, key, live, reserved, report, report.recreated)

        await self.store.set(keys.role_mode(guild_id), mode.value)

        logger.info(
            "reconcile_finished",
            guild_id=guild_id,
            mode=mode.value,
            created=len(report.created),
            reused=len(report.reused),
            recreated=len(report.recreated),
            kept=len(report.kept),
            deleted=len(report.deleted),
            failed=len(report.failed),
        )
        return report

    async def _delete(
        self, guild_id: str, key: RoleKey, role_id: str, live: _LiveRoles, report: ReconcileReport
    ) -> None:
        try:
            await self.discord.delete_role(guild_id, role_id, reason=AUDIT_REASON)
        except DiscordNotFoundError:
            logger.info("managed_role_already_gone", guild_id=guild_id, role_key=str(key), role_id=role_id)
        except VerifyBotError as e:
            logger.error("managed_role_delete_failed", guild_id=guild_id, role_key=str(key), error=e.message)
            report.failed[key] = e.message
            return

        live.remove(role_id)
        try:
            await self.store.delete(keys.managed_role(guild_id, key))
        except VerifyBotError as e:
            logger.error("managed_role_unmap_failed", guild_id=guild_id, role_key=str(key), error=e.message)
            report.failed[key] = e.message
            return
        report.deleted.append(key)

    async def _ensure(
        self,
        guild_id: str,
        key: RoleKey,
        live: _LiveRoles,
        reserved: set[str],
        report: ReconcileReport,
        bucket: dict[RoleKey, str],
    ) -> None:
        existing = live.find_by_name(key.display_name, exclude=reserved)
        if existing is not None:
            role_id = existing.id
            bucket = report.reused
            logger.info("managed_role_reused", guild_id=guild_id, role_key=str(key), role_id=role_id)
        else:
            try:
                role = await self.discord.create_role(guild_id, key.display_name, reason=AUDIT_REASON)
            except VerifyBotError as e:
                logger.error("managed_role_create_failed", guild_id=guild_id, role_key=str(key), error=e.message)
                report.failed[key] = e.message
                return
            live.add(role)
            role_id = role.id
            logger.info("managed_role_created", guild_id=guild_id, role_key=str(key), role_id=role_id)

        reserved.add(role_id)
        try:
            await self.store.set(keys.managed_role(guild_id, key), role_id)
        except VerifyBotError as e:
            # the role exists on Discord; the next run adopts it by name
            logger.error("managed_role_map_failed", guild_id=guild_id, role_key=str(key), error=e.message)
            report.failed[key] = e.message
            return
        bucket[key] = role_id
