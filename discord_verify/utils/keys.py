"""
Redis key layout — every key the service reads or writes is built here.

    verify:<token>                           pending verification, TTL 600s
    discord:<discord_id>:keycloak            Discord user -> SSO user
    keycloak:<sso_id>:discord                SSO user -> Discord user
    discord:<discord_id>:verified_at         unix seconds of the link
    guild:<guild>:role:verified              verified role id
    guild:<guild>:role_mode                  none | levels | classes | custom
    guild:<guild>:role:level:<name>          level role id
    guild:<guild>:role:class:<name>          class role id
    guild:<guild>:log_channel                channel id for audit embeds

Rules:
- Ids are Discord snowflakes / Keycloak UUIDs as plain strings
- Role names keep their catalog spelling (``Fifth-Year Senior``)
"""
from discord_verify.models.roles import RoleKey

PLATFORM = "discord"
PROVIDER = "keycloak"


def pending_verification(token: str) -> str:
    return f"verify:{token}"


def platform_to_sso(discord_user_id: str) -> str:
    return f"{PLATFORM}:{discord_user_id}:{PROVIDER}"


def sso_to_platform(sso_user_id: str) -> str:
    return f"{PROVIDER}:{sso_user_id}:{PLATFORM}"


def linked_at(discord_user_id: str) -> str:
    return f"{PLATFORM}:{discord_user_id}:verified_at"


def all_platform_links_pattern() -> str:
    """Glob matching every forward link key (used for counting only)."""
    return f"{PLATFORM}:*:{PROVIDER}"


def verified_role(guild_id: str) -> str:
    return f"guild:{guild_id}:role:verified"


def role_mode(guild_id: str) -> str:
    return f"guild:{guild_id}:role_mode"


def managed_role(guild_id: str, key: RoleKey) -> str:
    return f"guild:{guild_id}:role:{key.category.value}:{key.name}"


def log_channel(guild_id: str) -> str:
    return f"guild:{guild_id}:log_channel"
