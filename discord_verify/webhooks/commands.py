"""
Slash command handlers and the interaction dispatcher.

Commands:
- /verify                    start (or short-cut) verification
- /unverify [user]           remove a link; other users need Administrator
- /userinfo [user]           SSO account details of a linked user
- /config                    admin: configuration and statistics
- /setverifiedrole role      admin: role given on verification
- /setlogchannel channel     admin: channel for audit embeds
- /setuproles                admin: role wizard (see setup_roles.py)

Anything slower than a couple of Redis reads is deferred and finished in a
background task through edit_original_response.
"""
from typing import Any, Optional

from fastapi import BackgroundTasks

from discord_verify.exceptions import (
    DiscordAPIError,
    DiscordNotFoundError,
    KeycloakError,
    VerifiedRoleNotConfiguredError,
    VerifyBotError,
)
from discord_verify.logging_config import get_logger
from discord_verify.models.roles import keys_for_mode
from discord_verify.services import notifications
from discord_verify.state import AppState
from discord_verify.webhooks.common import (
    APPLICATION_COMMAND,
    MESSAGE_COMPONENT,
    TEXT_CHANNEL_TYPES,
    Interaction,
    complete_deferred,
    deferred,
    followup,
    message,
)
from discord_verify.webhooks.setup_roles import handle_setup_roles_command, handle_setup_roles_wizard_step

logger = get_logger(__name__)

GUILD_ONLY = "This command can only be used in a server."

# Application command option types
OPTION_USER = 6
OPTION_CHANNEL = 7
OPTION_ROLE = 8
ADMIN_ONLY_PERMISSIONS = "8"

COMMANDS: list[dict[str, Any]] = [
    {"name": "verify", "description": "Verify your Andrew ID", "contexts": [0]},
    {
        "name": "unverify",
        "description": "Remove verification for a user",
        "contexts": [0],
        "options": [
            {"type": OPTION_USER, "name": "user", "description": "User to unverify (defaults to you)", "required": False},
        ],
    },
    {
        "name": "userinfo",
        "description": "Display user information for a verified Discord user",
        "contexts": [0],
        "options": [
            {"type": OPTION_USER, "name": "user", "description": "User to get info for (defaults to you)", "required": False},
        ],
    },
    {
        "name": "config",
        "description": "Show server verification configuration and statistics",
        "contexts": [0],
        "default_member_permissions": ADMIN_ONLY_PERMISSIONS,
    },
    {
        "name": "setverifiedrole",
        "description": "Set the verified role for this server",
        "contexts": [0],
        "default_member_permissions": ADMIN_ONLY_PERMISSIONS,
        "options": [
            {"type": OPTION_ROLE, "name": "role", "description": "The role to assign when users verify", "required": True},
        ],
    },
    {
        "name": "setlogchannel",
        "description": "Set the logging channel for verification events",
        "contexts": [0],
        "default_member_permissions": ADMIN_ONLY_PERMISSIONS,
        "options": [
            {
                "type": OPTION_CHANNEL,
                "name": "channel",
                "description": "The channel where verification logs will be sent",
                "required": True,
                "channel_types": list(TEXT_CHANNEL_TYPES),
            },
        ],
    },
    {
        "name": "setuproles",
        "description": "Configure automatic role assignment based on user class and level",
        "contexts": [0],
        "default_member_permissions": ADMIN_ONLY_PERMISSIONS,
    },
]


# ──────────────────── Helpers ────────────────────

def _target_user(interaction: Interaction) -> tuple[str, str]:
    """(id, name) of the ``user`` option, or of the caller."""
    target_id = interaction.option("user")
    if target_id is None:
        return interaction.user_id, interaction.username
    user = interaction.resolved("users", target_id)
    return str(target_id), user.get("global_name") or user.get("username") or str(target_id)


def generate_progress_bar(current: int, total: int, width: int = 20) -> str:
    if total <= 0:
        return f"[{' ' * width}] 0%"
    ratio = min(current / total, 1.0)
    filled = round(ratio * width)
    return f"[{'█' * filled}{'░' * (width - filled)}] {round(current / total * 100)}%"


# ──────────────────── /verify ────────────────────

async def handle_verify_command(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    if interaction.guild_id is None:
        return message(GUILD_ONLY)

    guild_id = interaction.guild_id
    if await state.links.sso_id_for(interaction.user_id) is not None:
        # Already linked: just hand out this server's verified role
        config = await state.resolver.load(guild_id)
        if config.verified_role_id is None:
            raise VerifiedRoleNotConfiguredError(guild_id)
        await state.discord.add_role(guild_id, interaction.user_id, config.verified_role_id, reason="Already verified")
        logger.info("verified_role_reassigned", guild_id=guild_id, discord_user_id=interaction.user_id)
        return message("You are already verified. The verified role has been assigned to you in this server.")

    token = await state.registry.create(interaction.user_id, interaction.username, guild_id)
    minutes = state.settings.VERIFICATION_TTL_SECONDS // 60
    return message(
        f"Click the link below to verify your account. This link expires in {minutes} minutes.\n\n"
        f"{state.settings.verify_url(token)}"
    )


# ──────────────────── /unverify ────────────────────

async def handle_unverify_command(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    if interaction.guild_id is None:
        return message(GUILD_ONLY)

    target_id, _ = _target_user(interaction)
    if target_id != interaction.user_id and not interaction.is_admin:
        return message("You need administrator permissions to unverify other users.")

    background.add_task(
        complete_deferred, state.discord, interaction, lambda: unverify_user(state, interaction.guild_id, target_id)
    )
    return deferred()


async def unverify_user(state: AppState, guild_id: str, target_id: str) -> dict:
    sso_user_id = await state.links.unlink(target_id)
    if sso_user_id is None:
        return followup(f"<@{target_id}> is not verified.")

    removed: list[str] = []
    try:
        config = await state.resolver.load(guild_id)
        member = await state.discord.get_member(guild_id, target_id)
    except VerifyBotError as e:
        # Link is gone already; roles are cleaned up on a best-effort basis
        logger.warning("unverify_role_cleanup_skipped", guild_id=guild_id, discord_user_id=target_id, error=e.message)
        return followup(f"Removed verification for <@{target_id}>.")

    to_remove = set(config.managed_role_ids)
    if config.verified_role_id:
        to_remove.add(config.verified_role_id)
    for role_id in member.role_ids:
        if role_id not in to_remove:
            continue
        try:
            await state.discord.remove_role(guild_id, target_id, role_id, reason="Unverified")
        except VerifyBotError as e:
            logger.warning("unverify_role_remove_failed", guild_id=guild_id, role_id=role_id, error=e.message)
            continue
        removed.append(role_id)

    logger.info("user_unverified", guild_id=guild_id, discord_user_id=target_id, sso_user_id=sso_user_id, roles_removed=removed)
    await notifications.post_log(
        state.discord, config.log_channel_id, notifications.unverified_embed(target_id, removed), guild_id=guild_id
    )
    return followup(f"Removed verification for <@{target_id}>.")


# ──────────────────── /userinfo ────────────────────

async def handle_userinfo_command(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    target_id, target_name = _target_user(interaction)
    background.add_task(
        complete_deferred, state.discord, interaction, lambda: describe_user(state, target_id, target_name)
    )
    return deferred()


async def describe_user(state: AppState, target_id: str, target_name: str) -> dict:
    sso_user_id = await state.links.sso_id_for(target_id)
    if sso_user_id is None:
        return followup(f"<@{target_id}> is not verified.")

    try:
        user = await state.keycloak.get_user(sso_user_id)
    except KeycloakError as e:
        logger.error("userinfo_keycloak_failed", sso_user_id=sso_user_id, error=e.message)
        return followup("Failed to fetch user information from Keycloak.")

    fields = [
        (state.settings.SSO_ACCOUNT_LABEL, user.username or "Unknown"),
        ("Full Name", user.full_name or "Not provided"),
        ("Email", user.email or "Not provided"),
    ]
    linked_at = await state.links.linked_at(target_id)
    if linked_at is not None:
        fields.append(("Verified", f"<t:{int(linked_at.timestamp())}:R>"))

    return followup(embeds=[notifications.embed(f"User Information for {target_name}", notifications.BLUE, fields)])


# ──────────────────── /config ────────────────────

async def handle_config_command(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    if interaction.guild_id is None:
        return message(GUILD_ONLY)
    if not interaction.is_admin:
        return message("You need administrator permissions to view server configuration.")

    background.add_task(complete_deferred, state.discord, interaction, lambda: describe_config(state, interaction.guild_id))
    return deferred()


async def describe_config(state: AppState, guild_id: str) -> dict:
    live_roles = await state.discord.list_roles(guild_id)
    positions = {role.id: role.position for role in live_roles}

    verified_role_id = await state.resolver.stored_verified_role(guild_id)
    if verified_role_id is None:
        role_info = "Not configured (use /setverifiedrole)"
    elif verified_role_id in positions:
        role_info = f"<@&{verified_role_id}> (position: {positions[verified_role_id]})"
    else:
        role_info = "Role deleted"

    config = await state.resolver.load(guild_id, live_roles=live_roles)
    managed = []
    for key in sorted(keys_for_mode(config.mode, frozenset(config.role_ids))):
        role_id = config.role_for(key)
        managed.append(f"<@&{role_id}>" if role_id else f"{key.display_name} (missing, run /setuproles)")
    mode_info = config.mode.label
    if managed:
        mode_info += "\n" + ", ".join(managed)

    log_info = f"<#{config.log_channel_id}>" if config.log_channel_id else "Not configured (use /setlogchannel)"

    verified_count = await state.links.count()
    guild = await state.discord.get_guild(guild_id)
    total_members = int(guild.get("approximate_member_count") or 0)

    return followup(
        embeds=[
            notifications.embed(
                "Server Configuration",
                notifications.BLUE,
                [
                    ("Verified Role", role_info),
                    ("Role Mode", mode_info),
                    ("Log Channel", log_info),
                    (
                        "Statistics",
                        f"Verified Users: {verified_count}/{total_members} (total includes bots)\n"
                        f"{generate_progress_bar(verified_count, total_members)}",
                    ),
                ],
                footer=f"{max(total_members - verified_count, 0)} users still need to verify",
            )
        ]
    )


# ──────────────────── /setverifiedrole ────────────────────

async def handle_set_verified_role_command(
    interaction: Interaction, state: AppState, background: BackgroundTasks
) -> dict:
    if interaction.guild_id is None:
        return message(GUILD_ONLY)
    if not interaction.is_admin:
        return message("You need administrator permissions to configure the verified role.")

    role_id = interaction.option("role")
    if role_id is None:
        return message("Role parameter is required.")

    background.add_task(
        complete_deferred, state.discord, interaction, lambda: set_verified_role(state, interaction.guild_id, str(role_id))
    )
    return deferred()


async def set_verified_role(state: AppState, guild_id: str, role_id: str) -> dict:
    roles = {role.id: role for role in await state.discord.list_roles(guild_id)}
    if role_id not in roles:
        return followup("That role no longer exists.")

    bot_user = await state.discord.get_current_user()
    bot_member = await state.discord.get_member(guild_id, str(bot_user["id"]))
    bot_position = max((roles[r].position for r in bot_member.role_ids if r in roles), default=0)
    target_position = roles[role_id].position

    if bot_position <= target_position:
        return followup(
            f"I cannot assign <@&{role_id}>. My highest role is at position {bot_position}, "
            f"but this role is at position {target_position}.\n"
            f"Please move my role higher than <@&{role_id}> in the server settings."
        )

    await state.resolver.set_verified_role(guild_id, role_id)
    return followup(f"Verified role has been set to <@&{role_id}>. Users who verify will now receive this role.")


# ──────────────────── /setlogchannel ────────────────────

async def handle_set_log_channel_command(
    interaction: Interaction, state: AppState, background: BackgroundTasks
) -> dict:
    if interaction.guild_id is None:
        return message(GUILD_ONLY)
    if not interaction.is_admin:
        return message("You need administrator permissions to configure the log channel.")

    channel_id = interaction.option("channel")
    if channel_id is None:
        return message("Channel parameter is required.")
    channel_id = str(channel_id)

    channel_type: Optional[int] = interaction.resolved("channels", channel_id).get("type")
    if channel_type not in TEXT_CHANNEL_TYPES:
        return message("The log channel must be a text or news channel.")

    background.add_task(
        complete_deferred, state.discord, interaction, lambda: set_log_channel(state, interaction.guild_id, channel_id)
    )
    return deferred()


async def set_log_channel(state: AppState, guild_id: str, channel_id: str) -> dict:
    try:
        await state.discord.send_channel_message(channel_id, content="This channel will now receive verification logs.")
    except DiscordNotFoundError:
        return followup("Unable to access that channel. Please make sure the bot has permission to view it.")
    except DiscordAPIError as e:
        if e.status_code != 403:
            raise
        logger.warning("log_channel_not_writable", guild_id=guild_id, channel_id=channel_id, error=e.message)
        return followup(
            f"I don't have permission to send messages in <#{channel_id}>. "
            "Please update my permissions for that channel."
        )

    await state.resolver.set_log_channel(guild_id, channel_id)
    return followup(f"Log channel has been set to <#{channel_id}>.")


# ──────────────────── Dispatcher ────────────────────

COMMAND_HANDLERS = {
    "verify": handle_verify_command,
    "unverify": handle_unverify_command,
    "userinfo": handle_userinfo_command,
    "config": handle_config_command,
    "setverifiedrole": handle_set_verified_role_command,
    "setlogchannel": handle_set_log_channel_command,
    "setuproles": handle_setup_roles_command,
}


async def handle_interaction(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    if interaction.type == APPLICATION_COMMAND:
        handler = COMMAND_HANDLERS.get(interaction.command_name)
        if handler is None:
            logger.warning("unknown_command", command=interaction.command_name)
            return message("Unknown command.")
        logger.info(
            "command_received",
            command=interaction.command_name,
            user_id=interaction.user_id,
            guild_id=interaction.guild_id,
        )
        return await handler(interaction, state, background)

    if interaction.type == MESSAGE_COMPONENT:
        return await handle_setup_roles_wizard_step(interaction, state, background)

    logger.warning("unsupported_interaction", interaction_type=interaction.type)
    return message("Unsupported interaction.")
