"""
Completion consumer — the bot side of a finished verification.

Reads VerificationCompletionEvents off the channel one at a time, in
order, for the life of the process:

1. refuse if the identity link would conflict with an existing one
2. resolve the server's role config
3. assign the verified role (missing config is an error, never skipped)
4. assign level/class roles from Keycloak attributes (misses skipped)
5. persist the identity link
6. notify log channel and user (best-effort)

A failing event is logged and reported to the user; the loop goes on.
"""
from discord_verify.exceptions import (
    MisconfigurationError,
    VerifiedRoleNotConfiguredError,
    VerifyBotError,
)
from discord_verify.logging_config import get_logger
from discord_verify.models.roles import RoleCategory
from discord_verify.models.verification import VerificationCompletionEvent
from discord_verify.services import notifications
from discord_verify.state import AppState

logger = get_logger(__name__)

AUDIT_REASON = "Verified via SSO"


async def complete_verification(state: AppState, event: VerificationCompletionEvent) -> list[str]:
    """Assign roles and persist the link. Returns the role ids added."""
    guild_id = event.guild_id
    user_id = event.discord_user_id

    await state.links.check_conflict(user_id, event.sso_user_id)

    config = await state.resolver.load(guild_id)
    if config.verified_role_id is None:
        raise VerifiedRoleNotConfiguredError(guild_id)

    await state.discord.add_role(guild_id, user_id, config.verified_role_id, reason=AUDIT_REASON)
    added = [config.verified_role_id]

    sso_user = await state.keycloak.get_user(event.sso_user_id)
    for category in RoleCategory:
        value = sso_user.first_attribute(category.attribute)
        if value is None:
            continue
        role_id = config.role_for_attribute(category, value)
        if role_id is None:
            logger.debug("attribute_role_not_configured", guild_id=guild_id, category=category.value, value=value)
            continue
        try:
            await state.discord.add_role(guild_id, user_id, role_id, reason=AUDIT_REASON)
        except VerifyBotError as e:
            logger.warning(
                "attribute_role_assign_failed",
                guild_id=guild_id,
                discord_user_id=user_id,
                category=category.value,
                value=value,
                error=e.message,
            )
            continue
        added.append(role_id)

    await state.links.link(user_id, event.sso_user_id)

    logger.info(
        "verification_completed",
        discord_user_id=user_id,
        guild_id=guild_id,
        sso_user_id=event.sso_user_id,
        roles_added=added,
    )

    await notifications.post_log(
        state.discord,
        config.log_channel_id,
        notifications.verified_embed(user_id, added),
        guild_id=guild_id,
    )
    await notifications.send_dm(
        state.discord,
        user_id,
        f"You have successfully verified your {state.settings.SSO_ACCOUNT_LABEL}.",
    )
    return added


async def handle_completion_event(state: AppState, event: VerificationCompletionEvent) -> bool:
    """Process one event; never raises. Returns True on success."""
    logger.info("completion_event_received", discord_user_id=event.discord_user_id, guild_id=event.guild_id)
    try:
        await complete_verification(state, event)
        return True
    except VerifyBotError as e:
        logger.error(
            "verification_completion_failed",
            discord_user_id=event.discord_user_id,
            guild_id=event.guild_id,
            error_type=type(e).__name__,
            error=e.message,
            details=e.details,
        )
        reason = e.message
        misconfigured = isinstance(e, MisconfigurationError)
    except Exception:
        logger.exception(
            "verification_completion_crashed",
            discord_user_id=event.discord_user_id,
            guild_id=event.guild_id,
        )
        reason = "An unexpected error occurred."
        misconfigured = False

    await notifications.send_dm(
        state.discord,
        event.discord_user_id,
        f"Verification failed: {reason}\n\nPlease contact a server administrator for assistance.",
    )
    if misconfigured:
        try:
            channel_id = await state.resolver.stored_log_channel(event.guild_id)
        except VerifyBotError as e:
            logger.warning("log_channel_lookup_failed", guild_id=event.guild_id, error=e.message)
            channel_id = None
        await notifications.post_log(
            state.discord,
            channel_id,
            notifications.failure_embed(event.discord_user_id, reason),
            guild_id=event.guild_id,
        )
    return False


async def run_completion_consumer(state: AppState) -> None:
    """Drain the completion channel until it is closed."""
    logger.info("completion_consumer_started")
    async for event in state.channel:
        await handle_completion_event(state, event)
    logger.info("completion_consumer_stopped")
