"""
Best-effort notifications: log-channel embeds and DMs.
Failures are logged and swallowed; callers never see them.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from discord_verify.exceptions import VerifyBotError
from discord_verify.logging_config import get_logger
from discord_verify.services.discord_api import DiscordClient

logger = get_logger(__name__)

GREEN = 0xA6E3A1
RED = 0xF38BA8
YELLOW = 0xF9E2AF
BLUE = 0x3498DB


def role_mentions(role_ids: Iterable[str]) -> str:
    mentions = [f"<@&{role_id}>" for role_id in role_ids]
    return ", ".join(mentions) if mentions else "None"


def embed(title: str, color: int, fields: list[tuple[str, str]], footer: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": title,
        "color": color,
        "fields": [{"name": name, "value": value, "inline": False} for name, value in fields],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if footer:
        payload["footer"] = {"text": footer}
    return payload


def verified_embed(discord_user_id: str, role_ids: list[str]) -> dict[str, Any]:
    return embed("User Verified", GREEN, [("User", f"<@{discord_user_id}>"), ("Roles Added", role_mentions(role_ids))])


def unverified_embed(discord_user_id: str, role_ids: list[str]) -> dict[str, Any]:
    return embed(
        "User Unverified", RED, [("User", f"<@{discord_user_id}>"), ("Roles Removed", role_mentions(role_ids))]
    )


def failure_embed(discord_user_id: str, reason: str) -> dict[str, Any]:
    return embed("Verification Failed", YELLOW, [("User", f"<@{discord_user_id}>"), ("Reason", reason)])


async def post_log(discord: DiscordClient, channel_id: Optional[str], payload: dict[str, Any], **context) -> bool:
    if not channel_id:
        return False
    try:
        await discord.send_channel_message(channel_id, embeds=[payload])
    except VerifyBotError as e:
        logger.warning("log_channel_post_failed", channel_id=channel_id, error=e.message, **context)
        return False
    return True


async def send_dm(discord: DiscordClient, user_id: str, content: str) -> bool:
    try:
        await discord.direct_message(user_id, content=content)
    except VerifyBotError as e:
        logger.warning("direct_message_failed", discord_user_id=user_id, error=e.message)
        return False
    return True
