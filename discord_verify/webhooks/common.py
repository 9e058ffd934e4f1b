"""
Interactions common layer — shared logic for every slash command and
message component.

Responsibilities:
1. Verify Discord's Ed25519 request signature (401 if invalid)
2. Parse the interaction payload into an Interaction
3. Build interaction responses (ephemeral messages, deferrals, updates)
"""
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from fastapi import HTTPException

from discord_verify.exceptions import UpstreamUnavailableError, VerifyBotError
from discord_verify.logging_config import get_logger
from discord_verify.services.discord_api import ADMINISTRATOR, DiscordClient

logger = get_logger(__name__)

# Interaction types
PING = 1
APPLICATION_COMMAND = 2
MESSAGE_COMPONENT = 3

# Interaction callback types
PONG = 1
CHANNEL_MESSAGE = 4
DEFERRED_CHANNEL_MESSAGE = 5
DEFERRED_UPDATE_MESSAGE = 6
UPDATE_MESSAGE = 7

EPHEMERAL = 1 << 6

# Channel types accepted as a log channel: GUILD_TEXT, GUILD_ANNOUNCEMENT
TEXT_CHANNEL_TYPES = (0, 5)


@lru_cache(maxsize=4)
def _public_key(hex_key: str) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(bytes.fromhex(hex_key))


def verify_signature(public_key: str, signature: str, timestamp: str, body: bytes) -> None:
    """
    Check X-Signature-Ed25519 over timestamp + raw body.
    Raises 401 if missing or invalid.
    """
    if not signature or not timestamp:
        raise HTTPException(status_code=401, detail="Missing request signature")
    try:
        _public_key(public_key).verify(bytes.fromhex(signature), timestamp.encode() + body)
    except (InvalidSignature, ValueError):
        raise HTTPException(status_code=401, detail="Invalid request signature")


@dataclass
class Interaction:
    type: int
    token: str
    user_id: str
    username: str
    guild_id: Optional[str] = None
    permissions: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Interaction":
        member = payload.get("member") or {}
        user = member.get("user") or payload.get("user") or {}
        guild_id = payload.get("guild_id")
        return cls(
            type=int(payload["type"]),
            token=payload.get("token", ""),
            user_id=str(user.get("id", "")),
            username=user.get("global_name") or user.get("username", ""),
            guild_id=str(guild_id) if guild_id else None,
            permissions=int(member.get("permissions") or 0),
            data=payload.get("data") or {},
        )

    @property
    def is_admin(self) -> bool:
        return bool(self.permissions & ADMINISTRATOR)

    @property
    def command_name(self) -> str:
        return self.data.get("name", "")

    @property
    def custom_id(self) -> str:
        return self.data.get("custom_id", "")

    @property
    def values(self) -> list[str]:
        return list(self.data.get("values") or [])

    def option(self, name: str) -> Optional[Any]:
        for option in self.data.get("options") or []:
            if option.get("name") == name:
                return option.get("value")
        return None

    def resolved(self, kind: str, object_id: str) -> dict[str, Any]:
        """Resolved user / role / channel object delivered with the interaction."""
        return ((self.data.get("resolved") or {}).get(kind) or {}).get(str(object_id)) or {}


# ──────────────────── Responses ────────────────────

def pong() -> dict[str, Any]:
    return {"type": PONG}


def _message_data(
    content: Optional[str],
    embeds: Optional[list[dict]],
    components: Optional[list[dict]],
    ephemeral: bool,
) -> dict[str, Any]:
    data: dict[str, Any] = {"allowed_mentions": {"parse": []}}
    if content is not None:
        data["content"] = content
    if embeds is not None:
        data["embeds"] = embeds
    if components is not None:
        data["components"] = components
    if ephemeral:
        data["flags"] = EPHEMERAL
    return data


def message(
    content: Optional[str] = None,
    *,
    embeds: Optional[list[dict]] = None,
    components: Optional[list[dict]] = None,
    ephemeral: bool = True,
) -> dict[str, Any]:
    return {"type": CHANNEL_MESSAGE, "data": _message_data(content, embeds, components, ephemeral)}


def update_message(
    content: Optional[str] = None,
    *,
    embeds: Optional[list[dict]] = None,
    components: Optional[list[dict]] = None,
) -> dict[str, Any]:
    """Replace the message the component belongs to."""
    return {
        "type": UPDATE_MESSAGE,
        "data": _message_data(content, embeds, components if components is not None else [], False),
    }


def deferred(ephemeral: bool = True) -> dict[str, Any]:
    """'Bot is thinking'; the real reply follows via edit_original_response."""
    return {"type": DEFERRED_CHANNEL_MESSAGE, "data": {"flags": EPHEMERAL} if ephemeral else {}}


def deferred_update() -> dict[str, Any]:
    """Acknowledge a component without touching its message yet."""
    return {"type": DEFERRED_UPDATE_MESSAGE}


def followup(content: Optional[str] = None, *, embeds: Optional[list[dict]] = None, components=None) -> dict:
    """Body for edit_original_response."""
    payload = _message_data(content, embeds, components, ephemeral=False)
    payload.pop("flags", None)
    return payload


def action_row(*components: dict) -> dict[str, Any]:
    return {"type": 1, "components": list(components)}


def button(custom_id: str, label: str, style: int = 1) -> dict[str, Any]:
    return {"type": 2, "custom_id": custom_id, "label": label, "style": style}


def string_select(
    custom_id: str,
    options: list[dict[str, Any]],
    placeholder: str,
    min_values: int = 1,
    max_values: int = 1,
) -> dict[str, Any]:
    return {
        "type": 3,
        "custom_id": custom_id,
        "options": options,
        "placeholder": placeholder,
        "min_values": min_values,
        "max_values": max_values,
    }


def select_option(label: str, value: str, description: Optional[str] = None, default: bool = False) -> dict:
    option: dict[str, Any] = {"label": label, "value": value, "default": default}
    if description:
        option["description"] = description
    return option


# ──────────────────── Errors & deferred work ────────────────────

GENERIC_ERROR = "Something went wrong. Please try again in a moment."


def user_message(error: VerifyBotError) -> str:
    """Text shown to the user for an error; upstream details stay in the logs."""
    if isinstance(error, UpstreamUnavailableError):
        return GENERIC_ERROR
    return error.message


async def complete_deferred(
    discord: DiscordClient,
    interaction: Interaction,
    work: Callable[[], Awaitable[dict[str, Any]]],
) -> None:
    """Run ``work`` after a deferred response and edit the reply with its result."""
    try:
        payload = await work()
    except VerifyBotError as e:
        logger.warning(
            "deferred_interaction_failed",
            user_id=interaction.user_id,
            guild_id=interaction.guild_id,
            error_type=type(e).__name__,
            error=e.message,
        )
        payload = followup(user_message(e))
    except Exception:
        logger.exception("deferred_interaction_crashed", user_id=interaction.user_id, guild_id=interaction.guild_id)
        payload = followup(GENERIC_ERROR)

    try:
        await discord.edit_original_response(interaction.token, payload)
    except VerifyBotError as e:
        logger.error("interaction_followup_failed", guild_id=interaction.guild_id, error=e.message)
