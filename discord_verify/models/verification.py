"""
Verification records — the pending token record stored in Redis and the
completion event handed from the web flow to the bot.
"""
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel


class PendingVerification(BaseModel):
    """One in-flight request to link a Discord user, created by /verify."""

    discord_user_id: str
    discord_username: str
    guild_id: str
    created_at: int  # unix seconds

    def is_expired(self, now: float, ttl_seconds: int) -> bool:
        return now - self.created_at >= ttl_seconds


@dataclass(frozen=True)
class VerificationCompletionEvent:
    """Point-in-time fact: this Discord user proved ownership of this SSO account."""

    discord_user_id: str
    guild_id: str
    sso_user_id: str


class LinkState(str, Enum):
    """States and terminal outcomes of one verification attempt."""
    UNLINKED = "unlinked"
    AWAITING_EXTERNAL_AUTH = "awaiting_external_auth"
    AWAITING_IDENTITY_LINK = "awaiting_identity_link"
    LINKED = "linked"
    # terminal failures
    EXPIRED = "expired"
    WRONG_IDENTITY = "wrong_identity"
    ALREADY_LINKED_ELSEWHERE = "already_linked_elsewhere"
    NOT_LINKED = "not_linked"

    @property
    def is_terminal(self) -> bool:
        return self not in (
            LinkState.UNLINKED,
            LinkState.AWAITING_EXTERNAL_AUTH,
            LinkState.AWAITING_IDENTITY_LINK,
        )

    @property
    def error_code(self) -> str | None:
        """Code used on the /error page."""
        return {
            LinkState.EXPIRED: "expired",
            LinkState.WRONG_IDENTITY: "wrong_account",
            LinkState.ALREADY_LINKED_ELSEWHERE: "already_linked",
            LinkState.NOT_LINKED: "not_linked",
        }.get(self)
