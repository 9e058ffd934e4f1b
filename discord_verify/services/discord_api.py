"""
Discord REST client — the handful of v10 endpoints the bot needs.

All calls go through one httpx.AsyncClient authenticated as the bot.
404 raises DiscordNotFoundError, every other failure DiscordAPIError.
No retries: one attempt per user action, the user re-runs the command.
"""
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from discord_verify.exceptions import DiscordAPIError, DiscordNotFoundError
from discord_verify.logging_config import get_logger

logger = get_logger(__name__)

ADMINISTRATOR = 1 << 3


@dataclass(frozen=True)
class DiscordRole:
    id: str
    name: str
    position: int = 0

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "DiscordRole":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            position=int(data.get("position", 0)),
        )


@dataclass(frozen=True)
class DiscordMember:
    user_id: str
    username: str
    role_ids: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "DiscordMember":
        user = data.get("user") or {}
        return cls(
            user_id=str(user.get("id", "")),
            username=user.get("username", ""),
            role_ids=tuple(str(r) for r in data.get("roles", [])),
        )


class DiscordClient:
    """Bot-token REST client."""

    def __init__(
        self,
        token: str,
        application_id: str,
        base_url: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.application_id = application_id
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bot {token}",
                "User-Agent": "DiscordBot (discord-verify, 1.0)",
            },
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    async def close(self) -> None:
        await self.http.aclose()

    # ── transport ────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
        reason: str | None = None,
    ) -> Any:
        headers = {"X-Audit-Log-Reason": reason} if reason else None
        try:
            response = await self.http.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error("discord_request_failed", method=method, path=path, error=str(e))
            raise DiscordAPIError(f"Discord request failed: {e}") from e

        if response.status_code == 404:
            raise DiscordNotFoundError(path, details=_error_body(response))
        if response.status_code == 429:
            body = _error_body(response)
            logger.warning("discord_rate_limited", method=method, path=path, retry_after=body.get("retry_after"))
            raise DiscordAPIError("Discord rate limit hit", status_code=429, details=body)
        if response.status_code >= 400:
            body = _error_body(response)
            logger.error("discord_request_rejected", method=method, path=path, status=response.status_code, body=body)
            raise DiscordAPIError(
                body.get("message") or f"Discord returned {response.status_code}",
                status_code=response.status_code,
                details=body,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ── guilds, members, roles ───────────────────────────────────────────────

    async def get_guild(self, guild_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/guilds/{guild_id}", params={"with_counts": "true"})

    async def get_member(self, guild_id: str, user_id: str) -> DiscordMember:
        data = await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")
        return DiscordMember.from_payload(data)

    async def get_current_user(self) -> dict[str, Any]:
        return await self._request("GET", "/users/@me")

    async def list_roles(self, guild_id: str) -> list[DiscordRole]:
        data = await self._request("GET", f"/guilds/{guild_id}/roles")
        return [DiscordRole.from_payload(r) for r in data]

    async def add_role(self, guild_id: str, user_id: str, role_id: str, reason: str | None = None) -> None:
        await self._request("PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", reason=reason)

    async def remove_role(self, guild_id: str, user_id: str, role_id: str, reason: str | None = None) -> None:
        await self._request("DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", reason=reason)

    async def create_role(self, guild_id: str, name: str, reason: str | None = None) -> DiscordRole:
        data = await self._request(
            "POST",
            f"/guilds/{guild_id}/roles",
            json={"name": name, "mentionable": False, "hoist": False},
            reason=reason,
        )
        return DiscordRole.from_payload(data)

    async def delete_role(self, guild_id: str, role_id: str, reason: str | None = None) -> None:
        await self._request("DELETE", f"/guilds/{guild_id}/roles/{role_id}", reason=reason)

    # ── messages ─────────────────────────────────────────────────────────────

    async def direct_message(self, user_id: str, content: str | None = None, embeds: list[dict] | None = None) -> None:
        channel = await self._request("POST", "/users/@me/channels", json={"recipient_id": user_id})
        await self.send_channel_message(str(channel["id"]), content=content, embeds=embeds)

    async def send_channel_message(
        self, channel_id: str, content: str | None = None, embeds: list[dict] | None = None
    ) -> None:
        payload: dict[str, Any] = {"allowed_mentions": {"parse": []}}
        if content:
            payload["content"] = content
        if embeds:
            payload["embeds"] = embeds
        await self._request("POST", f"/channels/{channel_id}/messages", json=payload)

    # ── interactions ─────────────────────────────────────────────────────────

    async def edit_original_response(self, interaction_token: str, payload: dict[str, Any]) -> None:
        """Follow-up for a deferred interaction (token valid 15 minutes)."""
        await self._request(
            "PATCH",
            f"/webhooks/{self.application_id}/{interaction_token}/messages/@original",
            json=payload,
        )

    async def bulk_overwrite_global_commands(self, commands: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self._request("PUT", f"/applications/{self.application_id}/commands", json=commands)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"text": response.text[:200]}
    return body if isinstance(body, dict) else {"body": body}
