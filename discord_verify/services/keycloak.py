"""
Keycloak admin client — federated identities and user attributes.

Authenticates with the client-credentials grant of a service account.
authlib keeps the token and fetches a new one shortly before it expires.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from discord_verify.exceptions import KeycloakError
from discord_verify.logging_config import get_logger

logger = get_logger(__name__)

# Refresh the admin token this many seconds before Keycloak says it expires
TOKEN_EXPIRY_MARGIN = 30


@dataclass(frozen=True)
class FederatedIdentity:
    identity_provider: str
    user_id: str
    user_name: str = ""


@dataclass
class KeycloakUser:
    id: str
    username: str = ""
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    attributes: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "KeycloakUser":
        return cls(
            id=data["id"],
            username=data.get("username") or "",
            email=data.get("email"),
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            attributes=data.get("attributes") or {},
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def first_attribute(self, name: str) -> Optional[str]:
        values = self.attributes.get(name) or []
        return values[0] if values else None


class KeycloakAdminClient:
    """Realm-scoped admin REST client."""

    def __init__(
        self,
        realm_url: str,
        admin_realm_url: str,
        client_id: str,
        client_secret: str,
        identity_provider_alias: str = "discord",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.admin_realm_url = admin_realm_url
        self.identity_provider_alias = identity_provider_alias
        self.token_endpoint = f"{realm_url}/protocol/openid-connect/token"
        self.oauth = AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            token_endpoint_auth_method="client_secret_post",
            token_endpoint=self.token_endpoint,
            grant_type="client_credentials",
            leeway=TOKEN_EXPIRY_MARGIN,
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self.oauth.aclose()

    async def _ensure_token(self) -> None:
        if self.oauth.token:
            return
        try:
            await self.oauth.fetch_token(self.token_endpoint, grant_type="client_credentials")
        except AuthlibBaseError as e:
            raise KeycloakError(f"Admin token request rejected: {e.error}", e) from e
        except httpx.HTTPStatusError as e:
            raise KeycloakError("Admin token request rejected", e, e.response.status_code) from e
        except httpx.HTTPError as e:
            raise KeycloakError("Admin token request failed", e) from e
        except ValueError as e:
            raise KeycloakError("Unreadable admin token response", e) from e
        logger.debug("keycloak_admin_token_fetched")

    async def _request(self, method: str, path: str) -> Any:
        await self._ensure_token()
        try:
            resp = await self.oauth.request(method, f"{self.admin_realm_url}{path}")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                # token revoked server-side; next call fetches a new one
                self.oauth.token = None
            logger.error("keycloak_request_rejected", method=method, path=path, status=e.response.status_code)
            raise KeycloakError(f"Keycloak {method} {path} rejected", e, e.response.status_code) from e
        except AuthlibBaseError as e:
            self.oauth.token = None
            logger.error("keycloak_token_refresh_rejected", method=method, path=path, error=e.error)
            raise KeycloakError("Admin token refresh rejected", e) from e
        except httpx.HTTPError as e:
            logger.error("keycloak_request_failed", method=method, path=path, error=str(e))
            raise KeycloakError(f"Keycloak {method} {path} failed", e) from e

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise KeycloakError(f"Keycloak {method} {path} returned an unreadable body", e) from e

    async def get_federated_identities(self, user_id: str) -> list[FederatedIdentity]:
        data = await self._request("GET", f"/users/{user_id}/federated-identity")
        return [
            FederatedIdentity(
                identity_provider=item.get("identityProvider", ""),
                user_id=str(item.get("userId", "")),
                user_name=item.get("userName", ""),
            )
            for item in data or []
        ]

    async def delete_federated_identity(self, user_id: str, provider: str) -> None:
        await self._request("DELETE", f"/users/{user_id}/federated-identity/{provider}")

    async def get_user(self, user_id: str) -> KeycloakUser:
        data = await self._request("GET", f"/users/{user_id}")
        return KeycloakUser.from_payload(data)

    async def get_platform_identity(self, user_id: str) -> Optional[FederatedIdentity]:
        """The Discord identity linked to this SSO user, if any."""
        identities = await self.get_federated_identities(user_id)
        for identity in identities:
            if identity.identity_provider == self.identity_provider_alias:
                return identity
        return None
