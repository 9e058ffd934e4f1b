"""OIDC login against the Keycloak realm: authorization code with PKCE.

The same authorization endpoint serves both the plain login and the
account-linking step: adding ``kc_action=idp_link:<alias>`` makes Keycloak
run the Discord login and attach the result to the signed-in SSO user.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.common.security import generate_token
from authlib.integrations.httpx_client import AsyncOAuth2Client

from discord_verify.exceptions import KeycloakError

# PKCE code verifier length (RFC 7636 allows 43-128)
CODE_VERIFIER_LENGTH = 96

SCOPES = ("openid", "email", "profile")


@dataclass
class AuthorizationRequest:
    url: str
    state: str
    code_verifier: str


class OIDCClient:
    """
    One AsyncOAuth2Client shared by every login. Tokens obtained here belong
    to end users, so requests made with them withhold the client's own token.
    """

    def __init__(
        self,
        realm_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.realm_url = realm_url
        self.redirect_uri = redirect_uri
        self.client = AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            scope=" ".join(SCOPES),
            code_challenge_method="S256",
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    @property
    def _endpoint(self) -> str:
        return f"{self.realm_url}/protocol/openid-connect"

    async def close(self) -> None:
        await self.client.aclose()

    def create_authorization_request(
        self,
        *,
        kc_action: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationRequest:
        code_verifier = generate_token(CODE_VERIFIER_LENGTH)
        params = {}
        if kc_action:
            params["kc_action"] = kc_action
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        url, state = self.client.create_authorization_url(
            f"{self._endpoint}/auth",
            code_verifier=code_verifier,
            **params,
        )
        return AuthorizationRequest(url=url, state=state, code_verifier=code_verifier)

    async def exchange_code(
        self, *, code: str, code_verifier: str, redirect_uri: Optional[str] = None
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens; ``redirect_uri`` must match the authorize call."""
        try:
            return await self.client.fetch_token(
                f"{self._endpoint}/token",
                grant_type="authorization_code",
                code=code,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri or self.redirect_uri,
            )
        except AuthlibBaseError as e:
            raise KeycloakError(f"Authorization code exchange rejected: {e.error}", e) from e
        except httpx.HTTPStatusError as e:
            raise KeycloakError("Authorization code exchange rejected", e, e.response.status_code) from e
        except httpx.HTTPError as e:
            raise KeycloakError("Authorization code exchange failed", e) from e
        except ValueError as e:
            raise KeycloakError("Unreadable token response", e) from e

    async def fetch_userinfo(self, access_token: str) -> dict[str, Any]:
        try:
            resp = await self.client.request(
                "GET",
                f"{self._endpoint}/userinfo",
                headers={"Authorization": f"Bearer {access_token}"},
                withhold_token=True,
            )
            resp.raise_for_status()
            claims = resp.json()
        except httpx.HTTPStatusError as e:
            raise KeycloakError("Userinfo request rejected", e, e.response.status_code) from e
        except httpx.HTTPError as e:
            raise KeycloakError("Userinfo request failed", e) from e
        except ValueError as e:
            raise KeycloakError("Unreadable userinfo response", e) from e
        if not isinstance(claims, dict):
            raise KeycloakError("Unreadable userinfo response")
        return claims

    async def authenticate(
        self, *, code: str, code_verifier: str, redirect_uri: Optional[str] = None
    ) -> str:
        """Finish a login and return the SSO subject (``sub``)."""
        tokens = await self.exchange_code(code=code, code_verifier=code_verifier, redirect_uri=redirect_uri)
        access_token = tokens.get("access_token")
        if not access_token:
            raise KeycloakError("Token response carries no access token")
        claims = await self.fetch_userinfo(access_token)
        subject = claims.get("sub")
        if not subject:
            raise KeycloakError("Userinfo response carries no subject")
        return subject
