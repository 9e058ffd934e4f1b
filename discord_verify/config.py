"""
Discord Verify — Configuration
All settings loaded from environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- Discord ---
    DISCORD_TOKEN: str
    DISCORD_APPLICATION_ID: str
    # Hex-encoded Ed25519 key from the developer portal, used to check interaction signatures
    DISCORD_PUBLIC_KEY: str
    DISCORD_API_BASE: str = "https://discord.com/api/v10"

    # --- Keycloak ---
    KEYCLOAK_URL: str
    KEYCLOAK_REALM: str
    # Confidential client used for the browser login
    KEYCLOAK_OIDC_CLIENT_ID: str
    KEYCLOAK_OIDC_CLIENT_SECRET: str
    # Service account with view-users / manage-users on the realm
    KEYCLOAK_ADMIN_CLIENT_ID: str
    KEYCLOAK_ADMIN_CLIENT_SECRET: str
    # Alias of the Discord identity provider inside the realm
    IDENTITY_PROVIDER_ALIAS: str = "discord"

    # --- Redis ---
    REDIS_URL: str = "redis://localhost:6379/0"

    # --- Web ---
    APP_URL: str
    SESSION_SECRET: str

    # --- Sentry ---
    SENTRY_DSN: Optional[str] = None

    # --- Behaviour ---
    VERIFICATION_TTL_SECONDS: int = 600
    SETUP_SESSION_TTL_SECONDS: int = 900
    HTTP_TIMEOUT_SECONDS: float = 10.0
    # How the SSO account is called in user-facing text
    SSO_ACCOUNT_LABEL: str = "Andrew ID"

    # --- App ---
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Convenience ---
    @property
    def app_url(self) -> str:
        return self.APP_URL.rstrip("/")

    @property
    def realm_url(self) -> str:
        """Base URL of the realm, e.g. https://sso.example.com/realms/main"""
        return f"{self.KEYCLOAK_URL.rstrip('/')}/realms/{self.KEYCLOAK_REALM}"

    @property
    def admin_realm_url(self) -> str:
        return f"{self.KEYCLOAK_URL.rstrip('/')}/admin/realms/{self.KEYCLOAK_REALM}"

    @property
    def oidc_redirect_uri(self) -> str:
        return f"{self.app_url}/auth/callback"

    @property
    def link_redirect_uri(self) -> str:
        return f"{self.app_url}/link-callback"

    @property
    def account_console_url(self) -> str:
        return f"{self.realm_url}/account"

    def verify_url(self, token: str) -> str:
        return f"{self.app_url}/verify?state={token}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
