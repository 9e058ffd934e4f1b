"""
Custom exceptions for the verification service.

Five families, each with its own handling policy:
- ExpiredError: token or wizard session lapsed; the user simply retries
- IdentityConflictError: account already bound elsewhere; needs a manual unlink
- MisconfigurationError: an administrator has to fix server configuration
- UpstreamUnavailableError: Redis, Discord or Keycloak failed; retry later
- NotFoundError: something referenced by configuration no longer exists
"""

from typing import Any


class VerifyBotError(Exception):
    """Base exception for the verification service."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# === Families ===

class ExpiredError(VerifyBotError):
    """A short-lived token or session is gone."""


class IdentityConflictError(VerifyBotError):
    """The identities involved are bound to someone else."""


class MisconfigurationError(VerifyBotError):
    """Server configuration prevents the operation."""


class UpstreamUnavailableError(VerifyBotError):
    """An external dependency failed."""


class NotFoundError(VerifyBotError):
    """A referenced object does not exist (any more)."""


# === Identity links ===

class LinkConflictError(IdentityConflictError):
    """Raised when storing a link would overwrite an existing, different link."""

    def __init__(self, platform_user_id: str, sso_user_id: str, existing: dict[str, str | None]):
        super().__init__(
            message="Identity is already linked to a different account; unlink it first",
            details={
                "platform_user_id": platform_user_id,
                "sso_user_id": sso_user_id,
                "existing": existing,
            },
        )


# === Configuration ===

class VerifiedRoleNotConfiguredError(MisconfigurationError):
    """Raised when a server has no (existing) verified role."""

    def __init__(self, guild_id: str):
        super().__init__(
            message=(
                "No verified role configured for this server. "
                "Please ask an administrator to run `/setverifiedrole` first."
            ),
            details={"guild_id": guild_id},
        )


class InvalidSetupSessionError(MisconfigurationError):
    """Raised when a role setup wizard is committed in an invalid state."""

    def __init__(self, reason: str, guild_id: str, operator_id: str):
        super().__init__(
            message=reason,
            details={"guild_id": guild_id, "operator_id": operator_id},
        )


class SetupSessionExpiredError(ExpiredError):
    """Raised when the role setup wizard session is missing or expired."""

    def __init__(self, guild_id: str, operator_id: str):
        super().__init__(
            message="Session expired. Please run `/setuproles` again.",
            details={"guild_id": guild_id, "operator_id": operator_id},
        )


# === Upstream ===

class StoreUnavailableError(UpstreamUnavailableError):
    """Raised when Redis cannot be reached or rejects a command."""

    def __init__(self, operation: str, original_error: Exception | None = None):
        super().__init__(
            message=f"Store operation failed: {operation}",
            details={"operation": operation, "original_error": str(original_error) if original_error else None},
        )
        self.original_error = original_error


class DiscordAPIError(UpstreamUnavailableError):
    """Raised when a Discord REST call fails."""

    def __init__(self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            details={"status_code": status_code, **(details or {})},
        )
        self.status_code = status_code


class DiscordNotFoundError(NotFoundError):
    """Raised when Discord answers 404 (unknown role, member, channel...)."""

    def __init__(self, path: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Discord resource not found: {path}",
            details={"path": path, **(details or {})},
        )


class KeycloakError(UpstreamUnavailableError):
    """Raised when a Keycloak admin or OIDC request fails."""

    def __init__(self, message: str, original_error: Exception | None = None, status_code: int | None = None):
        super().__init__(
            message=message,
            details={
                "status_code": status_code,
                "original_error": str(original_error) if original_error else None,
            },
        )
        self.original_error = original_error
        self.status_code = status_code
