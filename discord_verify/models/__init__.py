from discord_verify.models.roles import (
    ALL_ROLE_KEYS,
    CLASS_KEYS,
    LEVEL_KEYS,
    RoleCategory,
    RoleConfig,
    RoleKey,
    RoleMode,
    keys_for_mode,
)
from discord_verify.models.verification import LinkState, PendingVerification, VerificationCompletionEvent
from discord_verify.models.setup_session import SetupSession, SetupState

__all__ = [
    "ALL_ROLE_KEYS", "CLASS_KEYS", "LEVEL_KEYS", "RoleCategory", "RoleConfig", "RoleKey", "RoleMode",
    "keys_for_mode", "LinkState", "PendingVerification", "VerificationCompletionEvent",
    "SetupSession", "SetupState",
]
