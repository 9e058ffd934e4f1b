"""
SetupSession — in-progress /setuproles wizard state for one (server, operator).
Lives in process memory only; see services/setup_sessions.py for the table.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from discord_verify.models.roles import RoleKey, RoleMode, keys_for_mode


class SetupState(str, Enum):
    CREATED = "created"
    MODE_SELECTED = "mode_selected"
    CUSTOM_SELECTING = "custom_selecting"
    VALIDATED = "validated"
    COMMITTED = "committed"


@dataclass
class SetupSession:
    guild_id: str
    operator_id: str
    touched_at: float
    state: SetupState = SetupState.CREATED
    mode: Optional[RoleMode] = None
    custom_keys: frozenset[RoleKey] = field(default_factory=frozenset)

    def select_mode(self, mode: RoleMode) -> None:
        self.mode = mode
        self.custom_keys = frozenset()
        self.state = SetupState.CUSTOM_SELECTING if mode is RoleMode.CUSTOM else SetupState.MODE_SELECTED

    def select_custom(self, keys: frozenset[RoleKey]) -> None:
        if self.mode is not RoleMode.CUSTOM:
            raise ValueError("Custom roles can only be chosen in custom mode")
        self.custom_keys = keys
        self.state = SetupState.CUSTOM_SELECTING

    def validate(self) -> Optional[str]:
        """Return an error message, or None and move to VALIDATED."""
        if self.mode is None:
            return "No role mode selected."
        if self.mode is RoleMode.CUSTOM and not self.custom_keys:
            return "Please select at least one role for custom mode."
        self.state = SetupState.VALIDATED
        return None

    @property
    def desired_keys(self) -> frozenset[RoleKey]:
        if self.mode is None:
            return frozenset()
        return keys_for_mode(self.mode, self.custom_keys)
