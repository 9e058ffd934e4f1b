"""
Role modes, role keys and the per-server role configuration.

Role keys are stable identifiers for the roles the bot manages, independent
of how the role is named on Discord: ``level:Undergrad``, ``class:Doctoral``.
Strings from Redis or from Discord components are parsed once, here.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RoleMode(str, Enum):
    """Which extra role categories are assigned after verification."""
    NONE = "none"
    LEVELS = "levels"
    CLASSES = "classes"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "RoleMode":
        """Unknown or missing values fall back to NONE."""
        if raw is None:
            return cls.NONE
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.NONE

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def assigns_levels(self) -> bool:
        return self in (RoleMode.LEVELS, RoleMode.CUSTOM)

    @property
    def assigns_classes(self) -> bool:
        return self in (RoleMode.CLASSES, RoleMode.CUSTOM)


class RoleCategory(str, Enum):
    LEVEL = "level"
    CLASS = "class"

    @property
    def attribute(self) -> str:
        """Keycloak user attribute holding this category's value."""
        return self.value


LEVEL_NAMES: tuple[str, ...] = ("Undergrad", "Graduate")
CLASS_NAMES: tuple[str, ...] = (
    "First-Year",
    "Sophomore",
    "Junior",
    "Senior",
    "Fifth-Year Senior",
    "Masters",
    "Doctoral",
)


def _slug(name: str) -> str:
    return name.strip().lower().replace(" ", "-")


@dataclass(frozen=True, order=True)
class RoleKey:
    """A (category, name) pair naming one managed role."""
    category: RoleCategory
    name: str

    def __str__(self) -> str:
        return f"{self.category.value}:{self.name}"

    @property
    def display_name(self) -> str:
        """Name the Discord role is created with."""
        return self.name

    @classmethod
    def parse(cls, raw: str) -> "RoleKey":
        """
        Parse ``category:name``. The name is matched against the catalog
        case-insensitively, and slugs (``class:fifth-year-senior``) are accepted.
        Raises ValueError for anything not in the catalog.
        """
        category_raw, sep, name_raw = raw.partition(":")
        if not sep:
            raise ValueError(f"Role key must look like 'category:name', got {raw!r}")
        try:
            category = RoleCategory(category_raw.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role category in {raw!r}")

        wanted = _slug(name_raw)
        for name in _names_for(category):
            if _slug(name) == wanted:
                return cls(category, name)
        raise ValueError(f"Unknown {category.value} role {name_raw!r}")

    @classmethod
    def from_attribute(cls, category: RoleCategory, value: str) -> Optional["RoleKey"]:
        """Map a Keycloak attribute value to a key; None if the value is not in the catalog."""
        try:
            return cls.parse(f"{category.value}:{value}")
        except ValueError:
            return None


def _names_for(category: RoleCategory) -> tuple[str, ...]:
    return LEVEL_NAMES if category is RoleCategory.LEVEL else CLASS_NAMES


LEVEL_KEYS: tuple[RoleKey, ...] = tuple(RoleKey(RoleCategory.LEVEL, n) for n in LEVEL_NAMES)
CLASS_KEYS: tuple[RoleKey, ...] = tuple(RoleKey(RoleCategory.CLASS, n) for n in CLASS_NAMES)
ALL_ROLE_KEYS: tuple[RoleKey, ...] = LEVEL_KEYS + CLASS_KEYS


def keys_for_mode(mode: RoleMode, custom: frozenset[RoleKey] | None = None) -> frozenset[RoleKey]:
    """Role keys a mode implies. CUSTOM uses the explicit selection."""
    if mode is RoleMode.LEVELS:
        return frozenset(LEVEL_KEYS)
    if mode is RoleMode.CLASSES:
        return frozenset(CLASS_KEYS)
    if mode is RoleMode.CUSTOM:
        return frozenset(custom or ())
    return frozenset()


@dataclass
class RoleConfig:
    """
    A server's role configuration as seen right now.

    Only role ids that still exist on Discord are present; stale ids from
    Redis are dropped by the resolver and treated as unconfigured.
    """
    guild_id: str
    mode: RoleMode = RoleMode.NONE
    verified_role_id: Optional[str] = None
    role_ids: dict[RoleKey, str] = field(default_factory=dict)
    log_channel_id: Optional[str] = None

    def role_for(self, key: RoleKey) -> Optional[str]:
        return self.role_ids.get(key)

    def role_for_attribute(self, category: RoleCategory, value: str) -> Optional[str]:
        """Role id for a Keycloak attribute value, honouring the mode."""
        if category is RoleCategory.LEVEL and not self.mode.assigns_levels:
            return None
        if category is RoleCategory.CLASS and not self.mode.assigns_classes:
            return None
        key = RoleKey.from_attribute(category, value)
        if key is None:
            return None
        return self.role_ids.get(key)

    @property
    def managed_role_ids(self) -> set[str]:
        """Level and class role ids (not the verified role)."""
        return set(self.role_ids.values())
