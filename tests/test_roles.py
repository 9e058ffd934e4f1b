"""Tests for role modes, role keys, RoleConfig and the Redis key layout."""
import pytest

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
from discord_verify.models.setup_session import SetupSession, SetupState
from discord_verify.models.verification import LinkState
from discord_verify.utils import keys


class TestRoleMode:

    @pytest.mark.parametrize("raw,expected", [
        ("levels", RoleMode.LEVELS),
        (" Classes ", RoleMode.CLASSES),
        ("CUSTOM", RoleMode.CUSTOM),
        ("none", RoleMode.NONE),
        ("bogus", RoleMode.NONE),
        (None, RoleMode.NONE),
    ])
    def test_parse(self, raw, expected):
        assert RoleMode.parse(raw) is expected

    def test_categories(self):
        assert RoleMode.CUSTOM.assigns_levels and RoleMode.CUSTOM.assigns_classes
        assert RoleMode.LEVELS.assigns_levels and not RoleMode.LEVELS.assigns_classes
        assert not RoleMode.NONE.assigns_levels and not RoleMode.NONE.assigns_classes


class TestRoleKey:

    def test_catalog_sizes(self):
        assert len(LEVEL_KEYS) == 2
        assert len(CLASS_KEYS) == 7
        assert len(ALL_ROLE_KEYS) == 9

    def test_str_roundtrip(self):
        for key in ALL_ROLE_KEYS:
            assert RoleKey.parse(str(key)) == key

    def test_parse_is_case_and_slug_tolerant(self):
        expected = RoleKey(RoleCategory.CLASS, "Fifth-Year Senior")
        assert RoleKey.parse("class:fifth-year-senior") == expected
        assert RoleKey.parse("CLASS:Fifth-Year Senior") == expected

    @pytest.mark.parametrize("raw", ["Undergrad", "level:Postdoc", "rank:Junior", ""])
    def test_parse_rejects_unknown(self, raw):
        with pytest.raises(ValueError):
            RoleKey.parse(raw)

    def test_from_attribute(self):
        assert RoleKey.from_attribute(RoleCategory.LEVEL, "graduate") == RoleKey(RoleCategory.LEVEL, "Graduate")
        assert RoleKey.from_attribute(RoleCategory.LEVEL, "Alumni") is None


class TestKeysForMode:

    def test_fixed_modes(self):
        assert keys_for_mode(RoleMode.NONE) == frozenset()
        assert keys_for_mode(RoleMode.LEVELS) == frozenset(LEVEL_KEYS)
        assert keys_for_mode(RoleMode.CLASSES) == frozenset(CLASS_KEYS)

    def test_custom_uses_selection(self):
        selection = frozenset({LEVEL_KEYS[0], CLASS_KEYS[3]})
        assert keys_for_mode(RoleMode.CUSTOM, selection) == selection
        assert keys_for_mode(RoleMode.CUSTOM) == frozenset()

    def test_fixed_modes_ignore_selection(self):
        assert keys_for_mode(RoleMode.LEVELS, frozenset({CLASS_KEYS[0]})) == frozenset(LEVEL_KEYS)


class TestRoleConfig:

    def test_role_for_attribute_honours_mode(self):
        undergrad = RoleKey(RoleCategory.LEVEL, "Undergrad")
        junior = RoleKey(RoleCategory.CLASS, "Junior")
        config = RoleConfig(guild_id="1", mode=RoleMode.LEVELS, role_ids={undergrad: "10", junior: "11"})

        assert config.role_for_attribute(RoleCategory.LEVEL, "undergrad") == "10"
        assert config.role_for_attribute(RoleCategory.CLASS, "Junior") is None, "classes are off in levels mode"

    def test_unknown_attribute_value(self):
        config = RoleConfig(guild_id="1", mode=RoleMode.CUSTOM)
        assert config.role_for_attribute(RoleCategory.CLASS, "Freshman") is None

    def test_managed_role_ids_exclude_verified(self):
        config = RoleConfig(guild_id="1", verified_role_id="5", role_ids={LEVEL_KEYS[0]: "10"})
        assert config.managed_role_ids == {"10"}


class TestSetupSessionModel:

    def test_custom_requires_keys(self):
        session = SetupSession(guild_id="1", operator_id="2", touched_at=0)
        session.select_mode(RoleMode.CUSTOM)
        assert session.validate() == "Please select at least one role for custom mode."
        assert session.state is SetupState.CUSTOM_SELECTING

    def test_no_mode_selected(self):
        session = SetupSession(guild_id="1", operator_id="2", touched_at=0)
        assert session.validate() == "No role mode selected."

    def test_mode_change_clears_custom_keys(self):
        session = SetupSession(guild_id="1", operator_id="2", touched_at=0)
        session.select_mode(RoleMode.CUSTOM)
        session.select_custom(frozenset({LEVEL_KEYS[0]}))
        session.select_mode(RoleMode.LEVELS)
        assert session.custom_keys == frozenset()
        assert session.validate() is None
        assert session.state is SetupState.VALIDATED
        assert session.desired_keys == frozenset(LEVEL_KEYS)

    def test_select_custom_outside_custom_mode(self):
        session = SetupSession(guild_id="1", operator_id="2", touched_at=0)
        session.select_mode(RoleMode.CLASSES)
        with pytest.raises(ValueError):
            session.select_custom(frozenset({LEVEL_KEYS[0]}))


class TestLinkState:

    def test_error_codes(self):
        assert LinkState.EXPIRED.error_code == "expired"
        assert LinkState.WRONG_IDENTITY.error_code == "wrong_account"
        assert LinkState.ALREADY_LINKED_ELSEWHERE.error_code == "already_linked"
        assert LinkState.NOT_LINKED.error_code == "not_linked"
        assert LinkState.LINKED.error_code is None

    def test_terminal(self):
        assert LinkState.LINKED.is_terminal
        assert not LinkState.AWAITING_EXTERNAL_AUTH.is_terminal


class TestKeyLayout:

    def test_link_keys(self):
        assert keys.platform_to_sso("42") == "discord:42:keycloak"
        assert keys.sso_to_platform("abc") == "keycloak:abc:discord"
        assert keys.linked_at("42") == "discord:42:verified_at"

    def test_guild_keys(self):
        key = RoleKey(RoleCategory.CLASS, "Fifth-Year Senior")
        assert keys.managed_role("7", key) == "guild:7:role:class:Fifth-Year Senior"
        assert keys.verified_role("7") == "guild:7:role:verified"
        assert keys.role_mode("7") == "guild:7:role_mode"
        assert keys.log_channel("7") == "guild:7:log_channel"
        assert keys.pending_verification("t") == "verify:t"
