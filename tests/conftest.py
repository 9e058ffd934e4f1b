"""
Shared fixtures: in-memory stand-ins for Redis, Discord, Keycloak and the
OIDC login, plus an AppState wired around them.
"""
import fnmatch
import json
import time
from typing import Optional
from urllib.parse import urlencode

import pytest
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from discord_verify.config import Settings
from discord_verify.exceptions import (
    DiscordAPIError,
    DiscordNotFoundError,
    KeycloakError,
    StoreUnavailableError,
    VerifyBotError,
)
from discord_verify.models.verification import PendingVerification
from discord_verify.services.discord_api import DiscordMember, DiscordRole
from discord_verify.services.keycloak import FederatedIdentity, KeycloakUser
from discord_verify.services.oidc import AuthorizationRequest
from discord_verify.state import assemble_state
from discord_verify.utils import keys

GUILD = "100"
USER = "200"
OTHER_USER = "201"
ADMIN = "900"
BOT_USER = "999"
SSO_USER = "sso-1"
VERIFIED_ROLE = "300"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryStore:
    """Same surface as RedisStore, kept in a dict."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, str] = {}
        self.expires: dict[str, float] = {}
        # operations ("get", "set", ...) that raise StoreUnavailableError
        self.failing: set[str] = set()
        # keys whose writes raise StoreUnavailableError
        self.failing_keys: set[str] = set()
        self.pings = 0
        self.closed = False

    def _check(self, operation: str, key: Optional[str] = None) -> None:
        if operation in self.failing or (key is not None and key in self.failing_keys):
            raise StoreUnavailableError(operation)

    def _alive(self, key: str) -> bool:
        expires_at = self.expires.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    async def ping(self) -> bool:
        self._check("ping")
        self.pings += 1
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check("get")
        return self.data[key] if self._alive(key) else None

    async def set(self, key: str, value: str) -> None:
        self._check("set", key)
        self.data[key] = value
        self.expires.pop(key, None)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check("setex", key)
        self.data[key] = value
        self.expires[key] = self.clock() + ttl_seconds

    async def delete(self, key: str) -> bool:
        self._check("delete", key)
        existed = self._alive(key)
        self.data.pop(key, None)
        self.expires.pop(key, None)
        return existed

    async def set_many(self, values: dict[str, str]) -> None:
        self._check("set_many")
        for key in values:
            self._check("set_many", key)
        for key, value in values.items():
            self.data[key] = value
            self.expires.pop(key, None)

    async def delete_many(self, keys_: list[str]) -> int:
        self._check("delete_many")
        count = 0
        for key in keys_:
            if self._alive(key):
                count += 1
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return count

    async def keys_matching(self, pattern: str) -> list[str]:
        self._check("scan")
        return [key for key in list(self.data) if self._alive(key) and fnmatch.fnmatchcase(key, pattern)]

    async def close(self) -> None:
        self.closed = True


class FakeDiscord:
    """Guild roles and member roles in memory; every mutating call is recorded."""

    def __init__(self):
        self.roles: dict[str, dict[str, DiscordRole]] = {}
        self.members: dict[tuple[str, str], set[str]] = {}
        self.calls: list[tuple] = []
        self.dms: list[tuple[str, str]] = []
        self.channel_messages: list[tuple[str, Optional[str], Optional[list]]] = []
        self.edits: list[tuple[str, dict]] = []
        self.member_count = 10
        # method name -> error raised by that method
        self.errors: dict[str, VerifyBotError] = {}
        # role names whose creation fails
        self.failing_names: set[str] = set()
        self._next_id = 5000
        self.closed = False

    # ── setup helpers ──

    def guild_roles(self, guild_id: str) -> dict[str, DiscordRole]:
        return self.roles.setdefault(guild_id, {guild_id: DiscordRole(id=guild_id, name="@everyone", position=0)})

    def add_guild_role(self, guild_id: str, name: str, position: int = 1, role_id: Optional[str] = None) -> DiscordRole:
        role = DiscordRole(id=role_id or self._new_id(), name=name, position=position)
        self.guild_roles(guild_id)[role.id] = role
        return role

    def add_member(self, guild_id: str, user_id: str, *role_ids: str) -> None:
        self.members.setdefault((guild_id, user_id), set()).update(role_ids)

    def member_roles(self, guild_id: str, user_id: str) -> set[str]:
        return self.members.get((guild_id, user_id), set())

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _maybe_fail(self, method: str) -> None:
        if method in self.errors:
            raise self.errors[method]

    # ── DiscordClient surface ──

    async def close(self) -> None:
        self.closed = True

    async def get_guild(self, guild_id: str) -> dict:
        self._maybe_fail("get_guild")
        return {"id": guild_id, "approximate_member_count": self.member_count}

    async def get_member(self, guild_id: str, user_id: str) -> DiscordMember:
        self._maybe_fail("get_member")
        if (guild_id, user_id) not in self.members:
            raise DiscordNotFoundError(f"/guilds/{guild_id}/members/{user_id}")
        return DiscordMember(user_id=user_id, username=f"user{user_id}", role_ids=tuple(sorted(self.members[(guild_id, user_id)])))

    async def get_current_user(self) -> dict:
        return {"id": BOT_USER, "username": "verify-bot"}

    async def list_roles(self, guild_id: str) -> list[DiscordRole]:
        self._maybe_fail("list_roles")
        self.calls.append(("list_roles", guild_id))
        return list(self.guild_roles(guild_id).values())

    async def add_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self.calls.append(("add_role", guild_id, user_id, role_id))
        self._maybe_fail("add_role")
        if role_id not in self.guild_roles(guild_id):
            raise DiscordNotFoundError(f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}")
        self.add_member(guild_id, user_id, role_id)

    async def remove_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self.calls.append(("remove_role", guild_id, user_id, role_id))
        self._maybe_fail("remove_role")
        self.members.get((guild_id, user_id), set()).discard(role_id)

    async def create_role(self, guild_id: str, name: str, reason: Optional[str] = None) -> DiscordRole:
        self.calls.append(("create_role", guild_id, name))
        self._maybe_fail("create_role")
        if name in self.failing_names:
            raise DiscordAPIError("Missing Permissions", status_code=403)
        position = max(r.position for r in self.guild_roles(guild_id).values()) + 1
        return self.add_guild_role(guild_id, name, position=position)

    async def delete_role(self, guild_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self.calls.append(("delete_role", guild_id, role_id))
        self._maybe_fail("delete_role")
        if self.guild_roles(guild_id).pop(role_id, None) is None:
            raise DiscordNotFoundError(f"/guilds/{guild_id}/roles/{role_id}")

    async def direct_message(self, user_id: str, content: Optional[str] = None, embeds: Optional[list] = None) -> None:
        self._maybe_fail("direct_message")
        self.dms.append((user_id, content))

    async def send_channel_message(
        self, channel_id: str, content: Optional[str] = None, embeds: Optional[list] = None
    ) -> None:
        self._maybe_fail("send_channel_message")
        self.channel_messages.append((channel_id, content, embeds))

    async def edit_original_response(self, interaction_token: str, payload: dict) -> None:
        self.edits.append((interaction_token, payload))


class FakeKeycloak:
    def __init__(self, alias: str = "discord"):
        self.alias = alias
        self.identities: dict[str, FederatedIdentity] = {}
        self.users: dict[str, KeycloakUser] = {}
        self.deleted: list[tuple[str, str]] = []
        # raised by every call when set
        self.error: Optional[KeycloakError] = None
        self.closed = False

    def link(self, sso_user_id: str, discord_user_id: str) -> None:
        self.identities[sso_user_id] = FederatedIdentity(self.alias, discord_user_id, f"user{discord_user_id}")

    def add_user(self, sso_user_id: str, **attributes: str) -> KeycloakUser:
        user = KeycloakUser(
            id=sso_user_id,
            username="jdoe",
            email="jdoe@example.edu",
            first_name="Jane",
            last_name="Doe",
            attributes={name: [value] for name, value in attributes.items()},
        )
        self.users[sso_user_id] = user
        return user

    def _maybe_fail(self) -> None:
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True

    async def get_federated_identities(self, user_id: str) -> list[FederatedIdentity]:
        self._maybe_fail()
        identity = self.identities.get(user_id)
        return [identity] if identity else []

    async def get_platform_identity(self, user_id: str) -> Optional[FederatedIdentity]:
        self._maybe_fail()
        return self.identities.get(user_id)

    async def delete_federated_identity(self, user_id: str, provider: str) -> None:
        self._maybe_fail()
        self.deleted.append((user_id, provider))
        self.identities.pop(user_id, None)

    async def get_user(self, user_id: str) -> KeycloakUser:
        self._maybe_fail()
        if user_id not in self.users:
            raise KeycloakError(f"Keycloak GET /users/{user_id} rejected", status_code=404)
        return self.users[user_id]


class FakeOIDC:
    """Authorization codes map straight to SSO subjects through ``subjects``."""

    def __init__(self):
        self.subjects: dict[str, str] = {}
        self.exchanges: list[dict] = []
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    def create_authorization_request(
        self,
        *,
        kc_action: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationRequest:
        state, verifier = generate_token(30), generate_token(64)
        params = {"state": state, "code_challenge": create_s256_code_challenge(verifier)}
        if kc_action:
            params["kc_action"] = kc_action
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return AuthorizationRequest(f"https://sso.test/auth?{urlencode(params)}", state, verifier)

    async def authenticate(self, *, code: str, code_verifier: str, redirect_uri: Optional[str] = None) -> str:
        self.exchanges.append({"code": code, "code_verifier": code_verifier, "redirect_uri": redirect_uri})
        if code not in self.subjects:
            raise KeycloakError("Authorization code exchange rejected: invalid_grant")
        return self.subjects[code]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def seed_pending(store: MemoryStore, token: str, *, user_id: str = USER, guild_id: str = GUILD, ttl: int = 600) -> None:
    """Put a pending verification straight into the store, as /verify would."""
    record = PendingVerification(
        discord_user_id=user_id,
        discord_username=f"user{user_id}",
        guild_id=guild_id,
        created_at=int(store.clock()),
    )
    store.data[keys.pending_verification(token)] = record.model_dump_json()
    store.expires[keys.pending_verification(token)] = store.clock() + ttl


def seed_link(store: MemoryStore, discord_user_id: str, sso_user_id: str) -> None:
    store.data[keys.platform_to_sso(discord_user_id)] = sso_user_id
    store.data[keys.sso_to_platform(sso_user_id)] = discord_user_id
    store.data[keys.linked_at(discord_user_id)] = str(int(store.clock()))


def interaction_payload(
    *,
    type_: int = 2,
    data: Optional[dict] = None,
    user_id: str = USER,
    guild_id: Optional[str] = GUILD,
    admin: bool = False,
    token: str = "interaction-token",
) -> dict:
    user = {"id": user_id, "username": f"user{user_id}"}
    payload = {"type": type_, "token": token, "data": data or {}}
    if guild_id is None:
        payload["user"] = user
    else:
        payload["guild_id"] = guild_id
        payload["member"] = {"user": user, "permissions": "8" if admin else "0"}
    return payload


def signed_headers(signing_key: Ed25519PrivateKey, body: bytes, timestamp: Optional[str] = None) -> dict:
    timestamp = timestamp or str(int(time.time()))
    signature = signing_key.sign(timestamp.encode() + body).hex()
    return {
        "X-Signature-Ed25519": signature,
        "X-Signature-Timestamp": timestamp,
        "Content-Type": "application/json",
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def signing_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


@pytest.fixture
def settings(signing_key) -> Settings:
    public_key = signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    return Settings(
        _env_file=None,
        DISCORD_TOKEN="bot-token",
        DISCORD_APPLICATION_ID="42",
        DISCORD_PUBLIC_KEY=public_key,
        KEYCLOAK_URL="https://sso.test",
        KEYCLOAK_REALM="campus",
        KEYCLOAK_OIDC_CLIENT_ID="verify-web",
        KEYCLOAK_OIDC_CLIENT_SECRET="web-secret",
        KEYCLOAK_ADMIN_CLIENT_ID="verify-admin",
        KEYCLOAK_ADMIN_CLIENT_SECRET="admin-secret",
        APP_URL="http://verify.test",
        SESSION_SECRET="test-session-secret",
        SENTRY_DSN=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock)


@pytest.fixture
def discord() -> FakeDiscord:
    fake = FakeDiscord()
    fake.add_guild_role(GUILD, "Verified", position=2, role_id=VERIFIED_ROLE)
    fake.add_guild_role(GUILD, "Bot", position=10, role_id="301")
    fake.add_member(GUILD, BOT_USER, "301")
    return fake


@pytest.fixture
def keycloak() -> FakeKeycloak:
    return FakeKeycloak()


@pytest.fixture
def oidc() -> FakeOIDC:
    return FakeOIDC()


@pytest.fixture
def state(settings, store, discord, keycloak, oidc, clock):
    return assemble_state(settings, store=store, discord=discord, keycloak=keycloak, oidc=oidc, clock=clock)


@pytest.fixture
def configured_guild(store):
    """GUILD with its verified role set."""
    store.data[keys.verified_role(GUILD)] = VERIFIED_ROLE
    return GUILD
