"""Tests for the browser flow: /verify, /auth/callback, /link-callback and the result pages."""
import json
from base64 import b64decode
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner

from discord_verify.exceptions import KeycloakError
from discord_verify.main import create_app
from discord_verify.routers.auth import SESSION_SUBJECT, SESSION_TOKEN
from discord_verify.utils import keys

from conftest import OTHER_USER, SSO_USER, USER, seed_pending


@pytest.fixture
def client(state):
    with TestClient(create_app(state=state)) as c:
        yield c


def query(location: str) -> dict[str, str]:
    return {name: values[0] for name, values in parse_qs(urlparse(location).query).items()}


def session_data(client, settings) -> dict:
    """Decode the signed session cookie; an emptied session has no cookie."""
    cookie = client.cookies.get("discord_verify_session")
    if not cookie:
        return {}
    return json.loads(b64decode(TimestampSigner(settings.SESSION_SECRET).unsign(cookie)))


def start(client, token: str = "t1") -> dict[str, str]:
    """GET /verify and return the query of the SSO redirect."""
    response = client.get("/verify", params={"state": token}, follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"].startswith("https://sso.test/auth?")
    return query(response.headers["location"])


def login(client, path: str, sso_params: dict[str, str], code: str) -> str:
    """Come back from the SSO with ``code``; returns the next redirect."""
    response = client.get(path, params={"code": code, "state": sso_params["state"]}, follow_redirects=False)
    assert response.status_code == 302
    return response.headers["location"]


class TestVerifyStart:

    def test_unknown_token(self, client):
        response = client.get("/verify", params={"state": "nope"}, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/error?msg=expired"

    def test_redirects_to_sso_with_pkce(self, client, store):
        seed_pending(store, "t1")
        params = start(client)
        assert params["state"]
        assert params["code_challenge"]
        assert "kc_action" not in params

    def test_store_down(self, client, store):
        store.failing.add("get")
        response = client.get("/verify", params={"state": "t1"}, follow_redirects=False)
        assert response.headers["location"] == "/error?msg=server_error"


class TestAuthCallback:

    def test_already_linked(self, client, store, keycloak, oidc, state):
        seed_pending(store, "t1")
        keycloak.link(SSO_USER, USER)
        oidc.subjects["c1"] = SSO_USER

        location = login(client, "/auth/callback", start(client), "c1")

        assert location == "/success?state=t1"
        assert keys.pending_verification("t1") not in store.data

    def test_sends_user_to_link_discord(self, client, store, oidc):
        seed_pending(store, "t1")
        oidc.subjects["c1"] = SSO_USER

        location = login(client, "/auth/callback", start(client), "c1")

        params = query(location)
        assert location.startswith("https://sso.test/auth?")
        assert params["kc_action"] == "idp_link:discord"
        assert params["redirect_uri"] == "http://verify.test/link-callback"
        assert keys.pending_verification("t1") in store.data

    def test_linked_to_someone_else(self, client, store, keycloak, oidc):
        seed_pending(store, "t1")
        keycloak.link(SSO_USER, OTHER_USER)
        oidc.subjects["c1"] = SSO_USER

        assert login(client, "/auth/callback", start(client), "c1") == "/error?msg=already_linked"

    def test_state_mismatch(self, client, store, oidc):
        seed_pending(store, "t1")
        oidc.subjects["c1"] = SSO_USER
        start(client)

        response = client.get("/auth/callback", params={"code": "c1", "state": "forged"}, follow_redirects=False)

        assert response.headers["location"] == "/error?msg=server_error"
        assert oidc.exchanges == []

    def test_without_session(self, client):
        response = client.get("/auth/callback", params={"code": "c1", "state": "s"}, follow_redirects=False)
        assert response.headers["location"] == "/error?msg=expired"

    def test_login_error(self, client, store):
        seed_pending(store, "t1")
        start(client)
        response = client.get("/auth/callback", params={"error": "access_denied"}, follow_redirects=False)
        assert response.headers["location"] == "/error?msg=server_error"

    def test_keycloak_down(self, client, store, keycloak, oidc):
        seed_pending(store, "t1")
        oidc.subjects["c1"] = SSO_USER
        keycloak.error = KeycloakError("Keycloak unreachable")

        assert login(client, "/auth/callback", start(client), "c1") == "/error?msg=server_error"

    def test_code_rejected_by_sso(self, client, store, oidc):
        seed_pending(store, "t1")

        assert login(client, "/auth/callback", start(client), "unknown-code") == "/error?msg=server_error"
        assert keys.pending_verification("t1") in store.data

    def test_finished_flow_clears_session(self, client, store, keycloak, oidc, settings):
        seed_pending(store, "t1")
        keycloak.link(SSO_USER, USER)
        oidc.subjects["c1"] = SSO_USER

        login(client, "/auth/callback", start(client), "c1")

        session = session_data(client, settings)
        assert SESSION_TOKEN not in session
        assert SESSION_SUBJECT not in session

    def test_completion_channel_closed(self, client, store, keycloak, oidc, state):
        seed_pending(store, "t1")
        keycloak.link(SSO_USER, USER)
        oidc.subjects["c1"] = SSO_USER
        state.channel.close()

        assert login(client, "/auth/callback", start(client), "c1") == "/error?msg=incomplete"


class TestLinkCallback:

    def _to_link_step(self, client, store, oidc) -> dict[str, str]:
        seed_pending(store, "t1")
        oidc.subjects["c1"] = SSO_USER
        oidc.subjects["c2"] = SSO_USER
        return query(login(client, "/auth/callback", start(client), "c1"))

    def test_linked_right_account(self, client, store, keycloak, oidc):
        link_params = self._to_link_step(client, store, oidc)
        keycloak.link(SSO_USER, USER)

        location = login(client, "/link-callback", link_params, "c2")

        assert location == "/success?state=t1"
        assert oidc.exchanges[-1]["redirect_uri"] == "http://verify.test/link-callback"

    def test_linked_wrong_account(self, client, store, keycloak, oidc):
        link_params = self._to_link_step(client, store, oidc)
        keycloak.link(SSO_USER, OTHER_USER)

        assert login(client, "/link-callback", link_params, "c2") == "/error?msg=wrong_account"
        assert keycloak.deleted == [(SSO_USER, "discord")]

    def test_link_cancelled(self, client, store, oidc):
        self._to_link_step(client, store, oidc)

        response = client.get("/link-callback", params={"error": "access_denied"}, follow_redirects=False)

        assert response.headers["location"] == "/error?msg=not_linked"

    def test_finished_link_clears_session(self, client, store, keycloak, oidc, settings):
        link_params = self._to_link_step(client, store, oidc)
        assert session_data(client, settings)[SESSION_SUBJECT] == SSO_USER
        keycloak.link(SSO_USER, USER)

        login(client, "/link-callback", link_params, "c2")

        session = session_data(client, settings)
        assert SESSION_TOKEN not in session
        assert SESSION_SUBJECT not in session

    def test_replayed_callback(self, client, store, keycloak, oidc):
        link_params = self._to_link_step(client, store, oidc)
        keycloak.link(SSO_USER, USER)
        login(client, "/link-callback", link_params, "c2")

        response = client.get("/link-callback", params={"code": "c2", "state": link_params["state"]}, follow_redirects=False)

        assert response.headers["location"] == "/error?msg=expired"


class TestPagesAndApi:

    def test_verify_status(self, client, store):
        seed_pending(store, "t1")
        assert client.get("/api/verify-status/t1").json() == {"status": "pending", "discord_username": f"user{USER}"}
        assert client.get("/api/verify-status/t2").json() == {"status": "not_found", "discord_username": None}

    def test_success_page(self, client):
        response = client.get("/success", params={"state": "t1"})
        assert response.status_code == 200
        assert "Your Andrew ID has been successfully linked to Discord." in response.text

    @pytest.mark.parametrize("code", ["expired", "wrong_account", "already_linked", "not_linked", "incomplete", "server_error", "junk"])
    def test_error_pages_render(self, client, code):
        response = client.get("/error", params={"msg": code})
        assert response.status_code == 200
        assert "<h1>" in response.text

    def test_store_pinged_on_startup(self, client, store):
        assert store.pings == 1

    def test_starts_with_store_down(self, state, store):
        store.failing.add("ping")
        with TestClient(create_app(state=state)) as c:
            assert c.get("/health").json()["status"] == "ok"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "version": "0.1.0"}
