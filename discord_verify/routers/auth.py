"""
Browser side of verification.

GET /verify?state=<token>   check the token, start the SSO login
GET /auth/callback          SSO login done → run the linking state machine;
                            no Discord identity yet → send the user through
                            Keycloak's idp_link action
GET /link-callback          back from the Discord link → check again

Everything between the redirects (token, OIDC state, PKCE verifier, SSO
subject) lives in the signed session cookie.
"""
import secrets
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse

from discord_verify.exceptions import UpstreamUnavailableError
from discord_verify.logging_config import get_logger
from discord_verify.models.verification import LinkState
from discord_verify.services.linking import LinkOutcome
from discord_verify.state import AppState

logger = get_logger(__name__)

router = APIRouter(tags=["auth"])

SESSION_TOKEN = "pending_verification_state"
SESSION_SUBJECT = "sso_subject"
SESSION_OAUTH_STATE = "oauth_state"
SESSION_VERIFIER = "code_verifier"


class LoginStateMismatch(Exception):
    """OIDC state missing from the session or different from the callback's."""


# ── Helpers ──────────────────────────────────────────────────────────────────

def _app_state(request: Request) -> AppState:
    return request.app.state.verify


def error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(f"/error?{urlencode({'msg': code})}", status_code=302)


def outcome_redirect(outcome: LinkOutcome) -> RedirectResponse:
    if outcome.state is LinkState.LINKED:
        if outcome.completion_lost:
            return error_redirect("incomplete")
        return RedirectResponse(f"/success?{urlencode({'state': outcome.token})}", status_code=302)
    return error_redirect(outcome.state.error_code or "server_error")


def begin_login(
    request: Request,
    app_state: AppState,
    *,
    kc_action: Optional[str] = None,
    redirect_uri: Optional[str] = None,
) -> RedirectResponse:
    login = app_state.oidc.create_authorization_request(kc_action=kc_action, redirect_uri=redirect_uri)
    request.session[SESSION_OAUTH_STATE] = login.state
    request.session[SESSION_VERIFIER] = login.code_verifier
    return RedirectResponse(login.url, status_code=302)


async def finish_login(
    request: Request,
    app_state: AppState,
    code: str,
    returned_state: Optional[str],
    redirect_uri: Optional[str] = None,
) -> str:
    """Exchange the code and return the SSO subject."""
    expected = request.session.pop(SESSION_OAUTH_STATE, None)
    verifier = request.session.pop(SESSION_VERIFIER, None)
    if not expected or not verifier or not secrets.compare_digest(expected, returned_state or ""):
        raise LoginStateMismatch()

    return await app_state.oidc.authenticate(code=code, code_verifier=verifier, redirect_uri=redirect_uri)


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.get("/verify")
async def verify_start(request: Request, token: str = Query(..., alias="state")):
    app_state = _app_state(request)
    logger.info("verify_start", token=token)

    try:
        pending = await app_state.registry.lookup(token)
    except UpstreamUnavailableError as e:
        logger.error("verify_start_failed", token=token, error=e.message)
        return error_redirect("server_error")
    if pending is None:
        logger.warning("verify_start_expired", token=token)
        return error_redirect("expired")

    request.session.clear()
    request.session[SESSION_TOKEN] = token
    return begin_login(request, app_state)


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    app_state = _app_state(request)
    token = request.session.get(SESSION_TOKEN)
    if token is None:
        logger.warning("auth_callback_without_token")
        return error_redirect("expired")
    if error or not code:
        logger.warning("sso_login_failed", token=token, error=error)
        return error_redirect("server_error")

    try:
        sso_subject = await finish_login(request, app_state, code, state)
        request.session[SESSION_SUBJECT] = sso_subject
        logger.info("sso_login_completed", token=token, sso_subject=sso_subject)
        outcome = await app_state.linking.drive(token, sso_subject)
    except LoginStateMismatch:
        logger.warning("sso_login_state_mismatch", token=token)
        return error_redirect("server_error")
    except UpstreamUnavailableError as e:
        logger.error("auth_callback_failed", token=token, error=e.message, details=e.details)
        return error_redirect("server_error")

    if outcome.state is LinkState.AWAITING_EXTERNAL_AUTH:
        # AwaitingIdentityLink from here on: the token waits in the session
        alias = app_state.settings.IDENTITY_PROVIDER_ALIAS
        return begin_login(
            request,
            app_state,
            kc_action=f"idp_link:{alias}",
            redirect_uri=app_state.settings.link_redirect_uri,
        )

    request.session.pop(SESSION_TOKEN, None)
    request.session.pop(SESSION_SUBJECT, None)
    return outcome_redirect(outcome)


@router.get("/link-callback")
async def link_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    app_state = _app_state(request)
    token = request.session.pop(SESSION_TOKEN, None)
    sso_subject = request.session.pop(SESSION_SUBJECT, None)
    if token is None or sso_subject is None:
        logger.warning("link_callback_without_session")
        return error_redirect("expired")

    try:
        if code and not error:
            linked_subject = await finish_login(
                request, app_state, code, state, redirect_uri=app_state.settings.link_redirect_uri
            )
            if linked_subject != sso_subject:
                logger.warning("link_callback_subject_changed", token=token, before=sso_subject, after=linked_subject)
                sso_subject = linked_subject
        else:
            # cancelled or failed at Keycloak; the re-check reports NotLinked
            logger.info("discord_link_aborted", token=token, error=error)
        outcome = await app_state.linking.drive(token, sso_subject, returning_from_link=True)
    except LoginStateMismatch:
        logger.warning("link_state_mismatch", token=token)
        return error_redirect("server_error")
    except UpstreamUnavailableError as e:
        logger.error("link_callback_failed", token=token, error=e.message, details=e.details)
        return error_redirect("server_error")

    return outcome_redirect(outcome)
