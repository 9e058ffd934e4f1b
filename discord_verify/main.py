"""
Discord Verify — Main Application

Single FastAPI service: the browser verification flow, the Discord
interactions endpoint, and the background task that assigns roles once
a verification completes.

Run with:  uvicorn discord_verify.main:create_app --factory
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from discord_verify.config import Settings, get_settings
from discord_verify.exceptions import StoreUnavailableError, UpstreamUnavailableError, VerifyBotError
from discord_verify.logging_config import get_logger, setup_logging
from discord_verify.routers.api import router as api_router
from discord_verify.routers.auth import router as auth_router
from discord_verify.routers.pages import router as pages_router
from discord_verify.services.completion import run_completion_consumer
from discord_verify.state import AppState, build_state
from discord_verify.webhooks.commands import handle_interaction
from discord_verify.webhooks.common import GENERIC_ERROR
from discord_verify.webhooks.router_factory import create_interactions_router

VERSION = "0.1.0"

# Time the consumer gets to drain queued completions on shutdown
SHUTDOWN_DRAIN_SECONDS = 10

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, state: Optional[AppState] = None) -> FastAPI:
    """
    Build the application.

    ``state`` replaces the real adapters (tests pass one built around fakes);
    otherwise Redis, Discord and Keycloak clients are created on startup.
    """
    if settings is None:
        settings = state.settings if state is not None else get_settings()

    # --- Logging ---
    setup_logging(settings.LOG_LEVEL, settings.DEBUG)

    # --- Sentry ---
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=0.1,
            environment="development" if settings.DEBUG else "production",
            release=f"discord-verify@{VERSION}",
        )
        logger.info("sentry_initialized")

    # --- Lifespan: adapters and the completion consumer ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_starting", version=VERSION)
        app_state: AppState = getattr(app.state, "verify", None) or build_state(settings)
        app.state.verify = app_state
        try:
            await app_state.store.ping()
            logger.info("redis_connected")
        except StoreUnavailableError as e:
            # not fatal; each request reports the outage on its own
            logger.error("redis_unreachable_at_startup", error=e.message)

        consumer = asyncio.create_task(run_completion_consumer(app_state), name="completion-consumer")
        yield

        logger.info("app_stopping", backlog=app_state.channel.backlog)
        app_state.channel.close()
        try:
            await asyncio.wait_for(consumer, timeout=SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("completion_consumer_drain_timeout", backlog=app_state.channel.backlog)
        await app_state.close()

    # --- App ---
    app = FastAPI(title="Discord Verify", version=VERSION, lifespan=lifespan)
    if state is not None:
        app.state.verify = state

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie="discord_verify_session",
        max_age=settings.VERIFICATION_TTL_SECONDS,
        same_site="lax",
        https_only=settings.app_url.startswith("https://"),
    )

    @app.exception_handler(VerifyBotError)
    async def verify_bot_error_handler(request: Request, exc: VerifyBotError):
        logger.warning(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=exc.message,
            details=exc.details,
        )
        if isinstance(exc, UpstreamUnavailableError):
            return JSONResponse({"error": type(exc).__name__, "message": GENERIC_ERROR}, status_code=503)
        return JSONResponse({"error": type(exc).__name__, "message": exc.message}, status_code=400)

    # --- Health check ---
    @app.get("/health")
    async def health():
        return {"status": "ok", "version": VERSION}

    # --- Browser flow & API ---
    app.include_router(auth_router)
    app.include_router(api_router)
    app.include_router(pages_router)

    # --- Discord interactions ---
    app.include_router(create_interactions_router(settings.DISCORD_PUBLIC_KEY, handle_interaction))
    logger.info("interactions_router_registered", path="/interactions")

    return app


if __name__ == "__main__":
    uvicorn.run("discord_verify.main:create_app", factory=True, host="0.0.0.0", port=3000)
