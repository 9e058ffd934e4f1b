"""
Interactions router factory — the single endpoint Discord posts to.

Pipeline for every incoming interaction:
1. Verify the Ed25519 signature → 401 if invalid
2. Answer PING with PONG (endpoint validation by Discord)
3. Parse the Interaction
4. Call the dispatcher, which returns the interaction response
5. Errors become an ephemeral reply; Discord always gets a 200
"""
import json
from typing import Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from discord_verify.exceptions import VerifyBotError
from discord_verify.logging_config import get_logger
from discord_verify.state import AppState
from discord_verify.webhooks.common import (
    GENERIC_ERROR,
    PING,
    Interaction,
    message,
    pong,
    user_message,
    verify_signature,
)

logger = get_logger(__name__)

# dispatcher(interaction, state, background) → interaction response body
InteractionHandler = Callable[[Interaction, AppState, BackgroundTasks], Awaitable[dict]]


def create_interactions_router(public_key: str, handler: InteractionHandler) -> APIRouter:
    """
    Creates a FastAPI router with the POST /interactions endpoint.

    Args:
        public_key: hex Ed25519 application public key
        handler: async function(interaction, state, background) → response dict
    """
    router = APIRouter()

    @router.post("/interactions")
    async def interactions_endpoint(request: Request, background: BackgroundTasks):
        # 1. Verify signature
        body = await request.body()
        verify_signature(
            public_key,
            request.headers.get("X-Signature-Ed25519", ""),
            request.headers.get("X-Signature-Timestamp", ""),
            body,
        )

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        # 2. PING
        if payload.get("type") == PING:
            return pong()

        # 3. Parse
        interaction = Interaction.from_payload(payload)
        state: AppState = request.app.state.verify

        # 4. Dispatch
        try:
            return await handler(interaction, state, background)
        except VerifyBotError as e:
            logger.warning(
                "interaction_failed",
                interaction_type=interaction.type,
                command=interaction.command_name or interaction.custom_id,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
                error_type=type(e).__name__,
                error=e.message,
            )
            return message(user_message(e))
        except Exception:
            # Still answer Discord; the traceback goes to the logs and Sentry
            logger.exception(
                "interaction_crashed",
                command=interaction.command_name or interaction.custom_id,
                user_id=interaction.user_id,
                guild_id=interaction.guild_id,
            )
            return message(GENERIC_ERROR)

    return router
