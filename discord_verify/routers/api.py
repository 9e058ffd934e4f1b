"""
JSON API used by the verification page.

GET /api/verify-status/{state}: is this verification link still pending?
"""
from typing import Literal, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from discord_verify.state import AppState

router = APIRouter(prefix="/api", tags=["api"])


class VerifyStatusResponse(BaseModel):
    status: Literal["pending", "not_found"]
    discord_username: Optional[str] = None


@router.get("/verify-status/{token}", response_model=VerifyStatusResponse)
async def verify_status(token: str, request: Request):
    app_state: AppState = request.app.state.verify
    pending = await app_state.registry.lookup(token)
    if pending is None:
        return VerifyStatusResponse(status="not_found")
    return VerifyStatusResponse(status="pending", discord_username=pending.discord_username)
