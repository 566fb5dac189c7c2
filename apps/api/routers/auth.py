"""
Session minting for the chat presentation layer.

The bot holds SERVICE_API_KEY and exchanges a platform user id for a
per-user bearer token; every other user route is scoped by that token.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import admin_user_ids, settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.ledger import ensure_user
from services.session_token import create_session_token

router = APIRouter()


class SessionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=128)


class SessionResponse(BaseModel):
    user_id: str
    is_admin: bool
    session_token: str
    session_expires_at: int


def _require_service_key(x_service_key: Optional[str]) -> None:
    expected = (settings.SERVICE_API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="SERVICE_API_KEY is not configured.")
    if not x_service_key or not hmac.compare_digest(x_service_key, expected):
        raise HTTPException(status_code=401, detail="Invalid service key.")


@router.post("/session", response_model=SessionResponse)
async def create_session(
    request: SessionRequest,
    x_service_key: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("auth_session", limit=600, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    """Register the user on first contact and return a session token."""
    _require_service_key(x_service_key)
    user_id = request.user_id.strip()
    await ensure_user(user_id, db, first_name=request.first_name)
    session = create_session_token(user_id, first_name=request.first_name)
    return SessionResponse(
        user_id=user_id,
        is_admin=user_id in admin_user_ids(),
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me")
async def current_session(auth: AuthContext = Depends(get_auth_context)):
    return {"user_id": auth.user_id, "is_admin": auth.is_admin, "first_name": auth.first_name}
