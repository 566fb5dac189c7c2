"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import admin_user_ids, is_paid_mode, settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    is_admin: bool = False
    first_name: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = str(payload.get("sub", ""))
    return AuthContext(
        user_id=user_id,
        is_admin=user_id in admin_user_ids(),
        first_name=str(payload.get("name", "")) or None,
    )


async def require_member(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Free + private mode restricts user operations to administrators."""
    private = (settings.FREE_ACCESS or "public").strip().lower() == "private"
    if not is_paid_mode() and private and not auth.is_admin:
        raise HTTPException(status_code=403, detail="Access is restricted to administrators.")
    return auth


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Administrator access required.")
    return auth
