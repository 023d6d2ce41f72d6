"""Authentication middleware for FastAPI."""

from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.errors import AuthRequired
from app.core.logging import get_logger

logger = get_logger(__name__)

# HTTP Bearer scheme for Authorization header
security = HTTPBearer(auto_error=False)

# User id attributed to admin API key calls
SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000001"


class AuthContext:
    """Context object containing authenticated user info."""

    def __init__(self, user_id: str, token: str, email: Optional[str] = None, is_admin: bool = False):
        self.user_id = user_id
        self.token = token
        self.email = email
        self.is_admin = is_admin

    def owns(self, owner_id: str) -> bool:
        """Admins act on any intake; users only on their own."""
        return self.is_admin or self.user_id == owner_id


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[AuthContext]:
    """
    Extract and validate the current user from the request.

    Supports two authentication methods:
    1. Supabase JWT tokens (Bearer auth) - for memo buyers
    2. Admin API key (X-API-Key header) - for internal tools

    Returns None if no valid auth is present (for optional auth endpoints).
    """
    admin_key = get_settings().ADMIN_API_KEY
    if x_api_key and admin_key and x_api_key == admin_key:
        logger.debug("Authenticated via admin API key")
        return AuthContext(user_id=SYSTEM_USER_ID, token="api-key", is_admin=True)

    if not credentials:
        return None

    token = credentials.credentials

    try:
        from app.db.supabase_client import get_supabase

        # Supabase validates the JWT signature and expiry
        auth_response = get_supabase().auth.get_user(token)
        if not auth_response or not auth_response.user:
            return None

        return AuthContext(
            user_id=str(auth_response.user.id),
            token=token,
            email=auth_response.user.email,
        )

    except Exception as e:
        logger.warning(f"Auth error: {e}")
        return None


async def require_auth(
    auth: Optional[AuthContext] = Depends(get_current_user),
) -> AuthContext:
    """Require authentication. Raises AuthRequired (401) if not authenticated."""
    if not auth:
        raise AuthRequired("Not authenticated")
    return auth


def bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Raw bearer credential, used for report access tokens."""
    if not credentials or not credentials.credentials:
        raise AuthRequired("Access token required")
    return credentials.credentials
