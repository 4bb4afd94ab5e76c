"""
Supabase authentication for the dashboard API.

Priority:
1. Supabase JWT from the Authorization header (HS256, project JWT secret)
2. X-User-Id header, accepted only with BACKEND_MODE=local
3. 401 Unauthorized
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request
import jwt
import logging

from larder.core.config import settings
from larder.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller; access_token is None for local X-User-Id auth."""
    user_id: str
    access_token: Optional[str] = None


def verify_supabase_jwt(token: str) -> str:
    """
    Verify a Supabase access token and extract the user id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the token's 'sub' claim

    Raises:
        AuthenticationError: missing secret, invalid or expired token
    """
    if not settings.SUPABASE_JWT_SECRET:
        logger.warning("No SUPABASE_JWT_SECRET configured, rejecting bearer token")
        raise AuthenticationError("Token verification is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return user_id


async def get_auth_context(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local mode only: acting user ID"),
) -> AuthContext:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
        return AuthContext(user_id=verify_supabase_jwt(token), access_token=token)

    if x_user_id and settings.BACKEND_MODE == "local":
        return AuthContext(user_id=x_user_id)

    raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")
