"""
Bearer identity for the student-facing endpoints.

The app sends its Supabase session JWT (HS256, signed with the project's
JWT secret). Only ``sub`` is required; ``email`` and
``user_metadata.username`` are used when present.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt as pyjwt

from .config import Settings
from .errors import ConfigurationError, UnauthorizedError
from .request_utils import get_header

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None
    username: Optional[str] = None


def get_bearer_token(event: dict) -> Optional[str]:
    header = get_header(event, "Authorization") or ""
    if not header.lower().startswith("bearer "):
        return None
    return header[7:].strip() or None


def decode_session_token(token: str, settings: Settings) -> AuthenticatedUser:
    """Verify a session JWT and return the caller.

    Raises:
        ConfigurationError: no JWT secret configured
        UnauthorizedError: any validation failure
    """
    if not settings.auth_jwt_secret:
        raise ConfigurationError("SUPABASE_JWT_SECRET not configured")

    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except pyjwt.ExpiredSignatureError:
        raise UnauthorizedError("Session expired.")
    except pyjwt.InvalidTokenError as exc:
        logger.info(f"Rejected bearer token: {exc}")
        raise UnauthorizedError("Invalid session.")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid session.")

    metadata = payload.get("user_metadata") or {}
    email = (payload.get("email") or "").strip().lower() or None
    return AuthenticatedUser(user_id=user_id, email=email, username=metadata.get("username"))


def authenticate_request(event: dict, settings: Settings) -> AuthenticatedUser:
    token = get_bearer_token(event)
    if not token:
        raise UnauthorizedError("Missing Authorization bearer token.")
    return decode_session_token(token, settings)
