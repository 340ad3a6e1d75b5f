"""
Session Authentication Module - password hashing and JWT session tokens

This module provides:
- bcrypt password hashing for email/password accounts
- HS256 session tokens signed with SECRET_KEY (PyJWT)
- Verification of session tokens presented as a Bearer header or cookie

Usage:
    from anytimebot.auth import create_session_token, verify_session_token

    token = create_session_token(user.id)
    payload = verify_session_token(token)
    user_id = int(payload["sub"])
"""

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from .core.config import get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"
JWT_ALGORITHM = "HS256"
JWT_ISSUER = "anytimebot"


class InvalidSessionToken(Exception):
    """Raised when a session token cannot be verified."""


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def create_session_token(user_id: int, email: str | None = None) -> str:
    """Issue a signed session token for a user."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + timedelta(hours=settings.session_ttl_hours),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.secret_key, algorithm=JWT_ALGORITHM)


def verify_session_token(token: str) -> dict:
    """
    Verify a session token and return the decoded payload.

    Raises:
        InvalidSessionToken: when the signature, issuer or expiry is invalid
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise InvalidSessionToken("Session expired") from e
    except jwt.InvalidTokenError as e:
        raise InvalidSessionToken(f"Invalid session token: {e}") from e

    if not str(payload.get("sub", "")).isdigit():
        raise InvalidSessionToken("Session subject is not a user id")
    return payload
