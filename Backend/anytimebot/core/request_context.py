"""
Request Context Resolution Module

This module is the single place where a request's identity is resolved.
All owner-scoped routes depend on get_request_context().

ARCHITECTURE:
    1. resolve_request_context() extracts the session token from the request
       (Authorization: Bearer <token>, falling back to the session cookie)
    2. The token is verified with anytimebot.auth.verify_session_token
    3. A RequestContext is returned; handlers scope every query by
       ctx.user_id and use require_owner() on rows loaded by id
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Resolved identity of the caller."""
    user_id: Optional[int]

    # Auth metadata
    auth_method: str  # 'bearer', 'cookie', 'none'
    is_authenticated: bool = True

    # Request metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _extract_token(request: Request) -> tuple[Optional[str], str]:
    from ..auth import SESSION_COOKIE_NAME

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip(), "bearer"
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return cookie, "cookie"
    return None, "none"


async def resolve_request_context(
    request: Request,
    session: AsyncSession,
    require_auth: bool = True,
) -> RequestContext:
    """
    Resolve the identity from a request.

    Raises:
        HTTPException 401: If require_auth=True and no valid identity found
    """
    from ..auth import InvalidSessionToken, verify_session_token

    token, auth_method = _extract_token(request)
    user_id: Optional[int] = None

    if token:
        try:
            payload = verify_session_token(token)
            user_id = int(payload["sub"])
        except InvalidSessionToken as e:
            logger.warning(f"Session verification failed: {e}")
            if require_auth:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid or expired session. Please sign in again.",
                    headers={"WWW-Authenticate": "Bearer"},
                )

    if user_id is not None:
        from ..models import User

        # Tokens can outlive deleted accounts
        if await session.get(User, user_id) is None:
            logger.warning(f"Session references missing user {user_id}")
            user_id = None

    if user_id is None:
        if require_auth:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return RequestContext(user_id=None, auth_method="none", is_authenticated=False)

    return RequestContext(
        user_id=user_id,
        auth_method=auth_method,
        is_authenticated=True,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def require_owner(ctx: RequestContext, owner_id: Optional[int], resource: str = "Resource") -> None:
    """
    Ensure the row being accessed belongs to the caller.

    Other tenants' rows are reported as missing so their ids do not leak.
    """
    if owner_id is None or ctx.user_id != owner_id:
        logger.warning(f"Ownership check failed: user {ctx.user_id} on {resource.lower()} owned by {owner_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
        )


async def get_request_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """FastAPI dependency for authenticated routes."""
    return await resolve_request_context(request, session, require_auth=True)


async def get_optional_request_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """FastAPI dependency for routes that behave differently for owners."""
    return await resolve_request_context(request, session, require_auth=False)
