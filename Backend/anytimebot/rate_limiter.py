"""
Rate Limiting for public endpoints

Public, unauthenticated endpoints (booking creation, assistant chat) are
limited per client IP with an in-memory sliding window.

Usage:
    from .rate_limiter import public_rate_limit

    @router.post("/chat", dependencies=[Depends(public_rate_limit())])
    async def chat(...):
        ...
"""

import logging
import time
from collections import defaultdict
from typing import Dict, Optional, Tuple

from fastapi import HTTPException, Request, status

from .core.config import get_settings

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# In-Memory Rate Limiter
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """Sliding-window limiter keyed by (client IP, endpoint)."""

    def __init__(self):
        # {ip_address: [(timestamp, endpoint), ...]}
        self.requests: Dict[str, list] = defaultdict(list)
        self.cleanup_interval = 300
        self.last_cleanup = time.time()

    def get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup_old_requests(self, current_time: float):
        if current_time - self.last_cleanup < self.cleanup_interval:
            return

        cutoff = current_time - 3600
        for ip in list(self.requests.keys()):
            self.requests[ip] = [(ts, endpoint) for ts, endpoint in self.requests[ip] if ts > cutoff]
            if not self.requests[ip]:
                del self.requests[ip]

        self.last_cleanup = current_time
        logger.debug(f"Rate limiter cleanup: {len(self.requests)} IPs tracked")

    def check(
        self,
        client_ip: str,
        endpoint: str,
        max_requests: int,
        window_seconds: int = 60,
        now: Optional[float] = None,
    ) -> Tuple[bool, dict]:
        """
        Record a request if it fits in the window.

        Returns:
            (is_allowed, metadata) with remaining, reset_time and limit
        """
        current_time = now if now is not None else time.time()
        self._cleanup_old_requests(current_time)

        window_start = current_time - window_seconds
        recent = [ts for ts, ep in self.requests[client_ip] if ts > window_start and ep == endpoint]

        is_allowed = len(recent) < max_requests
        reset_time = (min(recent) if recent else current_time) + window_seconds
        metadata = {
            "remaining": max(0, max_requests - len(recent) - (1 if is_allowed else 0)),
            "reset_time": int(reset_time),
            "total_requests": len(recent),
            "limit": max_requests,
            "window_seconds": window_seconds,
        }

        if is_allowed:
            self.requests[client_ip].append((current_time, endpoint))

        return is_allowed, metadata

    def clear(self):
        self.requests.clear()


_rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(max_requests: int, window_seconds: int = 60):
    """Create a dependency that raises 429 once an IP exceeds the limit."""

    async def dependency(request: Request):
        endpoint = request.url.path
        client_ip = _rate_limiter.get_client_ip(request)
        is_allowed, metadata = _rate_limiter.check(client_ip, endpoint, max_requests, window_seconds)

        if not is_allowed:
            retry_after = max(1, metadata["reset_time"] - int(time.time()))
            logger.warning(
                f"[RATE_LIMIT] Blocked request from {client_ip} to {endpoint}: "
                f"{metadata['total_requests']}/{metadata['limit']} in {window_seconds}s window"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Too many requests. Limit: {max_requests} per {window_seconds}s",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(max_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(metadata["reset_time"]),
                },
            )

        return None

    return dependency


def public_rate_limit():
    return rate_limit_dependency(get_settings().public_rate_limit_per_minute)
