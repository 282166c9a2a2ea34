"""
Per-IP fixed-window rate limiting, shared across workers through Redis.

Key: rate_limit:{scope}:{ip}. INCR, and EXPIRE on the first hit of a window.
If Redis is unreachable the request is allowed and a warning is logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import redis
from fastapi import Request
from redis.exceptions import RedisError

from ..config import settings
from ..errors import RateLimitedError

logger = logging.getLogger(__name__)

SCOPE_MANUAL_REQUEST = "manual_request"
SCOPE_ISSUE = "issue"
SCOPE_REDEEM = "redeem"

_MESSAGES = {
    SCOPE_MANUAL_REQUEST: "Too many requests. Please try again later.",
    SCOPE_ISSUE: "Too many attempts. Please try again later.",
    SCOPE_REDEEM: "Too many verification attempts. Please try again later.",
}

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Shared client, or None when Redis cannot be reached."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
        logger.info("Redis connection established")
        _redis_client = client
        return _redis_client
    except RedisError as e:
        logger.warning("Redis unavailable: %s. Rate limiting disabled.", e)
        return None


def set_redis_client(client: Optional[redis.Redis]) -> None:
    """Swap the shared client (None forces a reconnect on next use)."""
    global _redis_client
    _redis_client = client


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # first hop is the client
        return forwarded.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


def hit(scope: str, ip: str, *, limit: Optional[int] = None, window: Optional[int] = None) -> RateDecision:
    """
    Count one request against (scope, ip) and decide.
    """
    limit = int(limit if limit is not None else settings.rate_limit_for(scope))
    window = int(window if window is not None else settings.rate_limit_window_s)

    if not settings.rate_limit_enabled:
        return RateDecision(True, 0, limit, 0)

    client = get_redis_client()
    if client is None:
        return RateDecision(True, 0, limit, 0)

    key = f"rate_limit:{scope}:{ip}"
    try:
        count = int(client.incr(key))
        if count == 1:
            client.expire(key, window)
        ttl = client.ttl(key)
    except RedisError as e:
        logger.warning("Rate limit check failed for %s: %s", key, e)
        return RateDecision(True, 0, limit, 0)

    retry_after = int(ttl) if ttl and int(ttl) > 0 else window
    return RateDecision(count <= limit, count, limit, retry_after)


def enforce(scope: str, ip: str) -> None:
    decision = hit(scope, ip)
    if not decision.allowed:
        logger.warning("Rate limit exceeded: scope=%s count=%s limit=%s", scope, decision.count, decision.limit)
        raise RateLimitedError(
            _MESSAGES.get(scope, "Too many requests. Please try again later."),
            headers={"Retry-After": str(decision.retry_after)},
        )


def rate_limit(scope: str) -> Callable[[Request], str]:
    """
    FastAPI dependency factory. Yields the client IP so routes can reuse it.

        @router.post("/join")
        def join(..., ip: str = Depends(rate_limit(SCOPE_REDEEM))): ...
    """

    def _dep(request: Request) -> str:
        ip = get_client_ip(request)
        enforce(scope, ip)
        return ip

    return _dep
