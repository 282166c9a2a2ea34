"""
Error taxonomy shared by services and routes.

Services raise these; `main.create_app` turns them into the
`{"success": false, "error": ...}` envelope with the matching status.
`message` is what the caller sees. `detail` stays server-side.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import status


class AccessError(Exception):
    """Base error with a public message and an HTTP status."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "ERROR"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.extra = extra or {}
        self.headers = headers


class ValidationError(AccessError):
    """Malformed input."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"


class AuthenticationError(AccessError):
    """No session, or a session token that does not verify."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "AUTH_REQUIRED"

    def __init__(self, message: str = "Authentication required", **kwargs: Any) -> None:
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(message, **kwargs)


class AuthorizationError(AccessError):
    """Valid session, insufficient role."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"

    def __init__(self, message: str = "Committee access required", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(AccessError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"


class ExpiredError(NotFoundError):
    """Same status as not-found so expiry is not an oracle."""

    error_code = "EXPIRED"


class ConflictError(AccessError):
    """Already-used token, duplicate request, state already reviewed."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"


class RateLimitedError(AccessError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "RATE_LIMITED"


class ConfigurationError(AccessError):
    """Required external-service configuration is missing or invalid."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str = "Server configuration error", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UpstreamError(AccessError):
    """An external service (email, edge config, captcha) failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "UPSTREAM_ERROR"

    def __init__(self, message: str = "Upstream service unavailable. Please try again.", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
