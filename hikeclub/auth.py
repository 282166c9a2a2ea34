"""
Committee authorization.

Sessions are owned by the external identity provider; this service only
verifies the bearer JWT it issues and reads the role claims. The result is
resolved once per request into an AuthContext.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, settings as default_settings
from .errors import AuthenticationError, AuthorizationError, ConfigurationError

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is a 401 from us, not a 403 from FastAPI
bearer = HTTPBearer(auto_error=False)


class Role(str, Enum):
    COMMITTEE = "committee"
    TREASURER = "treasurer"
    MEMBER = "member"
    ANONYMOUS = "anonymous"


COMMITTEE_ROLES = frozenset({Role.COMMITTEE, Role.TREASURER})

# Provider role keys -> Role
_ROLE_KEYS = {
    "committee": Role.COMMITTEE,
    "is-committee": Role.COMMITTEE,
    "treasurer": Role.TREASURER,
    "is-treasurer": Role.TREASURER,
    "member": Role.MEMBER,
}


@dataclass(frozen=True)
class AuthContext:
    subject: Optional[str] = None
    email: Optional[str] = None
    roles: FrozenSet[Role] = field(default_factory=lambda: frozenset({Role.ANONYMOUS}))

    @property
    def is_authenticated(self) -> bool:
        return self.subject is not None

    @property
    def is_committee(self) -> bool:
        return bool(self.roles & COMMITTEE_ROLES)


ANONYMOUS = AuthContext()


def _roles_from_claims(claims: Dict[str, Any]) -> FrozenSet[Role]:
    raw = claims.get("roles") or []
    if isinstance(raw, (str, dict)):
        raw = [raw]

    roles = set()
    for item in raw:
        key = item.get("key") if isinstance(item, dict) else item
        if not isinstance(key, str):
            continue
        role = _ROLE_KEYS.get(key.strip().lower())
        if role:
            roles.add(role)

    return frozenset(roles or {Role.MEMBER})


def decode_token(token: str, *, settings: Optional[Settings] = None) -> AuthContext:
    """
    Verify a session token and build its AuthContext.
    Raises AuthenticationError when the token does not verify.
    """
    s = settings or default_settings
    if not s.auth_jwt_secret:
        raise ConfigurationError(detail="AUTH_JWT_SECRET not configured")

    try:
        claims = jwt.decode(
            token,
            s.auth_jwt_secret,
            algorithms=s.auth_jwt_algorithms,
            audience=s.auth_jwt_audience,
            issuer=s.auth_jwt_issuer,
            options={"verify_aud": bool(s.auth_jwt_audience)},
        )
    except JWTError as e:
        logger.info("Rejected session token: %s", e)
        raise AuthenticationError("Invalid authentication credentials")

    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token payload")

    return AuthContext(
        subject=str(subject),
        email=claims.get("email"),
        roles=_roles_from_claims(claims),
    )


def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> AuthContext:
    if not credentials or not credentials.credentials:
        return ANONYMOUS
    return decode_token(credentials.credentials)


def require_committee(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.is_authenticated:
        raise AuthenticationError()
    if not ctx.is_committee:
        logger.warning("Committee route denied for subject=%s", ctx.subject)
        raise AuthorizationError()
    return ctx
