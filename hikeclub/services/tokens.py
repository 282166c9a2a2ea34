"""
Single-use access credentials: issue, redeem, look up, sweep.

One durable store (the `access_tokens` table) backs every channel.
Redemption is a single conditional UPDATE, so two concurrent presentations
of the same value can never both succeed.
"""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import delete, update
from sqlmodel import select

from ..config import settings
from ..database import get_session
from ..errors import ConflictError, ExpiredError, NotFoundError, ValidationError
from ..models.access_log import AccessLogStatus
from ..models.access_token import AccessMethod, AccessToken, TokenStatus, utcnow
from . import access_log

logger = logging.getLogger(__name__)

# How many times to re-roll a value that collides with an active token.
MAX_ISSUE_ATTEMPTS = 20

# Methods that share one value space and one redemption endpoint.
# Manual approvals are emailed as the same /join link as email links.
_FAMILIES: Dict[AccessMethod, tuple] = {
    AccessMethod.EMAIL_LINK: (AccessMethod.EMAIL_LINK, AccessMethod.MANUAL),
    AccessMethod.MANUAL: (AccessMethod.EMAIL_LINK, AccessMethod.MANUAL),
    AccessMethod.SIX_DIGIT_CODE: (AccessMethod.SIX_DIGIT_CODE,),
    AccessMethod.SHORT_CODE: (AccessMethod.SHORT_CODE,),
}

_FORMATS: Dict[AccessMethod, "re.Pattern[str]"] = {
    AccessMethod.SIX_DIGIT_CODE: re.compile(r"^\d{6}$"),
    AccessMethod.SHORT_CODE: re.compile(r"^[a-f0-9]{12}$"),
    AccessMethod.EMAIL_LINK: re.compile(r"^[A-Fa-f0-9]{16,128}$"),
    AccessMethod.MANUAL: re.compile(r"^[A-Fa-f0-9]{16,128}$"),
}


class RedeemOutcome(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    FORMAT_INVALID = "format_invalid"


_OUTCOME_LOG_STATUS = {
    RedeemOutcome.SUCCESS: AccessLogStatus.SUCCESSFUL_JOIN,
    RedeemOutcome.NOT_FOUND: AccessLogStatus.NOT_FOUND,
    RedeemOutcome.EXPIRED: AccessLogStatus.EXPIRED,
    RedeemOutcome.ALREADY_USED: AccessLogStatus.ALREADY_USED,
    RedeemOutcome.FORMAT_INVALID: AccessLogStatus.FORMAT_INVALID,
}


# -------------------------
# User-facing messages
# -------------------------

_LINK_MESSAGES = {
    RedeemOutcome.FORMAT_INVALID: "Invalid token format",
    RedeemOutcome.NOT_FOUND: "Invalid or expired verification token. Please request a new verification link.",
    RedeemOutcome.ALREADY_USED: "This verification link has already been used. Each link can only be used once.",
}

_CODE_MESSAGES = {
    RedeemOutcome.FORMAT_INVALID: "Invalid verification code format",
    RedeemOutcome.NOT_FOUND: "Invalid or expired verification code. Please request a new one.",
    RedeemOutcome.ALREADY_USED: "This verification code has already been used or has expired. Each code can only be used once.",
}

_SHORT_CODE_MESSAGES = {
    RedeemOutcome.FORMAT_INVALID: "Sorry, this link is malformed. Please use the 6-digit verification code from your email instead.",
    RedeemOutcome.NOT_FOUND: "Sorry, this link is invalid or has expired. Please use the 6-digit verification code from your email instead.",
    RedeemOutcome.ALREADY_USED: "Sorry, this link has already been used. Each link can only be used once.",
}

MESSAGES: Dict[AccessMethod, Dict[RedeemOutcome, str]] = {
    AccessMethod.EMAIL_LINK: _LINK_MESSAGES,
    AccessMethod.MANUAL: _LINK_MESSAGES,
    AccessMethod.SIX_DIGIT_CODE: _CODE_MESSAGES,
    AccessMethod.SHORT_CODE: _SHORT_CODE_MESSAGES,
}


def message_for(method: AccessMethod, outcome: RedeemOutcome) -> str:
    table = MESSAGES.get(method, _LINK_MESSAGES)
    # expired and not-found read the same to the caller
    if outcome == RedeemOutcome.EXPIRED:
        outcome = RedeemOutcome.NOT_FOUND
    return table.get(outcome, "Verification failed")


# -------------------------
# Value generation
# -------------------------

def _sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def generate_value(method: AccessMethod) -> str:
    if method == AccessMethod.SIX_DIGIT_CODE:
        return str(100000 + secrets.randbelow(900000))
    if method == AccessMethod.SHORT_CODE:
        return secrets.token_hex(6)
    return secrets.token_hex(32)


def ttl_for(method: AccessMethod) -> timedelta:
    minutes = {
        AccessMethod.EMAIL_LINK: settings.email_link_ttl_minutes,
        AccessMethod.SHORT_CODE: settings.short_code_ttl_minutes,
        AccessMethod.SIX_DIGIT_CODE: settings.six_digit_code_ttl_minutes,
        AccessMethod.MANUAL: settings.manual_link_ttl_minutes,
    }.get(method)
    if minutes is None:
        raise ValueError(f"No TTL for method {method.value}")
    return timedelta(minutes=int(minutes))


def normalize_value(method: AccessMethod, value: Optional[str]) -> str:
    s = (value or "").strip()
    if method in (AccessMethod.SHORT_CODE, AccessMethod.EMAIL_LINK, AccessMethod.MANUAL):
        # link tokens arrive as hex; a stray "#" from the URL fragment is harmless
        s = s.lstrip("#")
    return s


def family(method: AccessMethod) -> tuple:
    return _FAMILIES.get(method, (method,))


def validate_format(method: AccessMethod, value: Optional[str]) -> bool:
    pattern = _FORMATS.get(method)
    if pattern is None:
        return False
    return bool(pattern.match(normalize_value(method, value)))


# -------------------------
# Results
# -------------------------

@dataclass(frozen=True)
class IssuedToken:
    id: int
    value: str
    method: AccessMethod
    email: str
    expires_at: datetime
    grant_id: Optional[str] = None


@dataclass(frozen=True)
class RedeemResult:
    outcome: RedeemOutcome
    method: AccessMethod
    token: Optional[AccessToken] = None

    @property
    def ok(self) -> bool:
        return self.outcome == RedeemOutcome.SUCCESS

    @property
    def message(self) -> str:
        return message_for(self.method, self.outcome)

    def raise_for_outcome(self) -> None:
        """
        Map a failed redemption onto the error taxonomy.
        """
        if self.ok:
            return
        msg = self.message
        if self.outcome == RedeemOutcome.FORMAT_INVALID:
            raise ValidationError(msg)
        if self.outcome == RedeemOutcome.ALREADY_USED:
            raise ConflictError(msg)
        if self.outcome == RedeemOutcome.EXPIRED:
            raise ExpiredError(msg)
        raise NotFoundError(msg)


# -------------------------
# Issuer
# -------------------------

def _active_exists(session, method: AccessMethod, token_hash: str, now: datetime) -> bool:
    row = session.exec(
        select(AccessToken.id).where(
            AccessToken.method.in_(family(method)),
            AccessToken.token_hash == token_hash,
            AccessToken.status == TokenStatus.UNUSED,
            AccessToken.expires_at > now,
        )
    ).first()
    return row is not None


def issue(
    email: str,
    method: AccessMethod,
    *,
    phone: Optional[str] = None,
    ip: Optional[str] = None,
    grant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IssuedToken:
    """
    Create and persist a new credential. The raw value is only ever returned here.
    """
    if method not in _FORMATS:
        raise ValueError(f"{method.value} credentials are not issued by the token store")

    now = now or utcnow()
    expires_at = now + ttl_for(method)

    with get_session() as session:
        for _ in range(MAX_ISSUE_ATTEMPTS):
            value = generate_value(method)
            token_hash = _sha256(value)
            if not _active_exists(session, method, token_hash, now):
                break
        else:
            raise RuntimeError(f"Could not allocate a unique {method.value} value")

        row = AccessToken(
            token_hash=token_hash,
            method=method,
            email=email.strip(),
            phone=(phone or "").strip() or None,
            grant_id=grant_id,
            status=TokenStatus.UNUSED,
            created_at=now,
            expires_at=expires_at,
            ip_hash=access_log.hash_ip(ip),
        )
        session.add(row)
        session.commit()
        session.refresh(row)

        logger.info(
            "Issued %s credential for %s (expires %s)",
            method.value,
            access_log.mask_email(email),
            expires_at.isoformat(),
        )
        return IssuedToken(
            id=row.id,
            value=value,
            method=method,
            email=row.email,
            expires_at=expires_at,
            grant_id=grant_id,
        )


def issue_code_grant(
    email: str,
    *,
    phone: Optional[str] = None,
    ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[IssuedToken]:
    """
    One emailed invitation, two ways in: a 6-digit code and a short link code.
    Redeeming either consumes both.
    """
    grant_id = uuid.uuid4().hex
    return [
        issue(email, AccessMethod.SIX_DIGIT_CODE, phone=phone, ip=ip, grant_id=grant_id, now=now),
        issue(email, AccessMethod.SHORT_CODE, phone=phone, ip=ip, grant_id=grant_id, now=now),
    ]


# -------------------------
# Store / Validator
# -------------------------

def get(method: AccessMethod, value: str) -> Optional[AccessToken]:
    """
    Most recent record for this value, whatever its state.
    """
    token_hash = _sha256(normalize_value(method, value))
    with get_session() as session:
        return session.exec(
            select(AccessToken)
            .where(AccessToken.method.in_(family(method)), AccessToken.token_hash == token_hash)
            .order_by(AccessToken.created_at.desc(), AccessToken.id.desc())
        ).first()


def redeem(
    method: AccessMethod,
    value: Optional[str],
    *,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RedeemResult:
    """
    Consume a credential exactly once.

    unused --(valid, not expired)--> used
    unused --(expired)--> rejected as expired (row untouched)
    used   --(any)--> rejected as already_used

    Every attempt is written to the access log.
    """
    if not validate_format(method, value):
        result = RedeemResult(RedeemOutcome.FORMAT_INVALID, method)
        access_log.record(method=method, status=AccessLogStatus.FORMAT_INVALID, ip=ip, user_agent=user_agent)
        return result

    now = now or utcnow()
    token_hash = _sha256(normalize_value(method, value))

    with get_session() as session:
        stmt = (
            update(AccessToken)
            .where(
                AccessToken.method.in_(family(method)),
                AccessToken.token_hash == token_hash,
                AccessToken.status == TokenStatus.UNUSED,
                AccessToken.expires_at > now,
            )
            .values(status=TokenStatus.USED, used_at=now)
        )
        claimed = session.execute(stmt).rowcount

        if claimed:
            row = session.exec(
                select(AccessToken)
                .where(
                    AccessToken.method.in_(family(method)),
                    AccessToken.token_hash == token_hash,
                    AccessToken.status == TokenStatus.USED,
                )
                .order_by(AccessToken.used_at.desc(), AccessToken.id.desc())
            ).first()

            if row is not None and row.grant_id:
                session.execute(
                    update(AccessToken)
                    .where(
                        AccessToken.grant_id == row.grant_id,
                        AccessToken.status == TokenStatus.UNUSED,
                    )
                    .values(status=TokenStatus.USED, used_at=now)
                )

            session.commit()
            if row is not None:
                session.refresh(row)
            result = RedeemResult(RedeemOutcome.SUCCESS, method, row)
        else:
            session.rollback()
            row = session.exec(
                select(AccessToken)
                .where(AccessToken.method.in_(family(method)), AccessToken.token_hash == token_hash)
                .order_by(AccessToken.created_at.desc(), AccessToken.id.desc())
            ).first()

            if row is None:
                outcome = RedeemOutcome.NOT_FOUND
            elif row.is_used():
                outcome = RedeemOutcome.ALREADY_USED
            else:
                outcome = RedeemOutcome.EXPIRED
            result = RedeemResult(outcome, method, row)

    token = result.token
    access_log.record(
        method=token.method if token else method,
        status=_OUTCOME_LOG_STATUS[result.outcome],
        email=token.email if token else None,
        phone=token.phone if token else None,
        ip=ip,
        user_agent=user_agent,
    )

    if result.ok:
        logger.info("WhatsApp access granted: %s via %s", access_log.mask_email(token.email if token else None), method.value)
    else:
        logger.info("Redemption rejected (%s) via %s", result.outcome.value, method.value)

    return result


def expire_sweep(*, now: Optional[datetime] = None) -> int:
    """
    Delete every credential past its expiry. Returns the number removed.
    """
    now = now or utcnow()
    with get_session() as session:
        removed = session.execute(delete(AccessToken).where(AccessToken.expires_at <= now)).rowcount
        session.commit()
    if removed:
        logger.info("Swept %s expired access tokens", removed)
    return int(removed or 0)
