"""
Audit trail for redemption attempts.

Every write goes through `record()`, which opens its own session and never
raises.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlmodel import select

from ..config import settings
from ..database import get_session
from ..models.access_log import AccessLogEntry, AccessLogStatus
from ..models.access_token import AccessMethod, utcnow
from ..models.whatsapp_request import ManualAccessRequest, RequestStatus

logger = logging.getLogger(__name__)

_EMAIL_MASK_RE = re.compile(r"^(.{2}).*(@.*)$")


# -------------------------
# Masking / hashing helpers
# -------------------------

def mask_email(email: Optional[str]) -> Optional[str]:
    """
    jo***@domain. Addresses too short to mask keep only the domain.
    """
    if not email:
        return None
    e = email.strip()
    m = _EMAIL_MASK_RE.match(e)
    if m:
        return f"{m.group(1)}***{m.group(2)}"
    if "@" in e:
        return "***" + e[e.index("@"):]
    return "***"


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """
    Mask all but the last 4 digits; separators and '+' are kept.
    """
    if not phone:
        return None
    digits_seen = sum(1 for ch in phone if ch.isdigit())
    keep_from = digits_seen - 4
    out = []
    idx = 0
    for ch in phone:
        if ch.isdigit():
            out.append(ch if idx >= keep_from else "*")
            idx += 1
        else:
            out.append(ch)
    return "".join(out)


def _sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def contact_hash(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return _sha256(email.strip().lower())


def phone_hash(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    normalized = re.sub(r"[^\d+]", "", phone)
    return _sha256(normalized) if normalized else None


def hash_ip(ip: Optional[str]) -> Optional[str]:
    """
    Salted with the UTC date, so the hash rotates daily.
    """
    if not ip:
        return None
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return _sha256(f"{ip}{settings.ip_hash_salt}{today}")


def hash_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return _sha256(user_agent)


# -------------------------
# Writes
# -------------------------

def record(
    *,
    method: AccessMethod,
    status: AccessLogStatus,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    qr_token_id: Optional[int] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    """
    Append one audit entry. Returns False (and logs a warning) on any failure.
    """
    try:
        entry = AccessLogEntry(
            method=method,
            status=status,
            contact_masked=mask_email(email),
            contact_hash=contact_hash(email),
            phone_masked=mask_phone(phone),
            phone_hash=phone_hash(phone),
            qr_token_id=qr_token_id,
            ip_hash=hash_ip(ip),
            user_agent_hash=hash_user_agent(user_agent),
        )
        with get_session() as session:
            session.add(entry)
            session.commit()
        return True
    except Exception as e:
        logger.warning("Access log write failed (method=%s status=%s): %s", method.value, status.value, e)
        return False


# -------------------------
# Reads (committee console)
# -------------------------

def recent(limit: int = 100) -> List[AccessLogEntry]:
    with get_session() as session:
        q = select(AccessLogEntry).order_by(AccessLogEntry.created_at.desc(), AccessLogEntry.id.desc()).limit(limit)
        return list(session.exec(q).all())


@dataclass(frozen=True)
class DuplicateCheck:
    email_used: bool = False
    phone_used: bool = False
    via: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.email_used or self.phone_used


def find_duplicate(email: str, phone: Optional[str] = None, *, now: Optional[datetime] = None) -> DuplicateCheck:
    """
    Has this contact already been let in recently?

    - the same email has a successful join inside the window
    - the same phone joined under a different email
    - the same phone has a pending/approved manual request under a different email
    """
    since = (now or utcnow()) - timedelta(days=settings.duplicate_window_days)
    e_hash = contact_hash(email)
    p_hash = phone_hash(phone)

    with get_session() as session:
        joined = session.exec(
            select(AccessLogEntry).where(
                AccessLogEntry.contact_hash == e_hash,
                AccessLogEntry.status == AccessLogStatus.SUCCESSFUL_JOIN,
                AccessLogEntry.created_at >= since,
            )
        ).first()
        if joined:
            return DuplicateCheck(email_used=True, via=joined.method.value)

        if not p_hash:
            return DuplicateCheck()

        phone_join = session.exec(
            select(AccessLogEntry).where(
                AccessLogEntry.phone_hash == p_hash,
                AccessLogEntry.contact_hash != e_hash,
                AccessLogEntry.status == AccessLogStatus.SUCCESSFUL_JOIN,
                AccessLogEntry.created_at >= since,
            )
        ).first()
        if phone_join:
            return DuplicateCheck(phone_used=True, via=phone_join.method.value)

        requests = session.exec(
            select(ManualAccessRequest).where(
                ManualAccessRequest.status.in_([RequestStatus.PENDING, RequestStatus.APPROVED]),
                ManualAccessRequest.created_at >= since,
            )
        ).all()
        for req in requests:
            if phone_hash(req.phone) == p_hash and req.email.strip().lower() != email.strip().lower():
                return DuplicateCheck(phone_used=True, via=AccessMethod.MANUAL.value)

    return DuplicateCheck()


def duplicate_message() -> str:
    return (
        "One of the inputs you provided has already been used to request access and can only be used once. "
        f"If you believe this is an error or would like some help with this please reach out to us at {settings.support_email}"
    )
