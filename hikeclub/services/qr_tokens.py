"""
Reusable QR credentials printed on posters, banners and stall tables.

Unlike access tokens these are never consumed. Each token carries a tri-state
enablement so that turning the global QR flag off and back on restores exactly
the tokens the cascade switched off, and nothing a committee member disabled.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import select

from ..database import get_session
from ..errors import NotFoundError, ValidationError
from ..models.access_log import AccessLogStatus
from ..models.access_token import AccessMethod, utcnow
from ..models.qr_token import QRToken, QRTokenState
from . import access_log
from .gateway import ConfigGateway

logger = logging.getLogger(__name__)

NAME_MAX_LEN = 120


class QROutcome(str, Enum):
    SUCCESSFUL_REDIRECT = "successful_redirect"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_DISABLED = "token_disabled"
    QR_DISABLED_GLOBALLY = "qr_disabled_globally"
    LINK_UNAVAILABLE = "link_unavailable"


# Where the browser lands when a scan does not reach the group.
REDIRECT_MESSAGES = {
    QROutcome.TOKEN_NOT_FOUND: "qr_invalid",
    QROutcome.TOKEN_DISABLED: "qr_token_disabled",
    QROutcome.QR_DISABLED_GLOBALLY: "qr_disabled",
    QROutcome.LINK_UNAVAILABLE: "link_unavailable",
}


@dataclass(frozen=True)
class QRRedeemResult:
    outcome: QROutcome
    whatsapp_url: Optional[str] = None
    token_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == QROutcome.SUCCESSFUL_REDIRECT

    @property
    def redirect_message(self) -> Optional[str]:
        return REDIRECT_MESSAGES.get(self.outcome)


# -------------------------
# Committee CRUD
# -------------------------

def create(name: str, *, created_by: Optional[str] = None, qr_enabled_globally: bool = True) -> QRToken:
    label = (name or "").strip()
    if not label:
        raise ValidationError("Token name is required")
    if len(label) > NAME_MAX_LEN:
        raise ValidationError(f"Token name must be {NAME_MAX_LEN} characters or fewer")

    state = QRTokenState.ENABLED if qr_enabled_globally else QRTokenState.DISABLED_BY_CASCADE

    with get_session() as session:
        for _ in range(10):
            value = secrets.token_hex(16)
            if session.exec(select(QRToken.id).where(QRToken.token == value)).first() is None:
                break
        else:
            raise RuntimeError("Could not allocate a unique QR token")

        row = QRToken(token=value, name=label, state=state, created_by=created_by)
        session.add(row)
        session.commit()
        session.refresh(row)

    logger.info("QR token %s (%r) created by %s", row.id, label, access_log.mask_email(created_by))
    return row


def list_all() -> List[QRToken]:
    with get_session() as session:
        return list(session.exec(select(QRToken).order_by(QRToken.created_at.desc(), QRToken.id.desc())).all())


def get(token_id: int) -> Optional[QRToken]:
    with get_session() as session:
        return session.get(QRToken, token_id)


def set_enabled(token_id: int, enabled: bool, *, qr_enabled_globally: bool = True) -> QRToken:
    """
    Manual toggle. Enabling while QR redirects are off globally parks the token
    as cascade-disabled so it comes back with the global flag.
    """
    with get_session() as session:
        row = session.get(QRToken, token_id)
        if not row:
            raise NotFoundError("QR token not found")

        if not enabled:
            row.state = QRTokenState.DISABLED_MANUALLY
        elif qr_enabled_globally:
            row.state = QRTokenState.ENABLED
        else:
            row.state = QRTokenState.DISABLED_BY_CASCADE

        session.add(row)
        session.commit()
        session.refresh(row)

    logger.info("QR token %s -> %s", token_id, row.state.value)
    return row


def delete(token_id: int) -> None:
    with get_session() as session:
        row = session.get(QRToken, token_id)
        if not row:
            raise NotFoundError("QR token not found")
        session.delete(row)
        session.commit()
    logger.info("QR token %s deleted", token_id)


# -------------------------
# Global flag cascade
# -------------------------

def _transition(src: QRTokenState, dst: QRTokenState) -> int:
    with get_session() as session:
        n = session.execute(update(QRToken).where(QRToken.state == src).values(state=dst)).rowcount
        session.commit()
    return int(n or 0)


def cascade_disable() -> int:
    """
    Switch off every enabled token. Manually disabled tokens are left alone.
    """
    n = _transition(QRTokenState.ENABLED, QRTokenState.DISABLED_BY_CASCADE)
    logger.info("QR cascade: disabled %s tokens", n)
    return n


def restore_cascade() -> int:
    """
    Bring back only what cascade_disable switched off.
    """
    n = _transition(QRTokenState.DISABLED_BY_CASCADE, QRTokenState.ENABLED)
    logger.info("QR cascade: restored %s tokens", n)
    return n


# -------------------------
# Redemption
# -------------------------

def _log(status: AccessLogStatus, token_id: Optional[int], ip: Optional[str], user_agent: Optional[str]) -> None:
    access_log.record(
        method=AccessMethod.QR,
        status=status,
        qr_token_id=token_id,
        ip=ip,
        user_agent=user_agent,
    )


def redeem(
    token: str,
    gateway: ConfigGateway,
    *,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> QRRedeemResult:
    """
    Resolve a scanned QR token to the invite link.

    Order: token exists -> token enabled -> QR redirects enabled globally ->
    invite link usable. Every scan is logged, whatever the outcome.
    """
    value = (token or "").strip()

    with get_session() as session:
        row = session.exec(select(QRToken).where(QRToken.token == value)).first() if value else None

        if row is None:
            result = QRRedeemResult(QROutcome.TOKEN_NOT_FOUND)
        elif row.state != QRTokenState.ENABLED:
            result = QRRedeemResult(QROutcome.TOKEN_DISABLED, token_id=row.id)
        elif not gateway.is_qr_redirect_enabled():
            result = QRRedeemResult(QROutcome.QR_DISABLED_GLOBALLY, token_id=row.id)
        else:
            link = gateway.get_whatsapp_link()
            result = _count_scan(session, row, link, gateway)

    _log(AccessLogStatus(result.outcome.value), result.token_id, ip, user_agent)

    if result.ok:
        logger.info("QR redirect via token %s", result.token_id)
    else:
        logger.info("QR scan rejected (%s)", result.outcome.value)
    return result


def _count_scan(session, row: QRToken, link: str, gateway: ConfigGateway) -> QRRedeemResult:
    # only scans that reach the group are counted
    if not gateway.is_allowed_link(link):
        return QRRedeemResult(QROutcome.LINK_UNAVAILABLE, token_id=row.id)

    bumped = session.execute(
        update(QRToken)
        .where(QRToken.id == row.id, QRToken.state == QRTokenState.ENABLED)
        .values(use_count=QRToken.use_count + 1, last_used_at=utcnow())
    ).rowcount
    session.commit()

    if not bumped:
        # toggled off between the read and the increment
        return QRRedeemResult(QROutcome.TOKEN_DISABLED, token_id=row.id)
    return QRRedeemResult(QROutcome.SUCCESSFUL_REDIRECT, whatsapp_url=link, token_id=row.id)
