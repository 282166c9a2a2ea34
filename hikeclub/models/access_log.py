from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

from .access_token import AccessMethod, utcnow


class AccessLogStatus(str, Enum):
    SUCCESSFUL_JOIN = "successful_join"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    FORMAT_INVALID = "format_invalid"

    # QR scans
    SUCCESSFUL_REDIRECT = "successful_redirect"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_DISABLED = "token_disabled"
    QR_DISABLED_GLOBALLY = "qr_disabled_globally"
    LINK_UNAVAILABLE = "link_unavailable"


class AccessLogEntry(SQLModel, table=True):
    """
    Append-only audit trail of redemption attempts.

    Raw contact details are never stored here: contact_masked is for display,
    contact_hash / phone_hash only support duplicate detection.
    """

    __tablename__ = "access_logs"

    id: Optional[int] = Field(default=None, primary_key=True)

    method: AccessMethod = Field(index=True)
    status: AccessLogStatus = Field(index=True)

    contact_masked: Optional[str] = Field(default=None)
    contact_hash: Optional[str] = Field(default=None, index=True)
    phone_masked: Optional[str] = Field(default=None)
    phone_hash: Optional[str] = Field(default=None, index=True)

    qr_token_id: Optional[int] = Field(default=None, index=True)

    ip_hash: Optional[str] = Field(default=None)
    user_agent_hash: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=False))

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "email": self.contact_masked,
            "phone": self.phone_masked,
            "verification_method": self.method.value,
            "status": self.status.value,
            "qr_token_id": self.qr_token_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "type": "access",
        }
