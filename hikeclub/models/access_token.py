from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """
    Naive UTC. SQLite drops tzinfo on round-trip, so every timestamp in these
    tables is stored and compared naive.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccessMethod(str, Enum):
    """
    How a credential was delivered / is redeemed.
    Values are API-stable strings and are safe to store and display.
    """

    EMAIL_LINK = "email_link"
    SIX_DIGIT_CODE = "six_digit_code"
    SHORT_CODE = "short_code"
    QR = "qr"
    MANUAL = "manual"


class TokenStatus(str, Enum):
    UNUSED = "unused"
    USED = "used"


class AccessToken(SQLModel, table=True):
    """
    Single-use credential that unlocks the WhatsApp invite link.

    Notes:
    - Only a sha256 of the deliverable value is stored; the raw value is
      returned once at issue time.
    - Values are unique within the active (unused, unexpired) set of a method,
      not globally: six-digit codes recycle once old rows are swept.
    - grant_id ties together credentials issued for one request (a code and its
      short link); redeeming one consumes the rest.
    """

    __tablename__ = "access_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)

    token_hash: str = Field(index=True)
    method: AccessMethod = Field(index=True)

    email: str = Field(index=True)
    phone: Optional[str] = Field(default=None)

    grant_id: Optional[str] = Field(default=None, index=True)

    status: TokenStatus = Field(default=TokenStatus.UNUSED, index=True)

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=False))
    expires_at: datetime = Field(index=True, sa_type=DateTime(timezone=False))
    used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))

    ip_hash: Optional[str] = Field(default=None)

    def is_used(self) -> bool:
        return self.status == TokenStatus.USED
