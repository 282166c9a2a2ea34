from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

from .access_token import utcnow


class QRTokenState(str, Enum):
    """
    Enablement of a reusable QR credential.

    - ENABLED: redeemable (subject to the global QR flag)
    - DISABLED_BY_CASCADE: switched off because QR redirects were disabled globally;
      comes back when the global flag is turned on again
    - DISABLED_MANUALLY: switched off by a committee member; stays off
    """

    ENABLED = "enabled"
    DISABLED_BY_CASCADE = "disabled_by_cascade"
    DISABLED_MANUALLY = "disabled_manually"


class QRToken(SQLModel, table=True):
    """
    Long-lived, reusable credential printed on posters and banners.
    Never consumed; every scan bumps use_count.
    """

    __tablename__ = "qr_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Stored raw: the committee needs it to regenerate the printed code.
    token: str = Field(index=True, unique=True)

    # e.g. "Freshers Fair banner"
    name: str

    state: QRTokenState = Field(default=QRTokenState.ENABLED, index=True)

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=False))
    created_by: Optional[str] = Field(default=None)

    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))
    use_count: int = Field(default=0)

    @property
    def enabled(self) -> bool:
        return self.state == QRTokenState.ENABLED

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "name": self.name,
            "enabled": self.enabled,
            "state": self.state.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by": self.created_by,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "use_count": self.use_count,
        }
