from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

from .access_token import utcnow


class UserType(str, Enum):
    ALUMNI = "alumni"
    PUBLIC = "public"
    INCOMING = "incoming"
    OTHER = "other"


class RequestStatus(str, Enum):
    """
    Review lifecycle state.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ManualAccessRequest(SQLModel, table=True):
    """
    Human approval gate for people without a university email.

    Notes:
    - reviewed_by is the committee member's email from their session
    - access_token_id points at the `manual` AccessToken issued on approval
    """

    __tablename__ = "whatsapp_requests"

    id: Optional[int] = Field(default=None, primary_key=True)

    first_name: str
    surname: str
    email: str = Field(index=True)
    phone: str = Field(index=True)
    user_type: UserType = Field(index=True)
    trips: Optional[str] = Field(default=None)

    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=False))
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))
    reviewed_by: Optional[str] = Field(default=None)

    access_token_id: Optional[int] = Field(default=None)
