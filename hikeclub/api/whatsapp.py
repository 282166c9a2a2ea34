from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..database import get_session
from ..errors import ConflictError, ValidationError
from ..models.access_token import AccessMethod
from ..models.whatsapp_request import ManualAccessRequest, UserType
from ..services import access_log, mailer, tokens, turnstile
from ..services.gateway import ConfigGateway, get_config_gateway
from ..services.rate_limit import SCOPE_ISSUE, SCOPE_MANUAL_REQUEST, SCOPE_REDEEM, rate_limit
from ..validation import clean_text, is_university_email, is_valid_phone, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter(tags=["whatsapp"])

UNIVERSITY_ONLY_MESSAGE = (
    "Automatic access is restricted to users with '.ac.uk' email addresses. "
    "You can request manual access via the manual request form."
)


# -------------------------
# Schemas
# -------------------------

class _Form(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    turnstile_token: Optional[str] = Field(default=None, alias="turnstileToken")
    # Honeypot
    website: Optional[str] = None


class JoinLinkRequest(_Form):
    email: EmailStr
    phone: str


class CodeRequest(_Form):
    email: EmailStr
    phone: str
    trips: Optional[str] = Field(default=None, max_length=500)


class ManualRequestCreate(_Form):
    first_name: str = Field(alias="firstName", min_length=1, max_length=50)
    surname: str = Field(min_length=1, max_length=50)
    email: EmailStr
    phone: str
    user_type: UserType = Field(alias="userType")
    trips: Optional[str] = Field(default=None, max_length=500)


class JoinPayload(BaseModel):
    token: Optional[str] = None


class VerifyCodePayload(BaseModel):
    code: Optional[str] = None


class ShortCodePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    short_code: Optional[str] = Field(default=None, alias="shortCode")


# -------------------------
# Helpers
# -------------------------

def _checked_phone(phone: str) -> str:
    if not is_valid_phone(phone):
        raise ValidationError("Invalid phone number format")
    return normalize_phone(phone)


def _granted(result: tokens.RedeemResult, gateway: ConfigGateway) -> dict:
    result.raise_for_outcome()
    return {
        "success": True,
        "whatsappUrl": gateway.get_whatsapp_link(),
        "message": "Verification successful! Redirecting to WhatsApp group...",
    }


# -------------------------
# Issuance
# -------------------------

@router.post("/api/whatsapp-simplified")
def request_join_link(payload: JoinLinkRequest, ip: str = Depends(rate_limit(SCOPE_ISSUE))) -> dict:
    """
    University members: email a single-use /join link.
    """
    turnstile.check_honeypot(payload.website)
    phone = _checked_phone(payload.phone)
    email = str(payload.email)

    if not is_university_email(email):
        raise ValidationError(UNIVERSITY_ONLY_MESSAGE)

    turnstile.require_human(payload.turnstile_token, remote_ip=ip)

    if access_log.find_duplicate(email, phone).is_duplicate:
        raise ConflictError(access_log.duplicate_message())

    tokens.expire_sweep()
    issued = tokens.issue(email, AccessMethod.EMAIL_LINK, phone=phone, ip=ip)

    # the token is already committed; a failed send leaves it to expire
    mailer.send(mailer.join_link_email(issued.email, issued.value))

    return {"success": True, "message": "Verification link sent to your email address"}


@router.post("/api/whatsapp")
def request_code(payload: CodeRequest, ip: str = Depends(rate_limit(SCOPE_ISSUE))) -> dict:
    """
    University members: email a 6-digit code plus a short /v/ link for the same grant.
    """
    turnstile.check_honeypot(payload.website)
    phone = _checked_phone(payload.phone)
    email = str(payload.email)

    if not is_university_email(email):
        raise ValidationError(UNIVERSITY_ONLY_MESSAGE)

    turnstile.require_human(payload.turnstile_token, remote_ip=ip)

    tokens.expire_sweep()
    code, short = tokens.issue_code_grant(email, phone=phone, ip=ip)
    mailer.send(mailer.code_email(code.email, code.value, short.value))

    return {"success": True, "message": "Verification email sent! Check your inbox for the WhatsApp group link."}


@router.post("/api/whatsapp-request")
def request_manual_access(payload: ManualRequestCreate, ip: str = Depends(rate_limit(SCOPE_MANUAL_REQUEST))) -> dict:
    """
    Everyone else: queue a request for committee review.
    """
    turnstile.check_honeypot(payload.website)
    phone = _checked_phone(payload.phone)

    first_name = clean_text(payload.first_name)
    surname = clean_text(payload.surname)
    if not first_name or not surname:
        raise ValidationError("First name and surname are required")

    turnstile.require_human(payload.turnstile_token, remote_ip=ip)

    req = ManualAccessRequest(
        first_name=first_name,
        surname=surname,
        email=str(payload.email),
        phone=phone,
        user_type=payload.user_type,
        trips=clean_text(payload.trips) or None,
    )
    with get_session() as session:
        session.add(req)
        session.commit()
        session.refresh(req)

    logger.info(
        "Manual WhatsApp request %s submitted: %s / %s (%s)",
        req.id,
        access_log.mask_email(req.email),
        access_log.mask_phone(req.phone),
        req.user_type.value,
    )
    return {"success": True, "message": "Request submitted successfully"}


# -------------------------
# Redemption
# -------------------------

@router.post("/join")
def redeem_join_link(
    payload: JoinPayload,
    request: Request,
    ip: str = Depends(rate_limit(SCOPE_REDEEM)),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    result = tokens.redeem(
        AccessMethod.EMAIL_LINK,
        payload.token,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
    )
    return _granted(result, gateway)


@router.post("/api/whatsapp-verify")
def redeem_code(
    payload: VerifyCodePayload,
    request: Request,
    ip: str = Depends(rate_limit(SCOPE_REDEEM)),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    result = tokens.redeem(
        AccessMethod.SIX_DIGIT_CODE,
        payload.code,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
    )
    return _granted(result, gateway)


@router.post("/api/whatsapp-redirect")
def redeem_short_code(
    payload: ShortCodePayload,
    request: Request,
    ip: str = Depends(rate_limit(SCOPE_REDEEM)),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    result = tokens.redeem(
        AccessMethod.SHORT_CODE,
        payload.short_code,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
    )
    return _granted(result, gateway)
