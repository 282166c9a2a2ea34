from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import update
from sqlmodel import select

from ..auth import AuthContext, require_committee
from ..database import get_session
from ..errors import AccessError, ConflictError, NotFoundError, ValidationError
from ..models.access_token import AccessMethod, utcnow
from ..models.whatsapp_request import ManualAccessRequest, RequestStatus
from ..services import access_log, mailer, qr_tokens, tokens
from ..services.gateway import ConfigGateway, get_config_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/committee", tags=["committee"])

RECENT_LIMIT = 50


# -------------------------
# Schemas
# -------------------------

class QRTokenCreate(BaseModel):
    name: str = ""


class QRTokenToggle(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_id: int = Field(alias="tokenId")
    enabled: bool


class QRTokenDelete(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_id: int = Field(alias="tokenId")


class ConfigUpdate(BaseModel):
    whatsapp_link: Optional[str] = None
    qr_redirect_enabled: Optional[bool] = None


class RequestReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: Union[int, str] = Field(alias="requestId")
    action: Literal["approve", "reject"]


# -------------------------
# Helpers
# -------------------------

def _request_public(req: ManualAccessRequest) -> Dict[str, Any]:
    return {
        "id": req.id,
        "first_name": req.first_name,
        "surname": req.surname,
        "email": req.email,
        "phone": req.phone,
        "user_type": req.user_type.value,
        "trips": req.trips,
        "status": req.status.value,
        "created_at": req.created_at.isoformat() if req.created_at else None,
        "reviewed_at": req.reviewed_at.isoformat() if req.reviewed_at else None,
        "reviewed_by": req.reviewed_by,
    }


def _combined_logs(limit: int = RECENT_LIMIT) -> List[Dict[str, Any]]:
    """
    Access log entries and manual requests, newest first.
    """
    rows: List[Dict[str, Any]] = [e.to_public() for e in access_log.recent(limit)]

    with get_session() as session:
        reqs = session.exec(
            select(ManualAccessRequest)
            .order_by(ManualAccessRequest.created_at.desc(), ManualAccessRequest.id.desc())
            .limit(limit)
        ).all()

    for r in reqs:
        rows.append(
            {
                "id": f"manual_{r.id}",
                "email": r.email,
                "phone": r.phone,
                "verification_method": "manual_approval",
                "status": r.status.value,
                "created_at": r.created_at.isoformat() if r.created_at else None,
                "type": "manual",
            }
        )

    rows.sort(key=lambda x: x.get("created_at") or "", reverse=True)
    return rows


def _parse_request_id(raw: Union[int, str]) -> int:
    s = str(raw).strip()
    if s.startswith("manual_"):
        s = s[len("manual_"):]
    try:
        return int(s)
    except ValueError:
        raise ValidationError("Invalid request ID")


# -------------------------
# QR tokens
# -------------------------

@router.get("/qr-tokens")
def list_qr_tokens(ctx: AuthContext = Depends(require_committee)) -> dict:
    return {"success": True, "tokens": [t.to_public() for t in qr_tokens.list_all()]}


@router.post("/qr-tokens")
def create_qr_token(
    payload: QRTokenCreate,
    ctx: AuthContext = Depends(require_committee),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    row = qr_tokens.create(
        payload.name,
        created_by=ctx.email or ctx.subject,
        qr_enabled_globally=gateway.is_qr_redirect_enabled(),
    )
    return {"success": True, "token": row.token, "qrToken": row.to_public(), "message": "QR token created successfully"}


@router.patch("/qr-tokens")
def toggle_qr_token(
    payload: QRTokenToggle,
    ctx: AuthContext = Depends(require_committee),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    row = qr_tokens.set_enabled(
        payload.token_id,
        payload.enabled,
        qr_enabled_globally=gateway.is_qr_redirect_enabled(),
    )
    message = f"QR token {'enabled' if payload.enabled else 'disabled'} successfully"
    if payload.enabled and not row.enabled:
        message = "QR token will be enabled when QR redirects are turned back on"
    return {"success": True, "message": message, "qrToken": row.to_public()}


@router.delete("/qr-tokens")
def delete_qr_token(payload: QRTokenDelete, ctx: AuthContext = Depends(require_committee)) -> dict:
    qr_tokens.delete(payload.token_id)
    return {"success": True, "message": "QR token deleted successfully"}


# -------------------------
# Gated resource config
# -------------------------

@router.get("/whatsapp-config")
def get_whatsapp_config(
    ctx: AuthContext = Depends(require_committee),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    config = gateway.get_config()
    logs = _combined_logs()
    qr = [t.to_public() for t in qr_tokens.list_all()]
    cleaned = tokens.expire_sweep()

    return {
        "success": True,
        "config": config.to_public(),
        "accessLogs": logs,
        "qrTokens": qr,
        "cleanupResult": {"expiredTokensCleaned": cleaned},
    }


@router.post("/whatsapp-config")
def update_whatsapp_config(
    payload: ConfigUpdate,
    ctx: AuthContext = Depends(require_committee),
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> dict:
    updated = gateway.update_config(
        whatsapp_link=payload.whatsapp_link,
        qr_redirect_enabled=payload.qr_redirect_enabled,
    )

    # only after the store accepted the write
    affected = 0
    if payload.qr_redirect_enabled is False:
        affected = qr_tokens.cascade_disable()
    elif payload.qr_redirect_enabled is True:
        affected = qr_tokens.restore_cascade()

    logger.info("WhatsApp config updated by %s: %s", access_log.mask_email(ctx.email) or ctx.subject, sorted(updated))

    message = "Configuration updated successfully"
    if affected:
        verb = "reactivated" if payload.qr_redirect_enabled else "invalidated"
        message = f"Configuration updated successfully. {affected} QR tokens were {verb}."

    return {"success": True, "message": message, "updated": updated, "qrTokensAffected": affected}


# -------------------------
# Manual requests
# -------------------------

@router.get("/whatsapp-requests")
def list_whatsapp_requests(
    status: Optional[RequestStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(require_committee),
) -> dict:
    with get_session() as session:
        q = select(ManualAccessRequest)
        if status is not None:
            q = q.where(ManualAccessRequest.status == status)
        q = q.order_by(ManualAccessRequest.created_at.desc(), ManualAccessRequest.id.desc()).limit(limit)
        rows = session.exec(q).all()
        return {"success": True, "requests": [_request_public(r) for r in rows]}


@router.patch("/whatsapp-requests")
def review_whatsapp_request(payload: RequestReview, ctx: AuthContext = Depends(require_committee)) -> dict:
    """
    Approve (issue a manual /join link and email it) or reject a pending request.

    The status flip is a conditional UPDATE on status = pending, so when two
    reviewers act at once exactly one of them issues a link.
    """
    request_id = _parse_request_id(payload.request_id)
    reviewer = ctx.email or ctx.subject
    decision = RequestStatus.APPROVED if payload.action == "approve" else RequestStatus.REJECTED

    with get_session() as session:
        claimed = session.execute(
            update(ManualAccessRequest)
            .where(ManualAccessRequest.id == request_id, ManualAccessRequest.status == RequestStatus.PENDING)
            .values(status=decision, reviewed_at=utcnow(), reviewed_by=reviewer)
        ).rowcount
        session.commit()

        req = session.get(ManualAccessRequest, request_id)
        if not req:
            raise NotFoundError("Request not found")
        if not claimed:
            raise ConflictError(f"Request has already been {req.status.value}")

        email, phone, first_name = req.email, req.phone, req.first_name

    logger.info("Manual request %s %s by %s", request_id, decision.value, access_log.mask_email(reviewer) or reviewer)

    if decision == RequestStatus.REJECTED:
        return {"success": True, "message": "Request rejected", "request": _request_public(req)}

    issued = tokens.issue(email, AccessMethod.MANUAL, phone=phone)
    with get_session() as session:
        req = session.get(ManualAccessRequest, request_id)
        req.access_token_id = issued.id
        session.add(req)
        session.commit()
        session.refresh(req)

    email_sent = True
    try:
        mailer.send(mailer.join_link_email(email, issued.value, method=AccessMethod.MANUAL, first_name=first_name))
    except AccessError as e:
        email_sent = False
        logger.error("Approval email for request %s failed: %s", request_id, e.detail or e.message)

    message = "Request approved and access link sent" if email_sent else "Request approved but the access email could not be sent"
    return {"success": True, "message": message, "emailSent": email_sent, "request": _request_public(req)}
