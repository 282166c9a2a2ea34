from __future__ import annotations

import io
import logging

import qrcode
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response

from ..errors import ValidationError
from ..services import qr_tokens
from ..services.gateway import ConfigGateway, get_config_gateway
from ..services.rate_limit import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter(tags=["qr"])

QR_MIN_SIZE = 64
QR_MAX_SIZE = 1024


@router.get("/qr/{token}")
def redeem_qr(
    token: str,
    request: Request,
    gateway: ConfigGateway = Depends(get_config_gateway),
) -> RedirectResponse:
    """
    Scan target printed on posters, not rate limited. Always answers with a
    redirect: the invite link, or the public WhatsApp page with a reason.
    """
    result = qr_tokens.redeem(
        token,
        gateway,
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.ok:
        return RedirectResponse(result.whatsapp_url, status_code=307)
    return RedirectResponse(f"/whatsapp?message={result.redirect_message}", status_code=307)


@router.get("/api/qr-code")
def qr_code_png(
    data: str = Query(default=""),
    size: int = Query(default=300),
) -> Response:
    if not data:
        raise ValidationError("Data parameter is required")
    if size < QR_MIN_SIZE or size > QR_MAX_SIZE:
        raise ValidationError(f"Size must be between {QR_MIN_SIZE} and {QR_MAX_SIZE}")

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    img = img.resize((size, size))

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")

    return Response(
        content=buffer.getvalue(),
        media_type="image/png",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
