"""
Outbound email through the Resend HTTP API.

Raises ConfigurationError when no API key is set and UpstreamError when the
provider rejects the message or cannot be reached. Callers decide whether a
failed send is fatal.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import ConfigurationError, UpstreamError
from ..models.access_token import AccessMethod
from .access_log import mask_email

logger = logging.getLogger(__name__)

SUBJECT_LINK = "UMHC WhatsApp Group Access"
SUBJECT_CODE = "UMHC WhatsApp Group Link"


@dataclass(frozen=True)
class Email:
    to: str
    subject: str
    html: str


# -------------------------
# Templates
# -------------------------

_WRAPPER = """\
<div style="background-color: #FFFCF7; padding: 40px 0; font-family: 'Open Sans', Arial, sans-serif;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px; background-color: #FFFEFB; border-radius: 12px;">
    <p style="color: #494949; font-size: 16px; line-height: 1.6;">Hi{name},</p>
    {body}
    <p style="color: #494949; font-size: 14px; line-height: 1.6;">We look forward to seeing you on the hills!</p>
  </div>
</div>
"""

_BUTTON = """\
<div style="text-align: center; margin: 30px 0;">
  <a href="{url}" style="background-color: #1C5713; color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px; font-weight: 600; display: inline-block;">{label}</a>
</div>
<p style="color: #494949; font-size: 14px;"><strong>Can't click the button?</strong> Copy and paste this link into your browser:</p>
<div style="background-color: #f8f9fa; border: 1px solid #dee2e6; border-radius: 4px; padding: 10px; word-break: break-all;"><code>{url}</code></div>
"""


def _hours(minutes: int) -> str:
    if minutes % 60 == 0:
        h = minutes // 60
        return f"{h} hour" if h == 1 else f"{h} hours"
    return f"{minutes} minutes"


def _render(body: str, first_name: Optional[str] = None) -> str:
    name = f" {html.escape(first_name)}" if first_name else ""
    return _WRAPPER.format(name=name, body=body)


def join_link_email(
    to: str,
    token: str,
    *,
    method: AccessMethod = AccessMethod.EMAIL_LINK,
    settings: Optional[Settings] = None,
    first_name: Optional[str] = None,
) -> Email:
    """
    /join#token link for an email-link request or a manual approval.
    """
    s = settings or default_settings
    url = f"{s.public_base_url}/join#{token}"
    approved = method == AccessMethod.MANUAL
    ttl = s.manual_link_ttl_minutes if approved else s.email_link_ttl_minutes
    intro = (
        "Your request to join our WhatsApp group has been approved. Click the button below to join:"
        if approved
        else "Welcome to the UMHC community! Click the button below to join our WhatsApp group:"
    )
    body = (
        f'<p style="color: #494949; font-size: 16px; line-height: 1.6;">{intro}</p>'
        + _BUTTON.format(url=html.escape(url, quote=True), label="Join WhatsApp Group")
        + f'<p style="color: #494949; font-size: 14px;">This link is valid for {_hours(ttl)} and can only be used once. '
        "Please don't share this link with anyone.</p>"
    )
    return Email(to=to, subject=SUBJECT_LINK, html=_render(body, first_name))


def code_email(to: str, code: str, short_code: str, *, settings: Optional[Settings] = None) -> Email:
    s = settings or default_settings
    short_url = f"{s.public_base_url}/v/{short_code}"
    instant_url = f"{s.public_base_url}/go?code={code}"
    body = (
        '<p style="color: #494949; font-size: 16px; line-height: 1.6;">'
        "Here's your access to our WhatsApp group. Email security may block some links, so there are two ways in:</p>"
        + _BUTTON.format(url=html.escape(short_url, quote=True), label="Join WhatsApp Group Instantly")
        + '<p style="color: #856404; font-size: 16px;">If the link doesn\'t work, go to '
        f'<a href="{html.escape(instant_url, quote=True)}">the verification page</a> and enter this code:</p>'
        f'<div style="background-color: #1C5713; color: white; padding: 15px; border-radius: 8px; font-size: 24px; '
        f'font-weight: bold; letter-spacing: 2px; text-align: center;">{html.escape(code)}</div>'
        f'<p style="color: #494949; font-size: 14px;">The code is valid for {_hours(s.six_digit_code_ttl_minutes)} '
        f"and the link for {_hours(s.short_code_ttl_minutes)}. Using either one uses up both.</p>"
    )
    return Email(to=to, subject=SUBJECT_CODE, html=_render(body))


# -------------------------
# Transport
# -------------------------

def send(email: Email, *, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None) -> str:
    """
    Deliver one message. Returns the provider message id (may be empty).
    """
    s = settings or default_settings
    if not s.resend_api_key:
        raise ConfigurationError(detail="RESEND_API_KEY not configured")

    payload = {
        "from": s.resend_from_email,
        "to": [email.to],
        "subject": email.subject,
        "html": email.html,
    }

    own_client = client is None
    http = client or httpx.Client(timeout=s.http_timeout_s)
    try:
        r = http.post(
            f"{s.resend_api_base}/emails",
            json=payload,
            headers={"Authorization": f"Bearer {s.resend_api_key}"},
        )
    except httpx.HTTPError as e:
        logger.error("Email send transport error to %s: %s", mask_email(email.to), e)
        raise UpstreamError("Failed to send verification email. Please try again.", detail=str(e))
    finally:
        if own_client:
            http.close()

    if r.status_code >= 400:
        logger.error("Email send failed to %s: %s %s", mask_email(email.to), r.status_code, r.text[:300])
        raise UpstreamError("Failed to send verification email. Please try again.", detail=f"status={r.status_code}")

    try:
        message_id = str((r.json() or {}).get("id") or "")
    except ValueError:
        message_id = ""

    logger.info("Email sent to %s (%s)", mask_email(email.to), email.subject)
    return message_id
