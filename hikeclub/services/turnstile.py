"""
Bot checks for the public forms: a honeypot field and Cloudflare Turnstile.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


def check_honeypot(website: Optional[str]) -> None:
    # Hidden field; humans never fill it.
    if website and website.strip():
        logger.warning("Honeypot field filled; rejecting submission")
        raise ValidationError("Bot detected")


def verify_turnstile(
    token: Optional[str],
    *,
    remote_ip: Optional[str] = None,
    settings: Optional[Settings] = None,
    client: Optional[httpx.Client] = None,
) -> bool:
    """
    True if Cloudflare accepts the widget token.

    Transport errors and non-2xx responses count as a failed check.
    """
    s = settings or default_settings
    if not s.turnstile_secret_key:
        raise ConfigurationError(detail="TURNSTILE_SECRET_KEY not configured")
    if not token:
        return False

    data = {"secret": s.turnstile_secret_key, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip

    own_client = client is None
    http = client or httpx.Client(timeout=s.http_timeout_s)
    try:
        r = http.post(s.turnstile_verify_url, data=data)
        if r.status_code >= 400:
            logger.error("Turnstile verification request failed: %s", r.status_code)
            return False
        result = r.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Turnstile verification error: %s", e)
        return False
    finally:
        if own_client:
            http.close()

    ok = bool(result.get("success")) if isinstance(result, dict) else False
    if not ok:
        logger.warning("Turnstile verification failed: %s", (result or {}).get("error-codes") if isinstance(result, dict) else result)
    return ok


def require_human(
    turnstile_token: Optional[str],
    website: Optional[str] = None,
    *,
    remote_ip: Optional[str] = None,
    settings: Optional[Settings] = None,
    client: Optional[httpx.Client] = None,
) -> None:
    check_honeypot(website)
    if not verify_turnstile(turnstile_token, remote_ip=remote_ip, settings=settings, client=client):
        raise ValidationError("Security verification failed")
