from __future__ import annotations

import re
from typing import Optional

from .config import settings

# International format: optional +, 8-15 digits, first digit non-zero.
_PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")
_TAG_RE = re.compile(r"<[^>]*>")


def normalize_phone(phone: Optional[str]) -> str:
    return _PHONE_SEPARATORS_RE.sub("", (phone or "").strip())


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(_PHONE_RE.match(normalize_phone(phone)))


def is_university_email(email: Optional[str], suffix: Optional[str] = None) -> bool:
    """
    name@ac.uk or name@<anything>.ac.uk
    """
    suffix = (suffix or settings.university_email_suffix).lower()
    e = (email or "").strip().lower()
    if e.count("@") != 1:
        return False
    local, domain = e.split("@")
    if not local or not domain:
        return False
    return domain == suffix or domain.endswith("." + suffix)


def clean_text(value: Optional[str]) -> str:
    """
    Strip markup and surrounding whitespace from free-text form fields.
    """
    return _TAG_RE.sub("", value or "").strip()
