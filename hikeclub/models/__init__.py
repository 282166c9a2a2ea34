# hikeclub/models/__init__.py
# Central import surface for SQLModel table registration.
# Keeping these imports ensures init_db() sees all models and creates tables.

from .access_token import AccessMethod, AccessToken, TokenStatus
from .access_log import AccessLogEntry, AccessLogStatus
from .qr_token import QRToken, QRTokenState

# Manual approval path
from .whatsapp_request import ManualAccessRequest, RequestStatus, UserType

__all__ = [
    "AccessMethod",
    "AccessToken",
    "TokenStatus",
    "AccessLogEntry",
    "AccessLogStatus",
    "QRToken",
    "QRTokenState",
    "ManualAccessRequest",
    "RequestStatus",
    "UserType",
]
