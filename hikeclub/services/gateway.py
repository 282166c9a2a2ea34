"""
Gated-resource configuration: the WhatsApp invite link and the global QR flag.

Both live in an external edge config store. Reads go through a short in-process
cache (stale reads up to CONFIG_CACHE_TTL_S are accepted) and fall back to
WHATSAPP_GROUP_LINK / enabled when the store cannot be reached. Writes go
through the Vercel management API and are committee-only at the route layer.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import ConfigurationError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

WHATSAPP_LINK_KEY = "whatsapp_link"
QR_ENABLED_KEY = "qr_redirect_enabled"


@dataclass(frozen=True)
class GatedConfig:
    whatsapp_link: str
    qr_redirect_enabled: bool
    source: str = "edge_config"  # edge_config | fallback

    def to_public(self) -> Dict[str, Any]:
        return asdict(self)


class ConfigGateway:
    """
    Read/update the gated resource.

    `client` is injectable so callers (and tests) can supply a transport;
    otherwise a short-lived httpx.Client is created per call.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or default_settings
        self._client = client
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[GatedConfig] = None
        self._cached_at: float = 0.0

    # -------------------------
    # Helpers
    # -------------------------

    def _http(self) -> httpx.Client:
        if self._client is not None:
            return self._client
        return httpx.Client(timeout=self.settings.http_timeout_s)

    def _close(self, client: httpx.Client) -> None:
        if client is not self._client:
            client.close()

    def is_allowed_link(self, link: Any) -> bool:
        return isinstance(link, str) and link.startswith(self.settings.whatsapp_link_prefix)

    def fallback(self) -> GatedConfig:
        return GatedConfig(
            whatsapp_link=self.settings.whatsapp_group_link,
            qr_redirect_enabled=True,
            source="fallback",
        )

    def missing_write_settings(self) -> List[str]:
        missing = []
        if not self.settings.vercel_api_token:
            missing.append("VERCEL_API_TOKEN")
        if not self.settings.edge_config_id:
            missing.append("EDGE_CONFIG_ID")
        return missing

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    # -------------------------
    # Reads
    # -------------------------

    def _fetch(self) -> GatedConfig:
        s = self.settings
        if not s.edge_config_id or not s.edge_config_read_token:
            raise ConfigurationError(detail="EDGE_CONFIG_ID / EDGE_CONFIG_READ_TOKEN not set")

        url = f"{s.edge_config_read_base}/{s.edge_config_id}/items"
        client = self._http()
        try:
            r = client.get(url, params={"token": s.edge_config_read_token})
            r.raise_for_status()
            data = r.json()
        finally:
            self._close(client)

        if not isinstance(data, dict):
            raise UpstreamError(detail=f"Unexpected edge config payload: {type(data).__name__}")

        fb = self.fallback()
        link = data.get(WHATSAPP_LINK_KEY)
        if not self.is_allowed_link(link):
            logger.warning("Edge config whatsapp_link missing or not allow-listed; using fallback")
            link = fb.whatsapp_link

        qr = data.get(QR_ENABLED_KEY)
        if not isinstance(qr, bool):
            qr = fb.qr_redirect_enabled

        return GatedConfig(whatsapp_link=link, qr_redirect_enabled=qr)

    def get_config(self) -> GatedConfig:
        ttl = max(0, int(self.settings.config_cache_ttl_s))
        with self._lock:
            if self._cached is not None and (self._clock() - self._cached_at) < ttl:
                return self._cached

        try:
            cfg = self._fetch()
        except Exception as e:
            logger.warning("Failed to read gated config from edge config: %s", e)
            return self.fallback()

        with self._lock:
            self._cached = cfg
            self._cached_at = self._clock()
        return cfg

    def get_whatsapp_link(self) -> str:
        return self.get_config().whatsapp_link

    def is_qr_redirect_enabled(self) -> bool:
        return self.get_config().qr_redirect_enabled

    # -------------------------
    # Writes
    # -------------------------

    def update_config(
        self,
        *,
        whatsapp_link: Optional[str] = None,
        qr_redirect_enabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Write the provided values. Returns what was written.
        """
        updates: Dict[str, Any] = {}

        if whatsapp_link is not None:
            link = whatsapp_link.strip()
            if not self.is_allowed_link(link):
                raise ValidationError(
                    f"Invalid WhatsApp link. Must start with {self.settings.whatsapp_link_prefix}"
                )
            updates[WHATSAPP_LINK_KEY] = link

        if qr_redirect_enabled is not None:
            updates[QR_ENABLED_KEY] = bool(qr_redirect_enabled)

        if not updates:
            raise ValidationError("Nothing to update: provide whatsapp_link and/or qr_redirect_enabled")

        missing = self.missing_write_settings()
        if missing:
            raise ConfigurationError(
                "Configuration update failed",
                detail="Missing required environment variables for automatic updates",
                extra={
                    "message": "Missing required environment variables for automatic updates",
                    "requirements": {
                        "VERCEL_API_TOKEN": "Missing" if "VERCEL_API_TOKEN" in missing else "Set",
                        "EDGE_CONFIG_ID": "Missing" if "EDGE_CONFIG_ID" in missing else "Set",
                        "VERCEL_TEAM_ID": "Optional",
                    },
                },
            )

        s = self.settings
        url = f"{s.vercel_api_base}/v1/edge-config/{s.edge_config_id}/items"
        params = {"teamId": s.vercel_team_id} if s.vercel_team_id else None
        payload = {"items": [{"operation": "upsert", "key": k, "value": v} for k, v in updates.items()]}

        client = self._http()
        try:
            r = client.patch(
                url,
                params=params,
                json=payload,
                headers={"Authorization": f"Bearer {s.vercel_api_token}"},
            )
        except httpx.HTTPError as e:
            logger.error("Edge config update transport error: %s", e)
            raise UpstreamError("Failed to update configuration. Please try again or contact support.", detail=str(e))
        finally:
            self._close(client)

        if r.status_code >= 400:
            logger.error("Edge config update failed: %s %s", r.status_code, r.text[:500])
            raise UpstreamError(
                "Failed to update configuration. Please try again or contact support.",
                detail=f"status={r.status_code}",
            )

        self.invalidate()
        logger.info("Edge config updated: %s", sorted(updates.keys()))
        return updates


_gateway: Optional[ConfigGateway] = None
_gateway_lock = threading.Lock()


def get_config_gateway() -> ConfigGateway:
    """
    Process-wide gateway (shares the read cache). FastAPI dependency.
    """
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = ConfigGateway()
        return _gateway
