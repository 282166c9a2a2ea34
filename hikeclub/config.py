from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw: Any, fallback: List[str]) -> List[str]:
    """
    Normalize list-ish env values.

    Supports:
      - list[str] (already parsed)
      - "*" or a single value
      - comma-separated string: "https://a.com, https://b.com"
    """
    if raw is None:
        return list(fallback)

    if isinstance(raw, list):
        items = [str(x).strip() for x in raw]
        items = [x for x in items if x]
        return items or list(fallback)

    s = str(raw).strip()
    if not s:
        return list(fallback)

    if "," in s:
        parts = [p.strip() for p in s.split(",")]
        parts = [p for p in parts if p]
        return parts or list(fallback)

    return [s]


def _strip(v: Any) -> str:
    return ("" if v is None else str(v)).strip()


class Settings(BaseSettings):
    """
    Central app settings.

    - Keep env var names stable; everything is overridable from .env
    - Normalize user-provided values (CORS, log level, DB URL, base URLs)
    - Per-method token lifetimes are explicit settings, not a shared constant
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # App identity
    env: str = Field(default="local", alias="APP_ENV")
    app_name: str = Field(default="hikeclub-access", alias="APP_NAME")
    app_version: str = Field(default="1.2.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server runtime (uvicorn)
    host: str = Field(default="127.0.0.1", alias="HOST")  # set 0.0.0.0 for LAN / container
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"], alias="CORS_ALLOW_ORIGINS")

    # Preferred: a real SQLAlchemy URL (SQLite locally, Postgres when hosted)
    database_url: str = Field(default="", alias="DATABASE_URL")
    db_path: str = Field(default="./data/hikeclub.sqlite", alias="DB_PATH")

    # Public site base, used to build links that go out by email
    public_base_url: str = Field(default="http://localhost:3000", alias="PUBLIC_BASE_URL")

    # -------------------------
    # Gated resource (WhatsApp invite)
    # -------------------------
    whatsapp_group_link: str = Field(default="https://chat.whatsapp.com/fallback", alias="WHATSAPP_GROUP_LINK")
    whatsapp_link_prefix: str = Field(default="https://chat.whatsapp.com/", alias="WHATSAPP_LINK_PREFIX")

    # Edge config store (read side + Vercel management API for writes)
    edge_config_id: str = Field(default="", alias="EDGE_CONFIG_ID")
    edge_config_read_token: str = Field(default="", alias="EDGE_CONFIG_READ_TOKEN")
    edge_config_read_base: str = Field(default="https://edge-config.vercel.com", alias="EDGE_CONFIG_READ_BASE")
    vercel_api_base: str = Field(default="https://api.vercel.com", alias="VERCEL_API_BASE")
    vercel_api_token: str = Field(default="", alias="VERCEL_API_TOKEN")
    vercel_team_id: str = Field(default="", alias="VERCEL_TEAM_ID")
    config_cache_ttl_s: int = Field(default=1200, alias="CONFIG_CACHE_TTL_S")

    # -------------------------
    # Token lifetimes (minutes) per delivery method
    # -------------------------
    email_link_ttl_minutes: int = Field(default=24 * 60, alias="EMAIL_LINK_TTL_MINUTES")
    short_code_ttl_minutes: int = Field(default=24 * 60, alias="SHORT_CODE_TTL_MINUTES")
    six_digit_code_ttl_minutes: int = Field(default=30, alias="SIX_DIGIT_CODE_TTL_MINUTES")
    manual_link_ttl_minutes: int = Field(default=24 * 60, alias="MANUAL_LINK_TTL_MINUTES")

    # -------------------------
    # Abuse controls
    # -------------------------
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_window_s: int = Field(default=15 * 60, alias="RATE_LIMIT_WINDOW_S")
    rate_limit_manual_request: int = Field(default=3, alias="RATE_LIMIT_MANUAL_REQUEST")
    rate_limit_issue: int = Field(default=3, alias="RATE_LIMIT_ISSUE")
    rate_limit_redeem: int = Field(default=10, alias="RATE_LIMIT_REDEEM")

    turnstile_secret_key: str = Field(default="", alias="TURNSTILE_SECRET_KEY")
    turnstile_verify_url: str = Field(
        default="https://challenges.cloudflare.com/turnstile/v0/siteverify",
        alias="TURNSTILE_VERIFY_URL",
    )

    ip_hash_salt: str = Field(default="hikeclub_default_salt", alias="IP_HASH_SALT")
    university_email_suffix: str = Field(default="ac.uk", alias="UNIVERSITY_EMAIL_SUFFIX")
    duplicate_window_days: int = Field(default=90, alias="DUPLICATE_WINDOW_DAYS")
    support_email: str = Field(default="whatsapp@umhc.org.uk", alias="SUPPORT_EMAIL")

    # -------------------------
    # Outbound email (Resend)
    # -------------------------
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_api_base: str = Field(default="https://api.resend.com", alias="RESEND_API_BASE")
    resend_from_email: str = Field(default="UMHC <noreply@umhc.co.uk>", alias="RESEND_FROM_EMAIL")

    # -------------------------
    # Identity provider session tokens
    # -------------------------
    auth_jwt_secret: str = Field(default="", alias="AUTH_JWT_SECRET")
    auth_jwt_algorithms: list[str] = Field(default_factory=lambda: ["HS256"], alias="AUTH_JWT_ALGORITHMS")
    auth_jwt_audience: Optional[str] = Field(default=None, alias="AUTH_JWT_AUDIENCE")
    auth_jwt_issuer: Optional[str] = Field(default=None, alias="AUTH_JWT_ISSUER")

    # HTTP client defaults for outbound calls
    http_timeout_s: float = Field(default=10.0, alias="HTTP_TIMEOUT_S")

    # -------------------------
    # Validators / normalizers
    # -------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def _norm_log_level(cls, v: Any) -> str:
        return _strip(v).upper() or "INFO"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _norm_cors_allow_origins(cls, v: Any) -> list[str]:
        return _split_csv(v, ["*"])

    @field_validator("auth_jwt_algorithms", mode="before")
    @classmethod
    def _norm_algorithms(cls, v: Any) -> list[str]:
        return [a.upper() for a in _split_csv(v, ["HS256"])]

    @field_validator("host", mode="before")
    @classmethod
    def _norm_host(cls, v: Any) -> str:
        return _strip(v) or "127.0.0.1"

    @field_validator(
        "public_base_url",
        "edge_config_read_base",
        "vercel_api_base",
        "resend_api_base",
        mode="before",
    )
    @classmethod
    def _norm_base_url(cls, v: Any) -> str:
        return _strip(v).rstrip("/")

    @field_validator("database_url", "whatsapp_group_link", "edge_config_id", "vercel_api_token", mode="before")
    @classmethod
    def _norm_plain(cls, v: Any) -> str:
        return _strip(v)

    @field_validator("university_email_suffix", mode="before")
    @classmethod
    def _norm_suffix(cls, v: Any) -> str:
        return _strip(v).lower().lstrip(".") or "ac.uk"

    @field_validator("db_path", mode="before")
    @classmethod
    def _norm_db_path(cls, v: Any) -> str:
        return _strip(v) or "./data/hikeclub.sqlite"

    # -------------------------
    # Derived helpers
    # -------------------------

    @property
    def is_prod(self) -> bool:
        return str(self.env).strip().lower() in ("prod", "production")

    @property
    def resolved_database_url(self) -> str:
        """
        Priority:
        1) DATABASE_URL if provided
        2) Build sqlite:/// URL from DB_PATH
        """
        if self.database_url:
            return self.database_url

        path = (self.db_path or "").strip() or "./data/hikeclub.sqlite"

        if path.startswith("sqlite:"):
            return path

        p = Path(path)

        if not p.is_absolute():
            if str(p).startswith("./"):
                return f"sqlite:///{p.as_posix()}"
            return f"sqlite:///./{p.as_posix()}"

        # Absolute path needs 4 slashes after scheme (sqlite:////abs/path)
        return f"sqlite:////{p.as_posix().lstrip('/')}"

    def rate_limit_for(self, scope: str) -> int:
        limits = {
            "manual_request": self.rate_limit_manual_request,
            "issue": self.rate_limit_issue,
            "redeem": self.rate_limit_redeem,
        }
        return int(limits.get(scope, self.rate_limit_redeem))


settings = Settings()
