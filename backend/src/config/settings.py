"""
Environment-driven settings for the marketplace integration backend.

All values are read once at startup via Settings.from_env(). The master
encryption key is validated by SecretCipher; OAuth app credentials are only
required by the OAuth routes (see require_oauth()).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from src.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.avito.ru"
DEFAULT_OAUTH_URL = "https://avito.ru/oauth"
DEFAULT_OAUTH_SCOPES = "messenger:read,messenger:write,user:read,items:info"
DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_DATABASE_URL = "sqlite:///./marketplace.db"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer",
            details={"variable": name},
        )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a number",
            details={"variable": name},
        )


@dataclass
class Settings:
    """Process-wide configuration loaded from environment variables."""
    encryption_key: Optional[str]
    api_url: str = DEFAULT_API_URL
    oauth_url: str = DEFAULT_OAUTH_URL
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_redirect_uri: Optional[str] = None
    oauth_scopes: str = DEFAULT_OAUTH_SCOPES
    frontend_url: str = DEFAULT_FRONTEND_URL
    webhook_base_url: Optional[str] = None
    cache_capacity: int = 100
    cache_ttl_seconds: float = 3600.0
    http_timeout_seconds: float = 30.0
    keepalive_poll_seconds: float = 300.0
    database_url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables."""
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        # CORS-style comma lists are accepted; the first origin wins
        frontend_url = os.getenv("FRONTEND_URL") or DEFAULT_FRONTEND_URL
        frontend_url = frontend_url.split(",")[0].strip().rstrip("/")

        settings = cls(
            encryption_key=os.getenv("ENCRYPTION_KEY"),
            api_url=os.getenv("AVITO_API_URL", DEFAULT_API_URL).rstrip("/"),
            oauth_url=os.getenv("AVITO_OAUTH_URL", DEFAULT_OAUTH_URL),
            oauth_client_id=os.getenv("AVITO_OAUTH_CLIENT_ID"),
            oauth_client_secret=os.getenv("AVITO_OAUTH_CLIENT_SECRET"),
            oauth_redirect_uri=os.getenv("AVITO_OAUTH_REDIRECT_URI"),
            oauth_scopes=os.getenv("AVITO_OAUTH_SCOPES") or DEFAULT_OAUTH_SCOPES,
            frontend_url=frontend_url,
            webhook_base_url=os.getenv("WEBHOOK_BASE_URL"),
            cache_capacity=_int_env("CLIENT_CACHE_CAPACITY", 100),
            cache_ttl_seconds=_float_env("CLIENT_CACHE_TTL_SECONDS", 3600.0),
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
            keepalive_poll_seconds=_float_env("KEEPALIVE_POLL_SECONDS", 300.0),
            database_url=database_url,
        )

        if settings.cache_capacity < 1:
            raise ConfigurationError("CLIENT_CACHE_CAPACITY must be at least 1")

        logger.info(
            "Settings loaded",
            extra={
                "api_url": settings.api_url,
                "has_encryption_key": bool(settings.encryption_key),
                "has_oauth_app": settings.oauth_configured,
                "cache_capacity": settings.cache_capacity,
                "cache_ttl_seconds": settings.cache_ttl_seconds,
            }
        )
        return settings

    @property
    def oauth_configured(self) -> bool:
        return bool(
            self.oauth_client_id
            and self.oauth_client_secret
            and self.oauth_redirect_uri
        )

    def require_oauth(self) -> None:
        """
        Fail the current operation if the OAuth app is not configured.

        Raises:
            ConfigurationError: If client id, secret or redirect URI is missing
        """
        if not self.oauth_configured:
            raise ConfigurationError(
                "OAuth configuration missing. Set AVITO_OAUTH_CLIENT_ID, "
                "AVITO_OAUTH_CLIENT_SECRET and AVITO_OAUTH_REDIRECT_URI.",
                details={
                    "has_client_id": bool(self.oauth_client_id),
                    "has_client_secret": bool(self.oauth_client_secret),
                    "has_redirect_uri": bool(self.oauth_redirect_uri),
                },
            )

    @property
    def webhook_url(self) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url.rstrip('/')}/api/webhook/avito"
