"""
MarketplaceAccount model - one integrated marketplace (Avito) account per row.

SECURITY REQUIREMENTS:
- client_secret and proxy_password are encrypted at rest (SecretCipher blobs)
- For OAuth-issued credentials, client_id holds an access token and is
  encrypted as well; client_secret then holds the rotating refresh token
- Secrets are NEVER exposed in API responses or logs (see to_safe_dict)
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, Enum, Index,
)

from src.db_base import Base
from src.models.base import TimestampMixin


class CredentialKind(str, enum.Enum):
    """
    Which lifecycle the client_id/client_secret pair follows.

    STATIC_KEY: API key pair, exchanged via client_credentials grant.
    OAUTH_TOKEN: access/refresh token pair issued by the authorization-code
    flow; refreshed with the app's OAuth credentials.
    """
    STATIC_KEY = "static_key"
    OAUTH_TOKEN = "oauth_token"


class ConnectionStatus(str, enum.Enum):
    """Outcome of the last connectivity probe."""
    NOT_CHECKED = "not_checked"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class MarketplaceAccount(Base, TimestampMixin):
    """
    Persisted marketplace account and its encrypted credentials.
    """

    __tablename__ = "marketplace_accounts"

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Tenant account id"
    )
    name = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Display name (allowed in logs)"
    )

    # Credentials - NEVER log these values
    client_id = Column(
        Text,
        nullable=False,
        comment="API client id, or encrypted access token for oauth_token kind"
    )
    client_secret = Column(
        Text,
        nullable=False,
        comment="Encrypted client secret or refresh token - NEVER log plaintext"
    )
    credential_kind = Column(
        Enum(CredentialKind),
        default=CredentialKind.STATIC_KEY,
        nullable=False,
        comment="static_key or oauth_token"
    )
    token_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Access token expiry for oauth_token kind"
    )
    remote_user_id = Column(
        String(64),
        nullable=True,
        comment="Marketplace user id (numeric)"
    )

    # Proxy routing
    proxy_type = Column(
        String(16),
        nullable=True,
        comment="http, https, socks4 or socks5"
    )
    proxy_host = Column(String(255), nullable=True)
    proxy_port = Column(Integer, nullable=True)
    proxy_login = Column(String(255), nullable=True)
    proxy_password = Column(
        Text,
        nullable=True,
        comment="Encrypted proxy password - NEVER log plaintext"
    )

    # Probe results
    connection_status = Column(
        Enum(ConnectionStatus),
        default=ConnectionStatus.NOT_CHECKED,
        nullable=False,
    )
    proxy_status = Column(
        Enum(ConnectionStatus),
        default=ConnectionStatus.NOT_CHECKED,
        nullable=False,
    )

    # Presence keepalive
    eternal_online_enabled = Column(Boolean, default=False, nullable=False)
    online_keepalive_interval = Column(
        Integer,
        default=300,
        nullable=False,
        comment="Seconds between presence pings"
    )
    is_online = Column(Boolean, default=False, nullable=False)
    last_online_check = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_marketplace_accounts_eternal_online", "eternal_online_enabled"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include secret values."""
        return (
            f"<MarketplaceAccount("
            f"id={self.id}, "
            f"name={self.name}, "
            f"credential_kind={self.credential_kind})>"
        )

    @property
    def has_proxy(self) -> bool:
        return bool(self.proxy_host)

    @property
    def is_token_expired(self) -> bool:
        """Check if the stored OAuth access token is past its expiry."""
        if not self.token_expires_at:
            return False
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes client id/secret and proxy password.
        """
        return {
            "id": self.id,
            "name": self.name,
            "credential_kind": self.credential_kind.value if self.credential_kind else None,
            "remote_user_id": self.remote_user_id,
            "proxy_type": self.proxy_type,
            "proxy_host": self.proxy_host,
            "proxy_port": self.proxy_port,
            "has_proxy_auth": bool(self.proxy_login),
            "connection_status": self.connection_status.value if self.connection_status else None,
            "proxy_status": self.proxy_status.value if self.proxy_status else None,
            "eternal_online_enabled": self.eternal_online_enabled,
            "online_keepalive_interval": self.online_keepalive_interval,
            "is_online": self.is_online,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "last_online_check": self.last_online_check.isoformat() if self.last_online_check else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
