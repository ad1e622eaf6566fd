"""
Marketplace account request/response schemas.

Input models carry PLAINTEXT secrets exactly once, from the request body
to AccountLifecycleCoordinator, which encrypts them before persistence.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

PROXY_TYPES = ("http", "https", "socks4", "socks5")


def _normalize_proxy_type(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    normalized = value.strip().lower()
    if normalized not in PROXY_TYPES:
        raise ValueError(f"proxy_type must be one of: {', '.join(PROXY_TYPES)}")
    return normalized


class AccountCreate(BaseModel):
    """Payload for onboarding a marketplace account."""

    name: str = Field(..., min_length=1, max_length=255)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    remote_user_id: Optional[str] = Field(None, pattern=r"^\d+$")
    proxy_type: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = Field(None, ge=1, le=65535)
    proxy_login: Optional[str] = None
    proxy_password: Optional[str] = None
    eternal_online_enabled: bool = False
    online_keepalive_interval: int = Field(300, ge=30, le=86400)

    @field_validator("proxy_type")
    @classmethod
    def validate_proxy_type(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_proxy_type(v)


class AccountUpdate(BaseModel):
    """
    Partial update. Only fields present in the request are applied
    (see model_fields_set); explicit nulls clear proxy settings.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    client_id: Optional[str] = Field(None, min_length=1)
    client_secret: Optional[str] = Field(None, min_length=1)
    remote_user_id: Optional[str] = Field(None, pattern=r"^\d+$")
    proxy_type: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = Field(None, ge=1, le=65535)
    proxy_login: Optional[str] = None
    proxy_password: Optional[str] = None
    eternal_online_enabled: Optional[bool] = None
    online_keepalive_interval: Optional[int] = Field(None, ge=30, le=86400)

    @field_validator("proxy_type")
    @classmethod
    def validate_proxy_type(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_proxy_type(v)


class ConnectionCheckResponse(BaseModel):
    """Result of a connectivity probe."""

    connection_status: str
    proxy_status: str


class TokenRefreshResponse(BaseModel):
    """Result of a manual OAuth refresh."""

    success: bool
    message: str
    expires_in: Optional[int] = None
