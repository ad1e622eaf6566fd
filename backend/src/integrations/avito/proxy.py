"""
Outbound proxy routing for marketplace clients.

Turns a tenant's stored proxy fields into a ProxyDescriptor and builds an
httpx.AsyncClient routed through it.

Supported schemes: http, https (httpx native proxy support), socks4 and
socks5 (httpx-socks transport). Anything else is a ConfigurationError; an
unknown scheme is never silently treated as a direct connection.

SECURITY: only ProxyDescriptor.redacted_url may be logged.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx
from httpx_socks import AsyncProxyTransport

from src.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ProxyScheme(str, enum.Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"

    @property
    def is_socks(self) -> bool:
        return self in (ProxyScheme.SOCKS4, ProxyScheme.SOCKS5)


@dataclass(frozen=True)
class ProxyAuth:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"ProxyAuth(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class ProxyDescriptor:
    """Connection-routing descriptor for one tenant."""
    host: str
    port: int
    scheme: ProxyScheme
    auth: Optional[ProxyAuth] = None

    @property
    def url(self) -> str:
        """Proxy URL with percent-encoded credentials. NEVER log this."""
        if self.auth:
            userinfo = f"{quote(self.auth.username, safe='')}:{quote(self.auth.password, safe='')}@"
        else:
            userinfo = ""
        return f"{self.scheme.value}://{userinfo}{self.host}:{self.port}"

    @property
    def redacted_url(self) -> str:
        userinfo = f"{quote(self.auth.username, safe='')}:***@" if self.auth else ""
        return f"{self.scheme.value}://{userinfo}{self.host}:{self.port}"


def _parse_scheme(raw: Optional[str]) -> ProxyScheme:
    value = (raw or "").strip().lower()
    try:
        return ProxyScheme(value)
    except ValueError:
        raise ConfigurationError(
            "Unsupported proxy type",
            details={
                "proxy_type": raw,
                "supported": [scheme.value for scheme in ProxyScheme],
            },
        )


def _parse_port(raw: Any) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError("Proxy port is missing or not a number")
    if not 1 <= port <= 65535:
        raise ConfigurationError(
            "Proxy port out of range",
            details={"proxy_port": port},
        )
    return port


class ProxyConfigResolver:
    """
    Pure resolver from stored proxy fields to a ProxyDescriptor.

    Accepts any object exposing proxy_type, proxy_host, proxy_port,
    proxy_login and an already-decrypted proxy_password.
    """

    def resolve(self, credential: Any) -> Optional[ProxyDescriptor]:
        """
        Returns:
            ProxyDescriptor, or None for direct routing

        Raises:
            ConfigurationError: For an unknown scheme, a bad port, or a
                username without password (or vice versa)
        """
        host = (getattr(credential, "proxy_host", None) or "").strip()
        if not host:
            return None

        scheme = _parse_scheme(getattr(credential, "proxy_type", None))
        port = _parse_port(getattr(credential, "proxy_port", None))

        username = getattr(credential, "proxy_login", None) or None
        password = getattr(credential, "proxy_password", None) or None
        if bool(username) != bool(password):
            raise ConfigurationError(
                "Proxy authentication requires both login and password",
                details={
                    "has_login": bool(username),
                    "has_password": bool(password),
                },
            )

        auth = ProxyAuth(username=username, password=password) if username else None
        return ProxyDescriptor(host=host, port=port, scheme=scheme, auth=auth)


def build_http_client(
    descriptor: Optional[ProxyDescriptor],
    base_url: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Build an AsyncClient for the marketplace API, routed through the proxy.

    An explicit transport (tests) takes precedence over proxy routing.
    """
    kwargs: dict = {"base_url": base_url, "timeout": timeout}

    if transport is not None:
        kwargs["transport"] = transport
    elif descriptor is not None:
        if descriptor.scheme.is_socks:
            kwargs["transport"] = AsyncProxyTransport.from_url(descriptor.url)
        else:
            kwargs["proxy"] = descriptor.url

    if descriptor is not None:
        logger.debug(
            "HTTP client routed through proxy",
            extra={"proxy": descriptor.redacted_url, "scheme": descriptor.scheme.value}
        )

    return httpx.AsyncClient(**kwargs)
