"""
Marketplace OAuth token management.

One OAuthTokenManager is embedded in every tenant client and owns that
client's TokenState. It talks to the marketplace token endpoint through the
client's own (possibly proxied) httpx.AsyncClient.

Lifecycle per tenant:

    NO_TOKEN -> VALID (until expires_at) -> EXPIRED -> REFRESHING -> VALID | FAILED

- static_key accounts mint tokens with the client_credentials grant
- oauth_token accounts use the stored access token until it expires, then
  the refresh_token grant with the OAuth app credentials; the rotated pair is
  handed to on_rotate for persistence (the old refresh token is dead)
- concurrent callers during an acquisition share one in-flight exchange
- FAILED surfaces as AuthExpiredError; there is no retry loop

Token endpoint errors:
- 400/401 -> AuthExpiredError
- transport failure, other non-2xx, bad payload -> UpstreamUnavailableError
"""

import asyncio
import base64
import binascii
import enum
import json
import logging
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx

from src.config.settings import DEFAULT_OAUTH_SCOPES, DEFAULT_OAUTH_URL
from src.credentials.store import TenantCredential
from src.platform.errors import (
    AuthExpiredError,
    ConfigurationError,
    UpstreamUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TOKEN_PATH = "/token"

# Tokens are treated as expired slightly early to avoid racing the server
EXPIRY_MARGIN_SECONDS = 60


@dataclass
class TokenSet:
    """Result of a token exchange or refresh."""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"TokenSet(token_type={self.token_type!r}, expires_in={self.expires_in}, "
            f"has_refresh_token={bool(self.refresh_token)})"
        )

    @classmethod
    def from_response(cls, payload: dict) -> "TokenSet":
        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamUnavailableError("Token endpoint response missing access_token")
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            raise UpstreamUnavailableError("Token endpoint returned invalid expires_in")
        return cls(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
        )


@dataclass
class TokenState:
    """In-memory bearer token. expires_at=None means valid until rejected."""
    access_token: str
    expires_at: Optional[float]

    def is_valid(self, now: float) -> bool:
        return self.expires_at is None or now < self.expires_at


class TokenStatus(str, enum.Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    FAILED = "failed"


RotateCallback = Callable[[int, TokenSet], Awaitable[None]]


class OAuthTokenManager:
    """
    Acquires and renews bearer tokens for one tenant client.

    Not shared between tenants. State lives only in memory; reset() drops it
    when the owning client is disposed.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        credential: TenantCredential,
        oauth_client_id: Optional[str] = None,
        oauth_client_secret: Optional[str] = None,
        on_rotate: Optional[RotateCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            http: Client whose base_url is the marketplace API root
            credential: Decrypted credential snapshot of the tenant
            oauth_client_id: OAuth app id (refresh_token grant only)
            oauth_client_secret: OAuth app secret (refresh_token grant only)
            on_rotate: Persists a rotated token pair; awaited after every refresh
            clock: Wall-clock source in epoch seconds
        """
        self._http = http
        self._tenant_id = credential.tenant_id
        self._kind_is_oauth = credential.is_oauth
        self._client_id = credential.client_id
        self._client_secret = credential.client_secret
        self._oauth_client_id = oauth_client_id
        self._oauth_client_secret = oauth_client_secret
        self._on_rotate = on_rotate
        self._clock = clock

        self._state: Optional[TokenState] = None
        self._failed = False
        self._inflight: Optional[asyncio.Task] = None
        self.exchange_count = 0
        self.last_refresh: Optional[TokenSet] = None

        if self._kind_is_oauth:
            # client_id holds the issued access token for this kind
            expires_at = None
            if credential.token_expires_at is not None:
                stored = credential.token_expires_at
                if stored.tzinfo is None:
                    stored = stored.replace(tzinfo=timezone.utc)
                expires_at = stored.timestamp()
            self._state = TokenState(access_token=credential.client_id, expires_at=expires_at)

    @property
    def tenant_id(self) -> int:
        return self._tenant_id

    @property
    def status(self) -> TokenStatus:
        if self._inflight is not None and not self._inflight.done():
            return TokenStatus.REFRESHING
        if self._failed:
            return TokenStatus.FAILED
        if self._state is None:
            return TokenStatus.NO_TOKEN
        if self._state.is_valid(self._clock()):
            return TokenStatus.VALID
        return TokenStatus.EXPIRED

    @property
    def current_token(self) -> Optional[str]:
        return self._state.access_token if self._state else None

    async def get_access_token(self) -> str:
        """
        Return a valid bearer token, acquiring one if needed.

        Raises:
            AuthExpiredError: If the marketplace rejects the credentials
            UpstreamUnavailableError: If the token endpoint is unreachable
        """
        if self._state is not None and self._state.is_valid(self._clock()):
            return self._state.access_token
        token_set = await self._acquire()
        return token_set.access_token

    async def handle_unauthorized(self, rejected_token: Optional[str] = None) -> str:
        """
        React to a downstream 401 with exactly one refresh/re-exchange.

        If another caller already replaced the rejected token, the current
        token is returned without a new exchange. The caller retries its
        request once; a second 401 is the caller's AuthExpiredError.
        """
        if (
            rejected_token is not None
            and self._state is not None
            and self._state.access_token != rejected_token
            and self._state.is_valid(self._clock())
        ):
            return self._state.access_token

        logger.info(
            "Access token rejected, re-acquiring",
            extra={"tenant_id": self._tenant_id, "oauth": self._kind_is_oauth}
        )
        self._state = None
        token_set = await self._acquire()
        return token_set.access_token

    async def force_refresh(self) -> TokenSet:
        """Drop the current token and acquire a new one."""
        self._state = None
        return await self._acquire()

    def reset(self) -> None:
        """Drop in-memory token state. Persisted credentials are untouched."""
        self._state = None
        self._failed = False

    async def _acquire(self) -> TokenSet:
        # Late callers attach to the exchange already in flight
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_acquire())
        return await asyncio.shield(self._inflight)

    async def _run_acquire(self) -> TokenSet:
        try:
            if self._kind_is_oauth:
                return await self.refresh(
                    self._client_secret,
                    self._oauth_client_id,
                    self._oauth_client_secret,
                )
            return await self._client_credentials()
        except Exception:
            self._failed = True
            self._state = None
            raise
        finally:
            self._inflight = None

    async def _client_credentials(self) -> TokenSet:
        token_set = await self._post_token({
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        })
        self._store(token_set)
        return token_set

    async def refresh(
        self,
        refresh_token: str,
        oauth_client_id: Optional[str],
        oauth_client_secret: Optional[str],
    ) -> TokenSet:
        """
        Perform the refresh_token grant and persist the rotated pair.

        Raises:
            ConfigurationError: If the OAuth app credentials are missing
            AuthExpiredError: If the refresh token was rejected
        """
        if not oauth_client_id or not oauth_client_secret:
            raise ConfigurationError(
                "OAuth app credentials are required to refresh tokens",
                details={"tenant_id": self._tenant_id},
            )
        if not refresh_token:
            raise AuthExpiredError(
                "No refresh token stored for account",
                details={"tenant_id": self._tenant_id},
            )

        token_set = await self._post_token({
            "grant_type": "refresh_token",
            "client_id": oauth_client_id,
            "client_secret": oauth_client_secret,
            "refresh_token": refresh_token,
        })
        if token_set.refresh_token:
            self._client_secret = token_set.refresh_token
        self._client_id = token_set.access_token
        self._store(token_set)
        self.last_refresh = token_set

        if self._on_rotate is not None:
            await self._on_rotate(self._tenant_id, token_set)

        logger.info(
            "OAuth tokens refreshed",
            extra={"tenant_id": self._tenant_id, "expires_in": token_set.expires_in}
        )
        return token_set

    async def exchange_code(
        self,
        code: str,
        oauth_client_id: str,
        oauth_client_secret: str,
    ) -> TokenSet:
        """One-time authorization_code exchange. The caller persists the result."""
        token_set = await self._post_token({
            "grant_type": "authorization_code",
            "client_id": oauth_client_id,
            "client_secret": oauth_client_secret,
            "code": code,
        })
        logger.info(
            "Authorization code exchanged",
            extra={"tenant_id": self._tenant_id, "expires_in": token_set.expires_in}
        )
        return token_set

    def _store(self, token_set: TokenSet) -> None:
        lifetime = max(token_set.expires_in - EXPIRY_MARGIN_SECONDS, 0)
        self._state = TokenState(
            access_token=token_set.access_token,
            expires_at=self._clock() + lifetime,
        )
        self._failed = False

    async def _post_token(self, data: dict) -> TokenSet:
        if self._http.is_closed:
            raise UpstreamUnavailableError("Marketplace client was disposed; fetch a fresh one")
        self.exchange_count += 1
        grant_type = data.get("grant_type")
        try:
            response = await self._http.post(TOKEN_PATH, data=data)
        except httpx.RequestError as e:
            logger.error(
                "Token endpoint unreachable",
                extra={
                    "tenant_id": self._tenant_id,
                    "grant_type": grant_type,
                    "error_type": type(e).__name__,
                }
            )
            raise UpstreamUnavailableError(f"Token endpoint unreachable: {type(e).__name__}")

        if response.status_code in (400, 401):
            logger.warning(
                "Token endpoint rejected credentials",
                extra={
                    "tenant_id": self._tenant_id,
                    "grant_type": grant_type,
                    "status_code": response.status_code,
                }
            )
            raise AuthExpiredError(
                "Marketplace rejected the credentials",
                details={"upstream_status": response.status_code, "grant_type": grant_type},
            )

        if not response.is_success:
            logger.error(
                "Token endpoint error",
                extra={
                    "tenant_id": self._tenant_id,
                    "grant_type": grant_type,
                    "status_code": response.status_code,
                }
            )
            raise UpstreamUnavailableError(
                f"Token endpoint returned {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            raise UpstreamUnavailableError(
                "Token endpoint returned invalid JSON",
                upstream_status=response.status_code,
            )
        return TokenSet.from_response(payload)


def build_authorization_url(
    client_id: str,
    redirect_uri: Optional[str] = None,
    scopes: str = DEFAULT_OAUTH_SCOPES,
    state: Optional[str] = None,
    oauth_url: str = DEFAULT_OAUTH_URL,
) -> str:
    """Build the marketplace consent URL for the authorization_code flow."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "scope": scopes,
    }
    if redirect_uri:
        params["redirect_uri"] = redirect_uri
    if state:
        params["state"] = state
    return f"{oauth_url}?{urlencode(params)}"


def encode_state(tenant_id: Any) -> str:
    """Opaque OAuth state carrying the tenant id (base64 JSON)."""
    payload = json.dumps({"accountId": tenant_id}).encode("utf-8")
    return base64.b64encode(payload).decode("ascii")


def decode_state(state: Optional[str]) -> int:
    """
    Recover the tenant id from an OAuth state value.

    Raises:
        ValidationError: If the state is missing or malformed
    """
    if not state:
        raise ValidationError("Missing OAuth state")
    try:
        payload = json.loads(base64.b64decode(state, validate=True).decode("utf-8"))
        return int(payload["accountId"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
        raise ValidationError("Invalid OAuth state")
