"""
Builds one AvitoClient from a persisted marketplace account.

Build path: load record -> decrypt secrets -> resolve proxy -> construct
client with its OAuthTokenManager -> warm the token (one exchange).

Decrypted secrets live only inside the TenantCredential created here and
the token manager that consumes them.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from src.config.settings import Settings
from src.credentials.encryption import SecretCipher
from src.credentials.store import AccountRepository, TenantCredential
from src.integrations.avito.client import AvitoClient
from src.integrations.avito.oauth import OAuthTokenManager, RotateCallback
from src.integrations.avito.proxy import ProxyConfigResolver, build_http_client
from src.platform.errors import NotFoundError

logger = logging.getLogger(__name__)


class TenantClientFactory:
    """Constructs tenant clients for TenantClientCache."""

    def __init__(
        self,
        settings: Settings,
        repository: AccountRepository,
        cipher: SecretCipher,
        resolver: Optional[ProxyConfigResolver] = None,
        on_rotate: Optional[RotateCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_clock: Callable[[], float] = time.time,
        warm_token: bool = True,
    ):
        """
        Args:
            settings: API root, timeouts and OAuth app credentials
            repository: Account persistence
            cipher: Shared SecretCipher
            resolver: Proxy resolver (default instance when omitted)
            on_rotate: Persists rotated OAuth tokens; wired by the runtime
            transport: Overrides network transport (tests)
            token_clock: Wall clock for token expiry
            warm_token: Acquire the first token during the build
        """
        self._settings = settings
        self._repository = repository
        self._cipher = cipher
        self._resolver = resolver or ProxyConfigResolver()
        self.on_rotate = on_rotate
        self._transport = transport
        self._token_clock = token_clock
        self._warm_token = warm_token

    async def load_credential(self, tenant_id: int) -> TenantCredential:
        """
        Raises:
            NotFoundError: If the account does not exist
            IntegrityError: If a stored secret fails to decrypt
        """
        record = await self._repository.get(tenant_id)
        if record is None:
            raise NotFoundError("Marketplace account", str(tenant_id))
        return await TenantCredential.from_record(record, self._cipher)

    def open_http(self, credential: TenantCredential) -> httpx.AsyncClient:
        """HTTP client for the API root, routed through the tenant's proxy."""
        proxy = self._resolver.resolve(credential)
        return build_http_client(
            proxy,
            base_url=self._settings.api_url,
            timeout=self._settings.http_timeout_seconds,
            transport=self._transport,
        )

    async def build(self, tenant_id: int) -> AvitoClient:
        credential = await self.load_credential(tenant_id)
        proxy = self._resolver.resolve(credential)
        http = build_http_client(
            proxy,
            base_url=self._settings.api_url,
            timeout=self._settings.http_timeout_seconds,
            transport=self._transport,
        )

        token_manager = OAuthTokenManager(
            http,
            credential,
            oauth_client_id=self._settings.oauth_client_id,
            oauth_client_secret=self._settings.oauth_client_secret,
            on_rotate=self.on_rotate,
            clock=self._token_clock,
        )
        client = AvitoClient(
            tenant_id=credential.tenant_id,
            http=http,
            token_manager=token_manager,
            remote_user_id=credential.remote_user_id,
            proxy=proxy,
        )

        if self._warm_token:
            try:
                await token_manager.get_access_token()
            except Exception:
                await client.aclose()
                raise

        logger.info(
            "Marketplace client built",
            extra={
                "tenant_id": credential.tenant_id,
                "account_name": credential.name,
                "credential_kind": credential.credential_kind.value,
                "proxy": proxy.redacted_url if proxy else None,
            }
        )
        return client
