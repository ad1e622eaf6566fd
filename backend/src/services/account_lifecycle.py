"""
Account lifecycle coordination.

Every credential mutation goes through AccountLifecycleCoordinator so that:
- secrets are encrypted before they reach the repository
- the tenant's cached client is invalidated after the write, and the next
  request rebuilds from fresh data
- each mutation is recorded in the credential audit log

Connectivity probes resolve to booleans and persisted statuses; they never
raise for network or credential problems.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from src.api.schemas.marketplace_account import AccountCreate, AccountUpdate
from src.config.settings import Settings
from src.credentials.encryption import SecretCipher
from src.credentials.redaction import AuditEventType, CredentialAuditLogger
from src.credentials.store import AccountRepository
from src.integrations.avito.oauth import OAuthTokenManager, TokenSet
from src.models.marketplace_account import (
    ConnectionStatus,
    CredentialKind,
    MarketplaceAccount,
)
from src.platform.errors import (
    AuthExpiredError,
    BuildFailureError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from src.services.tenant_client_cache import TenantClientCache
from src.services.tenant_client_factory import TenantClientFactory

logger = logging.getLogger(__name__)

# Fields whose plaintext must never reach the repository
SECRET_FIELDS = ("client_secret", "proxy_password")


@dataclass
class ConnectionCheck:
    """Outcome of a connectivity probe. proxy_ok is None without a proxy."""
    tenant_id: int
    connection_ok: bool
    proxy_ok: Optional[bool]
    connection_status: ConnectionStatus
    proxy_status: ConnectionStatus

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "connection_ok": self.connection_ok,
            "proxy_ok": self.proxy_ok,
            "connection_status": self.connection_status.value,
            "proxy_status": self.proxy_status.value,
        }


def _expiry_from(token_set: TokenSet) -> Optional[datetime]:
    if not token_set.expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=token_set.expires_in)


class AccountLifecycleCoordinator:
    """
    Orchestrates create/update/delete of marketplace accounts and keeps
    TenantClientCache consistent with persisted credentials.
    """

    def __init__(
        self,
        repository: AccountRepository,
        cipher: SecretCipher,
        cache: TenantClientCache,
        factory: TenantClientFactory,
        settings: Settings,
    ):
        self._repository = repository
        self._cipher = cipher
        self._cache = cache
        self._factory = factory
        self._settings = settings
        self._audit = CredentialAuditLogger()

    async def _get_record(self, tenant_id: int) -> MarketplaceAccount:
        record = await self._repository.get(tenant_id)
        if record is None:
            raise NotFoundError("Marketplace account", str(tenant_id))
        return record

    async def _encrypt_secret_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        encrypted = dict(fields)
        for name in SECRET_FIELDS:
            if name not in encrypted:
                continue
            value = encrypted[name]
            encrypted[name] = await self._cipher.encrypt(value) if value else None
        return encrypted

    async def on_create(self, payload: AccountCreate, probe: bool = True) -> MarketplaceAccount:
        """
        Encrypt, persist, build the tenant client and optionally probe it.

        A failed build or probe does not undo the create; the outcome is
        persisted as connection/proxy status instead.

        Raises:
            ValidationError: If the account name is already taken
        """
        if await self._repository.get_by_name(payload.name):
            raise ValidationError(
                "Account with this name already exists",
                details={"field": "name"},
            )

        fields = await self._encrypt_secret_fields(payload.model_dump())
        fields["credential_kind"] = CredentialKind.STATIC_KEY
        record = await self._repository.create(fields)

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            tenant_id=record.id,
            account_name=record.name,
            metadata={"action": "created", "has_proxy": record.has_proxy},
        )

        if probe:
            await self.check_connection(record.id)
            return await self._get_record(record.id)

        try:
            await self._cache.get_or_create(record.id)
        except BuildFailureError as e:
            logger.warning(
                "Client build failed for new account",
                extra={
                    "tenant_id": record.id,
                    "account_name": record.name,
                    "error_code": e.details.get("cause"),
                }
            )
        return record

    async def on_update(self, tenant_id: int, payload: AccountUpdate) -> MarketplaceAccount:
        """
        Persist changed fields and invalidate the tenant's client.

        Invalidation is unconditional, even for non-secret changes.
        Replacing client_id or client_secret by hand returns the account to
        the static_key lifecycle.
        """
        existing = await self._get_record(tenant_id)
        changes = payload.model_dump(exclude_unset=True)

        new_name = changes.get("name")
        if new_name and new_name != existing.name:
            conflict = await self._repository.get_by_name(new_name)
            if conflict is not None and conflict.id != tenant_id:
                raise ValidationError(
                    "Account with this name already exists",
                    details={"field": "name"},
                )

        for required in ("name", "client_id", "client_secret"):
            if required in changes and not changes[required]:
                del changes[required]

        rotated = "client_id" in changes or "client_secret" in changes
        if rotated:
            changes["credential_kind"] = CredentialKind.STATIC_KEY
            changes["token_expires_at"] = None
        if "proxy_host" in changes and not changes["proxy_host"]:
            changes.update(
                proxy_type=None,
                proxy_host=None,
                proxy_port=None,
                proxy_login=None,
                proxy_password=None,
            )

        fields = await self._encrypt_secret_fields(changes)
        record = await self._repository.update(tenant_id, fields)
        await self._cache.invalidate(tenant_id)

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_ROTATED if rotated else AuditEventType.CREDENTIAL_STORED,
            tenant_id=tenant_id,
            account_name=record.name,
            metadata={"action": "updated", "fields": sorted(changes.keys())},
        )
        return record

    async def on_delete(self, tenant_id: int) -> None:
        """
        Invalidate the tenant's client, then delete the record.

        Raises:
            NotFoundError: If the account does not exist
        """
        await self._cache.invalidate(tenant_id)
        record = await self._repository.get(tenant_id)
        if record is None or not await self._repository.delete(tenant_id):
            raise NotFoundError("Marketplace account", str(tenant_id))

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_DELETED,
            tenant_id=tenant_id,
            account_name=record.name,
        )

    async def check_connection(self, tenant_id: int) -> ConnectionCheck:
        """
        Probe token acquisition and proxy reachability; persist the statuses.

        Raises:
            NotFoundError: If the account does not exist
        """
        record = await self._get_record(tenant_id)
        proxy_ok: Optional[bool] = None

        try:
            client = await self._cache.get_or_create(tenant_id)
        except BuildFailureError as e:
            if isinstance(e.cause, NotFoundError):
                raise e.cause
            logger.warning(
                "Connection check could not build client",
                extra={"tenant_id": tenant_id, "error_code": e.details.get("cause")}
            )
            connection_ok = False
            connection_status = ConnectionStatus.ERROR
            proxy_status = ConnectionStatus.ERROR if record.has_proxy else ConnectionStatus.NOT_CHECKED
        else:
            connection_ok = await client.health_check()
            connection_status = ConnectionStatus.CONNECTED if connection_ok else ConnectionStatus.DISCONNECTED
            if record.has_proxy:
                proxy_ok = await client.proxy_check()
                proxy_status = ConnectionStatus.CONNECTED if proxy_ok else ConnectionStatus.DISCONNECTED
            else:
                proxy_status = ConnectionStatus.NOT_CHECKED

        await self._repository.update(tenant_id, {
            "connection_status": connection_status,
            "proxy_status": proxy_status,
        })

        logger.info(
            "Connection checked",
            extra={
                "tenant_id": tenant_id,
                "connection_status": connection_status.value,
                "proxy_status": proxy_status.value,
            }
        )
        return ConnectionCheck(
            tenant_id=tenant_id,
            connection_ok=connection_ok,
            proxy_ok=proxy_ok,
            connection_status=connection_status,
            proxy_status=proxy_status,
        )

    async def on_tokens_issued(self, tenant_id: int, token_set: TokenSet) -> MarketplaceAccount:
        """
        Store tokens from the authorization_code flow as the account's
        credential pair and switch it to the oauth_token lifecycle.
        """
        if not token_set.refresh_token:
            raise AuthExpiredError(
                "Authorization response did not include a refresh token",
                details={"tenant_id": tenant_id},
            )

        record = await self._repository.update(tenant_id, {
            "client_id": await self._cipher.encrypt(token_set.access_token),
            "client_secret": await self._cipher.encrypt(token_set.refresh_token),
            "credential_kind": CredentialKind.OAUTH_TOKEN,
            "token_expires_at": _expiry_from(token_set),
        })
        await self._cache.invalidate(tenant_id)

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            tenant_id=tenant_id,
            account_name=record.name,
            metadata={"action": "oauth_connected", "expires_in": token_set.expires_in},
        )
        return record

    async def on_tokens_rotated(self, tenant_id: int, token_set: TokenSet) -> None:
        """
        Persist a pair rotated inside a live client.

        No invalidation: the client already holds the new tokens, and the
        old refresh token is dead server-side.
        """
        fields: Dict[str, Any] = {
            "client_id": await self._cipher.encrypt(token_set.access_token),
            "token_expires_at": _expiry_from(token_set),
        }
        if token_set.refresh_token:
            fields["client_secret"] = await self._cipher.encrypt(token_set.refresh_token)

        record = await self._repository.update(tenant_id, fields)
        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_ROTATED,
            tenant_id=tenant_id,
            account_name=record.name,
            metadata={"action": "token_refreshed", "expires_in": token_set.expires_in},
        )

    async def exchange_authorization_code(self, tenant_id: int, code: str) -> TokenSet:
        """
        Exchange an OAuth callback code through the tenant's proxy and store
        the issued tokens.

        Raises:
            ConfigurationError: If the OAuth app is not configured
            NotFoundError: If the account does not exist
            AuthExpiredError: If the code was rejected
        """
        self._settings.require_oauth()
        credential = await self._factory.load_credential(tenant_id)

        async with self._factory.open_http(credential) as http:
            manager = OAuthTokenManager(http, credential)
            token_set = await manager.exchange_code(
                code,
                self._settings.oauth_client_id,
                self._settings.oauth_client_secret,
            )

        await self.on_tokens_issued(tenant_id, token_set)
        return token_set

    async def refresh_tokens(self, tenant_id: int) -> TokenSet:
        """
        Force a refresh_token grant for an OAuth-connected account.

        The live client's on_rotate hook persists the rotated pair.

        Raises:
            ValidationError: If the account is not OAuth-connected
            BuildFailureError: If the client cannot be built
        """
        self._settings.require_oauth()
        record = await self._get_record(tenant_id)
        if record.credential_kind != CredentialKind.OAUTH_TOKEN:
            raise ValidationError(
                "Account is not connected through OAuth",
                details={"tenant_id": tenant_id},
            )

        was_cached = tenant_id in self._cache
        client = await self._cache.get_or_create(tenant_id)
        manager = client.token_manager
        if not was_cached and manager.last_refresh is not None:
            # The build already refreshed an expired stored token
            return manager.last_refresh
        return await manager.force_refresh()

    async def register_webhook(self, tenant_id: int) -> bool:
        """
        Register the platform webhook for one account.

        Raises:
            ConfigurationError: If WEBHOOK_BASE_URL is not set
            BuildFailureError: If the client cannot be built
        """
        webhook_url = self._settings.webhook_url
        if webhook_url is None:
            raise ConfigurationError("WEBHOOK_BASE_URL is not configured")

        client = await self._cache.get_or_create(tenant_id)
        return await client.register_webhook(webhook_url)
