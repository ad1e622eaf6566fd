"""
Marketplace account storage.

SECURITY REQUIREMENTS:
- Rows returned by the repository hold ciphertext only
- TenantCredential is the ONLY place decrypted secrets live, and only for
  the duration of one client build
- Secrets are NEVER logged; account name and id are allowed

Usage:
    repo = SqlAccountRepository(SessionLocal)

    record = await repo.get(tenant_id)
    credential = await TenantCredential.from_record(record, cipher)
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from sqlalchemy.orm import Session

from src.credentials.encryption import SecretCipher
from src.models.marketplace_account import CredentialKind, MarketplaceAccount
from src.platform.errors import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccountRepository(Protocol):
    """Persistence boundary for marketplace accounts."""

    async def get(self, tenant_id: int) -> Optional[MarketplaceAccount]: ...

    async def get_by_name(self, name: str) -> Optional[MarketplaceAccount]: ...

    async def create(self, fields: Dict[str, Any]) -> MarketplaceAccount: ...

    async def update(self, tenant_id: int, fields: Dict[str, Any]) -> MarketplaceAccount: ...

    async def delete(self, tenant_id: int) -> bool: ...

    async def list_presence_enabled(self) -> List[MarketplaceAccount]: ...


class SqlAccountRepository:
    """
    SQLAlchemy implementation of AccountRepository.

    Each call runs in its own short-lived session so that long-lived
    components (the client cache, background workers) never hold a stale
    identity map. The session factory must be created with
    expire_on_commit=False; returned rows are detached snapshots.

    Sessions are synchronous, so every call runs on the repository's own
    worker thread. A slow database then stalls only other repository calls,
    never the event loop. One worker keeps SQLite connections on one thread.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="account-db")

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def close(self) -> None:
        """Stop the worker thread. Pending calls finish first."""
        self._executor.shutdown(wait=True)

    async def get(self, tenant_id: int) -> Optional[MarketplaceAccount]:
        return await self._run(self._get, tenant_id)

    async def get_by_name(self, name: str) -> Optional[MarketplaceAccount]:
        return await self._run(self._get_by_name, name)

    async def create(self, fields: Dict[str, Any]) -> MarketplaceAccount:
        account = await self._run(self._create, fields)
        logger.info(
            "Marketplace account created",
            extra={"tenant_id": account.id, "account_name": account.name}
        )
        return account

    async def update(self, tenant_id: int, fields: Dict[str, Any]) -> MarketplaceAccount:
        """
        Apply column changes to one account.

        Raises:
            NotFoundError: If the account does not exist
        """
        account = await self._run(self._update, tenant_id, fields)
        logger.debug(
            "Marketplace account updated",
            extra={"tenant_id": tenant_id, "fields": sorted(fields.keys())}
        )
        return account

    async def delete(self, tenant_id: int) -> bool:
        return await self._run(self._delete, tenant_id)

    async def list_presence_enabled(self) -> List[MarketplaceAccount]:
        return await self._run(self._list_presence_enabled)

    def _get(self, tenant_id: int) -> Optional[MarketplaceAccount]:
        with self._session_factory() as db:
            return db.query(MarketplaceAccount).filter(
                MarketplaceAccount.id == tenant_id
            ).first()

    def _get_by_name(self, name: str) -> Optional[MarketplaceAccount]:
        with self._session_factory() as db:
            return db.query(MarketplaceAccount).filter(
                MarketplaceAccount.name == name
            ).first()

    def _create(self, fields: Dict[str, Any]) -> MarketplaceAccount:
        with self._session_factory() as db:
            account = MarketplaceAccount(**fields)
            db.add(account)
            db.commit()
            db.refresh(account)
        return account

    def _update(self, tenant_id: int, fields: Dict[str, Any]) -> MarketplaceAccount:
        with self._session_factory() as db:
            account = db.query(MarketplaceAccount).filter(
                MarketplaceAccount.id == tenant_id
            ).first()
            if not account:
                raise NotFoundError("Marketplace account", str(tenant_id))

            for key, value in fields.items():
                setattr(account, key, value)
            db.commit()
            db.refresh(account)
        return account

    def _delete(self, tenant_id: int) -> bool:
        with self._session_factory() as db:
            deleted = db.query(MarketplaceAccount).filter(
                MarketplaceAccount.id == tenant_id
            ).delete()
            db.commit()
        return bool(deleted)

    def _list_presence_enabled(self) -> List[MarketplaceAccount]:
        with self._session_factory() as db:
            return db.query(MarketplaceAccount).filter(
                MarketplaceAccount.eternal_online_enabled == True  # noqa: E712
            ).order_by(MarketplaceAccount.id).all()


@dataclass
class TenantCredential:
    """
    Decrypted credential snapshot used to build one tenant client.

    SECURITY: secret fields are excluded from repr; instances must not
    outlive the build that created them.
    """
    tenant_id: int
    name: str
    credential_kind: CredentialKind
    client_id: str = field(repr=False)
    client_secret: str = field(repr=False)
    remote_user_id: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    proxy_type: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    proxy_login: Optional[str] = None
    proxy_password: Optional[str] = field(default=None, repr=False)

    @property
    def is_oauth(self) -> bool:
        return self.credential_kind == CredentialKind.OAUTH_TOKEN

    @classmethod
    async def from_record(
        cls,
        record: MarketplaceAccount,
        cipher: SecretCipher,
    ) -> "TenantCredential":
        """
        Decrypt a persisted account into a credential snapshot.

        client_id is only encrypted for oauth_token accounts, where it holds
        the access token. Legacy plaintext values pass through
        decrypt_if_needed unchanged.

        Raises:
            IntegrityError: If any stored blob fails authentication
        """
        kind = record.credential_kind or CredentialKind.STATIC_KEY

        client_id = record.client_id
        if kind == CredentialKind.OAUTH_TOKEN:
            client_id = await cipher.decrypt_if_needed(client_id)

        return cls(
            tenant_id=record.id,
            name=record.name,
            credential_kind=kind,
            client_id=client_id,
            client_secret=await cipher.decrypt_if_needed(record.client_secret),
            remote_user_id=record.remote_user_id,
            token_expires_at=record.token_expires_at,
            proxy_type=record.proxy_type,
            proxy_host=record.proxy_host,
            proxy_port=record.proxy_port,
            proxy_login=record.proxy_login,
            proxy_password=await cipher.decrypt_if_needed(record.proxy_password),
        )
