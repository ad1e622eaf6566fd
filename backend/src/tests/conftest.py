"""
Shared pytest fixtures for marketplace backend tests.

Provides an in-memory SQLite repository, a shared SecretCipher, settings
pointing at a fake marketplace, the FakeMarketplace transport, and the
wired factory -> cache -> coordinator stack.
"""

from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.config.settings import Settings
from src.credentials.encryption import SecretCipher
from src.credentials.store import SqlAccountRepository
from src.db_base import Base
from src.models.marketplace_account import CredentialKind
from src.services.account_lifecycle import AccountLifecycleCoordinator
from src.services.tenant_client_cache import TenantClientCache
from src.services.tenant_client_factory import TenantClientFactory
from src.tests.fakes import (
    TEST_API_URL,
    TEST_FRONTEND_URL,
    TEST_MASTER_KEY,
    FakeClock,
    FakeMarketplace,
)


@pytest.fixture
def master_key() -> str:
    return TEST_MASTER_KEY


@pytest.fixture
def cipher(master_key) -> SecretCipher:
    return SecretCipher(master_key)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def repository(session_factory):
    repository = SqlAccountRepository(session_factory)
    yield repository
    repository.close()


@pytest.fixture
def settings(master_key) -> Settings:
    return Settings(
        encryption_key=master_key,
        api_url=TEST_API_URL,
        oauth_client_id="oauth-app-id",
        oauth_client_secret="oauth-app-secret",
        oauth_redirect_uri="http://backend.test/api/auth/avito/callback",
        frontend_url=TEST_FRONTEND_URL,
        webhook_base_url="http://backend.test",
    )


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def create_account(repository, cipher):
    """Factory persisting an account with encrypted secrets."""

    async def _create(
        name: str = "T1",
        client_id: str = "client-id",
        client_secret: str = "s3cr3t",
        credential_kind: CredentialKind = CredentialKind.STATIC_KEY,
        proxy_password: Optional[str] = None,
        **fields,
    ):
        if credential_kind == CredentialKind.OAUTH_TOKEN:
            client_id = await cipher.encrypt(client_id)
        return await repository.create({
            "name": name,
            "client_id": client_id,
            "client_secret": await cipher.encrypt(client_secret),
            "credential_kind": credential_kind,
            "proxy_password": await cipher.encrypt(proxy_password) if proxy_password else None,
            **fields,
        })

    return _create


@pytest.fixture
def client_factory(settings, repository, cipher, marketplace) -> TenantClientFactory:
    return TenantClientFactory(settings, repository, cipher, transport=marketplace.transport())


@pytest_asyncio.fixture
async def client_cache(client_factory, fake_clock):
    cache = TenantClientCache(client_factory, capacity=10, ttl_seconds=3600, clock=fake_clock)
    yield cache
    await cache.clear_all()


@pytest.fixture
def coordinator(repository, cipher, client_cache, client_factory, settings) -> AccountLifecycleCoordinator:
    coordinator = AccountLifecycleCoordinator(repository, cipher, client_cache, client_factory, settings)
    client_factory.on_rotate = coordinator.on_tokens_rotated
    return coordinator
