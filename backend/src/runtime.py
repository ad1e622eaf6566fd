"""
Service runtime: owns every long-lived component of the backend.

The tenant client cache, cipher and coordinator are created here once per
process (or per test) and passed by reference; nothing is a module-level
singleton.

Usage:
    runtime = MarketplaceRuntime.from_env()
    await runtime.startup()
    ...
    await runtime.shutdown()
"""

import logging
import time
from typing import Callable, Optional

import httpx
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from src.config.settings import Settings
from src.credentials.encryption import SecretCipher
from src.credentials.store import SqlAccountRepository
from src.db_base import Base
from src.services.account_lifecycle import AccountLifecycleCoordinator
from src.services.tenant_client_cache import TenantClientCache
from src.services.tenant_client_factory import TenantClientFactory
from src.workers.presence_keepalive import BackgroundScheduler, PresenceKeepaliveService

logger = logging.getLogger(__name__)


class MarketplaceRuntime:
    """Wires settings, persistence, cipher, cache, coordinator and workers."""

    def __init__(
        self,
        settings: Settings,
        engine: Optional[Engine] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            settings: Loaded configuration
            engine: SQLAlchemy engine (built from DATABASE_URL when omitted)
            transport: Overrides marketplace network transport (tests)
            cache_clock: Monotonic clock for cache TTLs

        Raises:
            ConfigurationError: If the master encryption key is missing or short
        """
        self.settings = settings
        self.cipher = SecretCipher(settings.encryption_key)

        if engine is None:
            connect_args = {}
            if settings.database_url.startswith("sqlite"):
                # Repository sessions run on a worker thread
                connect_args["check_same_thread"] = False
            engine = create_engine(
                settings.database_url,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        self.repository = SqlAccountRepository(self.session_factory)

        self.factory = TenantClientFactory(
            settings,
            self.repository,
            self.cipher,
            transport=transport,
        )
        self.cache = TenantClientCache(
            self.factory,
            capacity=settings.cache_capacity,
            ttl_seconds=settings.cache_ttl_seconds,
            clock=cache_clock,
        )
        self.coordinator = AccountLifecycleCoordinator(
            self.repository,
            self.cipher,
            self.cache,
            self.factory,
            settings,
        )
        # Tokens rotated inside a live client are persisted by the coordinator
        self.factory.on_rotate = self.coordinator.on_tokens_rotated

        self.keepalive = PresenceKeepaliveService(self.repository, self.cache)
        self.scheduler = BackgroundScheduler(
            self.keepalive,
            self.cache,
            period_seconds=settings.keepalive_poll_seconds,
        )

    @classmethod
    def from_env(cls) -> "MarketplaceRuntime":
        return cls(Settings.from_env())

    async def startup(self, start_scheduler: bool = True) -> None:
        """Validate crypto, ensure tables exist, start background work."""
        await self.cipher.validate()
        Base.metadata.create_all(bind=self.engine)
        if start_scheduler:
            self.scheduler.start()
        logger.info(
            "Marketplace runtime started",
            extra={"scheduler": start_scheduler, **self.cache.stats()}
        )

    async def shutdown(self) -> None:
        """Stop background work and dispose every cached client."""
        await self.scheduler.stop()
        await self.cache.clear_all()
        self.repository.close()
        logger.info("Marketplace runtime stopped")


def get_runtime(request: Request) -> MarketplaceRuntime:
    """FastAPI dependency returning the application's runtime."""
    return request.app.state.runtime
