"""
Presence keepalive for marketplace accounts ("eternal online").

Periodically marks accounts with eternal_online_enabled as online in the
marketplace messenger, and prunes expired clients from the cache.

FLOW:
1. Load accounts with eternal_online_enabled
2. Skip accounts whose last check is within their keepalive interval
3. Call client.set_online() through TenantClientCache
4. Record is_online / last_online_check; failures mark the account offline

CONSTRAINTS:
- Runs as asyncio tasks on the service event loop
- Reaches clients only through get_or_create, never by building its own
- One account's failure never affects the others

SECURITY:
- tenant_id comes from the database (trusted)
- Structured logging with no secret leakage
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from src.credentials.store import AccountRepository
from src.models.marketplace_account import MarketplaceAccount
from src.platform.errors import NotFoundError
from src.services.tenant_client_cache import TenantClientCache

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_INTERVAL_SECONDS = 300
MIN_KEEPALIVE_INTERVAL_SECONDS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeepaliveStats:
    """Track keepalive run statistics."""

    accounts_evaluated: int = 0
    pinged: int = 0
    skipped_not_due: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        duration = (_utcnow() - self.start_time).total_seconds()
        return {
            "accounts_evaluated": self.accounts_evaluated,
            "pinged": self.pinged,
            "skipped_not_due": self.skipped_not_due,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


class PresenceKeepaliveService:
    """Keeps opted-in marketplace accounts online."""

    def __init__(
        self,
        repository: AccountRepository,
        cache: TenantClientCache,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._cache = cache
        self._now = now

    def _is_due(self, account: MarketplaceAccount, now: datetime) -> bool:
        if account.last_online_check is None:
            return True
        last = account.last_online_check
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        interval = account.online_keepalive_interval or DEFAULT_KEEPALIVE_INTERVAL_SECONDS
        return now - last >= timedelta(seconds=interval)

    async def ping(self, account: MarketplaceAccount) -> bool:
        """
        Set one account online and record the outcome.

        Returns:
            True if the marketplace accepted the presence update
        """
        try:
            client = await self._cache.get_or_create(account.id)
            await client.set_online()
            online = True
        except Exception as e:
            logger.warning(
                "Presence keepalive failed",
                extra={
                    "tenant_id": account.id,
                    "account_name": account.name,
                    "error_type": type(e).__name__,
                    "error_code": getattr(e, "code", None),
                }
            )
            online = False

        await self._repository.update(account.id, {
            "is_online": online,
            "last_online_check": self._now(),
        })
        return online

    async def run_once(self) -> KeepaliveStats:
        stats = KeepaliveStats()
        now = self._now()
        accounts: List[MarketplaceAccount] = await self._repository.list_presence_enabled()
        stats.accounts_evaluated = len(accounts)

        due = []
        for account in accounts:
            if self._is_due(account, now):
                due.append(account)
            else:
                stats.skipped_not_due += 1

        results = await asyncio.gather(
            *(self.ping(account) for account in due),
            return_exceptions=True,
        )
        for account, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Keepalive bookkeeping failed",
                    extra={"tenant_id": account.id, "error_type": type(result).__name__}
                )
                stats.errors += 1
            elif result:
                stats.pinged += 1
            else:
                stats.errors += 1

        logger.info("Presence keepalive run complete", extra=stats.to_dict())
        return stats

    async def enable(self, tenant_id: int, interval: Optional[int] = None) -> MarketplaceAccount:
        """
        Turn keepalive on and ping immediately.

        Raises:
            NotFoundError: If the account does not exist
            ValueError: If the interval is below the minimum
        """
        if interval is not None and interval < MIN_KEEPALIVE_INTERVAL_SECONDS:
            raise ValueError(
                f"Keepalive interval must be at least {MIN_KEEPALIVE_INTERVAL_SECONDS} seconds"
            )
        if await self._repository.get(tenant_id) is None:
            raise NotFoundError("Marketplace account", str(tenant_id))

        fields = {"eternal_online_enabled": True}
        if interval is not None:
            fields["online_keepalive_interval"] = interval
        account = await self._repository.update(tenant_id, fields)

        logger.info(
            "Presence keepalive enabled",
            extra={"tenant_id": tenant_id, "interval": account.online_keepalive_interval}
        )
        await self.ping(account)
        return await self._repository.get(tenant_id)

    async def disable(self, tenant_id: int) -> MarketplaceAccount:
        if await self._repository.get(tenant_id) is None:
            raise NotFoundError("Marketplace account", str(tenant_id))
        account = await self._repository.update(tenant_id, {
            "eternal_online_enabled": False,
            "is_online": False,
        })
        logger.info("Presence keepalive disabled", extra={"tenant_id": tenant_id})
        return account


class BackgroundScheduler:
    """
    Runs keepalive and cache pruning periodically on the event loop.

    Usage:
        scheduler = BackgroundScheduler(keepalive, cache, period_seconds=300)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        keepalive: PresenceKeepaliveService,
        cache: TenantClientCache,
        period_seconds: float = DEFAULT_KEEPALIVE_INTERVAL_SECONDS,
    ):
        self._keepalive = keepalive
        self._cache = cache
        self.period_seconds = period_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        """One scheduler pass. Errors are logged, never raised into the loop."""
        try:
            await self._keepalive.run_once()
        except Exception:
            logger.exception("Presence keepalive run failed")
        try:
            await self._cache.prune_expired()
        except Exception:
            logger.exception("Client cache pruning failed")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.period_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())
        logger.info("Background scheduler started", extra={"period_seconds": self.period_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background scheduler stopped")
