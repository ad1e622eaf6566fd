"""
Per-tenant marketplace client cache.

Bounded LRU with a per-entry TTL measured from creation, and single-flight
construction: at most one build per tenant is in flight, and every
concurrent caller awaits that same build.

Single-flight uses a map of pending asyncio tasks rather than locks. The
event loop is single-threaded, so checking and registering a pending task
happens without a suspension point in between.

Disposal (TTL expiry, LRU eviction, invalidation, clear_all) drops the
client's token state and closes its connections. Persisted credentials are
never touched here.

Invalidation while a build is in flight bumps the tenant's generation: the
build's result is disposed instead of cached, and its waiters retry against
fresh data. The stale build stays visible in a draining map until it ends,
and the next build for that tenant waits for it before touching the factory.

The cache is owned by the service runtime; tests create their own.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from src.integrations.avito.client import AvitoClient
from src.platform.errors import BuildFailureError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100
DEFAULT_TTL_SECONDS = 3600.0

# Returned by a build whose tenant was invalidated mid-flight
_STALE = object()


class ClientFactory(Protocol):
    async def build(self, tenant_id: int) -> AvitoClient: ...


@dataclass
class CachedClient:
    tenant_id: int
    client: AvitoClient
    created_at: float
    last_access: float


class TenantClientCache:
    """
    Usage:
        cache = TenantClientCache(factory, capacity=100, ttl_seconds=3600)

        client = await cache.get_or_create(tenant_id)
        await cache.invalidate(tenant_id)
        await cache.clear_all()
    """

    def __init__(
        self,
        factory: ClientFactory,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._factory = factory
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: "OrderedDict[int, CachedClient]" = OrderedDict()
        self._pending: Dict[int, asyncio.Task] = {}
        self._draining: Dict[int, asyncio.Task] = {}
        self._generations: Dict[int, int] = {}

        self.hits = 0
        self.misses = 0
        self.builds = 0
        self.build_failures = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tenant_id: int) -> bool:
        entry = self._entries.get(tenant_id)
        return entry is not None and not self._is_expired(entry)

    def _is_expired(self, entry: CachedClient) -> bool:
        return self._clock() - entry.created_at >= self.ttl_seconds

    async def get_or_create(self, tenant_id: int) -> AvitoClient:
        """
        Return the live client for a tenant, building it at most once.

        Raises:
            BuildFailureError: If construction failed; nothing is cached and
                the next call builds again
        """
        while True:
            entry = self._entries.get(tenant_id)
            if entry is not None:
                if not self._is_expired(entry):
                    entry.last_access = self._clock()
                    self._entries.move_to_end(tenant_id)
                    self.hits += 1
                    return entry.client
                del self._entries[tenant_id]
                await self._dispose(entry, reason="ttl")

            task = self._pending.get(tenant_id)
            if task is None:
                self.misses += 1
                generation = self._generations.get(tenant_id, 0)
                task = asyncio.ensure_future(
                    self._build(tenant_id, generation, self._draining.get(tenant_id))
                )
                self._pending[tenant_id] = task

            result = await asyncio.shield(task)
            if result is _STALE:
                continue
            return result

    async def _build(
        self,
        tenant_id: int,
        generation: int,
        predecessor: Optional[asyncio.Task] = None,
    ) -> Any:
        current = asyncio.current_task()
        try:
            if predecessor is not None:
                # A stale build for this tenant is still running
                await asyncio.wait([predecessor])
                if self._generations.get(tenant_id, 0) != generation:
                    return _STALE

            self.builds += 1
            try:
                client = await self._factory.build(tenant_id)
            except Exception as e:
                if self._generations.get(tenant_id, 0) != generation:
                    return _STALE
                self.build_failures += 1
                logger.warning(
                    "Marketplace client build failed",
                    extra={
                        "tenant_id": tenant_id,
                        "error_type": type(e).__name__,
                        "error_code": getattr(e, "code", None),
                    }
                )
                if isinstance(e, BuildFailureError):
                    raise
                raise BuildFailureError(tenant_id, e) from e

            now = self._clock()
            if self._generations.get(tenant_id, 0) != generation:
                logger.info(
                    "Discarding client built from invalidated credentials",
                    extra={"tenant_id": tenant_id}
                )
                await self._dispose(
                    CachedClient(tenant_id, client, created_at=now, last_access=now),
                    reason="stale",
                )
                return _STALE

            self._entries[tenant_id] = CachedClient(
                tenant_id=tenant_id,
                client=client,
                created_at=now,
                last_access=now,
            )
            self._entries.move_to_end(tenant_id)
            await self._evict_overflow()
            return client
        finally:
            if self._pending.get(tenant_id) is current:
                del self._pending[tenant_id]
            if self._draining.get(tenant_id) is current:
                del self._draining[tenant_id]

    async def _evict_overflow(self) -> None:
        while len(self._entries) > self.capacity:
            _, entry = self._entries.popitem(last=False)
            self.evictions += 1
            await self._dispose(entry, reason="lru")

    async def _dispose(self, entry: CachedClient, reason: str) -> None:
        entry.client.token_manager.reset()
        try:
            await entry.client.aclose()
        except Exception as e:
            logger.warning(
                "Failed to close marketplace client",
                extra={"tenant_id": entry.tenant_id, "error_type": type(e).__name__}
            )
        logger.debug(
            "Marketplace client disposed",
            extra={"tenant_id": entry.tenant_id, "reason": reason}
        )

    async def invalidate(self, tenant_id: int) -> bool:
        """
        Drop a tenant's client so the next call rebuilds from fresh data.

        Returns:
            True if a cached entry or an in-flight build was dropped
        """
        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        stale = self._pending.pop(tenant_id, None)
        if stale is not None:
            self._draining[tenant_id] = stale
        had_pending = stale is not None
        entry = self._entries.pop(tenant_id, None)
        if entry is not None:
            await self._dispose(entry, reason="invalidated")

        logger.info(
            "Marketplace client invalidated",
            extra={
                "tenant_id": tenant_id,
                "had_entry": entry is not None,
                "had_pending_build": had_pending,
            }
        )
        return entry is not None or had_pending

    async def prune_expired(self) -> int:
        """Dispose every entry past its TTL. Returns the number removed."""
        expired = [
            tenant_id for tenant_id, entry in self._entries.items()
            if self._is_expired(entry)
        ]
        for tenant_id in expired:
            entry = self._entries.pop(tenant_id, None)
            if entry is not None:
                await self._dispose(entry, reason="ttl")
        if expired:
            logger.info("Expired marketplace clients pruned", extra={"count": len(expired)})
        return len(expired)

    async def clear_all(self) -> None:
        """Dispose everything. In-flight builds finish but are not cached."""
        for tenant_id, task in self._pending.items():
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            self._draining[tenant_id] = task
        self._pending.clear()

        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._dispose(entry, reason="cleared")

        logger.info("Marketplace client cache cleared", extra={"disposed": len(entries)})

    def peek(self, tenant_id: int) -> Optional[AvitoClient]:
        """Live client if cached, without building or touching LRU order."""
        entry = self._entries.get(tenant_id)
        if entry is None or self._is_expired(entry):
            return None
        return entry.client

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "ttl_seconds": self.ttl_seconds,
            "pending_builds": len(self._pending),
            "draining_builds": len(self._draining),
            "hits": self.hits,
            "misses": self.misses,
            "builds": self.builds,
            "build_failures": self.build_failures,
            "evictions": self.evictions,
        }
