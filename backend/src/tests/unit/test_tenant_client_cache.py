"""
Unit tests for TenantClientCache.

Covers single-flight construction, TTL, LRU eviction, failure handling and
invalidation racing an in-flight build.
"""

import asyncio

import httpx
import pytest

from src.credentials.store import TenantCredential
from src.integrations.avito.client import AvitoClient
from src.integrations.avito.oauth import OAuthTokenManager
from src.models.marketplace_account import CredentialKind
from src.platform.errors import BuildFailureError, NotFoundError, UpstreamUnavailableError
from src.services.tenant_client_cache import TenantClientCache
from src.services.tenant_client_factory import TenantClientFactory
from src.tests.fakes import TEST_API_URL, FakeClock


class StubFactory:
    """Builds unwarmed clients; can be gated or made to fail."""

    def __init__(self, marketplace):
        self.marketplace = marketplace
        self.calls = []
        self.failures = {}
        self.gate = None
        self.built = []
        self.active = 0
        self.max_active = 0

    async def build(self, tenant_id):
        self.calls.append(tenant_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.active -= 1
        error = self.failures.pop(tenant_id, None)
        if error is not None:
            raise error

        http = httpx.AsyncClient(base_url=TEST_API_URL, transport=self.marketplace.transport())
        credential = TenantCredential(
            tenant_id=tenant_id,
            name=f"T{tenant_id}",
            credential_kind=CredentialKind.STATIC_KEY,
            client_id="client-id",
            client_secret="s3cr3t",
        )
        client = AvitoClient(tenant_id, http, OAuthTokenManager(http, credential))
        self.built.append(client)
        return client


async def _settle():
    """Let scheduled tasks run until they block."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def stub_factory(marketplace):
    return StubFactory(marketplace)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(stub_factory, clock):
    return TenantClientCache(stub_factory, capacity=3, ttl_seconds=3600, clock=clock)


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_build(self, cache, stub_factory):
        stub_factory.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(cache.get_or_create(1)) for _ in range(20)]
        await _settle()
        stub_factory.gate.set()
        clients = await asyncio.gather(*tasks)

        assert stub_factory.calls == [1]
        assert all(c is clients[0] for c in clients)
        assert cache.stats()["builds"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_one_token_exchange(
        self, settings, repository, cipher, create_account, marketplace
    ):
        account = await create_account()
        factory = TenantClientFactory(
            settings, repository, cipher, transport=marketplace.transport()
        )
        cache = TenantClientCache(factory)

        clients = await asyncio.gather(*(cache.get_or_create(account.id) for _ in range(10)))

        assert all(c is clients[0] for c in clients)
        assert len(marketplace.token_requests) == 1
        await cache.clear_all()

    @pytest.mark.asyncio
    async def test_different_tenants_build_independently(self, cache, stub_factory):
        first, second = await asyncio.gather(cache.get_or_create(1), cache.get_or_create(2))

        assert first is not second
        assert sorted(stub_factory.calls) == [1, 2]

    @pytest.mark.asyncio
    async def test_hit_returns_cached_instance(self, cache, stub_factory):
        first = await cache.get_or_create(1)
        second = await cache.get_or_create(1)

        assert first is second
        assert cache.hits == 1
        assert cache.misses == 1


class TestTtl:

    @pytest.mark.asyncio
    async def test_expired_entry_rebuilt_and_old_disposed(self, cache, stub_factory, clock):
        first = await cache.get_or_create(1)

        clock.advance(3599)
        assert await cache.get_or_create(1) is first

        clock.advance(1)
        second = await cache.get_or_create(1)

        assert second is not first
        assert first.closed
        assert first.token_manager.current_token is None
        assert stub_factory.calls == [1, 1]

    @pytest.mark.asyncio
    async def test_ttl_measured_from_creation_not_access(self, cache, clock):
        first = await cache.get_or_create(1)
        for _ in range(4):
            clock.advance(1000)
            if 1 in cache:
                await cache.get_or_create(1)

        assert 1 not in cache
        assert await cache.get_or_create(1) is not first

    @pytest.mark.asyncio
    async def test_prune_expired(self, cache, clock):
        old = await cache.get_or_create(1)
        clock.advance(3000)
        fresh = await cache.get_or_create(2)
        clock.advance(700)

        removed = await cache.prune_expired()

        assert removed == 1
        assert old.closed
        assert not fresh.closed
        assert len(cache) == 1


class TestLru:

    @pytest.mark.asyncio
    async def test_least_recently_used_evicted(self, cache, stub_factory):
        c1 = await cache.get_or_create(1)
        await cache.get_or_create(2)
        await cache.get_or_create(3)

        # touch tenant 1 so tenant 2 becomes the oldest
        await cache.get_or_create(1)
        await cache.get_or_create(4)

        assert len(cache) == 3
        assert 2 not in cache
        assert cache.peek(1) is c1
        assert cache.evictions == 1
        assert stub_factory.built[1].closed

    @pytest.mark.asyncio
    async def test_peek_does_not_build(self, cache, stub_factory):
        assert cache.peek(1) is None
        assert stub_factory.calls == []


class TestFailures:

    @pytest.mark.asyncio
    async def test_failure_wrapped_and_not_cached(self, cache, stub_factory):
        stub_factory.failures[1] = NotFoundError("Marketplace account", "1")

        with pytest.raises(BuildFailureError) as exc_info:
            await cache.get_or_create(1)

        assert exc_info.value.tenant_id == 1
        assert isinstance(exc_info.value.cause, NotFoundError)
        assert exc_info.value.details["cause"] == "NOT_FOUND"
        assert 1 not in cache

        client = await cache.get_or_create(1)
        assert isinstance(client, AvitoClient)
        assert stub_factory.calls == [1, 1]
        assert cache.build_failures == 1

    @pytest.mark.asyncio
    async def test_waiters_share_the_failure(self, cache, stub_factory):
        stub_factory.gate = asyncio.Event()
        stub_factory.failures[1] = RuntimeError("boom")

        tasks = [asyncio.ensure_future(cache.get_or_create(1)) for _ in range(5)]
        await _settle()
        stub_factory.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, BuildFailureError) for r in results)
        assert stub_factory.calls == [1]


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_invalidate_disposes_entry(self, cache):
        client = await cache.get_or_create(1)

        assert await cache.invalidate(1) is True
        assert client.closed
        assert 1 not in cache
        assert await cache.invalidate(1) is False

    @pytest.mark.asyncio
    async def test_invalidate_during_build_discards_result(self, cache, stub_factory):
        stub_factory.gate = asyncio.Event()
        waiter = asyncio.ensure_future(cache.get_or_create(1))
        await _settle()
        assert stub_factory.calls == [1]

        assert await cache.invalidate(1) is True
        stub_factory.gate.set()
        client = await waiter

        stale = stub_factory.built[0]
        assert stale.closed
        assert client is not stale
        assert cache.peek(1) is client
        assert stub_factory.calls == [1, 1]

    @pytest.mark.asyncio
    async def test_rebuild_waits_for_invalidated_build(self, cache, stub_factory):
        stub_factory.gate = asyncio.Event()
        first = asyncio.ensure_future(cache.get_or_create(1))
        await _settle()
        await cache.invalidate(1)

        second = asyncio.ensure_future(cache.get_or_create(1))
        await _settle()
        # the replacement build has not reached the factory yet
        assert stub_factory.calls == [1]
        assert cache.stats()["draining_builds"] == 1

        stub_factory.gate.set()
        first_client, second_client = await asyncio.gather(first, second)

        assert stub_factory.max_active == 1
        assert stub_factory.calls == [1, 1]
        assert first_client is second_client
        assert stub_factory.built[0].closed
        assert cache.stats()["draining_builds"] == 0

    @pytest.mark.asyncio
    async def test_repeated_invalidation_keeps_one_build_at_a_time(self, cache, stub_factory):
        stub_factory.gate = asyncio.Event()
        callers = []
        for _ in range(3):
            callers.append(asyncio.ensure_future(cache.get_or_create(1)))
            await _settle()
            await cache.invalidate(1)
        callers.append(asyncio.ensure_future(cache.get_or_create(1)))
        await _settle()

        stub_factory.gate.set()
        clients = await asyncio.gather(*callers)

        assert stub_factory.max_active == 1
        assert len({id(c) for c in clients}) == 1
        assert cache.peek(1) is clients[0]

    @pytest.mark.asyncio
    async def test_client_held_across_invalidation_fails_cleanly(self, cache):
        held = await cache.get_or_create(1)
        await held.get_balance()

        await cache.invalidate(1)

        with pytest.raises(UpstreamUnavailableError):
            await held.get_balance()
        fresh = await cache.get_or_create(1)
        assert fresh is not held
        assert (await fresh.get_balance())["real"] == 150.0

    @pytest.mark.asyncio
    async def test_clear_all(self, cache):
        clients = [await cache.get_or_create(t) for t in (1, 2, 3)]

        await cache.clear_all()

        assert len(cache) == 0
        assert all(c.closed for c in clients)

    @pytest.mark.asyncio
    async def test_capacity_must_be_positive(self, stub_factory):
        with pytest.raises(ValueError):
            TenantClientCache(stub_factory, capacity=0)
