"""
Unit tests for the Redis privilege cache.
"""

import asyncio
import json
from fnmatch import fnmatchcase
import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ResourceNotFound, ServiceError
from shared.test_helpers import PrivilegeDataFactory, SeedGrant
from service_privileges.app.cache.redis_cache import RedisPrivilegeCache, CachingPrivilegeResolver
from service_privileges.app.privileges.gate import AccessGate
from service_privileges.app.privileges.models import (
    PrivilegeValue, ResourceRef, GrantSource, Resolution, AccountGrant, BacklogGrant,
)


def async_keys(keys):
    """Stand-in for ``scan_iter`` yielding the given keys."""
    async def _scan(*args, **kwargs):
        for key in keys:
            yield key
    return MagicMock(side_effect=_scan)


class InMemoryRedis:
    """Dict-backed double for the handful of Redis commands the cache uses."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def mget(self, *keys):
        return [self.data.get(key) for key in keys]

    async def setex(self, key, ttl, value):
        self.data[key] = value

    async def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def delete(self, *keys):
        return len([self.data.pop(key) for key in keys if key in self.data])

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatchcase(key, match):
                yield key


class PausingGrants:
    """Grant store that stops after one lookup until released."""

    def __init__(self, store, pause_on: str):
        self.store = store
        self.pause_on = pause_on
        self.read_done = asyncio.Event()
        self.release = asyncio.Event()

    async def _lookup(self, name, *args):
        grant = await getattr(self.store, name)(*args)
        if name == self.pause_on and not self.read_done.is_set():
            self.read_done.set()
            await self.release.wait()
        return grant

    async def account_grant(self, user_id, account_id):
        return await self._lookup("account_grant", user_id, account_id)

    async def company_grant(self, user_id, company_id):
        return await self._lookup("company_grant", user_id, company_id)

    async def backlog_grant(self, user_id, backlog_id):
        return await self._lookup("backlog_grant", user_id, backlog_id)


class TestRedisPrivilegeCache:
    """Test cases for RedisPrivilegeCache."""

    @pytest.fixture
    def cache(self):
        """Create cache with a mocked client."""
        cache = RedisPrivilegeCache("redis://localhost:6379/0", ttl_seconds=30)
        cache.redis = AsyncMock()
        return cache

    def test_ttl_is_clamped(self):
        """Test TTL is kept within bounds."""
        assert RedisPrivilegeCache("redis://x", ttl_seconds=0).ttl_seconds == 1
        assert RedisPrivilegeCache("redis://x", ttl_seconds=86400).ttl_seconds == 3600

    def test_key_layout(self, cache):
        """Test keys are namespaced by account, user and generation."""
        key = cache._key("acct-1", "u", ResourceRef.backlog("bl-1"), "2.5")

        assert key == "privilege:account:acct-1:user:u:gen:2.5:backlog:bl-1"

    async def test_generation(self, cache):
        """Test the generation token combines account and user counters."""
        cache.redis.mget.return_value = ["3", None]

        assert await cache.generation("acct-1", "u") == "3.0"

        cache.redis.mget.assert_awaited_once_with(
            "privilege:generation:acct-1", "privilege:generation:acct-1:user:u"
        )

    async def test_generation_error(self, cache):
        """Test an unreadable generation yields None."""
        cache.redis.mget.side_effect = RedisConnectionError("down")

        assert await cache.generation("acct-1", "u") is None

    async def test_get_hit(self, cache):
        """Test a cached entry is decoded into a Resolution."""
        cache.redis.get.return_value = json.dumps({"privilege": "readstatus", "source": "company"})

        resolution = await cache.get("acct-1", "u", ResourceRef.backlog("bl-1"), "0.0")

        assert resolution == Resolution(PrivilegeValue.READ_STATUS, GrantSource.COMPANY)
        cache.redis.get.assert_awaited_once_with("privilege:account:acct-1:user:u:gen:0.0:backlog:bl-1")

    async def test_get_miss(self, cache):
        """Test a missing entry returns None."""
        cache.redis.get.return_value = None

        assert await cache.get("acct-1", "u", ResourceRef.backlog("bl-1"), "0.0") is None

    async def test_get_malformed_entry(self, cache):
        """Test malformed entries are treated as misses."""
        cache.redis.get.return_value = json.dumps({"privilege": "owner", "source": "company"})

        assert await cache.get("acct-1", "u", ResourceRef.backlog("bl-1"), "0.0") is None

    async def test_get_error_is_miss(self, cache):
        """Test read failures degrade to a miss."""
        cache.redis.get.side_effect = RedisConnectionError("down")

        assert await cache.get("acct-1", "u", ResourceRef.backlog("bl-1"), "0.0") is None

    async def test_set(self, cache):
        """Test entries are written with the configured TTL."""
        resolution = Resolution(PrivilegeValue.FULL, GrantSource.ADMIN)

        assert await cache.set("acct-1", "u", ResourceRef.company("co-1"), "1.0", resolution)

        cache.redis.setex.assert_awaited_once_with(
            "privilege:account:acct-1:user:u:gen:1.0:company:co-1",
            30,
            json.dumps({"privilege": "full", "source": "admin"})
        )

    async def test_set_error_is_ignored(self, cache):
        """Test write failures are logged and ignored."""
        cache.redis.setex.side_effect = RedisError("read only")

        assert not await cache.set(
            "acct-1", "u", ResourceRef.company("co-1"), "0.0",
            Resolution(PrivilegeValue.READ, GrantSource.ACCOUNT)
        )

    async def test_invalidate_user(self, cache):
        """Test user invalidation bumps the user generation and deletes old keys."""
        keys = [
            "privilege:account:acct-1:user:u:gen:0.0:backlog:bl-1",
            "privilege:account:acct-1:user:u:gen:0.0:company:co-1",
        ]
        cache.redis.scan_iter = async_keys(keys)

        assert await cache.invalidate_user("acct-1", "u") == 2

        cache.redis.incr.assert_awaited_once_with("privilege:generation:acct-1:user:u")
        cache.redis.scan_iter.assert_called_once_with(match="privilege:account:acct-1:user:u:*")
        cache.redis.delete.assert_awaited_once_with(*keys)

    async def test_invalidate_account_without_keys(self, cache):
        """Test account invalidation with nothing cached."""
        cache.redis.scan_iter = async_keys([])

        assert await cache.invalidate_account("acct-1") == 0

        cache.redis.incr.assert_awaited_once_with("privilege:generation:acct-1")
        cache.redis.scan_iter.assert_called_once_with(match="privilege:account:acct-1:*")
        cache.redis.delete.assert_not_awaited()

    async def test_invalidate_error_raises(self, cache):
        """Test a failed generation bump is not swallowed."""
        cache.redis.incr.side_effect = RedisConnectionError("down")

        with pytest.raises(ServiceError):
            await cache.invalidate_user("acct-1", "u")

    async def test_cleanup_error_is_logged(self, cache):
        """Test failing to delete retired keys does not fail the invalidation."""
        cache.redis.scan_iter = async_keys(["privilege:account:acct-1:user:u:gen:0.0:backlog:bl-1"])
        cache.redis.delete.side_effect = RedisConnectionError("down")

        assert await cache.invalidate_user("acct-1", "u") == 0
        cache.redis.incr.assert_awaited_once()

    async def test_invalidated_entries_are_unreachable(self):
        """Test entries written before an invalidation are never read again."""
        cache = RedisPrivilegeCache("redis://localhost:6379/0")
        cache.redis = InMemoryRedis()
        resource = ResourceRef.backlog("bl-1")
        before = await cache.generation("acct-1", "u")

        await cache.invalidate_account("acct-1")
        await cache.set("acct-1", "u", resource, before, Resolution(PrivilegeValue.FULL, GrantSource.BACKLOG))

        after = await cache.generation("acct-1", "u")
        assert after != before
        assert await cache.get("acct-1", "u", resource, after) is None

    async def test_health_check(self, cache):
        """Test health check pings Redis."""
        assert await cache.health_check()

        cache.redis.ping.side_effect = RedisConnectionError("down")
        assert not await cache.health_check()

    def test_hit_rate(self, cache):
        """Test hit rate calculation."""
        assert cache._calculate_hit_rate({"keyspace_hits": 3, "keyspace_misses": 1}) == 0.75
        assert cache._calculate_hit_rate({}) == 0.0


class TestCachingPrivilegeResolver:
    """Test cases for CachingPrivilegeResolver."""

    @pytest.fixture
    def store(self):
        """Store with one backlog grant."""
        return PrivilegeDataFactory.create_store(grants=[SeedGrant("u", "backlog", "bl-1", "read")])

    @pytest.fixture
    def cache(self):
        """Mock cache that always misses."""
        cache = MagicMock()
        cache.generation = AsyncMock(return_value="0.0")
        cache.get = AsyncMock(return_value=None)
        cache.set = AsyncMock(return_value=True)
        return cache

    @pytest.fixture
    def metrics(self):
        """Mock metrics collector."""
        return MagicMock()

    @pytest.fixture
    def resolver(self, store, cache, metrics):
        """Create CachingPrivilegeResolver instance."""
        return CachingPrivilegeResolver(store, store, cache, metrics)

    async def test_miss_resolves_and_stores(self, resolver, cache, metrics):
        """Test a miss resolves from the store and caches the result."""
        resource = ResourceRef.backlog("bl-1")

        resolution = await resolver.explain("u", resource)

        assert resolution == Resolution(PrivilegeValue.READ, GrantSource.BACKLOG)
        cache.get.assert_awaited_once_with("acct-1", "u", resource, "0.0")
        cache.set.assert_awaited_once_with("acct-1", "u", resource, "0.0", resolution)
        metrics.increment_counter.assert_any_call("privilege_cache_events_total", event="miss")

    async def test_hit_skips_resolution(self, resolver, cache):
        """Test a hit is returned without reading grants."""
        cached = Resolution(PrivilegeValue.FULL, GrantSource.ADMIN)
        cache.get.return_value = cached

        assert await resolver.explain("u", ResourceRef.company("co-1")) == cached
        cache.set.assert_not_awaited()

    async def test_unreadable_generation_bypasses_cache(self, resolver, cache, metrics):
        """Test the cache is skipped when generations cannot be read."""
        cache.generation.return_value = None

        resolution = await resolver.explain("u", ResourceRef.backlog("bl-1"))

        assert resolution.privilege == PrivilegeValue.READ
        cache.get.assert_not_awaited()
        cache.set.assert_not_awaited()
        metrics.increment_counter.assert_any_call("privilege_cache_events_total", event="bypass")

    async def test_deleted_resource_fails_despite_cache(self, resolver, cache, store):
        """Test scope lookups stay fresh so deleted resources fail at once."""
        cache.get.return_value = Resolution(PrivilegeValue.READ, GrantSource.BACKLOG)
        await store.delete_backlog("bl-1")

        with pytest.raises(ResourceNotFound):
            await resolver.explain("u", ResourceRef.backlog("bl-1"))

        cache.get.assert_not_awaited()

    async def test_account_resource_key(self, resolver, cache):
        """Test account resources are keyed by their own id."""
        await resolver.explain("u", ResourceRef.account("acct-2"))

        cache.get.assert_awaited_once_with("acct-2", "u", ResourceRef.account("acct-2"), "0.0")


class TestCachingResolverConcurrency:
    """Test cases for resolutions racing with grant changes."""

    @pytest.fixture
    def cache(self):
        """Cache over an in-memory Redis double."""
        cache = RedisPrivilegeCache("redis://localhost:6379/0", ttl_seconds=60)
        cache.redis = InMemoryRedis()
        return cache

    async def test_downgrade_during_resolution(self, cache):
        """Test a resolution in flight during a downgrade cannot cache the old privilege."""
        store = PrivilegeDataFactory.create_store(grants=[SeedGrant("u", "backlog", "bl-1", "full")])
        grants = PausingGrants(store, "backlog_grant")
        resolver = CachingPrivilegeResolver(grants, store, cache)
        resource = ResourceRef.backlog("bl-1")

        in_flight = asyncio.create_task(resolver.resolve("u", resource))
        await grants.read_done.wait()

        store.put_backlog_grant(BacklogGrant("u", "bl-1", PrivilegeValue.NONE))
        await cache.invalidate_user("acct-1", "u")
        grants.release.set()

        assert await in_flight == PrivilegeValue.FULL
        assert await resolver.resolve("u", resource) == PrivilegeValue.NONE

    async def test_admin_revoked_during_check(self, cache):
        """Test a revoked admin flag is not served from the cache."""
        store = PrivilegeDataFactory.create_store(grants=[SeedGrant("u", "account", "acct-1", is_admin=True)])
        grants = PausingGrants(store, "account_grant")
        gate = AccessGate(CachingPrivilegeResolver(grants, store, cache))

        in_flight = asyncio.create_task(gate.is_admin("u", "acct-1"))
        await grants.read_done.wait()

        store.put_account_grant(AccountGrant("u", "acct-1", PrivilegeValue.READ))
        await cache.invalidate_account("acct-1")
        grants.release.set()

        assert await in_flight
        assert not await gate.is_admin("u", "acct-1")
