"""
Redis caching layer for the Privileges Service.

The resolver itself never caches. When a deployment opts in, resolutions
are cached here and dropped on every grant or scope mutation that could
change them. Entry keys carry the account id and two generation
counters, one per account and one per user within it:

    privilege:account:{account_id}:user:{user_id}:gen:{account_gen}.{user_gen}:{kind}:{resource_id}

Invalidation bumps a generation before deleting anything. A resolution
that was already running when its grants changed is stored under the old
generation, which no later lookup reads.
"""

import json
from typing import Dict, Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from shared.logging import get_logger
from shared.errors import ServiceError
from shared.metrics import MetricsCollector
from ..persistence.protocols import GrantStore, ScopeResolver
from ..privileges.engine import PrivilegeResolver
from ..privileges.models import (
    PrivilegeValue, ResourceKind, ResourceRef, GrantSource, Resolution,
)


class RedisPrivilegeCache:
    """Redis store for resolved privileges."""

    PRIVILEGE_PREFIX = "privilege:"
    GENERATION_PREFIX = "privilege:generation:"

    def __init__(self, redis_url: str, ttl_seconds: int = 60):
        self.redis_url = redis_url
        self.logger = get_logger("privileges.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.max_ttl = 3600
        self.min_ttl = 1
        self.ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl_seconds))

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis privilege cache started")

        except RedisError as e:
            self.logger.error("Failed to start Redis privilege cache", error=str(e))
            raise ServiceError("Failed to start Redis privilege cache", {"error": str(e)}) from e

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis privilege cache stopped")

    def _account_generation_key(self, account_id: str) -> str:
        return f"{self.GENERATION_PREFIX}{account_id}"

    def _user_generation_key(self, account_id: str, user_id: str) -> str:
        return f"{self.GENERATION_PREFIX}{account_id}:user:{user_id}"

    def _key(self, account_id: str, user_id: str, resource: ResourceRef, generation: str) -> str:
        return (
            f"{self.PRIVILEGE_PREFIX}account:{account_id}:user:{user_id}:gen:{generation}"
            f":{resource.kind.value}:{resource.resource_id}"
        )

    async def generation(self, account_id: str, user_id: str) -> Optional[str]:
        """Current generation token for a user under an account.

        Must be read before the grants it guards. Returns None when Redis
        is unreachable, in which case the caller skips the cache.
        """
        try:
            account_gen, user_gen = await self.redis.mget(
                self._account_generation_key(account_id),
                self._user_generation_key(account_id, user_id)
            )
        except RedisError as e:
            self.logger.warning("Privilege cache generation read failed", error=str(e))
            return None

        return f"{account_gen or 0}.{user_gen or 0}"

    async def get(
        self,
        account_id: str,
        user_id: str,
        resource: ResourceRef,
        generation: str
    ) -> Optional[Resolution]:
        """Cached resolution, or None on a miss. Read failures count as misses."""
        try:
            cached_data = await self.redis.get(self._key(account_id, user_id, resource, generation))
        except RedisError as e:
            self.logger.warning("Privilege cache read failed", error=str(e))
            return None

        if not cached_data:
            return None

        try:
            data = json.loads(cached_data)
            return Resolution(
                privilege=PrivilegeValue(data["privilege"]),
                source=GrantSource(data["source"])
            )
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Discarding malformed privilege cache entry", account_id=account_id)
            return None

    async def set(
        self,
        account_id: str,
        user_id: str,
        resource: ResourceRef,
        generation: str,
        resolution: Resolution
    ) -> bool:
        """Cache a resolution under the generation read before resolving.

        Write failures are logged and ignored.
        """
        data = {"privilege": resolution.privilege.value, "source": resolution.source.value}
        try:
            await self.redis.setex(
                self._key(account_id, user_id, resource, generation),
                self.ttl_seconds,
                json.dumps(data)
            )
            return True
        except RedisError as e:
            self.logger.warning("Privilege cache write failed", error=str(e))
            return False

    async def invalidate_user(self, account_id: str, user_id: str) -> int:
        """Retire every cached resolution of one user under one account."""
        return await self._invalidate(
            self._user_generation_key(account_id, user_id),
            f"{self.PRIVILEGE_PREFIX}account:{account_id}:user:{user_id}:*"
        )

    async def invalidate_account(self, account_id: str) -> int:
        """Retire every cached resolution under one account."""
        return await self._invalidate(
            self._account_generation_key(account_id),
            f"{self.PRIVILEGE_PREFIX}account:{account_id}:*"
        )

    async def _invalidate(self, generation_key: str, pattern: str) -> int:
        # A stale entry would keep serving a revoked privilege, so a failed bump raises
        try:
            generation = await self.redis.incr(generation_key)
        except RedisError as e:
            self.logger.error("Privilege cache invalidation failed", generation_key=generation_key, error=str(e))
            raise ServiceError("Privilege cache invalidation failed", {"generation_key": generation_key}) from e

        # Old entries are unreachable now; deleting them only frees memory
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
        except RedisError as e:
            self.logger.warning("Privilege cache cleanup failed", pattern=pattern, error=str(e))
            return 0

        self.logger.info(
            "Invalidated cached privileges",
            pattern=pattern,
            generation=generation,
            count=len(keys)
        )
        return len(keys)

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()
            privilege_keys = [
                key async for key in self.redis.scan_iter(match=f"{self.PRIVILEGE_PREFIX}account:*")
            ]
        except RedisError as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

        return {
            "redis_version": info.get("redis_version"),
            "used_memory": info.get("used_memory_human"),
            "privilege_keys": len(privilege_keys),
            "hit_rate": self._calculate_hit_rate(info)
        }

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses

        if total == 0:
            return 0.0

        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except RedisError:
            return False


class CachingPrivilegeResolver(PrivilegeResolver):
    """PrivilegeResolver that consults a RedisPrivilegeCache first.

    The resource's scope is always looked up fresh, so deleted resources
    fail immediately even when an entry is still cached.
    """

    def __init__(
        self,
        grants: GrantStore,
        scopes: ScopeResolver,
        cache: RedisPrivilegeCache,
        metrics: Optional[MetricsCollector] = None
    ):
        super().__init__(grants, scopes, metrics)
        self.cache = cache

    async def explain(self, user_id: str, resource: ResourceRef) -> Resolution:
        account_id = await self._account_of(resource)

        # Read before any grant so a concurrent invalidation retires our write
        generation = await self.cache.generation(account_id, user_id)
        if generation is None:
            self._cache_event("bypass")
            return await super().explain(user_id, resource)

        cached = await self.cache.get(account_id, user_id, resource, generation)
        if cached is not None:
            self._cache_event("hit")
            return cached

        self._cache_event("miss")
        resolution = await super().explain(user_id, resource)
        await self.cache.set(account_id, user_id, resource, generation, resolution)
        return resolution

    async def _account_of(self, resource: ResourceRef) -> str:
        if resource.kind == ResourceKind.BACKLOG:
            return (await self.scopes.backlog_scope(resource.resource_id)).account_id
        if resource.kind == ResourceKind.COMPANY:
            return (await self.scopes.company_scope(resource.resource_id)).account_id
        return (await self.scopes.account_scope(resource.resource_id)).account_id

    def _cache_event(self, event: str):
        if self.metrics:
            self.metrics.increment_counter("privilege_cache_events_total", event=event)
