"""
Privileges service for the backlog access-control layer.
"""

from typing import Optional
from datetime import datetime

from fastapi import Header
from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.logging import set_user_context
from shared.errors import AuthenticationError, ResourceNotFound, ValidationError

from .privileges.engine import PrivilegeResolver
from .privileges.gate import AccessGate
from .privileges.admin import GrantAdministrator
from .privileges.models import (
    PrivilegeValue, GrantSource, ResourceKind, ResourceRef, Resolution,
    ResolveRequest, ResolveResponse, CheckRequest, CheckResponse,
    AccountGrantRequest, ScopedGrantRequest, GrantResponse,
)
from .persistence.memory import InMemoryGrantStore
from .persistence.postgres import PostgreSQLGrantStore
from .cache.redis_cache import RedisPrivilegeCache, CachingPrivilegeResolver


def require_actor(x_user_id: Optional[str]) -> str:
    """Authenticated actor id, as forwarded by the gateway."""
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    set_user_context(user_id=x_user_id)
    return x_user_id


class PrivilegesService(BaseService):
    """Privileges service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("privileges", 8013, config)

        # Initialize components
        self.store = self._create_store()
        self.cache: Optional[RedisPrivilegeCache] = None

        if self.config.privilege_cache_enabled:
            self.cache = RedisPrivilegeCache(
                self.config.redis_url,
                ttl_seconds=self.config.privilege_cache_ttl_seconds
            )
            self.resolver = CachingPrivilegeResolver(self.store, self.store, self.cache, self.metrics)
        else:
            self.resolver = PrivilegeResolver(self.store, self.store, self.metrics)

        self.gate = AccessGate(self.resolver, self.metrics)
        self.administrator = GrantAdministrator(
            self.gate, self.store, self.store, cache=self.cache, metrics=self.metrics
        )

        self._setup_privileges_routes()

    def _create_store(self):
        backend = self.config.storage_backend.lower()
        if backend == "memory":
            return InMemoryGrantStore()
        if backend == "postgres":
            return PostgreSQLGrantStore(self.config.postgres_dsn)
        raise ValidationError(
            f"Unknown storage backend '{self.config.storage_backend}'",
            {"allowed": ["memory", "postgres"]}
        )

    def _setup_privileges_routes(self):
        """Set up privilege-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "privileges",
                "message": "Backlog access control - Privileges Service",
                "version": "1.0.0",
                "capabilities": ["resolution", "access_check", "grant_administration"]
                + (["caching"] if self.cache else [])
            }

        @self.app.post("/privileges/resolve", response_model=ResolveResponse)
        async def resolve_privilege(request: ResolveRequest):
            """Resolve the effective privilege of a user on a resource."""
            set_user_context(user_id=request.user_id)
            resource = ResourceRef(request.resource_kind, request.resource_id)

            try:
                resolution = await self.resolver.explain(request.user_id, resource)
            except ResourceNotFound:
                # Same answer as an existing resource with no grant
                resolution = Resolution(PrivilegeValue.NONE, GrantSource.NONE)

            return ResolveResponse(
                user_id=request.user_id,
                resource_kind=request.resource_kind,
                resource_id=request.resource_id,
                privilege=resolution.privilege,
                source=resolution.source
            )

        @self.app.post("/privileges/check", response_model=CheckResponse)
        async def check_privilege(request: CheckRequest):
            """Check whether a user may perform an operation needing ``required``."""
            set_user_context(user_id=request.user_id)
            resource = ResourceRef(request.resource_kind, request.resource_id)

            decision = await self.gate.check(request.user_id, resource, request.required)

            return CheckResponse(
                allowed=decision.allowed,
                reason=decision.reason,
                status_code=decision.status_code
            )

        @self.app.put("/accounts/{account_id}/grants/{user_id}", response_model=GrantResponse)
        async def put_account_grant(
            account_id: str,
            user_id: str,
            request: AccountGrantRequest,
            x_user_id: Optional[str] = Header(None)
        ):
            """Create or update an account grant. Account admins only."""
            actor_id = require_actor(x_user_id)
            grant = await self.administrator.set_account_grant(
                actor_id, account_id, user_id, request.privilege, is_admin=request.admin
            )
            return GrantResponse(
                scope=ResourceKind.ACCOUNT,
                scope_id=grant.account_id,
                user_id=grant.user_id,
                privilege=grant.privilege,
                admin=grant.is_admin
            )

        @self.app.delete("/accounts/{account_id}/grants/{user_id}")
        async def delete_account_grant(account_id: str, user_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove an account grant. Account admins only."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.revoke_account_grant(actor_id, account_id, user_id):
                raise ResourceNotFound("account grant", user_id)
            return {"success": True, "message": "Grant deleted successfully"}

        @self.app.put("/companies/{company_id}/grants/{user_id}", response_model=GrantResponse)
        async def put_company_grant(
            company_id: str,
            user_id: str,
            request: ScopedGrantRequest,
            x_user_id: Optional[str] = Header(None)
        ):
            """Create or update a company grant. Needs FULL on the company."""
            actor_id = require_actor(x_user_id)
            grant = await self.administrator.set_company_grant(actor_id, company_id, user_id, request.privilege)
            return GrantResponse(
                scope=ResourceKind.COMPANY,
                scope_id=grant.company_id,
                user_id=grant.user_id,
                privilege=grant.privilege
            )

        @self.app.delete("/companies/{company_id}/grants/{user_id}")
        async def delete_company_grant(company_id: str, user_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove a company grant. Needs FULL on the company."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.revoke_company_grant(actor_id, company_id, user_id):
                raise ResourceNotFound("company grant", user_id)
            return {"success": True, "message": "Grant deleted successfully"}

        @self.app.put("/backlogs/{backlog_id}/grants/{user_id}", response_model=GrantResponse)
        async def put_backlog_grant(
            backlog_id: str,
            user_id: str,
            request: ScopedGrantRequest,
            x_user_id: Optional[str] = Header(None)
        ):
            """Create or update a backlog grant. Needs FULL on the backlog."""
            actor_id = require_actor(x_user_id)
            grant = await self.administrator.set_backlog_grant(actor_id, backlog_id, user_id, request.privilege)
            return GrantResponse(
                scope=ResourceKind.BACKLOG,
                scope_id=grant.backlog_id,
                user_id=grant.user_id,
                privilege=grant.privilege
            )

        @self.app.delete("/backlogs/{backlog_id}/grants/{user_id}")
        async def delete_backlog_grant(backlog_id: str, user_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove a backlog grant. Needs FULL on the backlog."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.revoke_backlog_grant(actor_id, backlog_id, user_id):
                raise ResourceNotFound("backlog grant", user_id)
            return {"success": True, "message": "Grant deleted successfully"}

        @self.app.delete("/accounts/{account_id}")
        async def delete_account(account_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove an account with its companies, backlogs and grants."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.remove_account(actor_id, account_id):
                raise ResourceNotFound("account", account_id)
            return {"success": True, "message": "Account deleted successfully"}

        @self.app.delete("/companies/{company_id}")
        async def delete_company(company_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove a company and its grants; its backlogs are detached."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.remove_company(actor_id, company_id):
                raise ResourceNotFound("company", company_id)
            return {"success": True, "message": "Company deleted successfully"}

        @self.app.delete("/backlogs/{backlog_id}")
        async def delete_backlog(backlog_id: str, x_user_id: Optional[str] = Header(None)):
            """Remove a backlog and its grants."""
            actor_id = require_actor(x_user_id)
            if not await self.administrator.remove_backlog(actor_id, backlog_id):
                raise ResourceNotFound("backlog", backlog_id)
            return {"success": True, "message": "Backlog deleted successfully"}

        @self.app.get("/privileges/stats")
        async def get_stats():
            """Get privileges service statistics."""
            return {
                "storage": await self.store.get_store_stats(),
                "cache": await self.cache.get_cache_stats() if self.cache else {"enabled": False},
                "timestamp": datetime.now().isoformat()
            }

    async def _check_dependencies(self):
        """Check privileges service dependencies."""
        dependencies = {}

        dependencies[self.config.storage_backend.lower()] = "ok" if await self.store.health_check() else "error"

        if self.cache:
            dependencies["redis"] = "ok" if await self.cache.health_check() else "error"

        return dependencies

    async def start(self):
        """Start privileges service components."""
        if isinstance(self.store, PostgreSQLGrantStore):
            await self.store.start()
        if self.cache:
            await self.cache.start()

        self.logger.info(
            "Privileges service started",
            storage_backend=self.config.storage_backend,
            cache_enabled=bool(self.cache)
        )

    async def stop(self):
        """Stop privileges service components."""
        if isinstance(self.store, PostgreSQLGrantStore):
            await self.store.stop()
        if self.cache:
            await self.cache.stop()

        self.logger.info("Privileges service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create privileges service application."""
    service = PrivilegesService(config)
    return service.app


if __name__ == "__main__":
    service = PrivilegesService()
    service.run()
