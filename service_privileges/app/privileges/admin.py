"""
Grant administration for the Privileges Service.

Every mutation is gated on the actor's own resolved privilege before the
new row is written:

- account grants and account removal need the account admin flag;
- company grants need FULL on the company, company removal needs the
  admin flag on its account;
- backlog grants and backlog removal need FULL on the backlog.

The privilege carried by the request is only the value to store. It is
never used to authorize the write.
"""

from typing import Optional, Union

from shared.logging import get_logger, set_user_context
from shared.errors import AuthorizationError, ResourceNotFound
from shared.metrics import MetricsCollector
from ..persistence.protocols import GrantWriter, ScopeResolver
from ..cache.redis_cache import RedisPrivilegeCache
from .gate import AccessGate
from .models import (
    PrivilegeValue, ResourceRef, AccountGrant, CompanyGrant, BacklogGrant,
)


class GrantAdministrator:
    """Guarded create, update and delete of grants and scopes."""

    def __init__(
        self,
        gate: AccessGate,
        writer: GrantWriter,
        scopes: ScopeResolver,
        cache: Optional[RedisPrivilegeCache] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.gate = gate
        self.writer = writer
        self.scopes = scopes
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("privileges.admin")

    # Account grants

    async def set_account_grant(
        self,
        actor_id: str,
        account_id: str,
        user_id: str,
        privilege: Union[PrivilegeValue, str],
        is_admin: bool = False
    ) -> AccountGrant:
        await self.gate.require_admin(actor_id, account_id)

        grant = await self.writer.upsert_account_grant(AccountGrant(
            user_id=user_id,
            account_id=account_id,
            privilege=PrivilegeValue.parse(privilege),
            is_admin=bool(is_admin)
        ))

        await self._after_grant_change("account", "upsert", account_id, user_id, actor_id)
        return grant

    async def revoke_account_grant(self, actor_id: str, account_id: str, user_id: str) -> bool:
        await self.gate.require_admin(actor_id, account_id)

        removed = await self.writer.delete_account_grant(user_id, account_id)
        if removed:
            await self._after_grant_change("account", "delete", account_id, user_id, actor_id)
        return removed

    # Company grants

    async def set_company_grant(
        self,
        actor_id: str,
        company_id: str,
        user_id: str,
        privilege: Union[PrivilegeValue, str]
    ) -> CompanyGrant:
        await self.gate.require(actor_id, ResourceRef.company(company_id), PrivilegeValue.FULL)
        company = await self.scopes.company_scope(company_id)
        set_user_context(account_id=company.account_id)

        grant = await self.writer.upsert_company_grant(CompanyGrant(
            user_id=user_id,
            company_id=company_id,
            privilege=PrivilegeValue.parse(privilege)
        ))

        await self._after_grant_change("company", "upsert", company.account_id, user_id, actor_id)
        return grant

    async def revoke_company_grant(self, actor_id: str, company_id: str, user_id: str) -> bool:
        await self.gate.require(actor_id, ResourceRef.company(company_id), PrivilegeValue.FULL)
        company = await self.scopes.company_scope(company_id)
        set_user_context(account_id=company.account_id)

        removed = await self.writer.delete_company_grant(user_id, company_id)
        if removed:
            await self._after_grant_change("company", "delete", company.account_id, user_id, actor_id)
        return removed

    # Backlog grants

    async def set_backlog_grant(
        self,
        actor_id: str,
        backlog_id: str,
        user_id: str,
        privilege: Union[PrivilegeValue, str]
    ) -> BacklogGrant:
        await self.gate.require(actor_id, ResourceRef.backlog(backlog_id), PrivilegeValue.FULL)
        backlog = await self.scopes.backlog_scope(backlog_id)
        set_user_context(account_id=backlog.account_id)

        grant = await self.writer.upsert_backlog_grant(BacklogGrant(
            user_id=user_id,
            backlog_id=backlog_id,
            privilege=PrivilegeValue.parse(privilege)
        ))

        await self._after_grant_change("backlog", "upsert", backlog.account_id, user_id, actor_id)
        return grant

    async def revoke_backlog_grant(self, actor_id: str, backlog_id: str, user_id: str) -> bool:
        await self.gate.require(actor_id, ResourceRef.backlog(backlog_id), PrivilegeValue.FULL)
        backlog = await self.scopes.backlog_scope(backlog_id)
        set_user_context(account_id=backlog.account_id)

        removed = await self.writer.delete_backlog_grant(user_id, backlog_id)
        if removed:
            await self._after_grant_change("backlog", "delete", backlog.account_id, user_id, actor_id)
        return removed

    # Scope removal

    async def remove_account(self, actor_id: str, account_id: str) -> bool:
        await self.gate.require_admin(actor_id, account_id)

        removed = await self.writer.delete_account(account_id)
        if removed:
            await self._after_scope_removal("account", account_id, account_id, actor_id)
        return removed

    async def remove_company(self, actor_id: str, company_id: str) -> bool:
        try:
            company = await self.scopes.company_scope(company_id)
        except ResourceNotFound:
            # Indistinguishable from a forbidden company
            raise AuthorizationError(details={"resource_kind": "company"}) from None
        await self.gate.require_admin(actor_id, company.account_id)

        removed = await self.writer.delete_company(company_id)
        if removed:
            await self._after_scope_removal("company", company_id, company.account_id, actor_id)
        return removed

    async def remove_backlog(self, actor_id: str, backlog_id: str) -> bool:
        await self.gate.require(actor_id, ResourceRef.backlog(backlog_id), PrivilegeValue.FULL)
        backlog = await self.scopes.backlog_scope(backlog_id)
        set_user_context(account_id=backlog.account_id)

        removed = await self.writer.delete_backlog(backlog_id)
        if removed:
            await self._after_scope_removal("backlog", backlog_id, backlog.account_id, actor_id)
        return removed

    async def _after_grant_change(self, scope: str, operation: str, account_id: str, user_id: str, actor_id: str):
        if self.cache is not None:
            await self.cache.invalidate_user(account_id, user_id)

        if self.metrics:
            self.metrics.increment_counter("grant_mutations_total", scope=scope, operation=operation)

        self.logger.info(
            "Grant changed",
            scope=scope,
            operation=operation,
            account_id=account_id,
            user_id=user_id,
            actor_id=actor_id
        )

    async def _after_scope_removal(self, scope: str, scope_id: str, account_id: str, actor_id: str):
        if self.cache is not None:
            await self.cache.invalidate_account(account_id)

        if self.metrics:
            self.metrics.increment_counter("grant_mutations_total", scope=scope, operation="remove_scope")

        self.logger.info(
            "Scope removed",
            scope=scope,
            scope_id=scope_id,
            account_id=account_id,
            actor_id=actor_id
        )
