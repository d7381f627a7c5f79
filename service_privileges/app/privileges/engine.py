"""
Privilege resolution engine for the Privileges Service.

Resolution order for a backlog:

1. account admin flag  -> FULL
2. backlog grant       -> its privilege
3. company grant       -> its privilege (only the backlog's own company)
4. account grant       -> its privilege
5. nothing             -> NONE

Companies skip step 2, accounts skip steps 2 and 3. The most specific
grant wins, except that an account admin is never narrowed.
"""

import time
from typing import Optional

from shared.logging import get_logger
from shared.errors import InvalidGrantState, InvalidScopeState
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation, add_span_attributes
from ..persistence.protocols import GrantStore, ScopeResolver
from .models import (
    PrivilegeValue, ResourceKind, ResourceRef, GrantSource, Resolution,
    AccountGrant, CompanyGrant, BacklogGrant,
)


class PrivilegeResolver:
    """Computes the effective privilege of a user on an account, company or backlog.

    Stateless: every call reads fresh from the grant store and scope
    resolver and never writes.
    """

    def __init__(
        self,
        grants: GrantStore,
        scopes: ScopeResolver,
        metrics: Optional[MetricsCollector] = None
    ):
        self.grants = grants
        self.scopes = scopes
        self.metrics = metrics
        self.logger = get_logger("privileges.resolver")

    async def resolve(self, user_id: str, resource: ResourceRef) -> PrivilegeValue:
        """Effective privilege of ``user_id`` on ``resource``.

        Raises ResourceNotFound when the resource or a declared parent
        scope is missing. Missing grants resolve to NONE.
        """
        resolution = await self.explain(user_id, resource)
        return resolution.privilege

    async def explain(self, user_id: str, resource: ResourceRef) -> Resolution:
        """Effective privilege plus the scope whose grant decided it."""
        start_time = time.time()

        with trace_operation(
            "privileges.resolve",
            user_id=user_id,
            resource_kind=resource.kind.value,
            resource_id=resource.resource_id
        ):
            if resource.kind == ResourceKind.BACKLOG:
                resolution = await self._resolve_backlog(user_id, resource.resource_id)
            elif resource.kind == ResourceKind.COMPANY:
                resolution = await self._resolve_company(user_id, resource.resource_id)
            else:
                resolution = await self._resolve_account(user_id, resource.resource_id)

            add_span_attributes(privilege=resolution.privilege.value, source=resolution.source.value)

        if self.metrics:
            self.metrics.increment_counter("privilege_resolutions_total", source=resolution.source.value)
            self.metrics.observe_histogram(
                "privilege_resolution_duration_seconds",
                time.time() - start_time,
                resource_kind=resource.kind.value
            )

        self.logger.debug(
            "Privilege resolved",
            user_id=user_id,
            resource=str(resource),
            privilege=resolution.privilege.value,
            source=resolution.source.value
        )

        return resolution

    async def _resolve_account(self, user_id: str, account_id: str) -> Resolution:
        await self.scopes.account_scope(account_id)

        account_grant = await self._account_grant(user_id, account_id)
        if account_grant is not None and account_grant.is_admin:
            return Resolution(PrivilegeValue.FULL, GrantSource.ADMIN)

        return self._account_fallback(account_grant)

    async def _resolve_company(self, user_id: str, company_id: str) -> Resolution:
        company = await self.scopes.company_scope(company_id)

        account_grant = await self._account_grant(user_id, company.account_id)
        if account_grant is not None and account_grant.is_admin:
            return Resolution(PrivilegeValue.FULL, GrantSource.ADMIN)

        company_grant = await self._company_grant(user_id, company_id)
        if company_grant is not None:
            return Resolution(company_grant.privilege, GrantSource.COMPANY)

        return self._account_fallback(account_grant)

    async def _resolve_backlog(self, user_id: str, backlog_id: str) -> Resolution:
        backlog = await self.scopes.backlog_scope(backlog_id)

        # The declared company must exist and share the backlog's account
        if backlog.company_id is not None:
            company = await self.scopes.company_scope(backlog.company_id)
            if company.account_id != backlog.account_id:
                self.logger.error(
                    "Backlog company belongs to another account",
                    backlog_id=backlog_id,
                    company_id=company.company_id,
                    backlog_account_id=backlog.account_id,
                    company_account_id=company.account_id
                )
                raise InvalidScopeState(
                    "Backlog company belongs to another account",
                    {"backlog_id": backlog_id, "company_id": company.company_id}
                )

        account_grant = await self._account_grant(user_id, backlog.account_id)
        if account_grant is not None and account_grant.is_admin:
            return Resolution(PrivilegeValue.FULL, GrantSource.ADMIN)

        backlog_grant = await self._backlog_grant(user_id, backlog_id)
        if backlog_grant is not None:
            return Resolution(backlog_grant.privilege, GrantSource.BACKLOG)

        if backlog.company_id is not None:
            company_grant = await self._company_grant(user_id, backlog.company_id)
            if company_grant is not None:
                return Resolution(company_grant.privilege, GrantSource.COMPANY)

        return self._account_fallback(account_grant)

    @staticmethod
    def _account_fallback(account_grant: Optional[AccountGrant]) -> Resolution:
        if account_grant is not None:
            return Resolution(account_grant.privilege, GrantSource.ACCOUNT)
        return Resolution(PrivilegeValue.NONE, GrantSource.NONE)

    # Lookups verify the store answered the question that was asked.

    async def _account_grant(self, user_id: str, account_id: str) -> Optional[AccountGrant]:
        grant = await self.grants.account_grant(user_id, account_id)
        if grant is not None and (grant.user_id, grant.account_id) != (user_id, account_id):
            self._mismatch("account", user_id, account_id, grant.user_id, grant.account_id)
        return grant

    async def _company_grant(self, user_id: str, company_id: str) -> Optional[CompanyGrant]:
        grant = await self.grants.company_grant(user_id, company_id)
        if grant is not None and (grant.user_id, grant.company_id) != (user_id, company_id):
            self._mismatch("company", user_id, company_id, grant.user_id, grant.company_id)
        return grant

    async def _backlog_grant(self, user_id: str, backlog_id: str) -> Optional[BacklogGrant]:
        grant = await self.grants.backlog_grant(user_id, backlog_id)
        if grant is not None and (grant.user_id, grant.backlog_id) != (user_id, backlog_id):
            self._mismatch("backlog", user_id, backlog_id, grant.user_id, grant.backlog_id)
        return grant

    def _mismatch(self, scope: str, user_id: str, scope_id: str, got_user: str, got_scope: str):
        self.logger.error(
            "Grant store returned a foreign grant",
            scope=scope,
            user_id=user_id,
            scope_id=scope_id,
            returned_user_id=got_user,
            returned_scope_id=got_scope
        )
        raise InvalidGrantState(
            f"Grant store returned a {scope} grant for another user or scope",
            {"scope": scope, "user_id": user_id, "scope_id": scope_id}
        )
