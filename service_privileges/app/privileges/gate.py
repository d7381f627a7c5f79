"""
Access gate for the Privileges Service.

Request handlers call ``check`` with the authenticated user, the target
resource and the minimum privilege the operation needs. The effective
privilege always comes from the resolver; nothing supplied by the
request is trusted for the decision.
"""

from typing import Optional, Union

from shared.logging import get_logger, set_user_context
from shared.errors import AuthorizationError, ResourceNotFound
from shared.metrics import MetricsCollector
from shared.tracing import add_span_event
from .engine import PrivilegeResolver
from .models import (
    PrivilegeValue, ResourceRef, GrantSource, DenyReason, AccessDecision,
)


class AccessGate:
    """Turns an effective privilege into Allow or Deny(reason)."""

    def __init__(self, resolver: PrivilegeResolver, metrics: Optional[MetricsCollector] = None):
        self.resolver = resolver
        self.metrics = metrics
        self.logger = get_logger("privileges.gate")

    async def check(
        self,
        user_id: str,
        resource: ResourceRef,
        required: Union[PrivilegeValue, str]
    ) -> AccessDecision:
        """Allow iff the effective privilege is at least ``required``.

        A missing resource is a Deny, not an exception.
        """
        required = PrivilegeValue.parse(required)

        try:
            resolution = await self.resolver.explain(user_id, resource)
        except ResourceNotFound:
            decision = AccessDecision.deny(DenyReason.RESOURCE_NOT_FOUND)
        else:
            if resolution.privilege >= required:
                decision = AccessDecision.allow(resolution.privilege)
            elif not resolution.has_grant:
                decision = AccessDecision.deny(DenyReason.NO_GRANT)
            else:
                decision = AccessDecision.deny(DenyReason.INSUFFICIENT_PRIVILEGE, resolution.privilege)

        self._record(user_id, resource, required, decision)
        return decision

    async def require(
        self,
        user_id: str,
        resource: ResourceRef,
        required: Union[PrivilegeValue, str]
    ) -> AccessDecision:
        """Like ``check`` but raises AuthorizationError on Deny."""
        decision = await self.check(user_id, resource, required)
        if not decision.allowed:
            # Same error for every reason; the reason is only logged
            raise AuthorizationError(details={"resource_kind": resource.kind.value})
        return decision

    async def is_admin(self, user_id: str, account_id: str) -> bool:
        """Whether the user holds the admin flag on an existing account."""
        try:
            resolution = await self.resolver.explain(user_id, ResourceRef.account(account_id))
        except ResourceNotFound:
            return False
        return resolution.source == GrantSource.ADMIN

    async def require_admin(self, user_id: str, account_id: str) -> None:
        """Raise AuthorizationError unless the user administers the account."""
        set_user_context(account_id=account_id)
        if not await self.is_admin(user_id, account_id):
            self.logger.info("Admin required", user_id=user_id, account_id=account_id)
            if self.metrics:
                self.metrics.increment_counter("privilege_checks_total", decision="deny", reason="not_admin")
            raise AuthorizationError(details={"resource_kind": "account"})

    def _record(self, user_id: str, resource: ResourceRef, required: PrivilegeValue, decision: AccessDecision):
        reason = decision.reason.value if decision.reason else "none"

        if self.metrics:
            self.metrics.increment_counter(
                "privilege_checks_total",
                decision="allow" if decision.allowed else "deny",
                reason=reason
            )

        add_span_event(
            "access_check",
            resource=str(resource),
            required=required.value,
            allowed=decision.allowed,
            reason=reason
        )

        self.logger.debug(
            "Access checked",
            user_id=user_id,
            resource=str(resource),
            required=required.value,
            allowed=decision.allowed,
            reason=reason
        )
