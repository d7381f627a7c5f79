"""
Unit tests for the AccessGate.
"""

import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import AuthorizationError, ValidationError
from shared.test_helpers import PrivilegeDataFactory, SeedGrant
from service_privileges.app.privileges.engine import PrivilegeResolver
from service_privileges.app.privileges.gate import AccessGate
from service_privileges.app.privileges.models import (
    PrivilegeValue, ResourceRef, DenyReason, AccessDecision,
)


class TestAccessGate:
    """Test cases for AccessGate."""

    @pytest.fixture
    def store(self):
        """Store with the standard layout and users."""
        return PrivilegeDataFactory.create_store(grants=PrivilegeDataFactory.create_grants())

    @pytest.fixture
    def metrics(self):
        """Mock metrics collector."""
        return MagicMock()

    @pytest.fixture
    def gate(self, store, metrics):
        """Create AccessGate instance."""
        return AccessGate(PrivilegeResolver(store, store), metrics)

    @pytest.mark.parametrize("user_id,resource", [
        ("admin", ResourceRef.backlog("bl-1")),
        ("manager", ResourceRef.backlog("bl-1")),
        ("manager", ResourceRef.backlog("bl-2")),
        ("reader", ResourceRef.company("co-2")),
        ("guest", ResourceRef.backlog("bl-1")),
        ("nobody", ResourceRef.backlog("bl-3")),
    ])
    async def test_monotonic(self, gate, user_id, resource):
        """Test Allow exactly for required levels at or below the effective privilege."""
        effective = await gate.resolver.resolve(user_id, resource)

        for required in PrivilegeValue:
            decision = await gate.check(user_id, resource, required)
            assert decision.allowed == (required <= effective), required

    async def test_allow_carries_effective(self, gate):
        """Test Allow reports the effective privilege."""
        decision = await gate.check("manager", ResourceRef.backlog("bl-1"), PrivilegeValue.READ)

        assert decision == AccessDecision.allow(PrivilegeValue.FULL)

    async def test_insufficient_privilege(self, gate):
        """Test a grant below the requirement denies with INSUFFICIENT_PRIVILEGE."""
        decision = await gate.check("reader", ResourceRef.backlog("bl-2"), PrivilegeValue.FULL)

        assert not decision.allowed
        assert decision.reason == DenyReason.INSUFFICIENT_PRIVILEGE
        assert decision.effective == PrivilegeValue.READ
        assert decision.status_code == 403

    async def test_explicit_none_grant_is_insufficient(self, gate, store):
        """Test a grant of NONE counts as a grant, not as NO_GRANT."""
        PrivilegeDataFactory.grant(store, SeedGrant("blocked", "backlog", "bl-2", "none"))

        decision = await gate.check("blocked", ResourceRef.backlog("bl-2"), PrivilegeValue.READ)

        assert decision.reason == DenyReason.INSUFFICIENT_PRIVILEGE

    async def test_no_grant(self, gate):
        """Test a user with no grant anywhere is denied with NO_GRANT."""
        decision = await gate.check("nobody", ResourceRef.backlog("bl-1"), PrivilegeValue.READ)

        assert decision == AccessDecision.deny(DenyReason.NO_GRANT)

    async def test_missing_resource_is_deny(self, gate):
        """Test a missing resource denies instead of raising."""
        decision = await gate.check("admin", ResourceRef.backlog("missing"), PrivilegeValue.READ)

        assert decision.reason == DenyReason.RESOURCE_NOT_FOUND
        assert decision.status_code == 403

    async def test_required_none_always_allows(self, gate):
        """Test requiring NONE allows even without any grant."""
        decision = await gate.check("nobody", ResourceRef.backlog("bl-1"), PrivilegeValue.NONE)

        assert decision.allowed

    async def test_required_accepts_codes(self, gate):
        """Test required may be given as a stored code."""
        decision = await gate.check("guest", ResourceRef.backlog("bl-1"), "read")

        assert decision.allowed

    async def test_required_rejects_unknown_codes(self, gate):
        """Test unknown required codes are rejected."""
        with pytest.raises(ValidationError):
            await gate.check("guest", ResourceRef.backlog("bl-1"), "owner")

    async def test_records_decision_metric(self, gate, metrics):
        """Test decisions are counted by outcome and reason."""
        await gate.check("nobody", ResourceRef.backlog("bl-1"), PrivilegeValue.READ)

        metrics.increment_counter.assert_called_once_with(
            "privilege_checks_total", decision="deny", reason="no_grant"
        )


class TestAccessGateRequire:
    """Test cases for the raising variants."""

    @pytest.fixture
    def gate(self):
        """Create AccessGate over the standard store."""
        store = PrivilegeDataFactory.create_store(grants=PrivilegeDataFactory.create_grants())
        return AccessGate(PrivilegeResolver(store, store))

    async def test_require_allows(self, gate):
        """Test require returns the Allow decision."""
        decision = await gate.require("manager", ResourceRef.company("co-1"), PrivilegeValue.FULL)

        assert decision.allowed

    @pytest.mark.parametrize("user_id,resource", [
        ("reader", ResourceRef.backlog("bl-1")),
        ("nobody", ResourceRef.backlog("bl-1")),
        ("admin", ResourceRef.backlog("missing")),
    ])
    async def test_require_denies_uniformly(self, gate, user_id, resource):
        """Test every deny reason raises the same error without the reason."""
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.require(user_id, resource, PrivilegeValue.FULL)

        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"resource_kind": "backlog"}

    async def test_is_admin(self, gate):
        """Test admin detection is limited to the flagged account."""
        assert await gate.is_admin("admin", "acct-1")
        assert not await gate.is_admin("manager", "acct-1")
        assert not await gate.is_admin("outsider", "acct-1")
        assert not await gate.is_admin("admin", "missing")

    async def test_full_account_privilege_is_not_admin(self, gate):
        """Test FULL on the account without the flag is not admin."""
        PrivilegeDataFactory.grant(gate.resolver.grants, SeedGrant("owner", "account", "acct-1", "full"))

        assert await gate.resolver.resolve("owner", ResourceRef.account("acct-1")) == PrivilegeValue.FULL
        assert not await gate.is_admin("owner", "acct-1")

    async def test_require_admin(self, gate):
        """Test require_admin raises for non-admins."""
        await gate.require_admin("admin", "acct-1")

        with pytest.raises(AuthorizationError):
            await gate.require_admin("reader", "acct-1")
