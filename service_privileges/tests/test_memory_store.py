"""
Unit tests for the in-memory grant store.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ResourceNotFound, ValidationError
from shared.test_helpers import PrivilegeDataFactory, SeedGrant
from service_privileges.app.persistence.memory import InMemoryGrantStore
from service_privileges.app.persistence.protocols import GrantStore, ScopeResolver, GrantWriter
from service_privileges.app.privileges.models import (
    PrivilegeValue, AccountGrant, CompanyGrant, BacklogGrant, BacklogScope,
)


class TestInMemoryGrantStore:
    """Test cases for InMemoryGrantStore."""

    @pytest.fixture
    def store(self):
        """Store with the standard layout and users."""
        return PrivilegeDataFactory.create_store(grants=PrivilegeDataFactory.create_grants())

    def test_satisfies_protocols(self, store):
        """Test the store implements every persistence protocol."""
        assert isinstance(store, GrantStore)
        assert isinstance(store, ScopeResolver)
        assert isinstance(store, GrantWriter)

    async def test_grant_lookup(self, store):
        """Test grants are looked up by (user, scope)."""
        assert await store.company_grant("manager", "co-1") == CompanyGrant("manager", "co-1", PrivilegeValue.FULL)
        assert await store.company_grant("manager", "co-2") is None
        assert await store.backlog_grant("reader", "bl-1") is None

    async def test_upsert_replaces(self, store):
        """Test one row per (user, scope): upsert replaces the existing grant."""
        await store.upsert_backlog_grant(BacklogGrant("guest", "bl-1", PrivilegeValue.FULL))

        assert await store.backlog_grant("guest", "bl-1") == BacklogGrant("guest", "bl-1", PrivilegeValue.FULL)
        assert len([k for k in store.backlog_grants if k[0] == "guest"]) == 1

    async def test_upsert_unknown_scope(self, store):
        """Test grants on missing scopes are rejected."""
        with pytest.raises(ResourceNotFound):
            await store.upsert_company_grant(CompanyGrant("u", "missing", PrivilegeValue.READ))

    async def test_scope_lookup(self, store):
        """Test scope lookups and missing scopes."""
        backlog = await store.backlog_scope("bl-1")

        assert backlog == BacklogScope("bl-1", "acct-1", "co-1")
        assert (await store.company_scope("co-9")).account_id == "acct-2"
        with pytest.raises(ResourceNotFound):
            await store.account_scope("missing")

    def test_backlog_company_must_share_account(self, store):
        """Test a backlog cannot point at another account's company."""
        with pytest.raises(ValidationError):
            store.add_backlog("bl-x", "acct-1", "co-9")

    def test_company_requires_account(self):
        """Test companies need an existing account."""
        with pytest.raises(ValidationError):
            InMemoryGrantStore().add_company("co-x", "missing")

    async def test_delete_grant(self, store):
        """Test grant deletion reports whether a row was removed."""
        assert await store.delete_account_grant("reader", "acct-1")
        assert not await store.delete_account_grant("reader", "acct-1")
        assert await store.account_grant("reader", "acct-1") is None

    async def test_delete_account_cascades(self, store):
        """Test deleting an account removes its scopes and every grant under it."""
        assert await store.delete_account("acct-1")

        assert "co-1" not in store.companies
        assert "bl-1" not in store.backlogs
        assert await store.account_grant("admin", "acct-1") is None
        assert await store.company_grant("manager", "co-1") is None
        assert await store.backlog_grant("guest", "bl-1") is None
        # Other accounts are untouched
        assert await store.account_grant("outsider", "acct-2") is not None
        assert "bl-9" in store.backlogs

    async def test_delete_company_detaches_backlogs(self, store):
        """Test deleting a company keeps its backlogs and their grants."""
        assert await store.delete_company("co-1")

        assert await store.backlog_scope("bl-1") == BacklogScope("bl-1", "acct-1", None)
        assert await store.backlog_grant("guest", "bl-1") is not None
        assert await store.company_grant("manager", "co-1") is None

    async def test_delete_backlog(self, store):
        """Test deleting a backlog removes its grants."""
        assert await store.delete_backlog("bl-1")
        assert not await store.delete_backlog("bl-1")

        assert await store.backlog_grant("guest", "bl-1") is None
        with pytest.raises(ResourceNotFound):
            await store.backlog_scope("bl-1")

    async def test_store_stats(self, store):
        """Test storage statistics."""
        stats = await store.get_store_stats()

        assert stats["accounts"] == 2
        assert stats["backlogs"] == 4
        assert stats["admins"] == 2
        assert await store.health_check()

    def test_seed_grant_unknown_scope(self, store):
        """Test the factory rejects unknown grant scopes."""
        with pytest.raises(ValueError):
            PrivilegeDataFactory.grant(store, SeedGrant("u", "team", "t-1", "read"))

    async def test_account_grant_admin_flag(self, store):
        """Test the admin flag is stored on account grants."""
        grant = await store.account_grant("admin", "acct-1")

        assert grant == AccountGrant("admin", "acct-1", PrivilegeValue.NONE, is_admin=True)
