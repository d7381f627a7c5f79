"""
In-memory grant storage for the Privileges Service.

Used for local runs and tests. Grants are keyed by (user, scope), so
the one-row-per-pair invariant holds by construction.
"""

import threading
from typing import Dict, Optional, Tuple, Any

from shared.logging import get_logger
from shared.errors import ResourceNotFound, ValidationError
from ..privileges.models import (
    AccountGrant, CompanyGrant, BacklogGrant,
    AccountScope, CompanyScope, BacklogScope,
)


class InMemoryGrantStore:
    """Dict-backed GrantStore, ScopeResolver and GrantWriter."""

    def __init__(self):
        self.logger = get_logger("privileges.persistence.memory")
        self._lock = threading.Lock()
        self.accounts: Dict[str, AccountScope] = {}
        self.companies: Dict[str, CompanyScope] = {}
        self.backlogs: Dict[str, BacklogScope] = {}
        self.account_grants: Dict[Tuple[str, str], AccountGrant] = {}
        self.company_grants: Dict[Tuple[str, str], CompanyGrant] = {}
        self.backlog_grants: Dict[Tuple[str, str], BacklogGrant] = {}

    # Scope registration. Creating scopes belongs to the host's CRUD
    # layer; these helpers seed local data.

    def add_account(self, account_id: str) -> AccountScope:
        with self._lock:
            scope = AccountScope(account_id)
            self.accounts[account_id] = scope
            return scope

    def add_company(self, company_id: str, account_id: str) -> CompanyScope:
        with self._lock:
            if account_id not in self.accounts:
                raise ValidationError(f"Unknown account '{account_id}'", {"company_id": company_id})
            scope = CompanyScope(company_id, account_id)
            self.companies[company_id] = scope
            return scope

    def add_backlog(self, backlog_id: str, account_id: str, company_id: Optional[str] = None) -> BacklogScope:
        with self._lock:
            if account_id not in self.accounts:
                raise ValidationError(f"Unknown account '{account_id}'", {"backlog_id": backlog_id})
            if company_id is not None:
                company = self.companies.get(company_id)
                if company is None or company.account_id != account_id:
                    raise ValidationError(
                        "Backlog company must belong to the backlog's account",
                        {"backlog_id": backlog_id, "company_id": company_id, "account_id": account_id}
                    )
            scope = BacklogScope(backlog_id, account_id, company_id)
            self.backlogs[backlog_id] = scope
            return scope

    def put_account_grant(self, grant: AccountGrant) -> AccountGrant:
        with self._lock:
            if grant.account_id not in self.accounts:
                raise ResourceNotFound("account", grant.account_id)
            self.account_grants[(grant.user_id, grant.account_id)] = grant
            return grant

    def put_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        with self._lock:
            if grant.company_id not in self.companies:
                raise ResourceNotFound("company", grant.company_id)
            self.company_grants[(grant.user_id, grant.company_id)] = grant
            return grant

    def put_backlog_grant(self, grant: BacklogGrant) -> BacklogGrant:
        with self._lock:
            if grant.backlog_id not in self.backlogs:
                raise ResourceNotFound("backlog", grant.backlog_id)
            self.backlog_grants[(grant.user_id, grant.backlog_id)] = grant
            return grant

    # GrantStore

    async def account_grant(self, user_id: str, account_id: str) -> Optional[AccountGrant]:
        return self.account_grants.get((user_id, account_id))

    async def company_grant(self, user_id: str, company_id: str) -> Optional[CompanyGrant]:
        return self.company_grants.get((user_id, company_id))

    async def backlog_grant(self, user_id: str, backlog_id: str) -> Optional[BacklogGrant]:
        return self.backlog_grants.get((user_id, backlog_id))

    # ScopeResolver

    async def account_scope(self, account_id: str) -> AccountScope:
        scope = self.accounts.get(account_id)
        if scope is None:
            raise ResourceNotFound("account", account_id)
        return scope

    async def company_scope(self, company_id: str) -> CompanyScope:
        scope = self.companies.get(company_id)
        if scope is None:
            raise ResourceNotFound("company", company_id)
        return scope

    async def backlog_scope(self, backlog_id: str) -> BacklogScope:
        scope = self.backlogs.get(backlog_id)
        if scope is None:
            raise ResourceNotFound("backlog", backlog_id)
        return scope

    # GrantWriter

    async def upsert_account_grant(self, grant: AccountGrant) -> AccountGrant:
        return self.put_account_grant(grant)

    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        return self.put_company_grant(grant)

    async def upsert_backlog_grant(self, grant: BacklogGrant) -> BacklogGrant:
        return self.put_backlog_grant(grant)

    async def delete_account_grant(self, user_id: str, account_id: str) -> bool:
        with self._lock:
            return self.account_grants.pop((user_id, account_id), None) is not None

    async def delete_company_grant(self, user_id: str, company_id: str) -> bool:
        with self._lock:
            return self.company_grants.pop((user_id, company_id), None) is not None

    async def delete_backlog_grant(self, user_id: str, backlog_id: str) -> bool:
        with self._lock:
            return self.backlog_grants.pop((user_id, backlog_id), None) is not None

    async def delete_account(self, account_id: str) -> bool:
        """Delete an account with its companies, backlogs and all their grants."""
        with self._lock:
            if self.accounts.pop(account_id, None) is None:
                return False

            company_ids = {c.company_id for c in self.companies.values() if c.account_id == account_id}
            backlog_ids = {b.backlog_id for b in self.backlogs.values() if b.account_id == account_id}

            for company_id in company_ids:
                del self.companies[company_id]
            for backlog_id in backlog_ids:
                del self.backlogs[backlog_id]

            self.account_grants = {k: g for k, g in self.account_grants.items() if g.account_id != account_id}
            self.company_grants = {k: g for k, g in self.company_grants.items() if g.company_id not in company_ids}
            self.backlog_grants = {k: g for k, g in self.backlog_grants.items() if g.backlog_id not in backlog_ids}

            self.logger.info(
                "Account deleted",
                account_id=account_id,
                companies=len(company_ids),
                backlogs=len(backlog_ids)
            )
            return True

    async def delete_company(self, company_id: str) -> bool:
        """Delete a company and its grants; its backlogs stay, detached."""
        with self._lock:
            if self.companies.pop(company_id, None) is None:
                return False

            for backlog_id, scope in list(self.backlogs.items()):
                if scope.company_id == company_id:
                    self.backlogs[backlog_id] = BacklogScope(backlog_id, scope.account_id, None)

            self.company_grants = {k: g for k, g in self.company_grants.items() if g.company_id != company_id}
            self.logger.info("Company deleted", company_id=company_id)
            return True

    async def delete_backlog(self, backlog_id: str) -> bool:
        with self._lock:
            if self.backlogs.pop(backlog_id, None) is None:
                return False

            self.backlog_grants = {k: g for k, g in self.backlog_grants.items() if g.backlog_id != backlog_id}
            self.logger.info("Backlog deleted", backlog_id=backlog_id)
            return True

    async def health_check(self) -> bool:
        return True

    async def get_store_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        return {
            "accounts": len(self.accounts),
            "companies": len(self.companies),
            "backlogs": len(self.backlogs),
            "account_grants": len(self.account_grants),
            "company_grants": len(self.company_grants),
            "backlog_grants": len(self.backlog_grants),
            "admins": len([g for g in self.account_grants.values() if g.is_admin]),
        }
