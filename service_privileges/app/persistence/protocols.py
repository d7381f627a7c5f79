"""
Storage protocols for the Privileges Service.

The resolver depends only on ``GrantStore`` and ``ScopeResolver``; grant
administration additionally needs ``GrantWriter``. Each backend
implements all three.
"""

from typing import Optional, Protocol, runtime_checkable

from ..privileges.models import (
    AccountGrant, CompanyGrant, BacklogGrant,
    AccountScope, CompanyScope, BacklogScope,
)


@runtime_checkable
class GrantStore(Protocol):
    """Read-only grant lookups. Absence is ``None``, never an error."""

    async def account_grant(self, user_id: str, account_id: str) -> Optional[AccountGrant]:
        ...

    async def company_grant(self, user_id: str, company_id: str) -> Optional[CompanyGrant]:
        ...

    async def backlog_grant(self, user_id: str, backlog_id: str) -> Optional[BacklogGrant]:
        ...


@runtime_checkable
class ScopeResolver(Protocol):
    """Structural lookups. Each raises ``ResourceNotFound`` for unknown ids."""

    async def account_scope(self, account_id: str) -> AccountScope:
        ...

    async def company_scope(self, company_id: str) -> CompanyScope:
        ...

    async def backlog_scope(self, backlog_id: str) -> BacklogScope:
        ...


@runtime_checkable
class GrantWriter(Protocol):
    """Grant and scope mutations, serialized per row by the backend."""

    async def upsert_account_grant(self, grant: AccountGrant) -> AccountGrant:
        ...

    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        ...

    async def upsert_backlog_grant(self, grant: BacklogGrant) -> BacklogGrant:
        ...

    async def delete_account_grant(self, user_id: str, account_id: str) -> bool:
        ...

    async def delete_company_grant(self, user_id: str, company_id: str) -> bool:
        ...

    async def delete_backlog_grant(self, user_id: str, backlog_id: str) -> bool:
        ...

    async def delete_account(self, account_id: str) -> bool:
        ...

    async def delete_company(self, company_id: str) -> bool:
        ...

    async def delete_backlog(self, backlog_id: str) -> bool:
        ...
