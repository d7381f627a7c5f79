"""
PostgreSQL grant storage for the Privileges Service.

Requires PostgreSQL 15 or later: detaching a backlog from a deleted
company uses the column-list form `ON DELETE SET NULL (company_id)`,
which leaves the backlog's account_id in place.
"""

from typing import Dict, Any, Optional, List

import asyncpg
from shared.logging import get_logger
from shared.errors import InvalidGrantState, ResourceNotFound, ServiceError
from ..privileges.models import (
    PrivilegeValue, AccountGrant, CompanyGrant, BacklogGrant,
    AccountScope, CompanyScope, BacklogScope,
)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id VARCHAR(255) PRIMARY KEY,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS companies (
        company_id VARCHAR(255) PRIMARY KEY,
        account_id VARCHAR(255) NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (company_id, account_id)
    );
    """,
    # The composite key keeps a backlog's company inside the backlog's account.
    """
    CREATE TABLE IF NOT EXISTS backlogs (
        backlog_id VARCHAR(255) PRIMARY KEY,
        account_id VARCHAR(255) NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
        company_id VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        FOREIGN KEY (company_id, account_id)
            REFERENCES companies(company_id, account_id) ON DELETE SET NULL (company_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS account_users (
        user_id VARCHAR(255) NOT NULL,
        account_id VARCHAR(255) NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
        privilege VARCHAR(20) NOT NULL DEFAULT 'none'
            CHECK (privilege IN ('none', 'read', 'readstatus', 'full')),
        admin BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, account_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS company_users (
        user_id VARCHAR(255) NOT NULL,
        company_id VARCHAR(255) NOT NULL REFERENCES companies(company_id) ON DELETE CASCADE,
        privilege VARCHAR(20) NOT NULL DEFAULT 'none'
            CHECK (privilege IN ('none', 'read', 'readstatus', 'full')),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, company_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS backlog_users (
        user_id VARCHAR(255) NOT NULL,
        backlog_id VARCHAR(255) NOT NULL REFERENCES backlogs(backlog_id) ON DELETE CASCADE,
        privilege VARCHAR(20) NOT NULL DEFAULT 'none'
            CHECK (privilege IN ('none', 'read', 'readstatus', 'full')),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, backlog_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_companies_account ON companies(account_id);",
    "CREATE INDEX IF NOT EXISTS idx_backlogs_account ON backlogs(account_id);",
    "CREATE INDEX IF NOT EXISTS idx_backlogs_company ON backlogs(company_id);",
]


class PostgreSQLGrantStore:
    """PostgreSQL-backed GrantStore, ScopeResolver and GrantWriter."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("privileges.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL grant store started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL grant store", error=str(e))
            raise ServiceError("Failed to start PostgreSQL grant store", {"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL grant store stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    async def _fetch(self, query: str, *args) -> List[Any]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Grant store query failed", error=str(e))
            raise ServiceError("Grant store unavailable", {"error": str(e)}) from e

    async def _execute(self, query: str, *args) -> str:
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args)
        except asyncpg.ForeignKeyViolationError:
            raise
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Grant store write failed", error=str(e))
            raise ServiceError("Grant store unavailable", {"error": str(e)}) from e

    def _single(self, rows: List[Any], scope: str, user_id: str, scope_id: str) -> Optional[Any]:
        """Return the unique row, or None. More than one row is an integrity failure."""
        if not rows:
            return None
        if len(rows) > 1:
            self.logger.error(
                "Duplicate grant rows",
                scope=scope,
                user_id=user_id,
                scope_id=scope_id,
                count=len(rows)
            )
            raise InvalidGrantState(
                f"{len(rows)} {scope} grants found for one user",
                {"scope": scope, "user_id": user_id, "scope_id": scope_id}
            )
        return rows[0]

    # GrantStore

    async def account_grant(self, user_id: str, account_id: str) -> Optional[AccountGrant]:
        rows = await self._fetch("""
            SELECT user_id, account_id, privilege, admin FROM account_users
            WHERE user_id = $1 AND account_id = $2
        """, user_id, account_id)
        row = self._single(rows, "account", user_id, account_id)
        if row is None:
            return None
        return AccountGrant(
            user_id=row['user_id'],
            account_id=row['account_id'],
            privilege=PrivilegeValue.parse(row['privilege']),
            is_admin=bool(row['admin'])
        )

    async def company_grant(self, user_id: str, company_id: str) -> Optional[CompanyGrant]:
        rows = await self._fetch("""
            SELECT user_id, company_id, privilege FROM company_users
            WHERE user_id = $1 AND company_id = $2
        """, user_id, company_id)
        row = self._single(rows, "company", user_id, company_id)
        if row is None:
            return None
        return CompanyGrant(
            user_id=row['user_id'],
            company_id=row['company_id'],
            privilege=PrivilegeValue.parse(row['privilege'])
        )

    async def backlog_grant(self, user_id: str, backlog_id: str) -> Optional[BacklogGrant]:
        rows = await self._fetch("""
            SELECT user_id, backlog_id, privilege FROM backlog_users
            WHERE user_id = $1 AND backlog_id = $2
        """, user_id, backlog_id)
        row = self._single(rows, "backlog", user_id, backlog_id)
        if row is None:
            return None
        return BacklogGrant(
            user_id=row['user_id'],
            backlog_id=row['backlog_id'],
            privilege=PrivilegeValue.parse(row['privilege'])
        )

    # ScopeResolver

    async def account_scope(self, account_id: str) -> AccountScope:
        rows = await self._fetch("SELECT account_id FROM accounts WHERE account_id = $1", account_id)
        if not rows:
            raise ResourceNotFound("account", account_id)
        return AccountScope(rows[0]['account_id'])

    async def company_scope(self, company_id: str) -> CompanyScope:
        rows = await self._fetch(
            "SELECT company_id, account_id FROM companies WHERE company_id = $1", company_id
        )
        if not rows:
            raise ResourceNotFound("company", company_id)
        return CompanyScope(rows[0]['company_id'], rows[0]['account_id'])

    async def backlog_scope(self, backlog_id: str) -> BacklogScope:
        rows = await self._fetch(
            "SELECT backlog_id, account_id, company_id FROM backlogs WHERE backlog_id = $1", backlog_id
        )
        if not rows:
            raise ResourceNotFound("backlog", backlog_id)
        row = rows[0]
        return BacklogScope(row['backlog_id'], row['account_id'], row['company_id'])

    # GrantWriter

    async def upsert_account_grant(self, grant: AccountGrant) -> AccountGrant:
        try:
            await self._execute("""
                INSERT INTO account_users (user_id, account_id, privilege, admin)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id, account_id) DO UPDATE SET
                    privilege = EXCLUDED.privilege,
                    admin = EXCLUDED.admin,
                    updated_at = NOW()
            """, grant.user_id, grant.account_id, grant.privilege.value, grant.is_admin)
        except asyncpg.ForeignKeyViolationError:
            raise ResourceNotFound("account", grant.account_id) from None
        self.logger.info("Account grant saved", user_id=grant.user_id, account_id=grant.account_id)
        return grant

    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        try:
            await self._execute("""
                INSERT INTO company_users (user_id, company_id, privilege)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, company_id) DO UPDATE SET
                    privilege = EXCLUDED.privilege,
                    updated_at = NOW()
            """, grant.user_id, grant.company_id, grant.privilege.value)
        except asyncpg.ForeignKeyViolationError:
            raise ResourceNotFound("company", grant.company_id) from None
        self.logger.info("Company grant saved", user_id=grant.user_id, company_id=grant.company_id)
        return grant

    async def upsert_backlog_grant(self, grant: BacklogGrant) -> BacklogGrant:
        try:
            await self._execute("""
                INSERT INTO backlog_users (user_id, backlog_id, privilege)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, backlog_id) DO UPDATE SET
                    privilege = EXCLUDED.privilege,
                    updated_at = NOW()
            """, grant.user_id, grant.backlog_id, grant.privilege.value)
        except asyncpg.ForeignKeyViolationError:
            raise ResourceNotFound("backlog", grant.backlog_id) from None
        self.logger.info("Backlog grant saved", user_id=grant.user_id, backlog_id=grant.backlog_id)
        return grant

    async def delete_account_grant(self, user_id: str, account_id: str) -> bool:
        result = await self._execute(
            "DELETE FROM account_users WHERE user_id = $1 AND account_id = $2", user_id, account_id
        )
        return self._deleted(result)

    async def delete_company_grant(self, user_id: str, company_id: str) -> bool:
        result = await self._execute(
            "DELETE FROM company_users WHERE user_id = $1 AND company_id = $2", user_id, company_id
        )
        return self._deleted(result)

    async def delete_backlog_grant(self, user_id: str, backlog_id: str) -> bool:
        result = await self._execute(
            "DELETE FROM backlog_users WHERE user_id = $1 AND backlog_id = $2", user_id, backlog_id
        )
        return self._deleted(result)

    # Foreign keys cascade grant removal beneath each deleted scope.

    async def delete_account(self, account_id: str) -> bool:
        result = await self._execute("DELETE FROM accounts WHERE account_id = $1", account_id)
        deleted = self._deleted(result)
        if deleted:
            self.logger.info("Account deleted", account_id=account_id)
        return deleted

    async def delete_company(self, company_id: str) -> bool:
        result = await self._execute("DELETE FROM companies WHERE company_id = $1", company_id)
        deleted = self._deleted(result)
        if deleted:
            self.logger.info("Company deleted", company_id=company_id)
        return deleted

    async def delete_backlog(self, backlog_id: str) -> bool:
        result = await self._execute("DELETE FROM backlogs WHERE backlog_id = $1", backlog_id)
        deleted = self._deleted(result)
        if deleted:
            self.logger.info("Backlog deleted", backlog_id=backlog_id)
        return deleted

    @staticmethod
    def _deleted(result: str) -> bool:
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return result is not None and result.split()[-1] != "0"

    async def get_store_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        rows = await self._fetch("""
            SELECT
                (SELECT COUNT(*) FROM accounts) AS accounts,
                (SELECT COUNT(*) FROM companies) AS companies,
                (SELECT COUNT(*) FROM backlogs) AS backlogs,
                (SELECT COUNT(*) FROM account_users) AS account_grants,
                (SELECT COUNT(*) FROM company_users) AS company_grants,
                (SELECT COUNT(*) FROM backlog_users) AS backlog_grants,
                (SELECT COUNT(*) FROM account_users WHERE admin) AS admins
        """)
        return dict(rows[0]) if rows else {}

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (asyncpg.PostgresError, OSError):
            return False
