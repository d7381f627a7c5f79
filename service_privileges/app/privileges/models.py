"""
Privilege data models for the Privileges Service.
"""

from typing import Optional
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import ValidationError


class PrivilegeValue(str, Enum):
    """Privilege levels, totally ordered NONE < READ < READ_STATUS < FULL.

    Members compare by rank, not by their string codes.
    """
    NONE = "none"
    READ = "read"
    READ_STATUS = "readstatus"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _PRIVILEGE_RANKS[self]

    @classmethod
    def parse(cls, code: str) -> "PrivilegeValue":
        """Parse a stored privilege code, rejecting anything outside the enum."""
        if isinstance(code, cls):
            return code
        try:
            return cls(str(code).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid privilege code '{code}'",
                {"allowed": [p.value for p in cls]}
            ) from None

    def __lt__(self, other):
        if not isinstance(other, PrivilegeValue):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, PrivilegeValue):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, PrivilegeValue):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, PrivilegeValue):
            return NotImplemented
        return self.rank >= other.rank

    def __hash__(self):
        return str.__hash__(self)


_PRIVILEGE_RANKS = {
    PrivilegeValue.NONE: 0,
    PrivilegeValue.READ: 1,
    PrivilegeValue.READ_STATUS: 2,
    PrivilegeValue.FULL: 3,
}


class ResourceKind(str, Enum):
    """Scopes a privilege can be resolved against."""
    ACCOUNT = "account"
    COMPANY = "company"
    BACKLOG = "backlog"


class GrantSource(str, Enum):
    """Which rule decided an effective privilege."""
    ADMIN = "admin"
    BACKLOG = "backlog"
    COMPANY = "company"
    ACCOUNT = "account"
    NONE = "none"


class DenyReason(str, Enum):
    """Why the access gate refused a request."""
    INSUFFICIENT_PRIVILEGE = "insufficient_privilege"
    NO_GRANT = "no_grant"
    RESOURCE_NOT_FOUND = "resource_not_found"


@dataclass(frozen=True)
class ResourceRef:
    """Reference to an account, company or backlog by id."""
    kind: ResourceKind
    resource_id: str

    @classmethod
    def account(cls, account_id: str) -> "ResourceRef":
        return cls(ResourceKind.ACCOUNT, account_id)

    @classmethod
    def company(cls, company_id: str) -> "ResourceRef":
        return cls(ResourceKind.COMPANY, company_id)

    @classmethod
    def backlog(cls, backlog_id: str) -> "ResourceRef":
        return cls(ResourceKind.BACKLOG, backlog_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.resource_id}"


@dataclass(frozen=True)
class AccountGrant:
    """Account membership. ``is_admin`` overrides every narrower grant."""
    user_id: str
    account_id: str
    privilege: PrivilegeValue = PrivilegeValue.NONE
    is_admin: bool = False


@dataclass(frozen=True)
class CompanyGrant:
    """Company membership, applying to the company's backlogs."""
    user_id: str
    company_id: str
    privilege: PrivilegeValue = PrivilegeValue.NONE


@dataclass(frozen=True)
class BacklogGrant:
    """Backlog membership, the most specific grant."""
    user_id: str
    backlog_id: str
    privilege: PrivilegeValue = PrivilegeValue.NONE


@dataclass(frozen=True)
class AccountScope:
    account_id: str


@dataclass(frozen=True)
class CompanyScope:
    company_id: str
    account_id: str


@dataclass(frozen=True)
class BacklogScope:
    backlog_id: str
    account_id: str
    company_id: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    """Effective privilege together with the scope that decided it."""
    privilege: PrivilegeValue
    source: GrantSource

    @property
    def has_grant(self) -> bool:
        return self.source != GrantSource.NONE


@dataclass(frozen=True)
class AccessDecision:
    """Allow, or Deny with a reason."""
    allowed: bool
    effective: PrivilegeValue = PrivilegeValue.NONE
    reason: Optional[DenyReason] = None

    @classmethod
    def allow(cls, effective: PrivilegeValue) -> "AccessDecision":
        return cls(allowed=True, effective=effective)

    @classmethod
    def deny(cls, reason: DenyReason, effective: PrivilegeValue = PrivilegeValue.NONE) -> "AccessDecision":
        return cls(allowed=False, effective=effective, reason=reason)

    @property
    def status_code(self) -> int:
        """Transport status for this decision.

        Every Deny maps to 403 so callers cannot tell a hidden resource
        from a missing one.
        """
        return 200 if self.allowed else 403


class ResolveRequest(BaseModel):
    """Request model for privilege resolution."""
    user_id: str = Field(..., min_length=1, description="User ID")
    resource_kind: ResourceKind = Field(..., description="account, company or backlog")
    resource_id: str = Field(..., min_length=1, description="Resource ID")


class ResolveResponse(BaseModel):
    """Response model for privilege resolution."""
    user_id: str
    resource_kind: ResourceKind
    resource_id: str
    privilege: PrivilegeValue
    source: GrantSource


class CheckRequest(ResolveRequest):
    """Request model for an access gate check."""
    required: PrivilegeValue = Field(..., description="Minimum privilege the operation needs")


class CheckResponse(BaseModel):
    """Response model for an access gate check."""
    allowed: bool = Field(..., description="Whether the operation is allowed")
    reason: Optional[DenyReason] = Field(None, description="Deny reason, absent when allowed")
    status_code: int = Field(..., description="Suggested transport status")


class AccountGrantRequest(BaseModel):
    """Request model for creating or updating an account grant."""
    model_config = ConfigDict(extra="forbid")

    privilege: PrivilegeValue = Field(PrivilegeValue.NONE, description="Privilege level")
    admin: bool = Field(False, description="Account administrator flag")


class ScopedGrantRequest(BaseModel):
    """Request model for company and backlog grants. There is no admin flag below the account."""
    model_config = ConfigDict(extra="forbid")

    privilege: PrivilegeValue = Field(..., description="Privilege level")


class GrantResponse(BaseModel):
    """Response model for grant operations."""
    scope: ResourceKind
    scope_id: str
    user_id: str
    privilege: PrivilegeValue
    admin: bool = False
