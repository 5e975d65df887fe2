"""
Database Schemas for the Library Lending Service

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name.

Collections:
- Book
- Copy
- Member
- Loan
- Setting (single record holding the lending policy)
- AuditLog (collection name "audit_log")
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class Role(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"


class CopyStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ON_LOAN = "ON_LOAN"
    LOST = "LOST"
    DAMAGED = "DAMAGED"


class LoanStatus(str, Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = [LoanStatus.APPROVED.value, LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value]
NON_TERMINAL_STATUSES = [LoanStatus.REQUESTED.value] + OPEN_STATUSES


class Caller(BaseModel):
    """Identity resolved by the boundary layer before the engine is invoked."""
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Primary author")
    isbn: str = Field(..., description="ISBN identifier")
    category: Optional[str] = Field(None, description="Category/Genre")


class Copy(BaseModel):
    """
    Physical copies collection schema
    Collection name: "copy"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    book_id: str = Field(..., description="Book ObjectId as string")
    code: str = Field(..., description="Human readable copy code")
    status: CopyStatus = Field(CopyStatus.AVAILABLE, description="AVAILABLE | ON_LOAN | LOST | DAMAGED")
    loan_id: Optional[str] = Field(None, description="Open loan holding the claim on this copy")


class Member(BaseModel):
    """
    Members collection schema
    Collection name: "member"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    status: MembershipStatus = Field(MembershipStatus.PENDING, description="Membership status")
    open_loans: Optional[int] = Field(
        None, ge=0, description="Reserved APPROVED/ACTIVE/OVERDUE loan slots; seeded from the loan collection on first use"
    )


class LoanEvent(BaseModel):
    """One entry of a loan's append-only transition history."""
    model_config = ConfigDict(use_enum_values=True)

    action: str
    actor_id: str
    from_status: Optional[LoanStatus] = None
    to_status: LoanStatus
    at: datetime


class Loan(BaseModel):
    """
    Loans collection schema
    Collection name: "loan"
    """
    model_config = ConfigDict(use_enum_values=True)

    member_id: str = Field(..., description="Member ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string")
    copy_id: Optional[str] = Field(None, description="Assigned copy, set when the copy is claimed")
    requested_copy_id: Optional[str] = Field(None, description="Copy preferred by the member at request time")
    status: LoanStatus = Field(..., description="Lifecycle state")
    borrowed_at: Optional[datetime] = Field(None, description="Set when the copy is claimed (UTC)")
    due_date: Optional[datetime] = Field(None, description="Due date/time (UTC)")
    returned_at: Optional[datetime] = Field(None, description="Return date/time (UTC)")
    renewal_count: int = Field(0, ge=0)
    penalty_accrued: float = Field(0.0, ge=0, description="Overdue penalty, set once at return")
    rejection_reason: Optional[str] = Field(None, max_length=500)
    history: List[LoanEvent] = Field(default_factory=list)


class Setting(BaseModel):
    """
    Lending policy schema (single record)
    Collection name: "setting"
    """
    approvals_required: bool = Field(True, description="Loans wait for admin approval")
    loan_days: int = Field(14, ge=1)
    max_renewals: int = Field(1, ge=0)
    overdue_fee_per_day: float = Field(1000, ge=0)
    overdue_fee_cap_per_loan: float = Field(1000000, ge=0)
    max_concurrent_loans: int = Field(5, ge=1)
    currency: str = Field("IDR")
    notifications_enabled: bool = Field(True)
    due_soon_days: int = Field(3, ge=0)


class AuditLog(BaseModel):
    """
    Append-only audit trail
    Collection name: "audit_log"
    """
    actor_id: str
    action: str = Field(..., description="e.g. loan.approved")
    entity_type: str = Field("Loan")
    entity_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
