"""Borrower eligibility rules.

``can_borrow`` and ``can_renew`` return an ``Eligibility`` value instead of
raising, so each transition decides whether a failed rule is a Forbidden
(request time) or a Conflict (approval and renewal time).

The concurrency cap also has a binding form: ``reserve_loan_slot`` is one
conditional increment on the member document. It is the step that decides
the winner when two approvals for the same member race.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import as_naive_utc, utcnow
from policy import PolicySnapshot
from schemas import LoanStatus, MembershipStatus, OPEN_STATUSES, Role

logger = logging.getLogger(__name__)

MEMBER_COLLECTION = "member"
LOAN_COLLECTION = "loan"


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self):
        return self.allowed


OK = Eligibility(True)


def blocked(code: str, reason: str) -> Eligibility:
    return Eligibility(False, code, reason)


@dataclass(frozen=True)
class MemberFacts:
    """Derived borrowing facts for one member at one instant."""
    exists: bool
    status: Optional[str] = None
    overdue_loans: int = 0
    unpaid_penalty_loans: int = 0
    open_loans: int = 0


def effective_status(loan: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Stored status, with an ACTIVE loan past its due date read as OVERDUE.

    Every rule goes through this so a loan behaves the same whether or not
    the overdue sweep has materialized its status yet.
    """
    status = loan["status"]
    due_date = as_naive_utc(loan.get("due_date"))
    if status == LoanStatus.ACTIVE.value and due_date is not None and due_date < (now or utcnow()):
        return LoanStatus.OVERDUE.value
    return status


def member_key(member_id: str):
    return ObjectId(member_id) if ObjectId.is_valid(member_id) else member_id


class EligibilityEvaluator:

    def __init__(self, db):
        self.db = db
        self.members = db[MEMBER_COLLECTION]
        self.loans = db[LOAN_COLLECTION]

    def overdue_query(self, member_id: str, now: datetime) -> Dict[str, Any]:
        return {
            "member_id": member_id,
            "$or": [
                {"status": LoanStatus.OVERDUE.value},
                {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": now}},
            ],
        }

    def facts(self, member_id: str, now: Optional[datetime] = None, session=None) -> MemberFacts:
        now = now or utcnow()
        member = self.members.find_one({"_id": member_key(member_id)}, session=session)
        if member is None:
            return MemberFacts(exists=False)
        overdue = self.loans.count_documents(self.overdue_query(member_id, now), session=session)
        unpaid = self.loans.count_documents(
            {
                "member_id": member_id,
                "status": {"$in": [LoanStatus.OVERDUE.value, LoanStatus.RETURNED.value]},
                "penalty_accrued": {"$gt": 0},
            },
            session=session,
        )
        open_count = self.loans.count_documents(
            {"member_id": member_id, "status": {"$in": OPEN_STATUSES}}, session=session
        )
        return MemberFacts(
            exists=True,
            status=member.get("status"),
            overdue_loans=overdue,
            unpaid_penalty_loans=unpaid,
            open_loans=open_count,
        )

    def can_borrow(self, member_id: str, policy: PolicySnapshot, now: Optional[datetime] = None,
                   session=None) -> Eligibility:
        facts = self.facts(member_id, now, session=session)
        if not facts.exists:
            result = blocked("member_not_found", "Member profile not found")
        elif facts.status != MembershipStatus.ACTIVE.value:
            result = blocked("membership_inactive", f"Cannot borrow books. Member status is {facts.status}")
        elif facts.overdue_loans > 0:
            result = blocked("overdue_loans", "Member has overdue loans. Please return them first.")
        elif facts.unpaid_penalty_loans > 0:
            result = blocked("unpaid_penalty", "Member has unpaid penalties. Please pay them first.")
        elif facts.open_loans >= policy.max_concurrent_loans:
            result = blocked(
                "loan_limit_reached",
                f"Member has reached the maximum concurrent loans limit ({policy.max_concurrent_loans})",
            )
        else:
            return OK
        logger.warning("Member %s cannot borrow: %s", member_id, result.code)
        return result

    def can_renew(self, loan: Dict[str, Any], actor_role: Role, policy: PolicySnapshot,
                  now: Optional[datetime] = None) -> Eligibility:
        now = now or utcnow()
        status = effective_status(loan, now)
        if status == LoanStatus.OVERDUE.value:
            return blocked("loan_overdue", "Overdue loans cannot be renewed. Please return the book.")
        if status != LoanStatus.ACTIVE.value:
            return blocked("loan_not_active", "Can only renew active loans")
        if loan.get("renewal_count", 0) >= policy.max_renewals:
            return blocked("renewal_limit_reached", f"Maximum renewals ({policy.max_renewals}) reached for this loan")
        if loan.get("penalty_accrued", 0) > 0:
            return blocked("loan_has_penalty", "Cannot renew a loan with an overdue penalty")
        if actor_role != Role.ADMIN:
            facts = self.facts(loan["member_id"], now)
            if facts.status != MembershipStatus.ACTIVE.value:
                return blocked("membership_inactive", f"Cannot renew loan while membership is {facts.status}")
            if facts.overdue_loans > 0:
                return blocked("overdue_loans", "Member has overdue loans. Please return them first.")
        return OK

    def reserve_loan_slot(self, member_id: str, policy: PolicySnapshot, session=None) -> bool:
        """Take one open-loan slot for the member if still ACTIVE and under the cap."""
        key = member_key(member_id)
        # Seed the counter once for members that predate it.
        self.members.update_one(
            {"_id": key, "open_loans": None},
            {"$set": {"open_loans": self.loans.count_documents(
                {"member_id": member_id, "status": {"$in": OPEN_STATUSES}}, session=session)}},
            session=session,
        )
        doc = self.members.find_one_and_update(
            {
                "_id": key,
                "status": MembershipStatus.ACTIVE.value,
                "open_loans": {"$lt": policy.max_concurrent_loans},
            },
            {"$inc": {"open_loans": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            logger.warning("Member %s: no open-loan slot left (cap %d)", member_id, policy.max_concurrent_loans)
            return False
        return True

    def release_loan_slot(self, member_id: str, session=None) -> None:
        self.members.update_one(
            {"_id": member_key(member_id), "open_loans": {"$gt": 0}},
            {"$inc": {"open_loans": -1}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
