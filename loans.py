"""Loan lifecycle engine.

``LoanService`` owns every loan state transition::

    (create)  -> REQUESTED | APPROVED   member
    REQUESTED -> APPROVED | REJECTED    admin
    REQUESTED -> CANCELLED              owner or admin
    APPROVED  -> CANCELLED | ACTIVE     owner or admin | admin (checkout)
    ACTIVE    -> ACTIVE                 owner or admin (renew)
    ACTIVE    -> RETURNED               owner or admin
    OVERDUE   -> RETURNED               owner or admin

Each transition reads the lending policy once, authorizes the caller, checks
the business rules without writing anything, and then applies its writes in
one ``UnitOfWork``. Every write is conditional on the state it expects: a
loan update filters on the prior status, a copy claim on availability, and
a member slot on the concurrency cap. A transition that loses a race fails
with a ConflictError and leaves nothing behind. Audit and notification
happen after commit.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import OperationFailure

import events
from database import WRITE_CONFLICT, UnitOfWork, as_naive_utc, create_document, parse_object_id, to_str_id, utcnow
from eligibility import EligibilityEvaluator, effective_status, member_key
from errors import ConflictError, ForbiddenError, NotFoundError
from inventory import InventoryLedger
from penalty import ONE_DAY, calculate_penalty, overdue_days
from policy import MongoPolicyProvider, PolicySnapshot
from schemas import Caller, CopyStatus, Loan, LoanEvent, LoanStatus, MembershipStatus, Role

logger = logging.getLogger(__name__)

LOAN_COLLECTION = "loan"
BOOK_COLLECTION = "book"
MEMBER_COLLECTION = "member"

SYSTEM_ACTOR = "system"
SORT_FIELDS = ("due_date", "borrowed_at", "created_at", "status")
MAX_PAGE_SIZE = 100

ADMIN_ACTIONS = ("approve", "reject", "checkout", "sweep", "list")
OWNER_ACTIONS = ("renew", "cancel", "return", "view")


def authorize(action: str, caller: Caller, loan: Optional[Dict[str, Any]] = None) -> None:
    """Single authorization predicate for every loan action."""
    if action == "create":
        if caller.role != Role.MEMBER:
            raise ForbiddenError("Only members can borrow books", code="not_member")
    elif action in ADMIN_ACTIONS:
        if not caller.is_admin:
            raise ForbiddenError("Administrator role required", code="admin_required")
    elif action in OWNER_ACTIONS:
        if not caller.is_admin and loan["member_id"] != caller.id:
            logger.warning("User %s not authorized to %s loan %s", caller.id, action, loan["_id"])
            raise ForbiddenError(f"Not authorized to {action} this loan", code="not_loan_owner")
    else:
        raise ValueError(f"Unknown loan action: {action}")


class LoanService:

    def __init__(self, db, policy_provider=None, ledger: Optional[InventoryLedger] = None,
                 evaluator: Optional[EligibilityEvaluator] = None,
                 dispatcher: Optional[events.EventDispatcher] = None,
                 mongo_client=None, transactional: bool = False,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.loans = db[LOAN_COLLECTION]
        self.books = db[BOOK_COLLECTION]
        self.members = db[MEMBER_COLLECTION]
        self.policy_provider = policy_provider or MongoPolicyProvider(db)
        self.ledger = ledger or InventoryLedger(db)
        self.evaluator = evaluator or EligibilityEvaluator(db)
        self.dispatcher = dispatcher or events.EventDispatcher(events.MongoAuditSink(db), events.LogNotifier(db))
        self.mongo_client = mongo_client
        self.transactional = transactional
        self.clock = clock

    # ---------------- helpers ----------------

    def _unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.mongo_client, self.transactional)

    def _now(self) -> datetime:
        return as_naive_utc(self.clock())

    def _get_loan(self, loan_id: str) -> Dict[str, Any]:
        loan = self.loans.find_one({"_id": parse_object_id(loan_id, "Loan")})
        if loan is None:
            logger.warning("Loan not found: %s", loan_id)
            raise NotFoundError("Loan not found")
        return loan

    def _get_book(self, book_id: str) -> Dict[str, Any]:
        book = self.books.find_one({"_id": parse_object_id(book_id, "Book")})
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def _require_status(self, loan: Dict[str, Any], allowed: Iterable[LoanStatus], message: str,
                        code: str = "invalid_state") -> None:
        if loan["status"] not in [s.value for s in allowed]:
            logger.warning("Loan %s is %s: %s", loan["_id"], loan["status"], message)
            raise ConflictError(message, code=code)

    def _reserve_slot(self, member_id: str, policy: PolicySnapshot, uow: UnitOfWork) -> None:
        try:
            reserved = self.evaluator.reserve_loan_slot(member_id, policy, session=uow.session)
        except OperationFailure as err:
            if err.code != WRITE_CONFLICT:
                raise
            # Another open transaction is taking a slot for the same member.
            logger.warning("Slot reservation for member %s lost a write conflict", member_id)
            reserved = False
        if not reserved:
            raise ConflictError(
                "Borrower no longer eligible: concurrent loan limit reached or membership not active",
                code="borrower_ineligible",
            )
        uow.on_rollback(self.evaluator.release_loan_slot, member_id)

    def _claim(self, copy_id: str, loan_id: str, uow: UnitOfWork) -> Dict[str, Any]:
        copy = self.ledger.claim(copy_id, loan_id, session=uow.session)
        uow.on_rollback(self.ledger.release, copy_id, loan_id)
        return copy

    def _release(self, loan: Dict[str, Any], uow: UnitOfWork) -> None:
        """Give back the copy and the member slot held by an open loan."""
        loan_id = str(loan["_id"])
        if loan.get("copy_id") and self.ledger.release(loan["copy_id"], loan_id, session=uow.session):
            uow.on_rollback(self.ledger.claim, loan["copy_id"], loan_id)
        self.evaluator.release_loan_slot(loan["member_id"], session=uow.session)

    def _apply(self, loan: Dict[str, Any], action: str, actor_id: str, to_status: LoanStatus, now: datetime,
               uow: UnitOfWork, set_fields: Optional[Dict[str, Any]] = None, inc: Optional[Dict[str, int]] = None,
               extra_filter: Optional[Dict[str, Any]] = None,
               expected: Optional[Iterable[LoanStatus]] = None) -> Dict[str, Any]:
        """Conditional state change; the history entry is written in the same document update."""
        status_filter = {"$in": [s.value for s in expected]} if expected else loan["status"]
        query = {"_id": loan["_id"], "status": status_filter}
        query.update(extra_filter or {})
        entry = LoanEvent(action=action, actor_id=actor_id, from_status=loan["status"], to_status=to_status, at=now)
        update: Dict[str, Any] = {
            "$set": {"status": to_status.value, "updated_at": now, **(set_fields or {})},
            "$push": {"history": entry.model_dump()},
        }
        if inc:
            update["$inc"] = inc
        updated = self.loans.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER, session=uow.session
        )
        if updated is None:
            logger.warning("Loan %s changed concurrently; %s not applied", loan["_id"], action)
            raise ConflictError(f"Loan was modified concurrently; {action} not applied", code="stale_loan")
        return updated

    def _restore(self, before: Dict[str, Any], status_after: LoanStatus) -> None:
        self.loans.update_one(
            {"_id": before["_id"], "status": status_after.value},
            {
                "$set": {
                    "status": before["status"],
                    "returned_at": before.get("returned_at"),
                    "penalty_accrued": before.get("penalty_accrued", 0.0),
                    "updated_at": before.get("updated_at"),
                },
                "$pop": {"history": 1},
            },
        )

    def _view(self, loan: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Loan record enriched with borrower, book and copy summaries for display."""
        doc = to_str_id(dict(loan))
        book = self.books.find_one({"_id": ObjectId(loan["book_id"])}) if ObjectId.is_valid(loan["book_id"]) else None
        copy = self.ledger.find_copy(loan.get("copy_id"))
        doc["book"] = {"id": loan["book_id"], "title": book.get("title"), "isbn": book.get("isbn")} if book else None
        doc["copy"] = {"id": str(copy["_id"]), "code": copy.get("code"), "status": copy.get("status")} if copy else None
        member = self.members.find_one({"_id": member_key(loan["member_id"])}, {"name": 1, "email": 1})
        doc["member"] = (
            {"id": loan["member_id"], "name": member.get("name"), "email": member.get("email")} if member else None
        )
        doc["is_overdue"] = effective_status(loan, now or self._now()) == LoanStatus.OVERDUE.value
        return doc

    def _publish(self, actor_id: str, action: str, view: Dict[str, Any], policy: PolicySnapshot, **extra) -> None:
        metadata = {
            "loan_id": view["id"],
            "book_id": view["book_id"],
            "book_title": (view.get("book") or {}).get("title"),
            "copy_id": view.get("copy_id"),
            "copy_code": (view.get("copy") or {}).get("code"),
            "status": view["status"],
            "due_date": view.get("due_date"),
        }
        metadata.update(extra)
        self.dispatcher.publish(actor_id, action, view["id"], view["member_id"], metadata,
                                notify=policy.notifications_enabled)

    # ---------------- transitions ----------------

    def create_loan(self, caller: Caller, book_id: str, copy_id: Optional[str] = None) -> Dict[str, Any]:
        authorize("create", caller)
        policy = self.policy_provider.current()
        now = self._now()
        book = self._get_book(book_id)
        book_key = str(book["_id"])

        eligibility = self.evaluator.can_borrow(caller.id, policy, now)
        if not eligibility:
            raise ForbiddenError(eligibility.reason, code=eligibility.code)

        copy = self.ledger.resolve_for_book(book_key, copy_id)
        copy_key = str(copy["_id"])
        loan_oid = ObjectId()

        if policy.approvals_required:
            status = LoanStatus.REQUESTED
            loan = Loan(
                member_id=caller.id,
                book_id=book_key,
                requested_copy_id=copy_key,
                status=status,
                history=[LoanEvent(action="create", actor_id=caller.id, to_status=status, at=now)],
            )
            create_document(LOAN_COLLECTION, loan, database=self.db, _id=loan_oid)
            action = events.LOAN_REQUESTED
        else:
            status = LoanStatus.APPROVED
            with self._unit_of_work() as uow:
                self._reserve_slot(caller.id, policy, uow)
                self._claim(copy_key, str(loan_oid), uow)
                loan = Loan(
                    member_id=caller.id,
                    book_id=book_key,
                    copy_id=copy_key,
                    status=status,
                    borrowed_at=now,
                    due_date=now + timedelta(days=policy.loan_days),
                    history=[LoanEvent(action="create", actor_id=caller.id, to_status=status, at=now)],
                )
                create_document(LOAN_COLLECTION, loan, database=self.db, session=uow.session, _id=loan_oid)
            action = events.LOAN_APPROVED

        logger.info("Loan created: %s for member %s, book %s, status %s", loan_oid, caller.id, book_key, status.value)
        view = self._view(self.loans.find_one({"_id": loan_oid}), now)
        self._publish(caller.id, action, view, policy)
        return view

    def approve_loan(self, caller: Caller, loan_id: str, copy_id: Optional[str]) -> Dict[str, Any]:
        authorize("approve", caller)
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        self._require_status(loan, [LoanStatus.REQUESTED], "Cannot approve loan. Loan status must be REQUESTED")
        if not copy_id:
            raise ConflictError("Copy ID is required for approval", code="copy_required")

        copy = self.ledger.get_copy(copy_id)
        copy_key = str(copy["_id"])
        if copy["book_id"] != loan["book_id"]:
            raise ConflictError("Book copy does not belong to this book", code="copy_mismatch")
        if copy["status"] != CopyStatus.AVAILABLE.value or copy.get("loan_id"):
            raise ConflictError("Book copy is not available", code="copy_unavailable")
        if self.ledger.open_loan_for(copy_key, exclude_loan_id=loan["_id"]):
            raise ConflictError("Book copy is already assigned to another open loan", code="copy_unavailable")

        # Binding re-check: the member may have been suspended or borrowed elsewhere since requesting.
        eligibility = self.evaluator.can_borrow(loan["member_id"], policy, now)
        if not eligibility:
            raise ConflictError(f"Borrower no longer eligible: {eligibility.reason}", code="borrower_ineligible")

        with self._unit_of_work() as uow:
            self._reserve_slot(loan["member_id"], policy, uow)
            self._claim(copy_key, str(loan["_id"]), uow)
            updated = self._apply(
                loan, "approve", caller.id, LoanStatus.APPROVED, now, uow,
                set_fields={
                    "copy_id": copy_key,
                    "borrowed_at": now,
                    "due_date": now + timedelta(days=policy.loan_days),
                },
            )

        logger.info("Loan approved: %s by admin %s, copy %s", loan_id, caller.id, copy_key)
        view = self._view(updated, now)
        self._publish(caller.id, events.LOAN_APPROVED, view, policy, previous_status=loan["status"])
        return view

    def reject_loan(self, caller: Caller, loan_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        authorize("reject", caller)
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        self._require_status(loan, [LoanStatus.REQUESTED], "Cannot reject loan. Loan status must be REQUESTED")

        with self._unit_of_work() as uow:
            updated = self._apply(
                loan, "reject", caller.id, LoanStatus.REJECTED, now, uow,
                set_fields={"rejection_reason": reason},
            )

        logger.info("Loan rejected: %s by admin %s", loan_id, caller.id)
        view = self._view(updated, now)
        self._publish(caller.id, events.LOAN_REJECTED, view, policy, rejection_reason=reason)
        return view

    def approve_or_reject(self, caller: Caller, loan_id: str, action: str, copy_id: Optional[str] = None,
                          rejection_reason: Optional[str] = None) -> Dict[str, Any]:
        if action == "approve":
            return self.approve_loan(caller, loan_id, copy_id)
        if action == "reject":
            return self.reject_loan(caller, loan_id, rejection_reason)
        raise ValueError(f"Unknown action: {action}")

    def checkout_loan(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        authorize("checkout", caller)
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        self._require_status(loan, [LoanStatus.APPROVED], "Loan is not in APPROVED status")

        facts = self.evaluator.facts(loan["member_id"], now)
        if facts.status != MembershipStatus.ACTIVE.value:
            logger.warning("Cannot checkout loan %s: member %s is %s", loan_id, loan["member_id"], facts.status)
            raise ConflictError(f"Cannot checkout. Member status is {facts.status}", code="membership_inactive")
        copy = self.ledger.find_copy(loan.get("copy_id"))
        if copy is None or copy["status"] != CopyStatus.ON_LOAN.value or copy.get("loan_id") != str(loan["_id"]):
            logger.warning("Cannot checkout loan %s: copy %s not held by it", loan_id, loan.get("copy_id"))
            raise ConflictError("Copy is not available for checkout", code="copy_unavailable")

        # borrowed_at/due_date were fixed at approval and stay as they are.
        with self._unit_of_work() as uow:
            updated = self._apply(loan, "checkout", caller.id, LoanStatus.ACTIVE, now, uow)

        logger.info("Loan checked out: %s by admin %s", loan_id, caller.id)
        view = self._view(updated, now)
        self._publish(caller.id, events.LOAN_CHECKED_OUT, view, policy)
        return view

    def renew_loan(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        authorize("renew", caller, loan)

        eligibility = self.evaluator.can_renew(loan, caller.role, policy, now)
        if not eligibility:
            logger.warning("Loan %s cannot be renewed: %s", loan_id, eligibility.code)
            raise ConflictError(eligibility.reason, code=eligibility.code)

        # Extend from the current due date so renewals compound forward.
        new_due_date = as_naive_utc(loan["due_date"]) + timedelta(days=policy.loan_days)
        renewal_count = loan.get("renewal_count", 0)
        with self._unit_of_work() as uow:
            updated = self._apply(
                loan, "renew", caller.id, LoanStatus.ACTIVE, now, uow,
                set_fields={"due_date": new_due_date},
                inc={"renewal_count": 1},
                extra_filter={
                    "renewal_count": renewal_count,
                    "due_date": loan["due_date"],
                    "penalty_accrued": {"$lte": 0},
                },
            )

        logger.info("Loan renewed: %s by %s, new due date %s (renewal %d)", loan_id, caller.id,
                    new_due_date.isoformat(), renewal_count + 1)
        view = self._view(updated, now)
        self._publish(caller.id, events.LOAN_RENEWED, view, policy, renewal_count=renewal_count + 1)
        return view

    def cancel_loan(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        authorize("cancel", caller, loan)
        self._require_status(loan, [LoanStatus.REQUESTED, LoanStatus.APPROVED],
                             f"Cannot cancel loan with status {loan['status']}. "
                             "Only REQUESTED or APPROVED loans can be cancelled.")

        with self._unit_of_work() as uow:
            updated = self._apply(loan, "cancel", caller.id, LoanStatus.CANCELLED, now, uow)
            uow.on_rollback(self._restore, loan, LoanStatus.CANCELLED)
            if loan["status"] == LoanStatus.APPROVED.value:
                self._release(loan, uow)

        logger.info("Loan cancelled: %s by %s (was %s)", loan_id, caller.id, loan["status"])
        view = self._view(updated, now)
        self._publish(caller.id, events.LOAN_CANCELLED, view, policy, previous_status=loan["status"])
        return view

    def return_loan(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        policy = self.policy_provider.current()
        now = self._now()
        loan = self._get_loan(loan_id)
        authorize("return", caller, loan)
        if loan["status"] == LoanStatus.RETURNED.value:
            raise ConflictError("Loan already returned", code="already_returned")
        self._require_status(loan, [LoanStatus.ACTIVE, LoanStatus.OVERDUE],
                             f"Cannot return loan with status {loan['status']}. "
                             "Only ACTIVE or OVERDUE loans can be returned.")

        due_date = as_naive_utc(loan.get("due_date"))
        days_late = overdue_days(due_date, now) if due_date else 0
        penalty = calculate_penalty(due_date, now, policy.overdue_fee_per_day,
                                    policy.overdue_fee_cap_per_loan) if due_date else 0
        if days_late:
            logger.info("Loan %s is overdue by %d days. Penalty: %s %s", loan_id, days_late, penalty, policy.currency)

        with self._unit_of_work() as uow:
            updated = self._apply(
                loan, "return", caller.id, LoanStatus.RETURNED, now, uow,
                set_fields={"returned_at": now, "penalty_accrued": float(penalty)},
                extra_filter={"returned_at": None},
                expected=[LoanStatus.ACTIVE, LoanStatus.OVERDUE],
            )
            uow.on_rollback(self._restore, loan, LoanStatus.RETURNED)
            self._release(loan, uow)

        logger.info("Loan returned: %s by %s, penalty: %s", loan_id, caller.id, penalty)
        view = self._view(updated, now)
        view["overdue_days"] = days_late
        self._publish(caller.id, events.LOAN_RETURNED, view, policy,
                      overdue_days=days_late, penalty_accrued=float(penalty))
        return view

    # ---------------- overdue sweep ----------------

    def mark_overdue(self, now: Optional[datetime] = None) -> int:
        """Materialize OVERDUE for ACTIVE loans past their due date."""
        now = as_naive_utc(now) if now else self._now()
        entry = LoanEvent(action="overdue", actor_id=SYSTEM_ACTOR, from_status=LoanStatus.ACTIVE,
                          to_status=LoanStatus.OVERDUE, at=now)
        result = self.loans.update_many(
            {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": now}},
            {"$set": {"status": LoanStatus.OVERDUE.value, "updated_at": now}, "$push": {"history": entry.model_dump()}},
        )
        if result.modified_count:
            logger.info("Marked %d loans overdue", result.modified_count)
        return result.modified_count

    def sweep_overdue(self, caller: Caller) -> Dict[str, int]:
        authorize("sweep", caller)
        return {"marked_overdue": self.mark_overdue()}

    # ---------------- queries ----------------

    def get_loan(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        loan = self._get_loan(loan_id)
        authorize("view", caller, loan)
        return self._view(loan)

    def _page(self, query: Dict[str, Any], sort_by: str, sort_order: str, page: int, page_size: int):
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by}")
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        direction = DESCENDING if sort_order == "desc" else ASCENDING
        total = self.loans.count_documents(query)
        cursor = self.loans.find(query).sort(sort_by, direction).skip((page - 1) * page_size).limit(page_size)
        meta = {
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": math.ceil(total / page_size),
        }
        return list(cursor), meta

    def list_loans(self, caller: Caller, status: Optional[LoanStatus] = None, member_id: Optional[str] = None,
                   book_id: Optional[str] = None, due_before: Optional[datetime] = None,
                   due_after: Optional[datetime] = None, sort_by: str = "due_date", sort_order: str = "asc",
                   page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        authorize("list", caller)
        now = self._now()
        self.mark_overdue(now)
        query: Dict[str, Any] = {}
        if status:
            query["status"] = LoanStatus(status).value
        if member_id:
            query["member_id"] = member_id
        if book_id:
            query["book_id"] = book_id
        if due_before or due_after:
            query["due_date"] = {}
            if due_before:
                query["due_date"]["$lte"] = as_naive_utc(due_before)
            if due_after:
                query["due_date"]["$gte"] = as_naive_utc(due_after)
        docs, meta = self._page(query, sort_by, sort_order, page, page_size)
        logger.info("Listed %d loans (page %d/%d, total %d)", len(docs), meta["page"], meta["total_pages"],
                    meta["total"])
        return {"items": [self._view(d, now) for d in docs], **meta}

    def list_member_loans(self, caller: Caller, status: Optional[LoanStatus] = None, sort_by: str = "due_date",
                          sort_order: str = "asc", page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """The caller's own loans with can_renew / is_overdue / days_until_due."""
        policy = self.policy_provider.current()
        now = self._now()
        self.mark_overdue(now)
        query: Dict[str, Any] = {"member_id": caller.id}
        if status:
            query["status"] = LoanStatus(status).value
        docs, meta = self._page(query, sort_by, sort_order, page, page_size)

        items = []
        for loan in docs:
            view = self._view(loan, now)
            due_date = as_naive_utc(loan.get("due_date"))
            days_until_due = math.ceil((due_date - now) / ONE_DAY) if due_date else 0
            view["can_renew"] = bool(self.evaluator.can_renew(loan, caller.role, policy, now))
            view["days_until_due"] = days_until_due
            view["is_due_soon"] = (
                loan["status"] == LoanStatus.ACTIVE.value
                and not view["is_overdue"]
                and due_date is not None
                and days_until_due <= policy.due_soon_days
            )
            items.append(view)
        return {"items": items, **meta}
