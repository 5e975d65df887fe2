from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from conftest import START
from eligibility import OK
from errors import ConfigurationError, ConflictError, ForbiddenError, NotFoundError
from events import EventDispatcher, MongoAuditSink
from loans import LoanService
from schemas import Caller, Role


def open_loans_for_copy(db, copy_id):
    return db["loan"].count_documents(
        {"copy_id": copy_id, "status": {"$in": ["REQUESTED", "APPROVED", "ACTIVE", "OVERDUE"]}}
    )


class TestCreate:

    def test_auto_approve_claims_lowest_coded_copy(self, service, member, book, library):
        book_id, copies = book
        loan = service.create_loan(member, book_id)
        assert loan["status"] == "APPROVED"
        assert loan["copy_id"] == copies[0]
        assert loan["copy"]["code"] == "DUN-001"
        assert loan["book"]["title"] == "Dune"
        assert loan["borrowed_at"] == START
        assert loan["due_date"] == START + timedelta(days=14)
        assert loan["renewal_count"] == 0
        assert loan["penalty_accrued"] == 0
        copy = library.copy(copies[0])
        assert copy["status"] == "ON_LOAN"
        assert copy["loan_id"] == loan["id"]
        assert library.member(member.id)["open_loans"] == 1

    def test_approval_required_leaves_copy_unclaimed(self, service, set_policy, member, book, library):
        set_policy(approvals_required=True)
        book_id, copies = book
        loan = service.create_loan(member, book_id, copies[1])
        assert loan["status"] == "REQUESTED"
        assert loan["copy_id"] is None
        assert loan["requested_copy_id"] == copies[1]
        assert loan["borrowed_at"] is None
        assert loan["due_date"] is None
        assert library.copy(copies[1])["status"] == "AVAILABLE"

    def test_overdue_member_is_forbidden_and_nothing_is_created(self, service, member, book, library):
        book_id, copies = book
        library.add_loan(member.id, book_id, "OVERDUE", copies[0], due_date=START - timedelta(days=1))
        before = library.db["loan"].count_documents({})
        with pytest.raises(ForbiddenError) as exc:
            service.create_loan(member, book_id)
        assert "has overdue loans" in exc.value.message
        assert exc.value.code == "overdue_loans"
        assert library.db["loan"].count_documents({}) == before

    def test_no_available_copy_conflicts(self, service, member, library):
        book_id, copies = library.add_book(copies=1)
        library.db["copy"].update_one({}, {"$set": {"status": "DAMAGED"}})
        with pytest.raises(ConflictError) as exc:
            service.create_loan(member, book_id)
        assert exc.value.code == "no_copies"
        assert library.db["loan"].count_documents({}) == 0

    def test_requested_copy_must_be_available(self, service, member, book, library):
        book_id, copies = book
        other = Caller(id=library.add_member(name="Bob"), role=Role.MEMBER)
        service.create_loan(other, book_id, copies[0])
        with pytest.raises(ConflictError):
            service.create_loan(member, book_id, copies[0])

    def test_unknown_book(self, service, member):
        with pytest.raises(NotFoundError):
            service.create_loan(member, "65a000000000000000000000")
        with pytest.raises(NotFoundError):
            service.create_loan(member, "garbage")

    def test_admin_cannot_borrow(self, service, admin, book):
        with pytest.raises(ForbiddenError):
            service.create_loan(admin, book[0])

    def test_missing_policy_refuses_everything(self, service, member, book, library):
        library.db["setting"].delete_many({})
        with pytest.raises(ConfigurationError):
            service.create_loan(member, book[0])
        assert library.db["loan"].count_documents({}) == 0
        assert library.copy(book[1][0])["status"] == "AVAILABLE"


class TestApprove:

    @pytest.fixture(autouse=True)
    def approvals(self, set_policy):
        set_policy(approvals_required=True)

    def test_approve_claims_copy_and_sets_dates(self, service, clock, admin, member, book, library):
        book_id, copies = book
        requested = service.create_loan(member, book_id)
        clock.advance(hours=5)
        loan = service.approve_loan(admin, requested["id"], copies[1])
        assert loan["status"] == "APPROVED"
        assert loan["copy_id"] == copies[1]
        assert loan["borrowed_at"] == START + timedelta(hours=5)
        assert loan["due_date"] == START + timedelta(hours=5, days=14)
        assert library.copy(copies[1])["status"] == "ON_LOAN"
        assert [h["action"] for h in loan["history"]] == ["create", "approve"]

    def test_copy_from_other_book_conflicts(self, service, admin, member, book, library):
        _, other_copies = library.add_book(title="Emma", copies=1)
        requested = service.create_loan(member, book[0])
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, requested["id"], other_copies[0])
        assert exc.value.code == "copy_mismatch"

    def test_copy_already_claimed_conflicts(self, service, admin, member, book, library):
        book_id, copies = book
        other = Caller(id=library.add_member(name="Bob"), role=Role.MEMBER)
        first = service.create_loan(other, book_id)
        second = service.create_loan(member, book_id)
        service.approve_loan(admin, first["id"], copies[0])
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, second["id"], copies[0])
        assert exc.value.code == "copy_unavailable"
        assert library.loan(second["id"])["status"] == "REQUESTED"
        assert open_loans_for_copy(library.db, copies[0]) == 1

    def test_only_requested_loans_can_be_approved(self, service, admin, member, book):
        requested = service.create_loan(member, book[0])
        service.approve_loan(admin, requested["id"], book[1][0])
        with pytest.raises(ConflictError):
            service.approve_loan(admin, requested["id"], book[1][1])

    def test_copy_id_is_required(self, service, admin, member, book):
        requested = service.create_loan(member, book[0])
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, requested["id"], None)
        assert exc.value.code == "copy_required"

    def test_member_suspended_since_request_conflicts(self, service, admin, member, book, library):
        requested = service.create_loan(member, book[0])
        library.db["member"].update_one({"_id": ObjectId(member.id)}, {"$set": {"status": "SUSPENDED"}})
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, requested["id"], book[1][0])
        assert exc.value.message.startswith("Borrower no longer eligible")
        assert library.copy(book[1][0])["status"] == "AVAILABLE"

    def test_members_cannot_approve(self, service, member, book):
        requested = service.create_loan(member, book[0])
        with pytest.raises(ForbiddenError):
            service.approve_loan(member, requested["id"], book[1][0])

    def test_reject_records_reason_without_touching_inventory(self, service, admin, member, book, library):
        requested = service.create_loan(member, book[0])
        loan = service.approve_or_reject(admin, requested["id"], "reject", rejection_reason="Reserved for class")
        assert loan["status"] == "REJECTED"
        assert loan["rejection_reason"] == "Reserved for class"
        assert all(library.copy(c)["status"] == "AVAILABLE" for c in book[1])
        with pytest.raises(ConflictError):
            service.reject_loan(admin, requested["id"])


class TestApprovalRace:
    """Member sits at max - 1 open loans and has two requests waiting."""

    @pytest.fixture
    def setup(self, set_policy, service, member, library):
        set_policy(approvals_required=True, max_concurrent_loans=3)
        book_id, copies = library.add_book(copies=4)
        library.add_loan(member.id, book_id, "ACTIVE", copies[0], due_date=START + timedelta(days=7))
        library.add_loan(member.id, book_id, "ACTIVE", copies[1], due_date=START + timedelta(days=7))
        first = service.create_loan(member, book_id)
        second = service.create_loan(member, book_id)
        return first["id"], second["id"], copies[2], copies[3]

    def test_sequential_second_approval_conflicts(self, service, admin, member, library, setup):
        first, second, copy_a, copy_b = setup
        service.approve_loan(admin, first, copy_a)
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, second, copy_b)
        assert exc.value.code == "borrower_ineligible"
        assert "Borrower no longer eligible" in exc.value.message
        assert library.db["loan"].count_documents(
            {"member_id": member.id, "status": {"$in": ["APPROVED", "ACTIVE", "OVERDUE"]}}) == 3

    def test_stale_eligibility_read_still_loses_at_slot_reservation(self, service, admin, member, library, setup,
                                                                     monkeypatch):
        first, second, copy_a, copy_b = setup
        # Both approvals observed the member below the cap before either committed.
        monkeypatch.setattr(service.evaluator, "can_borrow", lambda *args, **kwargs: OK)
        service.approve_loan(admin, first, copy_a)
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, second, copy_b)
        assert exc.value.code == "borrower_ineligible"
        assert library.loan(second)["status"] == "REQUESTED"
        assert library.copy(copy_b)["status"] == "AVAILABLE"
        assert library.member(member.id)["open_loans"] == 3

    def test_lost_copy_claim_gives_back_member_slot(self, service, admin, member, library, setup, monkeypatch):
        first, _, copy_a, _ = setup
        monkeypatch.setattr(service.ledger, "get_copy", lambda copy_id, session=None: {
            "_id": ObjectId(copy_a), "book_id": library.loan(first)["book_id"], "status": "AVAILABLE", "loan_id": None,
        })
        library.db["copy"].update_one({"_id": ObjectId(copy_a)}, {"$set": {"status": "ON_LOAN", "loan_id": "x"}})
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, first, copy_a)
        assert exc.value.code == "copy_unavailable"
        assert library.member(member.id)["open_loans"] == 2
        assert library.loan(first)["status"] == "REQUESTED"

    def test_write_conflict_on_member_reads_as_borrower_ineligible(self, service, admin, member, library, setup,
                                                                   monkeypatch):
        first, _, copy_a, _ = setup

        def conflicting_reservation(*args, **kwargs):
            # What an open transaction sees when another one already wrote the member.
            raise OperationFailure("WriteConflict error", code=112)

        monkeypatch.setattr(service.evaluator, "reserve_loan_slot", conflicting_reservation)
        with pytest.raises(ConflictError) as exc:
            service.approve_loan(admin, first, copy_a)
        assert exc.value.code == "borrower_ineligible"
        assert exc.value.message.startswith("Borrower no longer eligible")
        assert library.loan(first)["status"] == "REQUESTED"
        assert library.copy(copy_a)["status"] == "AVAILABLE"

    def test_other_store_failures_during_reservation_propagate(self, service, admin, library, setup, monkeypatch):
        first, _, copy_a, _ = setup

        def failing_reservation(*args, **kwargs):
            raise OperationFailure("not primary", code=10107)

        monkeypatch.setattr(service.evaluator, "reserve_loan_slot", failing_reservation)
        with pytest.raises(OperationFailure):
            service.approve_loan(admin, first, copy_a)
        assert library.loan(first)["status"] == "REQUESTED"


class TestCheckout:

    def test_checkout_keeps_approval_dates(self, service, clock, admin, member, book):
        loan = service.create_loan(member, book[0])
        clock.advance(days=2)
        active = service.checkout_loan(admin, loan["id"])
        assert active["status"] == "ACTIVE"
        assert active["borrowed_at"] == loan["borrowed_at"]
        assert active["due_date"] == loan["due_date"]

    def test_checkout_requires_approved(self, service, set_policy, admin, member, book):
        set_policy(approvals_required=True)
        loan = service.create_loan(member, book[0])
        with pytest.raises(ConflictError):
            service.checkout_loan(admin, loan["id"])

    def test_suspended_member_cannot_check_out(self, service, admin, member, book, library):
        loan = service.create_loan(member, book[0])
        library.db["member"].update_one({"_id": ObjectId(member.id)}, {"$set": {"status": "SUSPENDED"}})
        with pytest.raises(ConflictError) as exc:
            service.checkout_loan(admin, loan["id"])
        assert exc.value.code == "membership_inactive"

    def test_copy_no_longer_held_conflicts(self, service, admin, member, book, library):
        loan = service.create_loan(member, book[0])
        library.db["copy"].update_one({"_id": ObjectId(loan["copy_id"])}, {"$set": {"status": "DAMAGED"}})
        with pytest.raises(ConflictError) as exc:
            service.checkout_loan(admin, loan["id"])
        assert exc.value.code == "copy_unavailable"


class TestRenew:

    @pytest.fixture
    def active_loan(self, service, admin, member, book):
        loan = service.create_loan(member, book[0])
        return service.checkout_loan(admin, loan["id"])

    def test_renewal_extends_from_current_due_date(self, service, clock, member, active_loan):
        clock.advance(days=5)
        renewed = service.renew_loan(member, active_loan["id"])
        assert renewed["due_date"] == active_loan["due_date"] + timedelta(days=14)
        assert renewed["renewal_count"] == 1
        assert renewed["status"] == "ACTIVE"

    def test_renewal_at_cap_conflicts_and_changes_nothing(self, service, member, active_loan, library):
        renewed = service.renew_loan(member, active_loan["id"])
        with pytest.raises(ConflictError) as exc:
            service.renew_loan(member, active_loan["id"])
        assert exc.value.code == "renewal_limit_reached"
        stored = library.loan(active_loan["id"])
        assert stored["renewal_count"] == 1
        assert stored["due_date"] == renewed["due_date"]

    def test_overdue_loan_cannot_be_renewed(self, service, clock, admin, active_loan):
        clock.advance(days=15)
        with pytest.raises(ConflictError) as exc:
            service.renew_loan(admin, active_loan["id"])
        assert exc.value.code == "loan_overdue"

    def test_swept_overdue_loan_cannot_be_renewed(self, service, clock, admin, active_loan, library):
        clock.advance(days=15)
        assert service.mark_overdue() == 1
        assert library.loan(active_loan["id"])["status"] == "OVERDUE"
        with pytest.raises(ConflictError):
            service.renew_loan(admin, active_loan["id"])

    def test_only_owner_or_admin(self, service, admin, active_loan, library):
        stranger = Caller(id=library.add_member(name="Eve"), role=Role.MEMBER)
        with pytest.raises(ForbiddenError):
            service.renew_loan(stranger, active_loan["id"])
        assert service.renew_loan(admin, active_loan["id"])["renewal_count"] == 1

    def test_admin_overrides_suspension(self, service, admin, member, active_loan, library):
        library.db["member"].update_one({"_id": ObjectId(member.id)}, {"$set": {"status": "SUSPENDED"}})
        with pytest.raises(ConflictError):
            service.renew_loan(member, active_loan["id"])
        assert service.renew_loan(admin, active_loan["id"])["renewal_count"] == 1

    def test_approved_loan_cannot_be_renewed(self, service, member, book):
        loan = service.create_loan(member, book[0])
        with pytest.raises(ConflictError) as exc:
            service.renew_loan(member, loan["id"])
        assert exc.value.code == "loan_not_active"


class TestCancel:

    def test_cancel_approved_releases_copy(self, service, set_policy, admin, member, book, library):
        set_policy(approvals_required=True)
        requested = service.create_loan(member, book[0])
        approved = service.approve_loan(admin, requested["id"], book[1][0])
        assert library.copy(book[1][0])["status"] == "ON_LOAN"
        cancelled = service.cancel_loan(member, approved["id"])
        assert cancelled["status"] == "CANCELLED"
        copy = library.copy(book[1][0])
        assert copy["status"] == "AVAILABLE"
        assert copy["loan_id"] is None
        assert library.member(member.id)["open_loans"] == 0

    def test_cancel_requested(self, service, set_policy, admin, member, book):
        set_policy(approvals_required=True)
        requested = service.create_loan(member, book[0])
        assert service.cancel_loan(admin, requested["id"])["status"] == "CANCELLED"

    def test_active_loan_cannot_be_cancelled(self, service, admin, member, book):
        loan = service.create_loan(member, book[0])
        service.checkout_loan(admin, loan["id"])
        with pytest.raises(ConflictError):
            service.cancel_loan(member, loan["id"])

    def test_stranger_cannot_cancel(self, service, member, book, library):
        loan = service.create_loan(member, book[0])
        stranger = Caller(id=library.add_member(name="Eve"), role=Role.MEMBER)
        with pytest.raises(ForbiddenError):
            service.cancel_loan(stranger, loan["id"])

    def test_failed_release_rolls_loan_back(self, service, member, book, library, monkeypatch):
        loan = service.create_loan(member, book[0])

        def broken_release(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(service.evaluator, "release_loan_slot", broken_release)
        with pytest.raises(RuntimeError):
            service.cancel_loan(member, loan["id"])
        stored = library.loan(loan["id"])
        assert stored["status"] == "APPROVED"
        assert [h["action"] for h in stored["history"]] == ["create"]
        assert library.copy(loan["copy_id"])["status"] == "ON_LOAN"


class TestReturn:

    @pytest.fixture
    def active_loan(self, service, admin, member, book):
        loan = service.create_loan(member, book[0])
        return service.checkout_loan(admin, loan["id"])

    def test_round_trip_on_time(self, service, clock, member, active_loan, library):
        clock.advance(days=10)
        returned = service.return_loan(member, active_loan["id"])
        assert returned["status"] == "RETURNED"
        assert returned["penalty_accrued"] == 0
        assert returned["overdue_days"] == 0
        assert returned["returned_at"] == START + timedelta(days=10)
        copy = library.copy(active_loan["copy_id"])
        assert copy["status"] == "AVAILABLE"
        assert library.member(member.id)["open_loans"] == 0

    def test_late_return_accrues_penalty(self, service, clock, member, book, active_loan):
        clock.advance(days=17)
        returned = service.return_loan(member, active_loan["id"])
        assert returned["overdue_days"] == 3
        assert returned["penalty_accrued"] == 3.0
        with pytest.raises(ForbiddenError) as exc:
            service.create_loan(member, book[0])
        assert exc.value.code == "unpaid_penalty"

    def test_penalty_capped(self, service, clock, admin, active_loan):
        clock.advance(days=14 + 200)
        assert service.return_loan(admin, active_loan["id"])["penalty_accrued"] == 50.0

    def test_penalty_is_set_once(self, service, clock, member, active_loan, library):
        clock.advance(days=16)
        service.return_loan(member, active_loan["id"])
        clock.advance(days=30)
        with pytest.raises(ConflictError) as exc:
            service.return_loan(member, active_loan["id"])
        assert exc.value.code == "already_returned"
        assert library.loan(active_loan["id"])["penalty_accrued"] == 2.0

    def test_return_from_swept_overdue(self, service, clock, admin, member, active_loan):
        clock.advance(days=15)
        service.sweep_overdue(admin)
        returned = service.return_loan(member, active_loan["id"])
        assert returned["status"] == "RETURNED"
        assert returned["penalty_accrued"] == 1.0

    def test_approved_loan_cannot_be_returned(self, service, member, book):
        loan = service.create_loan(member, book[0])
        with pytest.raises(ConflictError):
            service.return_loan(member, loan["id"])

    def test_unknown_loan(self, service, member):
        with pytest.raises(NotFoundError):
            service.return_loan(member, "65a000000000000000000000")


class TestEvents:

    def test_audit_entries_are_written(self, service, admin, member, book, library):
        loan = service.create_loan(member, book[0])
        service.checkout_loan(admin, loan["id"])
        actions = [e["action"] for e in library.db["audit_log"].find({"entity_id": loan["id"]})]
        assert actions == ["loan.approved", "loan.checked_out"]
        entry = library.db["audit_log"].find_one({"action": "loan.checked_out"})
        assert entry["actor_id"] == admin.id
        assert entry["metadata"]["copy_code"] == "DUN-001"

    def test_sink_failures_do_not_undo_transition(self, mongo_db, clock, set_policy, member, book, library):
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("smtp down")
        audit = MagicMock()
        audit.record.side_effect = RuntimeError("audit store down")
        service = LoanService(mongo_db, dispatcher=EventDispatcher(audit, notifier), clock=clock)
        loan = service.create_loan(member, book[0])
        assert library.loan(loan["id"])["status"] == "APPROVED"
        notifier.notify.assert_called_once()

    def test_notifications_can_be_disabled(self, mongo_db, clock, set_policy, member, book):
        set_policy(notifications_enabled=False)
        notifier = MagicMock()
        service = LoanService(mongo_db, dispatcher=EventDispatcher(MongoAuditSink(mongo_db), notifier), clock=clock)
        service.create_loan(member, book[0])
        notifier.notify.assert_not_called()


class TestQueries:

    def test_admin_listing_filters_and_pages(self, service, set_policy, admin, library):
        book_id, copies = library.add_book(copies=3)
        members = [Caller(id=library.add_member(name=n), role=Role.MEMBER) for n in ("Ann", "Ben", "Cid")]
        for m in members:
            service.create_loan(m, book_id)
        page = service.list_loans(admin, page=1, page_size=2)
        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert len(page["items"]) == 2
        only_ben = service.list_loans(admin, member_id=members[1].id)
        assert [i["member_id"] for i in only_ben["items"]] == [members[1].id]
        assert service.list_loans(admin, status="REQUESTED")["total"] == 0

    def test_loan_views_carry_borrower_summary(self, service, admin, member, book):
        loan = service.create_loan(member, book[0])
        assert loan["member"] == {"id": member.id, "name": "Ada", "email": "ada@example.com"}
        item = service.list_loans(admin)["items"][0]
        assert item["member"]["name"] == "Ada"
        assert item["member"]["email"] == "ada@example.com"

    def test_listing_is_admin_only(self, service, member):
        with pytest.raises(ForbiddenError):
            service.list_loans(member)

    def test_my_loans_computed_fields(self, service, clock, admin, member, book):
        loan = service.create_loan(member, book[0])
        service.checkout_loan(admin, loan["id"])
        clock.advance(days=12)
        mine = service.list_member_loans(member)
        item = mine["items"][0]
        assert item["can_renew"] is True
        assert item["is_overdue"] is False
        assert item["days_until_due"] == 2
        assert item["is_due_soon"] is True
        clock.advance(days=3)
        item = service.list_member_loans(member)["items"][0]
        assert item["status"] == "OVERDUE"
        assert item["is_overdue"] is True
        assert item["can_renew"] is False

    def test_get_loan_owner_or_admin(self, service, admin, member, book, library):
        loan = service.create_loan(member, book[0])
        assert service.get_loan(member, loan["id"])["id"] == loan["id"]
        assert service.get_loan(admin, loan["id"])["copy"]["code"] == "DUN-001"
        stranger = Caller(id=library.add_member(name="Eve"), role=Role.MEMBER)
        with pytest.raises(ForbiddenError):
            service.get_loan(stranger, loan["id"])
