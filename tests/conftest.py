from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId

from database import create_document
from loans import LoanService
from schemas import Book, Caller, Copy, CopyStatus, LoanStatus, Member, Role, Setting

DEFAULT_POLICY = {
    "approvals_required": False,
    "loan_days": 14,
    "max_renewals": 1,
    "overdue_fee_per_day": 1.0,
    "overdue_fee_cap_per_loan": 50.0,
    "max_concurrent_loans": 3,
    "currency": "USD",
    "notifications_enabled": True,
    "due_soon_days": 3,
}

START = datetime(2024, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Library:
    """Seeds books, copies, members and loans straight into the store."""

    def __init__(self, db):
        self.db = db

    def add_book(self, title="Dune", copies=2):
        book_id = create_document("book", Book(title=title, author="Frank Herbert", isbn="9780441013593"),
                                  database=self.db)
        copy_ids = [
            create_document("copy", Copy(book_id=book_id, code=f"{title[:3].upper()}-{n + 1:03d}"), database=self.db)
            for n in range(copies)
        ]
        return book_id, copy_ids

    def add_member(self, status="ACTIVE", name="Ada"):
        member = Member(name=name, email=f"{name.lower()}@example.com", status=status)
        return create_document("member", member, database=self.db)

    def add_loan(self, member_id, book_id, status, copy_id=None, due_date=None, penalty=0.0, renewal_count=0):
        doc = {
            "member_id": member_id,
            "book_id": book_id,
            "copy_id": copy_id,
            "status": status,
            "borrowed_at": None if due_date is None else due_date - timedelta(days=14),
            "due_date": due_date,
            "returned_at": None,
            "renewal_count": renewal_count,
            "penalty_accrued": penalty,
            "history": [],
            "created_at": START,
        }
        loan_id = self.db["loan"].insert_one(doc).inserted_id
        if copy_id and status in (LoanStatus.APPROVED.value, LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value):
            self.db["copy"].update_one({"_id": ObjectId(copy_id)},
                                       {"$set": {"status": CopyStatus.ON_LOAN.value, "loan_id": str(loan_id)}})
        return str(loan_id)

    def copy(self, copy_id):
        return self.db["copy"].find_one({"_id": ObjectId(copy_id)})

    def loan(self, loan_id):
        return self.db["loan"].find_one({"_id": ObjectId(loan_id)})

    def member(self, member_id):
        return self.db["member"].find_one({"_id": ObjectId(member_id)})


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["library_test"]


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def set_policy(mongo_db):
    def _set(**overrides):
        mongo_db["setting"].delete_many({})
        mongo_db["setting"].insert_one(Setting(**{**DEFAULT_POLICY, **overrides}).model_dump())
    _set()
    return _set


@pytest.fixture
def library(mongo_db):
    return Library(mongo_db)


@pytest.fixture
def service(mongo_db, clock, set_policy):
    return LoanService(mongo_db, clock=clock)


@pytest.fixture
def admin():
    return Caller(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def member(library):
    member_id = library.add_member()
    return Caller(id=member_id, role=Role.MEMBER)


@pytest.fixture
def book(library):
    return library.add_book()
