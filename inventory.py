"""Inventory ledger for physical book copies.

A copy moves between AVAILABLE and ON_LOAN only through ``claim`` and
``release``. Both are single conditional updates: the availability check
and the status change happen in one write, so two transitions racing for the
same copy cannot both win. The ``loan_id`` field names the one open loan
that holds the claim.
"""

import logging
from typing import Any, Dict, Optional

from pymongo import ASCENDING, ReturnDocument

from database import parse_object_id, utcnow
from errors import ConflictError, NotFoundError
from schemas import CopyStatus, NON_TERMINAL_STATUSES

logger = logging.getLogger(__name__)

COPY_COLLECTION = "copy"
LOAN_COLLECTION = "loan"


class InventoryLedger:

    def __init__(self, db):
        self.db = db
        self.copies = db[COPY_COLLECTION]
        self.loans = db[LOAN_COLLECTION]

    def get_copy(self, copy_id: str, session=None) -> Dict[str, Any]:
        doc = self.copies.find_one({"_id": parse_object_id(copy_id, "Book copy")}, session=session)
        if doc is None:
            raise NotFoundError("Book copy not found")
        return doc

    def find_copy(self, copy_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not copy_id:
            return None
        try:
            return self.get_copy(copy_id)
        except NotFoundError:
            return None

    def select_available(self, book_id: str, session=None) -> Optional[Dict[str, Any]]:
        """Lowest-coded AVAILABLE copy of the book, or None."""
        cursor = (
            self.copies.find(
                {"book_id": book_id, "status": CopyStatus.AVAILABLE.value, "loan_id": None},
                session=session,
            )
            .sort("code", ASCENDING)
            .limit(1)
        )
        return next(iter(cursor), None)

    def resolve_for_book(self, book_id: str, copy_id: Optional[str] = None) -> Dict[str, Any]:
        """Pick the copy a new loan would take: the requested one or the lowest-coded free one."""
        if copy_id:
            copy = self.get_copy(copy_id)
            if copy["book_id"] != book_id:
                raise NotFoundError("Book copy does not belong to this book")
            if copy["status"] != CopyStatus.AVAILABLE.value or copy.get("loan_id"):
                raise ConflictError("This book copy is not available", code="copy_unavailable")
            return copy
        copy = self.select_available(book_id)
        if copy is None:
            raise ConflictError("No available copies for this book", code="no_copies")
        return copy

    def open_loan_for(self, copy_id: str, exclude_loan_id=None, session=None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {"copy_id": copy_id, "status": {"$in": NON_TERMINAL_STATUSES}}
        if exclude_loan_id is not None:
            query["_id"] = {"$ne": exclude_loan_id}
        return self.loans.find_one(query, session=session)

    def claim(self, copy_id: str, loan_id: str, session=None) -> Dict[str, Any]:
        """AVAILABLE -> ON_LOAN for ``loan_id``; ConflictError if someone else got there first."""
        doc = self.copies.find_one_and_update(
            {
                "_id": parse_object_id(copy_id, "Book copy"),
                "status": CopyStatus.AVAILABLE.value,
                "loan_id": None,
            },
            {"$set": {"status": CopyStatus.ON_LOAN.value, "loan_id": loan_id, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            logger.warning("Claim of copy %s for loan %s lost: copy not available", copy_id, loan_id)
            raise ConflictError("Book copy is not available", code="copy_unavailable")
        logger.debug("Copy %s claimed by loan %s", copy_id, loan_id)
        return doc

    def release(self, copy_id: str, loan_id: str, session=None) -> bool:
        """ON_LOAN -> AVAILABLE, only if ``loan_id`` holds the claim.

        Returns False when the copy is not on loan to this loan (for
        example an admin already marked it LOST); its status is left alone.
        """
        result = self.copies.update_one(
            {
                "_id": parse_object_id(copy_id, "Book copy"),
                "status": CopyStatus.ON_LOAN.value,
                "loan_id": loan_id,
            },
            {"$set": {"status": CopyStatus.AVAILABLE.value, "loan_id": None, "updated_at": utcnow()}},
            session=session,
        )
        if result.modified_count == 0:
            logger.warning("Copy %s was not on loan to %s; status left unchanged", copy_id, loan_id)
            return False
        return True
