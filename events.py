"""Audit trail and member notifications for loan lifecycle events.

Both sinks run after a transition has committed. ``EventDispatcher`` logs
and contains their failures, so a broken mail relay or audit store never
turns a successful transition into an error.
"""

import logging
from concurrent.futures import Executor
from typing import Any, Dict, Optional

from database import create_document
from eligibility import member_key
from schemas import AuditLog

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_log"

LOAN_REQUESTED = "loan.requested"
LOAN_APPROVED = "loan.approved"
LOAN_REJECTED = "loan.rejected"
LOAN_CHECKED_OUT = "loan.checked_out"
LOAN_RENEWED = "loan.renewed"
LOAN_CANCELLED = "loan.cancelled"
LOAN_RETURNED = "loan.returned"


class MongoAuditSink:
    """Appends entries to the audit_log collection."""

    def __init__(self, db):
        self.db = db

    def record(self, actor_id: str, action: str, entity_type: str, entity_id: str,
               metadata: Optional[Dict[str, Any]] = None) -> str:
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )
        return create_document(AUDIT_COLLECTION, entry, database=self.db)


class LogNotifier:
    """Stands in for the mail relay: one log line per member notification."""

    def __init__(self, db=None):
        self.db = db

    def _recipient(self, member_id: str) -> str:
        if self.db is None:
            return member_id
        member = self.db["member"].find_one({"_id": member_key(member_id)}, {"email": 1})
        return (member or {}).get("email") or member_id

    def notify(self, event_kind: str, member_id: str, payload: Dict[str, Any]) -> None:
        title = payload.get("book_title")
        details = ", ".join(f"{k}: {v}" for k, v in payload.items() if k != "book_title" and v is not None)
        logger.info('[EMAIL] %s sent to %s - Book: "%s"%s', event_kind, self._recipient(member_id), title,
                    f" ({details})" if details else "")


class EventDispatcher:

    def __init__(self, audit_sink, notifier, executor: Optional[Executor] = None):
        self.audit_sink = audit_sink
        self.notifier = notifier
        self.executor = executor

    def publish(self, actor_id: str, action: str, loan_id: str, member_id: str, metadata: Dict[str, Any],
                notify: bool = True) -> None:
        if self.executor is not None:
            self.executor.submit(self._deliver, actor_id, action, loan_id, member_id, metadata, notify)
        else:
            self._deliver(actor_id, action, loan_id, member_id, metadata, notify)

    def _deliver(self, actor_id, action, loan_id, member_id, metadata, notify) -> None:
        try:
            self.audit_sink.record(actor_id, action, "Loan", loan_id, metadata)
        except Exception:
            logger.exception("Audit record for %s on loan %s failed", action, loan_id)
        if not notify:
            return
        try:
            self.notifier.notify(action, member_id, metadata)
        except Exception:
            logger.exception("Notification %s for member %s failed", action, member_id)
