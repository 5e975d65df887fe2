"""
MongoDB access helpers.

Exposes the shared ``client``/``db`` handles, small document helpers used by
the API layer, and ``UnitOfWork``, which groups the writes of one loan
transition so they take effect together or not at all.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import settings
from errors import ConflictError, NotFoundError, RollbackError

logger = logging.getLogger(__name__)

# MongoClient connects lazily, so importing this module never blocks on the server.
client = MongoClient(settings.database_url)
db = client[settings.database_name]

WRITE_CONFLICT = 112


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what pymongo hands back by default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_str_id(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def parse_object_id(value: str, entity: str) -> ObjectId:
    """Turn a path/body id into an ObjectId; malformed ids resolve to nothing."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise NotFoundError(f"{entity} not found")
    return ObjectId(value)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None,
                    session=None, _id: Optional[ObjectId] = None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    target = database if database is not None else db
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    if _id is not None:
        doc["_id"] = _id
    result = target[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def is_write_conflict(error: BaseException) -> bool:
    if not isinstance(error, PyMongoError):
        return False
    if error.has_error_label("TransientTransactionError"):
        return True
    return getattr(error, "code", None) == WRITE_CONFLICT


class UnitOfWork:
    """Scope for the writes of a single loan transition.

    With ``transactional=True`` every write runs in one MongoDB session
    transaction (requires a replica set) and a failure aborts it. Otherwise
    each write is a single-document conditional update and callers register
    an undo step after every successful write; on failure the undo steps run
    in reverse order. An undo step that fails turns the error into
    RollbackError, since the store may then hold a partial transition. A
    write conflict surfaces as ConflictError and is never retried here.
    """

    def __init__(self, mongo_client: Optional[MongoClient] = None, transactional: bool = False):
        self._client = mongo_client
        self._transactional = transactional and mongo_client is not None
        self._undo: List[tuple] = []
        self.session = None

    def __enter__(self) -> "UnitOfWork":
        if self._transactional:
            self.session = self._client.start_session()
            self.session.start_transaction()
        return self

    def on_rollback(self, fn: Callable, *args, **kwargs) -> None:
        # The transaction abort already discards everything.
        if self.session is None:
            self._undo.append((fn, args, kwargs))

    def _compensate(self) -> List[str]:
        """Run undo steps newest first; return the names of the ones that failed."""
        failed = []
        for fn, args, kwargs in reversed(self._undo):
            try:
                fn(*args, **kwargs)
            except Exception:
                name = getattr(fn, "__name__", repr(fn))
                logger.exception("Rollback step %s failed", name)
                failed.append(name)
        self._undo.clear()
        return failed

    def __exit__(self, exc_type, exc, tb):
        if self.session is None:
            if exc_type is not None:
                failed = self._compensate()
                if failed:
                    raise RollbackError(
                        f"Transition failed and could not be fully undone ({', '.join(failed)})"
                    ) from exc
            return False
        try:
            if exc_type is None:
                self.session.commit_transaction()
            else:
                self.session.abort_transaction()
                if is_write_conflict(exc):
                    raise ConflictError("Concurrent update detected, please retry", code="write_conflict") from exc
        except PyMongoError as err:
            if is_write_conflict(err):
                raise ConflictError("Concurrent update detected, please retry", code="write_conflict") from err
            raise
        finally:
            self.session.end_session()
        return False
