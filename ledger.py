"""
Borrow ledger: the borrow / return-request / confirmed-return lifecycle.

Record states move borrowed -> return_pending -> returned. The ledger is the
only code that changes a book's ``quantity`` and ``available`` fields as a
side effect of that lifecycle, and it never does so with a read-modify-write:
every stock change is a single ``$inc`` guarded in the filter, and every
status change names the expected current status in its filter.

At most one active record per (user, book) is enforced twice: a lookup that
produces a friendly error, and the unique sparse ``active_key`` index that
closes the race between two concurrent borrows.
"""

import calendar
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from loguru import logger
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Identity, normalize_email
from config import settings
from database import BOOKS, BORROWED, create_document, to_object_id, to_str_id, to_utc, utcnow
from errors import Conflict, Forbidden, InvalidArgument, InvalidState, NotFound
from schemas import ACTIVE_STATUSES, Borrowed, BorrowStatus

STATUS_BORROWED = BorrowStatus.BORROWED.value
STATUS_RETURN_PENDING = BorrowStatus.RETURN_PENDING.value
STATUS_RETURNED = BorrowStatus.RETURNED.value


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def active_key(user_id: str, book_id: str) -> str:
    return f"{user_id}:{book_id}"


def parse_status(value: str) -> str:
    try:
        return BorrowStatus(value).value
    except ValueError:
        allowed = ", ".join(s.value for s in BorrowStatus)
        raise InvalidArgument(f"Invalid status '{value}'. Allowed: {allowed}") from None


def heal_availability(database: Database, book: Dict[str, Any]) -> Dict[str, Any]:
    """Make ``available`` agree with ``quantity`` for a book that was just read.

    Both corrections are conditional on the quantity seen by the database at
    write time, so a concurrent borrow or return cannot be overwritten.
    """
    should_be_available = (book.get("quantity") or 0) > 0
    if book.get("available") == should_be_available:
        return book
    if should_be_available:
        query = {"_id": book["_id"], "quantity": {"$gt": 0}}
    else:
        query = {"_id": book["_id"], "quantity": {"$not": {"$gt": 0}}}
    healed = database[BOOKS].find_one_and_update(
        query,
        {"$set": {"available": should_be_available}},
        return_document=ReturnDocument.AFTER,
    )
    if healed is not None:
        logger.warning("Healed availability of book {} to {}", book["_id"], should_be_available)
        return healed
    return database[BOOKS].find_one({"_id": book["_id"]}) or book


def serialize_record(record: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    doc = dict(record)
    doc.pop("active_key", None)
    to_str_id(doc)
    due = doc.get("return_due_at")
    doc["overdue"] = bool(
        doc.get("status") in ACTIVE_STATUSES and due is not None and due < (now or utcnow())
    )
    return doc


class BorrowLedger:
    """Operations on borrow records and the stock they hold."""

    def __init__(self, database: Database, max_return_date_edits: Optional[int] = None) -> None:
        self.db = database
        self.books = database[BOOKS]
        self.records = database[BORROWED]
        if max_return_date_edits is None:
            max_return_date_edits = settings.max_return_date_edits
        self.max_return_date_edits = max_return_date_edits

    # ------------------------- Lookups ------------------------- #
    def _book_oid(self, book_id: str) -> ObjectId:
        oid = to_object_id(book_id)
        if oid is None:
            raise InvalidArgument("Invalid book id")
        return oid

    def _get_record(self, record_id: str) -> Dict[str, Any]:
        oid = to_object_id(record_id)
        if oid is None:
            raise InvalidArgument("Invalid borrowed book id")
        record = self.records.find_one({"_id": oid})
        if not record:
            raise NotFound("Borrowed book record not found")
        return record

    def _get_owned_record(self, record_id: str, identity: Identity) -> Dict[str, Any]:
        record = self._get_record(record_id)
        if not identity.owns(record):
            raise Forbidden("Forbidden access")
        return record

    # ------------------------- Stock ------------------------- #
    def _take_copy(self, book_oid: ObjectId) -> Dict[str, Any]:
        book = self.books.find_one_and_update(
            {"_id": book_oid, "quantity": {"$gt": 0}},
            {"$inc": {"quantity": -1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if book is None:
            raise InvalidState("Book is not available for borrowing")
        if book["quantity"] <= 0:
            self.books.update_one(
                {"_id": book_oid, "quantity": {"$lte": 0}},
                {"$set": {"available": False}},
            )
            book["available"] = False
        return book

    def _give_back_copy(self, book_oid: Optional[ObjectId]) -> Optional[Dict[str, Any]]:
        if book_oid is None:
            return None
        book = self.books.find_one_and_update(
            {"_id": book_oid},
            {"$inc": {"quantity": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if book is None:
            logger.warning("Book {} is no longer in the catalog, returned copy not restocked", book_oid)
            return None
        if book["quantity"] > 0 and not book.get("available"):
            self.books.update_one(
                {"_id": book_oid, "quantity": {"$gt": 0}},
                {"$set": {"available": True}},
            )
            book["available"] = True
        return book

    def _transition(self, record: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.records.find_one_and_update(
            {"_id": record["_id"], "status": record["status"]},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidState("Borrowed book status changed meanwhile, reload and try again")
        return updated

    # ------------------------- Lifecycle ------------------------- #
    def borrow_book(
        self,
        identity: Identity,
        book_id: str,
        return_date: datetime,
        email: Optional[str] = None,
        book_name: Optional[str] = None,
        author_name: Optional[str] = None,
        category: Optional[str] = None,
        image: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = utcnow()
        due = to_utc(return_date)
        if due <= now:
            raise InvalidArgument("Return date must be in the future")

        book_oid = self._book_oid(book_id)
        book = self.books.find_one({"_id": book_oid})
        if not book:
            raise NotFound("Book not found")
        book = heal_availability(self.db, book)
        if (book.get("quantity") or 0) <= 0:
            raise InvalidState("Book is not available for borrowing")

        book_id = str(book_oid)
        existing = self.records.find_one({
            "user_id": identity.user_id,
            "book_id": book_id,
            "status": {"$in": list(ACTIVE_STATUSES)},
        })
        if existing:
            raise Conflict("You have already borrowed this book")

        self._take_copy(book_oid)
        record = Borrowed(
            user_id=identity.user_id,
            book_id=book_id,
            email=normalize_email(email) or identity.email,
            book_name=book_name or book.get("name") or "",
            author_name=author_name or book.get("author_name") or "",
            category=category or book.get("category") or "",
            image=image or book.get("image") or "",
            borrowed_at=now,
            return_due_at=due,
            status=STATUS_BORROWED,
            active_key=active_key(identity.user_id, book_id),
        )
        try:
            record_id = create_document(self.db, BORROWED, record)
        except DuplicateKeyError as e:
            self._give_back_copy(book_oid)
            logger.warning("Concurrent duplicate borrow of book {} by user {} rejected", book_id, identity.user_id)
            raise Conflict("You have already borrowed this book") from e
        except PyMongoError:
            logger.exception("Failed to record borrow of book {}, restocking the reserved copy", book_id)
            self._give_back_copy(book_oid)
            raise

        logger.info("User {} borrowed book {} (record {})", identity.email, book_id, record_id)
        return serialize_record(self.records.find_one({"_id": ObjectId(record_id)}), now)

    def request_return(self, record_id: str, identity: Identity) -> Dict[str, Any]:
        record = self._get_owned_record(record_id, identity)
        if record["status"] == STATUS_RETURN_PENDING:
            raise InvalidState("Return request is already pending")
        if record["status"] == STATUS_RETURNED:
            raise InvalidState("Book has already been returned")

        now = utcnow()
        updated = self._transition(record, {"$set": {
            "status": STATUS_RETURN_PENDING,
            "return_requested_at": now,
            "updated_at": now,
        }})
        logger.info("User {} requested return of record {}", identity.email, record_id)
        return serialize_record(updated, now)

    def update_return_date(self, record_id: str, identity: Identity, new_date: datetime) -> Dict[str, Any]:
        record = self._get_owned_record(record_id, identity)
        if record["status"] == STATUS_RETURNED:
            raise InvalidState("Cannot change the return date of a returned book")
        if record.get("return_date_edit_count", 0) >= self.max_return_date_edits:
            raise InvalidState("Return date edit limit reached")

        now = utcnow()
        due = to_utc(new_date)
        if due <= now:
            raise InvalidArgument("Return date must be in the future")
        if due > add_months(now, 1):
            raise InvalidArgument("Return date cannot be more than one month from today")

        updated = self.records.find_one_and_update(
            {
                "_id": record["_id"],
                "status": {"$in": list(ACTIVE_STATUSES)},
                "return_date_edit_count": {"$lt": self.max_return_date_edits},
            },
            {"$set": {"return_due_at": due, "updated_at": now}, "$inc": {"return_date_edit_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidState("Return date edit limit reached")
        logger.info(
            "User {} moved return date of record {} to {} (edit {})",
            identity.email, record_id, due.isoformat(), updated["return_date_edit_count"],
        )
        return serialize_record(updated, now)

    def set_status(self, record_id: str, new_status: str, actor: Optional[Identity] = None) -> Dict[str, Any]:
        """Admin status change.

        Confirming a return restocks the copy. Any other value is written as
        an override; reopening a returned record takes a copy back out of
        stock so quantity keeps matching the number of active records.
        """
        new_status = parse_status(new_status)
        record = self._get_record(record_id)
        current = record["status"]
        if current == new_status:
            return serialize_record(record)

        now = utcnow()
        book_oid = to_object_id(record["book_id"])
        if new_status == STATUS_RETURNED:
            updated = self._transition(record, {
                "$set": {
                    "status": STATUS_RETURNED,
                    "returned_at": now,
                    "return_requested_at": None,
                    "updated_at": now,
                },
                "$unset": {"active_key": ""},
            })
            self._give_back_copy(book_oid)
        elif current == STATUS_RETURNED:
            updated = self._reopen(record, new_status, book_oid, now)
        else:
            updated = self._transition(record, {"$set": {
                "status": new_status,
                "return_requested_at": now if new_status == STATUS_RETURN_PENDING else None,
                "updated_at": now,
            }})

        logger.info(
            "Record {} status {} -> {} by {}",
            record_id, current, new_status, actor.email if actor else "system",
        )
        return serialize_record(updated, now)

    def _reopen(self, record: Dict[str, Any], new_status: str, book_oid: Optional[ObjectId], now: datetime) -> Dict[str, Any]:
        if book_oid is None:
            raise InvalidState("Borrowed book references an invalid book")
        self._take_copy(book_oid)
        try:
            updated = self.records.find_one_and_update(
                {"_id": record["_id"], "status": STATUS_RETURNED},
                {"$set": {
                    "status": new_status,
                    "active_key": active_key(record["user_id"], record["book_id"]),
                    "returned_at": None,
                    "return_requested_at": now if new_status == STATUS_RETURN_PENDING else None,
                    "updated_at": now,
                }},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            self._give_back_copy(book_oid)
            raise Conflict("User already has an active borrow of this book") from e
        if updated is None:
            self._give_back_copy(book_oid)
            raise InvalidState("Borrowed book status changed meanwhile, reload and try again")
        logger.warning("Returned record {} reopened as {}, one copy taken from stock", record["_id"], new_status)
        return updated

    def delete_record(self, record_id: str, identity: Identity) -> None:
        record = self._get_record(record_id)
        if not (identity.is_admin or identity.owns(record)):
            raise Forbidden("Forbidden access")
        self.records.delete_one({"_id": record["_id"]})
        logger.info("Record {} deleted by {}", record_id, identity.email)

    # ------------------------- Queries ------------------------- #
    def list_for_user(self, identity: Identity, email: Optional[str], statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if normalize_email(email) != identity.email:
            raise Forbidden("Forbidden access")
        wanted = [parse_status(s) for s in statuses] if statuses else list(ACTIVE_STATUSES)
        cursor = self.records.find({"user_id": identity.user_id, "status": {"$in": wanted}})
        return self._serialize_all(cursor.sort([("borrowed_at", DESCENDING)]))

    def list_pending_returns(self) -> List[Dict[str, Any]]:
        cursor = self.records.find({"status": STATUS_RETURN_PENDING})
        return self._serialize_all(cursor.sort([("return_requested_at", DESCENDING)]))

    def list_all(self) -> List[Dict[str, Any]]:
        return self._serialize_all(self.records.find({}).sort([("borrowed_at", DESCENDING)]))

    @staticmethod
    def _serialize_all(cursor) -> List[Dict[str, Any]]:
        now = utcnow()
        return [serialize_record(d, now) for d in cursor]
