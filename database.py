"""
MongoDB access for the library backend.

Collections:
- books     catalog entries (quantity / available are maintained by the ledger)
- users     identities and roles
- borrowed  borrow records
- added     book suggestions awaiting review
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from loguru import logger
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings

BOOKS = "books"
USERS = "users"
BORROWED = "borrowed"
SUGGESTIONS = "added"

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url and settings.database_name:
    # MongoClient connects lazily, so importing this module never blocks
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=settings.database_timeout_ms)
    db = client[settings.database_name]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise RuntimeError("Database is not configured (DATABASE_URL / DATABASE_NAME)")
    return db


def utcnow() -> datetime:
    """Current time as naive UTC, the form pymongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC; naive input is taken as UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def to_str_id(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at / updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_str_id(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    """Create the indexes the application relies on. Safe to call repeatedly."""
    # one active borrow per (user, book); the key is removed once returned
    database[BORROWED].create_index([("active_key", ASCENDING)], unique=True, sparse=True, name="uniq_active_borrow")
    database[BORROWED].create_index([("email", ASCENDING), ("borrowed_at", DESCENDING)], name="email_borrowed_at")
    database[BORROWED].create_index([("status", ASCENDING), ("return_requested_at", DESCENDING)], name="status_requested_at")
    database[USERS].create_index([("email", ASCENDING)], unique=True, name="uniq_user_email")
    database[BOOKS].create_index([("category", ASCENDING)], name="book_category")
    database[BOOKS].create_index([("isbn", ASCENDING)], unique=True, sparse=True, name="uniq_book_isbn")
    database[SUGGESTIONS].create_index([("email", ASCENDING), ("created_at", DESCENDING)], name="suggestion_email_created_at")
    logger.info("Indexes ensured on database '{}'", database.name)
