"""
Book suggestions: users propose titles, admins review them.

A suggestion moves pending -> approved | rejected. Approval is terminal and
inserts the suggested book into the catalog; the new book id is kept on the
suggestion so the same proposal never produces a second catalog entry.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Identity, normalize_email
from database import BOOKS, SUGGESTIONS, create_document, to_object_id, to_str_id, utcnow
from errors import Conflict, Forbidden, InvalidArgument, InvalidState, NotFound
from schemas import Book, Suggestion, SuggestionStatus

STATUS_APPROVED = SuggestionStatus.APPROVED.value


def parse_suggestion_status(value: str) -> str:
    try:
        return SuggestionStatus(value).value
    except ValueError:
        allowed = ", ".join(s.value for s in SuggestionStatus)
        raise InvalidArgument(f"Invalid status '{value}'. Allowed: {allowed}") from None


def book_from_suggestion(suggestion: Dict[str, Any]) -> Book:
    return Book(
        name=suggestion["name"],
        author_name=suggestion["author_name"],
        category=suggestion["category"],
        image=suggestion["image"],
        rating=suggestion.get("rating") or 0,
        description=suggestion.get("description"),
        isbn=suggestion.get("isbn"),
        published_year=suggestion.get("published_year"),
    )


def _get(database: Database, suggestion_id: str) -> Dict[str, Any]:
    oid = to_object_id(suggestion_id)
    if oid is None:
        raise InvalidArgument("Invalid suggestion id")
    suggestion = database[SUGGESTIONS].find_one({"_id": oid})
    if not suggestion:
        raise NotFound("Added book record not found")
    return suggestion


def _check_access(suggestion: Dict[str, Any], identity: Identity) -> None:
    if not (identity.is_admin or identity.owns(suggestion)):
        raise Forbidden("Forbidden access")


def submit(database: Database, identity: Identity, data: Dict[str, Any]) -> Dict[str, Any]:
    suggestion = Suggestion(user_id=identity.user_id, email=identity.email, **data)
    new_id = create_document(database, SUGGESTIONS, suggestion)
    logger.info("User {} suggested book '{}' ({})", identity.email, suggestion.name, new_id)
    return to_str_id(database[SUGGESTIONS].find_one({"_id": to_object_id(new_id)}))


def get_suggestion(database: Database, suggestion_id: str, identity: Identity) -> Dict[str, Any]:
    suggestion = _get(database, suggestion_id)
    _check_access(suggestion, identity)
    return to_str_id(suggestion)


def list_for_user(database: Database, identity: Identity, email: Optional[str]) -> List[Dict[str, Any]]:
    if normalize_email(email) != identity.email:
        raise Forbidden("Forbidden access")
    cursor = database[SUGGESTIONS].find({"user_id": identity.user_id}).sort([("created_at", DESCENDING)])
    return [to_str_id(d) for d in cursor]


def list_all(database: Database) -> List[Dict[str, Any]]:
    cursor = database[SUGGESTIONS].find({}).sort([("created_at", DESCENDING)])
    return [to_str_id(d) for d in cursor]


def set_status(database: Database, suggestion_id: str, new_status: str, actor: Identity) -> Dict[str, Any]:
    new_status = parse_suggestion_status(new_status)
    suggestion = _get(database, suggestion_id)
    current = suggestion["status"]
    if current == new_status:
        return to_str_id(suggestion)
    if current == STATUS_APPROVED:
        raise InvalidState("Suggestion has already been approved")

    collection = database[SUGGESTIONS]
    updated = collection.find_one_and_update(
        {"_id": suggestion["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Suggestion status changed meanwhile, reload and try again")

    if new_status == STATUS_APPROVED:
        try:
            book_id = create_document(database, BOOKS, book_from_suggestion(updated).to_document())
        except DuplicateKeyError as e:
            collection.update_one(
                {"_id": suggestion["_id"], "status": STATUS_APPROVED},
                {"$set": {"status": current, "updated_at": utcnow()}},
            )
            raise Conflict("A book with this ISBN already exists") from e
        updated = collection.find_one_and_update(
            {"_id": suggestion["_id"]},
            {"$set": {"book_id": book_id}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Suggestion {} approved by {}, added as book {}", suggestion_id, actor.email, book_id)
    else:
        logger.info("Suggestion {} status {} -> {} by {}", suggestion_id, current, new_status, actor.email)
    return to_str_id(updated)


def delete_suggestion(database: Database, suggestion_id: str, identity: Identity) -> None:
    suggestion = _get(database, suggestion_id)
    _check_access(suggestion, identity)
    database[SUGGESTIONS].delete_one({"_id": suggestion["_id"]})
    logger.info("Suggestion {} deleted by {}", suggestion_id, identity.email)
