"""
Database Schemas for the Library Management System

Each Pydantic model represents a document in MongoDB.

Collections:
- Book      -> "books"
- User      -> "users"
- Borrowed  -> "borrowed"
- Suggestion -> "added"
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from datetime import datetime

from database import utcnow


class BorrowStatus(str, Enum):
    BORROWED = "borrowed"
    RETURN_PENDING = "return_pending"
    RETURNED = "returned"


ACTIVE_STATUSES = (BorrowStatus.BORROWED.value, BorrowStatus.RETURN_PENDING.value)


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "books"
    """
    name: str = Field(..., description="Book title")
    author_name: str = Field(..., description="Primary author")
    category: str = Field(..., description="Category/Genre")
    image: str = Field(..., description="Cover image URL")
    rating: float = Field(0, ge=0, le=5, description="Rating 0-5")
    description: Optional[str] = Field(None, description="Short description")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    published_year: Optional[int] = Field(None, description="Year of publication")
    quantity: int = Field(1, ge=0, description="Copies currently on the shelf")
    available: bool = Field(True, description="Cached quantity > 0")

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump()
        # isbn is uniquely indexed only where present
        if doc.get("isbn") is None:
            doc.pop("isbn", None)
        return doc


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address, lowercased")
    role: Role = Field(Role.USER.value, description="user | admin")


class Borrowed(BaseModel):
    """
    Borrow records schema
    Collection name: "borrowed"

    email, book_name, author_name, category and image are copies taken when
    the book is borrowed. They are not refreshed when the catalog changes.
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str = Field(..., description="User ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string")
    email: str = Field(..., description="Borrower email at borrow time")
    book_name: str = Field(..., description="Book title at borrow time")
    author_name: str = Field(..., description="Author at borrow time")
    category: str = Field(..., description="Category at borrow time")
    image: str = Field(..., description="Cover image at borrow time")
    borrowed_at: datetime = Field(default_factory=utcnow)
    return_due_at: datetime = Field(..., description="Agreed return date (UTC)")
    return_requested_at: Optional[datetime] = Field(None, description="When the borrower asked to return")
    returned_at: Optional[datetime] = Field(None, description="When an admin confirmed the return")
    return_date_edit_count: int = Field(0, ge=0, description="Times the borrower moved the return date")
    status: BorrowStatus = Field(BorrowStatus.BORROWED.value, description="borrowed | return_pending | returned")
    fine: float = Field(0, ge=0, description="Stored fine amount")
    active_key: Optional[str] = Field(None, description="user_id:book_id while the borrow is active")


class Suggestion(BaseModel):
    """
    Book suggestions schema
    Collection name: "added"

    Submitted by any user; an admin approves or rejects it. Approval adds
    the book to the catalog and stores the new book id in book_id.
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str = Field(..., description="Submitting user ObjectId as string")
    email: str = Field(..., description="Submitter email")
    name: str = Field(..., description="Book title")
    author_name: str = Field(..., description="Primary author")
    category: str = Field(..., description="Category/Genre")
    image: str = Field(..., description="Cover image URL")
    rating: float = Field(0, ge=0, le=5, description="Rating 0-5")
    description: Optional[str] = Field(None, description="Short description")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    published_year: Optional[int] = Field(None, description="Year of publication")
    status: SuggestionStatus = Field(SuggestionStatus.PENDING.value, description="pending | approved | rejected")
    book_id: Optional[str] = Field(None, description="Catalog book created on approval")
