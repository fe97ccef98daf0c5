import re
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import Identity, create_token, get_identity, normalize_email, require_admin, upsert_user
from config import settings
from database import BOOKS, USERS, create_document, ensure_indexes, get_db, get_documents, to_object_id, to_str_id, utcnow
from errors import Conflict, Forbidden, InvalidArgument, LibraryError, NotFound
from ledger import BorrowLedger, heal_availability
from schemas import Book as BookSchema, Role, User as UserSchema
import suggestions

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())


# Helpers
def respond(message: str, data: Any = None, status_code: int = 200, success: bool = True) -> JSONResponse:
    body: Dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = data
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = normalize_email(value)
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email format")
    return value


def book_oid_or_400(book_id: str) -> ObjectId:
    oid = to_object_id(book_id)
    if oid is None:
        raise InvalidArgument("Invalid book id")
    return oid


def user_oid_or_400(user_id: str) -> ObjectId:
    oid = to_object_id(user_id)
    if oid is None:
        raise InvalidArgument("Invalid user id")
    return oid


def healed_book(database: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    return to_str_id(heal_availability(database, doc))


# Request Models
class CreateBook(BaseModel):
    name: str
    author_name: str
    category: str
    image: str
    rating: float = Field(0, ge=0, le=5)
    description: Optional[str] = None
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    quantity: int = Field(1, ge=0)


class UpdateBook(BaseModel):
    name: Optional[str] = None
    author_name: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    description: Optional[str] = None
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    quantity: Optional[int] = Field(None, ge=0)


class CreateUser(BaseModel):
    name: str
    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return validate_email(value)


class TokenRequest(BaseModel):
    email: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return validate_email(value)


class BorrowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(..., alias="bookId")
    return_date: datetime = Field(..., alias="returnDate")
    email: Optional[str] = None
    book_name: Optional[str] = Field(None, alias="bookName")
    author_name: Optional[str] = Field(None, alias="authorName")
    category: Optional[str] = None
    image: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return validate_email(value)


class ReturnDateUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    return_date: datetime = Field(..., alias="returnDate")


class CreateSuggestion(BaseModel):
    name: str
    author_name: str
    category: str
    image: str
    rating: float = Field(0, ge=0, le=5)
    description: Optional[str] = None
    isbn: Optional[str] = None
    published_year: Optional[int] = None


class StatusUpdate(BaseModel):
    status: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    try:
        ensure_indexes(get_db())
    except (PyMongoError, RuntimeError) as e:
        logger.error("Could not ensure indexes at startup: {}", e)
    logger.info("{} {} started ({})", settings.app_name, settings.app_version, settings.environment)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("{} {} -> {} ({:.1f} ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# Error handlers
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return respond(exc.message, status_code=exc.status_code, success=False)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return respond(str(exc.detail), status_code=exc.status_code, success=False)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        errors.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return respond("Validation failed", data={"errors": errors}, status_code=400, success=False)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on {} {}", request.method, request.url.path)
    return respond("Internal server error", status_code=500, success=False)


def get_ledger(database: Database = Depends(get_db)) -> BorrowLedger:
    return BorrowLedger(database)


@app.get("/")
def read_root():
    return respond("Library Management API is running")


# Auth Endpoints
@app.post("/jwt")
def issue_token(payload: TokenRequest, database: Database = Depends(get_db)):
    user = upsert_user(database, payload.email, payload.name)
    token = create_token(user["email"], user.get("name"))
    response = respond("Token generated successfully", data={"token": token})
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure or settings.is_production,
        samesite="none" if settings.is_production else "strict",
        max_age=settings.jwt_expiration_minutes * 60,
    )
    return response


@app.post("/logout")
def logout():
    response = respond("Logged out successfully")
    response.delete_cookie(settings.cookie_name)
    return response


# Books Endpoints
@app.get("/books")
def list_books(
    q: Optional[str] = None,
    category: Optional[str] = None,
    author: Optional[str] = None,
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"author_name": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if author:
        query["author_name"] = {"$regex": re.escape(author), "$options": "i"}
    docs = database[BOOKS].find(query).sort("name", 1)
    return respond("Books retrieved successfully", [healed_book(database, d) for d in docs])


@app.get("/books/category/{category}")
def list_books_by_category(category: str, database: Database = Depends(get_db)):
    docs = database[BOOKS].find({"category": category}).sort("name", 1)
    return respond("Books retrieved successfully", [healed_book(database, d) for d in docs])


@app.get("/books/{book_id}")
def get_book(book_id: str, database: Database = Depends(get_db)):
    doc = database[BOOKS].find_one({"_id": book_oid_or_400(book_id)})
    if not doc:
        raise NotFound("Book not found")
    return respond("Book retrieved successfully", healed_book(database, doc))


@app.post("/books")
def create_book(payload: CreateBook, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    data = payload.model_dump()
    data["available"] = data["quantity"] > 0
    try:
        new_id = create_document(database, BOOKS, BookSchema(**data).to_document())
    except DuplicateKeyError as e:
        raise Conflict("A book with this ISBN already exists") from e
    doc = database[BOOKS].find_one({"_id": ObjectId(new_id)})
    logger.info("Book {} created by {}", new_id, identity.email)
    return respond("Book created successfully", to_str_id(doc), status_code=201)


@app.put("/books/{book_id}")
def update_book(book_id: str, payload: UpdateBook, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    oid = book_oid_or_400(book_id)
    update = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not update:
        raise InvalidArgument("No fields to update")
    if "quantity" in update:
        update["available"] = update["quantity"] > 0
    update["updated_at"] = utcnow()
    try:
        result = database[BOOKS].update_one({"_id": oid}, {"$set": update})
    except DuplicateKeyError as e:
        raise Conflict("A book with this ISBN already exists") from e
    if result.matched_count == 0:
        raise NotFound("Book not found")
    doc = database[BOOKS].find_one({"_id": oid})
    logger.info("Book {} updated by {}: {}", book_id, identity.email, sorted(update))
    return respond("Book updated successfully", healed_book(database, doc))


@app.delete("/books/{book_id}")
def delete_book(book_id: str, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    result = database[BOOKS].delete_one({"_id": book_oid_or_400(book_id)})
    if result.deleted_count == 0:
        raise NotFound("Book not found")
    logger.info("Book {} deleted by {}", book_id, identity.email)
    return respond("Book deleted successfully")


# Users Endpoints
@app.post("/users")
def create_user(payload: CreateUser, database: Database = Depends(get_db)):
    user = UserSchema(name=payload.name, email=payload.email)
    try:
        new_id = create_document(database, USERS, user)
    except DuplicateKeyError as e:
        raise Conflict("User already exists") from e
    doc = database[USERS].find_one({"_id": ObjectId(new_id)})
    return respond("User created successfully", to_str_id(doc), status_code=201)


@app.get("/users")
def list_users(identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    users = get_documents(database, USERS, sort=[("created_at", -1)])
    return respond("Users retrieved successfully", users)


@app.get("/users/admin/{email}")
def check_admin_status(email: str, identity: Identity = Depends(get_identity)):
    if normalize_email(email) != identity.email:
        raise Forbidden("Forbidden access")
    return respond("Admin status checked", {"admin": identity.is_admin})


@app.get("/users/{user_id}")
def get_user(user_id: str, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    doc = database[USERS].find_one({"_id": user_oid_or_400(user_id)})
    if not doc:
        raise NotFound("User not found")
    return respond("User retrieved successfully", to_str_id(doc))


def _set_role(database: Database, user_id: str, role: str) -> Dict[str, Any]:
    oid = user_oid_or_400(user_id)
    result = database[USERS].update_one({"_id": oid}, {"$set": {"role": role, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise NotFound("User not found")
    return to_str_id(database[USERS].find_one({"_id": oid}))


@app.patch("/users/{user_id}/admin")
def make_admin(user_id: str, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    doc = _set_role(database, user_id, Role.ADMIN.value)
    logger.info("User {} promoted to admin by {}", doc["email"], identity.email)
    return respond("User role updated to admin", doc)


@app.patch("/users/{user_id}/remove-admin")
def remove_admin(user_id: str, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    doc = _set_role(database, user_id, Role.USER.value)
    logger.info("Admin privileges of {} removed by {}", doc["email"], identity.email)
    return respond("Admin privileges removed", doc)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    result = database[USERS].delete_one({"_id": user_oid_or_400(user_id)})
    if result.deleted_count == 0:
        raise NotFound("User not found")
    logger.info("User {} deleted by {}", user_id, identity.email)
    return respond("User deleted successfully")


# Borrowed Books Endpoints
@app.get("/borrowed")
def list_my_borrowed(
    email: Optional[str] = None,
    status: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    ledger: BorrowLedger = Depends(get_ledger),
):
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    records = ledger.list_for_user(identity, email, statuses)
    return respond("Borrowed books retrieved successfully", records)


@app.get("/borrowed/pending")
def list_pending_returns(identity: Identity = Depends(require_admin), ledger: BorrowLedger = Depends(get_ledger)):
    return respond("Pending returns retrieved successfully", ledger.list_pending_returns())


@app.get("/borrowed/all")
def list_all_borrowed(identity: Identity = Depends(get_identity), ledger: BorrowLedger = Depends(get_ledger)):
    return respond("All borrowed books retrieved successfully", ledger.list_all())


@app.post("/borrowed")
def borrow_book(payload: BorrowRequest, identity: Identity = Depends(get_identity), ledger: BorrowLedger = Depends(get_ledger)):
    record = ledger.borrow_book(
        identity,
        payload.book_id,
        payload.return_date,
        email=payload.email,
        book_name=payload.book_name,
        author_name=payload.author_name,
        category=payload.category,
        image=payload.image,
    )
    return respond("Book borrowed successfully", record, status_code=201)


@app.patch("/borrowed/{record_id}/return")
def request_return(record_id: str, identity: Identity = Depends(get_identity), ledger: BorrowLedger = Depends(get_ledger)):
    record = ledger.request_return(record_id, identity)
    return respond("Return request submitted successfully", record)


@app.patch("/borrowed/{record_id}/return-date")
def update_return_date(
    record_id: str,
    payload: ReturnDateUpdate,
    identity: Identity = Depends(get_identity),
    ledger: BorrowLedger = Depends(get_ledger),
):
    record = ledger.update_return_date(record_id, identity, payload.return_date)
    return respond("Return date updated successfully", record)


@app.patch("/borrowed/{record_id}")
def update_borrowed_status(
    record_id: str,
    payload: StatusUpdate,
    identity: Identity = Depends(require_admin),
    ledger: BorrowLedger = Depends(get_ledger),
):
    record = ledger.set_status(record_id, payload.status, actor=identity)
    return respond("Borrowed book status updated successfully", record)


@app.delete("/borrowed/{record_id}")
def delete_borrowed(record_id: str, identity: Identity = Depends(get_identity), ledger: BorrowLedger = Depends(get_ledger)):
    ledger.delete_record(record_id, identity)
    return respond("Borrowed book record deleted successfully")


# Book Suggestions Endpoints
@app.get("/added")
def list_my_suggestions(
    email: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    database: Database = Depends(get_db),
):
    return respond("Added books retrieved successfully", suggestions.list_for_user(database, identity, email))


@app.get("/added/all")
def list_all_suggestions(identity: Identity = Depends(require_admin), database: Database = Depends(get_db)):
    return respond("All added books retrieved successfully", suggestions.list_all(database))


@app.post("/added")
def suggest_book(payload: CreateSuggestion, identity: Identity = Depends(get_identity), database: Database = Depends(get_db)):
    suggestion = suggestions.submit(database, identity, payload.model_dump())
    return respond("Book suggestion added successfully", suggestion, status_code=201)


@app.get("/added/{suggestion_id}")
def get_suggestion(suggestion_id: str, identity: Identity = Depends(get_identity), database: Database = Depends(get_db)):
    return respond("Added book retrieved successfully", suggestions.get_suggestion(database, suggestion_id, identity))


@app.patch("/added/{suggestion_id}/status")
def update_suggestion_status(
    suggestion_id: str,
    payload: StatusUpdate,
    identity: Identity = Depends(require_admin),
    database: Database = Depends(get_db),
):
    suggestion = suggestions.set_status(database, suggestion_id, payload.status, identity)
    return respond("Added book status updated successfully", suggestion)


@app.delete("/added/{suggestion_id}")
def delete_suggestion(suggestion_id: str, identity: Identity = Depends(get_identity), database: Database = Depends(get_db)):
    suggestions.delete_suggestion(database, suggestion_id, identity)
    return respond("Added book record deleted successfully")


@app.get("/health")
def health(database: Database = Depends(get_db)):
    status: Dict[str, Any] = {
        "backend": "running",
        "database": "not available",
        "database_name": database.name,
        "collections": [],
    }
    try:
        database.command("ping")
        status["database"] = "connected"
        status["collections"] = database.list_collection_names()[:10]
    except PyMongoError as e:
        logger.warning("Health check could not reach the database: {}", e)
        status["database"] = f"error: {str(e)[:50]}"
        return respond("Database unavailable", status, status_code=503, success=False)
    return respond("Service healthy", status)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
