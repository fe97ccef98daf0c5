from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Identity, create_token, upsert_user
from database import BOOKS, create_document, ensure_indexes, get_db, utcnow
from ledger import BorrowLedger
from main import app
from schemas import Book, Role


def identity_for(user) -> Identity:
    return Identity(user_id=str(user["_id"]), email=user["email"], name=user["name"], role=user["role"])


def auth_headers(email: str) -> dict:
    return {"Authorization": f"Bearer {create_token(email)}"}


def in_days(days: float):
    return utcnow() + timedelta(days=days)


@pytest.fixture
def mongo_db():
    # fresh in-memory database per test
    client = mongomock.MongoClient()
    db = client["library_test"]
    ensure_indexes(db)
    yield db
    client.close()


@pytest.fixture
def ledger(mongo_db):
    return BorrowLedger(mongo_db)


@pytest.fixture
def reader(mongo_db):
    return identity_for(upsert_user(mongo_db, "reader@example.com", "Reader"))


@pytest.fixture
def other_reader(mongo_db):
    return identity_for(upsert_user(mongo_db, "other@example.com", "Other"))


@pytest.fixture
def admin(mongo_db):
    return identity_for(upsert_user(mongo_db, "admin@example.com", "Admin", role=Role.ADMIN.value))


@pytest.fixture
def make_book(mongo_db):
    def _make(quantity=1, **overrides):
        data = {
            "name": "Dune",
            "author_name": "Frank Herbert",
            "category": "Science Fiction",
            "image": "https://img.example.com/dune.jpg",
            "quantity": quantity,
            "available": quantity > 0,
        }
        data.update(overrides)
        return create_document(mongo_db, BOOKS, Book(**data).to_document())
    return _make


@pytest.fixture
def client(mongo_db):
    app.dependency_overrides[get_db] = lambda: mongo_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
