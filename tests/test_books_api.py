from bson import ObjectId

from conftest import auth_headers
from database import BOOKS

NEW_BOOK = {
    "name": "The Hobbit",
    "author_name": "J.R.R. Tolkien",
    "category": "Fantasy",
    "image": "https://img.example.com/hobbit.jpg",
    "quantity": 2,
}


def test_list_books(client, make_book):
    make_book(name="Dune")
    make_book(name="Anathem", author_name="Neal Stephenson")

    response = client.get("/books")

    assert response.status_code == 200
    assert [b["name"] for b in response.json()["data"]] == ["Anathem", "Dune"]


def test_search_books(client, make_book):
    make_book(name="Dune")
    make_book(name="Anathem", author_name="Neal Stephenson")

    response = client.get("/books", params={"q": "stephen"})

    assert [b["name"] for b in response.json()["data"]] == ["Anathem"]


def test_books_by_category(client, make_book):
    make_book(name="Dune")
    make_book(name="Emma", category="Romance")

    response = client.get("/books/category/Romance")

    assert [b["name"] for b in response.json()["data"]] == ["Emma"]


def test_reading_a_book_heals_availability(client, mongo_db, make_book):
    book_id = make_book(quantity=0)
    mongo_db[BOOKS].update_one({"_id": ObjectId(book_id)}, {"$set": {"available": True}})

    response = client.get(f"/books/{book_id}")

    assert response.json()["data"]["available"] is False
    assert mongo_db[BOOKS].find_one({"_id": ObjectId(book_id)})["available"] is False


def test_get_book_errors(client):
    assert client.get("/books/bad-id").status_code == 400
    assert client.get(f"/books/{ObjectId()}").status_code == 404


def test_search_books_by_author(client, make_book):
    make_book(name="Dune")
    make_book(name="Anathem", author_name="Neal Stephenson")

    response = client.get("/books", params={"author": "herbert"})

    assert [b["name"] for b in response.json()["data"]] == ["Dune"]


def test_create_book_requires_token(client):
    response = client.post("/books", json=NEW_BOOK)

    assert response.status_code == 401


def test_catalog_writes_require_admin(client, mongo_db, reader, make_book):
    book_id = make_book(quantity=0)
    headers = auth_headers(reader.email)

    created = client.post("/books", json=NEW_BOOK, headers=headers)
    updated = client.put(f"/books/{book_id}", json={"quantity": 500}, headers=headers)

    assert created.status_code == 403
    assert updated.status_code == 403
    assert mongo_db[BOOKS].count_documents({}) == 1
    assert mongo_db[BOOKS].find_one({"_id": ObjectId(book_id)})["quantity"] == 0


def test_create_book(client, admin):
    response = client.post("/books", json=NEW_BOOK, headers=auth_headers(admin.email))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["quantity"] == 2
    assert data["available"] is True


def test_create_book_without_stock_is_unavailable(client, admin):
    response = client.post("/books", json={**NEW_BOOK, "quantity": 0}, headers=auth_headers(admin.email))

    assert response.json()["data"]["available"] is False


def test_update_quantity_recomputes_availability(client, admin, make_book):
    book_id = make_book(quantity=1)

    response = client.put(f"/books/{book_id}", json={"quantity": 0}, headers=auth_headers(admin.email))

    assert response.status_code == 200
    assert response.json()["data"]["available"] is False


def test_isbn_is_unique_when_present(client, admin):
    headers = auth_headers(admin.email)

    first = client.post("/books", json={**NEW_BOOK, "isbn": "978-0547928227"}, headers=headers)
    second = client.post("/books", json={**NEW_BOOK, "isbn": "978-0547928227"}, headers=headers)
    without_isbn = [client.post("/books", json=NEW_BOOK, headers=headers) for _ in range(2)]

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["message"] == "A book with this ISBN already exists"
    assert [r.status_code for r in without_isbn] == [201, 201]


def test_update_without_fields(client, admin, make_book):
    response = client.put(f"/books/{make_book()}", json={}, headers=auth_headers(admin.email))

    assert response.status_code == 400
    assert response.json()["message"] == "No fields to update"


def test_delete_book_requires_admin(client, mongo_db, reader, admin, make_book):
    book_id = make_book()

    as_user = client.delete(f"/books/{book_id}", headers=auth_headers(reader.email))
    as_admin = client.delete(f"/books/{book_id}", headers=auth_headers(admin.email))

    assert as_user.status_code == 403
    assert as_admin.status_code == 200
    assert mongo_db[BOOKS].count_documents({}) == 0
