import pytest
from bson import ObjectId

from conftest import auth_headers
from database import BOOKS, SUGGESTIONS

SUGGESTED = {
    "name": "Piranesi",
    "author_name": "Susanna Clarke",
    "category": "Fantasy",
    "image": "https://img.example.com/piranesi.jpg",
    "rating": 4.5,
    "isbn": "978-1635575637",
    "published_year": 2020,
}


@pytest.fixture
def headers(reader):
    return auth_headers(reader.email)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin.email)


def suggest(client, headers, **overrides):
    return client.post("/added", json={**SUGGESTED, **overrides}, headers=headers)


def test_suggest_book(client, reader, headers):
    response = suggest(client, headers)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["email"] == reader.email
    assert data["user_id"] == reader.user_id
    assert data["book_id"] is None


def test_suggest_requires_token(client):
    assert client.post("/added", json=SUGGESTED).status_code == 401


def test_list_my_suggestions(client, headers, other_reader):
    suggest(client, headers)
    suggest(client, auth_headers(other_reader.email), name="Jonathan Strange")

    mine = client.get("/added", params={"email": "reader@example.com"}, headers=headers)
    theirs = client.get("/added", params={"email": "other@example.com"}, headers=headers)

    assert [s["name"] for s in mine.json()["data"]] == ["Piranesi"]
    assert theirs.status_code == 403


def test_list_all_suggestions_for_admin_only(client, headers, admin_headers):
    suggest(client, headers)

    as_user = client.get("/added/all", headers=headers)
    as_admin = client.get("/added/all", headers=admin_headers)

    assert as_user.status_code == 403
    assert len(as_admin.json()["data"]) == 1


def test_get_suggestion_is_limited_to_owner_and_admin(client, headers, admin_headers, other_reader):
    suggestion_id = suggest(client, headers).json()["data"]["id"]

    assert client.get(f"/added/{suggestion_id}", headers=headers).status_code == 200
    assert client.get(f"/added/{suggestion_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/added/{suggestion_id}", headers=auth_headers(other_reader.email)).status_code == 403
    assert client.get(f"/added/{ObjectId()}", headers=headers).status_code == 404
    assert client.get("/added/bad-id", headers=headers).status_code == 400


def test_approval_adds_the_book_to_the_catalog(client, mongo_db, headers, admin_headers):
    suggestion_id = suggest(client, headers).json()["data"]["id"]

    response = client.patch(f"/added/{suggestion_id}/status", json={"status": "approved"}, headers=admin_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "approved"
    book = mongo_db[BOOKS].find_one({"_id": ObjectId(data["book_id"])})
    assert book["name"] == "Piranesi"
    assert book["author_name"] == "Susanna Clarke"
    assert book["isbn"] == "978-1635575637"
    assert book["published_year"] == 2020
    assert book["quantity"] == 1
    assert book["available"] is True


def test_approving_twice_adds_one_book(client, mongo_db, headers, admin_headers):
    suggestion_id = suggest(client, headers).json()["data"]["id"]
    url = f"/added/{suggestion_id}/status"

    client.patch(url, json={"status": "approved"}, headers=admin_headers)
    again = client.patch(url, json={"status": "approved"}, headers=admin_headers)

    assert again.status_code == 200
    assert mongo_db[BOOKS].count_documents({}) == 1


def test_approved_suggestion_cannot_be_rejected(client, headers, admin_headers):
    suggestion_id = suggest(client, headers).json()["data"]["id"]
    url = f"/added/{suggestion_id}/status"
    client.patch(url, json={"status": "approved"}, headers=admin_headers)

    response = client.patch(url, json={"status": "rejected"}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["message"] == "Suggestion has already been approved"


def test_rejection_leaves_the_catalog_alone(client, mongo_db, headers, admin_headers):
    suggestion_id = suggest(client, headers).json()["data"]["id"]

    response = client.patch(f"/added/{suggestion_id}/status", json={"status": "rejected"}, headers=admin_headers)

    assert response.json()["data"]["status"] == "rejected"
    assert mongo_db[BOOKS].count_documents({}) == 0


def test_approval_with_existing_isbn_keeps_suggestion_pending(client, mongo_db, headers, admin_headers, make_book):
    make_book(isbn="978-1635575637")
    suggestion_id = suggest(client, headers).json()["data"]["id"]

    response = client.patch(f"/added/{suggestion_id}/status", json={"status": "approved"}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["message"] == "A book with this ISBN already exists"
    assert mongo_db[SUGGESTIONS].find_one({"_id": ObjectId(suggestion_id)})["status"] == "pending"
    assert mongo_db[BOOKS].count_documents({}) == 1


def test_status_change_requires_admin_and_known_status(client, headers, admin_headers):
    suggestion_id = suggest(client, headers).json()["data"]["id"]
    url = f"/added/{suggestion_id}/status"

    assert client.patch(url, json={"status": "approved"}, headers=headers).status_code == 403
    assert client.patch(url, json={"status": "maybe"}, headers=admin_headers).status_code == 400


def test_delete_suggestion(client, mongo_db, headers, admin_headers, other_reader):
    own_id = suggest(client, headers).json()["data"]["id"]
    other_id = suggest(client, headers, name="The Ladies of Grace Adieu").json()["data"]["id"]

    stranger = client.delete(f"/added/{own_id}", headers=auth_headers(other_reader.email))
    by_owner = client.delete(f"/added/{own_id}", headers=headers)
    by_admin = client.delete(f"/added/{other_id}", headers=admin_headers)
    again = client.delete(f"/added/{own_id}", headers=headers)

    assert stranger.status_code == 403
    assert by_owner.status_code == 200
    assert by_admin.status_code == 200
    assert again.status_code == 404
    assert mongo_db[SUGGESTIONS].count_documents({}) == 0
