from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

from database import get_db
from main import app


def unreachable_db():
    raise PyMongoError("secret detail")


def test_unexpected_error_gives_generic_envelope():
    app.dependency_overrides[get_db] = unreachable_db
    try:
        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/books")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Internal server error"
    assert "data" not in body
    assert "secret detail" not in response.text


def test_unknown_route_uses_envelope(client):
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json()["success"] is False
