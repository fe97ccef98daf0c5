import pytest
from typer.testing import CliRunner

import manage
from database import USERS

runner = CliRunner()


@pytest.fixture(autouse=True)
def use_test_db(monkeypatch, mongo_db):
    monkeypatch.setattr(manage, "get_database", lambda: mongo_db)


def test_make_admin_creates_missing_user(mongo_db):
    result = runner.invoke(manage.app, ["make-admin", "Boss@Example.com"])

    assert result.exit_code == 0
    user = mongo_db[USERS].find_one({"email": "boss@example.com"})
    assert user["role"] == "admin"
    assert user["name"] == "boss"


def test_make_admin_promotes_existing_user(mongo_db, reader):
    result = runner.invoke(manage.app, ["make-admin", reader.email])

    assert result.exit_code == 0
    assert mongo_db[USERS].find_one({"email": reader.email})["role"] == "admin"


def test_make_admin_is_idempotent(mongo_db, admin):
    result = runner.invoke(manage.app, ["make-admin", admin.email])

    assert result.exit_code == 0
    assert "already an admin" in result.output


def test_remove_admin(mongo_db, admin):
    result = runner.invoke(manage.app, ["remove-admin", admin.email])

    assert result.exit_code == 0
    assert mongo_db[USERS].find_one({"email": admin.email})["role"] == "user"


def test_remove_admin_unknown_user():
    result = runner.invoke(manage.app, ["remove-admin", "nobody@example.com"])

    assert result.exit_code == 1


def test_ensure_indexes():
    result = runner.invoke(manage.app, ["ensure-indexes"])

    assert result.exit_code == 0
