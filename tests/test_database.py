from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from memberportal.database import DataStoreError, Database
from memberportal.models import GeoSnapshot, LoginEvent


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db_path = tmp_path / "portal.sqlite3"
    db = Database(db_path)
    db.initialize()
    return db


def test_create_user_normalises_email_and_rejects_duplicates(database: Database) -> None:
    user = database.create_user("  Member@Example.ORG ", name="Member", role="member")

    assert user.email == "member@example.org"
    assert database.get_user_by_email("MEMBER@example.org") == database.get_user(user.id)
    with pytest.raises(ValueError):
        database.create_user("member@example.org")
    with pytest.raises(ValueError):
        database.create_user("not-an-email")
    with pytest.raises(ValueError):
        database.create_user("other@example.org", role="superuser")


def test_upsert_user_keeps_existing_role(database: Database) -> None:
    database.create_user("member@example.org", user_id="u-1", role="admin")

    updated = database.upsert_user("u-1", "member@example.org", name="Renamed", role="guest")

    assert updated.role == "admin"
    assert updated.name == "Renamed"


def test_login_markers_and_activity(database: Database) -> None:
    database.create_user("member@example.org", user_id="u-1")
    login_at = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    activity_at = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)

    assert database.touch_login("u-1", login_at) is True
    assert database.touch_activity("u-1", activity_at) is True
    assert database.touch_activity("missing", activity_at) is False

    user = database.get_user("u-1")
    assert user is not None
    assert user.last_login == login_at
    assert user.last_activity == activity_at


def test_insert_and_list_logins(database: Database) -> None:
    event = LoginEvent(
        user_id="u-1",
        email="member@example.org",
        ip_address="203.0.113.1",
        login_method="otp",
        login_time=datetime(2024, 2, 2, tzinfo=timezone.utc),
        geo=GeoSnapshot.build(country="Canada", city="Toronto", latitude=43.6),
    )

    stored = database.insert_login(event)
    database.insert_login(event)

    assert stored.id is not None
    logins = database.list_logins("u-1")
    assert len(logins) == 2
    assert logins[0].geo.country == "Canada"
    assert logins[0].geo.latitude == 43.6
    assert logins[0].device.browser == "Unknown"
    assert database.list_logins("someone-else") == []


def test_password_verification(database: Database) -> None:
    user = database.create_user("admin@example.org", role="admin", password="Sup3rSecurePwd!")

    assert database.verify_user_password(user.id, "Sup3rSecurePwd!") is True
    assert database.verify_user_password(user.id, "wrong") is False

    guest = database.create_user("guest@example.org")
    assert database.verify_user_password(guest.id, "anything") is False


def test_domains(database: Database) -> None:
    database.allow_domain(" Example.ORG ", "Example Org")

    assert database.is_domain_allowed("example.org") is True
    assert database.is_domain_allowed("other.org") is False
    with pytest.raises(ValueError):
        database.allow_domain("localhost")


def test_store_errors_are_wrapped(tmp_path: Path) -> None:
    database = Database(tmp_path / "uninitialised.sqlite3")

    with pytest.raises(DataStoreError) as excinfo:
        database.get_user("u-1")

    assert "no such table" in excinfo.value.message
    assert excinfo.value.to_dict()["code"] == "OperationalError"
