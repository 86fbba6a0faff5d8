import contextlib
from datetime import datetime, timedelta

import pytest

import accounts


def fake_accounts_db(monkeypatch, row, executed):
    class FakeCursor:
        def fetchone(self):
            return row

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(accounts, "purge_old_login_attempts", lambda: None)
    monkeypatch.setattr(accounts, "db_connection", fake_db_connection)
    monkeypatch.setattr(accounts, "db_execute", fake_db_execute)


def test_is_login_blocked_returns_wait_time_when_lock_active(monkeypatch):
    fake_accounts_db(monkeypatch, {"failures": 4, "locked_until": datetime.now() + timedelta(seconds=61)}, [])
    blocked, wait_minutes = accounts.is_login_blocked("login", "User1@School.org", "127.0.0.1")
    assert blocked is True
    assert wait_minutes >= 2


def test_is_login_blocked_after_lock_expired(monkeypatch):
    fake_accounts_db(monkeypatch, {"failures": 4, "locked_until": datetime.now() - timedelta(minutes=1)}, [])
    assert accounts.is_login_blocked("login", "user1@school.org", "127.0.0.1") == (False, 0)


def test_register_failed_login_locks_when_threshold_reached(monkeypatch):
    executed = []
    row = {"failures": accounts.LOGIN_MAX_ATTEMPTS - 1, "last_failed_at": datetime.now(), "locked_until": None}
    fake_accounts_db(monkeypatch, row, executed)

    accounts.register_failed_login("login", "User1@School.org", "127.0.0.1")

    updates = [params for query, params in executed if "UPDATE login_attempts" in query]
    assert len(updates) == 1
    assert updates[0][0] == accounts.LOGIN_MAX_ATTEMPTS
    assert updates[0][2] is not None
    assert updates[0][4] == "user1@school.org"


def test_register_failed_login_restarts_count_after_window(monkeypatch):
    executed = []
    row = {"failures": 3, "last_failed_at": datetime.now() - timedelta(hours=1), "locked_until": None}
    fake_accounts_db(monkeypatch, row, executed)

    accounts.register_failed_login("login", "user1@school.org", "127.0.0.1")

    updates = [params for query, params in executed if "UPDATE login_attempts" in query]
    assert updates[0][0] == 1
    assert updates[0][2] is None


def test_create_user_rejects_duplicate_email(monkeypatch):
    fake_accounts_db(monkeypatch, {"id": 1}, [])
    with pytest.raises(ValueError, match="already used"):
        accounts.create_user("Admin@School.org", "longenough", "school_admin", school_id=1)


@pytest.mark.parametrize(
    "email,password,role,school_id,message",
    [
        ("not-an-email", "longenough", "teacher", 1, "valid email"),
        ("t@school.org", "short", "teacher", 1, "at least 8"),
        ("t@school.org", "longenough", "janitor", 1, "role"),
        ("t@school.org", "longenough", "teacher", None, "without a school"),
    ],
)
def test_create_user_validation(email, password, role, school_id, message):
    with pytest.raises(ValueError, match=message):
        accounts.create_user_with_cursor(None, email, password, role, school_id)


def test_change_password_requires_current_password(monkeypatch):
    monkeypatch.setattr(accounts, "get_user", lambda user_id: {"id": user_id, "password_hash": accounts.hash_password("oldpassword")})
    with pytest.raises(ValueError, match="incorrect"):
        accounts.change_password(1, "wrong", "newpassword")


def test_user_display_name_falls_back_to_email():
    assert accounts.user_display_name({"first_name": "Ama", "last_name": "Owusu"}) == "Ama Owusu"
    assert accounts.user_display_name({"email": "ama@school.org"}) == "ama@school.org"
