import contextlib

import pytest

import attendance


def fake_session_db(monkeypatch, session_row, executed):
    class FakeCursor:
        def fetchone(self):
            return session_row

        def fetchall(self):
            return []

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(attendance, "db_connection", fake_db_connection)
    monkeypatch.setattr(attendance, "db_execute", fake_db_execute)


@pytest.mark.parametrize(
    "present,late,excused,total,expected",
    [(0, 0, 0, 0, 0), (29, 0, 0, 30, 97), (1, 0, 0, 8, 13), (1, 0, 0, 200, 1), (1, 1, 1, 3, 100), (0, 0, 0, 5, 0)],
)
def test_attendance_rate_rounds_half_up(present, late, excused, total, expected):
    assert attendance.attendance_rate(present, late, excused, total) == expected


def test_count_statuses_ignores_unknown_values():
    counts = attendance.count_statuses(["present", "present", "late", "bogus"])
    assert counts == {"present": 2, "absent": 0, "late": 1, "excused": 0}


def test_locked_session_refuses_marking(monkeypatch):
    executed = []
    fake_session_db(monkeypatch, {"id": 3, "school_id": 1, "class_id": 4, "status": "locked"}, executed)
    with pytest.raises(ValueError, match="locked"):
        attendance.mark_student_attendance(1, 3, 10, "present")
    assert not any("INSERT" in query for query, _ in executed)


def test_session_from_another_school_is_forbidden(monkeypatch):
    fake_session_db(monkeypatch, {"id": 3, "school_id": 2, "class_id": 4, "status": "pending"}, [])
    with pytest.raises(PermissionError):
        attendance.complete_attendance(1, 3)


def test_unlock_only_from_locked(monkeypatch):
    fake_session_db(monkeypatch, {"id": 3, "school_id": 1, "class_id": 4, "status": "completed"}, [])
    with pytest.raises(ValueError, match="completed to completed"):
        attendance.unlock_attendance(1, 3, {"id": 9})


def test_lock_records_who_locked(monkeypatch):
    executed = []
    fake_session_db(monkeypatch, {"id": 3, "school_id": 1, "class_id": 4, "status": "completed"}, executed)
    attendance.lock_attendance(1, 3, {"id": 9})
    query, params = executed[-1]
    assert "locked_by = ?" in query
    assert params[0] == "locked"
    assert params[2] == 9
    assert params[-1] == 3


def test_override_requires_reason():
    with pytest.raises(ValueError, match="reason"):
        attendance.admin_override_attendance(1, 3, 10, "absent", "")


def test_invalid_record_status_rejected():
    with pytest.raises(ValueError, match="attendance status"):
        attendance.mark_student_attendance(1, 3, 10, "sleeping")


def test_save_settings_coerces_types(monkeypatch):
    monkeypatch.setattr(attendance, "get_attendance_settings", lambda school_id: dict(attendance.DEFAULT_SETTINGS))
    fake_session_db(monkeypatch, None, [])
    settings = attendance.save_attendance_settings(1, {"late_threshold_minutes": "20", "auto_lock_attendance": "yes",
                                                      "morning_start_time": "07:30"})
    assert settings["late_threshold_minutes"] == 20
    assert settings["auto_lock_attendance"] is True
    assert settings["morning_start_time"] == "07:30"


@pytest.mark.parametrize(
    "updates",
    [{"unknown_key": 1}, {"late_threshold_minutes": "soon"}, {"lock_after_hours": -1}, {"morning_end_time": "noon"}],
)
def test_save_settings_rejects_bad_values(monkeypatch, updates):
    monkeypatch.setattr(attendance, "get_attendance_settings", lambda school_id: dict(attendance.DEFAULT_SETTINGS))
    with pytest.raises(ValueError):
        attendance.save_attendance_settings(1, updates)


def class_marking_db(monkeypatch, session_row, class_students, executed):
    """Session lookup plus class membership; records every statement."""

    class FakeCursor:
        row = None

        def fetchone(self):
            return self.row

        def fetchall(self):
            return [{"status": params[2]} for query, params in executed if query.startswith("INSERT INTO attendance_records")]

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(cursor, query, params=None):
        executed.append((query, params))
        if query.startswith("SELECT * FROM attendance"):
            cursor.row = session_row
        elif query.startswith("SELECT id FROM students"):
            cursor.row = {"id": params[0]} if params[0] in class_students else None

    monkeypatch.setattr(attendance, "db_connection", fake_db_connection)
    monkeypatch.setattr(attendance, "db_execute", fake_db_execute)
    monkeypatch.setattr(attendance, "fetch_one", lambda c: dict(c.row) if c.row else None)


def test_class_marking_keeps_good_rows_and_reports_bad_ones(monkeypatch):
    executed = []
    class_marking_db(monkeypatch, {"id": 3, "school_id": 1, "class_id": 4, "status": "pending"}, {10, 11}, executed)

    result = attendance.mark_class_attendance(1, 3, [
        {"student_id": 10, "status": "present"},
        {"student_id": 99, "status": "present"},
        {"student_id": 11, "status": "dozing"},
        {"student_id": 11, "status": "late"},
    ], {"id": 9})

    assert result["saved"] == [10, 11]
    assert [(e["row"], e["student_id"]) for e in result["errors"]] == [(2, 99), (3, 11)]
    assert "not in this class" in result["errors"][0]["error"]
    assert result["counts"] == {"present": 1, "absent": 0, "late": 1, "excused": 0}
    queries = [query for query, _ in executed]
    assert queries.count("ROLLBACK TO SAVEPOINT attendance_row") == 2
    assert queries.count("RELEASE SAVEPOINT attendance_row") == 2
    assert sum(1 for query in queries if query.lstrip().startswith("UPDATE attendance SET present_count")) == 1


def test_class_marking_on_locked_session_writes_nothing(monkeypatch):
    executed = []
    class_marking_db(monkeypatch, {"id": 3, "school_id": 1, "class_id": 4, "status": "locked"}, {10}, executed)
    with pytest.raises(ValueError, match="locked"):
        attendance.mark_class_attendance(1, 3, [{"student_id": 10, "status": "present"}])
    assert not any("INSERT" in query for query, _ in executed)
