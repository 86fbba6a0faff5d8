import contextlib

import pytest

import academics


def section_db(monkeypatch, responses, executed, outsiders=()):
    class FakeCursor:
        rows = ()
        rowcount = 0

        def fetchone(self):
            return dict(self.rows[0]) if self.rows else None

        def fetchall(self):
            return [dict(row) for row in self.rows]

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(cursor, query, params=None):
        executed.append((query, params))
        cursor.rows = ()
        for marker, rows in responses.items():
            if marker in query:
                cursor.rows = rows
                break
        cursor.rowcount = 0 if query.startswith('UPDATE students') and params[2] in outsiders else 1

    monkeypatch.setattr(academics, "db_connection", fake_db_connection)
    monkeypatch.setattr(academics, "db_execute", fake_db_execute)
    monkeypatch.setattr(academics, "fetch_one", lambda c: c.fetchone())
    monkeypatch.setattr(academics, "fetch_all", lambda c: c.fetchall())


SECTION = {"id": 6, "class_id": 4, "capacity": 3}


def test_section_needs_name_and_capacity():
    with pytest.raises(ValueError, match="name is required"):
        academics.create_section(1, 4, "  ", 30)
    with pytest.raises(ValueError, match="at least 1"):
        academics.create_section(1, 4, "Gold", 0)


def test_duplicate_section_name_in_class_is_refused(monkeypatch):
    section_db(monkeypatch, {
        "FROM classes WHERE id": [{"id": 4}],
        "FROM sections WHERE class_id": [{"id": 2}],
    }, [])
    with pytest.raises(ValueError, match="already exists"):
        academics.create_section(1, 4, "gold", 30)


def test_create_section_checks_teacher_of_school(monkeypatch):
    section_db(monkeypatch, {"FROM classes WHERE id": [{"id": 4}]}, [])
    with pytest.raises(ValueError, match="not a teacher of this school"):
        academics.create_section(1, 4, "Gold", 30, class_teacher_id=9)


def test_assign_students_moves_them_into_the_section(monkeypatch):
    executed = []
    section_db(monkeypatch, {
        "FROM sections WHERE id": [SECTION],
        "FROM students WHERE section_id": [{"id": 11}],
    }, executed)

    assert academics.assign_students_to_section(1, 6, [11, 12]) == 2

    updates = [params for query, params in executed if query.startswith("UPDATE students")]
    assert [(params[0], params[2], params[3]) for params in updates] == [(6, 11, 4), (6, 12, 4)]


def test_section_capacity_counts_current_members(monkeypatch):
    executed = []
    section_db(monkeypatch, {
        "FROM sections WHERE id": [SECTION],
        "FROM students WHERE section_id": [{"id": 11}, {"id": 12}],
    }, executed)
    with pytest.raises(ValueError, match="capacity 3"):
        academics.assign_students_to_section(1, 6, [13, 14])
    assert not any(query.startswith("UPDATE") for query, _ in executed)


def test_student_of_another_class_cannot_join(monkeypatch):
    section_db(monkeypatch, {"FROM sections WHERE id": [SECTION]}, [], outsiders=(15,))
    with pytest.raises(ValueError, match="Student 15 is not in this class"):
        academics.assign_students_to_section(1, 6, [15])


def test_section_with_students_cannot_be_deleted(monkeypatch):
    section_db(monkeypatch, {"COUNT(*) AS total FROM students": [{"total": 2}]}, [])
    with pytest.raises(ValueError, match="enrolled students"):
        academics.delete_section(1, 6)
