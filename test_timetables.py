import contextlib

import pytest

import timetables


def slot(assignment_id, teacher_id, day, start, end, timetable_id=1, subject="Maths", class_name="Basic 4"):
    return {"id": assignment_id, "timetable_id": timetable_id, "teacher_id": teacher_id, "teacher_name": f"Teacher {teacher_id}",
            "class_name": class_name, "subject_name": subject, "day_of_week": day, "start_time": start, "end_time": end}


def conflict_types(conflicts):
    return [conflict["type"] for conflict in conflicts]


@pytest.mark.parametrize("value,minutes", [("07:30", 450), ("8:05", 485), ("23:59", 1439)])
def test_parse_time(value, minutes):
    assert timetables.parse_time(value) == minutes


@pytest.mark.parametrize("value", ["", "noon", "24:00", "10:60", None])
def test_parse_time_rejects_bad_values(value):
    with pytest.raises(ValueError, match="HH:MM"):
        timetables.parse_time(value)


def test_times_overlap_excludes_touching_periods():
    assert timetables.times_overlap("08:00", "09:10", "09:00", "10:00")
    assert not timetables.times_overlap("08:00", "09:10", "09:10", "10:20")


def test_default_layout_has_six_teaching_periods():
    layout = timetables.default_day_layout()
    assert len(layout) == 10
    assert [p["period_name"] for p in layout if not p["is_break"]] == [f"Period {n}" for n in range(1, 7)]
    assert layout[0]["duration"] == 30
    assert layout[1]["duration"] == 70
    assert [p["period_number"] for p in layout] == list(range(1, 11))


def test_layout_is_numbered_by_start_time_and_rejects_overlaps():
    layout = timetables.normalize_day_layout([
        {"period_name": "Second", "start_time": "09:00", "end_time": "10:00"},
        {"name": "First", "start_time": "8:00", "end_time": "09:00"},
    ])
    assert [(p["period_number"], p["period_name"], p["start_time"]) for p in layout] == [(1, "First", "08:00"), (2, "Second", "09:00")]
    with pytest.raises(ValueError, match="starts before"):
        timetables.normalize_day_layout([
            {"period_name": "A", "start_time": "08:00", "end_time": "09:00"},
            {"period_name": "B", "start_time": "08:30", "end_time": "09:30"},
        ])
    with pytest.raises(ValueError, match="after its start"):
        timetables.normalize_day_layout([{"period_name": "A", "start_time": "09:00", "end_time": "09:00"}])


def test_double_booking_across_timetables_is_an_error():
    conflicts = timetables.find_conflicts([
        slot(1, 7, "monday", "08:00", "09:10", timetable_id=1),
        slot(2, 7, "monday", "09:00", "10:00", timetable_id=2, class_name="Basic 5"),
    ], timetable_id=1)
    assert conflict_types(conflicts) == ["teacher_double_booking"]
    assert conflicts[0]["severity"] == "error"
    assert conflicts[0]["classes"] == ["Basic 4", "Basic 5"]


def test_double_booking_elsewhere_is_not_reported():
    conflicts = timetables.find_conflicts([
        slot(1, 7, "monday", "08:00", "09:10", timetable_id=2),
        slot(2, 7, "monday", "09:00", "10:00", timetable_id=3),
    ], timetable_id=1)
    assert conflicts == []


def test_one_warning_per_run_of_back_to_back_periods():
    conflicts = timetables.find_conflicts([
        slot(1, 7, "tuesday", "08:00", "09:10", subject="Maths"),
        slot(2, 7, "tuesday", "09:10", "10:20", subject="Science"),
        slot(3, 7, "tuesday", "10:20", "11:30", subject="English"),
        slot(4, 7, "tuesday", "11:30", "12:40", subject="French"),
    ], timetable_id=1)
    assert conflict_types(conflicts) == ["teacher_consecutive"]
    assert "4 consecutive periods on Tuesday" in conflicts[0]["message"]


def test_six_periods_in_a_day_is_an_overload():
    starts = ["07:00", "08:30", "10:00", "11:30", "13:00", "14:30"]
    subjects = ["Maths", "Science", "English", "French", "ICT", "RME"]
    assignments = [slot(n, 7, "friday", start, f"{int(start[:2]) + 1:02d}{start[2:]}", subject=subjects[n])
                   for n, start in enumerate(starts)]
    conflicts = timetables.find_conflicts(assignments, timetable_id=1)
    assert conflict_types(conflicts) == ["teacher_overload"]
    assert conflicts[0]["severity"] == "warning"


def test_subject_twice_on_a_day_is_flagged_for_this_timetable_only():
    conflicts = timetables.find_conflicts([
        slot(1, 7, "wednesday", "08:00", "09:00", subject="Maths"),
        slot(2, 8, "wednesday", "11:00", "12:00", subject="Maths"),
        slot(3, 9, "wednesday", "08:00", "09:00", timetable_id=2, subject="Maths"),
    ], timetable_id=1)
    assert conflict_types(conflicts) == ["subject_clustering"]
    assert conflicts[0]["severity"] == "info"
    assert conflicts[0]["periods"] == ["08:00", "11:00"]


def assignment_db(monkeypatch, responses, executed):
    class FakeCursor:
        rows = ()

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

    monkeypatch.setattr(timetables, "db_connection", fake_db_connection)
    monkeypatch.setattr(timetables, "db_execute", fake_db_execute)
    monkeypatch.setattr(timetables, "fetch_one", lambda c: c.fetchone())
    monkeypatch.setattr(timetables, "fetch_all", lambda c: c.fetchall())


PERIOD = {"id": 30, "timetable_id": 1, "school_id": 1, "class_id": 4, "day_of_week": "monday", "period_number": 2,
          "period_name": "Period 1", "start_time": "08:00", "end_time": "09:10", "is_break": False}


def assignment_responses(period=PERIOD, busy=()):
    return {
        "FROM timetable_periods p": [period],
        "FROM teachers t JOIN users u": [{"id": 7, "first_name": "Kwame", "last_name": "Boateng"}],
        "FROM subjects WHERE id": [{"id": 3}],
        "ta.period_id <> ?": list(busy),
        "INSERT INTO timetable_assignments": [{"id": 55}],
    }


def test_assign_teacher_upserts_the_period(monkeypatch):
    executed = []
    assignment_db(monkeypatch, assignment_responses(busy=[{"start_time": "09:10", "end_time": "10:20", "class_name": "Basic 5"}]), executed)

    assert timetables.assign_teacher(1, 30, 3, 7, room=" Lab ", user={"id": 2}) == 55

    [(insert_sql, params)] = [(q, p) for q, p in executed if "INSERT INTO timetable_assignments" in q]
    assert "ON CONFLICT(period_id)" in insert_sql
    assert params[:9] == (1, 1, 30, 4, 3, 7, "monday", "08:00", "09:10")
    assert params[9] == "Lab"


def test_assign_teacher_refuses_overlapping_period(monkeypatch):
    executed = []
    assignment_db(monkeypatch, assignment_responses(busy=[{"start_time": "08:30", "end_time": "09:30", "class_name": "Basic 5"}]), executed)
    with pytest.raises(ValueError, match="Kwame Boateng is already assigned to Basic 5 during this time on Monday"):
        timetables.assign_teacher(1, 30, 3, 7)
    assert not any("INSERT" in query for query, _ in executed)


def test_breaks_cannot_be_assigned(monkeypatch):
    assignment_db(monkeypatch, assignment_responses(period=dict(PERIOD, is_break=True, period_name="Break Time")), [])
    with pytest.raises(ValueError, match="Break Time is a break"):
        timetables.assign_teacher(1, 30, 3, 7)


def test_period_from_another_school_is_forbidden(monkeypatch):
    assignment_db(monkeypatch, assignment_responses(period=dict(PERIOD, school_id=2)), [])
    with pytest.raises(PermissionError):
        timetables.assign_teacher(1, 30, 3, 7)


def test_create_timetable_builds_every_weekday(monkeypatch):
    executed = []
    assignment_db(monkeypatch, {
        "FROM classes WHERE id": [{"id": 4, "name": "Basic 4"}],
        "INSERT INTO timetables": [{"id": 12}],
    }, executed)

    assert timetables.create_timetable(1, 4, user={"id": 2}) == 12

    inserts = [params for query, params in executed if "INSERT INTO timetable_periods" in query]
    assert len(inserts) == 50
    assert {params[1] for params in inserts} == set(timetables.WEEKDAYS)
    [(_, timetable_params)] = [(q, p) for q, p in executed if "INSERT INTO timetables" in q]
    assert timetable_params[3] == "Basic 4 Timetable"


def test_second_timetable_for_a_class_is_refused(monkeypatch):
    assignment_db(monkeypatch, {
        "FROM classes WHERE id": [{"id": 4, "name": "Basic 4"}],
        "FROM timetables WHERE class_id": [{"id": 12}],
    }, [])
    with pytest.raises(ValueError, match="already exists for Basic 4"):
        timetables.create_timetable(1, 4)
