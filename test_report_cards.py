import contextlib
import json

import pytest

import grading
import report_cards


def fake_connection(monkeypatch, cards, executed):
    """Serve report card rows by id and record UPDATE/DELETE statements."""

    class FakeCursor:
        pass

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(cursor, query, params=None):
        if query.startswith("SELECT * FROM report_cards"):
            cursor.row = cards.get(params[0])
        else:
            executed.append((query, params))

    monkeypatch.setattr(report_cards, "db_connection", fake_db_connection)
    monkeypatch.setattr(report_cards, "db_execute", fake_db_execute)
    monkeypatch.setattr(report_cards, "fetch_one", lambda c: dict(c.row) if c.row else None)


def card(report_id, status, school_id=1):
    return {"id": report_id, "school_id": school_id, "status": status, "report_code": f"RPT{report_id:08d}"}


def test_build_report_card_totals_percentage_and_grade():
    marks = [
        {"subject_id": 1, "subject_name": "Maths", "class_score": 30, "exam_score": 50, "total_marks": 80, "max_marks": 100,
         "percentage": 80, "grade": "1", "remarks": "Excellent"},
        {"subject_id": 2, "subject_name": "English", "class_score": 20, "exam_score": 15, "total_marks": 35, "max_marks": 50,
         "percentage": 70, "grade": "2", "remarks": "Very Good"},
    ]
    result = report_cards.build_report_card(marks, grading.DEFAULT_BANDS)
    assert result["total_score"] == 115.0
    assert result["raw_score"] == 150.0
    assert result["percentage"] == 76.67
    assert result["overall_grade"] == "2"
    assert [s["subject"] for s in result["subjects"]] == ["Maths", "English"]


def test_build_report_card_without_marks_is_zero():
    result = report_cards.build_report_card([], grading.DEFAULT_BANDS)
    assert result["percentage"] == 0.0
    assert result["overall_grade"] == "9"


def test_rank_students_uses_competition_ranking():
    assert report_cards.rank_students({10: 300, 11: 280, 12: 300, 13: 250}) == {10: 1, 12: 1, 11: 3, 13: 4}


def test_publish_is_all_or_nothing(monkeypatch):
    executed = []
    fake_connection(monkeypatch, {1: card(1, "generated"), 2: card(2, "draft")}, executed)
    with pytest.raises(ValueError, match="RPT00000002"):
        report_cards.publish_report_cards(1, [1, 2], {"id": 7})
    assert executed == []


def test_publish_records_publisher_and_role(monkeypatch):
    executed = []
    fake_connection(monkeypatch, {1: card(1, "generated"), 2: card(2, "generated")}, executed)
    assert report_cards.publish_report_cards(1, [1, 2], {"id": 7}, role="class_teacher") == 2
    assert len(executed) == 2
    assert executed[0][1][:2] == (7, "class_teacher")


def test_publish_rejects_other_roles_and_empty_selection():
    with pytest.raises(PermissionError):
        report_cards.publish_report_cards(1, [1], role="teacher")
    with pytest.raises(ValueError):
        report_cards.publish_report_cards(1, [])


def test_card_from_another_school_is_forbidden(monkeypatch):
    fake_connection(monkeypatch, {1: card(1, "generated", school_id=2)}, [])
    with pytest.raises(PermissionError):
        report_cards.publish_report_cards(1, [1])


def test_unpublish_requires_reason_and_published_card(monkeypatch):
    executed = []
    fake_connection(monkeypatch, {1: card(1, "published"), 2: card(2, "generated")}, executed)
    with pytest.raises(ValueError, match="reason"):
        report_cards.unpublish_report_card(1, 1, "  ")
    with pytest.raises(ValueError, match="Only published"):
        report_cards.unpublish_report_card(1, 2, "typo in marks")
    report_cards.unpublish_report_card(1, 1, "typo in marks")
    assert "status = 'draft'" in executed[0][0]
    assert executed[0][1][0] == "typo in marks"


def test_bulk_approve_skips_non_draft_cards(monkeypatch):
    executed = []
    fake_connection(monkeypatch, {1: card(1, "draft"), 2: card(2, "published")}, executed)
    result = report_cards.bulk_approve_report_cards(1, [1, 2], {"id": 3})
    assert result == {"approved": [1], "skipped": [{"report_id": 2, "status": "published"}]}


def test_delete_refuses_published_cards(monkeypatch):
    executed = []
    fake_connection(monkeypatch, {1: card(1, "draft"), 2: card(2, "published")}, executed)
    with pytest.raises(ValueError, match="Unpublish"):
        report_cards.bulk_delete_report_cards(1, [1, 2])
    assert executed == []


def test_extras_validates_attendance_shape():
    extras = report_cards._extras({"conduct": " Good ", "attendance": {"present": "58", "total": 60}})
    assert extras["conduct"] == "Good"
    assert extras["attendance"] == '{"present": 58, "total": 60}'
    with pytest.raises(ValueError):
        report_cards._extras({"attendance": [58, 60]})


# ==================== GENERATION ====================

EXAM = {"id": 3, "school_id": 1, "name": "End of Term", "academic_year_id": 1, "term_id": 2}
CLASS = {"id": 4, "name": "Basic 4", "department": "primary"}
MATHS = {"subject_id": 1, "subject_name": "Maths", "class_score": 30, "exam_score": 50, "total_marks": 80,
         "max_marks": 100, "percentage": 80, "grade": "1", "remarks": "Excellent"}


def student(student_id, first_name="Ama", status="active"):
    return {"id": student_id, "first_name": first_name, "last_name": "Owusu", "class_id": 4, "status": status}


def generation_db(monkeypatch, responses, executed):
    """Answer each statement from the first marker found in it; record everything."""

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
        for marker, answer in responses.items():
            if marker in query:
                cursor.rows = answer(params) if callable(answer) else answer
                break

    monkeypatch.setattr(report_cards, "db_connection", fake_db_connection)
    monkeypatch.setattr(report_cards, "db_execute", fake_db_execute)
    monkeypatch.setattr(report_cards, "fetch_one", lambda c: c.fetchone())
    monkeypatch.setattr(report_cards, "fetch_all", lambda c: c.fetchall())
    monkeypatch.setattr(report_cards, "resolve_bands_with_cursor", lambda c, school_id, department: (None, grading.DEFAULT_BANDS))


def base_responses(**overrides):
    responses = {
        "FROM exams WHERE id": [EXAM],
        "FROM students WHERE id = ? AND school_id": [student(5)],
        "FROM classes WHERE id": [CLASS],
        "SUM(m.total_marks)": [{"student_id": 5, "total": 80}, {"student_id": 6, "total": 90}],
        "COUNT(*) AS total FROM students": [{"total": 30}],
        "FROM exam_marks m JOIN subjects": [MATHS],
        "FROM attendance_records ar": [{"total": 60, "present": 55}],
        "FROM report_cards rc JOIN terms": [{"term": "Term 1", "term_number": 1, "percentage": 72.5, "overall_grade": "2"}],
        "SELECT id, status, version, percentage FROM report_cards": [],
        "INSERT INTO report_cards": [{"id": 77}],
    }
    responses.update(overrides)
    return responses


def statements(executed, marker):
    return [(query, params) for query, params in executed if marker in query]


def test_generate_new_card_fills_attendance_and_termly_history(monkeypatch):
    executed = []
    generation_db(monkeypatch, base_responses(), executed)

    result = report_cards.generate_report_card(1, 3, 5, {"id": 9})

    assert result == {"report_id": 77, "version": 1, "percentage": 80.0, "position": 2, "overall_grade": "1"}
    [(insert_sql, values)] = statements(executed, "INSERT INTO report_cards")
    assert insert_sql.rstrip().endswith("RETURNING id")
    assert values[16:18] == ("draft", 1)
    assert json.loads(values[-1]) == {"present": 55, "total": 60}
    assert json.loads(values[15]) == [{"term": "Term 1", "percentage": 72.5, "grade": "2"}]
    [(_, attendance_params)] = statements(executed, "FROM attendance_records ar")
    assert attendance_params == (2, 5)
    [(termly_sql, termly_params)] = statements(executed, "FROM report_cards rc JOIN terms")
    assert "rc.term_id <> ?" in termly_sql and "rc.status = 'published'" in termly_sql
    assert termly_params == (5, 1, 2)


def test_entered_attendance_is_not_replaced_by_term_records(monkeypatch):
    executed = []
    generation_db(monkeypatch, base_responses(), executed)
    report_cards.generate_report_card(1, 3, 5, {"id": 9}, attendance={"present": 40, "total": 58})
    assert statements(executed, "FROM attendance_records ar") == []
    [(_, values)] = statements(executed, "INSERT INTO report_cards")
    assert json.loads(values[-1]) == {"present": 40, "total": 58}


def test_regenerating_keeps_id_and_bumps_version(monkeypatch):
    executed = []
    existing = [{"id": 40, "status": "generated", "version": 2, "percentage": 70.0}]
    generation_db(monkeypatch, base_responses(**{"SELECT id, status, version, percentage FROM report_cards": existing}), executed)

    result = report_cards.generate_report_card(1, 3, 5, {"id": 9})

    assert result["report_id"] == 40
    assert result["version"] == 3
    assert statements(executed, "INSERT INTO report_cards") == []
    [(update_sql, params)] = statements(executed, "UPDATE report_cards")
    assert "status = 'draft'" in update_sql
    assert "verified_by_class_teacher = FALSE" in update_sql
    assert params[11:14] == (3, 70.0, 9)
    assert params[-1] == 40


def test_published_card_is_not_regenerated(monkeypatch):
    executed = []
    existing = [{"id": 40, "status": "published", "version": 1, "percentage": 70.0}]
    generation_db(monkeypatch, base_responses(**{"SELECT id, status, version, percentage FROM report_cards": existing}), executed)
    with pytest.raises(ValueError, match="Unpublish"):
        report_cards.generate_report_card(1, 3, 5, {"id": 9})
    assert statements(executed, "UPDATE report_cards") == []


def test_graduated_student_gets_no_card(monkeypatch):
    executed = []
    generation_db(monkeypatch, base_responses(**{"FROM students WHERE id = ? AND school_id": [student(5, status="graduated")]}), executed)
    with pytest.raises(ValueError, match="graduated"):
        report_cards.generate_report_card(1, 3, 5)
    assert statements(executed, "INSERT INTO report_cards") == []


def test_exam_without_term_cannot_generate(monkeypatch):
    generation_db(monkeypatch, base_responses(**{"FROM exams WHERE id": [dict(EXAM, term_id=None)]}), [])
    with pytest.raises(ValueError, match="academic year and term"):
        report_cards.generate_report_card(1, 3, 5)


def test_class_ranking_counts_only_current_members(monkeypatch):
    executed = []
    generation_db(monkeypatch, base_responses(), executed)
    report_cards.generate_report_card(1, 3, 5, {"id": 9})
    [(ranking_sql, params)] = statements(executed, "SUM(m.total_marks)")
    assert "JOIN students st" in ranking_sql
    assert "st.status <> 'graduated'" in ranking_sql
    assert "st.class_id = ?" in ranking_sql
    assert params == (3, 4, 4)


def test_class_generation_reports_students_without_marks(monkeypatch):
    executed = []
    roster = [student(5), student(6, first_name="Kofi")]
    generation_db(monkeypatch, base_responses(**{
        "ORDER BY last_name, first_name": roster,
        "FROM exam_marks m JOIN subjects": lambda params: [MATHS] if params[1] == 5 else [],
    }), executed)

    result = report_cards.generate_class_report_cards(1, 3, 4, {"id": 9})

    assert [card["report_id"] for card in result["generated"]] == [77]
    assert result["errors"] == [{"student_id": 6, "error": "No marks found for Kofi Owusu."}]
    [(roster_sql, _)] = statements(executed, "ORDER BY last_name, first_name")
    assert "status <> 'graduated'" in roster_sql
    queries = [query for query, _ in executed]
    assert queries.count("ROLLBACK TO SAVEPOINT report_card") == 1
    assert queries.count("RELEASE SAVEPOINT report_card") == 1


def test_class_generation_fails_when_nothing_generates(monkeypatch):
    generation_db(monkeypatch, base_responses(**{
        "ORDER BY last_name, first_name": [student(6, first_name="Kofi")],
        "FROM exam_marks m JOIN subjects": [],
    }), [])
    with pytest.raises(ValueError, match="Failed to generate any report cards"):
        report_cards.generate_class_report_cards(1, 3, 4)
