import contextlib

import pytest

import exams


def test_compute_mark_totals_and_percentage():
    result = exams.compute_mark(25, 48, 100)
    assert result == {"class_score": 25.0, "exam_score": 48.0, "total": 73.0, "percentage": 73.0}


def test_compute_mark_absent_scores_zero():
    result = exams.compute_mark(25, 48, 100, is_absent=True)
    assert result["total"] == 0.0
    assert result["percentage"] == 0.0


@pytest.mark.parametrize(
    "class_score,exam_score,max_marks,message",
    [(60, 50, 100, "exceeds"), (-1, 10, 100, "negative"), (10, 10, 0, "greater than zero")],
)
def test_compute_mark_rejects_bad_scores(class_score, exam_score, max_marks, message):
    with pytest.raises(ValueError, match=message):
        exams.compute_mark(class_score, exam_score, max_marks)


def test_teacher_cannot_edit_marks_on_completed_exam_even_when_unlocked():
    with pytest.raises(PermissionError):
        exams.check_marks_editable({"status": "completed", "is_unlocked": True}, "teacher")


def test_admin_needs_unlock_or_override_for_locked_exam():
    with pytest.raises(ValueError, match="unlock"):
        exams.check_marks_editable({"status": "published", "is_unlocked": False}, "school_admin")
    assert exams.check_marks_editable({"status": "published", "is_unlocked": True}, "school_admin") == "edit_marks_unlocked_exam"
    assert exams.check_marks_editable({"status": "completed"}, "school_admin", admin_override=True) == "edit_marks_completed_exam"


def test_open_exam_marks_are_editable_without_audit():
    assert exams.check_marks_editable({"status": "ongoing"}, "teacher") is None


def test_validate_status_change_moves_forward_only():
    assert exams.validate_status_change("draft", "scheduled", "teacher") == "scheduled"
    assert exams.validate_status_change("scheduled", "completed", "school_admin") == "completed"
    with pytest.raises(ValueError, match="back"):
        exams.validate_status_change("completed", "ongoing", "school_admin")


def test_only_admin_resets_unpublished_exam_to_draft():
    assert exams.validate_status_change("ongoing", "draft", "school_admin") == "draft"
    with pytest.raises(PermissionError):
        exams.validate_status_change("ongoing", "draft", "teacher")
    with pytest.raises(ValueError, match="Published"):
        exams.validate_status_change("published", "draft", "school_admin")


def test_summarize_student_totals_ranks_with_ties():
    marks = [
        {"student_id": 1, "first_name": "Ama", "last_name": "Owusu", "total_marks": 80, "max_marks": 100},
        {"student_id": 1, "first_name": "Ama", "last_name": "Owusu", "total_marks": 70, "max_marks": 100},
        {"student_id": 2, "first_name": "Kofi", "last_name": "Mensah", "total_marks": 90, "max_marks": 100},
        {"student_id": 2, "first_name": "Kofi", "last_name": "Mensah", "total_marks": 60, "max_marks": 100},
        {"student_id": 3, "first_name": "Esi", "last_name": "Boateng", "total_marks": 50, "max_marks": 100},
    ]
    ranked = exams.summarize_student_totals(marks)
    assert [(e["student_id"], e["position"]) for e in ranked][2] == (3, 3)
    assert {e["position"] for e in ranked[:2]} == {1}
    assert ranked[0]["average"] == 75.0
    assert ranked[2]["subjects"] == 1


def test_subject_stats_skips_absent_marks():
    marks = [
        {"subject_id": 1, "subject_name": "Maths", "percentage": 80, "is_absent": False},
        {"subject_id": 1, "subject_name": "Maths", "percentage": 40, "is_absent": False},
        {"subject_id": 1, "subject_name": "Maths", "percentage": 0, "is_absent": True},
    ]
    stats = exams.subject_stats(marks)
    assert stats == [{
        "subject_id": 1, "subject_name": "Maths", "students": 2, "average": 60.0,
        "highest": 80.0, "lowest": 40.0, "pass_rate": 50.0,
    }]


def test_distribution_buckets_counts_fractional_scores():
    buckets = {b["range"]: b["count"] for b in exams.distribution_buckets([95, 79.5, 70, 12, 0])}
    assert buckets["80-100"] == 1
    assert buckets["70-79"] == 2
    assert buckets["0-39"] == 2


def test_quick_enter_marks_reports_bad_rows_and_keeps_good_ones(monkeypatch):
    def fake_enter_marks(school_id, exam_id, student_id, subject_id, **kwargs):
        if student_id == 2:
            raise ValueError("Total score 120 exceeds the maximum of 100.")
        return {"mark_id": student_id * 10}

    monkeypatch.setattr(exams, "enter_marks", fake_enter_marks)
    result = exams.quick_enter_marks(1, 5, [{"student_id": 1, "subject_id": 3}, {"student_id": 2, "subject_id": 3}])
    assert result["saved"] == [{"mark_id": 10}]
    assert result["errors"] == [{"row": 2, "student_id": 2, "error": "Total score 120 exceeds the maximum of 100."}]


def test_verify_marks_sets_status_by_verifier_role(monkeypatch):
    executed = []

    class FakeCursor:
        rowcount = 2

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append(params)

    monkeypatch.setattr(exams, "db_connection", fake_db_connection)
    monkeypatch.setattr(exams, "db_execute", fake_db_execute)

    assert exams.verify_marks(1, ["4", 5], 9, "class_teacher") == 2
    assert executed[0][0] == "verified_by_class_teacher"
    assert executed[0][-1] == [4, 5]
    with pytest.raises(PermissionError):
        exams.verify_marks(1, [4], 9, "teacher")
