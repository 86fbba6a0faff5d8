"""Dashboard aggregates for school admins, teachers, students and parents."""

from datetime import date

from attendance import attendance_rate
from db import db_connection, db_execute, fetch_all, parse_date, safe_float


def get_school_stats(school_id, today=None):
    today = parse_date(today) or date.today()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT status, COUNT(*) AS total FROM students WHERE school_id = ? GROUP BY status', (school_id,))
        students_by_status = {row['status']: int(row['total']) for row in c.fetchall()}

        db_execute(c, "SELECT COUNT(*) AS total FROM teachers WHERE school_id = ? AND status = 'active'", (school_id,))
        teachers = int(c.fetchone()['total'] or 0)

        db_execute(c, "SELECT COUNT(*) AS total FROM classes WHERE school_id = ? AND status = 'active'", (school_id,))
        classes = int(c.fetchone()['total'] or 0)

        db_execute(
            c,
            '''SELECT COALESCE(SUM(present_count), 0) AS present, COALESCE(SUM(late_count), 0) AS late,
                      COALESCE(SUM(excused_count), 0) AS excused, COALESCE(SUM(total_students), 0) AS total
               FROM attendance WHERE school_id = ? AND date = ?''',
            (school_id, today),
        )
        att = c.fetchone()

        db_execute(
            c,
            '''SELECT COALESCE(SUM(amount_paid), 0) AS collected,
                      COALESCE(SUM(GREATEST(amount_due - amount_paid, 0)), 0) AS outstanding
               FROM fee_payments WHERE school_id = ?''',
            (school_id,),
        )
        fees = c.fetchone()

        db_execute(
            c,
            "SELECT COUNT(*) AS total FROM events WHERE school_id = ? AND start_date >= ? AND status <> 'cancelled'",
            (school_id, today),
        )
        upcoming_events = int(c.fetchone()['total'] or 0)

        db_execute(c, "SELECT COUNT(*) AS total FROM report_cards WHERE school_id = ? AND status = 'draft'", (school_id,))
        draft_report_cards = int(c.fetchone()['total'] or 0)

    return {
        'students': {
            'total': sum(students_by_status.values()),
            'active': students_by_status.get('active', 0),
            'by_status': students_by_status,
        },
        'teachers': teachers,
        'classes': classes,
        'attendance_today': {
            'sessions_students': int(att['total'] or 0),
            'rate': attendance_rate(att['present'], att['late'], att['excused'], att['total']),
        },
        'fees': {
            'collected': round(safe_float(fees['collected'], 0), 2),
            'outstanding': round(safe_float(fees['outstanding'], 0), 2),
        },
        'upcoming_events': upcoming_events,
        'draft_report_cards': draft_report_cards,
    }


def recent_activities(school_id, limit=10):
    limit = max(1, min(int(limit or 10), 100))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, user_name, action, entity, entity_id, details, created_at
               FROM audit_logs WHERE school_id = ? ORDER BY created_at DESC LIMIT ?''',
            (school_id, limit),
        )
        return fetch_all(c)


def teacher_overview(school_id, teacher, today=None):
    """Classes taught, students reached, marks still in draft and sessions open today."""
    today = parse_date(today) or date.today()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT DISTINCT class_id FROM subject_assignments WHERE school_id = ? AND teacher_id = ?
               UNION SELECT id FROM classes WHERE school_id = ? AND class_teacher_id = ?''',
            (school_id, teacher['id'], school_id, teacher['id']),
        )
        class_ids = [row['class_id'] for row in c.fetchall()]
        students = 0
        pending_attendance = 0
        if class_ids:
            placeholders = ', '.join('?' for _ in class_ids)
            db_execute(
                c,
                f"SELECT COUNT(*) AS total FROM students WHERE school_id = ? AND status = 'active' AND class_id IN ({placeholders})",
                (school_id, *class_ids),
            )
            students = int(c.fetchone()['total'] or 0)
            db_execute(
                c,
                f'''SELECT COUNT(*) AS total FROM classes cl WHERE cl.id IN ({placeholders}) AND NOT EXISTS (
                        SELECT 1 FROM attendance a WHERE a.class_id = cl.id AND a.date = ?)''',
                (*class_ids, today),
            )
            pending_attendance = int(c.fetchone()['total'] or 0)
        db_execute(
            c,
            "SELECT COUNT(*) AS total FROM exam_marks WHERE school_id = ? AND entered_by = ? AND submission_status = 'draft'",
            (school_id, teacher['user_id']),
        )
        draft_marks = int(c.fetchone()['total'] or 0)
    return {
        'classes': len(class_ids),
        'students': students,
        'draft_marks': draft_marks,
        'classes_without_attendance_today': pending_attendance,
    }


def student_overview(school_id, student_id):
    """Latest published results and attendance for the student or parent view."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, term_id, percentage, overall_grade, position, total_students, published_at
               FROM report_cards WHERE school_id = ? AND student_id = ? AND status = 'published'
               ORDER BY published_at DESC LIMIT 5''',
            (school_id, student_id),
        )
        results = fetch_all(c)
        db_execute(
            c,
            'SELECT status, COUNT(*) AS total FROM attendance_records WHERE student_id = ? GROUP BY status',
            (student_id,),
        )
        counts = {row['status']: int(row['total']) for row in c.fetchall()}
        db_execute(
            c,
            '''SELECT COALESCE(SUM(GREATEST(amount_due - amount_paid, 0)), 0) AS balance
               FROM fee_payments WHERE school_id = ? AND student_id = ?''',
            (school_id, student_id),
        )
        balance = safe_float(c.fetchone()['balance'], 0)
    total = sum(counts.values())
    return {
        'recent_results': results,
        'attendance_rate': attendance_rate(counts.get('present', 0), counts.get('late', 0), counts.get('excused', 0), total),
        'fee_balance': round(balance, 2),
    }
