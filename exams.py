"""Exams, marks entry with lock rules, and marks analytics."""

import logging
from datetime import datetime

from accounts import record_audit_log_with_cursor
from db import (
    db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, dump_json, load_json,
    choice, safe_float,
)
from grading import competition_positions, grade_from_bands, resolve_bands_with_cursor

EXAM_TYPES = {'mid_term', 'end_of_term', 'mock', 'quiz', 'assessment', 'final'}
EXAM_STATUS_FLOW = ['draft', 'scheduled', 'ongoing', 'completed', 'published']
LOCKED_EXAM_STATUSES = {'completed', 'published'}
SUBMISSION_STATUSES = {'draft', 'submitted_to_class_teacher', 'verified_by_class_teacher', 'verified_by_admin'}
PASS_PERCENT = 50
DISTRIBUTION_BUCKETS = [(80, 100, '80-100'), (70, 79.99, '70-79'), (60, 69.99, '60-69'),
                        (50, 59.99, '50-59'), (40, 49.99, '40-49'), (0, 39.99, '0-39')]


def _exam_row(row):
    if row:
        row['class_ids'] = load_json(row.get('class_ids'), [])
        row['subject_ids'] = load_json(row.get('subject_ids'), [])
    return row


def is_exam_locked(exam):
    return exam.get('status') in LOCKED_EXAM_STATUSES and not exam.get('is_unlocked')


def validate_status_change(current, new, role):
    """Exams only move forward; admins may pull an unpublished exam back to draft."""
    new = choice(new, set(EXAM_STATUS_FLOW), 'exam status')
    if new == current:
        return new
    if new == 'draft':
        if current == 'published':
            raise ValueError('Published exams cannot return to draft. Unlock the exam to make corrections.')
        if role != 'school_admin':
            raise PermissionError('Only school admins can reset an exam to draft.')
        return new
    if EXAM_STATUS_FLOW.index(new) < EXAM_STATUS_FLOW.index(current):
        raise ValueError(f'Exam cannot move from {current} back to {new}.')
    return new


def create_exam(school_id, name, exam_type, academic_year_id=None, term_id=None, start_date=None, end_date=None,
                department=None, class_ids=None, subject_ids=None, total_marks=100, weightage=100, user=None):
    name = (name or '').strip()
    if not name:
        raise ValueError('Exam name is required.')
    exam_type = choice(exam_type, EXAM_TYPES, 'exam type')
    start, end = parse_date(start_date), parse_date(end_date)
    if start and end and end < start:
        raise ValueError('Exam end date cannot be before the start date.')
    total_marks = safe_float(total_marks, 0)
    if total_marks <= 0:
        raise ValueError('Total marks must be greater than zero.')
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam_code = generate_code('EXM')
        db_execute(
            c,
            '''INSERT INTO exams (school_id, exam_code, name, exam_type, academic_year_id, term_id, start_date, end_date,
                                  department, class_ids, subject_ids, total_marks, weightage, status, created_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
               RETURNING id''',
            (school_id, exam_code, name, exam_type, academic_year_id, term_id, start, end, department,
             dump_json([int(x) for x in class_ids or []]), dump_json([int(x) for x in subject_ids or []]),
             total_marks, safe_float(weightage, 100), user.get('id'), now, now),
        )
        exam_id = c.fetchone()['id']
    return {'exam_id': exam_id, 'exam_code': exam_code}


def get_exam(school_id, exam_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM exams WHERE id = ? LIMIT 1', (exam_id,))
        exam = _exam_row(fetch_one(c))
    if not exam:
        return None
    if int(exam['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return exam


def require_exam(school_id, exam_id):
    exam = get_exam(school_id, exam_id)
    if not exam:
        raise LookupError('Exam not found.')
    return exam


def list_exams(school_id, term_id=None, status=None, class_id=None):
    query = 'SELECT * FROM exams WHERE school_id = ?'
    params = [school_id]
    if term_id:
        query += ' AND term_id = ?'
        params.append(term_id)
    if status:
        query += ' AND status = ?'
        params.append(status)
    query += ' ORDER BY COALESCE(start_date, created_at::date) DESC'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        exams = [_exam_row(row) for row in fetch_all(c)]
    if class_id:
        exams = [e for e in exams if not e['class_ids'] or int(class_id) in e['class_ids']]
    return exams


def update_exam(school_id, exam_id, user=None, role='school_admin', admin_override=False, **fields):
    exam = require_exam(school_id, exam_id)
    if exam['status'] == 'published' and not exam.get('is_unlocked') and not admin_override:
        raise ValueError('Cannot edit published exam. Please unlock it first to make corrections.')
    updates = {}
    if fields.get('name') is not None:
        if not fields['name'].strip():
            raise ValueError('Exam name is required.')
        updates['name'] = fields['name'].strip()
    if fields.get('exam_type') is not None:
        updates['exam_type'] = choice(fields['exam_type'], EXAM_TYPES, 'exam type')
    for key in ('start_date', 'end_date'):
        if fields.get(key) is not None:
            updates[key] = parse_date(fields[key])
    start = updates.get('start_date', exam.get('start_date'))
    end = updates.get('end_date', exam.get('end_date'))
    if start and end and end < start:
        raise ValueError('Exam end date cannot be before the start date.')
    if fields.get('total_marks') is not None:
        updates['total_marks'] = safe_float(fields['total_marks'], 0)
        if updates['total_marks'] <= 0:
            raise ValueError('Total marks must be greater than zero.')
    if fields.get('weightage') is not None:
        updates['weightage'] = safe_float(fields['weightage'], 100)
    for key in ('class_ids', 'subject_ids'):
        if fields.get(key) is not None:
            updates[key] = dump_json([int(x) for x in fields[key]])
    if fields.get('department') is not None:
        updates['department'] = fields['department'] or None
    if fields.get('status') is not None:
        updates['status'] = validate_status_change(exam['status'], fields['status'], role)
    if not updates:
        return exam
    user = user or {}
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE exams SET {assignments}, updated_at = ? WHERE id = ?', tuple(updates.values()) + (datetime.now(), exam_id))
        if exam['status'] in LOCKED_EXAM_STATUSES:
            record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'edit_locked_exam', 'exam', exam_id,
                                         f"Edited {exam['status']} exam {exam['name']}: {', '.join(sorted(updates))}")
    return require_exam(school_id, exam_id)


def unlock_exam(school_id, exam_id, reason, user=None):
    exam = require_exam(school_id, exam_id)
    if exam['status'] not in LOCKED_EXAM_STATUSES:
        raise ValueError('Only completed or published exams can be unlocked.')
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A reason is required to unlock an exam.')
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE exams SET is_unlocked = TRUE, unlock_reason = ?, unlocked_by = ?, unlocked_at = ?, updated_at = ? WHERE id = ?',
            (reason, user.get('id'), now, now, exam_id),
        )
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'unlock_exam', 'exam', exam_id,
                                     f"Unlocked {exam['name']}. Reason: {reason}")


def lock_exam(school_id, exam_id, user=None):
    exam = require_exam(school_id, exam_id)
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE exams SET is_unlocked = FALSE, locked_by = ?, locked_at = ?, updated_at = ? WHERE id = ?',
                   (user.get('id'), now, now, exam_id))
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'lock_exam', 'exam', exam_id, f"Locked {exam['name']}")


def delete_exam(school_id, exam_id):
    exam = require_exam(school_id, exam_id)
    if exam['status'] == 'published':
        raise ValueError('Published exams cannot be deleted.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM exam_marks WHERE exam_id = ?', (exam_id,))
        db_execute(c, 'DELETE FROM exams WHERE id = ?', (exam_id,))


# ==================== MARKS ====================

def check_marks_editable(exam, role, admin_override=False):
    """Raise when marks for this exam may not be edited; return an audit action for admin edits."""
    status = exam.get('status')
    if role == 'teacher' and status in LOCKED_EXAM_STATUSES:
        raise PermissionError('Teachers cannot edit marks for completed or published exams. Please contact an administrator.')
    if status in LOCKED_EXAM_STATUSES and not exam.get('is_unlocked') and not admin_override:
        raise ValueError(f'Cannot edit marks for {status} exam. Please unlock the exam first to make corrections.')
    if role == 'school_admin' and status in LOCKED_EXAM_STATUSES:
        return 'edit_marks_unlocked_exam' if exam.get('is_unlocked') else 'edit_marks_completed_exam'
    return None


def compute_mark(class_score, exam_score, max_marks, is_absent=False):
    """Total and percentage for one subject; absent students score zero."""
    max_marks = safe_float(max_marks, 0)
    if max_marks <= 0:
        raise ValueError('Maximum marks must be greater than zero.')
    if is_absent:
        return {'class_score': 0.0, 'exam_score': 0.0, 'total': 0.0, 'percentage': 0.0}
    class_score = safe_float(class_score, 0)
    exam_score = safe_float(exam_score, 0)
    if class_score < 0 or exam_score < 0:
        raise ValueError('Scores cannot be negative.')
    total = class_score + exam_score
    if total > max_marks:
        raise ValueError(f'Total score {total:g} exceeds the maximum of {max_marks:g}.')
    return {
        'class_score': class_score,
        'exam_score': exam_score,
        'total': total,
        'percentage': round(total / max_marks * 100, 2),
    }


def enter_marks(school_id, exam_id, student_id, subject_id, class_score=0, exam_score=0, max_marks=None,
                is_absent=False, remarks='', user=None, role='teacher', admin_override=False, reason=''):
    exam = require_exam(school_id, exam_id)
    audit_action = check_marks_editable(exam, role, admin_override)
    if exam['subject_ids'] and int(subject_id) not in exam['subject_ids']:
        raise ValueError('Subject is not part of this exam.')
    max_value = safe_float(max_marks if max_marks not in (None, '') else exam['total_marks'], 0)
    values = compute_mark(class_score, exam_score, max_value, is_absent)
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT st.id, st.class_id, st.first_name, st.last_name, cl.department
               FROM students st LEFT JOIN classes cl ON cl.id = st.class_id
               WHERE st.id = ? AND st.school_id = ?''',
            (student_id, school_id),
        )
        student = c.fetchone()
        if not student:
            raise LookupError('Student not found in this school.')
        _scale_id, bands = resolve_bands_with_cursor(c, school_id, student['department'])
        graded = grade_from_bands(values['percentage'], bands)
        remark = 'Absent' if is_absent else ((remarks or '').strip() or graded['remark'])
        db_execute(
            c,
            '''INSERT INTO exam_marks
               (school_id, exam_id, student_id, subject_id, class_id, class_score, exam_score, total_marks, max_marks,
                percentage, grade, remarks, is_absent, submission_status, entered_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
               ON CONFLICT(exam_id, student_id, subject_id) DO UPDATE SET
                   class_score = EXCLUDED.class_score,
                   exam_score = EXCLUDED.exam_score,
                   total_marks = EXCLUDED.total_marks,
                   max_marks = EXCLUDED.max_marks,
                   percentage = EXCLUDED.percentage,
                   grade = EXCLUDED.grade,
                   remarks = EXCLUDED.remarks,
                   is_absent = EXCLUDED.is_absent,
                   class_id = EXCLUDED.class_id,
                   entered_by = EXCLUDED.entered_by,
                   updated_at = EXCLUDED.updated_at
               RETURNING id''',
            (school_id, exam_id, student_id, subject_id, student['class_id'], values['class_score'], values['exam_score'],
             values['total'], max_value, values['percentage'], graded['grade'], remark, bool(is_absent), user.get('id'), now, now),
        )
        mark_id = c.fetchone()['id']
        if audit_action:
            record_audit_log_with_cursor(
                c, school_id, user.get('id'), user.get('name'), audit_action, 'exam_marks', student_id,
                f"Admin edited marks for {student['first_name']} {student['last_name']} in {exam['name']}. "
                f"Reason: {(reason or '').strip() or 'Not provided'}",
            )
    return {'mark_id': mark_id, 'total': values['total'], 'percentage': values['percentage'], 'grade': graded['grade'], 'remark': remark}


def quick_enter_marks(school_id, exam_id, rows, user=None, role='teacher', admin_override=False):
    """Enter many marks; bad rows are reported and the rest still saved."""
    saved, errors = [], []
    for index, row in enumerate(rows or [], 1):
        try:
            result = enter_marks(
                school_id, exam_id, row.get('student_id'), row.get('subject_id'),
                class_score=row.get('class_score', 0), exam_score=row.get('exam_score', 0),
                max_marks=row.get('max_marks'), is_absent=bool(row.get('is_absent')), remarks=row.get('remarks', ''),
                user=user, role=role, admin_override=admin_override,
            )
            saved.append(result)
        except (ValueError, LookupError) as exc:
            errors.append({'row': index, 'student_id': row.get('student_id'), 'error': str(exc)})
    if errors:
        logging.warning("Quick marks entry for exam %s skipped %s rows", exam_id, len(errors))
    return {'saved': saved, 'errors': errors}


MARKS_SELECT = '''SELECT m.*, s.name AS subject_name, st.first_name, st.last_name, st.admission_number
                  FROM exam_marks m
                  JOIN subjects s ON s.id = m.subject_id
                  JOIN students st ON st.id = m.student_id'''


def list_marks(school_id, exam_id, class_id=None, subject_id=None, student_id=None):
    query = MARKS_SELECT + ' WHERE m.school_id = ? AND m.exam_id = ?'
    params = [school_id, exam_id]
    if class_id:
        query += ' AND m.class_id = ?'
        params.append(class_id)
    if subject_id:
        query += ' AND m.subject_id = ?'
        params.append(subject_id)
    if student_id:
        query += ' AND m.student_id = ?'
        params.append(student_id)
    query += ' ORDER BY st.last_name, st.first_name, s.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def delete_mark(school_id, mark_id, role='school_admin'):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT e.status, e.is_unlocked FROM exam_marks m JOIN exams e ON e.id = m.exam_id
               WHERE m.id = ? AND m.school_id = ?''',
            (mark_id, school_id),
        )
        row = c.fetchone()
        if not row:
            raise LookupError('Mark not found.')
        check_marks_editable(dict(row), role)
        db_execute(c, 'DELETE FROM exam_marks WHERE id = ?', (mark_id,))


def submit_marks(school_id, mark_ids):
    ids = [int(m) for m in mark_ids or []]
    if not ids:
        return 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE exam_marks SET submission_status = 'submitted_to_class_teacher', updated_at = ?
               WHERE school_id = ? AND id = ANY(?) AND submission_status = 'draft' ''',
            (datetime.now(), school_id, ids),
        )
        return int(c.rowcount or 0)


def verify_marks(school_id, mark_ids, verifier_id, verifier_role):
    if verifier_role == 'school_admin':
        status = 'verified_by_admin'
    elif verifier_role == 'class_teacher':
        status = 'verified_by_class_teacher'
    else:
        raise PermissionError('Only class teachers or admins can verify marks.')
    ids = [int(m) for m in mark_ids or []]
    if not ids:
        return 0
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE exam_marks SET submission_status = ?, verified_by = ?, verified_at = ?, updated_at = ?
               WHERE school_id = ? AND id = ANY(?)''',
            (status, verifier_id, now, now, school_id, ids),
        )
        return int(c.rowcount or 0)


def calculate_subject_positions(school_id, exam_id, subject_id, class_id=None):
    """Rank non-absent marks for one subject; absent students get no position."""
    query = 'SELECT id, total_marks, is_absent FROM exam_marks WHERE school_id = ? AND exam_id = ? AND subject_id = ?'
    params = [school_id, exam_id, subject_id]
    if class_id:
        query += ' AND class_id = ?'
        params.append(class_id)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        rows = fetch_all(c)
        present = [(row['id'], row['total_marks']) for row in rows if not row['is_absent']]
        positions = competition_positions(present)
        for row in rows:
            db_execute(c, 'UPDATE exam_marks SET position = ? WHERE id = ?', (positions.get(row['id']), row['id']))
    return positions


# ==================== ANALYTICS ====================

def summarize_student_totals(marks):
    """Per-student totals and average percentage from a class's marks, ranked."""
    students = {}
    for mark in marks:
        entry = students.setdefault(mark['student_id'], {
            'student_id': mark['student_id'],
            'name': f"{mark.get('first_name', '')} {mark.get('last_name', '')}".strip(),
            'total_score': 0.0,
            'max_score': 0.0,
            'subjects': 0,
        })
        entry['total_score'] += float(mark.get('total_marks') or 0)
        entry['max_score'] += float(mark.get('max_marks') or 0)
        entry['subjects'] += 1
    for entry in students.values():
        entry['average'] = round(entry['total_score'] / entry['max_score'] * 100, 2) if entry['max_score'] else 0.0
    positions = competition_positions([(sid, e['total_score']) for sid, e in students.items()])
    ranked = sorted(students.values(), key=lambda e: positions[e['student_id']])
    for entry in ranked:
        entry['position'] = positions[entry['student_id']]
    return ranked


def subject_stats(marks):
    by_subject = {}
    for mark in marks:
        if mark.get('is_absent'):
            continue
        by_subject.setdefault((mark['subject_id'], mark.get('subject_name', '')), []).append(float(mark.get('percentage') or 0))
    stats = []
    for (subject_id, name), values in by_subject.items():
        passed = sum(1 for v in values if v >= PASS_PERCENT)
        stats.append({
            'subject_id': subject_id,
            'subject_name': name,
            'students': len(values),
            'average': round(sum(values) / len(values), 2),
            'highest': max(values),
            'lowest': min(values),
            'pass_rate': round(passed / len(values) * 100, 2),
        })
    return sorted(stats, key=lambda s: s['average'], reverse=True)


def distribution_buckets(percentages):
    counts = {label: 0 for _low, _high, label in DISTRIBUTION_BUCKETS}
    for value in percentages:
        value = float(value or 0)
        for low, _high, label in DISTRIBUTION_BUCKETS:
            if value >= low:
                counts[label] += 1
                break
    return [{'range': label, 'count': counts[label]} for _low, _high, label in DISTRIBUTION_BUCKETS]


def class_grade_summary(school_id, exam_id, class_id):
    require_exam(school_id, exam_id)
    return summarize_student_totals(list_marks(school_id, exam_id, class_id=class_id))


def class_performance_distribution(school_id, exam_id, class_id):
    summary = class_grade_summary(school_id, exam_id, class_id)
    return distribution_buckets([entry['average'] for entry in summary])


def subject_performance(school_id, exam_id, class_id=None):
    require_exam(school_id, exam_id)
    return subject_stats(list_marks(school_id, exam_id, class_id=class_id))


def student_performance_trends(school_id, student_id):
    """Average percentage per exam, oldest first."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT e.id AS exam_id, e.name AS exam_name, e.exam_type, COALESCE(e.start_date, e.created_at::date) AS exam_date,
                      SUM(m.total_marks) AS total_score, SUM(m.max_marks) AS max_score, COUNT(m.id) AS subjects
               FROM exam_marks m JOIN exams e ON e.id = m.exam_id
               WHERE m.school_id = ? AND m.student_id = ?
               GROUP BY e.id, e.name, e.exam_type, exam_date
               ORDER BY exam_date''',
            (school_id, student_id),
        )
        rows = fetch_all(c)
    for row in rows:
        max_score = float(row['max_score'] or 0)
        row['average'] = round(float(row['total_score'] or 0) / max_score * 100, 2) if max_score else 0.0
    return rows


def exam_marks_stats(school_id, exam_id):
    require_exam(school_id, exam_id)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT submission_status, COUNT(*) AS total, SUM(CASE WHEN is_absent THEN 1 ELSE 0 END) AS absent
               FROM exam_marks WHERE school_id = ? AND exam_id = ? GROUP BY submission_status''',
            (school_id, exam_id),
        )
        rows = fetch_all(c)
    by_status = {row['submission_status']: int(row['total']) for row in rows}
    return {
        'total_entries': sum(by_status.values()),
        'absent': sum(int(row['absent'] or 0) for row in rows),
        'by_status': by_status,
    }
