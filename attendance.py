"""Class attendance sessions, student records, statistics and settings."""

import logging
import math
from datetime import date, datetime

from accounts import record_audit_log_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, dump_json, load_json, choice

SESSIONS = {'morning', 'afternoon', 'full_day'}
RECORD_STATUSES = {'present', 'absent', 'late', 'excused'}
SESSION_STATUSES = {'pending', 'completed', 'locked'}

DEFAULT_SETTINGS = {
    'enable_morning_session': True,
    'enable_afternoon_session': False,
    'morning_start_time': '08:00',
    'morning_end_time': '12:00',
    'afternoon_start_time': '13:00',
    'afternoon_end_time': '17:00',
    'late_threshold_minutes': 15,
    'auto_lock_attendance': False,
    'lock_after_hours': 24,
    'require_admin_approval': False,
    'notify_parents_on_absence': False,
}


def attendance_rate(present, late, excused, total):
    """Percentage of marked students who attended (present, late or excused), half rounded up."""
    total = int(total or 0)
    if total <= 0:
        return 0
    return int(math.floor((int(present or 0) + int(late or 0) + int(excused or 0)) / total * 100 + 0.5))


def count_statuses(statuses):
    counts = {status: 0 for status in RECORD_STATUSES}
    for status in statuses:
        if status in counts:
            counts[status] += 1
    return counts


def _load_session_with_cursor(c, school_id, attendance_id):
    db_execute(c, 'SELECT * FROM attendance WHERE id = ?', (attendance_id,))
    session = fetch_one(c)
    if not session:
        raise LookupError('Attendance session not found.')
    if int(session['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return session


def refresh_counts_with_cursor(c, attendance_id):
    db_execute(c, 'SELECT status FROM attendance_records WHERE attendance_id = ?', (attendance_id,))
    counts = count_statuses(row['status'] for row in c.fetchall())
    db_execute(
        c,
        '''UPDATE attendance SET present_count = ?, absent_count = ?, late_count = ?, excused_count = ?, updated_at = ?
           WHERE id = ?''',
        (counts['present'], counts['absent'], counts['late'], counts['excused'], datetime.now(), attendance_id),
    )
    return counts


def create_attendance(school_id, class_id, on_date, session='morning', user=None):
    session = choice(session, SESSIONS, 'session')
    on_date = parse_date(on_date) or date.today()
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
        if not c.fetchone():
            raise LookupError('Class not found.')
        db_execute(c, 'SELECT id FROM attendance WHERE class_id = ? AND date = ? AND session = ?', (class_id, on_date, session))
        if c.fetchone():
            raise ValueError('Attendance already exists for this class, date and session.')
        db_execute(c, "SELECT COUNT(*) AS total FROM students WHERE class_id = ? AND status = 'active'", (class_id,))
        total_students = int(c.fetchone()['total'] or 0)
        attendance_code = generate_code('ATT')
        db_execute(
            c,
            '''INSERT INTO attendance (school_id, attendance_code, class_id, date, session, total_students, status, marked_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
               RETURNING id''',
            (school_id, attendance_code, class_id, on_date, session, total_students, user.get('id'), now, now),
        )
        attendance_id = c.fetchone()['id']
    return {'attendance_id': attendance_id, 'attendance_code': attendance_code}


def _mark_with_cursor(c, session, student_id, status, remarks, user, now):
    status = choice(status, RECORD_STATUSES, 'attendance status')
    db_execute(c, 'SELECT id FROM students WHERE id = ? AND class_id = ?', (student_id, session['class_id']))
    if not c.fetchone():
        raise ValueError('Student is not in this class.')
    db_execute(
        c,
        '''INSERT INTO attendance_records (attendance_id, student_id, status, remarks, marked_by, marked_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(attendance_id, student_id) DO UPDATE SET
               status = EXCLUDED.status, remarks = EXCLUDED.remarks,
               marked_by = EXCLUDED.marked_by, marked_at = EXCLUDED.marked_at''',
        (session['id'], student_id, status, remarks or '', user.get('id'), now),
    )


def _open_session_with_cursor(c, school_id, attendance_id):
    session = _load_session_with_cursor(c, school_id, attendance_id)
    if session['status'] == 'locked':
        raise ValueError('Attendance is locked. Ask an administrator to unlock or override it.')
    return session


def mark_student_attendance(school_id, attendance_id, student_id, status, remarks='', user=None):
    """Upsert one student's record; locked sessions are read-only."""
    status = choice(status, RECORD_STATUSES, 'attendance status')
    user = user or {}
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        session = _open_session_with_cursor(c, school_id, attendance_id)
        _mark_with_cursor(c, session, student_id, status, remarks, user, datetime.now())
        return refresh_counts_with_cursor(c, attendance_id)


def mark_class_attendance(school_id, attendance_id, records, user=None):
    """Mark many records in one transaction.

    records: [{'student_id', 'status', 'remarks'}]. A bad row is rolled back to
    its savepoint and reported in ``errors``; the other rows are kept.
    """
    user = user or {}
    now = datetime.now()
    saved, errors = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        session = _open_session_with_cursor(c, school_id, attendance_id)
        for index, record in enumerate(records or [], 1):
            student_id = record.get('student_id')
            db_execute(c, 'SAVEPOINT attendance_row')
            try:
                _mark_with_cursor(c, session, student_id, record.get('status'), record.get('remarks', ''), user, now)
            except ValueError as exc:
                db_execute(c, 'ROLLBACK TO SAVEPOINT attendance_row')
                errors.append({'row': index, 'student_id': student_id, 'error': str(exc)})
                continue
            db_execute(c, 'RELEASE SAVEPOINT attendance_row')
            saved.append(student_id)
        counts = refresh_counts_with_cursor(c, attendance_id)
    if errors:
        logging.warning("Attendance %s: %s of %s records rejected", attendance_id, len(errors), len(saved) + len(errors))
    return {'saved': saved, 'errors': errors, 'counts': counts}


def _set_session_status(school_id, attendance_id, allowed_from, new_status, user=None, extra_sql='', extra_params=()):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        session = _load_session_with_cursor(c, school_id, attendance_id)
        if session['status'] not in allowed_from:
            raise ValueError(f"Cannot change attendance from {session['status']} to {new_status}.")
        db_execute(
            c,
            f'UPDATE attendance SET status = ?, updated_at = ?{extra_sql} WHERE id = ?',
            (new_status, datetime.now()) + tuple(extra_params) + (attendance_id,),
        )


def complete_attendance(school_id, attendance_id, user=None):
    _set_session_status(school_id, attendance_id, {'pending', 'completed'}, 'completed', user)


def lock_attendance(school_id, attendance_id, user=None):
    user = user or {}
    _set_session_status(school_id, attendance_id, {'pending', 'completed'}, 'locked', user,
                        ', locked_by = ?, locked_at = ?', (user.get('id'), datetime.now()))


def unlock_attendance(school_id, attendance_id, user=None):
    user = user or {}
    _set_session_status(school_id, attendance_id, {'locked'}, 'completed', user,
                        ', unlocked_by = ?, unlocked_at = ?', (user.get('id'), datetime.now()))


def admin_override_attendance(school_id, attendance_id, student_id, new_status, reason, user=None):
    """Change a record on any session (locked included), keeping the previous status."""
    new_status = choice(new_status, RECORD_STATUSES, 'attendance status')
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A reason is required for an attendance override.')
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_session_with_cursor(c, school_id, attendance_id)
        db_execute(c, 'SELECT id, status FROM attendance_records WHERE attendance_id = ? AND student_id = ?', (attendance_id, student_id))
        record = c.fetchone()
        if not record:
            raise LookupError('Attendance record not found.')
        db_execute(
            c,
            '''UPDATE attendance_records
               SET previous_status = ?, status = ?, override_reason = ?, overridden_by = ?, overridden_at = ?
               WHERE id = ?''',
            (record['status'], new_status, reason, user.get('id'), now, record['id']),
        )
        counts = refresh_counts_with_cursor(c, attendance_id)
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'override_attendance', 'attendance_records',
                                     record['id'], f"{record['status']} -> {new_status}. Reason: {reason}")
    return counts


def delete_attendance(school_id, attendance_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_session_with_cursor(c, school_id, attendance_id)
        db_execute(c, 'DELETE FROM attendance_records WHERE attendance_id = ?', (attendance_id,))
        db_execute(c, 'DELETE FROM attendance WHERE id = ?', (attendance_id,))


def bulk_mark_attendance(school_id, class_ids, on_date, session='morning', default_status='present', user=None):
    """Create completed sessions for many classes with every active student on the default status."""
    session = choice(session, SESSIONS, 'session')
    default_status = choice(default_status, {'present', 'absent'}, 'default status')
    on_date = parse_date(on_date) or date.today()
    user = user or {}
    results = []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for class_id in class_ids or []:
            db_execute(c, 'SELECT id, name FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
            class_row = c.fetchone()
            if not class_row:
                results.append({'class_id': class_id, 'class_name': 'Unknown', 'success': False, 'error': 'Class not found'})
                continue
            db_execute(c, 'SELECT id FROM attendance WHERE class_id = ? AND date = ? AND session = ?', (class_id, on_date, session))
            if c.fetchone():
                results.append({'class_id': class_id, 'class_name': class_row['name'], 'success': False,
                                'error': 'Attendance already exists'})
                continue
            db_execute(c, "SELECT id FROM students WHERE class_id = ? AND status = 'active'", (class_id,))
            student_ids = [row['id'] for row in c.fetchall()]
            now = datetime.now()
            db_execute(
                c,
                '''INSERT INTO attendance (school_id, attendance_code, class_id, date, session, total_students,
                                           present_count, absent_count, status, marked_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'completed', ?, ?, ?)
                   RETURNING id''',
                (school_id, generate_code('ATT'), class_id, on_date, session, len(student_ids),
                 len(student_ids) if default_status == 'present' else 0,
                 len(student_ids) if default_status == 'absent' else 0,
                 user.get('id'), now, now),
            )
            attendance_id = c.fetchone()['id']
            for student_id in student_ids:
                db_execute(
                    c,
                    '''INSERT INTO attendance_records (attendance_id, student_id, status, marked_by, marked_at)
                       VALUES (?, ?, ?, ?, ?)''',
                    (attendance_id, student_id, default_status, user.get('id'), now),
                )
            results.append({'class_id': class_id, 'class_name': class_row['name'], 'success': True, 'attendance_id': attendance_id})
    skipped = [r for r in results if not r['success']]
    if skipped:
        logging.warning("Bulk attendance on %s skipped %s classes", on_date, len(skipped))
    return results


# ==================== QUERIES ====================

SESSION_SELECT = '''SELECT a.*, cl.name AS class_name
                    FROM attendance a JOIN classes cl ON cl.id = a.class_id'''


def list_attendance(school_id, class_id=None, start_date=None, end_date=None, on_date=None):
    query = SESSION_SELECT + ' WHERE a.school_id = ?'
    params = [school_id]
    if class_id:
        query += ' AND a.class_id = ?'
        params.append(class_id)
    if on_date:
        query += ' AND a.date = ?'
        params.append(parse_date(on_date))
    if start_date and end_date:
        query += ' AND a.date BETWEEN ? AND ?'
        params.extend([parse_date(start_date), parse_date(end_date)])
    query += ' ORDER BY a.date DESC, cl.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def today_attendance(school_id):
    return list_attendance(school_id, on_date=date.today())


def get_attendance(school_id, attendance_id):
    with db_connection() as conn:
        c = conn.cursor()
        return _load_session_with_cursor(c, school_id, attendance_id)


def attendance_records(school_id, attendance_id):
    with db_connection() as conn:
        c = conn.cursor()
        _load_session_with_cursor(c, school_id, attendance_id)
        db_execute(
            c,
            '''SELECT ar.*, st.first_name, st.last_name, st.admission_number
               FROM attendance_records ar JOIN students st ON st.id = ar.student_id
               WHERE ar.attendance_id = ?
               ORDER BY st.last_name, st.first_name''',
            (attendance_id,),
        )
        return fetch_all(c)


def student_attendance_history(school_id, student_id, limit=60):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT a.date, a.session, ar.status, ar.remarks
               FROM attendance_records ar JOIN attendance a ON a.id = ar.attendance_id
               WHERE a.school_id = ? AND ar.student_id = ?
               ORDER BY a.date DESC LIMIT ?''',
            (school_id, student_id, limit),
        )
        return fetch_all(c)


def attendance_stats(school_id, start_date=None, end_date=None):
    sessions = list_attendance(school_id, start_date=start_date, end_date=end_date)
    totals = {
        'present': sum(int(s['present_count'] or 0) for s in sessions),
        'absent': sum(int(s['absent_count'] or 0) for s in sessions),
        'late': sum(int(s['late_count'] or 0) for s in sessions),
        'excused': sum(int(s['excused_count'] or 0) for s in sessions),
    }
    marked = sum(totals.values())
    return {
        'total_sessions': len(sessions),
        'total_present': totals['present'],
        'total_absent': totals['absent'],
        'total_late': totals['late'],
        'total_excused': totals['excused'],
        'total_marked': marked,
        'attendance_rate': attendance_rate(totals['present'], totals['late'], totals['excused'], marked),
    }


def student_attendance_rate(school_id, student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT ar.status FROM attendance_records ar JOIN attendance a ON a.id = ar.attendance_id
               WHERE a.school_id = ? AND ar.student_id = ?''',
            (school_id, student_id),
        )
        counts = count_statuses(row['status'] for row in c.fetchall())
    total = sum(counts.values())
    return dict(counts, total_days=total,
                attendance_rate=attendance_rate(counts['present'], counts['late'], counts['excused'], total))


def pending_attendance_classes(school_id, on_date=None):
    """Active classes with no attendance session on the date."""
    on_date = parse_date(on_date) or date.today()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT cl.id, cl.name, cl.department FROM classes cl
               WHERE cl.school_id = ? AND cl.status = 'active'
                 AND NOT EXISTS (SELECT 1 FROM attendance a WHERE a.class_id = cl.id AND a.date = ?)
               ORDER BY cl.name''',
            (school_id, on_date),
        )
        return fetch_all(c)


def get_attendance_settings(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT settings FROM attendance_settings WHERE school_id = ?', (school_id,))
        row = c.fetchone()
    settings = dict(DEFAULT_SETTINGS)
    if row:
        settings.update(load_json(row['settings'], {}))
    return settings


def save_attendance_settings(school_id, updates):
    settings = get_attendance_settings(school_id)
    for key, value in (updates or {}).items():
        if key not in DEFAULT_SETTINGS:
            raise ValueError(f'Unknown attendance setting "{key}".')
        expected = type(DEFAULT_SETTINGS[key])
        if expected is bool:
            value = value if isinstance(value, bool) else str(value).strip().lower() in ('1', 'true', 'yes', 'on')
        elif expected is int:
            try:
                value = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f'{key} must be a whole number.') from exc
            if value < 0:
                raise ValueError(f'{key} cannot be negative.')
        else:
            value = str(value).strip()
            try:
                datetime.strptime(value, '%H:%M')
            except ValueError as exc:
                raise ValueError(f'{key} must be a time like 08:00.') from exc
        settings[key] = value
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO attendance_settings (school_id, settings, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(school_id) DO UPDATE SET settings = EXCLUDED.settings, updated_at = EXCLUDED.updated_at''',
            (school_id, dump_json(settings), datetime.now()),
        )
    return settings
