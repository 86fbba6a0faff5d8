"""Academic calendar and catalogue: years, terms, classes and subjects."""

import re
from datetime import date, datetime

from accounts import record_audit_log_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, dump_json, load_json, choice, safe_int

DEPARTMENTS = {'creche', 'kindergarten', 'primary', 'junior_high'}
PERIOD_STATUSES = {'active', 'upcoming', 'completed'}
CATALOGUE_STATUSES = {'active', 'inactive'}
YEAR_NAME_RE = re.compile(r'^\d{4}[-/]\d{4}$')


def derive_term_status(start_date, end_date, is_current=False, today=None):
    """Current terms are active; otherwise the status follows the calendar."""
    today = today or date.today()
    if is_current:
        return 'active'
    if start_date <= today <= end_date:
        return 'active'
    if today > end_date:
        return 'completed'
    return 'upcoming'


def _validate_range(start_date, end_date):
    start_date = parse_date(start_date)
    end_date = parse_date(end_date)
    if not start_date or not end_date:
        raise ValueError('Start and end dates are required.')
    if start_date >= end_date:
        raise ValueError('Start date must be before end date.')
    return start_date, end_date


# ==================== ACADEMIC YEARS ====================

def add_academic_year(school_id, name, start_date, end_date, set_as_current=False, user=None):
    name = (name or '').strip()
    if not YEAR_NAME_RE.match(name):
        raise ValueError('Academic year name must look like 2024-2025.')
    start_date, end_date = _validate_range(start_date, end_date)
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM academic_years WHERE school_id = ? AND name = ?', (school_id, name))
        if c.fetchone():
            raise ValueError(f'Academic year {name} already exists.')
        if set_as_current:
            db_execute(c, 'UPDATE academic_years SET is_current = FALSE WHERE school_id = ?', (school_id,))
        status = derive_term_status(start_date, end_date, set_as_current)
        db_execute(
            c,
            '''INSERT INTO academic_years (school_id, name, start_date, end_date, is_current, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (school_id, name, start_date, end_date, bool(set_as_current), status, now, now),
        )
        year_id = c.fetchone()['id']
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'create', 'academic_year', year_id, f'Created academic year {name}')
    return year_id


def list_academic_years(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM academic_years WHERE school_id = ? ORDER BY start_date DESC', (school_id,))
        return fetch_all(c)


def get_academic_year(school_id, year_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM academic_years WHERE id = ? AND school_id = ?', (year_id, school_id))
        return fetch_one(c)


def get_current_academic_year(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM academic_years WHERE school_id = ? AND is_current = TRUE LIMIT 1', (school_id,))
        return fetch_one(c)


def set_current_year(school_id, year_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM academic_years WHERE id = ? AND school_id = ?', (year_id, school_id))
        if not c.fetchone():
            raise LookupError('Academic year not found.')
        db_execute(c, 'UPDATE academic_years SET is_current = FALSE WHERE school_id = ?', (school_id,))
        db_execute(
            c,
            "UPDATE academic_years SET is_current = TRUE, status = 'active', updated_at = ? WHERE id = ?",
            (datetime.now(), year_id),
        )


def update_year_status(school_id, year_id, status):
    status = choice(status, PERIOD_STATUSES, 'academic year status')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE academic_years SET status = ?, updated_at = ? WHERE id = ? AND school_id = ?',
            (status, datetime.now(), year_id, school_id),
        )
        if not c.rowcount:
            raise LookupError('Academic year not found.')


def delete_academic_year(school_id, year_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM terms WHERE academic_year_id = ?', (year_id,))
        if int(c.fetchone()['total'] or 0):
            raise ValueError('Delete the terms of this academic year first.')
        db_execute(c, 'DELETE FROM academic_years WHERE id = ? AND school_id = ?', (year_id, school_id))
        if not c.rowcount:
            raise LookupError('Academic year not found.')


# ==================== TERMS ====================

def add_term(school_id, academic_year_id, name, term_number, start_date, end_date, holidays=None,
             set_as_current=False, user=None):
    name = (name or '').strip()
    if not name:
        raise ValueError('Term name is required.')
    term_number = safe_int(term_number, 0)
    if term_number not in (1, 2, 3):
        raise ValueError('Term number must be 1, 2 or 3.')
    start_date, end_date = _validate_range(start_date, end_date)
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM academic_years WHERE id = ? AND school_id = ?', (academic_year_id, school_id))
        if not c.fetchone():
            raise LookupError('Academic year not found.')
        db_execute(c, 'SELECT id FROM terms WHERE academic_year_id = ? AND term_number = ?', (academic_year_id, term_number))
        if c.fetchone():
            raise ValueError(f'Term {term_number} already exists for this academic year.')
        if set_as_current:
            db_execute(c, 'UPDATE terms SET is_current = FALSE WHERE school_id = ? AND is_current = TRUE', (school_id,))
        status = derive_term_status(start_date, end_date, set_as_current)
        db_execute(
            c,
            '''INSERT INTO terms (school_id, academic_year_id, name, term_number, start_date, end_date, holidays, is_current, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (school_id, academic_year_id, name, term_number, start_date, end_date, dump_json(holidays or []),
             bool(set_as_current), status, now, now),
        )
        term_id = c.fetchone()['id']
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'create', 'term', term_id, f'Created term: {name}')
    return term_id


def _term_row(row):
    if row:
        row['holidays'] = load_json(row.get('holidays'), [])
    return row


def list_terms(school_id, academic_year_id=None):
    query = 'SELECT * FROM terms WHERE school_id = ?'
    params = [school_id]
    if academic_year_id:
        query += ' AND academic_year_id = ?'
        params.append(academic_year_id)
    query += ' ORDER BY start_date'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return [_term_row(row) for row in fetch_all(c)]


def get_term(school_id, term_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM terms WHERE id = ? AND school_id = ?', (term_id, school_id))
        return _term_row(fetch_one(c))


def get_current_term(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM terms WHERE school_id = ? AND is_current = TRUE LIMIT 1', (school_id,))
        return _term_row(fetch_one(c))


def set_current_term(school_id, term_id, user=None):
    user = user or {}
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT name FROM terms WHERE id = ? AND school_id = ?', (term_id, school_id))
        row = c.fetchone()
        if not row:
            raise LookupError('Term not found.')
        db_execute(c, 'UPDATE terms SET is_current = FALSE WHERE school_id = ? AND is_current = TRUE', (school_id,))
        db_execute(
            c,
            "UPDATE terms SET is_current = TRUE, status = 'active', updated_at = ? WHERE id = ?",
            (datetime.now(), term_id),
        )
        record_audit_log_with_cursor(c, school_id, user.get('id'), user.get('name'), 'update', 'term', term_id, f"Set current term: {row['name']}")


def update_term(school_id, term_id, name=None, start_date=None, end_date=None, holidays=None, status=None):
    term = get_term(school_id, term_id)
    if not term:
        raise LookupError('Term not found.')
    start = parse_date(start_date) or term['start_date']
    end = parse_date(end_date) or term['end_date']
    if start >= end:
        raise ValueError('Start date must be before end date.')
    if status is not None:
        status = choice(status, PERIOD_STATUSES, 'term status')
    else:
        status = derive_term_status(start, end, term.get('is_current'))
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE terms SET name = ?, start_date = ?, end_date = ?, holidays = ?, status = ?, updated_at = ?
               WHERE id = ? AND school_id = ?''',
            ((name or term['name']).strip(), start, end,
             dump_json(holidays if holidays is not None else term.get('holidays') or []),
             status, datetime.now(), term_id, school_id),
        )


def delete_term(school_id, term_id):
    term = get_term(school_id, term_id)
    if not term:
        raise LookupError('Term not found.')
    if term.get('is_current'):
        raise ValueError('The current term cannot be deleted.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM terms WHERE id = ? AND school_id = ?', (term_id, school_id))


# ==================== CLASSES ====================

def create_class(school_id, name, level='', department='primary', academic_year_id=None, capacity=None, class_teacher_id=None):
    name = (name or '').strip()
    if not name:
        raise ValueError('Class name is required.')
    department = choice(department, DEPARTMENTS, 'department')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM classes WHERE school_id = ? AND LOWER(name) = LOWER(?)', (school_id, name))
        if c.fetchone():
            raise ValueError(f'Class "{name}" already exists.')
        db_execute(
            c,
            '''INSERT INTO classes (school_id, class_code, name, level, department, academic_year_id, capacity, class_teacher_id, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_id, generate_code('CLS', 6), name, level, department, academic_year_id,
             safe_int(capacity, 0) or None, class_teacher_id, now, now),
        )
        return c.fetchone()['id']


def list_classes(school_id, department=None, status=None):
    query = '''SELECT cl.*, COUNT(st.id) FILTER (WHERE st.status = 'active') AS student_count
               FROM classes cl
               LEFT JOIN students st ON st.class_id = cl.id
               WHERE cl.school_id = ?'''
    params = [school_id]
    if department:
        query += ' AND cl.department = ?'
        params.append(department)
    if status:
        query += ' AND cl.status = ?'
        params.append(status)
    query += ' GROUP BY cl.id ORDER BY cl.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_class(school_id, class_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
        return fetch_one(c)


def update_class(school_id, class_id, **fields):
    allowed = ('name', 'level', 'department', 'capacity', 'class_teacher_id', 'status')
    updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
    if 'department' in updates:
        updates['department'] = choice(updates['department'], DEPARTMENTS, 'department')
    if 'status' in updates:
        updates['status'] = choice(updates['status'], CATALOGUE_STATUSES, 'class status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE classes SET {assignments}, updated_at = ? WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (datetime.now(), class_id, school_id))
        if not c.rowcount:
            raise LookupError('Class not found.')


def delete_class(school_id, class_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "SELECT COUNT(*) AS total FROM students WHERE class_id = ? AND status = 'active'", (class_id,))
        if int(c.fetchone()['total'] or 0):
            raise ValueError('Move or deactivate the students of this class before deleting it.')
        db_execute(c, 'DELETE FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
        if not c.rowcount:
            raise LookupError('Class not found.')


# ==================== SECTIONS ====================

def _check_section_teacher_with_cursor(c, school_id, teacher_id):
    if not teacher_id:
        return None
    db_execute(c, 'SELECT id FROM teachers WHERE id = ? AND school_id = ?', (teacher_id, school_id))
    if not c.fetchone():
        raise ValueError('Selected class teacher is not a teacher of this school.')
    return teacher_id


def create_section(school_id, class_id, name, capacity, class_teacher_id=None, room=''):
    name = (name or '').strip()
    if not name:
        raise ValueError('Section name is required.')
    capacity = safe_int(capacity, 0)
    if capacity < 1:
        raise ValueError('Section capacity must be at least 1.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
        if not c.fetchone():
            raise LookupError('Class not found.')
        db_execute(c, 'SELECT id FROM sections WHERE class_id = ? AND LOWER(name) = LOWER(?)', (class_id, name))
        if c.fetchone():
            raise ValueError('Section with this name already exists for this class.')
        class_teacher_id = _check_section_teacher_with_cursor(c, school_id, class_teacher_id)
        db_execute(
            c,
            '''INSERT INTO sections (school_id, class_id, name, capacity, class_teacher_id, room, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (school_id, class_id, name, capacity, class_teacher_id, (room or '').strip(), now, now),
        )
        return c.fetchone()['id']


def list_sections(school_id, class_id=None):
    query = '''SELECT sec.*, cl.name AS class_name, cl.level AS class_level,
                      u.first_name AS teacher_first_name, u.last_name AS teacher_last_name,
                      COUNT(st.id) AS student_count
               FROM sections sec
               JOIN classes cl ON cl.id = sec.class_id
               LEFT JOIN teachers t ON t.id = sec.class_teacher_id
               LEFT JOIN users u ON u.id = t.user_id
               LEFT JOIN students st ON st.section_id = sec.id
               WHERE sec.school_id = ?'''
    params = [school_id]
    if class_id:
        query += ' AND sec.class_id = ?'
        params.append(class_id)
    query += ' GROUP BY sec.id, cl.name, cl.level, u.first_name, u.last_name ORDER BY cl.level, sec.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def update_section(school_id, section_id, name=None, capacity=None, class_teacher_id=None, room=None):
    updates = {}
    if name is not None:
        updates['name'] = name.strip()
        if not updates['name']:
            raise ValueError('Section name is required.')
    if capacity is not None:
        updates['capacity'] = safe_int(capacity, 0)
        if updates['capacity'] < 1:
            raise ValueError('Section capacity must be at least 1.')
    if room is not None:
        updates['room'] = room.strip()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if class_teacher_id is not None:
            updates['class_teacher_id'] = _check_section_teacher_with_cursor(c, school_id, class_teacher_id)
        if not updates:
            return
        assignments = ', '.join(f'{col} = ?' for col in updates)
        db_execute(c, f'UPDATE sections SET {assignments}, updated_at = ? WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (datetime.now(), section_id, school_id))
        if not c.rowcount:
            raise LookupError('Section not found.')


def delete_section(school_id, section_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM students WHERE section_id = ?', (section_id,))
        if int(c.fetchone()['total'] or 0):
            raise ValueError('Cannot delete section with enrolled students.')
        db_execute(c, 'DELETE FROM sections WHERE id = ? AND school_id = ?', (section_id, school_id))
        if not c.rowcount:
            raise LookupError('Section not found.')


def assign_students_to_section(school_id, section_id, student_ids):
    """Move students of the section's class into it, up to its capacity."""
    student_ids = [int(sid) for sid in student_ids or []]
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, class_id, capacity FROM sections WHERE id = ? AND school_id = ?', (section_id, school_id))
        section = fetch_one(c)
        if not section:
            raise LookupError('Section not found.')
        db_execute(c, 'SELECT id FROM students WHERE section_id = ?', (section_id,))
        current = {row['id'] for row in c.fetchall()}
        if len(current | set(student_ids)) > int(section['capacity'] or 0):
            raise ValueError(f"Section is full (capacity {section['capacity']}).")
        for student_id in student_ids:
            db_execute(c, 'UPDATE students SET section_id = ?, updated_at = ? WHERE id = ? AND class_id = ? AND school_id = ?',
                       (section_id, datetime.now(), student_id, section['class_id'], school_id))
            if not c.rowcount:
                raise ValueError(f'Student {student_id} is not in this class.')
    return len(student_ids)


# ==================== SUBJECTS ====================

def normalize_subject_name(value):
    """Collapse whitespace and title-case words, keeping short acronyms."""
    raw = ' '.join((value or '').strip().split())
    words = []
    for word in raw.split(' '):
        if word.isupper() and len(word) <= 4:
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return ' '.join(words)


def subject_code_for(name):
    letters = re.sub(r'[^A-Za-z]+', '', name or '').upper()
    return (letters[:4] or 'SUBJ') + generate_code('', 3)


def create_subject_with_cursor(c, school_id, name, department=None, is_core=True, subject_code=''):
    name = normalize_subject_name(name)
    if not name:
        raise ValueError('Subject name is required.')
    if department:
        department = choice(department, DEPARTMENTS, 'department')
    db_execute(c, 'SELECT id FROM subjects WHERE school_id = ? AND LOWER(name) = LOWER(?) AND COALESCE(department, \'\') = ?',
               (school_id, name, department or ''))
    if c.fetchone():
        raise ValueError(f'Subject "{name}" already exists.')
    db_execute(
        c,
        '''INSERT INTO subjects (school_id, subject_code, name, department, is_core, status, created_at)
           VALUES (?, ?, ?, ?, ?, 'active', ?)
           RETURNING id''',
        (school_id, (subject_code or '').strip().upper() or subject_code_for(name), name, department, bool(is_core), datetime.now()),
    )
    return c.fetchone()['id']


def create_subject(school_id, name, department=None, is_core=True, subject_code=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return create_subject_with_cursor(c, school_id, name, department, is_core, subject_code)


def bulk_create_subjects(school_id, rows):
    """Create many subjects; duplicates and invalid rows are reported, not fatal."""
    created, errors = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for index, row in enumerate(rows or [], 1):
            try:
                created.append(create_subject_with_cursor(
                    c, school_id, row.get('name'), row.get('department'), row.get('is_core', True), row.get('subject_code', ''),
                ))
            except ValueError as exc:
                errors.append({'row': index, 'error': str(exc)})
    return {'created': created, 'errors': errors}


def list_subjects(school_id, department=None, status=None):
    query = 'SELECT * FROM subjects WHERE school_id = ?'
    params = [school_id]
    if department:
        query += ' AND (department = ? OR department IS NULL)'
        params.append(department)
    if status:
        query += ' AND status = ?'
        params.append(status)
    query += ' ORDER BY is_core DESC, name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def update_subject(school_id, subject_id, name=None, department=None, is_core=None, status=None):
    updates = {}
    if name is not None:
        updates['name'] = normalize_subject_name(name)
        if not updates['name']:
            raise ValueError('Subject name is required.')
    if department is not None:
        updates['department'] = choice(department, DEPARTMENTS, 'department') if department else None
    if is_core is not None:
        updates['is_core'] = bool(is_core)
    if status is not None:
        updates['status'] = choice(status, CATALOGUE_STATUSES, 'subject status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE subjects SET {assignments} WHERE id = ? AND school_id = ?', tuple(updates.values()) + (subject_id, school_id))
        if not c.rowcount:
            raise LookupError('Subject not found.')


def bulk_update_subject_status(school_id, subject_ids, status):
    status = choice(status, CATALOGUE_STATUSES, 'subject status')
    ids = [int(s) for s in subject_ids or []]
    if not ids:
        return 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE subjects SET status = ? WHERE school_id = ? AND id = ANY(?)', (status, school_id, ids))
        return int(c.rowcount or 0)


def delete_subject(school_id, subject_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM exam_marks WHERE subject_id = ?', (subject_id,))
        if int(c.fetchone()['total'] or 0):
            raise ValueError('Subject has recorded marks. Deactivate it instead.')
        db_execute(c, 'DELETE FROM subjects WHERE id = ? AND school_id = ?', (subject_id, school_id))
        if not c.rowcount:
            raise LookupError('Subject not found.')


def set_class_subjects(school_id, class_id, subject_ids):
    ids = sorted({int(s) for s in subject_ids or []})
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
        if not c.fetchone():
            raise LookupError('Class not found.')
        if ids:
            db_execute(c, 'SELECT COUNT(*) AS total FROM subjects WHERE school_id = ? AND id = ANY(?)', (school_id, ids))
            if int(c.fetchone()['total'] or 0) != len(ids):
                raise ValueError('One or more subjects do not belong to this school.')
        db_execute(c, 'DELETE FROM class_subjects WHERE class_id = ?', (class_id,))
        for subject_id in ids:
            db_execute(c, 'INSERT INTO class_subjects (class_id, subject_id) VALUES (?, ?)', (class_id, subject_id))
    return ids


def class_subjects(class_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT s.* FROM class_subjects cs JOIN subjects s ON s.id = cs.subject_id
               WHERE cs.class_id = ? ORDER BY s.is_core DESC, s.name''',
            (class_id,),
        )
        return fetch_all(c)


def assign_subject_teacher(school_id, teacher_id, subject_id, class_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM teachers WHERE id = ? AND school_id = ?', (teacher_id, school_id))
        if not c.fetchone():
            raise ValueError('Selected teacher is not registered in this school.')
        db_execute(
            c,
            '''INSERT INTO subject_assignments (school_id, teacher_id, subject_id, class_id)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(teacher_id, subject_id, class_id) DO NOTHING''',
            (school_id, teacher_id, subject_id, class_id),
        )


def remove_subject_teacher(school_id, assignment_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM subject_assignments WHERE id = ? AND school_id = ?', (assignment_id, school_id))
        if not c.rowcount:
            raise LookupError('Assignment not found.')


def list_subject_assignments(school_id, class_id=None):
    query = '''SELECT sa.id, sa.teacher_id, sa.subject_id, sa.class_id, s.name AS subject_name, cl.name AS class_name,
                      u.first_name || ' ' || u.last_name AS teacher_name
               FROM subject_assignments sa
               JOIN subjects s ON s.id = sa.subject_id
               JOIN classes cl ON cl.id = sa.class_id
               JOIN teachers t ON t.id = sa.teacher_id
               JOIN users u ON u.id = t.user_id
               WHERE sa.school_id = ?'''
    params = [school_id]
    if class_id:
        query += ' AND sa.class_id = ?'
        params.append(class_id)
    query += ' ORDER BY cl.name, s.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)
