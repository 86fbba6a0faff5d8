"""Teacher and student records."""

import logging
from datetime import date, datetime

from accounts import create_user_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, parse_date, choice

TEACHER_STATUSES = {'active', 'inactive', 'on_leave'}
STUDENT_STATUSES = {'active', 'inactive', 'graduated', 'transferred', 'suspended'}
GENDERS = {'male', 'female'}


# ==================== TEACHERS ====================

def next_employee_id_with_cursor(c, school_id):
    db_execute(c, 'SELECT COUNT(*) AS total FROM teachers WHERE school_id = ?', (school_id,))
    index = int(c.fetchone()['total'] or 0) + 1
    while True:
        employee_id = f'TCH{index:04d}'
        db_execute(c, 'SELECT id FROM teachers WHERE school_id = ? AND employee_id = ?', (school_id, employee_id))
        if not c.fetchone():
            return employee_id
        index += 1


def create_teacher(school_id, email, password, first_name, last_name, phone='', qualification='',
                   department='', specialization='', joining_date=None):
    if not (first_name or '').strip() or not (last_name or '').strip():
        raise ValueError('Teacher first and last names are required.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        user_id = create_user_with_cursor(c, email, password, 'teacher', school_id, first_name, last_name, phone)
        employee_id = next_employee_id_with_cursor(c, school_id)
        db_execute(
            c,
            '''INSERT INTO teachers (school_id, user_id, employee_id, qualification, department, specialization, joining_date, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)
               RETURNING id''',
            (school_id, user_id, employee_id, qualification, department, specialization,
             parse_date(joining_date) or date.today(), datetime.now()),
        )
        teacher_id = c.fetchone()['id']
    return {'teacher_id': teacher_id, 'user_id': user_id, 'employee_id': employee_id}


TEACHER_SELECT = '''SELECT t.*, u.email, u.first_name, u.last_name, u.phone
                    FROM teachers t JOIN users u ON u.id = t.user_id'''


def list_teachers(school_id, status=None, department=None, search=''):
    query = TEACHER_SELECT + ' WHERE t.school_id = ?'
    params = [school_id]
    if status:
        query += ' AND t.status = ?'
        params.append(status)
    if department:
        query += ' AND t.department = ?'
        params.append(department)
    if search:
        query += " AND (LOWER(u.first_name || ' ' || u.last_name) LIKE ? OR LOWER(t.employee_id) LIKE ?)"
        needle = f'%{search.strip().lower()}%'
        params.extend([needle, needle])
    query += ' ORDER BY u.last_name, u.first_name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_teacher(school_id, teacher_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, TEACHER_SELECT + ' WHERE t.id = ? AND t.school_id = ?', (teacher_id, school_id))
        return fetch_one(c)


def get_teacher_by_user(user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, TEACHER_SELECT + ' WHERE t.user_id = ?', (user_id,))
        return fetch_one(c)


def update_teacher(school_id, teacher_id, **fields):
    teacher_fields = {k: fields[k] for k in ('qualification', 'department', 'specialization', 'status') if fields.get(k) is not None}
    user_fields = {k: fields[k].strip() for k in ('first_name', 'last_name', 'phone') if fields.get(k) is not None}
    if 'status' in teacher_fields:
        teacher_fields['status'] = choice(teacher_fields['status'], TEACHER_STATUSES, 'teacher status')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT user_id FROM teachers WHERE id = ? AND school_id = ?', (teacher_id, school_id))
        row = c.fetchone()
        if not row:
            raise LookupError('Teacher not found.')
        if teacher_fields:
            assignments = ', '.join(f'{col} = ?' for col in teacher_fields)
            db_execute(c, f'UPDATE teachers SET {assignments} WHERE id = ?', tuple(teacher_fields.values()) + (teacher_id,))
        if user_fields:
            assignments = ', '.join(f'{col} = ?' for col in user_fields)
            db_execute(c, f'UPDATE users SET {assignments}, updated_at = ? WHERE id = ?',
                       tuple(user_fields.values()) + (datetime.now(), row['user_id']))


def bulk_update_teacher_status(school_id, teacher_ids, status):
    status = choice(status, TEACHER_STATUSES, 'teacher status')
    ids = [int(t) for t in teacher_ids or []]
    if not ids:
        return 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE teachers SET status = ? WHERE school_id = ? AND id = ANY(?)', (status, school_id, ids))
        return int(c.rowcount or 0)


def delete_teacher(school_id, teacher_id):
    """Remove a teacher with assignments and login account."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT user_id FROM teachers WHERE id = ? AND school_id = ?', (teacher_id, school_id))
        row = c.fetchone()
        if not row:
            raise LookupError('Teacher not found.')
        db_execute(c, 'DELETE FROM subject_assignments WHERE teacher_id = ?', (teacher_id,))
        db_execute(c, 'UPDATE classes SET class_teacher_id = NULL WHERE class_teacher_id = ?', (teacher_id,))
        db_execute(c, 'DELETE FROM teachers WHERE id = ?', (teacher_id,))
        db_execute(c, 'DELETE FROM users WHERE id = ?', (row['user_id'],))


def teacher_classes(school_id, teacher_id):
    """Classes a teacher leads or teaches a subject in."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT DISTINCT cl.id, cl.name, cl.department, (cl.class_teacher_id = ?) AS is_class_teacher
               FROM classes cl
               LEFT JOIN subject_assignments sa ON sa.class_id = cl.id AND sa.teacher_id = ?
               WHERE cl.school_id = ? AND (cl.class_teacher_id = ? OR sa.id IS NOT NULL)
               ORDER BY cl.name''',
            (teacher_id, teacher_id, school_id, teacher_id),
        )
        return fetch_all(c)


def teacher_has_class_access(school_id, teacher_id, class_id):
    return any(int(row['id']) == int(class_id) for row in teacher_classes(school_id, teacher_id))


def is_class_teacher(school_id, teacher_id, class_id):
    return any(int(row['id']) == int(class_id) and row.get('is_class_teacher') for row in teacher_classes(school_id, teacher_id))


# ==================== STUDENTS ====================

def generate_admission_number_with_cursor(c, school_id, year=None):
    """Admission numbers are <year><NNNN>, NNNN = students enrolled so far + 1."""
    year = year or date.today().year
    db_execute(c, 'SELECT COUNT(*) AS total FROM students WHERE school_id = ?', (school_id,))
    index = int(c.fetchone()['total'] or 0) + 1
    while True:
        admission_number = f'{year}{index:04d}'
        db_execute(c, 'SELECT id FROM students WHERE school_id = ? AND admission_number = ?', (school_id, admission_number))
        if not c.fetchone():
            return admission_number
        index += 1


def generate_admission_number(school_id, year=None):
    with db_connection() as conn:
        c = conn.cursor()
        return generate_admission_number_with_cursor(c, school_id, year)


def create_student(school_id, first_name, last_name, class_id, email='', password='', admission_number='',
                   date_of_birth=None, gender=None, guardian_name='', guardian_phone='', parent_user_id=None,
                   emergency_contact_name='', emergency_contact_phone='', address=''):
    first_name = (first_name or '').strip()
    last_name = (last_name or '').strip()
    if not first_name or not last_name:
        raise ValueError('Student first and last names are required.')
    if gender:
        gender = choice(gender, GENDERS, 'gender')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "SELECT id FROM classes WHERE id = ? AND school_id = ? AND status = 'active'", (class_id, school_id))
        if not c.fetchone():
            raise ValueError('Selected class does not exist in this school.')
        admission_number = (admission_number or '').strip()
        if admission_number:
            db_execute(c, 'SELECT id FROM students WHERE school_id = ? AND admission_number = ?', (school_id, admission_number))
            if c.fetchone():
                raise ValueError(f'Admission number {admission_number} is already in use.')
        else:
            admission_number = generate_admission_number_with_cursor(c, school_id)
        user_id = None
        if email:
            user_id = create_user_with_cursor(c, email, password, 'student', school_id, first_name, last_name)
        now = datetime.now()
        db_execute(
            c,
            '''INSERT INTO students
               (school_id, user_id, admission_number, first_name, last_name, date_of_birth, gender, class_id,
                guardian_name, guardian_phone, parent_user_id, emergency_contact_name, emergency_contact_phone,
                address, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_id, user_id, admission_number, first_name, last_name, parse_date(date_of_birth), gender, class_id,
             guardian_name, guardian_phone, parent_user_id, emergency_contact_name, emergency_contact_phone,
             address, now, now),
        )
        student_id = c.fetchone()['id']
    return {'student_id': student_id, 'admission_number': admission_number, 'user_id': user_id}


STUDENT_SELECT = '''SELECT st.*, cl.name AS class_name, cl.department
                    FROM students st LEFT JOIN classes cl ON cl.id = st.class_id'''


def list_students(school_id, class_id=None, status=None, search=''):
    query = STUDENT_SELECT + ' WHERE st.school_id = ?'
    params = [school_id]
    if class_id:
        query += ' AND st.class_id = ?'
        params.append(class_id)
    if status:
        query += ' AND st.status = ?'
        params.append(status)
    if search:
        query += " AND (LOWER(st.first_name || ' ' || st.last_name) LIKE ? OR st.admission_number LIKE ?)"
        needle = f'%{search.strip().lower()}%'
        params.extend([needle, needle])
    query += ' ORDER BY st.last_name, st.first_name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_student(school_id, student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, STUDENT_SELECT + ' WHERE st.id = ? AND st.school_id = ?', (student_id, school_id))
        return fetch_one(c)


def get_student_by_user(user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, STUDENT_SELECT + ' WHERE st.user_id = ?', (user_id,))
        return fetch_one(c)


def students_for_parent(parent_user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, STUDENT_SELECT + ' WHERE st.parent_user_id = ? ORDER BY st.first_name', (parent_user_id,))
        return fetch_all(c)


def update_student(school_id, student_id, **fields):
    allowed = ('first_name', 'last_name', 'date_of_birth', 'gender', 'class_id', 'guardian_name', 'guardian_phone',
               'emergency_contact_name', 'emergency_contact_phone', 'address', 'status')
    updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
    if 'status' in updates:
        updates['status'] = choice(updates['status'], STUDENT_STATUSES, 'student status')
    if 'gender' in updates:
        updates['gender'] = choice(updates['gender'], GENDERS, 'gender')
    if 'date_of_birth' in updates:
        updates['date_of_birth'] = parse_date(updates['date_of_birth'])
    if not updates:
        return
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if 'class_id' in updates:
            db_execute(c, 'SELECT id FROM classes WHERE id = ? AND school_id = ?', (updates['class_id'], school_id))
            if not c.fetchone():
                raise ValueError('Selected class does not exist in this school.')
        assignments = ', '.join(f'{col} = ?' for col in updates)
        db_execute(c, f'UPDATE students SET {assignments}, updated_at = ? WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (datetime.now(), student_id, school_id))
        if not c.rowcount:
            raise LookupError('Student not found.')


def link_parent(school_id, student_id, parent_user_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "SELECT id FROM users WHERE id = ? AND school_id = ? AND role = 'parent'", (parent_user_id, school_id))
        if not c.fetchone():
            raise ValueError('Parent account not found in this school.')
        db_execute(c, 'UPDATE students SET parent_user_id = ?, updated_at = ? WHERE id = ? AND school_id = ?',
                   (parent_user_id, datetime.now(), student_id, school_id))
        if not c.rowcount:
            raise LookupError('Student not found.')


def delete_student(school_id, student_id):
    """Delete the student record and its login account."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT user_id FROM students WHERE id = ? AND school_id = ?', (student_id, school_id))
        row = c.fetchone()
        if not row:
            raise LookupError('Student not found.')
        db_execute(c, 'DELETE FROM students WHERE id = ?', (student_id,))
        if row['user_id']:
            db_execute(c, 'DELETE FROM users WHERE id = ?', (row['user_id'],))


def promote_students(school_id, from_class_id, to_class_id=None, student_ids=None):
    """Move active students up a class; without a target class they graduate."""
    ids = [int(s) for s in student_ids or []]
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if to_class_id:
            db_execute(c, "SELECT id FROM classes WHERE id = ? AND school_id = ? AND status = 'active'", (to_class_id, school_id))
            if not c.fetchone():
                raise ValueError('Target class does not exist in this school.')
            if int(to_class_id) == int(from_class_id):
                raise ValueError('Target class must differ from the current class.')
        query = "SELECT id FROM students WHERE school_id = ? AND class_id = ? AND status = 'active'"
        params = [school_id, from_class_id]
        if ids:
            query += ' AND id = ANY(?)'
            params.append(ids)
        db_execute(c, query, tuple(params))
        selected = [row['id'] for row in c.fetchall()]
        now = datetime.now()
        for student_id in selected:
            if to_class_id:
                db_execute(c, 'UPDATE students SET class_id = ?, updated_at = ? WHERE id = ?', (to_class_id, now, student_id))
            else:
                db_execute(c, "UPDATE students SET status = 'graduated', updated_at = ? WHERE id = ?", (now, student_id))
    logging.info("Promoted %s students from class %s to %s", len(selected), from_class_id, to_class_id or 'graduation')
    return {'promoted': len(selected), 'graduated': not to_class_id}
