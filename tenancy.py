"""Schools (tenants) and platform-wide statistics."""

import secrets
from datetime import datetime

from accounts import create_user_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, choice

SCHOOL_STATUSES = {'active', 'suspended', 'inactive'}
UPDATABLE_SCHOOL_FIELDS = ('name', 'email', 'phone', 'address', 'motto', 'principal_name', 'currency', 'timezone')


def generate_school_code():
    return 'SCH' + ''.join(secrets.choice('0123456789') for _ in range(4))


def create_school_with_admin(name, admin_email, admin_password, admin_first_name='', admin_last_name='',
                             email='', phone='', address='', motto='', principal_name='', plan='free'):
    """Create a school and its first school admin in one transaction."""
    name = (name or '').strip()
    if not name:
        raise ValueError('School name is required.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for _ in range(10):
            school_code = generate_school_code()
            db_execute(c, 'SELECT id FROM schools WHERE school_code = ?', (school_code,))
            if not c.fetchone():
                break
        else:
            raise ValueError('Could not allocate a unique school code. Try again.')
        db_execute(
            c,
            '''INSERT INTO schools (school_code, name, email, phone, address, motto, principal_name, subscription_plan, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_code, name, email, phone, address, motto, principal_name, plan, now, now),
        )
        school_id = c.fetchone()['id']
        admin_id = create_user_with_cursor(
            c, admin_email, admin_password, 'school_admin', school_id, admin_first_name, admin_last_name,
        )
    return {'school_id': school_id, 'school_code': school_code, 'admin_id': admin_id}


def get_school(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM schools WHERE id = ? LIMIT 1', (school_id,))
        return fetch_one(c)


def list_schools(status=None):
    query = '''SELECT s.*,
                      (SELECT COUNT(*) FROM students st WHERE st.school_id = s.id) AS student_count,
                      (SELECT COUNT(*) FROM users u WHERE u.school_id = s.id AND u.role = 'teacher') AS teacher_count
               FROM schools s'''
    params = ()
    if status:
        query += ' WHERE s.status = ?'
        params = (choice(status, SCHOOL_STATUSES, 'school status'),)
    query += ' ORDER BY s.created_at DESC'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return fetch_all(c)


def update_school(school_id, **fields):
    updates = {k: (v or '').strip() for k, v in fields.items() if k in UPDATABLE_SCHOOL_FIELDS and v is not None}
    if 'name' in updates and not updates['name']:
        raise ValueError('School name cannot be empty.')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE schools SET {assignments}, updated_at = ? WHERE id = ?', tuple(updates.values()) + (datetime.now(), school_id))
        if not c.rowcount:
            raise LookupError('School not found.')


def update_school_status_with_cursor(c, school_id, status):
    status = choice(status, SCHOOL_STATUSES, 'school status')
    db_execute(c, 'UPDATE schools SET status = ?, updated_at = ? WHERE id = ?', (status, datetime.now(), school_id))
    if not c.rowcount:
        raise LookupError('School not found.')


def update_school_status(school_id, status):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        update_school_status_with_cursor(c, school_id, status)


def update_school_plan_with_cursor(c, school_id, plan_name):
    db_execute(c, 'UPDATE schools SET subscription_plan = ?, updated_at = ? WHERE id = ?', (plan_name, datetime.now(), school_id))


def update_school_plan(school_id, plan_name):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        update_school_plan_with_cursor(c, school_id, plan_name)


def delete_school(school_id):
    """Delete an inactive school; child rows go with it through ON DELETE CASCADE."""
    school = get_school(school_id)
    if not school:
        raise LookupError('School not found.')
    if school.get('status') != 'inactive':
        raise ValueError('Only inactive schools can be deleted. Deactivate the school first.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM users WHERE school_id = ?', (school_id,))
        db_execute(c, 'DELETE FROM schools WHERE id = ?', (school_id,))


def get_platform_stats():
    """Counts for the super admin dashboard."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT status, COUNT(*) AS total FROM schools GROUP BY status')
        schools_by_status = {row['status']: int(row['total']) for row in c.fetchall()}
        db_execute(c, 'SELECT role, COUNT(*) AS total FROM users GROUP BY role')
        users_by_role = {row['role']: int(row['total']) for row in c.fetchall()}
        db_execute(c, 'SELECT COUNT(*) AS total FROM students')
        total_students = int((c.fetchone() or {'total': 0})['total'] or 0)
    return {
        'total_schools': sum(schools_by_status.values()),
        'schools_by_status': schools_by_status,
        'users_by_role': users_by_role,
        'total_students': total_students,
    }
