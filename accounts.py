"""User accounts, login throttling, audit trail and in-app notifications."""

import logging
from datetime import datetime, timedelta

from werkzeug.security import generate_password_hash, check_password_hash

from db import db_connection, db_execute, fetch_one, fetch_all, choice

ROLES = {'super_admin', 'school_admin', 'teacher', 'student', 'parent'}
USER_STATUSES = {'active', 'inactive', 'suspended'}
LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15
MIN_PASSWORD_LENGTH = 8


def hash_password(password):
    return generate_password_hash(password)


def check_password(hashed, password):
    if not hashed or not password:
        return False
    return check_password_hash(hashed, password)


def normalize_email(value):
    return (value or '').strip().lower()


def user_display_name(user):
    user = user or {}
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip()
    return name or user.get('email') or ''


def get_user_by_email(email):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM users WHERE LOWER(email) = ? LIMIT 1', (normalize_email(email),))
        return fetch_one(c)


def get_user(user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM users WHERE id = ? LIMIT 1', (user_id,))
        return fetch_one(c)


def create_user_with_cursor(c, email, password, role, school_id=None, first_name='', last_name='', phone=''):
    email = normalize_email(email)
    if not email or '@' not in email:
        raise ValueError('A valid email address is required.')
    role = choice(role, ROLES, 'role')
    if role != 'super_admin' and not school_id:
        raise ValueError('Only super admins can exist without a school.')
    if len(password or '') < MIN_PASSWORD_LENGTH:
        raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
    db_execute(c, 'SELECT id FROM users WHERE LOWER(email) = ? LIMIT 1', (email,))
    if c.fetchone():
        raise ValueError(f'Email "{email}" is already used by another account.')
    now = datetime.now()
    db_execute(
        c,
        '''INSERT INTO users (email, password_hash, role, school_id, first_name, last_name, phone, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
           RETURNING id''',
        (email, hash_password(password), role, school_id, (first_name or '').strip(), (last_name or '').strip(), phone or '', now, now),
    )
    return c.fetchone()['id']


def create_user(email, password, role, school_id=None, first_name='', last_name='', phone=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return create_user_with_cursor(c, email, password, role, school_id, first_name, last_name, phone)


def list_users(school_id=None, role=None):
    query = 'SELECT id, email, role, school_id, first_name, last_name, phone, status, last_login_at, created_at FROM users WHERE 1 = 1'
    params = []
    if school_id is not None:
        query += ' AND school_id = ?'
        params.append(school_id)
    if role:
        query += ' AND role = ?'
        params.append(role)
    query += ' ORDER BY created_at DESC'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def update_profile(user_id, first_name=None, last_name=None, phone=None):
    fields = {'first_name': first_name, 'last_name': last_name, 'phone': phone}
    updates = {k: v.strip() for k, v in fields.items() if v is not None}
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'UPDATE users SET {assignments}, updated_at = ? WHERE id = ?',
            tuple(updates.values()) + (datetime.now(), user_id),
        )


def change_password(user_id, old_password, new_password):
    user = get_user(user_id)
    if not user:
        raise LookupError('User not found.')
    if not check_password(user.get('password_hash'), old_password):
        raise ValueError('Current password is incorrect.')
    reset_password(user_id, new_password)


def reset_password(user_id, new_password):
    if len(new_password or '') < MIN_PASSWORD_LENGTH:
        raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?',
            (hash_password(new_password), datetime.now(), user_id),
        )


def set_user_status(user_id, status):
    status = choice(status, USER_STATUSES, 'user status')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE users SET status = ?, updated_at = ? WHERE id = ?', (status, datetime.now(), user_id))


def ensure_super_admin(email, password):
    """Create the platform super admin when it does not exist yet."""
    if get_user_by_email(email):
        return False
    create_user(email, password, 'super_admin', first_name='Super', last_name='Admin')
    logging.info("Super admin account created for %s", normalize_email(email))
    return True


# ==================== LOGIN THROTTLING ====================

def is_login_blocked(endpoint, email, ip_address):
    """Return (blocked, wait_minutes)."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    email = normalize_email(email)
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND email = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, email, ip_address),
        )
        row = c.fetchone()
    if not row:
        return False, 0
    locked_until = row['locked_until']
    if locked_until and locked_until > now:
        remaining = (locked_until - now).total_seconds()
        wait_minutes = max(1, int(remaining // 60) + (1 if remaining % 60 else 0))
        return True, wait_minutes
    return False, 0


def register_failed_login(endpoint, email, ip_address):
    """Track a failed login and lock after max attempts."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    email = normalize_email(email)
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    window_start = now - timedelta(minutes=LOGIN_LOCK_MINUTES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, last_failed_at, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND email = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, email, ip_address),
        )
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO login_attempts
                   (endpoint, email, ip_address, failures, first_failed_at, last_failed_at, locked_until)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (endpoint, email, ip_address, 1, now, now, None),
            )
            return
        if row['locked_until'] and row['locked_until'] > now:
            return
        if not row['last_failed_at'] or row['last_failed_at'] < window_start:
            failures = 1
        else:
            failures = int(row['failures'] or 0) + 1
        locked_until = now + timedelta(minutes=LOGIN_LOCK_MINUTES) if failures >= LOGIN_MAX_ATTEMPTS else None
        db_execute(
            c,
            '''UPDATE login_attempts
               SET failures = ?, last_failed_at = ?, locked_until = ?
               WHERE endpoint = ? AND email = ? AND ip_address = ?''',
            (failures, now, locked_until, endpoint, email, ip_address),
        )
        if locked_until:
            logging.warning("Login locked for %s from %s after %s failures", email, ip_address, failures)


def clear_failed_login(endpoint, email, ip_address):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE endpoint = ? AND email = ? AND ip_address = ?''',
            ((endpoint or '').strip().lower(), normalize_email(email), (ip_address or '').strip()),
        )


def purge_old_login_attempts():
    """Delete stale login-attempt rows to keep table size small."""
    cutoff = datetime.now() - timedelta(days=7)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE (locked_until IS NOT NULL AND locked_until < ?)
                  OR (locked_until IS NULL AND last_failed_at IS NOT NULL AND last_failed_at < ?)''',
            (cutoff, cutoff),
        )


def record_login(user_id, email, success, ip_address='', user_agent=''):
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO login_history (user_id, email, success, ip_address, user_agent, created_at)
               VALUES (?, ?, ?, ?, ?, ?)''',
            (user_id, normalize_email(email), bool(success), ip_address, (user_agent or '')[:255], now),
        )
        if success and user_id:
            db_execute(c, 'UPDATE users SET last_login_at = ? WHERE id = ?', (now, user_id))


def login_history(user_id, limit=20):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT success, ip_address, user_agent, created_at FROM login_history WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
            (user_id, limit),
        )
        return fetch_all(c)


# ==================== AUDIT LOGS ====================

def record_audit_log_with_cursor(c, school_id, user_id, user_name, action, entity='', entity_id='', details='', ip_address=''):
    db_execute(
        c,
        '''INSERT INTO audit_logs (school_id, user_id, user_name, action, entity, entity_id, details, ip_address, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
        (school_id, user_id, user_name or '', action, entity, str(entity_id or ''), details or '', ip_address or '', datetime.now()),
    )


def record_audit_log(school_id, user_id, user_name, action, entity='', entity_id='', details='', ip_address=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        record_audit_log_with_cursor(c, school_id, user_id, user_name, action, entity, entity_id, details, ip_address)


def list_audit_logs(school_id=None, limit=50):
    query = 'SELECT * FROM audit_logs'
    params = []
    if school_id is not None:
        query += ' WHERE school_id = ?'
        params.append(school_id)
    query += ' ORDER BY created_at DESC LIMIT ?'
    params.append(max(1, min(int(limit or 50), 500)))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


# ==================== NOTIFICATIONS ====================

def create_notification_with_cursor(c, recipient_id, title, message, type='info', recipient_role='',
                                    school_id=None, action_url='', related_type=None, related_id=None):
    db_execute(
        c,
        '''INSERT INTO notifications
           (school_id, recipient_id, recipient_role, title, message, type, action_url, related_type, related_id, is_read, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE, ?)''',
        (school_id, recipient_id, recipient_role, title, message, type, action_url, related_type, related_id, datetime.now()),
    )


def create_notification(recipient_id, title, message, type='info', recipient_role='', school_id=None, action_url=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        create_notification_with_cursor(c, recipient_id, title, message, type, recipient_role, school_id, action_url)


def user_ids_with_role_with_cursor(c, role, school_id=None, active_only=True):
    query = 'SELECT id FROM users WHERE role = ?'
    params = [role]
    if school_id is not None:
        query += ' AND school_id = ?'
        params.append(school_id)
    if active_only:
        query += " AND status = 'active'"
    db_execute(c, query, tuple(params))
    return [row['id'] for row in c.fetchall()]


def list_notifications(recipient_id, unread_only=False, limit=50):
    query = 'SELECT * FROM notifications WHERE recipient_id = ?'
    if unread_only:
        query += ' AND is_read = FALSE'
    query += ' ORDER BY created_at DESC LIMIT ?'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, (recipient_id, limit))
        return fetch_all(c)


def mark_notification_read(notification_id, recipient_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE notifications SET is_read = TRUE, read_at = ? WHERE id = ? AND recipient_id = ?',
            (datetime.now(), notification_id, recipient_id),
        )
        if not c.rowcount:
            raise LookupError('Notification not found.')


def mark_all_notifications_read(recipient_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE notifications SET is_read = TRUE, read_at = ? WHERE recipient_id = ? AND is_read = FALSE',
            (datetime.now(), recipient_id),
        )
        return int(c.rowcount or 0)
