"""Subscription plans, plan requests, trials and subscription payments."""

import logging
import math
import os
import time
from datetime import date, datetime, timedelta

from accounts import create_notification_with_cursor, record_audit_log_with_cursor, user_ids_with_role_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, dump_json, load_json, parse_date, safe_float, safe_int
from tenancy import update_school_plan_with_cursor, update_school_status_with_cursor

TRIAL_DAYS = safe_int(os.environ.get('TRIAL_DAYS', 30), 30)
TRIAL_GRACE_DAYS = safe_int(os.environ.get('TRIAL_GRACE_DAYS', 3), 3)
TRIAL_WARNING_DAYS = (7, 3, 1)
REQUEST_STATUSES = {'pending_payment', 'pending_approval', 'approved', 'rejected', 'expired', 'converted'}
PLAN_RESOURCES = {'students': 'max_students', 'teachers': 'max_teachers', 'classes': 'max_classes'}

DEFAULT_PLANS = [
    {
        'name': 'free', 'display_name': 'Free Plan', 'description': 'Perfect for getting started with basic features',
        'price': 0, 'max_students': 50, 'max_teachers': 5, 'max_classes': 3, 'is_popular': False,
        'features': ['Up to 50 students', 'Up to 5 teachers', 'Up to 3 classes', 'Basic reporting', 'Email support'],
    },
    {
        'name': 'basic', 'display_name': 'Basic Plan', 'description': 'Great for small schools and institutions',
        'price': 150, 'max_students': 200, 'max_teachers': 20, 'max_classes': 10, 'is_popular': False,
        'features': ['Up to 200 students', 'Up to 20 teachers', 'Up to 10 classes', 'Advanced reporting',
                     'Student & teacher management', 'Email support'],
    },
    {
        'name': 'premium', 'display_name': 'Premium Plan', 'description': 'Most popular for growing schools',
        'price': 500, 'max_students': 1000, 'max_teachers': 50, 'max_classes': None, 'is_popular': True,
        'features': ['Up to 1000 students', 'Up to 50 teachers', 'Unlimited classes', 'Advanced analytics',
                     'Custom reports', 'Parent portal access', 'Priority support', 'Data export'],
    },
    {
        'name': 'enterprise', 'display_name': 'Enterprise Plan', 'description': 'For large institutions with advanced needs',
        'price': 1500, 'max_students': None, 'max_teachers': None, 'max_classes': None, 'is_popular': False,
        'features': ['Unlimited students', 'Unlimited teachers', 'Unlimited classes', 'Advanced analytics & dashboards',
                     'Custom integrations', 'API access', 'Multi-campus support', 'Dedicated account manager'],
    },
]


def _plural(n, word='day'):
    return f"{n} {word}{'' if n == 1 else 's'}"


def days_until(end, now):
    """Whole days left until ``end``, rounded up like a calendar countdown."""
    return math.ceil((end - now).total_seconds() / 86400)


def trial_action(trial_end, now, grace_days=TRIAL_GRACE_DAYS):
    """Decide what a trial needs today.

    Returns one of ('warning', days_left), ('expired', grace_days),
    ('grace', days_left_in_grace), ('suspend', None) or (None, None).
    """
    left = days_until(trial_end, now)
    if left in TRIAL_WARNING_DAYS:
        return 'warning', left
    if left == 0:
        return 'expired', grace_days
    if -grace_days <= left < 0:
        remaining = grace_days + left
        return ('grace', remaining) if remaining > 0 else (None, None)
    if left < -grace_days:
        return 'suspend', None
    return None, None


# ==================== PLANS ====================

def _plan_row(row):
    if row:
        row['features'] = load_json(row.get('features'), [])
    return row


def seed_default_plans():
    """Insert the default plans once; returns how many were created."""
    created = 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM subscription_plans')
        if int(c.fetchone()['total'] or 0):
            return 0
        for plan in DEFAULT_PLANS:
            db_execute(
                c,
                '''INSERT INTO subscription_plans (name, display_name, description, price, currency, billing_period, features,
                                                   max_students, max_teachers, max_classes, is_active, is_popular, created_at)
                   VALUES (?, ?, ?, ?, 'GHS', 'monthly', ?, ?, ?, ?, TRUE, ?, ?)''',
                (plan['name'], plan['display_name'], plan['description'], plan['price'], dump_json(plan['features']),
                 plan['max_students'], plan['max_teachers'], plan['max_classes'], plan['is_popular'], datetime.now()),
            )
            created += 1
    logging.info("Seeded %s default subscription plans", created)
    return created


def list_plans(active_only=True):
    query = 'SELECT * FROM subscription_plans'
    if active_only:
        query += ' WHERE is_active = TRUE'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY price')
        return [_plan_row(row) for row in fetch_all(c)]


def get_plan_by_name(name):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM subscription_plans WHERE name = ?', ((name or '').strip().lower(),))
        return _plan_row(fetch_one(c))


def create_plan(name, display_name, price, features=None, max_students=None, max_teachers=None, max_classes=None,
                billing_period='monthly', description='', is_popular=False):
    name = (name or '').strip().lower()
    if not name or not (display_name or '').strip():
        raise ValueError('Plan name and display name are required.')
    price = safe_float(price, -1)
    if price < 0:
        raise ValueError('Plan price cannot be negative.')
    if get_plan_by_name(name):
        raise ValueError(f'Plan "{name}" already exists.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO subscription_plans (name, display_name, description, price, billing_period, features,
                                               max_students, max_teachers, max_classes, is_active, is_popular, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?, ?)
               RETURNING id''',
            (name, display_name.strip(), description, price, billing_period, dump_json(features or []),
             max_students, max_teachers, max_classes, bool(is_popular), datetime.now()),
        )
        return c.fetchone()['id']


def update_plan(plan_id, **fields):
    allowed = ('display_name', 'description', 'price', 'billing_period', 'features', 'max_students', 'max_teachers',
               'max_classes', 'is_active', 'is_popular')
    updates = {k: v for k, v in fields.items() if k in allowed}
    if 'features' in updates:
        updates['features'] = dump_json(updates['features'] or [])
    if 'price' in updates and safe_float(updates['price'], -1) < 0:
        raise ValueError('Plan price cannot be negative.')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE subscription_plans SET {assignments} WHERE id = ?', tuple(updates.values()) + (plan_id,))
        if not c.rowcount:
            raise LookupError('Plan not found.')


def check_plan_limit(school_id, resource):
    """Raise when the school's plan has no room for another student, teacher or class."""
    column = PLAN_RESOURCES.get(resource)
    if not column:
        raise ValueError(f'Unknown plan resource "{resource}".')
    count_sql = {
        'students': "SELECT COUNT(*) AS total FROM students WHERE school_id = ? AND status = 'active'",
        'teachers': "SELECT COUNT(*) AS total FROM teachers WHERE school_id = ? AND status <> 'inactive'",
        'classes': "SELECT COUNT(*) AS total FROM classes WHERE school_id = ? AND status = 'active'",
    }[resource]
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT p.{column} AS max_allowed, p.display_name FROM schools s
                JOIN subscription_plans p ON p.name = s.subscription_plan
                WHERE s.id = ?''',
            (school_id,),
        )
        plan = c.fetchone()
        if not plan or plan['max_allowed'] is None:
            return
        db_execute(c, count_sql, (school_id,))
        used = int(c.fetchone()['total'] or 0)
    if used >= int(plan['max_allowed']):
        raise PermissionError(f"{plan['display_name']} allows at most {plan['max_allowed']} {resource}. Upgrade to add more.")


# ==================== REQUESTS ====================

def request_subscription(school_id, admin_user_id, plan_name, is_trial=False):
    """Trials start immediately; paid plans wait for payment proof and approval."""
    plan = get_plan_by_name(plan_name)
    if not plan or not plan.get('is_active'):
        raise LookupError('Subscription plan not found.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            "SELECT id FROM subscription_requests WHERE school_id = ? AND status IN ('pending_payment', 'pending_approval')",
            (school_id,),
        )
        if c.fetchone():
            raise ValueError('This school already has a pending subscription request.')
        if is_trial:
            db_execute(c, 'SELECT id FROM subscription_requests WHERE school_id = ? AND is_trial = TRUE', (school_id,))
            if c.fetchone():
                raise ValueError('This school has already used its free trial.')
            trial_end = now + timedelta(days=TRIAL_DAYS)
            db_execute(
                c,
                '''INSERT INTO subscription_requests (school_id, admin_user_id, plan_id, plan_name, is_trial, status,
                                                      trial_start, trial_end, reviewed_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, TRUE, 'approved', ?, ?, ?, ?, ?)
                   RETURNING id''',
                (school_id, admin_user_id, plan['id'], plan['name'], now, trial_end, now, now, now),
            )
            request_id = c.fetchone()['id']
            update_school_plan_with_cursor(c, school_id, plan['name'])
            update_school_status_with_cursor(c, school_id, 'active')
            create_notification_with_cursor(
                c, admin_user_id, 'Trial Started',
                f"Your {TRIAL_DAYS}-day trial of the {plan['display_name']} has started. It ends on {trial_end:%Y-%m-%d}.",
                'success', 'school_admin', school_id,
            )
            return {'request_id': request_id, 'status': 'approved', 'trial_end': trial_end}
        db_execute(
            c,
            '''INSERT INTO subscription_requests (school_id, admin_user_id, plan_id, plan_name, is_trial, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, FALSE, 'pending_payment', ?, ?)
               RETURNING id''',
            (school_id, admin_user_id, plan['id'], plan['name'], now, now),
        )
        request_id = c.fetchone()['id']
        db_execute(
            c,
            '''INSERT INTO subscription_payments (school_id, request_id, amount, currency, due_date, status, created_at)
               VALUES (?, ?, ?, ?, ?, 'pending', ?)''',
            (school_id, request_id, plan['price'], plan.get('currency') or 'GHS', (now + timedelta(days=7)).date(), now),
        )
    return {'request_id': request_id, 'status': 'pending_payment'}


def _load_request_with_cursor(c, request_id):
    db_execute(c, 'SELECT * FROM subscription_requests WHERE id = ?', (request_id,))
    row = fetch_one(c)
    if not row:
        raise LookupError('Subscription request not found.')
    return row


def submit_payment_proof(school_id, request_id, reference, proof=''):
    reference = (reference or '').strip()
    if not reference:
        raise ValueError('Payment reference is required.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        request_row = _load_request_with_cursor(c, request_id)
        if int(request_row['school_id']) != int(school_id):
            raise PermissionError('You do not belong to this school.')
        if request_row['status'] != 'pending_payment':
            raise ValueError('Payment proof can only be submitted for requests awaiting payment.')
        db_execute(
            c,
            "UPDATE subscription_requests SET status = 'pending_approval', payment_reference = ?, payment_proof = ?, updated_at = ? WHERE id = ?",
            (reference, proof or '', datetime.now(), request_id),
        )
        db_execute(c, 'UPDATE subscription_payments SET reference = ? WHERE request_id = ?', (reference, request_id))
        for admin_id in user_ids_with_role_with_cursor(c, 'super_admin'):
            create_notification_with_cursor(c, admin_id, 'Subscription Payment Submitted',
                                            f"School {school_id} submitted payment {reference} for the {request_row['plan_name']} plan.",
                                            'info', 'super_admin')


def approve_subscription_request(request_id, reviewer=None):
    reviewer = reviewer or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        request_row = _load_request_with_cursor(c, request_id)
        if request_row['status'] not in ('pending_payment', 'pending_approval'):
            raise ValueError(f"Request is already {request_row['status']}.")
        db_execute(
            c,
            "UPDATE subscription_requests SET status = 'approved', reviewed_by = ?, reviewed_at = ?, updated_at = ? WHERE id = ?",
            (reviewer.get('id'), now, now, request_id),
        )
        db_execute(c, "UPDATE subscription_payments SET status = 'paid', paid_at = ? WHERE request_id = ? AND status <> 'paid'",
                   (now, request_id))
        if not request_row.get('is_trial'):
            # A paid plan replaces any running trial.
            db_execute(
                c,
                '''UPDATE subscription_requests SET status = 'converted', updated_at = ?
                   WHERE school_id = ? AND is_trial = TRUE AND status = 'approved' AND id <> ?''',
                (now, request_row['school_id'], request_id),
            )
        update_school_plan_with_cursor(c, request_row['school_id'], request_row['plan_name'])
        update_school_status_with_cursor(c, request_row['school_id'], 'active')
        if request_row['admin_user_id']:
            db_execute(c, "UPDATE users SET status = 'active' WHERE id = ?", (request_row['admin_user_id'],))
            create_notification_with_cursor(c, request_row['admin_user_id'], 'Subscription Approved',
                                            f"Your {request_row['plan_name']} subscription is now active.",
                                            'success', 'school_admin', request_row['school_id'])
        record_audit_log_with_cursor(c, request_row['school_id'], reviewer.get('id'), reviewer.get('name'),
                                     'approve_subscription', 'subscription_requests', request_id, request_row['plan_name'])


def reject_subscription_request(request_id, reason, reviewer=None):
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A rejection reason is required.')
    reviewer = reviewer or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        request_row = _load_request_with_cursor(c, request_id)
        if request_row['status'] not in ('pending_payment', 'pending_approval'):
            raise ValueError(f"Request is already {request_row['status']}.")
        db_execute(
            c,
            "UPDATE subscription_requests SET status = 'rejected', rejection_reason = ?, reviewed_by = ?, reviewed_at = ?, updated_at = ? WHERE id = ?",
            (reason, reviewer.get('id'), now, now, request_id),
        )
        db_execute(c, "UPDATE subscription_payments SET status = 'cancelled' WHERE request_id = ? AND status = 'pending'", (request_id,))
        if request_row['admin_user_id']:
            create_notification_with_cursor(c, request_row['admin_user_id'], 'Subscription Rejected',
                                            f'Your subscription request was rejected: {reason}', 'error', 'school_admin',
                                            request_row['school_id'])


def list_subscription_requests(status=None, school_id=None):
    query = '''SELECT sr.*, s.name AS school_name FROM subscription_requests sr
               JOIN schools s ON s.id = sr.school_id WHERE 1 = 1'''
    params = []
    if status:
        query += ' AND sr.status = ?'
        params.append(status)
    if school_id:
        query += ' AND sr.school_id = ?'
        params.append(school_id)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY sr.created_at DESC', tuple(params))
        return fetch_all(c)


# ==================== TRIALS ====================

def check_trials(now=None, triggered_by=None):
    """Send trial warnings and grace notices, and suspend schools past the grace period."""
    started = time.monotonic()
    now = now or datetime.now()
    today = now.date()
    summary = {'checked': 0, 'warnings_sent': 0, 'grace_notices': 0, 'suspended': 0}
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT sr.*, s.name AS school_name FROM subscription_requests sr JOIN schools s ON s.id = sr.school_id
               WHERE sr.is_trial = TRUE AND sr.status = 'approved' AND sr.trial_end IS NOT NULL
                 AND NOT EXISTS (SELECT 1 FROM subscription_requests paid WHERE paid.school_id = sr.school_id
                                 AND paid.is_trial = FALSE AND paid.status = 'approved')''',
        )
        trials = fetch_all(c)
        super_admins = user_ids_with_role_with_cursor(c, 'super_admin')
        for trial in trials:
            summary['checked'] += 1
            action, days = trial_action(trial['trial_end'], now)
            admin_id = trial['admin_user_id']
            school = trial['school_name']
            if action == 'warning':
                if trial.get('last_warning_days') == days:
                    continue
                if admin_id:
                    create_notification_with_cursor(c, admin_id, f'Trial Expiring Soon - {_plural(days)} Left',
                                                    f'Your trial will expire in {_plural(days)}. Please purchase a subscription to continue without interruption.',
                                                    'warning', 'school_admin', trial['school_id'])
                for sa in super_admins:
                    create_notification_with_cursor(c, sa, 'Trial Expiring', f'{school} has {_plural(days)} left on its trial.', 'info', 'super_admin')
                db_execute(c, 'UPDATE subscription_requests SET last_warning_days = ? WHERE id = ?', (days, trial['id']))
                summary['warnings_sent'] += 1
            elif action in ('expired', 'grace'):
                if trial.get('last_grace_notice') == today:
                    continue
                if action == 'expired':
                    title = 'Trial Expired - Grace Period Active'
                    message = f'Your trial has expired. You have a {_plural(days)} grace period to purchase a subscription before your account is suspended.'
                    for sa in super_admins:
                        create_notification_with_cursor(c, sa, 'Trial Expired', f'{school} trial has expired. Grace period: {_plural(days)}.', 'warning', 'super_admin')
                else:
                    title = f'Grace Period Ending - {_plural(days)} Left'
                    message = f'You have {_plural(days)} left before your account is suspended. Please purchase a subscription to maintain access.'
                if admin_id:
                    create_notification_with_cursor(c, admin_id, title, message, 'warning', 'school_admin', trial['school_id'])
                db_execute(c, 'UPDATE subscription_requests SET last_grace_notice = ? WHERE id = ?', (today, trial['id']))
                summary['grace_notices'] += 1
            elif action == 'suspend':
                db_execute(c, "UPDATE subscription_requests SET status = 'expired', updated_at = ? WHERE id = ?", (now, trial['id']))
                update_school_status_with_cursor(c, trial['school_id'], 'suspended')
                if admin_id:
                    db_execute(c, "UPDATE users SET status = 'suspended' WHERE id = ?", (admin_id,))
                    create_notification_with_cursor(c, admin_id, 'Account Suspended',
                                                    'Your account has been suspended because your trial expired. Purchase a subscription to reactivate it.',
                                                    'error', 'school_admin', trial['school_id'])
                for sa in super_admins:
                    create_notification_with_cursor(c, sa, 'School Suspended', f'{school} was suspended after its trial expired.', 'warning', 'super_admin')
                summary['suspended'] += 1
        summary['execution_ms'] = int((time.monotonic() - started) * 1000)
        if triggered_by:
            record_audit_log_with_cursor(c, None, triggered_by.get('id'), triggered_by.get('name'), 'trial_check', 'subscription_requests', '',
                                         f"checked={summary['checked']} warnings={summary['warnings_sent']} "
                                         f"grace={summary['grace_notices']} suspended={summary['suspended']}")
    logging.info("Trial check: %s", summary)
    return summary


# ==================== SUBSCRIPTION PAYMENTS ====================

def record_subscription_payment(school_id, amount, due_date=None, reference='', request_id=None):
    amount = safe_float(amount, -1)
    if amount < 0:
        raise ValueError('Amount cannot be negative.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO subscription_payments (school_id, request_id, amount, due_date, reference, status, created_at)
               VALUES (?, ?, ?, ?, ?, 'pending', ?)
               RETURNING id''',
            (school_id, request_id, amount, parse_date(due_date), reference, datetime.now()),
        )
        return c.fetchone()['id']


def mark_subscription_payment_paid(payment_id, reference=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            "UPDATE subscription_payments SET status = 'paid', paid_at = ?, reference = COALESCE(NULLIF(?, ''), reference) WHERE id = ?",
            (datetime.now(), reference, payment_id),
        )
        if not c.rowcount:
            raise LookupError('Payment not found.')


def mark_overdue_subscription_payments(today=None):
    today = parse_date(today) or date.today()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "UPDATE subscription_payments SET status = 'overdue' WHERE status = 'pending' AND due_date < ?", (today,))
        return int(c.rowcount or 0)


def subscription_payment_stats():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT status, COUNT(*) AS total, COALESCE(SUM(amount), 0) AS amount FROM subscription_payments GROUP BY status')
        rows = fetch_all(c)
    by_status = {row['status']: {'count': int(row['total']), 'amount': float(row['amount'])} for row in rows}
    return {
        'revenue': by_status.get('paid', {}).get('amount', 0.0),
        'pending': by_status.get('pending', {}).get('amount', 0.0),
        'overdue': by_status.get('overdue', {}).get('amount', 0.0),
        'by_status': by_status,
    }
