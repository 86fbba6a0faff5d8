"""Outstanding-fee reminders to parents, with a log of what was sent."""

import logging
from datetime import datetime

from accounts import create_notification_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, safe_float, safe_int, choice

REMINDER_TYPES = {'payment_due', 'installment_due', 'overdue'}
REMINDER_METHODS = {'notification', 'email', 'sms'}

TITLES = {
    'payment_due': 'Fee Payment Reminder',
    'installment_due': 'Installment Due Reminder',
    'overdue': 'Overdue Fees Notice',
}

OUTSTANDING_SELECT = '''SELECT st.id AS student_id, st.first_name, st.last_name, st.admission_number, st.parent_user_id,
                               cl.name AS class_name, COUNT(fp.id) AS payment_count,
                               SUM(fp.remaining_balance) AS outstanding
                        FROM fee_payments fp
                        JOIN students st ON st.id = fp.student_id
                        LEFT JOIN classes cl ON cl.id = st.class_id
                        WHERE fp.school_id = ? AND fp.status IN ('pending', 'partial')'''
OUTSTANDING_GROUP = ' GROUP BY st.id, st.first_name, st.last_name, st.admission_number, st.parent_user_id, cl.name'


def reminder_message(student, amount, reminder_type, currency='GHS'):
    name = f"{student['first_name']} {student['last_name']}"
    if reminder_type == 'overdue':
        return f'Fees of {currency} {amount:,.2f} for {name} are overdue. Please settle them as soon as possible.'
    if reminder_type == 'installment_due':
        return f'An installment for {name} is due. Outstanding balance: {currency} {amount:,.2f}.'
    return f'Outstanding fees for {name}: {currency} {amount:,.2f}.'


def students_with_outstanding_fees(school_id, min_amount=0):
    """One row per student owing more than ``min_amount``, largest debt first."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            OUTSTANDING_SELECT + OUTSTANDING_GROUP + ' HAVING SUM(fp.remaining_balance) > ? ORDER BY outstanding DESC',
            (school_id, safe_float(min_amount, 0)),
        )
        rows = fetch_all(c)
    for row in rows:
        row['outstanding'] = round(float(row['outstanding'] or 0), 2)
    return rows


def send_fee_reminders(school_id, student_ids, reminder_type='payment_due', method='notification', user=None):
    """Remind the parents of the given students about what they owe.

    Students with nothing outstanding are skipped. Every reminder is logged;
    ``notification`` also raises an in-app notification for the linked parent.
    Email and SMS reminders are logged for delivery by the school.
    """
    reminder_type = choice(reminder_type, REMINDER_TYPES, 'reminder type')
    method = choice(method, REMINDER_METHODS, 'reminder method')
    student_ids = [int(sid) for sid in student_ids or []]
    if not student_ids:
        raise ValueError('Select at least one student.')
    user = user or {}
    sent, skipped = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT currency FROM schools WHERE id = ?', (school_id,))
        school = fetch_one(c)
        currency = (school or {}).get('currency') or 'GHS'
        placeholders = ', '.join('?' for _ in student_ids)
        db_execute(c, OUTSTANDING_SELECT + f' AND st.id IN ({placeholders})' + OUTSTANDING_GROUP,
                   (school_id,) + tuple(student_ids))
        owing = {row['student_id']: row for row in fetch_all(c)}
        now = datetime.now()
        for student_id in student_ids:
            student = owing.get(student_id)
            amount = round(float(student['outstanding'] or 0), 2) if student else 0.0
            if amount <= 0:
                skipped.append({'student_id': student_id, 'reason': 'No outstanding fees.'})
                continue
            message = reminder_message(student, amount, reminder_type, currency)
            if method == 'notification':
                if not student.get('parent_user_id'):
                    skipped.append({'student_id': student_id, 'reason': 'No parent account linked.'})
                    continue
                create_notification_with_cursor(c, student['parent_user_id'], TITLES[reminder_type], message, 'warning',
                                                'parent', school_id, f'/parent/children/{student_id}/fees',
                                                'student', student_id)
            db_execute(
                c,
                '''INSERT INTO fee_reminders (school_id, student_id, reminder_type, method, amount_outstanding, message,
                                              status, sent_by, sent_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'sent', ?, ?)''',
                (school_id, student_id, reminder_type, method, amount, message, user.get('id'), now),
            )
            sent.append({'student_id': student_id, 'amount_outstanding': amount})
    logging.info("Fee reminders for school %s: %s sent, %s skipped (%s)", school_id, len(sent), len(skipped), method)
    return {'sent': sent, 'skipped': skipped}


def list_fee_reminders(school_id, student_id=None, limit=100):
    query = '''SELECT fr.*, st.first_name, st.last_name, st.admission_number
               FROM fee_reminders fr JOIN students st ON st.id = fr.student_id
               WHERE fr.school_id = ?'''
    params = [school_id]
    if student_id:
        query += ' AND fr.student_id = ?'
        params.append(student_id)
    query += ' ORDER BY fr.sent_at DESC LIMIT ?'
    params.append(max(1, safe_int(limit, 100)))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)
