"""
Fee payment plans.

A plan splits a student's fee into installments due monthly, quarterly or on
custom dates. Paying an installment also records a regular fee payment, so
receipts and fee statements see the money. A plan completes once every
installment is paid.
"""

import calendar
import logging
from datetime import date, datetime, timedelta

from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, safe_float, safe_int, choice
from fees import PAYMENT_METHODS, record_payment_with_cursor

FREQUENCIES = {'monthly', 'quarterly', 'custom'}
PLAN_STATUSES = {'active', 'completed', 'cancelled'}
MAX_INSTALLMENTS = 24


def add_months(start, months):
    """Same day N months later, clamped to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(start.day, calendar.monthrange(year, month)[1]))


def split_amount(total, count):
    """Equal installments in cents; the last one absorbs the rounding."""
    cents = int(round(total * 100))
    base = cents // count
    amounts = [base / 100] * count
    amounts[-1] = (cents - base * (count - 1)) / 100
    return amounts


def installment_schedule(total_amount, installment_count, frequency, start_date, custom_due_dates=None):
    total = safe_float(total_amount, 0)
    if total <= 0:
        raise ValueError('Plan total must be greater than zero.')
    count = safe_int(installment_count, 0)
    if not 1 <= count <= MAX_INSTALLMENTS:
        raise ValueError(f'Number of installments must be between 1 and {MAX_INSTALLMENTS}.')
    frequency = choice(frequency, FREQUENCIES, 'frequency')
    start = parse_date(start_date)
    if not start:
        raise ValueError('Start date is required.')
    if frequency == 'custom':
        due_dates = [parse_date(value) for value in custom_due_dates or []]
        if len(due_dates) != count or not all(due_dates):
            raise ValueError('Custom plans need one due date per installment.')
        if due_dates != sorted(due_dates):
            raise ValueError('Custom due dates must be in order.')
    else:
        step = 1 if frequency == 'monthly' else 3
        due_dates = [add_months(start, i * step) for i in range(count)]
    return [
        {'installment_number': number, 'amount_due': amount, 'due_date': due_date}
        for number, (amount, due_date) in enumerate(zip(split_amount(total, count), due_dates), 1)
    ]


def installment_status(amount_due, amount_paid, due_date, today=None):
    due, paid = float(amount_due or 0), float(amount_paid or 0)
    if paid >= due:
        return 'paid'
    if parse_date(due_date) < (today or date.today()):
        return 'overdue'
    return 'partial' if paid > 0 else 'pending'


def create_payment_plan(school_id, student_id, name, total_amount, installment_count, frequency, start_date,
                        custom_due_dates=None, category_id=None, notes='', user=None):
    user = user or {}
    name = (name or '').strip()
    if not name:
        raise ValueError('Plan name is required.')
    schedule = installment_schedule(total_amount, installment_count, frequency, start_date, custom_due_dates)
    now = datetime.now()
    plan_code = generate_code('PP', 6)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM students WHERE id = ? AND school_id = ?', (student_id, school_id))
        if not c.fetchone():
            raise LookupError('Student not found.')
        db_execute(
            c,
            '''INSERT INTO payment_plans (school_id, plan_code, student_id, category_id, name, total_amount, installment_count,
                                          frequency, start_date, status, notes, created_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?)
               RETURNING id''',
            (school_id, plan_code, student_id, category_id, name, safe_float(total_amount, 0), len(schedule),
             frequency.strip().lower(), parse_date(start_date), notes or '', user.get('id'), now, now),
        )
        plan_id = c.fetchone()['id']
        for item in schedule:
            db_execute(
                c,
                '''INSERT INTO payment_installments (plan_id, installment_number, amount_due, amount_paid, due_date, status, updated_at)
                   VALUES (?, ?, ?, 0, ?, 'pending', ?)''',
                (plan_id, item['installment_number'], item['amount_due'], item['due_date'], now),
            )
    logging.info("Payment plan %s created for student %s (%s installments)", plan_code, student_id, len(schedule))
    return {'plan_id': plan_id, 'plan_code': plan_code, 'installments': schedule}


PLAN_SELECT = '''SELECT pp.*, st.first_name, st.last_name, st.admission_number, fc.name AS category_name,
                        (SELECT COALESCE(SUM(pi.amount_paid), 0) FROM payment_installments pi WHERE pi.plan_id = pp.id) AS amount_paid
                 FROM payment_plans pp
                 JOIN students st ON st.id = pp.student_id
                 LEFT JOIN fee_categories fc ON fc.id = pp.category_id'''


def list_payment_plans(school_id, student_id=None, status=None):
    query = PLAN_SELECT + ' WHERE pp.school_id = ?'
    params = [school_id]
    if student_id:
        query += ' AND pp.student_id = ?'
        params.append(student_id)
    if status:
        query += ' AND pp.status = ?'
        params.append(choice(status, PLAN_STATUSES, 'plan status'))
    query += ' ORDER BY pp.created_at DESC'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_payment_plan(school_id, plan_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, PLAN_SELECT + ' WHERE pp.id = ? AND pp.school_id = ?', (plan_id, school_id))
        plan = fetch_one(c)
        if not plan:
            return None
        db_execute(c, 'SELECT * FROM payment_installments WHERE plan_id = ? ORDER BY installment_number', (plan_id,))
        plan['installments'] = fetch_all(c)
    return plan


def record_installment_payment(school_id, installment_id, amount, payment_method='cash', user=None):
    """Pay (part of) an installment and book the money as a fee payment."""
    amount = safe_float(amount, 0)
    if amount <= 0:
        raise ValueError('Payment amount must be greater than zero.')
    payment_method = choice(payment_method, PAYMENT_METHODS, 'payment method')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT pi.*, pp.school_id, pp.student_id, pp.category_id, pp.plan_code, pp.status AS plan_status
               FROM payment_installments pi JOIN payment_plans pp ON pp.id = pi.plan_id
               WHERE pi.id = ?''',
            (installment_id,),
        )
        installment = fetch_one(c)
        if not installment or int(installment['school_id']) != int(school_id):
            raise LookupError('Installment not found.')
        if installment['plan_status'] != 'active':
            raise ValueError(f"Payment plan is {installment['plan_status']}.")
        outstanding = round(float(installment['amount_due']) - float(installment['amount_paid'] or 0), 2)
        if outstanding <= 0:
            raise ValueError('This installment is already paid.')
        if amount > outstanding:
            raise ValueError(f'Payment exceeds the outstanding installment balance of {outstanding:.2f}.')
        paid = round(float(installment['amount_paid'] or 0) + amount, 2)
        status = installment_status(installment['amount_due'], paid, installment['due_date'])
        db_execute(
            c,
            '''UPDATE payment_installments SET amount_paid = ?, status = ?, payment_method = ?, paid_at = ?, updated_at = ?
               WHERE id = ?''',
            (paid, status, payment_method, now if status == 'paid' else None, now, installment_id),
        )
        receipt = record_payment_with_cursor(
            c, school_id, installment['student_id'], outstanding, amount, payment_method, installment['category_id'],
            notes=f"{installment['plan_code']} installment {installment['installment_number']}", user=user,
        )
        db_execute(c, "SELECT COUNT(*) AS total FROM payment_installments WHERE plan_id = ? AND status <> 'paid'",
                   (installment['plan_id'],))
        plan_status = 'completed' if not int(c.fetchone()['total'] or 0) else 'active'
        if plan_status == 'completed':
            db_execute(c, "UPDATE payment_plans SET status = 'completed', updated_at = ? WHERE id = ?", (now, installment['plan_id']))
    if plan_status == 'completed':
        logging.info("Payment plan %s completed", installment['plan_code'])
    return {'installment_status': status, 'plan_status': plan_status, 'receipt_number': receipt['receipt_number']}


def cancel_payment_plan(school_id, plan_id, reason=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, status FROM payment_plans WHERE id = ? AND school_id = ?', (plan_id, school_id))
        plan = fetch_one(c)
        if not plan:
            raise LookupError('Payment plan not found.')
        if plan['status'] != 'active':
            raise ValueError(f"Cannot cancel a {plan['status']} payment plan.")
        db_execute(c, "UPDATE payment_plans SET status = 'cancelled', cancelled_reason = ?, updated_at = ? WHERE id = ?",
                   ((reason or '').strip(), datetime.now(), plan_id))


def mark_overdue_installments(school_id=None, today=None):
    """Flag unpaid installments of active plans whose due date has passed."""
    today = today or date.today()
    school_sql = ' AND school_id = ?' if school_id else ''
    params = (datetime.now(), today) + ((school_id,) if school_id else ())
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''UPDATE payment_installments SET status = 'overdue', updated_at = ?
                WHERE status IN ('pending', 'partial') AND due_date < ?
                  AND plan_id IN (SELECT id FROM payment_plans WHERE status = 'active'{school_sql})''',
            params,
        )
        updated = c.rowcount
    if updated:
        logging.info("Marked %s installments overdue", updated)
    return updated


def upcoming_installments(school_id, days_ahead=7, today=None):
    """Unpaid installments of active plans due within the next ``days_ahead`` days."""
    today = today or date.today()
    days_ahead = safe_int(days_ahead, 7)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT pi.*, pp.plan_code, pp.student_id, st.first_name, st.last_name, st.admission_number
               FROM payment_installments pi
               JOIN payment_plans pp ON pp.id = pi.plan_id
               JOIN students st ON st.id = pp.student_id
               WHERE pp.school_id = ? AND pp.status = 'active' AND pi.status IN ('pending', 'partial')
                 AND pi.due_date BETWEEN ? AND ?
               ORDER BY pi.due_date, st.last_name''',
            (school_id, today, today + timedelta(days=days_ahead)),
        )
        return fetch_all(c)
