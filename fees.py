"""Fee categories, structures, discounts and payments."""

import logging
from datetime import date, datetime

from db import (
    db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, dump_json, load_json, choice,
    safe_float,
)

PAYMENT_METHODS = {'cash', 'bank_transfer', 'mobile_money', 'check', 'other'}
DISCOUNT_TYPES = {'percentage', 'fixed'}
DISCOUNT_REASONS = {'scholarship', 'sibling', 'merit', 'need_based', 'staff', 'other'}
STATUSES = {'active', 'inactive'}


def payment_status(amount_due, amount_paid):
    due = safe_float(amount_due, 0)
    paid = safe_float(amount_paid, 0)
    if paid >= due:
        return 'paid'
    if paid > 0:
        return 'partial'
    return 'pending'


def remaining_balance(amount_due, amount_paid):
    return round(max(0.0, safe_float(amount_due, 0) - safe_float(amount_paid, 0)), 2)


def _amounts(amount_due, amount_paid):
    due = safe_float(amount_due, -1)
    paid = safe_float(amount_paid, -1)
    if due < 0 or paid < 0:
        raise ValueError('Amounts must be zero or more.')
    return due, paid


def calculate_discount(discount, amount, category_id=None, on_date=None):
    """Return {'discount_amount', 'final_amount'} for a discount row applied to an amount."""
    amount = safe_float(amount, 0)
    none = {'discount_amount': 0.0, 'final_amount': amount}
    if not discount or discount.get('status') != 'active':
        return none
    on_date = parse_date(on_date) or date.today()
    start, end = parse_date(discount.get('start_date')), parse_date(discount.get('end_date'))
    if (start and on_date < start) or (end and on_date > end):
        return none
    if discount.get('applicable_to') == 'specific':
        category_ids = [int(x) for x in load_json(discount.get('category_ids'), [])]
        if category_id is None or int(category_id) not in category_ids:
            return none
    value = safe_float(discount.get('value'), 0)
    if discount.get('discount_type') == 'percentage':
        discount_amount = amount * min(value, 100) / 100
    else:
        discount_amount = value
    discount_amount = round(min(max(discount_amount, 0), amount), 2)
    return {'discount_amount': discount_amount, 'final_amount': round(max(0.0, amount - discount_amount), 2)}


# ==================== CATEGORIES ====================

def create_fee_category_with_cursor(c, school_id, name, description=''):
    name = (name or '').strip()
    if not name:
        raise ValueError('Fee category name is required.')
    db_execute(c, 'SELECT id FROM fee_categories WHERE school_id = ? AND LOWER(name) = LOWER(?)', (school_id, name))
    if c.fetchone():
        raise ValueError(f'Fee category "{name}" already exists.')
    db_execute(
        c,
        '''INSERT INTO fee_categories (school_id, category_code, name, description, status, created_at)
           VALUES (?, ?, ?, ?, 'active', ?)
           RETURNING id''',
        (school_id, generate_code('FC', 6), name, description or '', datetime.now()),
    )
    return c.fetchone()['id']


def create_fee_category(school_id, name, description=''):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return create_fee_category_with_cursor(c, school_id, name, description)


def bulk_create_fee_categories(school_id, rows):
    created, errors = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for index, row in enumerate(rows or [], 1):
            try:
                created.append(create_fee_category_with_cursor(c, school_id, row.get('name'), row.get('description', '')))
            except ValueError as exc:
                errors.append({'row': index, 'error': str(exc)})
    return {'created': created, 'errors': errors}


def list_fee_categories(school_id, status=None):
    query = 'SELECT * FROM fee_categories WHERE school_id = ?'
    params = [school_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY name', tuple(params))
        return fetch_all(c)


def update_fee_category(school_id, category_id, name=None, description=None, status=None):
    updates = {}
    if name is not None:
        if not name.strip():
            raise ValueError('Fee category name is required.')
        updates['name'] = name.strip()
    if description is not None:
        updates['description'] = description
    if status is not None:
        updates['status'] = choice(status, STATUSES, 'category status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE fee_categories SET {assignments} WHERE id = ? AND school_id = ?', tuple(updates.values()) + (category_id, school_id))
        if not c.rowcount:
            raise LookupError('Fee category not found.')


def delete_fee_category(school_id, category_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM fee_payments WHERE category_id = ?', (category_id,))
        if int(c.fetchone()['total'] or 0):
            raise ValueError('Category has payments. Deactivate it instead.')
        db_execute(c, 'DELETE FROM fee_categories WHERE id = ? AND school_id = ?', (category_id, school_id))
        if not c.rowcount:
            raise LookupError('Fee category not found.')


def fee_category_stats(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT fc.id, fc.name, COUNT(fp.id) AS payments, COALESCE(SUM(fp.amount_paid), 0) AS collected
               FROM fee_categories fc LEFT JOIN fee_payments fp ON fp.category_id = fc.id
               WHERE fc.school_id = ?
               GROUP BY fc.id, fc.name ORDER BY fc.name''',
            (school_id,),
        )
        return fetch_all(c)


# ==================== STRUCTURES ====================

def normalize_items(items):
    cleaned = []
    for item in items or []:
        amount = safe_float(item.get('amount'), -1)
        if amount < 0:
            raise ValueError('Fee item amounts must be zero or more.')
        cleaned.append({
            'category_id': item.get('category_id'),
            'category_name': (item.get('category_name') or '').strip(),
            'amount': round(amount, 2),
        })
    if not cleaned:
        raise ValueError('A fee structure needs at least one item.')
    return cleaned


def _structure_row(row):
    if row:
        row['items'] = load_json(row.get('items'), [])
    return row


def create_fee_structure(school_id, name, items, class_id=None, department=None, academic_year_id=None,
                         term_id=None, due_date=None):
    name = (name or '').strip()
    if not name:
        raise ValueError('Fee structure name is required.')
    if not class_id and not department:
        raise ValueError('Choose a class or a department for the fee structure.')
    items = normalize_items(items)
    total = round(sum(item['amount'] for item in items), 2)
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO fee_structures (school_id, structure_code, name, class_id, department, academic_year_id, term_id,
                                           items, total_amount, due_date, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_id, generate_code('FS', 6), name, class_id, department, academic_year_id, term_id,
             dump_json(items), total, parse_date(due_date), now, now),
        )
        return {'structure_id': c.fetchone()['id'], 'total_amount': total}


def list_fee_structures(school_id, class_id=None, term_id=None):
    query = 'SELECT * FROM fee_structures WHERE school_id = ?'
    params = [school_id]
    if class_id:
        query += ' AND class_id = ?'
        params.append(class_id)
    if term_id:
        query += ' AND term_id = ?'
        params.append(term_id)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY created_at DESC', tuple(params))
        return [_structure_row(row) for row in fetch_all(c)]


def update_fee_structure(school_id, structure_id, name=None, items=None, due_date=None, status=None):
    updates = {}
    if name is not None:
        updates['name'] = name.strip()
    if items is not None:
        items = normalize_items(items)
        updates['items'] = dump_json(items)
        updates['total_amount'] = round(sum(item['amount'] for item in items), 2)
    if due_date is not None:
        updates['due_date'] = parse_date(due_date)
    if status is not None:
        updates['status'] = choice(status, STATUSES, 'structure status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE fee_structures SET {assignments}, updated_at = ? WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (datetime.now(), structure_id, school_id))
        if not c.rowcount:
            raise LookupError('Fee structure not found.')


def delete_fee_structure(school_id, structure_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM fee_structures WHERE id = ? AND school_id = ?', (structure_id, school_id))
        if not c.rowcount:
            raise LookupError('Fee structure not found.')


def structure_for_class_with_cursor(c, school_id, class_id, term_id=None):
    """Class-specific active structure first, else the class department's."""
    term_sql = ' AND (term_id = ? OR term_id IS NULL)' if term_id else ''
    term_params = (term_id,) if term_id else ()
    db_execute(
        c,
        f"SELECT * FROM fee_structures WHERE school_id = ? AND class_id = ? AND status = 'active'{term_sql} ORDER BY created_at DESC LIMIT 1",
        (school_id, class_id) + term_params,
    )
    row = fetch_one(c)
    if row:
        return _structure_row(row)
    db_execute(
        c,
        f'''SELECT fs.* FROM fee_structures fs JOIN classes cl ON cl.department = fs.department
            WHERE fs.school_id = ? AND cl.id = ? AND fs.class_id IS NULL AND fs.status = 'active'{term_sql.replace('term_id', 'fs.term_id')}
            ORDER BY fs.created_at DESC LIMIT 1''',
        (school_id, class_id) + term_params,
    )
    return _structure_row(fetch_one(c))


def structure_for_class(school_id, class_id, term_id=None):
    with db_connection() as conn:
        c = conn.cursor()
        return structure_for_class_with_cursor(c, school_id, class_id, term_id)


# ==================== DISCOUNTS ====================

def create_discount(school_id, name, discount_type, value, reason='other', applicable_to='all', category_ids=None,
                    student_id=None, start_date=None, end_date=None):
    name = (name or '').strip()
    if not name:
        raise ValueError('Discount name is required.')
    discount_type = choice(discount_type, DISCOUNT_TYPES, 'discount type')
    reason = choice(reason, DISCOUNT_REASONS, 'discount reason')
    applicable_to = choice(applicable_to, {'all', 'specific'}, 'discount scope')
    value = safe_float(value, -1)
    if value < 0 or (discount_type == 'percentage' and value > 100):
        raise ValueError('Discount value must be between 0 and 100 for percentages, and not negative.')
    if applicable_to == 'specific' and not category_ids:
        raise ValueError('Choose the fee categories this discount applies to.')
    start, end = parse_date(start_date), parse_date(end_date)
    if start and end and end < start:
        raise ValueError('Discount end date cannot be before the start date.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        code = generate_code('DISC', 6)
        db_execute(
            c,
            '''INSERT INTO discounts (school_id, discount_code, name, discount_type, value, applicable_to, category_ids,
                                      student_id, reason, start_date, end_date, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_id, code, name, discount_type, value, applicable_to, dump_json([int(x) for x in category_ids or []]),
             student_id, reason, start, end, now, now),
        )
        return {'discount_id': c.fetchone()['id'], 'discount_code': code}


def list_discounts(school_id, status=None, student_id=None):
    query = 'SELECT * FROM discounts WHERE school_id = ?'
    params = [school_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    if student_id:
        query += ' AND (student_id = ? OR student_id IS NULL)'
        params.append(student_id)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY created_at DESC', tuple(params))
        return fetch_all(c)


def get_discount(school_id, discount_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM discounts WHERE id = ? AND school_id = ?', (discount_id, school_id))
        return fetch_one(c)


def set_discount_status(school_id, discount_id, status):
    status = choice(status, STATUSES, 'discount status')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE discounts SET status = ?, updated_at = ? WHERE id = ? AND school_id = ?',
                   (status, datetime.now(), discount_id, school_id))
        if not c.rowcount:
            raise LookupError('Discount not found.')


def delete_discount(school_id, discount_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM discounts WHERE id = ? AND school_id = ?', (discount_id, school_id))
        if not c.rowcount:
            raise LookupError('Discount not found.')


# ==================== PAYMENTS ====================

def record_payment_with_cursor(c, school_id, student_id, amount_due, amount_paid, payment_method, category_id=None,
                               structure_id=None, payment_date=None, notes='', user=None, academic_year_id=None, term_id=None):
    due, paid = _amounts(amount_due, amount_paid)
    payment_method = choice(payment_method, PAYMENT_METHODS, 'payment method')
    payment_date = parse_date(payment_date) or date.today()
    user = user or {}
    now = datetime.now()
    db_execute(c, 'SELECT id, class_id FROM students WHERE id = ? AND school_id = ?', (student_id, school_id))
    student = c.fetchone()
    if not student:
        raise LookupError(f'Student {student_id} not found.')
    payment_code = generate_code('PAY')
    receipt_number = generate_code('RCP')
    status = payment_status(due, paid)
    db_execute(
        c,
        '''INSERT INTO fee_payments (school_id, payment_code, receipt_number, student_id, class_id, structure_id, category_id,
                                     amount_due, amount_paid, remaining_balance, payment_method, payment_date, status, notes,
                                     received_by, academic_year_id, term_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           RETURNING id''',
        (school_id, payment_code, receipt_number, student_id, student['class_id'], structure_id, category_id,
         due, paid, remaining_balance(due, paid), payment_method, payment_date, status,
         notes or '', user.get('id'), academic_year_id, term_id, now, now),
    )
    payment_id = c.fetchone()['id']
    return {'payment_id': payment_id, 'payment_code': payment_code, 'receipt_number': receipt_number, 'status': status}


def record_payment(school_id, student_id, amount_due, amount_paid, payment_method, category_id=None, structure_id=None,
                   payment_date=None, notes='', user=None, academic_year_id=None, term_id=None):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        result = record_payment_with_cursor(c, school_id, student_id, amount_due, amount_paid, payment_method, category_id,
                                            structure_id, payment_date, notes, user, academic_year_id, term_id)
    logging.info("Payment %s recorded for student %s (%s)", result['payment_code'], student_id, result['status'])
    return result


def bulk_import_payments(school_id, rows, user=None):
    """Record many payments in one transaction; bad rows are reported, not saved."""
    saved, errors = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for index, row in enumerate(rows or [], 1):
            try:
                result = record_payment_with_cursor(
                    c, school_id, row.get('student_id'), row.get('amount_due'), row.get('amount_paid'),
                    row.get('payment_method') or 'cash', row.get('category_id'), row.get('structure_id'),
                    row.get('payment_date'), row.get('notes', ''), user, row.get('academic_year_id'), row.get('term_id'),
                )
            except (ValueError, LookupError) as exc:
                errors.append({'row': index, 'student_id': row.get('student_id'), 'error': str(exc)})
                continue
            saved.append(result['payment_id'])
    logging.info("Bulk payment import for school %s: %s saved, %s rejected", school_id, len(saved), len(errors))
    return {'saved': saved, 'errors': errors}


def apply_fee_structure_to_students(school_id, structure_id, student_ids, user=None, academic_year_id=None, term_id=None,
                                    payment_date=None):
    """Open a pending payment per structure item for each student."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM fee_structures WHERE id = ? AND school_id = ?', (structure_id, school_id))
        structure = _structure_row(fetch_one(c))
        if not structure:
            raise LookupError('Fee structure not found.')
        applied, errors = [], []
        for student_id in student_ids or []:
            try:
                for item in structure['items']:
                    record_payment_with_cursor(
                        c, school_id, student_id, item['amount'], 0, 'cash', item.get('category_id'), structure['id'],
                        payment_date, f"{structure['name']}: {item.get('category_name') or 'fee'}", user,
                        academic_year_id or structure.get('academic_year_id'), term_id or structure.get('term_id'),
                    )
            except LookupError as exc:
                errors.append({'student_id': student_id, 'error': str(exc)})
                continue
            applied.append(student_id)
    return {'applied': applied, 'errors': errors}


def update_payment(school_id, payment_id, amount_paid=None, amount_due=None, payment_method=None, notes=None):
    payment = get_payment(school_id, payment_id)
    if not payment:
        raise LookupError('Payment not found.')
    due, paid = _amounts(
        payment['amount_due'] if amount_due is None else amount_due,
        payment['amount_paid'] if amount_paid is None else amount_paid,
    )
    method = choice(payment_method, PAYMENT_METHODS, 'payment method') if payment_method else payment['payment_method']
    status = payment_status(due, paid)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE fee_payments SET amount_due = ?, amount_paid = ?, remaining_balance = ?, status = ?, payment_method = ?,
                   notes = ?, updated_at = ?
               WHERE id = ?''',
            (due, paid, remaining_balance(due, paid), status, method,
             payment['notes'] if notes is None else notes, datetime.now(), payment_id),
        )
    return status


def delete_payment(school_id, payment_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM fee_payments WHERE id = ? AND school_id = ?', (payment_id, school_id))
        if not c.rowcount:
            raise LookupError('Payment not found.')


PAYMENT_SELECT = '''SELECT fp.*, st.first_name, st.last_name, st.admission_number, cl.name AS class_name,
                           fc.name AS category_name
                    FROM fee_payments fp
                    JOIN students st ON st.id = fp.student_id
                    LEFT JOIN classes cl ON cl.id = fp.class_id
                    LEFT JOIN fee_categories fc ON fc.id = fp.category_id'''


def get_payment(school_id, payment_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, PAYMENT_SELECT + ' WHERE fp.id = ? AND fp.school_id = ?', (payment_id, school_id))
        return fetch_one(c)


def list_payments(school_id, student_id=None, class_id=None, status=None, outstanding_only=False, term_id=None):
    query = PAYMENT_SELECT + ' WHERE fp.school_id = ?'
    params = [school_id]
    if student_id:
        query += ' AND fp.student_id = ?'
        params.append(student_id)
    if term_id:
        query += ' AND fp.term_id = ?'
        params.append(term_id)
    if class_id:
        query += ' AND fp.class_id = ?'
        params.append(class_id)
    if status:
        query += ' AND fp.status = ?'
        params.append(status)
    if outstanding_only:
        query += " AND fp.status IN ('pending', 'partial')"
    query += ' ORDER BY fp.payment_date DESC, fp.id DESC'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def summarize_payments(payments):
    return {
        'total_collected': round(sum(float(p['amount_paid'] or 0) for p in payments), 2),
        'total_outstanding': round(sum(float(p['remaining_balance'] or 0) for p in payments), 2),
        'total_due': round(sum(float(p['amount_due'] or 0) for p in payments), 2),
        'total_payments': len(payments),
        'paid_count': sum(1 for p in payments if p['status'] == 'paid'),
        'partial_count': sum(1 for p in payments if p['status'] == 'partial'),
        'pending_count': sum(1 for p in payments if p['status'] == 'pending'),
    }


def payment_stats(school_id):
    return summarize_payments(list_payments(school_id))


def student_fee_statement(school_id, student_id, term_id=None):
    """Expected fees (structure less discounts) against what has been paid."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, class_id, first_name, last_name FROM students WHERE id = ? AND school_id = ?', (student_id, school_id))
        student = fetch_one(c)
        if not student:
            raise LookupError('Student not found.')
        structure = structure_for_class_with_cursor(c, school_id, student['class_id'], term_id)
        db_execute(
            c,
            '''SELECT * FROM discounts WHERE school_id = ? AND status = 'active'
               AND (student_id = ? OR student_id IS NULL) ORDER BY id''',
            (school_id, student_id),
        )
        discounts = fetch_all(c)
    items = structure['items'] if structure else []
    lines = []
    for item in items:
        amount = float(item['amount'])
        discount_total = 0.0
        for discount in discounts:
            discount_total += calculate_discount(discount, amount - discount_total, item.get('category_id'))['discount_amount']
        lines.append({
            'category_id': item.get('category_id'),
            'category_name': item.get('category_name'),
            'amount': amount,
            'discount': round(discount_total, 2),
            'net_amount': round(max(0.0, amount - discount_total), 2),
        })
    expected = round(sum(line['net_amount'] for line in lines), 2)
    payments = list_payments(school_id, student_id=student_id, term_id=term_id)
    paid = round(sum(float(p['amount_paid'] or 0) for p in payments), 2)
    return {
        'student': student,
        'structure_id': structure['id'] if structure else None,
        'lines': lines,
        'expected': expected,
        'paid': paid,
        'balance': round(max(0.0, expected - paid), 2),
        'payments': payments,
    }
