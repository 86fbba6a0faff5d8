"""
Report card generation and review.

A report card aggregates one student's marks for an exam into subject lines,
a raw score (sum of subject maximums), a total, an overall percentage and grade,
and a class position. Cards move through draft -> generated (class teacher
verified) -> published, and can be pulled back to draft with a reason.
"""

import logging
from datetime import datetime

from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, dump_json, load_json, parse_date
from grading import competition_positions, grade_from_bands, resolve_bands_with_cursor

REPORT_STATUSES = {'draft', 'generated', 'published', 'archived'}
REMARK_FIELDS = ('conduct', 'attitude', 'interest', 'class_teacher_comment', 'headmaster_comment', 'promoted_to')
DATE_FIELDS = ('vacation_date', 'reopening_date')
JSON_FIELDS = ('subjects', 'attendance', 'termly_performance')


def build_report_card(marks, bands):
    """Aggregate subject marks into report totals and an overall grade."""
    subjects = []
    total_score = 0.0
    raw_score = 0.0
    for mark in marks:
        total = float(mark.get('total_marks') or 0)
        max_marks = float(mark.get('max_marks') or 0)
        total_score += total
        raw_score += max_marks
        subjects.append({
            'subject_id': mark.get('subject_id'),
            'subject': mark.get('subject_name', ''),
            'class_score': float(mark.get('class_score') or 0),
            'exam_score': float(mark.get('exam_score') or 0),
            'total': total,
            'max_marks': max_marks,
            'percentage': float(mark.get('percentage') or 0),
            'position': mark.get('position') or 0,
            'grade': mark.get('grade') or '',
            'remark': mark.get('remarks') or '',
        })
    percentage = round(total_score / raw_score * 100, 2) if raw_score else 0.0
    graded = grade_from_bands(percentage, bands)
    return {
        'subjects': subjects,
        'raw_score': raw_score,
        'total_score': total_score,
        'percentage': percentage,
        'overall_grade': graded['grade'],
        'overall_remark': graded['remark'],
    }


def rank_students(totals):
    """{student_id: total} -> {student_id: position}; equal totals share a position."""
    return competition_positions(list(totals.items()))


def _card_row(row):
    if row:
        for key in JSON_FIELDS:
            row[key] = load_json(row.get(key), [] if key != 'attendance' else {})
    return row


def _extras(fields):
    extras = {}
    for key in REMARK_FIELDS:
        if fields.get(key) is not None:
            extras[key] = str(fields[key]).strip()
    for key in DATE_FIELDS:
        if fields.get(key) is not None:
            extras[key] = parse_date(fields[key])
    if fields.get('attendance') is not None:
        attendance = fields['attendance']
        if not isinstance(attendance, dict):
            raise ValueError('Attendance must be an object with present and total days.')
        extras['attendance'] = dump_json({'present': int(attendance.get('present') or 0), 'total': int(attendance.get('total') or 0)})
    return extras


# ==================== GENERATION ====================

def _load_exam_for_generation(c, school_id, exam_id):
    db_execute(c, 'SELECT id, school_id, name, academic_year_id, term_id FROM exams WHERE id = ?', (exam_id,))
    exam = fetch_one(c)
    if not exam:
        raise LookupError('Exam not found.')
    if int(exam['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    if not exam.get('academic_year_id') or not exam.get('term_id'):
        raise ValueError('Exam must be linked to an academic year and term before report cards are generated.')
    return exam


def _class_context(c, school_id, exam_id, class_id):
    db_execute(c, 'SELECT id, name, department FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
    class_row = fetch_one(c)
    if not class_row:
        raise LookupError('Class not found.')
    db_execute(
        c,
        '''SELECT m.student_id, SUM(m.total_marks) AS total
           FROM exam_marks m JOIN students st ON st.id = m.student_id
           WHERE m.exam_id = ? AND m.class_id = ? AND st.class_id = ? AND st.status <> 'graduated'
           GROUP BY m.student_id''',
        (exam_id, class_id, class_id),
    )
    totals = {row['student_id']: float(row['total'] or 0) for row in c.fetchall()}
    db_execute(c, "SELECT COUNT(*) AS total FROM students WHERE class_id = ? AND status <> 'graduated'", (class_id,))
    class_size = int(c.fetchone()['total'] or 0)
    scale_id, bands = resolve_bands_with_cursor(c, school_id, class_row.get('department'))
    return {
        'class': class_row,
        'positions': rank_students(totals),
        'class_size': class_size,
        'scale_id': scale_id,
        'bands': bands,
    }


def _attendance_for_term(c, student_id, term_id):
    db_execute(
        c,
        '''SELECT COUNT(ar.id) AS total,
                  SUM(CASE WHEN ar.status IN ('present', 'late') THEN 1 ELSE 0 END) AS present
           FROM attendance_records ar
           JOIN attendance a ON a.id = ar.attendance_id
           JOIN terms t ON t.id = ?
           WHERE ar.student_id = ? AND a.date BETWEEN t.start_date AND t.end_date''',
        (term_id, student_id),
    )
    row = c.fetchone()
    if not row:
        return {'present': 0, 'total': 0}
    return {'present': int(row['present'] or 0), 'total': int(row['total'] or 0)}


def _termly_performance(c, student_id, academic_year_id, term_id):
    db_execute(
        c,
        '''SELECT t.name AS term, t.term_number, rc.percentage, rc.overall_grade
           FROM report_cards rc JOIN terms t ON t.id = rc.term_id
           WHERE rc.student_id = ? AND rc.academic_year_id = ? AND rc.term_id <> ? AND rc.status = 'published'
           ORDER BY t.term_number''',
        (student_id, academic_year_id, term_id),
    )
    return [
        {'term': row['term'], 'percentage': float(row['percentage'] or 0), 'grade': row['overall_grade']}
        for row in c.fetchall()
    ]


def _generate_with_cursor(c, school_id, exam, student, context, user, extras):
    db_execute(
        c,
        '''SELECT m.*, s.name AS subject_name
           FROM exam_marks m JOIN subjects s ON s.id = m.subject_id
           WHERE m.exam_id = ? AND m.student_id = ?
           ORDER BY s.is_core DESC, s.name''',
        (exam['id'], student['id']),
    )
    marks = fetch_all(c)
    if not marks:
        raise ValueError(f"No marks found for {student['first_name']} {student['last_name']}.")
    card = build_report_card(marks, context['bands'])
    fields = dict(extras)
    if 'attendance' not in fields:
        fields['attendance'] = dump_json(_attendance_for_term(c, student['id'], exam['term_id']))
    termly = dump_json(_termly_performance(c, student['id'], exam['academic_year_id'], exam['term_id']))
    position = context['positions'].get(student['id'])
    now = datetime.now()

    db_execute(
        c,
        '''SELECT id, status, version, percentage FROM report_cards
           WHERE student_id = ? AND academic_year_id = ? AND term_id = ? LIMIT 1''',
        (student['id'], exam['academic_year_id'], exam['term_id']),
    )
    existing = fetch_one(c)
    if existing:
        if existing['status'] == 'published':
            raise ValueError(f"Report card for {student['first_name']} {student['last_name']} is published. Unpublish it first.")
        extra_sql = ''.join(f', {col} = ?' for col in fields)
        db_execute(
            c,
            f'''UPDATE report_cards
                SET exam_id = ?, class_id = ?, subjects = ?, raw_score = ?, total_score = ?, percentage = ?,
                    overall_grade = ?, position = ?, total_students = ?, grading_scale_id = ?, termly_performance = ?,
                    status = 'draft', version = ?, previous_percentage = ?, verified_by_class_teacher = FALSE,
                    generated_by = ?, updated_at = ?{extra_sql}
                WHERE id = ?''',
            (exam['id'], context['class']['id'], dump_json(card['subjects']), card['raw_score'], card['total_score'],
             card['percentage'], card['overall_grade'], position, context['class_size'], context['scale_id'], termly,
             int(existing['version'] or 1) + 1, existing['percentage'], user.get('id'), now)
            + tuple(fields.values()) + (existing['id'],),
        )
        return {'report_id': existing['id'], 'version': int(existing['version'] or 1) + 1, 'percentage': card['percentage'],
                'position': position, 'overall_grade': card['overall_grade']}

    columns = ['school_id', 'report_code', 'student_id', 'class_id', 'academic_year_id', 'term_id', 'exam_id', 'subjects',
               'raw_score', 'total_score', 'percentage', 'overall_grade', 'position', 'total_students', 'grading_scale_id',
               'termly_performance', 'status', 'version', 'generated_by', 'created_at', 'updated_at'] + list(fields)
    values = (school_id, generate_code('RPT'), student['id'], context['class']['id'], exam['academic_year_id'], exam['term_id'],
              exam['id'], dump_json(card['subjects']), card['raw_score'], card['total_score'], card['percentage'],
              card['overall_grade'], position, context['class_size'], context['scale_id'], termly, 'draft', 1,
              user.get('id'), now, now) + tuple(fields.values())
    db_execute(
        c,
        f'''INSERT INTO report_cards ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            RETURNING id''',
        values,
    )
    return {'report_id': c.fetchone()['id'], 'version': 1, 'percentage': card['percentage'],
            'position': position, 'overall_grade': card['overall_grade']}


def generate_report_card(school_id, exam_id, student_id, user=None, **fields):
    """Generate (or regenerate) one student's report card for an exam."""
    user = user or {}
    extras = _extras(fields)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam_for_generation(c, school_id, exam_id)
        db_execute(c, 'SELECT id, first_name, last_name, class_id, status FROM students WHERE id = ? AND school_id = ?',
                   (student_id, school_id))
        student = fetch_one(c)
        if not student:
            raise LookupError('Student not found.')
        if student['status'] == 'graduated':
            raise ValueError('Report cards are not generated for graduated students.')
        context = _class_context(c, school_id, exam_id, student['class_id'])
        return _generate_with_cursor(c, school_id, exam, student, context, user, extras)


def generate_class_report_cards(school_id, exam_id, class_id, user=None, **fields):
    """Generate report cards for every non-graduated student in a class.

    Students without marks are reported in ``errors``; the call fails only when
    no card could be generated at all.
    """
    user = user or {}
    extras = _extras(fields)
    generated, errors = [], []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam_for_generation(c, school_id, exam_id)
        context = _class_context(c, school_id, exam_id, class_id)
        db_execute(
            c,
            '''SELECT id, first_name, last_name, class_id, status FROM students
               WHERE school_id = ? AND class_id = ? AND status <> 'graduated'
               ORDER BY last_name, first_name''',
            (school_id, class_id),
        )
        students = fetch_all(c)
        if not students:
            raise ValueError('No students found in the selected class (excluding graduated students).')
        for student in students:
            db_execute(c, 'SAVEPOINT report_card')
            try:
                result = _generate_with_cursor(c, school_id, exam, student, context, user, extras)
            except ValueError as exc:
                db_execute(c, 'ROLLBACK TO SAVEPOINT report_card')
                errors.append({'student_id': student['id'], 'error': str(exc)})
                continue
            db_execute(c, 'RELEASE SAVEPOINT report_card')
            generated.append(result)
        if not generated:
            raise ValueError('Failed to generate any report cards. Errors: ' + '; '.join(e['error'] for e in errors))
    logging.info("Generated %s report cards for class %s (exam %s), %s skipped", len(generated), class_id, exam_id, len(errors))
    return {'generated': generated, 'errors': errors}


# ==================== REVIEW WORKFLOW ====================

def _load_card_with_cursor(c, school_id, report_id):
    db_execute(c, 'SELECT * FROM report_cards WHERE id = ?', (report_id,))
    card = fetch_one(c)
    if not card:
        raise LookupError('Report card not found.')
    if int(card['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return card


def review_report_card(school_id, report_id, user=None, verify_and_approve=False, **fields):
    """Save reviewer remarks; optionally approve a draft (draft -> generated)."""
    user = user or {}
    updates = _extras(fields)
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        card = _load_card_with_cursor(c, school_id, report_id)
        if card['status'] in ('published', 'archived'):
            raise ValueError(f"Cannot review a {card['status']} report card.")
        if verify_and_approve:
            if card['status'] != 'draft':
                raise ValueError('Only draft report cards can be approved.')
            updates['status'] = 'generated'
            updates['verified_by_class_teacher'] = True
        updates['reviewed_by'] = user.get('id')
        updates['reviewed_at'] = now
        assignments = ', '.join(f'{col} = ?' for col in updates)
        db_execute(c, f'UPDATE report_cards SET {assignments}, updated_at = ? WHERE id = ?', tuple(updates.values()) + (now, report_id))
    return updates.get('status', card['status'])


def bulk_approve_report_cards(school_id, report_ids, user=None):
    user = user or {}
    approved, skipped = [], []
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for report_id in report_ids or []:
            card = _load_card_with_cursor(c, school_id, report_id)
            if card['status'] != 'draft':
                skipped.append({'report_id': card['id'], 'status': card['status']})
                continue
            db_execute(
                c,
                '''UPDATE report_cards SET status = 'generated', verified_by_class_teacher = TRUE,
                       reviewed_by = ?, reviewed_at = ?, updated_at = ?
                   WHERE id = ?''',
                (user.get('id'), now, now, card['id']),
            )
            approved.append(card['id'])
    return {'approved': approved, 'skipped': skipped}


def publish_report_cards(school_id, report_ids, user=None, role='admin'):
    """Publish approved cards. Nothing is published unless every card qualifies."""
    if role not in ('class_teacher', 'admin'):
        raise PermissionError('Only class teachers or admins can publish report cards.')
    ids = list(report_ids or [])
    if not ids:
        raise ValueError('Select at least one report card to publish.')
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        cards = [_load_card_with_cursor(c, school_id, report_id) for report_id in ids]
        not_ready = [card['report_code'] for card in cards if card['status'] != 'generated']
        if not_ready:
            raise ValueError('Only approved report cards can be published: ' + ', '.join(not_ready))
        for card in cards:
            db_execute(
                c,
                '''UPDATE report_cards SET status = 'published', published_by = ?, published_role = ?,
                       published_at = ?, unpublish_reason = NULL, updated_at = ?
                   WHERE id = ?''',
                (user.get('id'), role, now, now, card['id']),
            )
    return len(cards)


def unpublish_report_card(school_id, report_id, reason, user=None):
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A reason is required to unpublish a report card.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        card = _load_card_with_cursor(c, school_id, report_id)
        if card['status'] != 'published':
            raise ValueError('Only published report cards can be unpublished.')
        db_execute(
            c,
            '''UPDATE report_cards SET status = 'draft', unpublish_reason = ?, verified_by_class_teacher = FALSE,
                   published_at = NULL, updated_at = ?
               WHERE id = ?''',
            (reason, now, report_id),
        )
    logging.info("Report card %s unpublished by %s: %s", report_id, (user or {}).get('id'), reason)


def archive_report_card(school_id, report_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        card = _load_card_with_cursor(c, school_id, report_id)
        if card['status'] == 'archived':
            return
        db_execute(c, "UPDATE report_cards SET status = 'archived', updated_at = ? WHERE id = ?", (datetime.now(), report_id))


def update_report_card(school_id, report_id, **fields):
    updates = _extras(fields)
    if not updates:
        return
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        card = _load_card_with_cursor(c, school_id, report_id)
        if card['status'] in ('published', 'archived'):
            raise ValueError(f"Cannot edit a {card['status']} report card.")
        assignments = ', '.join(f'{col} = ?' for col in updates)
        db_execute(c, f'UPDATE report_cards SET {assignments}, updated_at = ? WHERE id = ?',
                   tuple(updates.values()) + (datetime.now(), report_id))


def delete_report_card(school_id, report_id):
    return bulk_delete_report_cards(school_id, [report_id])


def bulk_delete_report_cards(school_id, report_ids):
    ids = list(report_ids or [])
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        cards = [_load_card_with_cursor(c, school_id, report_id) for report_id in ids]
        published = [card['report_code'] for card in cards if card['status'] == 'published']
        if published:
            raise ValueError('Unpublish these report cards before deleting them: ' + ', '.join(published))
        for card in cards:
            db_execute(c, 'DELETE FROM report_cards WHERE id = ?', (card['id'],))
    return len(ids)


# ==================== QUERIES ====================

CARD_SELECT = '''SELECT rc.*, st.first_name, st.last_name, st.admission_number, cl.name AS class_name,
                        t.name AS term_name, ay.name AS academic_year_name
                 FROM report_cards rc
                 JOIN students st ON st.id = rc.student_id
                 LEFT JOIN classes cl ON cl.id = rc.class_id
                 LEFT JOIN terms t ON t.id = rc.term_id
                 LEFT JOIN academic_years ay ON ay.id = rc.academic_year_id'''


def list_report_cards(school_id, class_id=None, term_id=None, status=None):
    query = CARD_SELECT + ' WHERE rc.school_id = ?'
    params = [school_id]
    if class_id:
        query += ' AND rc.class_id = ?'
        params.append(class_id)
    if term_id:
        query += ' AND rc.term_id = ?'
        params.append(term_id)
    if status:
        if status not in REPORT_STATUSES:
            raise ValueError(f'Invalid report card status "{status}".')
        query += ' AND rc.status = ?'
        params.append(status)
    query += ' ORDER BY cl.name, rc.position NULLS LAST, st.last_name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return [_card_row(row) for row in fetch_all(c)]


def list_draft_report_cards(school_id, class_id=None):
    return list_report_cards(school_id, class_id=class_id, status='draft')


def get_report_card(school_id, report_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, CARD_SELECT + ' WHERE rc.id = ?', (report_id,))
        card = _card_row(fetch_one(c))
    if not card:
        return None
    if int(card['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return card


def published_cards_for_student(school_id, student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            CARD_SELECT + " WHERE rc.school_id = ? AND rc.student_id = ? AND rc.status = 'published' ORDER BY rc.published_at DESC",
            (school_id, student_id),
        )
        return [_card_row(row) for row in fetch_all(c)]
