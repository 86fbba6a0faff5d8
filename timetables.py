"""
Class timetables.

Each class has one weekly timetable: a grid of periods per weekday, some of
them breaks, with a subject teacher assigned to each teaching period. Teachers
cannot be booked into two overlapping periods on the same day. The conflict
check reports what is left to fix (double bookings, long runs of back-to-back
periods, overloaded days, a subject piled onto one day). Templates store a
day's period layout so it can be applied to other classes.
"""

import logging
import re
from datetime import datetime

from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, dump_json, load_json, choice

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday')
TIMETABLE_STATUSES = {'active', 'inactive'}
TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})$')

CONSECUTIVE_LIMIT = 3
OVERLOAD_PERIODS = 6
CLUSTER_LIMIT = 2

# (name, start, end, is_break)
DEFAULT_DAY = [
    ('Assembly', '07:30', '08:00', True),
    ('Period 1', '08:00', '09:10', False),
    ('Period 2', '09:10', '10:20', False),
    ('Break Time', '10:20', '10:40', True),
    ('Period 3', '10:45', '11:55', False),
    ('Period 4', '11:55', '13:05', False),
    ('Lunch Time', '13:05', '13:35', True),
    ('Period 5', '13:35', '14:45', False),
    ('Period 6', '14:45', '15:55', False),
    ('Closing', '15:55', '16:00', True),
]


def parse_time(value):
    """'HH:MM' -> minutes after midnight."""
    match = TIME_RE.match(str(value or '').strip())
    if not match:
        raise ValueError(f'Invalid time "{value}". Use HH:MM.')
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f'Invalid time "{value}". Use HH:MM.')
    return hours * 60 + minutes


def format_time(minutes):
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def period_duration(start_time, end_time):
    duration = parse_time(end_time) - parse_time(start_time)
    if duration <= 0:
        raise ValueError('Period end time must be after its start time.')
    return duration


def times_overlap(start1, end1, start2, end2):
    return parse_time(start1) < parse_time(end2) and parse_time(start2) < parse_time(end1)


def normalize_day_layout(periods):
    """Validate a day's periods and number them in start-time order."""
    if not isinstance(periods, list) or not periods:
        raise ValueError('A timetable needs at least one period.')
    cleaned = []
    for period in periods:
        name = str(period.get('period_name') or period.get('name') or '').strip()
        if not name:
            raise ValueError('Every period needs a name.')
        start = format_time(parse_time(period.get('start_time')))
        end = format_time(parse_time(period.get('end_time')))
        cleaned.append({
            'period_name': name,
            'start_time': start,
            'end_time': end,
            'duration': period_duration(start, end),
            'is_break': bool(period.get('is_break')),
        })
    cleaned.sort(key=lambda p: parse_time(p['start_time']))
    for previous, current in zip(cleaned, cleaned[1:]):
        if parse_time(current['start_time']) < parse_time(previous['end_time']):
            raise ValueError(f"{current['period_name']} starts before {previous['period_name']} ends.")
    for number, period in enumerate(cleaned, 1):
        period['period_number'] = number
    return cleaned


def default_day_layout():
    return normalize_day_layout([
        {'period_name': name, 'start_time': start, 'end_time': end, 'is_break': is_break}
        for name, start, end, is_break in DEFAULT_DAY
    ])


def _day_order(row):
    day = row.get('day_of_week')
    return (WEEKDAYS.index(day) if day in WEEKDAYS else len(WEEKDAYS), parse_time(row['start_time']))


# ==================== CONFLICTS ====================

def find_conflicts(assignments, timetable_id):
    """Conflicts touching one timetable, given every assignment in the school.

    Each assignment needs timetable_id, teacher_id, teacher_name, class_name,
    subject_name, day_of_week, start_time and end_time.
    """
    timetable_id = int(timetable_id)
    conflicts = []

    def touches(group):
        return any(int(a['timetable_id']) == timetable_id for a in group)

    schedules = {}
    for assignment in assignments:
        schedules.setdefault((assignment['teacher_id'], assignment['day_of_week']), []).append(assignment)

    for (teacher_id, day), slots in sorted(schedules.items(), key=lambda item: (item[0][0], _day_order(item[1][0]))):
        slots = sorted(slots, key=lambda a: parse_time(a['start_time']))
        teacher_name = slots[0].get('teacher_name') or f'Teacher {teacher_id}'
        for index, first in enumerate(slots):
            for second in slots[index + 1:]:
                if not times_overlap(first['start_time'], first['end_time'], second['start_time'], second['end_time']):
                    continue
                if touches((first, second)):
                    conflicts.append({
                        'type': 'teacher_double_booking',
                        'severity': 'error',
                        'message': f"{teacher_name} is double-booked on {day.title()} ({first['start_time']}-{first['end_time']})",
                        'teacher_id': teacher_id,
                        'day_of_week': day,
                        'periods': [first['start_time'], second['start_time']],
                        'classes': [first.get('class_name'), second.get('class_name')],
                    })

        runs, run = [], [slots[0]]
        for previous, current in zip(slots, slots[1:]):
            if parse_time(current['start_time']) == parse_time(previous['end_time']):
                run.append(current)
            else:
                runs.append(run)
                run = [current]
        runs.append(run)
        for run in runs:
            if len(run) >= CONSECUTIVE_LIMIT and touches(run):
                conflicts.append({
                    'type': 'teacher_consecutive',
                    'severity': 'warning',
                    'message': f'{teacher_name} has {len(run)} consecutive periods on {day.title()}',
                    'teacher_id': teacher_id,
                    'day_of_week': day,
                    'periods': [a['start_time'] for a in run],
                })

        if len(slots) >= OVERLOAD_PERIODS and touches(slots):
            conflicts.append({
                'type': 'teacher_overload',
                'severity': 'warning',
                'message': f'{teacher_name} has {len(slots)} periods on {day.title()}',
                'teacher_id': teacher_id,
                'day_of_week': day,
                'periods': [a['start_time'] for a in slots],
            })

    by_subject = {}
    for assignment in assignments:
        if int(assignment['timetable_id']) == timetable_id:
            by_subject.setdefault((assignment['day_of_week'], assignment.get('subject_name')), []).append(assignment)
    for (day, subject_name), slots in sorted(by_subject.items(), key=lambda item: (_day_order(item[1][0])[0], str(item[0][1]))):
        if len(slots) >= CLUSTER_LIMIT:
            conflicts.append({
                'type': 'subject_clustering',
                'severity': 'info',
                'message': f'{subject_name} appears {len(slots)} times on {day.title()}',
                'day_of_week': day,
                'subject': subject_name,
                'periods': sorted((a['start_time'] for a in slots), key=parse_time),
            })
    return conflicts


ASSIGNMENT_SELECT = '''SELECT ta.*, cl.name AS class_name, s.name AS subject_name,
                              u.first_name || ' ' || u.last_name AS teacher_name
                       FROM timetable_assignments ta
                       JOIN classes cl ON cl.id = ta.class_id
                       JOIN subjects s ON s.id = ta.subject_id
                       JOIN teachers t ON t.id = ta.teacher_id
                       JOIN users u ON u.id = t.user_id'''


def check_timetable_conflicts(school_id, timetable_id):
    with db_connection() as conn:
        c = conn.cursor()
        _load_timetable_with_cursor(c, school_id, timetable_id)
        db_execute(c, ASSIGNMENT_SELECT + ' WHERE ta.school_id = ?', (school_id,))
        assignments = fetch_all(c)
    return find_conflicts(assignments, timetable_id)


# ==================== TIMETABLES ====================

def _load_timetable_with_cursor(c, school_id, timetable_id):
    db_execute(c, 'SELECT * FROM timetables WHERE id = ?', (timetable_id,))
    timetable = fetch_one(c)
    if not timetable:
        raise LookupError('Timetable not found.')
    if int(timetable['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return timetable


def _create_timetable_with_cursor(c, school_id, class_id, name, layout, user, academic_year_id=None, term_id=None):
    db_execute(c, 'SELECT id, name FROM classes WHERE id = ? AND school_id = ?', (class_id, school_id))
    class_row = fetch_one(c)
    if not class_row:
        raise LookupError('Class not found.')
    db_execute(c, 'SELECT id FROM timetables WHERE class_id = ?', (class_id,))
    if c.fetchone():
        raise ValueError(f"A timetable already exists for {class_row['name']}.")
    now = datetime.now()
    db_execute(
        c,
        '''INSERT INTO timetables (school_id, timetable_code, class_id, name, academic_year_id, term_id, status,
                                   created_by, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)
           RETURNING id''',
        (school_id, generate_code('TTB'), class_id, (name or '').strip() or f"{class_row['name']} Timetable",
         academic_year_id, term_id, user.get('id'), now, now),
    )
    timetable_id = c.fetchone()['id']
    for day in WEEKDAYS:
        for period in layout:
            db_execute(
                c,
                '''INSERT INTO timetable_periods (timetable_id, day_of_week, period_number, period_name, start_time, end_time,
                                                  duration, is_break)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                (timetable_id, day, period['period_number'], period['period_name'], period['start_time'], period['end_time'],
                 period['duration'], period['is_break']),
            )
    return timetable_id


def create_timetable(school_id, class_id, name='', periods=None, academic_year_id=None, term_id=None, user=None):
    """One timetable per class; every weekday gets the same period layout."""
    user = user or {}
    layout = normalize_day_layout(periods) if periods else default_day_layout()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        timetable_id = _create_timetable_with_cursor(c, school_id, class_id, name, layout, user, academic_year_id, term_id)
    logging.info("Timetable %s created for class %s (%s periods a day)", timetable_id, class_id, len(layout))
    return timetable_id


def list_timetables(school_id, class_id=None, status=None):
    query = '''SELECT tt.*, cl.name AS class_name,
                      (SELECT COUNT(*) FROM timetable_assignments ta WHERE ta.timetable_id = tt.id) AS assignment_count
               FROM timetables tt JOIN classes cl ON cl.id = tt.class_id
               WHERE tt.school_id = ?'''
    params = [school_id]
    if class_id:
        query += ' AND tt.class_id = ?'
        params.append(class_id)
    if status:
        query += ' AND tt.status = ?'
        params.append(status)
    query += ' ORDER BY cl.name'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_timetable(school_id, timetable_id):
    """Timetable with its periods per weekday, each carrying its assignment (or None)."""
    with db_connection() as conn:
        c = conn.cursor()
        timetable = _load_timetable_with_cursor(c, school_id, timetable_id)
        db_execute(c, 'SELECT * FROM timetable_periods WHERE timetable_id = ?', (timetable_id,))
        periods = fetch_all(c)
        db_execute(c, ASSIGNMENT_SELECT + ' WHERE ta.timetable_id = ?', (timetable_id,))
        assignments = {row['period_id']: row for row in fetch_all(c)}
    days = {day: [] for day in WEEKDAYS}
    for period in sorted(periods, key=_day_order):
        period['assignment'] = assignments.get(period['id'])
        days.setdefault(period['day_of_week'], []).append(period)
    timetable['days'] = days
    return timetable


def timetable_for_class(school_id, class_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM timetables WHERE class_id = ? AND school_id = ?', (class_id, school_id))
        row = c.fetchone()
    return get_timetable(school_id, row['id']) if row else None


def update_timetable(school_id, timetable_id, name=None, status=None):
    updates = {}
    if name is not None:
        updates['name'] = name.strip()
        if not updates['name']:
            raise ValueError('Timetable name is required.')
    if status is not None:
        updates['status'] = choice(status, TIMETABLE_STATUSES, 'timetable status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_timetable_with_cursor(c, school_id, timetable_id)
        db_execute(c, f'UPDATE timetables SET {assignments}, updated_at = ? WHERE id = ?',
                   tuple(updates.values()) + (datetime.now(), timetable_id))


def delete_timetables(school_id, timetable_ids):
    """Delete timetables with their periods and assignments; all or nothing."""
    timetable_ids = list(timetable_ids or [])
    if not timetable_ids:
        raise ValueError('Select at least one timetable.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for timetable_id in timetable_ids:
            _load_timetable_with_cursor(c, school_id, timetable_id)
        for timetable_id in timetable_ids:
            db_execute(c, 'DELETE FROM timetable_assignments WHERE timetable_id = ?', (timetable_id,))
            db_execute(c, 'DELETE FROM timetable_periods WHERE timetable_id = ?', (timetable_id,))
            db_execute(c, 'DELETE FROM timetables WHERE id = ?', (timetable_id,))
    logging.info("Deleted %s timetables for school %s", len(timetable_ids), school_id)
    return len(timetable_ids)


# ==================== PERIODS & ASSIGNMENTS ====================

def _load_period_with_cursor(c, school_id, period_id):
    db_execute(
        c,
        '''SELECT p.*, tt.school_id, tt.class_id FROM timetable_periods p
           JOIN timetables tt ON tt.id = p.timetable_id
           WHERE p.id = ?''',
        (period_id,),
    )
    period = fetch_one(c)
    if not period:
        raise LookupError('Period not found.')
    if int(period['school_id']) != int(school_id):
        raise PermissionError('You do not belong to this school.')
    return period


def _teacher_clash_with_cursor(c, school_id, teacher_id, day, start_time, end_time, period_id):
    db_execute(
        c,
        '''SELECT ta.start_time, ta.end_time, cl.name AS class_name
           FROM timetable_assignments ta JOIN classes cl ON cl.id = ta.class_id
           WHERE ta.school_id = ? AND ta.teacher_id = ? AND ta.day_of_week = ? AND ta.period_id <> ?''',
        (school_id, teacher_id, day, period_id),
    )
    for row in c.fetchall():
        if times_overlap(start_time, end_time, row['start_time'], row['end_time']):
            return row
    return None


def update_period(school_id, period_id, start_time, end_time, period_name=None, is_break=None):
    """Retime a period; an assigned teacher must still be free at the new time."""
    start = format_time(parse_time(start_time))
    end = format_time(parse_time(end_time))
    duration = period_duration(start, end)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        period = _load_period_with_cursor(c, school_id, period_id)
        db_execute(c, 'SELECT teacher_id FROM timetable_assignments WHERE period_id = ?', (period_id,))
        assigned = c.fetchone()
        if assigned and is_break:
            raise ValueError('Remove the teacher assignment before turning this period into a break.')
        if assigned:
            clash = _teacher_clash_with_cursor(c, school_id, assigned['teacher_id'], period['day_of_week'], start, end, period_id)
            if clash:
                raise ValueError(f"The assigned teacher is already teaching {clash['class_name']} at that time.")
        db_execute(
            c,
            '''UPDATE timetable_periods SET start_time = ?, end_time = ?, duration = ?, period_name = ?, is_break = ?
               WHERE id = ?''',
            (start, end, duration, (period_name or '').strip() or period['period_name'],
             period['is_break'] if is_break is None else bool(is_break), period_id),
        )
        db_execute(c, 'UPDATE timetable_assignments SET start_time = ?, end_time = ?, updated_at = ? WHERE period_id = ?',
                   (start, end, datetime.now(), period_id))
    return duration


def assign_teacher(school_id, period_id, subject_id, teacher_id, room='', notes='', user=None):
    """Assign (or reassign) a subject teacher to a teaching period."""
    user = user or {}
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        period = _load_period_with_cursor(c, school_id, period_id)
        if period['is_break']:
            raise ValueError(f"{period['period_name']} is a break and cannot be assigned.")
        db_execute(
            c,
            '''SELECT t.id, u.first_name, u.last_name FROM teachers t JOIN users u ON u.id = t.user_id
               WHERE t.id = ? AND t.school_id = ?''',
            (teacher_id, school_id),
        )
        teacher = fetch_one(c)
        if not teacher:
            raise LookupError('Teacher not found.')
        db_execute(c, 'SELECT id FROM subjects WHERE id = ? AND school_id = ?', (subject_id, school_id))
        if not c.fetchone():
            raise LookupError('Subject not found.')
        clash = _teacher_clash_with_cursor(c, school_id, teacher_id, period['day_of_week'], period['start_time'],
                                           period['end_time'], period_id)
        if clash:
            raise ValueError(f"Teacher {teacher['first_name']} {teacher['last_name']} is already assigned to "
                             f"{clash['class_name']} during this time on {period['day_of_week'].title()}.")
        db_execute(
            c,
            '''INSERT INTO timetable_assignments (school_id, timetable_id, period_id, class_id, subject_id, teacher_id,
                                                  day_of_week, start_time, end_time, room, notes, assigned_by,
                                                  created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(period_id) DO UPDATE SET
                   subject_id = EXCLUDED.subject_id, teacher_id = EXCLUDED.teacher_id, room = EXCLUDED.room,
                   notes = EXCLUDED.notes, assigned_by = EXCLUDED.assigned_by, updated_at = EXCLUDED.updated_at
               RETURNING id''',
            (school_id, period['timetable_id'], period_id, period['class_id'], subject_id, teacher_id,
             period['day_of_week'], period['start_time'], period['end_time'], (room or '').strip(), notes or '',
             user.get('id'), now, now),
        )
        return c.fetchone()['id']


def remove_assignment(school_id, assignment_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM timetable_assignments WHERE id = ? AND school_id = ?', (assignment_id, school_id))
        if not c.rowcount:
            raise LookupError('Assignment not found.')


def teacher_timetable(school_id, teacher_id):
    """A teacher's week across all classes, ordered by day and time."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, ASSIGNMENT_SELECT + ' WHERE ta.school_id = ? AND ta.teacher_id = ?', (school_id, teacher_id))
        rows = fetch_all(c)
    return sorted(rows, key=_day_order)


# ==================== TEMPLATES ====================

def save_as_template(school_id, timetable_id, name, description='', user=None):
    """Store the Monday layout of a timetable for reuse."""
    user = user or {}
    name = (name or '').strip()
    if not name:
        raise ValueError('Template name is required.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_timetable_with_cursor(c, school_id, timetable_id)
        db_execute(
            c,
            '''SELECT period_name, start_time, end_time, is_break FROM timetable_periods
               WHERE timetable_id = ? AND day_of_week = 'monday' ORDER BY period_number''',
            (timetable_id,),
        )
        layout = normalize_day_layout(fetch_all(c))
        db_execute(
            c,
            '''INSERT INTO timetable_templates (school_id, name, description, periods, status, created_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'active', ?, ?, ?)
               RETURNING id''',
            (school_id, name, description or '', dump_json(layout), user.get('id'), now, now),
        )
        return c.fetchone()['id']


def _template_row(row):
    if row:
        row['periods'] = load_json(row.get('periods'), [])
    return row


def list_templates(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, "SELECT * FROM timetable_templates WHERE school_id = ? AND status = 'active' ORDER BY name", (school_id,))
        return [_template_row(row) for row in fetch_all(c)]


def _load_template_with_cursor(c, school_id, template_id):
    db_execute(c, "SELECT * FROM timetable_templates WHERE id = ? AND school_id = ? AND status = 'active'", (template_id, school_id))
    template = _template_row(fetch_one(c))
    if not template:
        raise LookupError('Template not found.')
    return template


def update_template(school_id, template_id, name=None, description=None):
    updates = {}
    if name is not None:
        updates['name'] = name.strip()
        if not updates['name']:
            raise ValueError('Template name is required.')
    if description is not None:
        updates['description'] = description
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_template_with_cursor(c, school_id, template_id)
        db_execute(c, f'UPDATE timetable_templates SET {assignments}, updated_at = ? WHERE id = ?',
                   tuple(updates.values()) + (datetime.now(), template_id))


def archive_template(school_id, template_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_template_with_cursor(c, school_id, template_id)
        db_execute(c, "UPDATE timetable_templates SET status = 'archived', updated_at = ? WHERE id = ?",
                   (datetime.now(), template_id))


def apply_template(school_id, template_id, class_id, name='', user=None):
    user = user or {}
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        template = _load_template_with_cursor(c, school_id, template_id)
        layout = normalize_day_layout(template['periods'])
        return _create_timetable_with_cursor(c, school_id, class_id, name, layout, user)


def clone_timetable(school_id, timetable_id, class_id, name='', include_assignments=False, user=None):
    """Copy a timetable's layout to another class, optionally with its teachers.

    Assignments whose teacher is already busy at that time are left out and
    reported in ``skipped``.
    """
    user = user or {}
    now = datetime.now()
    skipped = []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        source = _load_timetable_with_cursor(c, school_id, timetable_id)
        db_execute(
            c,
            '''SELECT period_name, start_time, end_time, is_break FROM timetable_periods
               WHERE timetable_id = ? AND day_of_week = 'monday' ORDER BY period_number''',
            (timetable_id,),
        )
        layout = normalize_day_layout(fetch_all(c))
        new_id = _create_timetable_with_cursor(c, school_id, class_id, name, layout, user,
                                               source.get('academic_year_id'), source.get('term_id'))
        if include_assignments:
            db_execute(
                c,
                '''SELECT ta.subject_id, ta.teacher_id, ta.room, p.day_of_week, p.period_number, p.start_time, p.end_time
                   FROM timetable_assignments ta JOIN timetable_periods p ON p.id = ta.period_id
                   WHERE ta.timetable_id = ?''',
                (timetable_id,),
            )
            source_assignments = fetch_all(c)
            db_execute(c, 'SELECT id, day_of_week, period_number FROM timetable_periods WHERE timetable_id = ?', (new_id,))
            new_periods = {(row['day_of_week'], row['period_number']): row['id'] for row in c.fetchall()}
            for item in sorted(source_assignments, key=_day_order):
                period_id = new_periods.get((item['day_of_week'], item['period_number']))
                if period_id is None:
                    continue
                clash = _teacher_clash_with_cursor(c, school_id, item['teacher_id'], item['day_of_week'],
                                                   item['start_time'], item['end_time'], period_id)
                if clash:
                    skipped.append({'day_of_week': item['day_of_week'], 'start_time': item['start_time'],
                                    'teacher_id': item['teacher_id'], 'busy_with': clash['class_name']})
                    continue
                db_execute(
                    c,
                    '''INSERT INTO timetable_assignments (school_id, timetable_id, period_id, class_id, subject_id, teacher_id,
                                                          day_of_week, start_time, end_time, room, notes, assigned_by,
                                                          created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '', ?, ?, ?)''',
                    (school_id, new_id, period_id, class_id, item['subject_id'], item['teacher_id'], item['day_of_week'],
                     item['start_time'], item['end_time'], item.get('room') or '', user.get('id'), now, now),
                )
    return {'timetable_id': new_id, 'skipped': skipped}
