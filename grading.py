"""Grading scales, grade lookup and tie-aware ranking."""

import json
from datetime import datetime

from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, dump_json, choice

DEPARTMENTS = {'creche', 'kindergarten', 'primary', 'junior_high'}

DEFAULT_BANDS = [
    {'grade': '1', 'min_percent': 80, 'max_percent': 100, 'remark': 'Excellent'},
    {'grade': '2', 'min_percent': 70, 'max_percent': 79, 'remark': 'Very Good'},
    {'grade': '3', 'min_percent': 65, 'max_percent': 69, 'remark': 'Good'},
    {'grade': '4', 'min_percent': 60, 'max_percent': 64, 'remark': 'High Average'},
    {'grade': '5', 'min_percent': 55, 'max_percent': 59, 'remark': 'Average'},
    {'grade': '6', 'min_percent': 50, 'max_percent': 54, 'remark': 'Low Average'},
    {'grade': '7', 'min_percent': 45, 'max_percent': 49, 'remark': 'Pass'},
    {'grade': '8', 'min_percent': 40, 'max_percent': 44, 'remark': 'Pass'},
    {'grade': '9', 'min_percent': 0, 'max_percent': 39, 'remark': 'Fail'},
]


def default_grade(percentage):
    """Built-in 1-9 scale."""
    return grade_from_bands(percentage, DEFAULT_BANDS)


def parse_bands(raw):
    """Decode stored bands (JSON text or list) into a validated list."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ValueError('Grading bands are not valid JSON.') from exc
    return validate_bands(raw)


def validate_bands(bands):
    if not isinstance(bands, list) or not bands:
        raise ValueError('A grading scale needs at least one band.')
    cleaned = []
    for band in bands:
        if not isinstance(band, dict):
            raise ValueError('Each grading band must be an object.')
        try:
            low = float(band.get('min_percent', band.get('minPercent')))
            high = float(band.get('max_percent', band.get('maxPercent')))
        except (TypeError, ValueError) as exc:
            raise ValueError('Grading band limits must be numbers.') from exc
        grade = str(band.get('grade', '')).strip()
        if not grade:
            raise ValueError('Each grading band needs a grade.')
        if not 0 <= low <= high <= 100:
            raise ValueError(f'Band {grade}: limits must satisfy 0 <= min <= max <= 100.')
        cleaned.append({'grade': grade, 'min_percent': low, 'max_percent': high, 'remark': str(band.get('remark') or '').strip()})
    ordered = sorted(cleaned, key=lambda b: b['min_percent'])
    for lower, upper in zip(ordered, ordered[1:]):
        if upper['min_percent'] <= lower['max_percent']:
            raise ValueError(f"Bands {lower['grade']} and {upper['grade']} overlap.")
    return sorted(cleaned, key=lambda b: b['min_percent'], reverse=True)


def grade_from_bands(percentage, bands):
    """Return {'grade', 'remark'} for a percentage.

    Bands are walked from the highest minimum down, so a fractional score that
    sits in the gap between two integer bands (79.5 between 70-79 and 80-100)
    takes the lower band. Anything below every band gets the lowest band.
    """
    pct = float(percentage or 0)
    ordered = sorted(bands, key=lambda b: float(b['min_percent']), reverse=True)
    for band in ordered:
        if pct >= float(band['min_percent']):
            return {'grade': str(band['grade']), 'remark': band.get('remark', '')}
    lowest = ordered[-1]
    return {'grade': str(lowest['grade']), 'remark': lowest.get('remark', '')}


def grade_from_scale(percentage, raw_bands):
    """Grade against stored bands; unreadable bands fall back to the default scale."""
    try:
        bands = parse_bands(raw_bands)
    except ValueError:
        return default_grade(percentage)
    return grade_from_bands(percentage, bands)


def competition_positions(entries):
    """Rank (key, score) pairs highest first; equal scores share a position.

    The position after a tie skips ahead, e.g. 1, 2, 2, 4.
    """
    def same_score(a, b):
        return abs(float(a or 0) - float(b or 0)) <= 1e-9

    ordered = sorted(entries, key=lambda item: float(item[1] or 0), reverse=True)
    positions = {}
    prev_score = None
    current_pos = 0
    for index, (key, score) in enumerate(ordered, 1):
        if prev_score is None or not same_score(score, prev_score):
            current_pos = index
        positions[key] = current_pos
        prev_score = score
    return positions


def ordinal(value):
    try:
        n = int(value)
    except (TypeError, ValueError):
        return ''
    if 10 <= n % 100 <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f'{n}{suffix}'


# ==================== STORED SCALES ====================

def _scale_row(row):
    if row:
        row['bands'] = json.loads(row['bands']) if isinstance(row.get('bands'), str) else row.get('bands')
    return row


def create_grading_scale(school_id, name, bands, department=None, is_default=False):
    name = (name or '').strip()
    if not name:
        raise ValueError('Grading scale name is required.')
    bands = validate_bands(bands)
    if department:
        department = choice(department, DEPARTMENTS, 'department')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if is_default:
            db_execute(c, 'UPDATE grading_scales SET is_default = FALSE WHERE school_id = ?', (school_id,))
        db_execute(
            c,
            '''INSERT INTO grading_scales (school_id, scale_code, name, department, bands, is_default, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)
               RETURNING id''',
            (school_id, generate_code('GRD', 6), name, department, dump_json(bands), bool(is_default), now, now),
        )
        return c.fetchone()['id']


def list_grading_scales(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM grading_scales WHERE school_id = ? ORDER BY is_default DESC, name', (school_id,))
        return [_scale_row(row) for row in fetch_all(c)]


def get_grading_scale(school_id, scale_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM grading_scales WHERE id = ? AND school_id = ?', (scale_id, school_id))
        return _scale_row(fetch_one(c))


def update_grading_scale(school_id, scale_id, name=None, bands=None, department=None, status=None):
    updates = {}
    if name is not None:
        if not name.strip():
            raise ValueError('Grading scale name is required.')
        updates['name'] = name.strip()
    if bands is not None:
        updates['bands'] = dump_json(validate_bands(bands))
    if department is not None:
        updates['department'] = choice(department, DEPARTMENTS, 'department') if department else None
    if status is not None:
        updates['status'] = choice(status, {'active', 'inactive'}, 'grading scale status')
    if not updates:
        return
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE grading_scales SET {assignments}, updated_at = ? WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (datetime.now(), scale_id, school_id))
        if not c.rowcount:
            raise LookupError('Grading scale not found.')


def set_default_grading_scale(school_id, scale_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM grading_scales WHERE id = ? AND school_id = ?', (scale_id, school_id))
        if not c.fetchone():
            raise LookupError('Grading scale not found.')
        db_execute(c, 'UPDATE grading_scales SET is_default = (id = ?) WHERE school_id = ?', (scale_id, school_id))


def delete_grading_scale(school_id, scale_id):
    scale = get_grading_scale(school_id, scale_id)
    if not scale:
        raise LookupError('Grading scale not found.')
    if scale.get('is_default'):
        raise ValueError('The default grading scale cannot be deleted.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM grading_scales WHERE id = ?', (scale_id,))


def resolve_scale_with_cursor(c, school_id, department=None):
    """Department scale, else school default; None means the built-in scale."""
    if department:
        db_execute(
            c,
            "SELECT id, bands FROM grading_scales WHERE school_id = ? AND department = ? AND status = 'active' ORDER BY updated_at DESC LIMIT 1",
            (school_id, department),
        )
        row = c.fetchone()
        if row:
            return {'id': row['id'], 'bands': row['bands']}
    db_execute(c, 'SELECT id, bands FROM grading_scales WHERE school_id = ? AND is_default = TRUE LIMIT 1', (school_id,))
    row = c.fetchone()
    if row:
        return {'id': row['id'], 'bands': row['bands']}
    return None


def resolve_bands_with_cursor(c, school_id, department=None):
    scale = resolve_scale_with_cursor(c, school_id, department)
    if not scale:
        return None, DEFAULT_BANDS
    try:
        return scale['id'], parse_bands(scale['bands'])
    except ValueError:
        return scale['id'], DEFAULT_BANDS
