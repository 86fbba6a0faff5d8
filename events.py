"""School calendar events and RSVPs."""

import logging
from datetime import date, datetime

from accounts import create_notification_with_cursor, user_ids_with_role_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, dump_json, load_json, parse_date, safe_int, choice

EVENT_COLORS = {
    'holiday': '#10b981',
    'exam': '#ef4444',
    'sports': '#3b82f6',
    'parent_meeting': '#f59e0b',
    'assembly': '#8b5cf6',
    'cultural': '#ec4899',
    'field_trip': '#06b6d4',
    'workshop': '#84cc16',
    'other': '#6b7280',
}
EVENT_TYPES = set(EVENT_COLORS)
EVENT_STATUSES = {'upcoming', 'ongoing', 'completed', 'cancelled'}
AUDIENCES = {'all', 'teachers', 'students', 'parents', 'staff', 'class'}
RSVP_STATUSES = {'attending', 'not_attending', 'maybe', 'pending'}
EVENT_FIELDS = ('title', 'description', 'event_type', 'start_date', 'end_date', 'start_time', 'end_time', 'is_all_day',
                'location', 'venue_type', 'audience', 'target_class_ids', 'recurrence', 'requires_rsvp', 'rsvp_deadline',
                'max_attendees', 'color', 'status')


def _event_row(row):
    if row:
        row['target_class_ids'] = load_json(row.get('target_class_ids'), [])
        row['recurrence'] = load_json(row.get('recurrence'), None)
    return row


def _clean_event_fields(fields):
    cleaned = {k: v for k, v in fields.items() if k in EVENT_FIELDS}
    if 'event_type' in cleaned:
        cleaned['event_type'] = choice(cleaned['event_type'], EVENT_TYPES, 'event type')
    if 'status' in cleaned:
        cleaned['status'] = choice(cleaned['status'], EVENT_STATUSES, 'event status')
    if 'audience' in cleaned:
        cleaned['audience'] = choice(cleaned['audience'], AUDIENCES, 'audience')
    for key in ('start_date', 'end_date', 'rsvp_deadline'):
        if key in cleaned:
            cleaned[key] = parse_date(cleaned[key])
    if 'target_class_ids' in cleaned:
        cleaned['target_class_ids'] = dump_json([int(cid) for cid in cleaned['target_class_ids'] or []])
    if 'recurrence' in cleaned:
        cleaned['recurrence'] = dump_json(cleaned['recurrence']) if cleaned['recurrence'] else None
    if 'max_attendees' in cleaned and cleaned['max_attendees'] not in (None, ''):
        cleaned['max_attendees'] = safe_int(cleaned['max_attendees'], 0)
        if cleaned['max_attendees'] < 1:
            raise ValueError('Maximum attendees must be at least 1.')
    return cleaned


def _check_dates(start_date, end_date):
    if not start_date or not end_date:
        raise ValueError('Start and end dates are required.')
    if end_date < start_date:
        raise ValueError('End date cannot be before start date.')


def _admin_recipients_with_cursor(c, school_id):
    recipients = user_ids_with_role_with_cursor(c, 'school_admin', school_id)
    if not recipients:
        recipients = user_ids_with_role_with_cursor(c, 'school_admin', school_id, active_only=False)
    return recipients


def _notify_admins_with_cursor(c, school_id, event_id, title, message, type='info'):
    for user_id in _admin_recipients_with_cursor(c, school_id):
        create_notification_with_cursor(c, user_id, title, message, type, 'school_admin', school_id,
                                        f'/school-admin/events/{event_id}', 'event', event_id)


def create_event(school_id, title, event_type, start_date, end_date=None, user=None, notify=True, **fields):
    user = user or {}
    title = (title or '').strip()
    if not title:
        raise ValueError('Event title is required.')
    cleaned = _clean_event_fields(dict(fields, event_type=event_type, start_date=start_date,
                                       end_date=end_date or start_date))
    _check_dates(cleaned['start_date'], cleaned['end_date'])
    if cleaned.get('audience') == 'class' and not load_json(cleaned.get('target_class_ids'), []):
        raise ValueError('Select at least one class for a class event.')
    cleaned.setdefault('color', EVENT_COLORS[cleaned['event_type']])
    cleaned['status'] = 'upcoming'
    cleaned.update({
        'school_id': school_id,
        'event_code': generate_code('EVT'),
        'title': title,
        'created_by': user.get('id'),
        'created_at': datetime.now(),
        'updated_at': datetime.now(),
    })
    columns = ', '.join(cleaned)
    placeholders = ', '.join('?' for _ in cleaned)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'INSERT INTO events ({columns}) VALUES ({placeholders}) RETURNING id', tuple(cleaned.values()))
        event_id = c.fetchone()['id']
        if notify:
            _notify_admins_with_cursor(c, school_id, event_id, 'New Event Created',
                                       f"{title} on {cleaned['start_date']:%Y-%m-%d}")
    logging.info("Event %s created for school %s", cleaned['event_code'], school_id)
    return event_id


def get_event(school_id, event_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM events WHERE id = ? AND school_id = ?', (event_id, school_id))
        return _event_row(fetch_one(c))


def require_event(school_id, event_id):
    event = get_event(school_id, event_id)
    if not event:
        raise LookupError('Event not found.')
    return event


def list_events(school_id, event_type=None, status=None, start_date=None, end_date=None, search=''):
    query = 'SELECT * FROM events WHERE school_id = ?'
    params = [school_id]
    if event_type:
        query += ' AND event_type = ?'
        params.append(event_type)
    if status:
        query += ' AND status = ?'
        params.append(status)
    if start_date:
        query += ' AND end_date >= ?'
        params.append(parse_date(start_date))
    if end_date:
        query += ' AND start_date <= ?'
        params.append(parse_date(end_date))
    if search:
        query += ' AND (LOWER(title) LIKE ? OR LOWER(COALESCE(description, \'\')) LIKE ?)'
        needle = f'%{search.strip().lower()}%'
        params.extend([needle, needle])
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY start_date, start_time', tuple(params))
        return [_event_row(row) for row in fetch_all(c)]


def events_in_range(school_id, start_date, end_date):
    start_date, end_date = parse_date(start_date), parse_date(end_date)
    _check_dates(start_date, end_date)
    return list_events(school_id, start_date=start_date, end_date=end_date)


def upcoming_events(school_id, limit=10, today=None):
    today = parse_date(today) or date.today()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT * FROM events WHERE school_id = ? AND start_date >= ? AND status <> 'cancelled'
               ORDER BY start_date, start_time LIMIT ?''',
            (school_id, today, max(1, safe_int(limit, 10))),
        )
        return [_event_row(row) for row in fetch_all(c)]


def update_event(school_id, event_id, user=None, **fields):
    event = require_event(school_id, event_id)
    if event['status'] == 'cancelled':
        raise ValueError('Cancelled events cannot be edited.')
    cleaned = _clean_event_fields(fields)
    if 'title' in cleaned:
        cleaned['title'] = (cleaned['title'] or '').strip()
        if not cleaned['title']:
            raise ValueError('Event title is required.')
    _check_dates(cleaned.get('start_date', event['start_date']), cleaned.get('end_date', event['end_date']))
    if 'event_type' in cleaned and 'color' not in cleaned:
        cleaned['color'] = EVENT_COLORS[cleaned['event_type']]
    if not cleaned:
        return
    cleaned['updated_at'] = datetime.now()
    assignments = ', '.join(f'{col} = ?' for col in cleaned)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'UPDATE events SET {assignments} WHERE id = ? AND school_id = ?',
                   tuple(cleaned.values()) + (event_id, school_id))
        _notify_admins_with_cursor(c, school_id, event_id, 'Event Updated', f"{cleaned.get('title', event['title'])} was updated.")


def cancel_event(school_id, event_id, reason, user=None):
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A cancellation reason is required.')
    event = require_event(school_id, event_id)
    if event['status'] in ('cancelled', 'completed'):
        raise ValueError(f"Event is already {event['status']}.")
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            "UPDATE events SET status = 'cancelled', cancellation_reason = ?, updated_at = ? WHERE id = ?",
            (reason, datetime.now(), event_id),
        )
        _notify_admins_with_cursor(c, school_id, event_id, 'Event Cancelled', f"{event['title']} was cancelled: {reason}", 'warning')
        db_execute(c, 'SELECT respondent_id FROM event_rsvps WHERE event_id = ?', (event_id,))
        for row in c.fetchall():
            create_notification_with_cursor(c, row['respondent_id'], 'Event Cancelled',
                                            f"{event['title']} was cancelled: {reason}", 'warning', '', school_id,
                                            '', 'event', event_id)


def duplicate_event(school_id, event_id, start_date, end_date=None, user=None):
    """Copy an event to new dates as a fresh upcoming event."""
    event = require_event(school_id, event_id)
    start_date = parse_date(start_date)
    if not end_date:
        end_date = start_date + (event['end_date'] - event['start_date'])
    copied = {k: event[k] for k in EVENT_FIELDS if k not in ('title', 'event_type', 'start_date', 'end_date', 'status', 'rsvp_deadline')}
    return create_event(school_id, f"{event['title']} (Copy)", event['event_type'], start_date, end_date, user=user, **copied)


def delete_event(school_id, event_id):
    require_event(school_id, event_id)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM event_rsvps WHERE event_id = ?', (event_id,))
        db_execute(c, "DELETE FROM notifications WHERE related_type = 'event' AND related_id = ?", (event_id,))
        db_execute(c, 'DELETE FROM events WHERE id = ? AND school_id = ?', (event_id, school_id))


def refresh_event_statuses(school_id, today=None):
    """Move upcoming events to ongoing and finished ones to completed."""
    today = parse_date(today) or date.today()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "UPDATE events SET status = 'completed' WHERE school_id = ? AND status IN ('upcoming', 'ongoing') AND end_date < ?",
                   (school_id, today))
        completed = int(c.rowcount or 0)
        db_execute(c, "UPDATE events SET status = 'ongoing' WHERE school_id = ? AND status = 'upcoming' AND start_date <= ? AND end_date >= ?",
                   (school_id, today, today))
        return {'completed': completed, 'ongoing': int(c.rowcount or 0)}


def event_stats(school_id, today=None):
    today = parse_date(today) or date.today()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT event_type, status, start_date FROM events WHERE school_id = ?', (school_id,))
        rows = fetch_all(c)
    by_type = {event_type: 0 for event_type in EVENT_COLORS}
    by_status = {status: 0 for status in EVENT_STATUSES}
    this_month = 0
    for row in rows:
        by_type[row['event_type']] = by_type.get(row['event_type'], 0) + 1
        by_status[row['status']] = by_status.get(row['status'], 0) + 1
        start = parse_date(row['start_date'])
        if start and start.year == today.year and start.month == today.month:
            this_month += 1
    return {'total': len(rows), 'by_type': by_type, 'by_status': by_status, 'this_month': this_month}


# ==================== RSVP ====================

def rsvp_refusal(event, going_count=0, today=None, status='attending'):
    """Return why an RSVP cannot be accepted, or None."""
    today = parse_date(today) or date.today()
    if event['status'] == 'cancelled':
        return 'This event has been cancelled.'
    if not event.get('requires_rsvp'):
        return 'This event does not require an RSVP.'
    deadline = parse_date(event.get('rsvp_deadline'))
    if deadline and today > deadline:
        return 'The RSVP deadline has passed.'
    if status == 'attending' and event.get('max_attendees') and going_count >= int(event['max_attendees']):
        return 'This event is full.'
    return None


def respond_to_event(school_id, event_id, respondent, status, guests=0, notes='', today=None):
    """Create or update the respondent's RSVP."""
    status = choice(status, RSVP_STATUSES - {'pending'}, 'RSVP status')
    guests = max(0, safe_int(guests, 0))
    event = require_event(school_id, event_id)
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            "SELECT COALESCE(SUM(1 + guests), 0) AS going FROM event_rsvps WHERE event_id = ? AND status = 'attending' AND respondent_id <> ?",
            (event_id, respondent['id']),
        )
        going = int(c.fetchone()['going'] or 0)
        refusal = rsvp_refusal(event, going + guests, today, status)
        if refusal:
            raise ValueError(refusal)
        db_execute(
            c,
            '''INSERT INTO event_rsvps (event_id, respondent_id, respondent_role, respondent_name, status, guests, notes, responded_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (event_id, respondent_id) DO UPDATE SET
                 status = EXCLUDED.status, guests = EXCLUDED.guests, notes = EXCLUDED.notes, responded_at = EXCLUDED.responded_at
               RETURNING id''',
            (event_id, respondent['id'], respondent.get('role', ''), respondent.get('name', ''), status, guests, notes or '', now, now),
        )
        return c.fetchone()['id']


def create_pending_rsvps(school_id, event_id, respondents):
    """Invite respondents; existing RSVPs are left untouched."""
    event = require_event(school_id, event_id)
    if not event.get('requires_rsvp'):
        raise ValueError('This event does not require an RSVP.')
    created = 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for respondent in respondents or []:
            db_execute(
                c,
                '''INSERT INTO event_rsvps (event_id, respondent_id, respondent_role, respondent_name, status, created_at)
                   VALUES (?, ?, ?, ?, 'pending', ?)
                   ON CONFLICT (event_id, respondent_id) DO NOTHING''',
                (event_id, respondent['id'], respondent.get('role', ''), respondent.get('name', ''), datetime.now()),
            )
            created += int(c.rowcount or 0)
    return created


def list_rsvps(school_id, event_id, status=None):
    require_event(school_id, event_id)
    query = 'SELECT * FROM event_rsvps WHERE event_id = ?'
    params = [event_id]
    if status:
        query += ' AND status = ?'
        params.append(choice(status, RSVP_STATUSES, 'RSVP status'))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY respondent_name', tuple(params))
        return fetch_all(c)


def pending_respondents(school_id, event_id):
    return list_rsvps(school_id, event_id, 'pending')


def summarize_rsvps(rsvps):
    counts = {status: 0 for status in RSVP_STATUSES}
    guests = 0
    for rsvp in rsvps:
        counts[rsvp['status']] = counts.get(rsvp['status'], 0) + 1
        if rsvp['status'] == 'attending':
            guests += int(rsvp.get('guests') or 0)
    total = len(rsvps)
    responded = total - counts['pending']
    return {
        'total': total,
        **counts,
        'total_guests': guests,
        'expected_attendance': counts['attending'] + guests,
        'response_rate': round(responded / total * 100, 1) if total else 0.0,
    }


def rsvp_stats(school_id, event_id):
    return summarize_rsvps(list_rsvps(school_id, event_id))


def event_notifications(recipient_id, unread_only=False):
    query = "SELECT * FROM notifications WHERE recipient_id = ? AND related_type = 'event'"
    if unread_only:
        query += ' AND is_read = FALSE'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY created_at DESC', (recipient_id,))
        return fetch_all(c)
