"""Support tickets between schools and the platform's super admins."""

import logging
from datetime import datetime

from accounts import create_notification_with_cursor, user_ids_with_role_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, dump_json, load_json, choice

TICKET_STATUSES = {'open', 'in_progress', 'waiting_customer', 'resolved', 'closed'}
PRIORITIES = {'low', 'medium', 'high', 'urgent'}
CATEGORIES = {'payment', 'technical', 'account', 'general'}
ATTACHMENT_FIELDS = ('name', 'url', 'size', 'content_type')


def ticket_number(existing_count):
    return f'TKT-{int(existing_count) + 1:04d}'


def clean_attachments(attachments):
    """Keep attachment metadata only; files live with the uploader."""
    if not attachments:
        return []
    if not isinstance(attachments, list):
        raise ValueError('Attachments must be a list.')
    cleaned = []
    for attachment in attachments:
        if not isinstance(attachment, dict) or not attachment.get('name') or not attachment.get('url'):
            raise ValueError('Each attachment needs a name and a url.')
        cleaned.append({key: attachment[key] for key in ATTACHMENT_FIELDS if attachment.get(key) is not None})
    return cleaned


def _is_platform_admin(user):
    return user.get('role') == 'super_admin'


def _load_ticket_with_cursor(c, ticket_id, user):
    db_execute(c, 'SELECT * FROM support_tickets WHERE id = ?', (ticket_id,))
    ticket = fetch_one(c)
    if not ticket:
        raise LookupError('Ticket not found.')
    if not _is_platform_admin(user) and int(ticket['requester_id']) != int(user.get('id') or 0):
        raise PermissionError('You can only access your own tickets.')
    return ticket


def _notify_platform_with_cursor(c, ticket, title, message):
    for admin_id in user_ids_with_role_with_cursor(c, 'super_admin'):
        create_notification_with_cursor(c, admin_id, title, message, 'info', 'super_admin', None,
                                        f"/super-admin/support/{ticket['id']}", 'support_ticket', ticket['id'])


def _notify_requester_with_cursor(c, ticket, title, message):
    create_notification_with_cursor(c, ticket['requester_id'], title, message, 'info', ticket.get('requester_role') or '',
                                    ticket.get('school_id'), f"/support/{ticket['id']}", 'support_ticket', ticket['id'])


def _insert_message_with_cursor(c, ticket_id, user, body, is_internal=False, attachments=None):
    db_execute(
        c,
        '''INSERT INTO support_ticket_messages (ticket_id, sender_id, sender_name, sender_role, body, is_internal,
                                                attachments, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           RETURNING id''',
        (ticket_id, user.get('id'), user.get('name') or '', user.get('role') or '', body, bool(is_internal),
         dump_json(clean_attachments(attachments)), datetime.now()),
    )
    return c.fetchone()['id']


def create_ticket(user, subject, description, category, priority='medium', school_id=None, attachments=None):
    """Open a ticket; the description becomes its first message."""
    subject = (subject or '').strip()
    description = (description or '').strip()
    if not subject or not description:
        raise ValueError('Subject and description are required.')
    category = choice(category, CATEGORIES, 'ticket category')
    priority = choice(priority or 'medium', PRIORITIES, 'priority')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM support_tickets')
        number = ticket_number(c.fetchone()['total'] or 0)
        db_execute(
            c,
            '''INSERT INTO support_tickets (ticket_number, school_id, requester_id, requester_name, requester_role, subject,
                                            description, category, priority, status, response_count, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', 0, ?, ?)
               RETURNING id''',
            (number, school_id, user.get('id'), user.get('name') or '', user.get('role') or '', subject, description,
             category, priority, now, now),
        )
        ticket = {'id': c.fetchone()['id'], 'ticket_number': number, 'school_id': school_id}
        _insert_message_with_cursor(c, ticket['id'], user, description, attachments=attachments)
        _notify_platform_with_cursor(c, ticket, f'New Support Ticket {number}', f"{user.get('name') or 'A user'}: {subject}")
    logging.info("Support ticket %s opened by user %s (%s)", number, user.get('id'), priority)
    return ticket


def list_tickets(school_id=None, requester_id=None, status=None, priority=None, assigned_to=None, unassigned_only=False):
    query = '''SELECT st.*, sc.name AS school_name
               FROM support_tickets st LEFT JOIN schools sc ON sc.id = st.school_id
               WHERE 1 = 1'''
    params = []
    for column, value in (('st.school_id', school_id), ('st.requester_id', requester_id), ('st.status', status),
                          ('st.priority', priority), ('st.assigned_to', assigned_to)):
        if value:
            query += f' AND {column} = ?'
            params.append(value)
    if unassigned_only:
        query += " AND st.assigned_to IS NULL AND st.status NOT IN ('resolved', 'closed')"
    query += ''' ORDER BY CASE st.priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END,
                          st.created_at DESC'''
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, tuple(params))
        return fetch_all(c)


def get_ticket(ticket_id, user):
    """Ticket with its thread; internal notes are shown to platform admins only."""
    with db_connection() as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        query = 'SELECT * FROM support_ticket_messages WHERE ticket_id = ?'
        if not _is_platform_admin(user):
            query += ' AND is_internal = FALSE'
        db_execute(c, query + ' ORDER BY created_at, id', (ticket_id,))
        messages = fetch_all(c)
    for message in messages:
        message['attachments'] = load_json(message.get('attachments'), [])
    ticket['messages'] = messages
    return ticket


def add_message(ticket_id, user, body, is_internal=False, attachments=None):
    """Reply on a ticket and notify the other side; internal notes notify nobody."""
    body = (body or '').strip()
    if not body:
        raise ValueError('Message cannot be empty.')
    from_admin = _is_platform_admin(user)
    if is_internal and not from_admin:
        raise PermissionError('Only platform admins can add internal notes.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        if ticket['status'] == 'closed':
            raise ValueError('This ticket is closed. Reopen it to reply.')
        message_id = _insert_message_with_cursor(c, ticket_id, user, body, is_internal, attachments)
        if is_internal:
            return message_id
        db_execute(
            c,
            '''UPDATE support_tickets SET last_response_by = ?, response_count = response_count + 1, updated_at = ?
               WHERE id = ?''',
            ('admin' if from_admin else 'customer', datetime.now(), ticket_id),
        )
        title = f"New reply on {ticket['ticket_number']}"
        if from_admin:
            _notify_requester_with_cursor(c, ticket, title, ticket['subject'])
        else:
            _notify_platform_with_cursor(c, ticket, title, ticket['subject'])
    return message_id


def update_ticket_status(ticket_id, status, user):
    status = choice(status, TICKET_STATUSES, 'ticket status')
    if not _is_platform_admin(user):
        raise PermissionError('Only platform admins can change ticket status.')
    now = datetime.now()
    extra_sql, extra_params = '', ()
    if status == 'resolved':
        extra_sql, extra_params = ', resolved_at = ?', (now,)
    elif status == 'closed':
        extra_sql, extra_params = ', closed_at = ?', (now,)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        db_execute(c, f'UPDATE support_tickets SET status = ?, updated_at = ?{extra_sql} WHERE id = ?',
                   (status, now) + extra_params + (ticket_id,))
        _notify_requester_with_cursor(c, ticket, f"Ticket {ticket['ticket_number']} updated",
                                      f"Status changed to {status.replace('_', ' ')}.")
    return status


def update_ticket_priority(ticket_id, priority, user):
    priority = choice(priority, PRIORITIES, 'priority')
    if not _is_platform_admin(user):
        raise PermissionError('Only platform admins can change ticket priority.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_ticket_with_cursor(c, ticket_id, user)
        db_execute(c, 'UPDATE support_tickets SET priority = ?, updated_at = ? WHERE id = ?', (priority, datetime.now(), ticket_id))
    return priority


def assign_ticket(ticket_id, assignee_id, user):
    if not _is_platform_admin(user):
        raise PermissionError('Only platform admins can assign tickets.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        db_execute(c, "SELECT id FROM users WHERE id = ? AND role = 'super_admin'", (assignee_id,))
        if not c.fetchone():
            raise ValueError('Tickets can only be assigned to platform admins.')
        db_execute(c, "UPDATE support_tickets SET assigned_to = ?, status = 'in_progress', updated_at = ? WHERE id = ?",
                   (assignee_id, datetime.now(), ticket_id))
        create_notification_with_cursor(c, assignee_id, f"Ticket {ticket['ticket_number']} assigned to you", ticket['subject'],
                                        'info', 'super_admin', None, f'/super-admin/support/{ticket_id}',
                                        'support_ticket', ticket_id)


def close_ticket(ticket_id, user):
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        if ticket['status'] == 'closed':
            raise ValueError('Ticket is already closed.')
        db_execute(c, "UPDATE support_tickets SET status = 'closed', closed_at = ?, updated_at = ? WHERE id = ?",
                   (now, now, ticket_id))
        title = f"Ticket {ticket['ticket_number']} closed"
        if _is_platform_admin(user):
            _notify_requester_with_cursor(c, ticket, title, ticket['subject'])
        else:
            _notify_platform_with_cursor(c, ticket, title, ticket['subject'])


def reopen_ticket(ticket_id, user):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ticket = _load_ticket_with_cursor(c, ticket_id, user)
        if ticket['status'] not in ('resolved', 'closed'):
            raise ValueError('Only resolved or closed tickets can be reopened.')
        db_execute(
            c,
            "UPDATE support_tickets SET status = 'open', resolved_at = NULL, closed_at = NULL, updated_at = ? WHERE id = ?",
            (datetime.now(), ticket_id),
        )
        title = f"Ticket {ticket['ticket_number']} reopened"
        if _is_platform_admin(user):
            _notify_requester_with_cursor(c, ticket, title, ticket['subject'])
        else:
            _notify_platform_with_cursor(c, ticket, title, ticket['subject'])


def summarize_tickets(tickets):
    stats = {'total': len(tickets), 'high_priority': 0, 'unassigned': 0}
    for status in TICKET_STATUSES:
        stats[status] = 0
    for ticket in tickets:
        stats[ticket['status']] = stats.get(ticket['status'], 0) + 1
        active = ticket['status'] not in ('resolved', 'closed')
        if active and ticket.get('priority') in ('high', 'urgent'):
            stats['high_priority'] += 1
        if active and not ticket.get('assigned_to'):
            stats['unassigned'] += 1
    return stats


def ticket_stats(school_id=None):
    return summarize_tickets(list_tickets(school_id=school_id))
