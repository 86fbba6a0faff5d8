"""Teacher/parent conversations and school announcements."""

import logging
from datetime import date, datetime

from accounts import create_notification_with_cursor
from db import db_connection, db_execute, fetch_one, fetch_all, generate_code, parse_date, choice

PREVIEW_LENGTH = 100
ANNOUNCEMENT_AUDIENCES = {'all', 'teachers', 'students', 'parents', 'class'}
ANNOUNCEMENT_PRIORITIES = {'low', 'normal', 'high', 'urgent'}
ANNOUNCEMENT_STATUSES = {'draft', 'published', 'archived'}
ROLE_AUDIENCE = {'teacher': 'teachers', 'student': 'students', 'parent': 'parents'}


def message_preview(body):
    body = ' '.join((body or '').split())
    return body if len(body) <= PREVIEW_LENGTH else body[:PREVIEW_LENGTH - 3] + '...'


def _participant_side(conversation, user_id):
    if int(conversation['teacher_user_id']) == int(user_id):
        return 'teacher'
    if int(conversation['parent_user_id']) == int(user_id):
        return 'parent'
    raise PermissionError('You are not part of this conversation.')


def _load_conversation_with_cursor(c, school_id, conversation_id):
    db_execute(c, 'SELECT * FROM conversations WHERE id = ? AND school_id = ?', (conversation_id, school_id))
    conversation = fetch_one(c)
    if not conversation:
        raise LookupError('Conversation not found.')
    return conversation


def _send_with_cursor(c, school_id, conversation, sender_id, body, now):
    side = _participant_side(conversation, sender_id)
    if conversation['status'] != 'active':
        raise ValueError('This conversation has been archived.')
    db_execute(
        c,
        '''INSERT INTO messages (conversation_id, message_code, sender_id, sender_role, body, is_read, created_at)
           VALUES (?, ?, ?, ?, ?, FALSE, ?)
           RETURNING id''',
        (conversation['id'], generate_code('MSG'), sender_id, side, body, now),
    )
    message_id = c.fetchone()['id']
    counter = 'parent_unread' if side == 'teacher' else 'teacher_unread'
    db_execute(
        c,
        f'UPDATE conversations SET last_message_preview = ?, last_message_at = ?, {counter} = {counter} + 1 WHERE id = ?',
        (message_preview(body), now, conversation['id']),
    )
    recipient = conversation['parent_user_id'] if side == 'teacher' else conversation['teacher_user_id']
    create_notification_with_cursor(c, recipient, 'New Message', message_preview(body), 'info',
                                    'parent' if side == 'teacher' else 'teacher', school_id,
                                    f"/messages/{conversation['id']}", 'conversation', conversation['id'])
    return message_id


def start_conversation(school_id, teacher_user_id, parent_user_id, body, subject='', student_id=None, sender_id=None):
    """Open (or reuse) the teacher/parent conversation and post the first message.

    The teacher starts the conversation unless ``sender_id`` says otherwise.
    Returns ``(conversation_id, message_id)``.
    """
    body = (body or '').strip()
    if not body:
        raise ValueError('Message cannot be empty.')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT role, school_id FROM users WHERE id IN (?, ?)', (teacher_user_id, parent_user_id))
        roles = sorted(row['role'] for row in c.fetchall() if int(row['school_id'] or 0) == int(school_id))
        if roles != ['parent', 'teacher']:
            raise ValueError('Conversations are between a teacher and a parent of the same school.')
        query = '''SELECT * FROM conversations WHERE school_id = ? AND teacher_user_id = ? AND parent_user_id = ?
                   AND status = 'active' '''
        params = [school_id, teacher_user_id, parent_user_id]
        if student_id:
            query += ' AND student_id = ?'
            params.append(student_id)
        db_execute(c, query, tuple(params))
        conversation = fetch_one(c)
        if not conversation:
            db_execute(
                c,
                '''INSERT INTO conversations (school_id, conversation_code, teacher_user_id, parent_user_id, student_id, subject,
                                              teacher_unread, parent_unread, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, 0, 'active', ?)
                   RETURNING id''',
                (school_id, generate_code('CONV'), teacher_user_id, parent_user_id, student_id, (subject or '').strip(), now),
            )
            conversation = {'id': c.fetchone()['id'], 'teacher_user_id': teacher_user_id,
                            'parent_user_id': parent_user_id, 'status': 'active'}
        message_id = _send_with_cursor(c, school_id, conversation, sender_id or teacher_user_id, body, now)
    return conversation['id'], message_id


def send_message(school_id, conversation_id, sender_id, body):
    body = (body or '').strip()
    if not body:
        raise ValueError('Message cannot be empty.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        conversation = _load_conversation_with_cursor(c, school_id, conversation_id)
        message_id = _send_with_cursor(c, school_id, conversation, sender_id, body, datetime.now())
    logging.info("Message %s sent in conversation %s", message_id, conversation_id)
    return message_id


def list_messages(school_id, conversation_id, user_id):
    with db_connection() as conn:
        c = conn.cursor()
        conversation = _load_conversation_with_cursor(c, school_id, conversation_id)
        _participant_side(conversation, user_id)
        db_execute(c, 'SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, id', (conversation_id,))
        return fetch_all(c)


def mark_messages_read(school_id, conversation_id, user_id):
    """Mark the other participant's messages read and clear the reader's counter."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        conversation = _load_conversation_with_cursor(c, school_id, conversation_id)
        side = _participant_side(conversation, user_id)
        db_execute(
            c,
            'UPDATE messages SET is_read = TRUE, read_at = ? WHERE conversation_id = ? AND sender_id <> ? AND is_read = FALSE',
            (datetime.now(), conversation_id, user_id),
        )
        marked = int(c.rowcount or 0)
        db_execute(c, f'UPDATE conversations SET {side}_unread = 0 WHERE id = ?', (conversation_id,))
        return marked


def archive_conversation(school_id, conversation_id, user_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        conversation = _load_conversation_with_cursor(c, school_id, conversation_id)
        _participant_side(conversation, user_id)
        db_execute(c, "UPDATE conversations SET status = 'archived' WHERE id = ?", (conversation_id,))


def list_conversations(school_id, user_id, include_archived=False):
    query = '''SELECT cv.*, st.first_name AS student_first_name, st.last_name AS student_last_name,
                      tu.first_name AS teacher_first_name, tu.last_name AS teacher_last_name,
                      pu.first_name AS parent_first_name, pu.last_name AS parent_last_name
               FROM conversations cv
               LEFT JOIN students st ON st.id = cv.student_id
               LEFT JOIN users tu ON tu.id = cv.teacher_user_id
               LEFT JOIN users pu ON pu.id = cv.parent_user_id
               WHERE cv.school_id = ? AND (cv.teacher_user_id = ? OR cv.parent_user_id = ?)'''
    if not include_archived:
        query += " AND cv.status = 'active'"
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY cv.last_message_at DESC NULLS LAST, cv.created_at DESC', (school_id, user_id, user_id))
        rows = fetch_all(c)
    for row in rows:
        side = 'teacher' if int(row['teacher_user_id']) == int(user_id) else 'parent'
        other = 'parent' if side == 'teacher' else 'teacher'
        row['unread'] = int(row[f'{side}_unread'] or 0)
        row['other_party'] = f"{row.get(f'{other}_first_name') or ''} {row.get(f'{other}_last_name') or ''}".strip()
    return rows


def unread_count(school_id, user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT COALESCE(SUM(CASE WHEN teacher_user_id = ? THEN teacher_unread ELSE parent_unread END), 0) AS unread
               FROM conversations WHERE school_id = ? AND (teacher_user_id = ? OR parent_user_id = ?) AND status = 'active' ''',
            (user_id, school_id, user_id, user_id),
        )
        return int(c.fetchone()['unread'] or 0)


# ==================== ANNOUNCEMENTS ====================

def create_announcement(school_id, title, content, audience='all', class_id=None, priority='normal',
                        expires_at=None, publish=False, user=None):
    user = user or {}
    title, content = (title or '').strip(), (content or '').strip()
    if not title or not content:
        raise ValueError('Announcement title and content are required.')
    audience = choice(audience, ANNOUNCEMENT_AUDIENCES, 'audience')
    priority = choice(priority, ANNOUNCEMENT_PRIORITIES, 'priority')
    if audience == 'class' and not class_id:
        raise ValueError('Select a class for a class announcement.')
    expires_at = parse_date(expires_at)
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO announcements (school_id, title, content, audience, class_id, priority, status, expires_at,
                                          created_by, published_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (school_id, title, content, audience, class_id if audience == 'class' else None, priority,
             'published' if publish else 'draft', expires_at, user.get('id'), now if publish else None, now, now),
        )
        return c.fetchone()['id']


def set_announcement_status(school_id, announcement_id, status):
    status = choice(status, ANNOUNCEMENT_STATUSES, 'announcement status')
    now = datetime.now()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE announcements SET status = ?, updated_at = ?,
                      published_at = CASE WHEN ? = 'published' THEN COALESCE(published_at, ?) ELSE published_at END
               WHERE id = ? AND school_id = ?''',
            (status, now, status, now, announcement_id, school_id),
        )
        if not c.rowcount:
            raise LookupError('Announcement not found.')


def update_announcement(school_id, announcement_id, **fields):
    updates = {k: v for k, v in fields.items() if k in ('title', 'content', 'audience', 'class_id', 'priority', 'expires_at')}
    if 'audience' in updates:
        updates['audience'] = choice(updates['audience'], ANNOUNCEMENT_AUDIENCES, 'audience')
    if 'priority' in updates:
        updates['priority'] = choice(updates['priority'], ANNOUNCEMENT_PRIORITIES, 'priority')
    if 'expires_at' in updates:
        updates['expires_at'] = parse_date(updates['expires_at'])
    for key in ('title', 'content'):
        if key in updates and not (updates[key] or '').strip():
            raise ValueError(f'Announcement {key} cannot be empty.')
    if not updates:
        return
    updates['updated_at'] = datetime.now()
    assignments = ', '.join(f'{col} = ?' for col in updates)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT status FROM announcements WHERE id = ? AND school_id = ?', (announcement_id, school_id))
        row = c.fetchone()
        if not row:
            raise LookupError('Announcement not found.')
        if row['status'] == 'archived':
            raise ValueError('Archived announcements cannot be edited.')
        db_execute(c, f'UPDATE announcements SET {assignments} WHERE id = ? AND school_id = ?',
                   tuple(updates.values()) + (announcement_id, school_id))


def delete_announcement(school_id, announcement_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM announcements WHERE id = ? AND school_id = ?', (announcement_id, school_id))
        if not c.rowcount:
            raise LookupError('Announcement not found.')


def list_announcements(school_id, status=None):
    query = 'SELECT * FROM announcements WHERE school_id = ?'
    params = [school_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query + ' ORDER BY created_at DESC', tuple(params))
        return fetch_all(c)


def announcements_for(school_id, role, class_ids=None, today=None):
    """Published, unexpired announcements visible to a role (and its classes)."""
    today = parse_date(today) or date.today()
    audiences = ['all']
    if role in ROLE_AUDIENCE:
        audiences.append(ROLE_AUDIENCE[role])
    placeholders = ', '.join('?' for _ in audiences)
    query = f'''SELECT * FROM announcements WHERE school_id = ? AND status = 'published'
                AND (expires_at IS NULL OR expires_at >= ?) AND (audience IN ({placeholders})'''
    params = [school_id, today] + audiences
    class_ids = [int(cid) for cid in class_ids or []]
    if class_ids:
        query += f" OR (audience = 'class' AND class_id IN ({', '.join('?' for _ in class_ids)}))"
        params.extend(class_ids)
    query += ')'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            query + " ORDER BY CASE priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 WHEN 'normal' THEN 2 ELSE 3 END, published_at DESC",
            tuple(params),
        )
        return fetch_all(c)
