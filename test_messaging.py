import contextlib

import pytest

import messaging


def test_message_preview_collapses_whitespace_and_truncates():
    assert messaging.message_preview("  Hello \n there  ") == "Hello there"
    long_body = "x" * 150
    preview = messaging.message_preview(long_body)
    assert len(preview) == messaging.PREVIEW_LENGTH
    assert preview.endswith("...")
    assert messaging.message_preview("y" * 100) == "y" * 100


def test_participant_side():
    conversation = {"teacher_user_id": 5, "parent_user_id": "8"}
    assert messaging._participant_side(conversation, "5") == "teacher"
    assert messaging._participant_side(conversation, 8) == "parent"
    with pytest.raises(PermissionError):
        messaging._participant_side(conversation, 9)


def test_empty_message_rejected():
    with pytest.raises(ValueError, match="empty"):
        messaging.start_conversation(1, 5, 8, "   ")
    with pytest.raises(ValueError, match="empty"):
        messaging.send_message(1, 3, 5, "")


def fake_messaging_db(monkeypatch, conversation, executed, notifications, users=None):
    class FakeCursor:
        rowcount = 1

        def fetchone(self):
            return {"id": 77}

        def fetchall(self):
            return users or []

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    monkeypatch.setattr(messaging, "db_connection", fake_db_connection)
    monkeypatch.setattr(messaging, "db_execute", lambda c, query, params=None: executed.append((query, params)))
    monkeypatch.setattr(messaging, "fetch_one", lambda c: dict(conversation) if conversation else None)
    monkeypatch.setattr(messaging, "create_notification_with_cursor",
                        lambda c, recipient_id, title, message, *args, **kwargs: notifications.append((recipient_id, message)))


def test_teacher_message_bumps_parent_unread_and_notifies_parent(monkeypatch):
    executed, notifications = [], []
    conversation = {"id": 3, "teacher_user_id": 5, "parent_user_id": 8, "status": "active"}
    fake_messaging_db(monkeypatch, conversation, executed, notifications)

    assert messaging.send_message(1, 3, 5, "Please sign the permission slip.") == 77
    assert any("parent_unread = parent_unread + 1" in query for query, _ in executed)
    assert notifications == [(8, "Please sign the permission slip.")]


def test_archived_conversation_refuses_messages(monkeypatch):
    conversation = {"id": 3, "teacher_user_id": 5, "parent_user_id": 8, "status": "archived"}
    fake_messaging_db(monkeypatch, conversation, [], [])
    with pytest.raises(ValueError, match="archived"):
        messaging.send_message(1, 3, 8, "Hello")


def test_outsider_cannot_send(monkeypatch):
    conversation = {"id": 3, "teacher_user_id": 5, "parent_user_id": 8, "status": "active"}
    fake_messaging_db(monkeypatch, conversation, [], [])
    with pytest.raises(PermissionError):
        messaging.send_message(1, 3, 12, "Hello")


def test_mark_read_clears_only_the_readers_counter(monkeypatch):
    executed = []
    conversation = {"id": 3, "teacher_user_id": 5, "parent_user_id": 8, "status": "active"}
    fake_messaging_db(monkeypatch, conversation, executed, [])
    assert messaging.mark_messages_read(1, 3, 8) == 1
    assert executed[-1][0] == "UPDATE conversations SET parent_unread = 0 WHERE id = ?"


def test_conversation_requires_teacher_and_parent_of_same_school(monkeypatch):
    users = [{"role": "teacher", "school_id": 1}, {"role": "parent", "school_id": 2}]
    fake_messaging_db(monkeypatch, None, [], [], users=users)
    with pytest.raises(ValueError, match="same school"):
        messaging.start_conversation(1, 5, 8, "Hello")


def test_start_conversation_creates_and_sends_first_message(monkeypatch):
    executed, notifications = [], []
    users = [{"role": "teacher", "school_id": 1}, {"role": "parent", "school_id": 1}]
    fake_messaging_db(monkeypatch, None, executed, notifications, users=users)
    conversation_id, message_id = messaging.start_conversation(1, 5, 8, "Welcome to the new term", subject="Term start")
    assert (conversation_id, message_id) == (77, 77)
    assert any("INSERT INTO conversations" in query for query, _ in executed)
    assert notifications == [(8, "Welcome to the new term")]


def test_announcement_requires_title_and_content():
    with pytest.raises(ValueError):
        messaging.create_announcement(1, "", "Body")
