import contextlib

import pytest

import support

ADMIN = {"id": 1, "name": "Platform Admin", "role": "super_admin"}
REQUESTER = {"id": 20, "name": "Ama Owusu", "role": "school_admin"}


def ticket_row(**overrides):
    row = {"id": 4, "ticket_number": "TKT-0004", "school_id": 3, "requester_id": 20, "requester_role": "school_admin",
           "subject": "Cannot print receipts", "status": "open", "priority": "medium", "assigned_to": None}
    row.update(overrides)
    return row


def fake_ticket_db(monkeypatch, ticket, executed, notified, count=0):
    class FakeCursor:
        def fetchone(self):
            return {"total": count, "id": 9}

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(support, "db_connection", fake_db_connection)
    monkeypatch.setattr(support, "db_execute", fake_db_execute)
    monkeypatch.setattr(support, "fetch_one", lambda c: dict(ticket) if ticket else None)
    monkeypatch.setattr(support, "user_ids_with_role_with_cursor", lambda c, role, school_id=None: [1, 2])
    monkeypatch.setattr(support, "create_notification_with_cursor",
                        lambda c, recipient_id, title, message, *args: notified.append((recipient_id, title)))


def test_ticket_numbers_are_zero_padded():
    assert support.ticket_number(0) == "TKT-0001"
    assert support.ticket_number(41) == "TKT-0042"


def test_attachments_keep_metadata_only():
    cleaned = support.clean_attachments([{"name": "error.png", "url": "https://files/error.png", "size": 2048, "blob": "..."}])
    assert cleaned == [{"name": "error.png", "url": "https://files/error.png", "size": 2048}]
    with pytest.raises(ValueError):
        support.clean_attachments([{"name": "no-url.png"}])


def test_summarize_counts_open_work():
    stats = support.summarize_tickets([
        {"status": "open", "priority": "urgent", "assigned_to": None},
        {"status": "in_progress", "priority": "high", "assigned_to": 1},
        {"status": "resolved", "priority": "high", "assigned_to": None},
        {"status": "waiting_customer", "priority": "low", "assigned_to": 1},
    ])
    assert stats["total"] == 4
    assert stats["open"] == 1
    assert stats["resolved"] == 1
    assert stats["high_priority"] == 2
    assert stats["unassigned"] == 1


def test_create_ticket_adds_first_message_and_alerts_platform_admins(monkeypatch):
    executed, notified = [], []
    fake_ticket_db(monkeypatch, None, executed, notified, count=41)

    ticket = support.create_ticket(REQUESTER, "Cannot print receipts", "The PDF is blank.", "Technical", "high", school_id=3)

    assert ticket == {"id": 9, "ticket_number": "TKT-0042", "school_id": 3}
    [(_, message_params)] = [(q, p) for q, p in executed if "INSERT INTO support_ticket_messages" in q]
    assert message_params[:5] == (9, 20, "Ama Owusu", "school_admin", "The PDF is blank.")
    assert [recipient for recipient, _ in notified] == [1, 2]
    assert notified[0][1] == "New Support Ticket TKT-0042"


def test_create_ticket_rejects_unknown_category():
    with pytest.raises(ValueError, match="ticket category"):
        support.create_ticket(REQUESTER, "Hello", "Body", "billing")


def test_other_users_cannot_read_a_ticket(monkeypatch):
    fake_ticket_db(monkeypatch, ticket_row(requester_id=99), [], [])
    with pytest.raises(PermissionError):
        support.get_ticket(4, REQUESTER)


def test_admin_reply_notifies_requester(monkeypatch):
    executed, notified = [], []
    fake_ticket_db(monkeypatch, ticket_row(), executed, notified)

    support.add_message(4, ADMIN, "Please clear your browser cache.")

    [(update_sql, params)] = [(q, p) for q, p in executed if q.startswith("UPDATE support_tickets")]
    assert "response_count = response_count + 1" in update_sql
    assert params[0] == "admin"
    assert notified == [(20, "New reply on TKT-0004")]


def test_internal_notes_are_admin_only_and_silent(monkeypatch):
    executed, notified = [], []
    fake_ticket_db(monkeypatch, ticket_row(), executed, notified)
    with pytest.raises(PermissionError):
        support.add_message(4, REQUESTER, "note", is_internal=True)
    support.add_message(4, ADMIN, "Known bug in receipt template", is_internal=True)
    assert notified == []
    assert not any(q.startswith("UPDATE support_tickets") for q, _ in executed)


def test_closed_ticket_needs_reopening_before_reply(monkeypatch):
    fake_ticket_db(monkeypatch, ticket_row(status="closed"), [], [])
    with pytest.raises(ValueError, match="Reopen"):
        support.add_message(4, REQUESTER, "Still broken")


def test_resolving_stamps_resolved_at(monkeypatch):
    executed, notified = [], []
    fake_ticket_db(monkeypatch, ticket_row(), executed, notified)
    assert support.update_ticket_status(4, "resolved", ADMIN) == "resolved"
    update_sql, params = executed[-1]
    assert "resolved_at = ?" in update_sql
    assert params[0] == "resolved"
    assert params[-1] == 4
    assert notified[0][0] == 20


def test_requester_reopen_alerts_platform_admins(monkeypatch):
    executed, notified = [], []
    fake_ticket_db(monkeypatch, ticket_row(status="resolved"), executed, notified)
    support.reopen_ticket(4, REQUESTER)
    assert "status = 'open'" in executed[-1][0]
    assert [recipient for recipient, _ in notified] == [1, 2]


def test_only_finished_tickets_reopen(monkeypatch):
    fake_ticket_db(monkeypatch, ticket_row(status="in_progress"), [], [])
    with pytest.raises(ValueError, match="resolved or closed"):
        support.reopen_ticket(4, ADMIN)
