import contextlib

import pytest

import fee_reminders


def owing(student_id, amount, parent_user_id=None):
    return {"student_id": student_id, "first_name": "Ama", "last_name": "Owusu", "admission_number": f"2026000{student_id}",
            "parent_user_id": parent_user_id, "class_name": "Basic 4", "payment_count": 2, "outstanding": amount}


def reminder_db(monkeypatch, rows, executed, notified, currency="GHS"):
    class FakeConn:
        def cursor(self):
            return object()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    monkeypatch.setattr(fee_reminders, "db_connection", fake_db_connection)
    monkeypatch.setattr(fee_reminders, "db_execute", lambda c, query, params=None: executed.append((query, params)))
    monkeypatch.setattr(fee_reminders, "fetch_one", lambda c: {"currency": currency})
    monkeypatch.setattr(fee_reminders, "fetch_all", lambda c: [dict(row) for row in rows])
    monkeypatch.setattr(fee_reminders, "create_notification_with_cursor",
                        lambda c, recipient_id, title, message, *args: notified.append((recipient_id, title, message)))


def test_reminder_message_by_type():
    student = {"first_name": "Ama", "last_name": "Owusu"}
    assert fee_reminders.reminder_message(student, 1250, "payment_due") == "Outstanding fees for Ama Owusu: GHS 1,250.00."
    assert "overdue" in fee_reminders.reminder_message(student, 10, "overdue", "NGN")
    assert fee_reminders.reminder_message(student, 10, "installment_due", "NGN").endswith("NGN 10.00.")


def test_notifications_reach_linked_parents_only(monkeypatch):
    executed, notified = [], []
    reminder_db(monkeypatch, [owing(5, 300.5, parent_user_id=40), owing(6, 120)], executed, notified)

    result = fee_reminders.send_fee_reminders(1, [5, 6, 7], "payment_due", "notification", {"id": 2})

    assert result["sent"] == [{"student_id": 5, "amount_outstanding": 300.5}]
    assert result["skipped"] == [
        {"student_id": 6, "reason": "No parent account linked."},
        {"student_id": 7, "reason": "No outstanding fees."},
    ]
    assert notified == [(40, "Fee Payment Reminder", "Outstanding fees for Ama Owusu: GHS 300.50.")]
    inserts = [params for query, params in executed if "INSERT INTO fee_reminders" in query]
    assert inserts == [(1, 5, "payment_due", "notification", 300.5, notified[0][2], 2, inserts[0][-1])]
    [(outstanding_sql, outstanding_params)] = [(q, p) for q, p in executed if "SUM(fp.remaining_balance)" in q]
    assert "st.id IN (?, ?, ?)" in outstanding_sql
    assert outstanding_params == (1, 5, 6, 7)


def test_sms_reminders_are_logged_without_in_app_notifications(monkeypatch):
    executed, notified = [], []
    reminder_db(monkeypatch, [owing(5, 300, parent_user_id=40), owing(6, 120)], executed, notified, currency="NGN")

    result = fee_reminders.send_fee_reminders(1, [5, 6], "overdue", "SMS")

    assert [item["student_id"] for item in result["sent"]] == [5, 6]
    assert notified == []
    assert sum(1 for query, _ in executed if "INSERT INTO fee_reminders" in query) == 2


@pytest.mark.parametrize("kwargs", [{"method": "pigeon"}, {"reminder_type": "later"}, {"student_ids": []}])
def test_send_reminders_validation(kwargs):
    args = {"school_id": 1, "student_ids": [5], "reminder_type": "payment_due", "method": "notification"}
    args.update(kwargs)
    with pytest.raises(ValueError):
        fee_reminders.send_fee_reminders(**args)
