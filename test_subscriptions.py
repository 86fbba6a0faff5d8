import contextlib
from datetime import date, datetime, timedelta

import pytest

import subscriptions

NOW = datetime(2026, 3, 10, 9, 0)


@pytest.mark.parametrize(
    "delta,expected",
    [
        (timedelta(days=7), ("warning", 7)),
        (timedelta(days=6, hours=20), ("warning", 7)),
        (timedelta(days=3), ("warning", 3)),
        (timedelta(hours=5), ("warning", 1)),
        (timedelta(days=5), (None, None)),
        (timedelta(hours=-5), ("expired", 3)),
        (timedelta(days=-1, hours=-2), ("grace", 2)),
        (timedelta(days=-2), ("grace", 1)),
        (timedelta(days=-3), (None, None)),
        (timedelta(days=-4), ("suspend", None)),
    ],
)
def test_trial_action(delta, expected):
    assert subscriptions.trial_action(NOW + delta, NOW, grace_days=3) == expected


def test_plural():
    assert subscriptions._plural(1) == "1 day"
    assert subscriptions._plural(3) == "3 days"


def test_default_plans_are_ordered_by_price():
    prices = [plan["price"] for plan in subscriptions.DEFAULT_PLANS]
    assert prices == sorted(prices)
    assert [p["name"] for p in subscriptions.DEFAULT_PLANS if p["is_popular"]] == ["premium"]


def fake_trial_db(monkeypatch, trials, executed, notifications, statuses):
    class FakeCursor:
        pass

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    monkeypatch.setattr(subscriptions, "db_connection", fake_db_connection)
    monkeypatch.setattr(subscriptions, "db_execute", lambda c, query, params=None: executed.append((query, params)))
    monkeypatch.setattr(subscriptions, "fetch_all", lambda c: [dict(t) for t in trials])
    monkeypatch.setattr(subscriptions, "user_ids_with_role_with_cursor", lambda c, role, school_id=None: [99])
    monkeypatch.setattr(subscriptions, "create_notification_with_cursor",
                        lambda c, recipient_id, title, *args, **kwargs: notifications.append((recipient_id, title)))
    monkeypatch.setattr(subscriptions, "update_school_status_with_cursor",
                        lambda c, school_id, status: statuses.append((school_id, status)))
    monkeypatch.setattr(subscriptions, "record_audit_log_with_cursor", lambda *args, **kwargs: executed.append(("AUDIT", args)))


def trial(trial_id, trial_end, **extra):
    row = {"id": trial_id, "school_id": trial_id * 10, "school_name": f"School {trial_id}", "admin_user_id": trial_id + 100,
           "trial_end": trial_end, "last_warning_days": None, "last_grace_notice": None}
    row.update(extra)
    return row


def test_check_trials_warns_notices_and_suspends(monkeypatch):
    executed, notifications, statuses = [], [], []
    trials = [
        trial(1, NOW + timedelta(days=3)),
        trial(2, NOW - timedelta(hours=3)),
        trial(3, NOW - timedelta(days=10)),
        trial(4, NOW + timedelta(days=20)),
    ]
    fake_trial_db(monkeypatch, trials, executed, notifications, statuses)

    summary = subscriptions.check_trials(now=NOW)

    assert summary["checked"] == 4
    assert summary["warnings_sent"] == 1
    assert summary["grace_notices"] == 1
    assert summary["suspended"] == 1
    assert statuses == [(30, "suspended")]
    assert (101, "Trial Expiring Soon - 3 days Left") in notifications
    assert (102, "Trial Expired - Grace Period Active") in notifications
    assert (103, "Account Suspended") in notifications
    assert not any(query == "AUDIT" for query, _ in executed)


def test_check_trials_does_not_repeat_notices(monkeypatch):
    executed, notifications, statuses = [], [], []
    trials = [
        trial(1, NOW + timedelta(days=3), last_warning_days=3),
        trial(2, NOW - timedelta(days=1, hours=1), last_grace_notice=date(2026, 3, 10)),
    ]
    fake_trial_db(monkeypatch, trials, executed, notifications, statuses)

    summary = subscriptions.check_trials(now=NOW)

    assert summary["warnings_sent"] == 0
    assert summary["grace_notices"] == 0
    assert notifications == []


def test_manual_trial_check_is_audit_logged(monkeypatch):
    executed = []
    fake_trial_db(monkeypatch, [], executed, [], [])
    subscriptions.check_trials(now=NOW, triggered_by={"id": 1, "name": "Super Admin"})
    audits = [args for query, args in executed if query == "AUDIT"]
    assert len(audits) == 1
    assert audits[0][4] == "trial_check"


def fake_request_db(monkeypatch, request_row, executed, statuses):
    fake_trial_db(monkeypatch, [], executed, [], statuses)
    monkeypatch.setattr(subscriptions, "fetch_one", lambda c: dict(request_row))
    monkeypatch.setattr(subscriptions, "update_school_plan_with_cursor", lambda c, school_id, plan: statuses.append((school_id, plan)))


def test_approving_paid_plan_closes_running_trial(monkeypatch):
    executed, statuses = [], []
    paid = {"id": 5, "school_id": 20, "admin_user_id": 120, "plan_name": "basic", "is_trial": False, "status": "pending_approval"}
    fake_request_db(monkeypatch, paid, executed, statuses)

    subscriptions.approve_subscription_request(5, {"id": 1, "name": "Super Admin"})

    converted = [params for query, params in executed if isinstance(query, str) and "status = 'converted'" in query]
    assert len(converted) == 1
    assert converted[0][1:] == (20, 5)
    assert (20, "basic") in statuses
    assert (20, "active") in statuses


def test_approving_trial_request_leaves_trials_alone(monkeypatch):
    executed, statuses = [], []
    trial_row = {"id": 6, "school_id": 20, "admin_user_id": None, "plan_name": "premium", "is_trial": True, "status": "pending_approval"}
    fake_request_db(monkeypatch, trial_row, executed, statuses)

    subscriptions.approve_subscription_request(6)

    assert not any(isinstance(query, str) and "converted" in query for query, _ in executed)


def test_trial_check_skips_schools_with_an_approved_paid_plan(monkeypatch):
    executed = []
    fake_trial_db(monkeypatch, [], executed, [], [])
    subscriptions.check_trials(now=NOW)
    select = executed[0][0]
    assert "NOT EXISTS" in select
    assert "paid.is_trial = FALSE" in select
