import contextlib
from datetime import date

import pytest

import fees
import payment_plans


def test_add_months_clamps_to_month_end():
    assert payment_plans.add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert payment_plans.add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)
    assert payment_plans.add_months(date(2026, 1, 31), 12) == date(2027, 1, 31)


def test_split_amount_keeps_cents_whole():
    assert payment_plans.split_amount(1000, 3) == [333.33, 333.33, 333.34]
    assert sum(payment_plans.split_amount(1000, 3)) == pytest.approx(1000)


def test_quarterly_schedule():
    schedule = payment_plans.installment_schedule(900, 3, "Quarterly", "2026-09-01")
    assert [item["due_date"] for item in schedule] == [date(2026, 9, 1), date(2026, 12, 1), date(2027, 3, 1)]
    assert [item["installment_number"] for item in schedule] == [1, 2, 3]
    assert {item["amount_due"] for item in schedule} == {300.0}


def test_custom_schedule_uses_given_dates():
    schedule = payment_plans.installment_schedule(500, 2, "custom", "2026-09-01", ["2026-09-15", "2026-10-20"])
    assert [item["due_date"] for item in schedule] == [date(2026, 9, 15), date(2026, 10, 20)]


@pytest.mark.parametrize(
    "args,message",
    [
        ((0, 3, "monthly", "2026-09-01"), "greater than zero"),
        ((500, 0, "monthly", "2026-09-01"), "between 1 and 24"),
        ((500, 2, "weekly", "2026-09-01"), "frequency"),
        ((500, 2, "custom", "2026-09-01", ["2026-09-15"]), "one due date per installment"),
        ((500, 2, "custom", "2026-09-01", ["2026-10-15", "2026-09-15"]), "in order"),
    ],
)
def test_schedule_validation(args, message):
    with pytest.raises(ValueError, match=message):
        payment_plans.installment_schedule(*args)


@pytest.mark.parametrize(
    "due,paid,due_date,status",
    [(300, 300, "2026-01-01", "paid"), (300, 100, "2026-01-01", "overdue"), (300, 100, "2026-12-01", "partial"),
     (300, 0, "2026-12-01", "pending")],
)
def test_installment_status(due, paid, due_date, status):
    assert payment_plans.installment_status(due, paid, due_date, today=date(2026, 6, 1)) == status


def installment_db(monkeypatch, installment, executed, unpaid_left=0):
    class FakeCursor:
        def fetchone(self):
            return {"id": 81, "class_id": 4, "total": unpaid_left}

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(payment_plans, "db_connection", fake_db_connection)
    monkeypatch.setattr(payment_plans, "db_execute", fake_db_execute)
    monkeypatch.setattr(fees, "db_execute", fake_db_execute)
    monkeypatch.setattr(payment_plans, "fetch_one", lambda c: dict(installment) if installment else None)


def installment(**overrides):
    row = {"id": 12, "plan_id": 3, "school_id": 1, "student_id": 5, "category_id": 2, "plan_code": "PP123456",
           "plan_status": "active", "installment_number": 2, "amount_due": 300.0, "amount_paid": 100.0,
           "due_date": date(2099, 1, 1)}
    row.update(overrides)
    return row


def test_paying_last_installment_completes_plan_and_books_fee_payment(monkeypatch):
    executed = []
    installment_db(monkeypatch, installment(), executed)

    result = payment_plans.record_installment_payment(1, 12, 200, "mobile_money", {"id": 9})

    assert result["installment_status"] == "paid"
    assert result["plan_status"] == "completed"
    assert result["receipt_number"].startswith("RCP")
    [(_, installment_params)] = [(q, p) for q, p in executed if q.startswith("UPDATE payment_installments")]
    assert installment_params[:3] == (300.0, "paid", "mobile_money")
    [(_, fee_params)] = [(q, p) for q, p in executed if "INSERT INTO fee_payments" in q]
    assert fee_params[3] == 5
    assert fee_params[6] == 2
    assert fee_params[7:10] == (200.0, 200.0, 0.0)
    assert fee_params[13] == "PP123456 installment 2"
    assert any("SET status = 'completed'" in q for q, _ in executed)


def test_partial_payment_keeps_plan_active(monkeypatch):
    executed = []
    installment_db(monkeypatch, installment(), executed, unpaid_left=1)
    result = payment_plans.record_installment_payment(1, 12, 50)
    assert result == {"installment_status": "partial", "plan_status": "active", "receipt_number": result["receipt_number"]}
    assert not any("SET status = 'completed'" in q for q, _ in executed)


def test_overpaying_an_installment_is_refused(monkeypatch):
    executed = []
    installment_db(monkeypatch, installment(), executed)
    with pytest.raises(ValueError, match="200.00"):
        payment_plans.record_installment_payment(1, 12, 250)
    assert not any("UPDATE" in q for q, _ in executed)


def test_cancelled_plan_takes_no_payments(monkeypatch):
    installment_db(monkeypatch, installment(plan_status="cancelled"), [])
    with pytest.raises(ValueError, match="cancelled"):
        payment_plans.record_installment_payment(1, 12, 50)


def test_installment_of_another_school_is_not_found(monkeypatch):
    installment_db(monkeypatch, installment(school_id=2), [])
    with pytest.raises(LookupError):
        payment_plans.record_installment_payment(1, 12, 50)
