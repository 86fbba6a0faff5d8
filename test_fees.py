import contextlib
from datetime import date

import pytest

import fees


@pytest.mark.parametrize(
    "due,paid,status",
    [(100, 100, "paid"), (100, 150, "paid"), (100, 40, "partial"), (100, 0, "pending"), (0, 0, "paid")],
)
def test_payment_status(due, paid, status):
    assert fees.payment_status(due, paid) == status


def test_remaining_balance_never_negative():
    assert fees.remaining_balance(100, 40.5) == 59.5
    assert fees.remaining_balance(100, 150) == 0.0


def test_percentage_discount_is_capped_at_amount():
    discount = {"status": "active", "discount_type": "percentage", "value": 150, "applicable_to": "all"}
    assert fees.calculate_discount(discount, 400) == {"discount_amount": 400.0, "final_amount": 0.0}


def test_fixed_discount_on_specific_category_only():
    discount = {"status": "active", "discount_type": "fixed", "value": 50, "applicable_to": "specific", "category_ids": "[3]"}
    assert fees.calculate_discount(discount, 200, category_id=3)["final_amount"] == 150.0
    assert fees.calculate_discount(discount, 200, category_id=4)["discount_amount"] == 0.0


def test_discount_outside_date_window_does_not_apply():
    discount = {"status": "active", "discount_type": "percentage", "value": 10, "applicable_to": "all",
                "start_date": "2026-01-01", "end_date": "2026-03-31"}
    assert fees.calculate_discount(discount, 100, on_date=date(2026, 2, 1))["discount_amount"] == 10.0
    assert fees.calculate_discount(discount, 100, on_date=date(2026, 4, 1))["discount_amount"] == 0.0


def test_inactive_discount_does_not_apply():
    discount = {"status": "inactive", "discount_type": "fixed", "value": 10, "applicable_to": "all"}
    assert fees.calculate_discount(discount, 100) == {"discount_amount": 0.0, "final_amount": 100.0}


def test_record_payment_rejects_negative_amounts():
    with pytest.raises(ValueError, match="zero or more"):
        fees.record_payment(1, 2, -5, 0, "cash")


def test_record_payment_stores_status_and_balance(monkeypatch):
    inserts = []

    class FakeCursor:
        def fetchone(self):
            return {"id": 42, "class_id": 7}

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        if "INSERT INTO fee_payments" in query:
            inserts.append(params)

    monkeypatch.setattr(fees, "db_connection", fake_db_connection)
    monkeypatch.setattr(fees, "db_execute", fake_db_execute)

    result = fees.record_payment(1, 2, 500, 200, "Mobile_Money", user={"id": 9})
    assert result["payment_id"] == 42
    assert result["status"] == "partial"
    assert result["receipt_number"].startswith("RCP")
    params = inserts[0]
    assert params[4] == 7
    assert params[7:10] == (500.0, 200.0, 300.0)
    assert params[10] == "mobile_money"
    assert params[14] == 9


def test_normalize_items_rejects_negative_amounts():
    with pytest.raises(ValueError):
        fees.normalize_items([{"category_id": 1, "amount": -10}])


def fake_fee_db(monkeypatch, executed, student_row=None, rows=()):
    class FakeCursor:
        def fetchone(self):
            return student_row

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(fees, "db_connection", fake_db_connection)
    monkeypatch.setattr(fees, "db_execute", fake_db_execute)
    monkeypatch.setattr(fees, "fetch_one", lambda c: student_row)
    monkeypatch.setattr(fees, "fetch_all", lambda c: [dict(row) for row in rows])


def test_statement_applies_school_wide_discounts_and_counts_only_the_term(monkeypatch):
    executed, calls = [], {}
    discounts = [
        {"id": 1, "student_id": 5, "status": "active", "discount_type": "fixed", "value": 50, "applicable_to": "all"},
        {"id": 2, "student_id": None, "status": "active", "discount_type": "percentage", "value": 10, "applicable_to": "all"},
    ]
    fake_fee_db(monkeypatch, executed, {"id": 5, "class_id": 4, "first_name": "Ama", "last_name": "Owusu"}, discounts)

    def fake_structure(c, school_id, class_id, term_id=None):
        calls["structure"] = (class_id, term_id)
        return {"id": 8, "items": [{"category_id": 1, "category_name": "Tuition", "amount": 500},
                                   {"category_id": 2, "category_name": "PTA", "amount": 100}]}

    def fake_list_payments(school_id, **kwargs):
        calls["payments"] = kwargs
        return [{"id": 30, "amount_paid": 150, "term_id": 2}]

    monkeypatch.setattr(fees, "structure_for_class_with_cursor", fake_structure)
    monkeypatch.setattr(fees, "list_payments", fake_list_payments)

    statement = fees.student_fee_statement(1, 5, term_id=2)

    assert calls["structure"] == (4, 2)
    assert calls["payments"] == {"student_id": 5, "term_id": 2}
    discount_sql, discount_params = executed[-1]
    assert "student_id IS NULL" in discount_sql
    assert discount_params == (1, 5)
    assert [(line["discount"], line["net_amount"]) for line in statement["lines"]] == [(95.0, 405.0), (55.0, 45.0)]
    assert statement["structure_id"] == 8
    assert statement["expected"] == 450.0
    assert statement["paid"] == 150.0
    assert statement["balance"] == 300.0


def test_statement_without_structure_expects_nothing(monkeypatch):
    fake_fee_db(monkeypatch, [], {"id": 5, "class_id": 4, "first_name": "Ama", "last_name": "Owusu"})
    monkeypatch.setattr(fees, "structure_for_class_with_cursor", lambda c, school_id, class_id, term_id=None: None)
    monkeypatch.setattr(fees, "list_payments", lambda school_id, **kwargs: [])
    statement = fees.student_fee_statement(1, 5)
    assert statement["lines"] == []
    assert statement["structure_id"] is None
    assert statement["balance"] == 0.0


def test_statement_for_unknown_student(monkeypatch):
    fake_fee_db(monkeypatch, [])
    with pytest.raises(LookupError):
        fees.student_fee_statement(1, 99)


def test_list_payments_filters_by_term(monkeypatch):
    executed = []
    fake_fee_db(monkeypatch, executed)
    fees.list_payments(1, student_id=5, term_id=2)
    query, params = executed[0]
    assert "fp.term_id = ?" in query
    assert params == (1, 5, 2)


def test_bulk_import_reports_bad_rows_and_keeps_the_rest(monkeypatch):
    executed = []
    fake_fee_db(monkeypatch, executed, {"id": 42, "class_id": 7})

    result = fees.bulk_import_payments(1, [
        {"student_id": 2, "amount_due": 300, "amount_paid": 300, "payment_method": "cash"},
        {"student_id": 3, "amount_due": 300, "amount_paid": -1},
        {"student_id": 4, "amount_due": 300, "amount_paid": 100, "payment_method": "barter"},
    ], {"id": 9})

    assert result["saved"] == [42]
    assert [(e["row"], e["student_id"]) for e in result["errors"]] == [(2, 3), (3, 4)]
    assert sum(1 for query, _ in executed if "INSERT INTO fee_payments" in query) == 1
