from decimal import Decimal

import pytest
from sqlalchemy import select

from hospital_erp.db.session import SessionLocal
from hospital_erp.models.audit_log import AuditLog
from hospital_erp.models.bill import Bill, BillStatus, PaymentMethod, PaymentSource
from hospital_erp.services import ledger
from hospital_erp.services.cache import bill_cache_keys, bill_key
from hospital_erp.services.errors import BillNotFound, ExceedsBalance, MalformedAmount
from hospital_erp.services.payment_recorder import parse_amount, record_manual_payment


@pytest.mark.parametrize(
    ("raw", "cents"),
    [
        ("200", 20000),
        ("200.5", 20050),
        ("200.50", 20050),
        (" 1,250.00 ", 125000),
        ("1,000,000", 100000000),
        ("1250", 125000),
        (".75", 75),
        ("0.01", 1),
    ],
)
def test_parse_amount_accepts_money_text(raw, cents):
    assert parse_amount(raw) == cents


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "abc",
        "-5",
        "0",
        "0.00",
        "1.234",
        "1e3",
        "12.3.4",
        "1,,0",
        "1,00",
        "12,3456",
        ",100",
        "\uff15\uff10",
        "\u0665\u0660",
    ],
)
def test_parse_amount_rejects_bad_input(raw):
    with pytest.raises(MalformedAmount):
        parse_amount(raw)


def _actions(db, bill_id):
    return list(
        db.scalars(
            select(AuditLog.action)
            .where(AuditLog.bill_id == bill_id)
            .order_by(AuditLog.id)
        )
    )


def test_full_payment_settles_bill(db, make_bill, user, cache):
    bill = make_bill(50000)

    result = record_manual_payment(db, bill.id, "500.00", actor=user, cache=cache)

    assert result.previous_status == BillStatus.pending
    assert result.bill.status == BillStatus.paid
    assert result.bill.balance == Decimal("0.00")
    assert result.payment.source == PaymentSource.manual
    assert result.payment.method == PaymentMethod.cash
    assert result.payment.external_reference is None
    assert _actions(db, bill.id) == ["payment.recorded", "bill.paid"]


def test_partial_then_remaining_payment(db, make_bill, user, cache):
    bill = make_bill(50000)

    first = record_manual_payment(db, bill.id, "200.00", actor=user, cache=cache)
    assert first.bill.status == BillStatus.partial
    assert first.bill.balance == Decimal("300.00")

    second = record_manual_payment(
        db, bill.id, "300", actor=user, cache=cache, method=PaymentMethod.card, note="Front desk"
    )
    assert second.previous_status == BillStatus.partial
    assert second.bill.status == BillStatus.paid
    assert second.bill.paid_amount == Decimal("500.00")
    assert [p.amount_cents for p in second.bill.payments] == [20000, 30000]
    assert second.payment.note == "Front desk"


def test_amount_above_balance_is_refused(db, make_bill, user, cache):
    bill = make_bill(50000)
    cache.set(bill_key(bill.id), {"id": bill.id})

    with pytest.raises(ExceedsBalance):
        record_manual_payment(db, bill.id, "600.00", actor=user, cache=cache)

    fresh = db.get(Bill, bill.id, populate_existing=True)
    assert fresh.paid_cents == 0
    assert fresh.status == BillStatus.pending
    assert cache.get(bill_key(bill.id)) == {"id": bill.id}
    assert _actions(db, bill.id) == []


def test_malformed_amount_is_refused_before_lookup(db, user, cache):
    with pytest.raises(MalformedAmount):
        record_manual_payment(db, 9999, "ten", actor=user, cache=cache)


def test_unknown_bill(db, user, cache):
    with pytest.raises(BillNotFound):
        record_manual_payment(db, 9999, "10.00", actor=user, cache=cache)


def test_successful_payment_invalidates_list_and_detail(db, make_bill, user, cache):
    bill = make_bill(50000)
    other = make_bill(10000)
    cache.set("bills", [{"id": bill.id}], "unpaid=1")
    cache.set("bills", {"billCount": 2}, "summary")
    cache.set(bill_key(bill.id), {"id": bill.id})
    cache.set(bill_key(other.id), {"id": other.id})

    record_manual_payment(db, bill.id, "50.00", actor=user, cache=cache)

    assert cache.get("bills", "unpaid=1") is None
    assert cache.get("bills", "summary") is None
    assert cache.get(bill_key(bill.id)) is None
    assert cache.get(bill_key(other.id)) == {"id": other.id}
    assert bill_cache_keys(bill.id) == ("bills", bill_key(bill.id))


def test_payment_landing_after_balance_check_is_exceeds_balance(db, make_bill, user, cache, monkeypatch):
    bill = make_bill(50000)
    original_lock = ledger._lock_bill
    raced = []

    def race_then_lock(session, bill_id):
        if not raced:
            raced.append(bill_id)
            other = SessionLocal()
            try:
                record_manual_payment(other, bill_id, "300.00", actor=user, cache=cache)
            finally:
                other.close()
        return original_lock(session, bill_id)

    monkeypatch.setattr(ledger, "_lock_bill", race_then_lock)

    with pytest.raises(ExceedsBalance) as excinfo:
        record_manual_payment(db, bill.id, "300.00", actor=user, cache=cache)

    assert excinfo.value.code == "exceeds_balance"
    monkeypatch.undo()
    fresh = db.get(Bill, bill.id, populate_existing=True)
    assert fresh.paid_cents == 30000
    assert fresh.status == BillStatus.partial
    assert [p.amount_cents for p in fresh.payments] == [30000]
