from __future__ import annotations

import re
from decimal import Decimal

from sqlalchemy.orm import Session

from hospital_erp.core.money import decimal_to_cents, format_cents
from hospital_erp.models.bill import PaymentMethod, PaymentSource
from hospital_erp.models.user import User
from hospital_erp.services.audit import record_billing_event
from hospital_erp.services.cache import QueryCache, bill_cache_keys
from hospital_erp.services.errors import ExceedsBalance, MalformedAmount, OverpaymentRejected
from hospital_erp.services.ledger import LedgerResult, apply_payment, get_bill

# Plain digits or comma-grouped thousands, up to two decimal places.
_AMOUNT_RE = re.compile(
    r"^(?:[0-9]{1,3}(?:,[0-9]{3})+|[0-9]+)(?:\.[0-9]{1,2})?$|^\.[0-9]{1,2}$"
)


def parse_amount(raw: str | None) -> int:
    """Parse staff-entered money text ("200", "200.5", "200.50") into cents."""
    if raw is None:
        raise MalformedAmount()
    text = raw.strip()
    if not _AMOUNT_RE.match(text):
        raise MalformedAmount(f"{raw!r} is not a valid amount")
    text = text.replace(",", "")
    cents = decimal_to_cents(Decimal(text))
    if cents <= 0:
        raise MalformedAmount("Amount must be greater than zero")
    return cents


def record_manual_payment(
    db: Session,
    bill_id: int,
    raw_amount: str,
    *,
    actor: User,
    cache: QueryCache,
    method: PaymentMethod = PaymentMethod.cash,
    note: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> LedgerResult:
    amount_cents = parse_amount(raw_amount)
    bill = get_bill(db, bill_id)
    if amount_cents > bill.balance_cents:
        raise ExceedsBalance(
            f"Amount {format_cents(amount_cents)} exceeds the outstanding balance "
            f"of {format_cents(bill.balance_cents)}"
        )

    try:
        result = apply_payment(
            db,
            bill.id,
            amount_cents,
            source=PaymentSource.manual,
            method=method,
            actor=actor,
            note=note,
            tolerance_cents=0,
        )
    except OverpaymentRejected as exc:
        # Another payment landed after the balance check above.
        raise ExceedsBalance(exc.message) from exc
    record_billing_event(
        db,
        "payment.recorded",
        result.payment,
        bill_id=bill.id,
        actor=actor,
        request_id=request_id,
        ip_address=ip_address,
    )
    if result.became_paid:
        record_billing_event(
            db,
            "bill.paid",
            result.bill,
            bill_id=bill.id,
            actor=actor,
            before={"status": result.previous_status.value},
            request_id=request_id,
            ip_address=ip_address,
        )
    db.commit()
    db.refresh(result.bill)
    cache.invalidate(*bill_cache_keys(bill.id))
    return result
