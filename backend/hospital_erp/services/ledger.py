"""Bill ledger: the only code path that changes a bill's paid amount or status."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hospital_erp.core.money import format_cents
from hospital_erp.core.settings import settings
from hospital_erp.models.bill import (
    Bill,
    BillPayment,
    BillStatus,
    PaymentMethod,
    PaymentSource,
)
from hospital_erp.models.user import User
from hospital_erp.services.errors import (
    BillNotFound,
    ConflictError,
    InvalidAmount,
    OverpaymentRejected,
)

logger = logging.getLogger("hospital_erp.billing")


@dataclass
class LedgerResult:
    bill: Bill
    payment: BillPayment
    previous_status: BillStatus

    @property
    def status_changed(self) -> bool:
        return self.bill.status != self.previous_status

    @property
    def became_paid(self) -> bool:
        return self.status_changed and self.bill.status == BillStatus.paid


def compute_status(total_cents: int, paid_cents: int) -> BillStatus:
    if paid_cents >= total_cents:
        return BillStatus.paid
    if paid_cents > 0:
        return BillStatus.partial
    return BillStatus.pending


def get_bill(db: Session, bill_id: int) -> Bill:
    bill = db.get(Bill, bill_id)
    if bill is None:
        raise BillNotFound(f"Bill {bill_id} not found")
    return bill


def _lock_bill(db: Session, bill_id: int) -> Bill:
    # FOR UPDATE serializes writers where the database supports row locks;
    # the version counter catches the rest at flush time.
    bill = db.get(Bill, bill_id, with_for_update=True, populate_existing=True)
    if bill is None:
        raise BillNotFound(f"Bill {bill_id} not found")
    return bill


def apply_payment(
    db: Session,
    bill_id: int,
    amount_cents: int,
    *,
    source: PaymentSource,
    method: PaymentMethod | None = None,
    external_reference: str | None = None,
    actor: User | None = None,
    note: str | None = None,
    paid_at: datetime | None = None,
    tolerance_cents: int | None = None,
) -> LedgerResult:
    """Add ``amount_cents`` to the bill's paid amount and recompute its status.

    Flushes but does not commit. Raises ``InvalidAmount`` or
    ``OverpaymentRejected`` before anything is written, and ``ConflictError``
    (after rolling back) when another writer changed the bill first.
    """
    if amount_cents <= 0:
        raise InvalidAmount()
    if source == PaymentSource.gateway and not external_reference:
        raise ValueError("Gateway payments require an external reference")
    if source == PaymentSource.manual and external_reference:
        raise ValueError("Manual payments do not carry an external reference")

    tolerance = settings.overpayment_tolerance_cents if tolerance_cents is None else tolerance_cents

    try:
        bill = _lock_bill(db, bill_id)
        balance = bill.balance_cents
        if bill.paid_cents + amount_cents > bill.total_cents + tolerance or balance <= 0:
            raise OverpaymentRejected(
                f"Payment of {format_cents(amount_cents)} exceeds the outstanding balance "
                f"of {format_cents(balance)} on bill {bill.id}"
            )
        applied_cents = min(amount_cents, balance)
        if applied_cents != amount_cents:
            logger.info(
                "Clamped payment on bill %s from %s to %s (within tolerance)",
                bill.id,
                format_cents(amount_cents),
                format_cents(applied_cents),
            )

        previous_status = bill.status
        bill.paid_cents = bill.paid_cents + applied_cents
        bill.status = compute_status(bill.total_cents, bill.paid_cents)
        if actor is not None:
            bill.updated_by_user_id = actor.id

        payment = BillPayment(
            amount_cents=applied_cents,
            source=source,
            method=method or (PaymentMethod.card if source == PaymentSource.gateway else PaymentMethod.cash),
            external_reference=external_reference,
            note=note,
            recorded_at=paid_at or datetime.now(timezone.utc),
            recorded_by_user_id=actor.id if actor else None,
        )
        bill.payments.append(payment)
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent update detected on bill %s; payment not applied", bill_id)
        raise ConflictError() from exc

    logger.info(
        "Applied %s payment of %s to bill %s (%s -> %s)",
        source.value,
        format_cents(applied_cents),
        bill.id,
        previous_status.value,
        bill.status.value,
    )
    return LedgerResult(bill=bill, payment=payment, previous_status=previous_status)
