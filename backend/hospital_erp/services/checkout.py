"""Server side of card checkout: payment intent creation and reconciliation.

Reconciliation is keyed on the gateway intent id. A payment row carrying that
reference is written at most once per bill (unique constraint), so UI
confirmations, page-refresh replays and gateway webhooks can all call
``reconcile_payment`` safely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hospital_erp.core.money import format_cents
from hospital_erp.core.settings import settings
from hospital_erp.models.bill import (
    Bill,
    BillPayment,
    CheckoutState,
    GatewayStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentSource,
)
from hospital_erp.models.user import User
from hospital_erp.services.audit import record_billing_event
from hospital_erp.services.cache import QueryCache, bill_cache_keys
from hospital_erp.services.errors import (
    BillAlreadyPaid,
    ConflictError,
    GatewayError,
    OverpaymentRejected,
    PaymentIntentNotFound,
    PaymentNotSucceeded,
    ReconciliationError,
)
from hospital_erp.services.gateway import PaymentGateway
from hospital_erp.services.ledger import apply_payment, get_bill

logger = logging.getLogger("hospital_erp.checkout")


@dataclass
class CheckoutIntent:
    bill: Bill
    intent: PaymentIntent
    client_secret: str


@dataclass
class ReconciliationResult:
    bill: Bill
    intent_id: str
    applied: bool
    payment: BillPayment | None = None


def find_intent(db: Session, bill_id: int, intent_id: str) -> PaymentIntent:
    record = db.scalar(select(PaymentIntent).where(PaymentIntent.intent_id == intent_id))
    if record is None or record.bill_id != bill_id:
        raise PaymentIntentNotFound(f"Payment intent {intent_id} not found for bill {bill_id}")
    return record


def find_applied_payment(db: Session, bill_id: int, intent_id: str) -> BillPayment | None:
    return db.scalar(
        select(BillPayment).where(
            BillPayment.bill_id == bill_id,
            BillPayment.external_reference == intent_id,
        )
    )


def checkout_idempotency_key(bill: Bill) -> str:
    """Gateway idempotency key for the next checkout attempt on ``bill``.

    Retrying a call that timed out reuses the key, so the gateway hands back the
    intent it may already have created. Once an intent is stored, or the bill
    changes, the next attempt gets a new key.
    """
    return f"bill-{bill.id}-v{bill.version}-attempt-{len(bill.intents) + 1}"


def create_payment_intent(
    db: Session,
    bill_id: int,
    *,
    gateway: PaymentGateway,
    actor: User | None,
    cache: QueryCache,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> CheckoutIntent:
    bill = get_bill(db, bill_id)
    amount_cents = bill.balance_cents
    if amount_cents <= 0:
        raise BillAlreadyPaid(f"Bill {bill.id} is already paid")

    gateway_intent = gateway.create_payment_intent(
        amount_cents, str(bill.id), idempotency_key=checkout_idempotency_key(bill)
    )
    if gateway_intent.amount_cents != amount_cents:
        logger.error(
            "Gateway created intent %s for %s but bill %s owes %s",
            gateway_intent.intent_id,
            format_cents(gateway_intent.amount_cents),
            bill.id,
            format_cents(amount_cents),
        )
        raise GatewayError("Payment gateway created an intent for the wrong amount")
    if not gateway_intent.client_secret:
        raise GatewayError("Payment gateway did not return a client secret")

    record = PaymentIntent(
        bill_id=bill.id,
        intent_id=gateway_intent.intent_id,
        amount_cents=amount_cents,
        currency=settings.gateway_currency.lower(),
        state=CheckoutState.intent_created,
        gateway_status=gateway_intent.status,
        created_by_user_id=actor.id if actor else None,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        # Another request with the same key stored this intent first.
        db.rollback()
        existing = find_intent(db, bill.id, gateway_intent.intent_id)
        logger.info("Intent %s for bill %s was created concurrently", existing.intent_id, bill.id)
        return CheckoutIntent(
            bill=get_bill(db, bill.id), intent=existing, client_secret=gateway_intent.client_secret
        )
    record_billing_event(
        db,
        "checkout.intent_created",
        record,
        bill_id=bill.id,
        actor=actor,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(record)
    db.refresh(bill)
    cache.invalidate(*bill_cache_keys(bill.id))
    logger.info(
        "Created payment intent %s for bill %s (%s)",
        record.intent_id,
        bill.id,
        format_cents(amount_cents),
    )
    return CheckoutIntent(bill=bill, intent=record, client_secret=gateway_intent.client_secret)


def mark_payment_failed(
    db: Session,
    bill_id: int,
    intent_id: str,
    *,
    actor: User | None,
    cache: QueryCache,
    gateway_status: GatewayStatus | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> PaymentIntent:
    get_bill(db, bill_id)
    record = find_intent(db, bill_id, intent_id)
    if record.state == CheckoutState.succeeded:
        return record

    record.state = CheckoutState.failed
    if gateway_status is not None:
        record.gateway_status = gateway_status
    record_billing_event(
        db,
        "checkout.failed",
        record,
        bill_id=bill_id,
        actor=actor,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(record)
    cache.invalidate(*bill_cache_keys(bill_id))
    logger.info("Checkout %s for bill %s marked failed", intent_id, bill_id)
    return record


def _record_unapplied_success(
    db: Session,
    bill_id: int,
    intent_id: str,
    *,
    actor: User | None,
    reason: str,
    request_id: str | None,
    ip_address: str | None,
) -> None:
    # Money has moved at the gateway but the ledger refused it; leave a trail
    # a human can find from the bill.
    record = find_intent(db, bill_id, intent_id)
    record.gateway_status = GatewayStatus.succeeded
    record_billing_event(
        db,
        "payment.reconciliation_failed",
        record,
        bill_id=bill_id,
        actor=actor,
        details={"intent_id": intent_id, "reason": reason},
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()


def reconcile_payment(
    db: Session,
    bill_id: int,
    intent_id: str,
    *,
    gateway: PaymentGateway,
    actor: User | None,
    cache: QueryCache,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> ReconciliationResult:
    bill = get_bill(db, bill_id)
    record = find_intent(db, bill_id, intent_id)

    existing = find_applied_payment(db, bill_id, intent_id)
    if existing is not None:
        logger.info("Intent %s already reconciled into bill %s; nothing to do", intent_id, bill_id)
        return ReconciliationResult(bill=bill, intent_id=intent_id, applied=False, payment=existing)

    gateway_intent = gateway.retrieve_payment_intent(intent_id)
    if gateway_intent.status != GatewayStatus.succeeded:
        if gateway_intent.status == GatewayStatus.failed:
            mark_payment_failed(
                db,
                bill_id,
                intent_id,
                actor=actor,
                cache=cache,
                gateway_status=GatewayStatus.failed,
                request_id=request_id,
                ip_address=ip_address,
            )
        raise PaymentNotSucceeded(
            f"Payment intent {intent_id} is {gateway_intent.status.value}, not succeeded"
        )
    if gateway_intent.amount_cents != record.amount_cents:
        reason = (
            f"gateway charged {format_cents(gateway_intent.amount_cents)} "
            f"but the intent was created for {format_cents(record.amount_cents)}"
        )
        logger.error("Cannot reconcile intent %s for bill %s: %s", intent_id, bill_id, reason)
        _record_unapplied_success(
            db, bill_id, intent_id, actor=actor, reason=reason,
            request_id=request_id, ip_address=ip_address,
        )
        raise ReconciliationError()

    try:
        result = apply_payment(
            db,
            bill_id,
            record.amount_cents,
            source=PaymentSource.gateway,
            method=PaymentMethod.card,
            external_reference=intent_id,
            actor=actor,
        )
        record.state = CheckoutState.succeeded
        record.gateway_status = GatewayStatus.succeeded
        record_billing_event(
            db,
            "payment.reconciled",
            result.payment,
            bill_id=bill_id,
            actor=actor,
            request_id=request_id,
            ip_address=ip_address,
        )
        if result.became_paid:
            record_billing_event(
                db,
                "bill.paid",
                result.bill,
                bill_id=bill_id,
                actor=actor,
                before={"status": result.previous_status.value},
                request_id=request_id,
                ip_address=ip_address,
            )
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_applied_payment(db, bill_id, intent_id)
        if existing is None:
            raise
        logger.info("Intent %s was reconciled concurrently for bill %s", intent_id, bill_id)
        return ReconciliationResult(
            bill=get_bill(db, bill_id), intent_id=intent_id, applied=False, payment=existing
        )
    except OverpaymentRejected as exc:
        db.rollback()
        logger.error(
            "Gateway payment %s for bill %s rejected by the ledger: %s", intent_id, bill_id, exc
        )
        _record_unapplied_success(
            db, bill_id, intent_id, actor=actor, reason=str(exc),
            request_id=request_id, ip_address=ip_address,
        )
        raise ReconciliationError(
            f"Gateway payment {intent_id} could not be applied: {exc.message}. "
            "Please refresh and verify the bill."
        ) from exc
    except ConflictError:
        db.rollback()
        existing = find_applied_payment(db, bill_id, intent_id)
        if existing is not None:
            logger.info("Intent %s was reconciled concurrently for bill %s", intent_id, bill_id)
            return ReconciliationResult(
                bill=get_bill(db, bill_id), intent_id=intent_id, applied=False, payment=existing
            )
        logger.error(
            "Gateway payment %s for bill %s hit a concurrent update; not retried", intent_id, bill_id
        )
        raise

    db.refresh(result.bill)
    cache.invalidate(*bill_cache_keys(bill_id))
    logger.info("Reconciled intent %s into bill %s", intent_id, bill_id)
    return ReconciliationResult(
        bill=result.bill, intent_id=intent_id, applied=True, payment=result.payment
    )


def handle_gateway_event(
    db: Session,
    event: dict[str, Any],
    *,
    gateway: PaymentGateway,
    cache: QueryCache,
) -> dict[str, Any]:
    """Route a verified gateway webhook event into the same paths the UI uses."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    intent_id = obj.get("id")
    if event_type not in {"payment_intent.succeeded", "payment_intent.payment_failed"} or not intent_id:
        return {"handled": False, "type": event_type}

    record = db.scalar(select(PaymentIntent).where(PaymentIntent.intent_id == intent_id))
    if record is None:
        logger.warning("Webhook %s for unknown intent %s ignored", event_type, intent_id)
        return {"handled": False, "type": event_type}

    if event_type == "payment_intent.payment_failed":
        mark_payment_failed(
            db, record.bill_id, intent_id, actor=None, cache=cache,
            gateway_status=GatewayStatus.failed,
        )
        return {"handled": True, "type": event_type, "applied": False}

    result = reconcile_payment(
        db, record.bill_id, intent_id, gateway=gateway, actor=None, cache=cache
    )
    return {"handled": True, "type": event_type, "applied": result.applied}
