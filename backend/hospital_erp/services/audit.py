from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from hospital_erp.models.audit_log import AuditLog
from hospital_erp.models.bill import Bill, BillPayment, PaymentIntent
from hospital_erp.models.user import User


def _json_value(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot_model(obj: Any | None) -> dict | None:
    if obj is None:
        return None
    mapper = inspect(obj).mapper
    return {column.key: _json_value(getattr(obj, column.key)) for column in mapper.columns}


def _describe(subject: Bill | BillPayment | PaymentIntent) -> tuple[str, str, int | None, str | None]:
    if isinstance(subject, BillPayment):
        return "payment", str(subject.id), subject.amount_cents, subject.external_reference
    if isinstance(subject, PaymentIntent):
        return "payment_intent", subject.intent_id, subject.amount_cents, subject.intent_id
    return "bill", str(subject.id), subject.total_cents, None


def record_billing_event(
    db: Session,
    action: str,
    subject: Bill | BillPayment | PaymentIntent,
    *,
    bill_id: int,
    actor: User | None,
    before: dict | None = None,
    details: dict | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Queue an audit row for ``subject``; committed with the caller's transaction.

    ``details`` replaces the after-snapshot when the event is about something
    other than the subject's current columns (e.g. why a payment was refused).
    """
    entity_type, entity_id, amount_cents, reference = _describe(subject)
    entry = AuditLog(
        actor_user_id=actor.id if actor else None,
        actor_email=actor.email if actor else None,
        action=action,
        bill_id=bill_id,
        entity_type=entity_type,
        entity_id=entity_id,
        amount_cents=amount_cents,
        external_reference=reference,
        request_id=request_id,
        ip_address=ip_address,
        before_json=before,
        after_json=details if details is not None else snapshot_model(subject),
    )
    db.add(entry)
    return entry
