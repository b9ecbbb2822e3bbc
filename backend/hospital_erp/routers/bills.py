from datetime import datetime, timezone
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from hospital_erp.core.money import cents_to_decimal, decimal_to_cents
from hospital_erp.db.session import get_db
from hospital_erp.deps import get_cache, get_current_user, require_roles
from hospital_erp.models.bill import Bill, BillItem, BillStatus
from hospital_erp.models.patient import Patient
from hospital_erp.models.user import Role, User
from hospital_erp.schemas.bill import (
    BillCreate,
    BillingSummaryOut,
    BillOut,
    BillSummaryOut,
    ManualPaymentCreate,
    PaymentOut,
    PaymentRecordedOut,
)
from hospital_erp.services.audit import record_billing_event
from hospital_erp.services.cache import BILL_LIST_KEY, QueryCache, bill_key
from hospital_erp.services.errors import PatientNotFound
from hospital_erp.services.ledger import compute_status, get_bill
from hospital_erp.services.payment_recorder import record_manual_payment

router = APIRouter(prefix="/bills", tags=["bills"])

billing_staff = require_roles(Role.admin, Role.accountant, Role.receptionist)


def _bills_tag(db: Session) -> list[int]:
    # Bills are never deleted and every write bumps the row version, so the
    # count and version sum change whenever any bill view could.
    bill_count, version_sum = db.execute(
        select(func.count(Bill.id), func.coalesce(func.sum(Bill.version), 0))
    ).one()
    return [bill_count, version_sum]


@router.post("", response_model=BillOut, status_code=status.HTTP_201_CREATED)
def create_bill(
    payload: BillCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(billing_staff),
    cache: QueryCache = Depends(get_cache),
    request_id: str | None = Header(default=None),
):
    patient = db.get(Patient, payload.patient_id)
    if not patient or patient.deleted_at is not None:
        raise PatientNotFound()

    items = [
        BillItem(
            description=item.description,
            quantity=item.quantity,
            unit_price_cents=decimal_to_cents(item.unit_price),
            line_total_cents=item.quantity * decimal_to_cents(item.unit_price),
        )
        for item in payload.items
    ]
    if items:
        total_cents = sum(item.line_total_cents for item in items)
    else:
        total_cents = decimal_to_cents(payload.total_amount)

    bill = Bill(
        patient_id=patient.id,
        total_cents=total_cents,
        paid_cents=0,
        status=compute_status(total_cents, 0),
        bill_date=payload.bill_date or datetime.now(timezone.utc),
        due_date=payload.due_date,
        notes=payload.notes,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    bill.items = items
    db.add(bill)
    db.flush()
    record_billing_event(
        db,
        "bill.created",
        bill,
        bill_id=bill.id,
        actor=user,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    db.commit()
    db.refresh(bill)
    cache.invalidate(BILL_LIST_KEY)
    return bill


@router.get("", response_model=list[BillSummaryOut])
def list_bills(
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    cache: QueryCache = Depends(get_cache),
    patient_id: int | None = Query(default=None),
    status: BillStatus | None = Query(default=None),
    unpaid: bool = Query(default=False),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    variant = urlencode(
        {
            "patient_id": patient_id or "",
            "status": status.value if status else "",
            "unpaid": int(unpaid),
            "q": (q or "").strip().lower(),
            "limit": limit,
            "offset": offset,
        }
    )
    tag = _bills_tag(db)
    cached = cache.get(BILL_LIST_KEY, variant, tag=tag)
    if cached is not None:
        return cached

    stmt = select(Bill).join(Patient, Bill.patient_id == Patient.id)
    if patient_id is not None:
        stmt = stmt.where(Bill.patient_id == patient_id)
    if status is not None:
        stmt = stmt.where(Bill.status == status)
    if unpaid:
        stmt = stmt.where(Bill.status != BillStatus.paid)
    if q and q.strip():
        term = q.strip()
        pattern = f"%{term}%"
        conditions = [
            Patient.first_name.ilike(pattern),
            Patient.last_name.ilike(pattern),
            Patient.hospital_number.ilike(pattern),
        ]
        if term.isdigit():
            conditions.append(Bill.id == int(term))
        if term.lower() in {s.value for s in BillStatus}:
            conditions.append(Bill.status == BillStatus(term.lower()))
        stmt = stmt.where(or_(*conditions))
    stmt = stmt.order_by(Bill.bill_date.desc(), Bill.id.desc()).limit(limit).offset(offset)
    bills = db.scalars(stmt).unique().all()
    result = [
        BillSummaryOut.model_validate(bill).model_dump(mode="json", by_alias=True) for bill in bills
    ]
    cache.set(BILL_LIST_KEY, result, variant, tag=tag)
    return result


@router.get("/summary", response_model=BillingSummaryOut)
def billing_summary(
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    cache: QueryCache = Depends(get_cache),
):
    tag = _bills_tag(db)
    cached = cache.get(BILL_LIST_KEY, "summary", tag=tag)
    if cached is not None:
        return cached

    row = db.execute(
        select(
            func.count(Bill.id),
            func.coalesce(func.sum(case((Bill.status != BillStatus.paid, 1), else_=0)), 0),
            func.coalesce(func.sum(Bill.total_cents), 0),
            func.coalesce(func.sum(Bill.paid_cents), 0),
        )
    ).one()
    bill_count, unpaid_count, total_cents, paid_cents = row
    result = BillingSummaryOut(
        bill_count=bill_count,
        unpaid_count=unpaid_count,
        total_billed=cents_to_decimal(total_cents),
        total_paid=cents_to_decimal(paid_cents),
        total_outstanding=cents_to_decimal(total_cents - paid_cents),
    ).model_dump(mode="json", by_alias=True)
    cache.set(BILL_LIST_KEY, result, "summary", tag=tag)
    return result


@router.get("/patient/{patient_id}", response_model=list[BillSummaryOut])
def list_patient_bills(
    patient_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    patient = db.get(Patient, patient_id)
    if not patient:
        raise PatientNotFound()
    stmt = select(Bill).where(Bill.patient_id == patient_id).order_by(Bill.bill_date.desc())
    return list(db.scalars(stmt).unique())


@router.get("/{bill_id}", response_model=BillOut)
def read_bill(
    bill_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    cache: QueryCache = Depends(get_cache),
):
    version = db.scalar(select(Bill.version).where(Bill.id == bill_id))
    if version is not None:
        cached = cache.get(bill_key(bill_id), tag=[version])
        if cached is not None:
            return cached
    bill = get_bill(db, bill_id)
    result = BillOut.model_validate(bill).model_dump(mode="json", by_alias=True)
    cache.set(bill_key(bill_id), result, tag=[bill.version])
    return result


@router.get("/{bill_id}/payments", response_model=list[PaymentOut])
def list_bill_payments(
    bill_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return get_bill(db, bill_id).payments


@router.post(
    "/{bill_id}/payments",
    response_model=PaymentRecordedOut,
    status_code=status.HTTP_201_CREATED,
)
def record_payment(
    bill_id: int,
    payload: ManualPaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(billing_staff),
    cache: QueryCache = Depends(get_cache),
    request_id: str | None = Header(default=None),
):
    result = record_manual_payment(
        db,
        bill_id,
        payload.amount,
        actor=user,
        cache=cache,
        method=payload.method,
        note=payload.note,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return PaymentRecordedOut(
        bill=BillOut.model_validate(result.bill),
        payment=PaymentOut.model_validate(result.payment),
        previous_status=result.previous_status,
    )
