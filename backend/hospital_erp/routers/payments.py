import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from hospital_erp.core.security import verify_webhook_signature
from hospital_erp.core.settings import settings
from hospital_erp.db.session import get_db
from hospital_erp.deps import get_cache, get_current_user, get_payment_gateway
from hospital_erp.models.user import User
from hospital_erp.schemas.bill import BillOut
from hospital_erp.schemas.checkout import (
    PaymentConfirm,
    PaymentFailureReport,
    PaymentIntentCreate,
    PaymentIntentOut,
    PaymentIntentStateOut,
    ReconciliationOut,
)
from hospital_erp.services.cache import QueryCache
from hospital_erp.services.checkout import (
    create_payment_intent,
    handle_gateway_event,
    mark_payment_failed,
    reconcile_payment,
)
from hospital_erp.services.gateway import PaymentGateway

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger("hospital_erp.checkout")


@router.post("/intents", response_model=PaymentIntentOut, status_code=status.HTTP_201_CREATED)
def create_intent(
    payload: PaymentIntentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cache: QueryCache = Depends(get_cache),
    request_id: str | None = Header(default=None),
):
    checkout = create_payment_intent(
        db,
        payload.bill_id,
        gateway=gateway,
        actor=user,
        cache=cache,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return PaymentIntentOut(
        bill_id=checkout.bill.id,
        payment_intent_id=checkout.intent.intent_id,
        client_secret=checkout.client_secret,
        amount=checkout.intent.amount,
        status=checkout.intent.state,
        gateway_status=checkout.intent.gateway_status,
    )


@router.post("/intents/{payment_intent_id}/fail", response_model=PaymentIntentStateOut)
def report_failed_payment(
    payment_intent_id: str,
    payload: PaymentFailureReport,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cache: QueryCache = Depends(get_cache),
    request_id: str | None = Header(default=None),
):
    record = mark_payment_failed(
        db,
        payload.bill_id,
        payment_intent_id,
        actor=user,
        cache=cache,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return PaymentIntentStateOut(
        bill_id=record.bill_id,
        payment_intent_id=record.intent_id,
        status=record.state,
        gateway_status=record.gateway_status,
    )


@router.post("/confirm", response_model=ReconciliationOut)
def confirm_payment(
    payload: PaymentConfirm,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cache: QueryCache = Depends(get_cache),
    request_id: str | None = Header(default=None),
):
    result = reconcile_payment(
        db,
        payload.bill_id,
        payload.payment_intent_id,
        gateway=gateway,
        actor=user,
        cache=cache,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return ReconciliationOut(
        bill_id=result.bill.id,
        payment_intent_id=result.intent_id,
        applied=result.applied,
        bill=BillOut.model_validate(result.bill),
    )


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cache: QueryCache = Depends(get_cache),
    gateway_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    if not settings.gateway_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhooks disabled")
    body = await request.body()
    if not verify_webhook_signature(body, gateway_signature, secret=settings.gateway_webhook_secret):
        logger.warning("Rejected gateway webhook with an invalid signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    return await run_in_threadpool(handle_gateway_event, db, event, gateway=gateway, cache=cache)
