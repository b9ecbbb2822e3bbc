from decimal import Decimal

from pydantic import Field

from hospital_erp.models.bill import CheckoutState, GatewayStatus
from hospital_erp.schemas.bill import ApiModel, BillOut


class PaymentIntentCreate(ApiModel):
    bill_id: int


class PaymentIntentOut(ApiModel):
    bill_id: int
    payment_intent_id: str
    client_secret: str
    amount: Decimal
    status: CheckoutState
    gateway_status: GatewayStatus


class PaymentConfirm(ApiModel):
    bill_id: int
    payment_intent_id: str = Field(min_length=1, max_length=255)


class PaymentFailureReport(ApiModel):
    bill_id: int


class PaymentIntentStateOut(ApiModel):
    bill_id: int
    payment_intent_id: str
    status: CheckoutState
    gateway_status: GatewayStatus


class ReconciliationOut(ApiModel):
    bill_id: int
    payment_intent_id: str
    applied: bool
    bill: BillOut
