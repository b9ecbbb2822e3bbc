from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from hospital_erp.models.bill import (
    BillStatus,
    CheckoutState,
    GatewayStatus,
    PaymentMethod,
    PaymentSource,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BillItemCreate(ApiModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0, decimal_places=2)


class BillCreate(ApiModel):
    patient_id: int
    total_amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    items: list[BillItemCreate] = Field(default_factory=list)
    bill_date: Optional[datetime] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _total_or_items(self):
        if not self.items and self.total_amount is None:
            raise ValueError("Provide totalAmount or at least one item")
        if self.items:
            items_total = sum((item.unit_price * item.quantity for item in self.items), Decimal("0"))
            if items_total <= 0:
                raise ValueError("Bill items must add up to more than zero")
            if self.total_amount is not None and self.total_amount != items_total:
                raise ValueError("totalAmount does not match the sum of the items")
        return self


class BillItemOut(ApiModel):
    id: int
    description: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class PaymentOut(ApiModel):
    id: int
    amount: Decimal
    source: PaymentSource
    method: PaymentMethod
    external_reference: Optional[str] = None
    note: Optional[str] = None
    recorded_at: datetime
    recorded_by_user_id: Optional[int] = None


class PaymentIntentSummaryOut(ApiModel):
    payment_intent_id: str = Field(
        validation_alias=AliasChoices("intent_id", "paymentIntentId", "payment_intent_id")
    )
    amount: Decimal
    currency: str
    state: CheckoutState
    gateway_status: GatewayStatus
    created_at: datetime


class BillSummaryOut(ApiModel):
    id: int
    patient_id: int
    patient_name: Optional[str] = None
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    status: BillStatus
    bill_date: datetime
    due_date: Optional[date] = None
    gateway_status: Optional[GatewayStatus] = None
    created_at: datetime
    updated_at: datetime


class BillOut(BillSummaryOut):
    notes: Optional[str] = None
    created_by_user_id: int
    items: list[BillItemOut]
    payments: list[PaymentOut]
    intents: list[PaymentIntentSummaryOut]


class ManualPaymentCreate(ApiModel):
    amount: str
    method: PaymentMethod = PaymentMethod.cash
    note: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, value):
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, Decimal)):
            return str(value)
        if isinstance(value, float):
            return repr(value)
        return value


class PaymentRecordedOut(ApiModel):
    bill: BillOut
    payment: PaymentOut
    previous_status: BillStatus


class BillingSummaryOut(ApiModel):
    bill_count: int
    unpaid_count: int
    total_billed: Decimal
    total_paid: Decimal
    total_outstanding: Decimal
