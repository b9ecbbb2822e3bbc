from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hospital_erp.core.money import cents_to_decimal
from hospital_erp.models.base import AuditMixin, Base, TimestampMixin


class BillStatus(str, enum.Enum):
    pending = "pending"
    partial = "partial"
    paid = "paid"


class PaymentSource(str, enum.Enum):
    manual = "manual"
    gateway = "gateway"


class PaymentMethod(str, enum.Enum):
    cash = "cash"
    card = "card"
    bank_transfer = "bank_transfer"
    insurance = "insurance"
    other = "other"


class CheckoutState(str, enum.Enum):
    initializing = "initializing"
    intent_created = "intent_created"
    awaiting_confirmation = "awaiting_confirmation"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class GatewayStatus(str, enum.Enum):
    requires_payment = "requires_payment"
    succeeded = "succeeded"
    failed = "failed"


class Bill(Base, AuditMixin):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[BillStatus] = mapped_column(
        Enum(BillStatus, name="bill_status"),
        nullable=False,
        default=BillStatus.pending,
        index=True,
    )
    bill_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    patient = relationship("Patient", back_populates="bills", lazy="joined")
    items = relationship(
        "BillItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BillItem.id",
    )
    payments = relationship(
        "BillPayment",
        back_populates="bill",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BillPayment.id",
    )
    intents = relationship(
        "PaymentIntent",
        back_populates="bill",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PaymentIntent.id",
    )

    @property
    def balance_cents(self) -> int:
        return max(self.total_cents - self.paid_cents, 0)

    @property
    def total_amount(self) -> Decimal:
        return cents_to_decimal(self.total_cents)

    @property
    def paid_amount(self) -> Decimal:
        return cents_to_decimal(self.paid_cents)

    @property
    def balance(self) -> Decimal:
        return cents_to_decimal(self.balance_cents)

    @property
    def patient_name(self) -> str | None:
        return self.patient.display_name if self.patient else None

    @property
    def gateway_status(self) -> GatewayStatus | None:
        if not self.intents:
            return None
        return self.intents[-1].gateway_status


class BillItem(Base):
    __tablename__ = "bill_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bill = relationship("Bill", back_populates="items")

    @property
    def unit_price(self) -> Decimal:
        return cents_to_decimal(self.unit_price_cents)

    @property
    def line_total(self) -> Decimal:
        return cents_to_decimal(self.line_total_cents)


class BillPayment(Base):
    __tablename__ = "bill_payments"
    __table_args__ = (
        UniqueConstraint(
            "bill_id", "external_reference", name="uq_bill_payments_external_reference"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[PaymentSource] = mapped_column(
        Enum(PaymentSource, name="payment_source"), nullable=False
    )
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method"), nullable=False
    )
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    bill = relationship("Bill", back_populates="payments")

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)


class PaymentIntent(Base, TimestampMixin):
    __tablename__ = "payment_intents"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False, index=True)
    intent_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    state: Mapped[CheckoutState] = mapped_column(
        Enum(CheckoutState, name="checkout_state"),
        nullable=False,
        default=CheckoutState.intent_created,
    )
    gateway_status: Mapped[GatewayStatus] = mapped_column(
        Enum(GatewayStatus, name="gateway_status"),
        nullable=False,
        default=GatewayStatus.requires_payment,
    )
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    bill = relationship("Bill", back_populates="intents")

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)
