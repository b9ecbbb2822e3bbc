from hospital_erp.models.base import Base
from hospital_erp.models.user import Role, User
from hospital_erp.models.audit_log import AuditLog
from hospital_erp.models.patient import Patient
from hospital_erp.models.bill import (
    Bill,
    BillItem,
    BillPayment,
    BillStatus,
    CheckoutState,
    GatewayStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentSource,
)

__all__ = [
    "Base",
    "Role",
    "User",
    "AuditLog",
    "Patient",
    "Bill",
    "BillItem",
    "BillPayment",
    "BillStatus",
    "CheckoutState",
    "GatewayStatus",
    "PaymentIntent",
    "PaymentMethod",
    "PaymentSource",
]
