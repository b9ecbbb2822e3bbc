from __future__ import annotations


class BillingError(Exception):
    status_code = 400
    code = "billing_error"
    default_message = "Billing request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class MalformedAmount(BillingError):
    status_code = 422
    code = "malformed_amount"
    default_message = "Amount must be a positive decimal number with at most two decimals"


class InvalidAmount(BillingError):
    status_code = 422
    code = "invalid_amount"
    default_message = "Amount must be greater than zero"


class ExceedsBalance(BillingError):
    status_code = 422
    code = "exceeds_balance"
    default_message = "Amount exceeds the outstanding balance"


class OverpaymentRejected(BillingError):
    status_code = 422
    code = "overpayment_rejected"
    default_message = "Payment would exceed the bill total"


class BillNotFound(BillingError):
    status_code = 404
    code = "bill_not_found"
    default_message = "Bill not found"


class PatientNotFound(BillingError):
    status_code = 404
    code = "patient_not_found"
    default_message = "Patient not found"


class PaymentIntentNotFound(BillingError):
    status_code = 404
    code = "payment_intent_not_found"
    default_message = "Payment intent not found for this bill"


class BillAlreadyPaid(BillingError):
    status_code = 409
    code = "bill_already_paid"
    default_message = "Bill is already paid"


class PaymentNotSucceeded(BillingError):
    status_code = 409
    code = "payment_not_succeeded"
    default_message = "The payment gateway has not confirmed this payment"


class ConflictError(BillingError):
    status_code = 409
    code = "conflict"
    default_message = "Payment may already be recorded, please refresh and verify"


class ReconciliationError(BillingError):
    status_code = 409
    code = "reconciliation_failed"
    default_message = (
        "The gateway payment could not be applied to the bill; please refresh and verify"
    )


class GatewayError(BillingError):
    status_code = 502
    code = "gateway_error"
    default_message = "Payment gateway request failed, please try again"
