"""Client-side driver for one card checkout attempt.

A ``CheckoutFlow`` walks initializing -> intent_created -> awaiting_confirmation
-> succeeded | failed (or cancelled when the user navigates away). The card
form itself belongs to the gateway's client library; the flow only receives
its outcome and, on success, asks the backend to reconcile exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from hospital_erp.models.bill import CheckoutState
from hospital_erp.services.errors import (
    BillNotFound,
    BillingError,
    ConflictError,
    GatewayError,
    ReconciliationError,
)

logger = logging.getLogger("hospital_erp.checkout")

_TRANSITIONS: dict[CheckoutState, set[CheckoutState]] = {
    CheckoutState.initializing: {CheckoutState.intent_created, CheckoutState.cancelled},
    CheckoutState.intent_created: {CheckoutState.awaiting_confirmation, CheckoutState.cancelled},
    CheckoutState.awaiting_confirmation: {
        CheckoutState.succeeded,
        CheckoutState.failed,
        CheckoutState.cancelled,
    },
    CheckoutState.succeeded: set(),
    CheckoutState.failed: set(),
    CheckoutState.cancelled: set(),
}


class CheckoutStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class IntentHandle:
    bill_id: int
    intent_id: str
    client_secret: str
    amount: Decimal


@dataclass(frozen=True)
class ConfirmationResult:
    """What the gateway's client-side confirmation reports back."""

    status: str
    intent_id: str
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class Reconciliation:
    bill_id: int
    intent_id: str
    applied: bool
    bill: dict[str, Any]


class CheckoutApi(Protocol):
    def create_intent(self, bill_id: int) -> IntentHandle:
        raise NotImplementedError

    def reconcile(self, bill_id: int, intent_id: str) -> Reconciliation:
        raise NotImplementedError

    def report_failure(self, bill_id: int, intent_id: str) -> None:
        raise NotImplementedError


_ERRORS_BY_CODE: dict[str, type[BillingError]] = {
    BillNotFound.code: BillNotFound,
    GatewayError.code: GatewayError,
    ConflictError.code: ConflictError,
    ReconciliationError.code: ReconciliationError,
}


class HttpCheckoutApi(CheckoutApi):
    """Talks to the ``/payments`` endpoints of the billing API."""

    def __init__(self, client: httpx.Client, *, headers: dict[str, str] | None = None) -> None:
        self._client = client
        self._headers = headers or {}

    def create_intent(self, bill_id: int) -> IntentHandle:
        data = self._post("/payments/intents", {"billId": bill_id})
        return IntentHandle(
            bill_id=data["billId"],
            intent_id=data["paymentIntentId"],
            client_secret=data["clientSecret"],
            amount=Decimal(data["amount"]),
        )

    def reconcile(self, bill_id: int, intent_id: str) -> Reconciliation:
        data = self._post("/payments/confirm", {"billId": bill_id, "paymentIntentId": intent_id})
        return Reconciliation(
            bill_id=data["billId"],
            intent_id=data["paymentIntentId"],
            applied=data["applied"],
            bill=data["bill"],
        )

    def report_failure(self, bill_id: int, intent_id: str) -> None:
        self._post(f"/payments/intents/{intent_id}/fail", {"billId": bill_id})

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise GatewayError("Could not reach the billing service") from exc
        if response.status_code >= 400:
            body: dict[str, Any] = {}
            try:
                body = response.json()
            except ValueError:
                pass
            error_cls = _ERRORS_BY_CODE.get(body.get("code", ""), BillingError)
            raise error_cls(body.get("detail") or f"Billing service returned HTTP {response.status_code}")
        return response.json()


class CheckoutFlow:
    def __init__(self, api: CheckoutApi, bill_id: int) -> None:
        self.api = api
        self.bill_id = bill_id
        self.state = CheckoutState.initializing
        self.intent: IntentHandle | None = None
        self.reconciliation: Reconciliation | None = None
        self.error: str | None = None

    def _advance(self, target: CheckoutState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise CheckoutStateError(f"Cannot move checkout from {self.state.value} to {target.value}")
        self.state = target

    def create_intent(self) -> IntentHandle:
        if self.state != CheckoutState.initializing:
            raise CheckoutStateError(f"Intent already requested (state {self.state.value})")
        # GatewayError / BillNotFound leave the flow in initializing so the
        # caller can offer a retry.
        self.intent = self.api.create_intent(self.bill_id)
        self._advance(CheckoutState.intent_created)
        return self.intent

    def begin_confirmation(self) -> str:
        """Hand the client secret to the gateway's card form."""
        self._advance(CheckoutState.awaiting_confirmation)
        assert self.intent is not None
        return self.intent.client_secret

    def complete(self, result: ConfirmationResult) -> Reconciliation | None:
        if self.state == CheckoutState.succeeded:
            if self.reconciliation is not None:
                return self.reconciliation
            return self._reconcile()
        if self.state != CheckoutState.awaiting_confirmation:
            raise CheckoutStateError(f"Nothing to confirm (state {self.state.value})")
        assert self.intent is not None
        if result.intent_id != self.intent.intent_id:
            raise CheckoutStateError(
                f"Confirmation for {result.intent_id} does not match intent {self.intent.intent_id}"
            )

        if not result.succeeded:
            self._advance(CheckoutState.failed)
            self.error = result.error_message or "Payment failed"
            try:
                self.api.report_failure(self.bill_id, self.intent.intent_id)
            except BillingError as exc:
                logger.warning("Could not report failed checkout %s: %s", self.intent.intent_id, exc)
            return None

        self._advance(CheckoutState.succeeded)
        return self._reconcile()

    def _reconcile(self) -> Reconciliation:
        assert self.intent is not None
        try:
            self.reconciliation = self.api.reconcile(self.bill_id, self.intent.intent_id)
        except BillingError as exc:
            self.error = exc.message
            logger.error(
                "Reconciliation of %s for bill %s failed: %s",
                self.intent.intent_id,
                self.bill_id,
                exc.message,
            )
            if isinstance(exc, ReconciliationError):
                raise
            raise ReconciliationError(exc.message) from exc
        self.error = None
        return self.reconciliation

    def cancel(self) -> None:
        if self.state in {CheckoutState.succeeded, CheckoutState.failed, CheckoutState.cancelled}:
            return
        self._advance(CheckoutState.cancelled)
