from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from itertools import count
from typing import Any, Iterable, Protocol

import httpx

from hospital_erp.core.settings import Settings
from hospital_erp.models.bill import GatewayStatus
from hospital_erp.services.errors import GatewayError

logger = logging.getLogger("hospital_erp.gateway")

_SUCCEEDED = {"succeeded"}
_FAILED = {"canceled", "cancelled", "failed"}


def map_gateway_status(raw: str | None) -> GatewayStatus:
    value = (raw or "").strip().lower()
    if value in _SUCCEEDED:
        return GatewayStatus.succeeded
    if value in _FAILED:
        return GatewayStatus.failed
    return GatewayStatus.requires_payment


@dataclass(frozen=True)
class GatewayIntent:
    intent_id: str
    status: GatewayStatus
    amount_cents: int
    client_secret: str | None = None
    bill_reference: str | None = None


class PaymentGateway(Protocol):
    def create_payment_intent(
        self, amount_cents: int, bill_reference: str, *, idempotency_key: str | None = None
    ) -> GatewayIntent:
        raise NotImplementedError

    def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        raise NotImplementedError


@dataclass
class GatewayConfig:
    api_key: str | None
    base_url: str
    currency: str
    timeout_seconds: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            api_key=settings.gateway_api_key,
            base_url=settings.gateway_base_url.rstrip("/"),
            currency=settings.gateway_currency.lower(),
            timeout_seconds=settings.gateway_timeout_seconds,
        )


class HttpPaymentGateway(PaymentGateway):
    """Card gateway client speaking the Stripe PaymentIntents REST API."""

    def __init__(self, config: GatewayConfig, *, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(
            base_url=config.base_url, timeout=config.timeout_seconds
        )

    def create_payment_intent(
        self, amount_cents: int, bill_reference: str, *, idempotency_key: str | None = None
    ) -> GatewayIntent:
        data = {
            "amount": str(amount_cents),
            "currency": self._config.currency,
            "metadata[bill_id]": bill_reference,
            "automatic_payment_methods[enabled]": "true",
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        payload = self._request("POST", "/v1/payment_intents", data=data, headers=headers)
        return self._to_intent(payload)

    def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        return self._to_intent(self._request("GET", f"/v1/payment_intents/{intent_id}"))

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if not self._config.api_key:
            raise GatewayError("Payment gateway is not configured")
        request_headers = {"Authorization": f"Bearer {self._config.api_key}"}
        if headers:
            request_headers.update(headers)
        try:
            response = self._client.request(method, path, data=data, headers=request_headers)
        except httpx.HTTPError as exc:
            logger.warning("Gateway %s %s failed: %s", method, path, exc)
            raise GatewayError() from exc

        if response.status_code >= 400:
            message = None
            try:
                message = response.json().get("error", {}).get("message")
            except ValueError:
                pass
            logger.warning(
                "Gateway %s %s returned %s: %s", method, path, response.status_code, message
            )
            raise GatewayError(message or f"Payment gateway returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway returned an unreadable response") from exc

    @staticmethod
    def _to_intent(payload: dict[str, Any]) -> GatewayIntent:
        intent_id = payload.get("id")
        if not intent_id:
            raise GatewayError("Payment gateway response is missing the intent id")
        metadata = payload.get("metadata") or {}
        return GatewayIntent(
            intent_id=str(intent_id),
            status=map_gateway_status(payload.get("status")),
            amount_cents=int(payload.get("amount") or 0),
            client_secret=payload.get("client_secret"),
            bill_reference=metadata.get("bill_id"),
        )


class FixturePaymentGateway(PaymentGateway):
    """In-memory gateway for local development and tests; outcomes are set explicitly."""

    def __init__(self, intent_ids: Iterable[str] | None = None) -> None:
        self._intents: dict[str, GatewayIntent] = {}
        self._ids = iter(intent_ids) if intent_ids is not None else None
        self._counter = count(1)
        self._by_key: dict[str, str] = {}
        self.fail_next_create = False
        self.created: list[GatewayIntent] = []

    def create_payment_intent(
        self, amount_cents: int, bill_reference: str, *, idempotency_key: str | None = None
    ) -> GatewayIntent:
        if self.fail_next_create:
            self.fail_next_create = False
            raise GatewayError("Fixture gateway refused to create the intent")
        if idempotency_key in self._by_key:
            return self._intents[self._by_key[idempotency_key]]
        intent_id = next(self._ids, None) if self._ids is not None else None
        if intent_id is None:
            intent_id = f"pi_fixture_{next(self._counter):06d}"
        intent = GatewayIntent(
            intent_id=intent_id,
            status=GatewayStatus.requires_payment,
            amount_cents=amount_cents,
            client_secret=f"{intent_id}_secret_{secrets.token_hex(8)}",
            bill_reference=bill_reference,
        )
        self._intents[intent_id] = intent
        if idempotency_key:
            self._by_key[idempotency_key] = intent_id
        self.created.append(intent)
        return intent

    def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment intent: {intent_id}")
        return intent

    def confirm(self, intent_id: str) -> GatewayIntent:
        return self._set_status(intent_id, GatewayStatus.succeeded)

    def fail(self, intent_id: str) -> GatewayIntent:
        return self._set_status(intent_id, GatewayStatus.failed)

    def _set_status(self, intent_id: str, status: GatewayStatus) -> GatewayIntent:
        intent = replace(self.retrieve_payment_intent(intent_id), status=status)
        self._intents[intent_id] = intent
        return intent


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    backend = settings.payment_gateway.strip().lower()
    if backend == "fixture":
        logger.warning("Using the fixture payment gateway; no real payments will be taken.")
        return FixturePaymentGateway()
    if backend == "stripe":
        return HttpPaymentGateway(GatewayConfig.from_settings(settings))
    raise RuntimeError(f"Unknown payment gateway backend: {settings.payment_gateway}")
