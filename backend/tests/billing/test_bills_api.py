import json
import time

from sqlalchemy import select

from hospital_erp.core.security import sign_webhook_payload
from hospital_erp.db.session import SessionLocal
from hospital_erp.deps import get_cache
from hospital_erp.main import app
from hospital_erp.models.audit_log import AuditLog
from hospital_erp.models.bill import Bill, BillStatus
from hospital_erp.services.cache import LocalQueryCache
from hospital_erp.services.payment_recorder import record_manual_payment


def test_requires_token(client):
    assert client.get("/bills").status_code == 401
    assert client.get("/bills", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_create_bill_from_items(client, patient, auth_headers, db):
    res = client.post(
        "/bills",
        json={
            "patientId": patient.id,
            "items": [
                {"description": "Consultation", "quantity": 2, "unitPrice": "50.00"},
                {"description": "Dressing", "unitPrice": "50.00"},
            ],
            "notes": "Outpatient visit",
        },
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["totalAmount"] == "150.00"
    assert body["paidAmount"] == "0.00"
    assert body["balance"] == "150.00"
    assert body["status"] == "pending"
    assert body["patientName"] == "Ada Okafor"
    assert [item["lineTotal"] for item in body["items"]] == ["100.00", "50.00"]
    assert body["payments"] == []

    entry = db.scalar(select(AuditLog).where(AuditLog.action == "bill.created"))
    assert entry.bill_id == body["id"]
    assert entry.entity_type == "bill"
    assert entry.amount_cents == 15000


def test_create_bill_validation(client, patient, auth_headers):
    mismatch = client.post(
        "/bills",
        json={
            "patientId": patient.id,
            "totalAmount": "99.00",
            "items": [{"description": "X-ray", "unitPrice": "80.00"}],
        },
        headers=auth_headers,
    )
    assert mismatch.status_code == 422

    missing = client.post(
        "/bills", json={"patientId": 9999, "totalAmount": "10.00"}, headers=auth_headers
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "patient_not_found"


def test_clinical_roles_cannot_bill(client, patient, nurse, headers_for):
    res = client.post(
        "/bills",
        json={"patientId": patient.id, "totalAmount": "10.00"},
        headers=headers_for(nurse),
    )
    assert res.status_code == 403


def test_manual_payments_over_http(client, make_bill, auth_headers):
    bill = make_bill(50000)

    first = client.post(f"/bills/{bill.id}/payments", json={"amount": "200.00"}, headers=auth_headers)
    assert first.status_code == 201, first.text
    assert first.json()["previousStatus"] == "pending"
    assert first.json()["bill"]["status"] == "partial"
    assert first.json()["bill"]["balance"] == "300.00"
    assert first.json()["payment"]["amount"] == "200.00"

    too_much = client.post(
        f"/bills/{bill.id}/payments", json={"amount": "600.00"}, headers=auth_headers
    )
    assert too_much.status_code == 422
    assert too_much.json()["code"] == "exceeds_balance"

    garbage = client.post(f"/bills/{bill.id}/payments", json={"amount": "1.234"}, headers=auth_headers)
    assert garbage.status_code == 422
    assert garbage.json()["code"] == "malformed_amount"

    rest = client.post(f"/bills/{bill.id}/payments", json={"amount": 300}, headers=auth_headers)
    assert rest.status_code == 201
    assert rest.json()["bill"]["status"] == "paid"

    history = client.get(f"/bills/{bill.id}/payments", headers=auth_headers).json()
    assert [p["amount"] for p in history] == ["200.00", "300.00"]


def test_cached_bill_reflects_new_payment(client, make_bill, auth_headers):
    bill = make_bill(50000)

    before = client.get(f"/bills/{bill.id}", headers=auth_headers).json()
    listed = client.get("/bills", params={"unpaid": True}, headers=auth_headers).json()
    client.post(f"/bills/{bill.id}/payments", json={"amount": "500"}, headers=auth_headers)
    after = client.get(f"/bills/{bill.id}", headers=auth_headers).json()
    relisted = client.get("/bills", params={"unpaid": True}, headers=auth_headers).json()

    assert before["status"] == "pending"
    assert [b["id"] for b in listed] == [bill.id]
    assert after["status"] == "paid"
    assert after["paidAmount"] == "500.00"
    assert relisted == []


def test_payment_from_another_worker_is_not_served_stale(client, make_bill, user, auth_headers):
    bill = make_bill(50000)
    client.get(f"/bills/{bill.id}", headers=auth_headers)
    client.get("/bills/summary", headers=auth_headers)

    other = SessionLocal()
    try:
        record_manual_payment(other, bill.id, "500.00", actor=user, cache=LocalQueryCache())
    finally:
        other.close()

    after = client.get(f"/bills/{bill.id}", headers=auth_headers).json()
    summary = client.get("/bills/summary", headers=auth_headers).json()
    assert after["status"] == "paid"
    assert after["balance"] == "0.00"
    assert summary["totalOutstanding"] == "0.00"


class PayWhileReadingCache(LocalQueryCache):
    """Commits a full payment between the database read and the cache write."""

    def __init__(self, bill_id, actor):
        super().__init__()
        self.bill_id = bill_id
        self.actor = actor
        self.paid = False

    def set(self, key, value, variant="", *, tag=None):
        if not self.paid:
            self.paid = True
            other = SessionLocal()
            try:
                record_manual_payment(other, self.bill_id, "500.00", actor=self.actor, cache=self)
            finally:
                other.close()
        super().set(key, value, variant, tag=tag)


def test_snapshot_read_before_a_payment_is_not_served(client, make_bill, user, auth_headers):
    bill = make_bill(50000)
    racing = PayWhileReadingCache(bill.id, user)
    app.dependency_overrides[get_cache] = lambda: racing

    first = client.get(f"/bills/{bill.id}", headers=auth_headers).json()
    second = client.get(f"/bills/{bill.id}", headers=auth_headers).json()

    assert racing.paid
    assert first["status"] == "pending"
    assert second["status"] == "paid"
    assert second["paidAmount"] == "500.00"


def test_search_variants_are_bounded(client, make_bill, auth_headers):
    make_bill(50000)
    small = LocalQueryCache(maxsize=8)
    app.dependency_overrides[get_cache] = lambda: small

    for n in range(50):
        res = client.get("/bills", params={"q": f"term-{n}"}, headers=auth_headers)
        assert res.status_code == 200

    assert len(small) <= 8


def test_missing_bill(client, auth_headers):
    res = client.get("/bills/9999", headers=auth_headers)
    assert res.status_code == 404
    assert res.json() == {"detail": "Bill 9999 not found", "code": "bill_not_found"}


def test_list_filters_and_summary(client, make_bill, auth_headers):
    open_bill = make_bill(50000)
    make_bill(20000, paid_cents=5000)
    make_bill(10000, paid_cents=10000)

    by_status = client.get("/bills", params={"status": "paid"}, headers=auth_headers).json()
    assert len(by_status) == 1
    searched = client.get("/bills", params={"q": "okafor"}, headers=auth_headers).json()
    assert len(searched) == 3
    by_id = client.get("/bills", params={"q": str(open_bill.id)}, headers=auth_headers).json()
    assert open_bill.id in [b["id"] for b in by_id]
    nobody = client.get("/bills", params={"q": "zzz"}, headers=auth_headers).json()
    assert nobody == []

    summary = client.get("/bills/summary", headers=auth_headers).json()
    assert summary == {
        "billCount": 3,
        "unpaidCount": 2,
        "totalBilled": "800.00",
        "totalPaid": "150.00",
        "totalOutstanding": "650.00",
    }


def test_patient_bills(client, make_bill, patient, auth_headers):
    bill = make_bill(12000)

    res = client.get(f"/bills/patient/{patient.id}", headers=auth_headers)

    assert res.status_code == 200
    assert [b["id"] for b in res.json()] == [bill.id]
    assert client.get("/bills/patient/9999", headers=auth_headers).status_code == 404


def test_checkout_over_http(client, make_bill, gateway, auth_headers, db):
    bill = make_bill(15000)

    created = client.post("/payments/intents", json={"billId": bill.id}, headers=auth_headers)
    assert created.status_code == 201, created.text
    intent = created.json()
    assert intent["amount"] == "150.00"
    assert intent["status"] == "intent_created"

    early = client.post(
        "/payments/confirm",
        json={"billId": bill.id, "paymentIntentId": intent["paymentIntentId"]},
        headers=auth_headers,
    )
    assert early.status_code == 409
    assert early.json()["code"] == "payment_not_succeeded"

    gateway.confirm(intent["paymentIntentId"])
    confirmed = client.post(
        "/payments/confirm",
        json={"billId": bill.id, "paymentIntentId": intent["paymentIntentId"]},
        headers=auth_headers,
    )
    replay = client.post(
        "/payments/confirm",
        json={"billId": bill.id, "paymentIntentId": intent["paymentIntentId"]},
        headers=auth_headers,
    )

    assert confirmed.status_code == 200
    assert confirmed.json()["applied"] is True
    assert replay.status_code == 200
    assert replay.json()["applied"] is False
    assert replay.json()["bill"]["paidAmount"] == "150.00"
    assert replay.json()["bill"]["intents"][0]["paymentIntentId"] == intent["paymentIntentId"]

    paid_again = client.post("/payments/intents", json={"billId": bill.id}, headers=auth_headers)
    assert paid_again.status_code == 409
    assert paid_again.json()["code"] == "bill_already_paid"


def test_gateway_outage_is_502(client, make_bill, gateway, auth_headers):
    bill = make_bill(15000)
    gateway.fail_next_create = True

    res = client.post("/payments/intents", json={"billId": bill.id}, headers=auth_headers)

    assert res.status_code == 502
    assert res.json()["code"] == "gateway_error"


def _signed(body, secret="whsec_test"):
    timestamp = int(time.time())
    signature = sign_webhook_payload(body, secret=secret, timestamp=timestamp)
    return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def test_webhook_applies_payment_once(client, make_bill, gateway, auth_headers, db):
    bill = make_bill(15000)
    intent = client.post("/payments/intents", json={"billId": bill.id}, headers=auth_headers).json()
    gateway.confirm(intent["paymentIntentId"])
    body = json.dumps(
        {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": intent["paymentIntentId"]}},
        }
    ).encode()

    first = client.post("/payments/webhook", content=body, headers=_signed(body))
    second = client.post("/payments/webhook", content=body, headers=_signed(body))

    assert first.status_code == 200, first.text
    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    fresh = db.get(Bill, bill.id, populate_existing=True)
    assert fresh.paid_cents == 15000
    assert fresh.status == BillStatus.paid


def test_webhook_rejects_bad_signature(client):
    body = b'{"type": "payment_intent.succeeded"}'

    forged = client.post("/payments/webhook", content=body, headers=_signed(body, secret="nope"))
    unsigned = client.post("/payments/webhook", content=body)

    assert forged.status_code == 400
    assert unsigned.status_code == 400


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
