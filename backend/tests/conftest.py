import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="hospital-erp-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'billing.db')}"
os.environ.setdefault("APP_ENV", "test")
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-1234"
os.environ["PAYMENT_GATEWAY"] = "fixture"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test"

import pytest
from fastapi.testclient import TestClient

from hospital_erp.core.security import create_access_token
from hospital_erp.db.session import SessionLocal, engine
from hospital_erp.deps import JWT_ALG, _jwt_secret, get_cache, get_payment_gateway
from hospital_erp.main import app
from hospital_erp.models import Base, Bill, Patient, Role, User
from hospital_erp.services.cache import LocalQueryCache
from hospital_erp.services.gateway import FixturePaymentGateway
from hospital_erp.services.ledger import compute_status


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache():
    return LocalQueryCache()


@pytest.fixture
def gateway():
    return FixturePaymentGateway()


@pytest.fixture
def user(db):
    return _make_user(db, "accounts@example.com", Role.accountant)


@pytest.fixture
def nurse(db):
    return _make_user(db, "nurse@example.com", Role.nurse)


def _make_user(db, email, role):
    account = User(email=email, full_name=email.split("@")[0].title(), role=role, is_active=True)
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def patient(db, user):
    record = Patient(
        hospital_number="H-0001",
        first_name="Ada",
        last_name="Okafor",
        created_by_user_id=user.id,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


@pytest.fixture
def make_bill(db, user, patient):
    def _make(total_cents, paid_cents=0):
        bill = Bill(
            patient_id=patient.id,
            total_cents=total_cents,
            paid_cents=paid_cents,
            status=compute_status(total_cents, paid_cents),
            created_by_user_id=user.id,
        )
        db.add(bill)
        db.commit()
        db.refresh(bill)
        return bill

    return _make


def token_headers(account):
    token = create_access_token(
        subject=str(account.id), secret=_jwt_secret(), alg=JWT_ALG, expires_minutes=30
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(user):
    return token_headers(user)


@pytest.fixture
def client(gateway, cache):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_cache] = lambda: cache
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    return token_headers
