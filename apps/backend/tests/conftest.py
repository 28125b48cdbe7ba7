"""
Shared fixtures.

Environment is set before anything imports `database` / `auth`, both of
which refuse to load without DATABASE_URL and JWT_SECRET.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("QPAY_MAX_RETRIES", "0")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from auth.auth_utils import create_access_token, hash_password
from database import Base, SessionLocal, engine
from academy import models  # noqa: F401 - registers tables
from academy.errors import QPayError
from academy.main import app
from academy.models import Account, Course
from academy.qpay import get_qpay_client


class FakeQPay:
    """In-memory QPay: tests decide what payment/check reports per invoice."""

    def __init__(self):
        self.payments: dict[str, list[dict]] = {}
        self.fail_check = False
        self.fail_create = False
        self.check_calls = 0
        self.created: list[dict] = []

    def create_invoice(self, sender_invoice_no, amount, description, **_):
        if self.fail_create:
            raise QPayError("QPAY_SERVICE_ERROR", 503, "down")
        invoice_id = f"inv-{len(self.created) + 1}"
        self.created.append({"invoice_id": invoice_id, "amount": amount, "sender_invoice_no": sender_invoice_no})
        return {"invoice_id": invoice_id, "qr_text": "qr", "qr_image": "img", "urls": []}

    def pay(self, invoice_id, amount, payment_id=None):
        rows = self.payments.setdefault(invoice_id, [])
        rows.append({"payment_id": payment_id or f"pay-{invoice_id}-{len(rows) + 1}", "amount": amount})

    def check_payment(self, invoice_id):
        self.check_calls += 1
        if self.fail_check:
            raise QPayError("TIMEOUT", 0, "timed out")
        return {"payments": list(self.payments.get(invoice_id, []))}


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def qpay_fake():
    return FakeQPay()


@pytest.fixture
def client(db, qpay_fake):
    app.dependency_overrides[get_qpay_client] = lambda: qpay_fake
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_account(db):
    def _make(email="buyer@example.com", role="user", password="correct-horse"):
        account = Account(email=email, name=email.split("@")[0], role=role, password_hash=hash_password(password))
        db.add(account)
        db.commit()
        return account
    return _make


@pytest.fixture
def make_course(db):
    def _make(title="Python 101", price=20000, status="active", access_days=None):
        course = Course(title=title, price=price, currency="MNT", status=status, access_days=access_days)
        db.add(course)
        db.commit()
        return course
    return _make


@pytest.fixture
def auth_headers():
    def _headers(account, role=None):
        token = create_access_token(account.id, account.email, role or account.role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def anyio_backend():
    return "asyncio"
