"""
Shared fixtures: in-memory database, users and a fake Daraja API.
"""
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.user import User
from app.api.routes.payments import get_payment_provider
from app.core import config
from app.core.auth_dependency import get_db
from app.core.rate_limit import rate_limit_store
from app.core.security import hash_password, create_access_token
from app.services.mpesa_client import AccessTokenCache, MpesaClient


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


def _make_user(db, email: str) -> User:
    user = User(
        full_name="Jane Wanjiku",
        email=email,
        password_hash=hash_password("testpass123"),
        role="staff",
        school_name="Test School",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db):
    """Create a test user."""
    return _make_user(db, "jane@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com")


@pytest.fixture
def auth_headers(test_user):
    token = create_access_token({"sub": test_user.id})
    return {"Authorization": f"Bearer {token}"}


class FakeDaraja:
    """
    Minimal stand-in for the Daraja OAuth and STK push endpoints.

    Tweak the attributes to script provider behaviour for a test.
    """

    def __init__(self):
        self.token_calls = 0
        self.push_requests = []
        self.push_status = 200
        self.push_body = None
        self.push_timeout = False
        self.reject_tokens = set()
        self.on_push = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            if self.push_timeout:
                raise httpx.ReadTimeout("timed out", request=request)

            token = request.headers["Authorization"].removeprefix("Bearer ")
            if token in self.reject_tokens:
                return httpx.Response(401, json={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"})

            body = json.loads(request.content)
            self.push_requests.append(body)
            if self.on_push:
                self.on_push(body)

            if self.push_body is not None:
                return httpx.Response(self.push_status, json=self.push_body)

            n = len(self.push_requests)
            return httpx.Response(self.push_status, json={
                "MerchantRequestID": f"29115-34620561-{n}",
                "CheckoutRequestID": f"ws_CO_191220191020363925_{n}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        return httpx.Response(404, json={"errorMessage": "Not found"})


@pytest.fixture
def fake_daraja():
    return FakeDaraja()


@pytest.fixture
def provider(fake_daraja):
    """MpesaClient wired to the fake Daraja API with its own token cache."""
    return MpesaClient(
        base_url=SANDBOX_URL,
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="test-passkey",
        callback_url="https://api.example.com/api/payments/mpesa/callback",
        timeout=5,
        http_client=httpx.Client(transport=httpx.MockTransport(fake_daraja.handler)),
        token_cache=AccessTokenCache(),
    )


def build_callback(checkout_request_id, result_code=0, result_desc=None, items=None):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Request cancelled by user"
        ),
    }
    if items is not None:
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


def success_items(receipt="QAX123", transaction_date=20250116103000, phone=254712345678, amount=1200):
    return [
        {"Name": "Amount", "Value": amount},
        {"Name": "MpesaReceiptNumber", "Value": receipt},
        {"Name": "Balance"},
        {"Name": "TransactionDate", "Value": transaction_date},
        {"Name": "PhoneNumber", "Value": phone},
    ]


@pytest.fixture
def make_callback():
    """Factory for STK callback envelopes."""
    return build_callback


@pytest.fixture
def make_success_callback():
    def _make(checkout_request_id, **kwargs):
        return build_callback(checkout_request_id, result_code=0, items=success_items(**kwargs))
    return _make


@pytest.fixture
def client(db, provider, monkeypatch):
    """TestClient sharing the test session and the fake provider."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    monkeypatch.setattr(config, "MPESA_CALLBACK_TOKEN", None)
    rate_limit_store.clear()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        rate_limit_store.clear()
