"""
Shared fixtures. Environment is set before any app module reads settings.
SQLite in-memory database per test; Daraja is an httpx.MockTransport.
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest-unused.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.models.purchase import Purchase  # noqa: F401  (registers table)
from app.models.sale import Sale  # noqa: F401
from app.models.transaction import Transaction  # noqa: F401
from app.services.mpesa.client import DarajaClient, MpesaConfig


TEST_CONFIG = MpesaConfig(
    consumer_key="test-consumer-key",
    consumer_secret="test-consumer-secret",
    business_short_code="174379",
    passkey="test-passkey",
    callback_url="https://example.test/api/mpesa/callback",
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class DarajaStub:
    """Records requests and answers like the Daraja sandbox."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.checkout_request_id = "ws_CO_191220191020363925"
        self.merchant_request_id = "29115-34620561-1"
        self.token_status = 200
        self.push_status = 200
        self.push_error = "Bad Request - Invalid PhoneNumber"
        self.query_status = 200
        self.query_body = {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "The service request is processed successfully."}

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def json_body(self, path: str) -> dict:
        for r in self.requests:
            if r.url.path == path:
                return json.loads(r.content)
        raise AssertionError(f"no request to {path}")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": "sandbox-token", "expires_in": "3599"})
        if path == "/mpesa/stkpush/v1/processrequest":
            if self.push_status != 200:
                return httpx.Response(self.push_status, json={"errorCode": "400.002.02", "errorMessage": self.push_error})
            return httpx.Response(200, json={
                "MerchantRequestID": self.merchant_request_id,
                "CheckoutRequestID": self.checkout_request_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })
        if path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(self.query_status, json=self.query_body)
        return httpx.Response(404, json={"errorMessage": "not found"})


@pytest.fixture
def daraja():
    return DarajaStub()


@pytest.fixture
def gateway(daraja):
    client = DarajaClient(TEST_CONFIG, http_client=httpx.Client(transport=httpx.MockTransport(daraja.handler)))
    yield client
    client.close()


class MemoryIdempotencyStore:
    def __init__(self):
        self.keys: set[str] = set()
        self.ttls: dict[str, int | None] = {}

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        if key in self.keys:
            return False
        self.keys.add(key)
        self.ttls[key] = ttl_seconds
        return True

    def release(self, key: str) -> None:
        self.keys.discard(key)


@pytest.fixture
def idempotency():
    return MemoryIdempotencyStore()


def _cart_item(index: int = 1, price: float = 500) -> dict:
    return {
        "id": f"mat-{index}",
        "title": f"CPA Section {index} Revision Kit",
        "subject": "Financial Accounting",
        "level": "Foundation",
        "year": "2024",
        "price": price,
        "downloadURL": f"https://storage.example.test/materials/mat-{index}.pdf",
        "fileSize": "2.5 MB",
        "pages": 120,
    }


@pytest.fixture
def cart_item():
    return _cart_item


def _success_callback(checkout_request_id: str, receipt: str = "ABC123", amount: float = 500, date: int = 20240115143022) -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "Balance"},
                        {"Name": "TransactionDate", "Value": date},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }


def _failure_callback(checkout_request_id: str, code: int = 1032, desc: str = "Request cancelled by user") -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": code,
                "ResultDesc": desc,
            }
        }
    }


@pytest.fixture
def success_callback():
    return _success_callback


@pytest.fixture
def failure_callback():
    return _failure_callback


@pytest.fixture
def mpesa_config():
    return TEST_CONFIG


@pytest.fixture
def make_gateway(daraja):
    """Factory for DarajaClient over the stub with optional config / cache / breaker."""
    clients = []

    def factory(config=TEST_CONFIG, **kwargs):
        client = DarajaClient(config, http_client=httpx.Client(transport=httpx.MockTransport(daraja.handler)), **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
