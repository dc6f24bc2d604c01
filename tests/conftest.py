from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core import config as core_config
from core.db import Base, get_db, enable_sqlite_savepoints
from services.mpesa import MpesaClient, get_mpesa_client


ACCEPTED_RESPONSE = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class FakeMpesaClient(MpesaClient):
    """Gateway double: records pushes and answers with canned responses."""

    def __init__(self, **overrides):
        config = dict(
            base_url="https://sandbox.safaricom.co.ke",
            shortcode="174379",
            passkey="test-passkey",
            consumer_key="test-key",
            consumer_secret="test-secret",
            callback_url="https://example.com/payments/callback",
        )
        config.update(overrides)
        super().__init__(**config)
        self.response: Dict[str, Any] = dict(ACCEPTED_RESPONSE)
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.query_responses: Dict[str, Any] = {}

    def stk_push(self, **kwargs) -> Dict[str, Any]:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return dict(self.response)

    def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        answer = self.query_responses.get(checkout_request_id, {})
        if isinstance(answer, Exception):
            raise answer
        return dict(answer)


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.TESTING = True
    core_config.settings.MPESA_ENV = "sandbox"
    core_config.settings.MPESA_CALLBACK_TOKEN = ""
    yield


def _sqlite_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    return engine, TestingSessionLocal()


@pytest.fixture()
def db_session_override():
    engine, db = _sqlite_session()

    def _get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.clear()
        engine.dispose()


@pytest.fixture()
def db():
    """Create a fresh database for each test."""
    engine, db_session = _sqlite_session()
    yield db_session
    db_session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def fake_mpesa():
    gateway = FakeMpesaClient()
    app.dependency_overrides[get_mpesa_client] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_mpesa_client, None)


@pytest.fixture()
def client(db_session_override, fake_mpesa):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def stk_callback():
    """Build a Daraja `Body.stkCallback` payload."""

    def _build(
        checkout_request_id: Optional[str] = "ws_1",
        merchant_request_id: Optional[str] = "mr_1",
        result_code: Any = 0,
        result_desc: Optional[str] = None,
        amount: Any = 50,
        receipt: Optional[str] = "ABC123",
        phone: Any = "254712345678",
        transaction_date: Any = "20240101120000",
    ) -> Dict[str, Any]:
        items = []
        if amount is not None:
            items.append({"Name": "Amount", "Value": amount})
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if phone is not None:
            items.append({"Name": "PhoneNumber", "Value": phone})
        if transaction_date is not None:
            items.append({"Name": "TransactionDate", "Value": transaction_date})

        callback: Dict[str, Any] = {
            "ResultCode": result_code,
            "ResultDesc": result_desc
            if result_desc is not None
            else ("The service request is processed successfully." if result_code == 0 else "Failed"),
        }
        if merchant_request_id is not None:
            callback["MerchantRequestID"] = merchant_request_id
        if checkout_request_id is not None:
            callback["CheckoutRequestID"] = checkout_request_id
        if items:
            callback["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": callback}}

    return _build
