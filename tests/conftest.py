"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database with no disk I/O.
Gateway calls go to the sandbox simulator with no latency and no backoff.
"""
import json
import pytest
from datetime import datetime, timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from typing import Optional

from payments.config import Settings, get_settings
from payments.database import Base, get_db
from payments import models
from payments.dependencies import get_gateway_clients
from payments.gateways.base import CardData
from payments.gateways.client import GatewayClient
from payments.gateways.sandbox import SandboxGateway
from payments.services.orchestrator import PaymentOrchestrator
from payments.services.recorder import GatewayLogRecorder
from payments.services.signature import compute_signature


WEBHOOK_SECRET = "test_webhook_secret_123"
APPROVED_CARD = "4242424242424242"
DECLINED_CARD = "4000000000000002"
INSUFFICIENT_FUNDS_CARD = "4000000000009995"


# ---------------------------------------------------------------------------
# In-memory database engine shared across all fixtures in a test session.
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    """Yield a SQLAlchemy session backed by the in-memory test database."""
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="test",
        PAYMENT_GATEWAY="wompi",
        GATEWAY_MODE="sandbox",
        WOMPI_WEBHOOK_SECRET=WEBHOOK_SECRET,
        GATEWAY_TIMEOUT_SECONDS=1.0,
        GATEWAY_MAX_RETRIES=2,
        GATEWAY_BACKOFF_SECONDS=0,
        GATEWAY_BACKOFF_MAX_SECONDS=0,
        SUPPORTED_CURRENCIES=["COP"],
        PENDING_EXPIRY_MINUTES=30,
    )


@pytest.fixture
def sandbox():
    return SandboxGateway(gateway_name="wompi", latency=(0, 0))


@pytest.fixture
def gateway_client(sandbox):
    return GatewayClient(
        sandbox,
        GatewayLogRecorder(TestingSession),
        timeout=1.0,
        max_retries=2,
        backoff=0,
        backoff_max=0,
    )


@pytest.fixture
def gateways(gateway_client):
    return {"wompi": gateway_client}


@pytest.fixture
def orchestrator(db, gateways, settings):
    return PaymentOrchestrator(db, gateways, settings)


@pytest.fixture
def client(db, gateways, settings):
    """
    FastAPI TestClient with the DB, gateway and settings dependencies
    overridden. The TestClient is NOT used as a context manager so the
    lifespan hook (which touches the on-disk DB) is skipped.
    """
    from payments.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_clients] = lambda: gateways
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers (not fixtures) so any test file can import and call them directly.
# ---------------------------------------------------------------------------
def make_txn(
    db,
    txn_id: Optional[str] = None,
    order_id: str = "order_001",
    amount: int = 450000,
    currency: str = "COP",
    method: str = "CARD",
    status: str = "PENDING",
    gateway_transaction_id: Optional[str] = None,
    customer_email: Optional[str] = "ana@example.com",
    created_at: Optional[datetime] = None,   # defaults to 1 hour ago
    gateway_status_at: Optional[datetime] = None,
) -> models.Transaction:
    if created_at is None:
        created_at = models.utcnow() - timedelta(hours=1)
    fields = dict(
        order_id=order_id,
        amount=amount,
        currency=currency,
        method=method,
        gateway="wompi",
        gateway_transaction_id=gateway_transaction_id,
        status=status,
        customer_email=customer_email,
        created_at=created_at,
        updated_at=created_at,
        gateway_status_at=gateway_status_at,
    )
    if txn_id is not None:
        fields["id"] = txn_id
    txn = models.Transaction(**fields)
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn


def make_card(number: str = APPROVED_CARD) -> CardData:
    return CardData(number=number, cvc="123", exp_month="12", exp_year="29", card_holder="Ana Gomez")


def wompi_event(
    gateway_transaction_id: str,
    status: str,
    reference: Optional[str] = None,
    amount: Optional[int] = None,
    finalized_at: Optional[str] = "2024-01-15T10:23:45.000Z",
) -> bytes:
    transaction = {
        "id": gateway_transaction_id,
        "status": status,
        "reference": reference,
        "finalized_at": finalized_at,
    }
    if amount is not None:
        transaction["amount_in_cents"] = amount
    return json.dumps({
        "event": "transaction.updated",
        "data": {"transaction": transaction},
        "sent_at": "2024-01-15T10:23:46.000Z",
    }).encode("utf-8")


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(payload, secret)
