import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from payments.database import Base


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


TERMINAL_STATUSES = {TransactionStatus.FAILED, TransactionStatus.REFUNDED}


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    PSE = "PSE"
    WALLET = "WALLET"
    BANK_TRANSFER = "BANK_TRANSFER"


class OrderPaymentState(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id():
    return f"txn_{uuid.uuid4().hex[:12]}"


def generate_refund_id():
    return f"ref_{uuid.uuid4().hex[:12]}"


class Transaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String, primary_key=True, default=generate_id)
    order_id = Column(String, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    method = Column(String, nullable=False)
    gateway = Column(String, nullable=False)
    gateway_transaction_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=TransactionStatus.PENDING.value, index=True)
    version = Column(Integer, nullable=False, default=1)
    failure_reason = Column(String, nullable=True)
    redirect_url = Column(String, nullable=True)
    customer_email = Column(String, nullable=True, index=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    gateway_status_at = Column(DateTime, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    refunds = relationship("Refund", back_populates="transaction", order_by="Refund.created_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in (s.value for s in TERMINAL_STATUSES)


class Refund(Base):
    __tablename__ = "payment_refunds"

    id = Column(String, primary_key=True, default=generate_refund_id)
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False, default=RefundStatus.PENDING.value)
    gateway_refund_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="refunds")


class WebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    gateway_transaction_id = Column(String, nullable=True, index=True)
    reference = Column(String, nullable=True)
    claimed_status = Column(String, nullable=True)
    observed_at = Column(DateTime, nullable=True)
    raw_payload = Column(Text, nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), nullable=True, index=True)
    # Set only on the delivery that applied (gateway, gateway txn id, status)
    idempotency_key = Column(String, nullable=True, unique=True)
    note = Column(String, nullable=True)


class FailedAttempt(Base):
    __tablename__ = "payment_failed_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, index=True)
    transaction_id = Column(String, nullable=True, index=True)
    gateway = Column(String, nullable=False)
    method = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    error_code = Column(String, nullable=False)
    error_message = Column(String, nullable=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GatewayLog(Base):
    __tablename__ = "payment_gateway_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    reference = Column(String, nullable=True, index=True)
    request = Column(Text, nullable=True)
    response = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PaymentConflict(Base):
    __tablename__ = "payment_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), nullable=False, index=True)
    source = Column(String, nullable=False)
    current_status = Column(String, nullable=False)
    claimed_status = Column(String, nullable=False)
    resolution = Column(String, nullable=False)  # kept | applied
    detail = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OrderPaymentStatus(Base):
    __tablename__ = "order_payment_status"

    order_id = Column(String, primary_key=True)
    payment_status = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ActiveCharge(Base):
    """
    The one live (PENDING or APPROVED) charge an order may hold.
    Inserting the row or swapping its transaction_id is the claim; a primary
    key clash or a zero-row swap means another checkout holds the order.
    """
    __tablename__ = "payment_active_charges"

    order_id = Column(String, primary_key=True)
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), nullable=False)
    claimed_at = Column(DateTime, nullable=False, default=utcnow)
