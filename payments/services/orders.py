"""
Order payment-status projection.

The order itself belongs to another service; the payments core only reads and
writes its payment status field through the OrderBook interface.
"""
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from payments import models
from payments.models import OrderPaymentState, TransactionStatus, utcnow

logger = structlog.get_logger(__name__)


class OrderBook(ABC):
    @abstractmethod
    def get_payment_status(self, order_id: str) -> Optional[OrderPaymentState]:
        pass

    @abstractmethod
    def set_payment_status(self, order_id: str, status: OrderPaymentState) -> None:
        """Stages the new status; the caller's unit of work commits it."""
        pass


class SqlOrderBook(OrderBook):
    def __init__(self, db: Session):
        self.db = db

    def _row(self, order_id: str) -> Optional[models.OrderPaymentStatus]:
        return self.db.query(models.OrderPaymentStatus).filter(
            models.OrderPaymentStatus.order_id == order_id
        ).first()

    def get_payment_status(self, order_id: str) -> Optional[OrderPaymentState]:
        row = self._row(order_id)
        return OrderPaymentState(row.payment_status) if row else None

    def set_payment_status(self, order_id: str, status: OrderPaymentState) -> None:
        row = self._row(order_id)
        if row is None:
            row = models.OrderPaymentStatus(order_id=order_id, payment_status=status.value)
            self.db.add(row)
        else:
            row.payment_status = status.value
            row.updated_at = utcnow()


def project_order_status(
    current: Optional[OrderPaymentState],
    txn_status: TransactionStatus,
    order_has_other_approved: bool,
) -> Optional[OrderPaymentState]:
    """
    Order payment status implied by one transaction's new status.
    None means leave the order alone.
    """
    txn_status = TransactionStatus(txn_status)
    if txn_status == TransactionStatus.APPROVED:
        return OrderPaymentState.PAID
    if txn_status == TransactionStatus.REFUNDED:
        return None if order_has_other_approved else OrderPaymentState.REFUNDED
    if txn_status == TransactionStatus.FAILED:
        if order_has_other_approved:
            return None
        return OrderPaymentState.FAILED
    # PENDING
    if current in (OrderPaymentState.PAID, OrderPaymentState.REFUNDED):
        return None
    return OrderPaymentState.PENDING


def sync_order(db: Session, orders: OrderBook, txn: models.Transaction, status: TransactionStatus) -> None:
    """
    Stages the order payment status implied by `txn` moving to `status`.
    Runs inside the caller's unit of work, which commits.
    """
    other_approved = db.query(models.Transaction.id).filter(
        models.Transaction.order_id == txn.order_id,
        models.Transaction.id != txn.id,
        models.Transaction.status == TransactionStatus.APPROVED.value,
    ).first() is not None

    current = orders.get_payment_status(txn.order_id)
    target = project_order_status(current, status, other_approved)
    if target is None or target == current:
        return
    orders.set_payment_status(txn.order_id, target)
    logger.info(
        "order_payment_status_changed",
        order_id=txn.order_id,
        transaction_id=txn.id,
        from_status=current.value if current else None,
        to_status=target.value,
    )
