from typing import Dict, Optional

import structlog
from sqlalchemy.orm import Session

from payments import models
from payments.errors import GatewayUnavailable, InvalidRefundAmount, PaymentError, RefundNotFound
from payments.gateways.client import GatewayClient
from payments.models import RefundStatus, TransactionStatus, utcnow
from payments.services.orders import OrderBook, SqlOrderBook, sync_order
from payments.services.state_machine import REFUND_SOURCE, REJECT, Resolution
from payments.services.store import TransactionStore

logger = structlog.get_logger(__name__)


class RefundManager:
    """
    Refunds against APPROVED transactions.

    The refundable balance is checked and a PENDING refund reserved before the
    gateway is called, so concurrent refunds can never exceed the captured
    amount. Reaching the full amount moves the transaction to REFUNDED.
    """

    def __init__(self, db: Session, gateways: Dict[str, GatewayClient], orders: Optional[OrderBook] = None):
        self.db = db
        self.store = TransactionStore(db)
        self.gateways = gateways
        self.orders = orders or SqlOrderBook(db)

    def _settle(self, refund: models.Refund, status: RefundStatus, failure_reason: Optional[str] = None,
                gateway_refund_id: Optional[str] = None) -> None:
        refund.status = status.value
        refund.failure_reason = failure_reason
        if gateway_refund_id:
            refund.gateway_refund_id = gateway_refund_id
        refund.updated_at = utcnow()

    async def refund(self, transaction_id: str, amount: int, reason: str) -> models.Refund:
        """
        Raises:
            TransactionNotFound: unknown transaction
            InvalidRefundAmount: amount ≤ 0, transaction not APPROVED, or
                amount above the refundable balance (no gateway call)
            GatewayUnavailable: gateway unreachable; the refund is REJECTED
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRefundAmount("Refund amount must be a positive integer in minor units")

        txn = self.store.require(transaction_id)
        if not txn.gateway_transaction_id:
            raise InvalidRefundAmount(f"Transaction {transaction_id} has no gateway reference to refund")
        client = self.gateways.get(txn.gateway)
        if client is None:
            raise PaymentError(f"No gateway client configured for {txn.gateway}")

        refund = self.store.reserve_refund(txn.id, amount, reason)
        logger.info("refund_reserved", refund_id=refund.id, transaction_id=txn.id, amount=amount)

        try:
            result = await client.refund(txn.gateway_transaction_id, amount, reason)
        except GatewayUnavailable:
            self._settle(refund, RefundStatus.REJECTED, failure_reason="GATEWAY_ERROR")
            self.db.commit()
            logger.error("refund_gateway_unavailable", refund_id=refund.id, transaction_id=txn.id)
            raise

        if result.status == "pending":
            if result.gateway_id:
                refund.gateway_refund_id = result.gateway_id
                self.db.commit()
            logger.info("refund_pending", refund_id=refund.id, transaction_id=txn.id)
            return refund

        if result.status != "approved":
            self._settle(refund, RefundStatus.REJECTED, failure_reason=result.error_code or "REFUND_REJECTED")
            self.db.commit()
            logger.warning(
                "refund_rejected",
                refund_id=refund.id,
                transaction_id=txn.id,
                error_code=refund.failure_reason,
            )
            return refund

        return self._approve(txn, refund, result.gateway_id)

    def _approve(self, txn: models.Transaction, refund: models.Refund,
                 gateway_refund_id: Optional[str]) -> models.Refund:
        """Marks a refund APPROVED; reaching the captured amount moves the transaction to REFUNDED."""
        approved, _ = self.store.refund_totals(txn.id)
        if approved + refund.amount < txn.amount:
            self._settle(refund, RefundStatus.APPROVED, gateway_refund_id=gateway_refund_id)
            self.db.commit()
            logger.info("refund_approved", refund_id=refund.id, transaction_id=txn.id, amount=refund.amount)
            return refund

        def before_commit(current: models.Transaction, resolution: Resolution) -> None:
            # Money already moved at the gateway: the refund is APPROVED either way
            self._settle(refund, RefundStatus.APPROVED, gateway_refund_id=gateway_refund_id)
            if resolution.applies:
                sync_order(self.db, self.orders, current, resolution.target)

        outcome = self.store.apply_status(
            txn.id, TransactionStatus.REFUNDED, source=REFUND_SOURCE, before_commit=before_commit,
        )
        if outcome.resolution.action == REJECT:
            logger.error(
                "refund_transition_rejected",
                refund_id=refund.id,
                transaction_id=txn.id,
                reason=outcome.resolution.reason,
            )
        else:
            logger.info("transaction_fully_refunded", refund_id=refund.id, transaction_id=txn.id)
        self.db.refresh(refund)
        return refund

    async def sync_refund(self, refund_id: str) -> models.Refund:
        """
        Asks the gateway about a PENDING refund and settles it.
        Refunds that are already settled, or that the gateway still reports as
        pending, are returned unchanged.

        Raises:
            RefundNotFound: unknown refund id
            GatewayUnavailable: gateway unreachable; the refund stays PENDING
        """
        refund = self.db.query(models.Refund).filter(models.Refund.id == refund_id).first()
        if refund is None:
            raise RefundNotFound(f"Refund {refund_id} not found")
        if refund.status != RefundStatus.PENDING.value:
            return refund

        txn = self.store.require(refund.transaction_id)
        client = self.gateways.get(txn.gateway)
        if client is None:
            raise PaymentError(f"No gateway client configured for {txn.gateway}")

        result = await client.verify_refund(txn.gateway_transaction_id, refund.gateway_refund_id)
        self.db.refresh(refund)
        if refund.status != RefundStatus.PENDING.value:
            return refund

        if result.status == "approved":
            return self._approve(txn, refund, result.gateway_id or refund.gateway_refund_id)
        if result.status == "declined":
            self._settle(refund, RefundStatus.REJECTED, failure_reason=result.error_code or "REFUND_REJECTED")
            self.db.commit()
            logger.warning("refund_rejected", refund_id=refund.id, transaction_id=txn.id,
                           error_code=refund.failure_reason)
            return refund

        logger.info("refund_still_pending", refund_id=refund.id, transaction_id=txn.id, gateway_status=result.status)
        return refund
