"""
Reconciliation sweep for stale PENDING transactions and refunds.

Each stale transaction is verified with its gateway concurrently. Whatever is
still PENDING afterwards (or never reached the gateway) is expired as FAILED.
Refunds the gateway answered as pending are re-checked and settled; they are
never expired, since the money may still move.
One failing verification does not abort the sweep.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from payments import models
from payments.config import Settings
from payments.gateways.client import GatewayClient
from payments.models import RefundStatus, TransactionStatus, utcnow
from payments.services.orchestrator import PaymentOrchestrator
from payments.services.orders import OrderBook, sync_order
from payments.services.recorder import record_failed_attempt
from payments.services.refunds import RefundManager

logger = structlog.get_logger(__name__)

EXPIRED = "EXPIRED"


class SweepResult:
    def __init__(self):
        self.checked = 0
        self.approved = 0
        self.failed = 0
        self.expired = 0
        self.still_pending = 0
        self.refunds_checked = 0
        self.refunds_approved = 0
        self.refunds_rejected = 0
        self.errors: List[Dict[str, str]] = []


class Reconciler:
    def __init__(
        self,
        db: Session,
        gateways: Dict[str, GatewayClient],
        settings: Settings,
        orders: Optional[OrderBook] = None,
    ):
        self.db = db
        self.settings = settings
        self.orchestrator = PaymentOrchestrator(db, gateways, settings, orders)
        self.refunds = RefundManager(db, gateways, self.orchestrator.orders)

    async def _verify_one(self, transaction_id: str):
        """Verify one transaction; return (status_or_none, error_or_none)."""
        try:
            result = await self.orchestrator.verify_payment(transaction_id)
            return result.status, None
        except Exception as e:
            logger.warning("reconcile_verify_failed", transaction_id=transaction_id, error=str(e))
            return None, str(e)

    async def _sync_refund(self, refund_id: str):
        try:
            refund = await self.refunds.sync_refund(refund_id)
            return refund.status, None
        except Exception as e:
            logger.warning("reconcile_refund_failed", refund_id=refund_id, error=str(e))
            return None, str(e)

    def _expire(self, transaction_id: str) -> models.Transaction:
        store = self.orchestrator.store
        orders = self.orchestrator.orders

        def before_commit(current: models.Transaction, resolution) -> None:
            if not resolution.applies:
                return
            sync_order(self.db, orders, current, resolution.target)
            record_failed_attempt(
                self.db, current, EXPIRED,
                f"No confirmation after {self.settings.PENDING_EXPIRY_MINUTES} minutes",
                metadata={"source": "reconcile"},
            )

        outcome = store.apply_status(
            transaction_id,
            TransactionStatus.FAILED,
            source="reconcile",
            changes={"failure_reason": EXPIRED},
            before_commit=before_commit,
        )
        return outcome.transaction

    async def sweep(self, limit: int = 500) -> SweepResult:
        cutoff = utcnow() - timedelta(minutes=self.settings.PENDING_EXPIRY_MINUTES)
        stale = self.orchestrator.store.list_stale_pending(cutoff, limit=limit)
        transaction_ids = [txn.id for txn in stale]

        summary = SweepResult()
        summary.checked = len(transaction_ids)
        await self._sweep_refunds(cutoff, limit, summary)
        if not transaction_ids:
            return summary

        outcomes = await asyncio.gather(*[self._verify_one(txn_id) for txn_id in transaction_ids])

        for txn_id, (status, error) in zip(transaction_ids, outcomes):
            if error:
                # Gateway unreachable: leave PENDING for the next sweep
                summary.errors.append({"transaction_id": txn_id, "error": error})
                summary.still_pending += 1
                continue
            if status == TransactionStatus.APPROVED:
                summary.approved += 1
            elif status == TransactionStatus.FAILED:
                summary.failed += 1
            elif status == TransactionStatus.PENDING:
                txn = self._expire(txn_id)
                if txn.status == TransactionStatus.FAILED.value:
                    summary.expired += 1
                else:
                    summary.still_pending += 1

        logger.info(
            "reconcile_sweep_finished",
            checked=summary.checked,
            approved=summary.approved,
            failed=summary.failed,
            expired=summary.expired,
            refunds_checked=summary.refunds_checked,
            errors=len(summary.errors),
        )
        return summary

    async def _sweep_refunds(self, cutoff: datetime, limit: int, summary: SweepResult) -> None:
        pending = self.orchestrator.store.list_pending_refunds(cutoff, limit=limit)
        refunds = [(refund.id, refund.transaction_id) for refund in pending]
        summary.refunds_checked = len(refunds)
        if not refunds:
            return

        outcomes = await asyncio.gather(*[self._sync_refund(refund_id) for refund_id, _ in refunds])
        for (refund_id, transaction_id), (status, error) in zip(refunds, outcomes):
            if error:
                summary.errors.append({"transaction_id": transaction_id, "error": f"refund {refund_id}: {error}"})
            elif status == RefundStatus.APPROVED.value:
                summary.refunds_approved += 1
            elif status == RefundStatus.REJECTED.value:
                summary.refunds_rejected += 1
