"""
Transaction store.

All status changes go through compare_and_set: an UPDATE guarded by the
version and status that were read. Zero rows updated means another writer
got there first; the caller re-reads and resolves again.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payments import models
from payments.errors import ConflictError, InvalidRefundAmount, TransactionNotFound, ValidationError
from payments.models import RefundStatus, TransactionStatus, utcnow
from payments.services.state_machine import REJECT, Resolution, resolve_transition

logger = structlog.get_logger(__name__)

MAX_CAS_ATTEMPTS = 5

# Statuses that keep an order's active charge
LIVE_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.APPROVED.value)


class DuplicateDelivery(Exception):
    """A unique idempotency claim already exists; the change was rolled back."""


class TransitionOutcome:
    def __init__(self, transaction: models.Transaction, resolution: Resolution, previous_status: str, attempts: int):
        self.transaction = transaction
        self.resolution = resolution
        self.previous_status = previous_status
        self.attempts = attempts

    @property
    def changed(self) -> bool:
        return self.resolution.applies and self.previous_status != self.transaction.status


class TransactionStore:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transaction_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.id == transaction_id
        ).first()

    def require(self, transaction_id: str) -> models.Transaction:
        txn = self.get(transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return txn

    def get_by_gateway_id(self, gateway: str, gateway_transaction_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.gateway == gateway,
            models.Transaction.gateway_transaction_id == gateway_transaction_id,
        ).first()

    def find_by_idempotency_key(self, key: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.idempotency_key == key
        ).first()

    def has_approved_charge(self, order_id: str) -> bool:
        return self.db.query(models.Transaction.id).filter(
            models.Transaction.order_id == order_id,
            models.Transaction.status == TransactionStatus.APPROVED.value,
        ).first() is not None

    def other_approved_charge(self, txn: models.Transaction) -> Optional[str]:
        """Id of another APPROVED transaction on the same order, if any."""
        row = self.db.query(models.Transaction.id).filter(
            models.Transaction.order_id == txn.order_id,
            models.Transaction.id != txn.id,
            models.Transaction.status == TransactionStatus.APPROVED.value,
        ).first()
        return row[0] if row else None

    def list_stale_pending(self, older_than: datetime, limit: int = 500) -> List[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.status == TransactionStatus.PENDING.value,
            models.Transaction.created_at <= older_than,
        ).order_by(models.Transaction.created_at).limit(limit).all()

    def list_pending_refunds(self, older_than: datetime, limit: int = 500) -> List[models.Refund]:
        return self.db.query(models.Refund).filter(
            models.Refund.status == RefundStatus.PENDING.value,
            models.Refund.created_at <= older_than,
        ).order_by(models.Refund.created_at).limit(limit).all()

    def refund_totals(self, transaction_id: str) -> Tuple[int, int]:
        """(approved, in flight) refund amounts for a transaction."""
        rows = self.db.query(models.Refund.status, func.coalesce(func.sum(models.Refund.amount), 0)).filter(
            models.Refund.transaction_id == transaction_id,
            models.Refund.status.in_([RefundStatus.APPROVED.value, RefundStatus.PENDING.value]),
        ).group_by(models.Refund.status).all()
        totals = {status: int(total) for status, total in rows}
        return totals.get(RefundStatus.APPROVED.value, 0), totals.get(RefundStatus.PENDING.value, 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, before_commit: Optional[Callable[[models.Transaction], None]] = None,
               **fields: Any) -> models.Transaction:
        """
        Persists a new PENDING transaction and commits.
        `before_commit` runs after the insert is flushed, in the same database
        transaction; anything it raises rolls the insert back.
        """
        fields.setdefault("status", TransactionStatus.PENDING.value)
        txn = models.Transaction(**fields)
        self.db.add(txn)
        try:
            self.db.flush()
            if before_commit is not None:
                before_commit(txn)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(txn)
        logger.info(
            "transaction_created",
            transaction_id=txn.id,
            order_id=txn.order_id,
            amount=txn.amount,
            currency=txn.currency,
            method=txn.method,
        )
        return txn

    def claim_order(self, txn: models.Transaction) -> None:
        """
        Makes `txn` the order's active charge. Does not commit.
        A previous holder that is no longer PENDING or APPROVED is replaced
        with a conditional UPDATE; a concurrent first claim surfaces as an
        IntegrityError at flush.

        Raises:
            ValidationError: another live charge holds the order
        """
        holder_id = self.db.query(models.ActiveCharge.transaction_id).filter(
            models.ActiveCharge.order_id == txn.order_id
        ).scalar()
        if holder_id is None:
            self.db.add(models.ActiveCharge(order_id=txn.order_id, transaction_id=txn.id))
            self.db.flush()
            return

        holder_status = self.db.query(models.Transaction.status).filter(
            models.Transaction.id == holder_id
        ).scalar()
        if holder_status in LIVE_STATUSES:
            raise ValidationError(
                f"Order {txn.order_id} already has a payment in progress "
                f"({holder_id} is {holder_status})"
            )
        swapped = self.db.query(models.ActiveCharge).filter(
            models.ActiveCharge.order_id == txn.order_id,
            models.ActiveCharge.transaction_id == holder_id,
        ).update({"transaction_id": txn.id, "claimed_at": utcnow()}, synchronize_session=False)
        if swapped != 1:
            raise ValidationError(f"Order {txn.order_id} already has a payment in progress")

    def compare_and_set(self, transaction_id: str, expected_version: int, expected_status: str, **values: Any) -> bool:
        """
        UPDATE ... WHERE id, version and status still match what was read.
        Bumps the version. Does not commit. Returns False when the row moved.
        """
        values["version"] = expected_version + 1
        values.setdefault("updated_at", utcnow())
        rowcount = self.db.query(models.Transaction).filter(
            models.Transaction.id == transaction_id,
            models.Transaction.version == expected_version,
            models.Transaction.status == expected_status,
        ).update(values, synchronize_session=False)
        return rowcount == 1

    def _record_conflict(self, txn: models.Transaction, source: str, claimed: TransactionStatus,
                         resolution: Resolution) -> None:
        self.db.add(models.PaymentConflict(
            transaction_id=txn.id,
            source=source,
            current_status=txn.status,
            claimed_status=claimed.value,
            resolution="applied" if resolution.applies else "kept",
            detail=resolution.reason,
        ))
        logger.warning(
            "payment_status_conflict",
            transaction_id=txn.id,
            order_id=txn.order_id,
            source=source,
            current_status=txn.status,
            claimed_status=claimed.value,
            resolution=resolution.action,
            reason=resolution.reason,
        )

    def apply_status(
        self,
        transaction_id: str,
        claimed: TransactionStatus,
        *,
        source: str,
        observed_at: Optional[datetime] = None,
        changes: Optional[Dict[str, Any]] = None,
        before_commit: Optional[Callable[[models.Transaction, Resolution], None]] = None,
    ) -> TransitionOutcome:
        """
        Resolves `claimed` against the stored status and commits the result.

        `changes` are extra column values written only when the claim is
        applied or is a no-op. `before_commit` runs inside the same database
        transaction, after a winning compare-and-set.

        Raises:
            TransactionNotFound: unknown transaction id
            ConflictError: the compare-and-set kept losing
            DuplicateDelivery: a unique constraint fired at commit
        """
        claimed = TransactionStatus(claimed)
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            self.db.expire_all()
            txn = self.require(transaction_id)
            previous_status = txn.status
            has_refunds = False
            if previous_status == TransactionStatus.APPROVED.value and claimed == TransactionStatus.FAILED:
                has_refunds = sum(self.refund_totals(txn.id)) > 0
            resolution = resolve_transition(
                txn.status,
                claimed,
                source=source,
                current_at=txn.gateway_status_at,
                claimed_at=observed_at,
                has_refunds=has_refunds,
            )

            values: Dict[str, Any] = {}
            if resolution.action != REJECT:
                values.update(changes or {})
            if resolution.applies:
                values["status"] = resolution.target.value
                if observed_at is not None:
                    values["gateway_status_at"] = observed_at
            if resolution.conflict:
                self._record_conflict(txn, source, claimed, resolution)
                values["needs_review"] = True
            if resolution.applies and resolution.target == TransactionStatus.APPROVED:
                other_id = self.other_approved_charge(txn)
                if other_id is not None:
                    # Double charge: the approval stands and is left for manual refund
                    self._record_conflict(txn, source, claimed, Resolution(
                        resolution.action, resolution.target,
                        f"order {txn.order_id} already charged by {other_id}", conflict=True,
                    ))
                    values["needs_review"] = True

            if values and not self.compare_and_set(txn.id, txn.version, previous_status, **values):
                self.db.rollback()
                logger.warning(
                    "transaction_cas_lost",
                    transaction_id=transaction_id,
                    source=source,
                    claimed_status=claimed.value,
                    attempt=attempt,
                )
                continue

            if before_commit is not None:
                before_commit(txn, resolution)
            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise DuplicateDelivery(str(e.orig)) from e

            self.db.refresh(txn)
            if resolution.applies:
                logger.info(
                    "transaction_status_changed",
                    transaction_id=txn.id,
                    order_id=txn.order_id,
                    source=source,
                    from_status=previous_status,
                    to_status=txn.status,
                )
            return TransitionOutcome(txn, resolution, previous_status, attempt)

        raise ConflictError(
            f"Transaction {transaction_id} kept changing; gave up after {MAX_CAS_ATTEMPTS} attempts"
        )

    def flag_for_review(self, transaction_id: str, source: str, claimed: TransactionStatus, detail: str) -> models.Transaction:
        """Records a conflict without touching the status and marks the transaction for review."""
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            self.db.expire_all()
            txn = self.require(transaction_id)
            resolution = Resolution(REJECT, TransactionStatus(txn.status), detail, conflict=True)
            self._record_conflict(txn, source, TransactionStatus(claimed), resolution)
            if self.compare_and_set(txn.id, txn.version, txn.status, needs_review=True):
                self.db.commit()
                self.db.refresh(txn)
                return txn
            self.db.rollback()
            logger.warning("transaction_cas_lost", transaction_id=transaction_id, attempt=attempt)
        raise ConflictError(f"Transaction {transaction_id} kept changing; gave up after {MAX_CAS_ATTEMPTS} attempts")

    def reserve_refund(self, transaction_id: str, amount: int, reason: str,
                       metadata: Optional[Dict[str, Any]] = None) -> models.Refund:
        """
        Adds a PENDING refund after checking the refundable balance.
        The version bump serializes concurrent reservations on one transaction.
        """
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            self.db.expire_all()
            txn = self.require(transaction_id)
            if txn.status != TransactionStatus.APPROVED.value:
                raise InvalidRefundAmount(
                    f"Transaction {transaction_id} is {txn.status}; only APPROVED transactions can be refunded"
                )
            approved, in_flight = self.refund_totals(txn.id)
            available = txn.amount - approved - in_flight
            if amount > available:
                raise InvalidRefundAmount(
                    f"Refund of {amount} exceeds refundable balance {available} for {transaction_id}"
                )
            if not self.compare_and_set(txn.id, txn.version, txn.status):
                self.db.rollback()
                logger.warning("refund_reservation_cas_lost", transaction_id=transaction_id, attempt=attempt)
                continue

            refund = models.Refund(
                transaction_id=txn.id,
                amount=amount,
                reason=reason,
                status=RefundStatus.PENDING.value,
                extra=metadata or {},
            )
            self.db.add(refund)
            self.db.commit()
            self.db.refresh(refund)
            return refund

        raise ConflictError(f"Could not reserve refund on {transaction_id}; transaction kept changing")
