"""
Payment summary for the admin dashboard.

Rates and averages with nothing to divide by are None, never 0.
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from payments import models
from payments.errors import TransactionNotFound
from payments.models import RefundStatus, TransactionStatus


class PaymentSummary:
    def __init__(self):
        self.total_transactions = 0
        self.status_counts: Dict[str, int] = {status.value: 0 for status in TransactionStatus}
        self.total_volume = 0
        self.approved_volume = 0
        self.refunded_volume = 0
        self.success_rate: Optional[float] = None
        self.average_ticket: Optional[int] = None
        self.needs_review = 0
        self.methods: List[Dict] = []
        self.top_errors: List[Dict] = []


def build_summary(
    db: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> PaymentSummary:
    filters = []
    if date_from is not None:
        filters.append(models.Transaction.created_at >= date_from)
    if date_to is not None:
        filters.append(models.Transaction.created_at <= date_to)

    summary = PaymentSummary()

    rows = db.query(
        models.Transaction.status,
        func.count(models.Transaction.id),
        func.coalesce(func.sum(models.Transaction.amount), 0),
    ).filter(*filters).group_by(models.Transaction.status).all()

    # Captured money: APPROVED plus what was later refunded
    captured_count = 0
    for status, count, volume in rows:
        summary.status_counts[status] = count
        summary.total_transactions += count
        summary.total_volume += int(volume)
        if status in (TransactionStatus.APPROVED.value, TransactionStatus.REFUNDED.value):
            summary.approved_volume += int(volume)
            captured_count += count

    settled = captured_count + summary.status_counts.get(TransactionStatus.FAILED.value, 0)
    if settled:
        summary.success_rate = round(captured_count * 100.0 / settled, 2)
    if captured_count:
        summary.average_ticket = int(round(summary.approved_volume / captured_count))

    refund_query = db.query(func.coalesce(func.sum(models.Refund.amount), 0)).filter(
        models.Refund.status == RefundStatus.APPROVED.value
    )
    if date_from is not None:
        refund_query = refund_query.filter(models.Refund.created_at >= date_from)
    if date_to is not None:
        refund_query = refund_query.filter(models.Refund.created_at <= date_to)
    summary.refunded_volume = int(refund_query.scalar() or 0)

    summary.needs_review = db.query(func.count(models.Transaction.id)).filter(
        models.Transaction.needs_review.is_(True), *filters
    ).scalar() or 0

    method_rows = db.query(
        models.Transaction.method,
        func.count(models.Transaction.id),
        func.coalesce(func.sum(models.Transaction.amount), 0),
    ).filter(
        models.Transaction.status == TransactionStatus.APPROVED.value, *filters
    ).group_by(models.Transaction.method).all()
    summary.methods = [
        {"method": method, "count": count, "volume": int(volume)}
        for method, count, volume in method_rows
    ]

    error_query = db.query(
        models.FailedAttempt.error_code,
        func.count(models.FailedAttempt.id).label("count"),
    )
    if date_from is not None:
        error_query = error_query.filter(models.FailedAttempt.created_at >= date_from)
    if date_to is not None:
        error_query = error_query.filter(models.FailedAttempt.created_at <= date_to)
    error_rows = error_query.group_by(models.FailedAttempt.error_code).order_by(
        func.count(models.FailedAttempt.id).desc()
    ).limit(10).all()
    summary.top_errors = [{"error_code": code, "count": count} for code, count in error_rows]

    return summary


class TransactionDetail:
    def __init__(self, transaction, refunds, webhook_events, gateway_logs, failed_attempts, conflicts):
        self.transaction = transaction
        self.refunds = refunds
        self.webhook_events = webhook_events
        self.gateway_logs = gateway_logs
        self.failed_attempts = failed_attempts
        self.conflicts = conflicts
        self.refunded_amount = sum(
            r.amount for r in refunds if r.status == RefundStatus.APPROVED.value
        )
        reserved = sum(r.amount for r in refunds if r.status == RefundStatus.PENDING.value)
        if transaction.status == TransactionStatus.APPROVED.value:
            self.refundable_amount = transaction.amount - self.refunded_amount - reserved
        else:
            self.refundable_amount = 0


def transaction_detail(db: Session, transaction_id: str) -> TransactionDetail:
    """
    Everything recorded about one transaction.

    Raises:
        TransactionNotFound: unknown transaction id
    """
    txn = db.query(models.Transaction).filter(models.Transaction.id == transaction_id).first()
    if txn is None:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")

    references = [txn.id]
    if txn.gateway_transaction_id:
        references.append(txn.gateway_transaction_id)

    event_filter = models.WebhookEvent.transaction_id == txn.id
    if txn.gateway_transaction_id:
        event_filter = event_filter | (models.WebhookEvent.gateway_transaction_id == txn.gateway_transaction_id)
    webhook_events = db.query(models.WebhookEvent).filter(event_filter).order_by(
        models.WebhookEvent.received_at
    ).all()
    gateway_logs = db.query(models.GatewayLog).filter(
        models.GatewayLog.reference.in_(references)
    ).order_by(models.GatewayLog.created_at).all()
    failed_attempts = db.query(models.FailedAttempt).filter(
        models.FailedAttempt.transaction_id == txn.id
    ).order_by(models.FailedAttempt.created_at).all()
    conflicts = db.query(models.PaymentConflict).filter(
        models.PaymentConflict.transaction_id == txn.id
    ).order_by(models.PaymentConflict.created_at).all()

    return TransactionDetail(txn, list(txn.refunds), webhook_events, gateway_logs, failed_attempts, conflicts)
