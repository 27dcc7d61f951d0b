"""
Duplicate-charge detection.

Detection criteria:
- Same customer_email (non-null)
- Amount within ±5%
- Created within ±10 minutes
- Different transaction ID

Confidence scoring (0-100):
  Amount match:   +40 (exact) or +20 (within 5%)
  Same method:    +20
  Time gap:       +30 (<2min), +20 (<5min), +10 (otherwise)
  Same order:     +10

Recommendation logic:
  Both approved            → keep first (earlier), refund_duplicate for later
  One approved + pending   → mark pending one as duplicate
  Both failed              → no_action (no double charge)
  One approved + failed    → no_action (different outcomes)
  Other                    → manual_review
"""
from datetime import timedelta
from typing import List, Tuple

from sqlalchemy.orm import Session

from payments import models
from payments.errors import TransactionNotFound
from payments.models import TransactionStatus
from payments.schemas.responses import DuplicateEntry

APPROVED = TransactionStatus.APPROVED.value
FAILED = TransactionStatus.FAILED.value
PENDING = TransactionStatus.PENDING.value


def _confidence_score(target: models.Transaction, candidate: models.Transaction) -> int:
    score = 0

    if target.amount == candidate.amount:
        score += 40
    else:
        score += 20  # within 5% (already filtered by query)

    if target.method == candidate.method:
        score += 20

    gap_seconds = abs((target.created_at - candidate.created_at).total_seconds())
    if gap_seconds < 120:
        score += 30
    elif gap_seconds < 300:
        score += 20
    else:
        score += 10

    if target.order_id == candidate.order_id:
        score += 10

    return min(score, 100)


def _duplicate_type(score: int) -> str:
    if score >= 80:
        return "accidental_retry"
    if score >= 60:
        return "suspected_retry"
    return "likely_legitimate"


def _recommendation(target: models.Transaction, candidate: models.Transaction) -> Tuple[str, str]:
    """Returns (recommendation, reasoning)."""
    t_state, c_state = target.status, candidate.status

    if t_state == APPROVED and c_state == APPROVED:
        first, later = (target, candidate) if target.created_at <= candidate.created_at else (candidate, target)
        return (
            "refund_duplicate",
            f"Both approved. Keep {first.id} (earlier). Refund {later.id}.",
        )

    if t_state == APPROVED and c_state == PENDING:
        return "mark_as_duplicate", f"{target.id} approved. {candidate.id} is an unresolved duplicate."

    if t_state == PENDING and c_state == APPROVED:
        return "mark_as_duplicate", f"{candidate.id} approved. {target.id} is an unresolved duplicate."

    if t_state == FAILED and c_state == FAILED:
        return "no_action", "Both transactions failed. No duplicate charge occurred."

    if {t_state, c_state} == {APPROVED, FAILED}:
        return "no_action", "Transactions have different outcomes. Not a duplicate charge."

    return "manual_review", f"States: {t_state}/{c_state}. Manual review recommended."


def find_duplicates(transaction_id: str, db: Session) -> List[DuplicateEntry]:
    """
    Find likely duplicate charges of the given transaction, sorted by
    confidence score descending.

    Raises:
        TransactionNotFound: unknown transaction id
    """
    target = db.query(models.Transaction).filter(
        models.Transaction.id == transaction_id
    ).first()

    if target is None:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")

    if target.customer_email is None:
        # Cannot detect duplicates without a customer
        return []

    window_start = target.created_at - timedelta(minutes=10)
    window_end = target.created_at + timedelta(minutes=10)
    amount_low = target.amount * 95 // 100
    amount_high = -(-target.amount * 105 // 100)

    candidates = db.query(models.Transaction).filter(
        models.Transaction.customer_email == target.customer_email,
        models.Transaction.amount.between(amount_low, amount_high),
        models.Transaction.created_at.between(window_start, window_end),
        models.Transaction.id != target.id,
    ).all()

    results = []
    for candidate in candidates:
        score = _confidence_score(target, candidate)
        gap_seconds = abs((target.created_at - candidate.created_at).total_seconds())
        recommendation, reasoning = _recommendation(target, candidate)

        results.append(DuplicateEntry(
            duplicate_transaction_id=candidate.id,
            confidence_score=score,
            duplicate_type=_duplicate_type(score),
            time_gap_seconds=gap_seconds,
            status=candidate.status,
            recommendation=recommendation,
            reasoning=reasoning,
        ))

    results.sort(key=lambda x: x.confidence_score, reverse=True)
    return results
