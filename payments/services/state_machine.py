"""
Transaction status transitions.

    PENDING  → APPROVED | FAILED | PENDING (no-op)
    APPROVED → REFUNDED (refund path only)
    FAILED, REFUNDED: terminal

A settled status is never downgraded to PENDING. Any claim against a terminal
status is rejected and recorded. When sources disagree on a settled outcome
(APPROVED vs FAILED) the newer gateway timestamp wins and the disagreement is
recorded; with either timestamp missing, or with refunds already issued, the
current status is kept.
"""
from datetime import datetime
from typing import Optional

from payments.models import TransactionStatus

APPLY = "apply"
KEEP = "keep"
REJECT = "reject"

REFUND_SOURCE = "refund"


class Resolution:
    def __init__(self, action: str, target: TransactionStatus, reason: str, conflict: bool = False):
        self.action = action
        self.target = target
        self.reason = reason
        self.conflict = conflict

    @property
    def applies(self) -> bool:
        return self.action == APPLY

    def __repr__(self):
        return f"Resolution({self.action}, {self.target.value}, conflict={self.conflict})"


def resolve_transition(
    current: TransactionStatus,
    claimed: TransactionStatus,
    *,
    source: str,
    current_at: Optional[datetime] = None,
    claimed_at: Optional[datetime] = None,
    has_refunds: bool = False,
) -> Resolution:
    current = TransactionStatus(current)
    claimed = TransactionStatus(claimed)

    if current == claimed:
        return Resolution(KEEP, current, "already in claimed status")

    if claimed == TransactionStatus.REFUNDED:
        if source == REFUND_SOURCE and current == TransactionStatus.APPROVED:
            return Resolution(APPLY, claimed, "refund completed")
        return Resolution(
            REJECT, current,
            f"{source} cannot move {current.value} to REFUNDED",
            conflict=True,
        )

    if current == TransactionStatus.PENDING:
        return Resolution(APPLY, claimed, "pending settled")

    if current == TransactionStatus.REFUNDED:
        return Resolution(
            REJECT, current,
            f"REFUNDED is terminal; {source} claimed {claimed.value}",
            conflict=True,
        )

    if current == TransactionStatus.FAILED:
        if claimed == TransactionStatus.APPROVED:
            # money moved on a charge we gave up on
            reason = "gateway approved a transaction already FAILED"
        else:
            reason = f"FAILED is terminal; {source} claimed {claimed.value}"
        return Resolution(REJECT, current, reason, conflict=True)

    if claimed == TransactionStatus.PENDING:
        return Resolution(REJECT, current, "settled status is never downgraded to PENDING")

    # current APPROVED, claimed FAILED
    if has_refunds:
        return Resolution(
            REJECT, current,
            "FAILED claim on a transaction with refunds already issued",
            conflict=True,
        )
    if current_at is None or claimed_at is None:
        return Resolution(
            REJECT, current,
            "APPROVED/FAILED disagreement without comparable timestamps",
            conflict=True,
        )
    if claimed_at > current_at:
        return Resolution(APPLY, claimed, "newer gateway status wins", conflict=True)
    return Resolution(REJECT, current, "stale FAILED claim", conflict=True)
