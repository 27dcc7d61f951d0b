"""
Tests for payments/services/reconciliation.py: the stale PENDING sweep and
settlement of refunds the gateway left pending.
"""
import pytest
from datetime import timedelta

from payments import models
from payments.models import OrderPaymentState, RefundStatus
from payments.services.orchestrator import CheckoutRequest
from payments.services.orders import SqlOrderBook
from payments.services.reconciliation import EXPIRED, Reconciler
from payments.services.refunds import RefundManager
from tests.conftest import make_card, make_txn


@pytest.fixture
def reconciler(db, gateways, settings):
    return Reconciler(db, gateways, settings)


def backdate(db, txn_id, minutes=60):
    db.query(models.Transaction).filter(models.Transaction.id == txn_id).update(
        {"created_at": models.utcnow() - timedelta(minutes=minutes)}, synchronize_session=False
    )
    db.commit()


async def pending_payment(orchestrator, order_id, method="WALLET", **kwargs):
    fields = dict(order_id=order_id, amount=450000, currency="COP", method=method,
                  customer_email="ana@example.com", phone_number="3107654321")
    fields.update(kwargs)
    result = await orchestrator.create_payment(CheckoutRequest(**fields))
    assert result.outcome == "pending"
    return result


class TestSweep:
    async def test_nothing_stale(self, reconciler, db):
        make_txn(db, txn_id="txn_fresh", created_at=models.utcnow())

        summary = await reconciler.sweep()

        assert summary.checked == 0
        assert db.query(models.Transaction).one().status == "PENDING"

    async def test_never_reached_gateway_is_expired(self, reconciler, db):
        make_txn(db, txn_id="txn_lost", order_id="order_lost")

        summary = await reconciler.sweep()

        assert summary.checked == 1
        assert summary.expired == 1
        db.expire_all()
        txn = db.query(models.Transaction).one()
        assert txn.status == "FAILED"
        assert txn.failure_reason == EXPIRED
        assert db.query(models.FailedAttempt).one().error_code == EXPIRED
        assert SqlOrderBook(db).get_payment_status("order_lost") == OrderPaymentState.FAILED

    async def test_settled_at_gateway_is_picked_up(self, reconciler, orchestrator, sandbox, db):
        result = await pending_payment(orchestrator, "order_w")
        sandbox.settle(result.gateway_transaction_id, "APPROVED")
        backdate(db, result.transaction_id)

        summary = await reconciler.sweep()

        assert summary.approved == 1
        assert summary.expired == 0
        db.expire_all()
        assert db.query(models.Transaction).one().status == "APPROVED"

    async def test_pse_decline_counted_as_failed(self, reconciler, orchestrator, db):
        result = await pending_payment(orchestrator, "order_pse", method="PSE", bank_code="2")
        backdate(db, result.transaction_id)

        summary = await reconciler.sweep()

        assert summary.failed == 1
        assert summary.expired == 0

    async def test_still_pending_at_gateway_is_expired(self, reconciler, orchestrator, db):
        result = await pending_payment(orchestrator, "order_slow")
        backdate(db, result.transaction_id)

        summary = await reconciler.sweep()

        assert summary.expired == 1
        db.expire_all()
        assert db.query(models.Transaction).one().failure_reason == EXPIRED

    async def test_gateway_errors_leave_transactions_pending(self, reconciler, orchestrator, sandbox, db):
        first = await pending_payment(orchestrator, "order_e1")
        second = await pending_payment(orchestrator, "order_e2")
        backdate(db, first.transaction_id)
        backdate(db, second.transaction_id)
        sandbox.fail_next(100)

        summary = await reconciler.sweep()

        assert summary.checked == 2
        assert summary.still_pending == 2
        assert len(summary.errors) == 2
        db.expire_all()
        assert {t.status for t in db.query(models.Transaction).all()} == {"PENDING"}

    async def test_limit(self, reconciler, db):
        for i in range(3):
            make_txn(db, txn_id=f"txn_lim{i}", order_id=f"order_lim{i}")

        summary = await reconciler.sweep(limit=2)

        assert summary.checked == 2


# ---------------------------------------------------------------------------
# Refunds left PENDING by the gateway
# ---------------------------------------------------------------------------
def backdate_refund(db, refund_id, minutes=60):
    db.query(models.Refund).filter(models.Refund.id == refund_id).update(
        {"created_at": models.utcnow() - timedelta(minutes=minutes)}, synchronize_session=False
    )
    db.commit()


class TestRefundSweep:
    async def pending_refund(self, orchestrator, gateways, sandbox, amount=450000):
        result = await orchestrator.create_payment(CheckoutRequest(
            order_id="order_rf", amount=450000, currency="COP", method="CARD",
            customer_email="ana@example.com", card=make_card(),
        ))
        sandbox.pending_refunds = True
        refund = await RefundManager(orchestrator.db, gateways).refund(result.transaction_id, amount, "cancelled")
        assert refund.status == RefundStatus.PENDING.value
        return refund

    async def test_settled_refund_is_applied(self, reconciler, orchestrator, gateways, sandbox, db):
        refund = await self.pending_refund(orchestrator, gateways, sandbox)
        sandbox.settle_refund(refund.gateway_refund_id, "APPROVED")

        fresh = await reconciler.sweep()
        assert fresh.refunds_checked == 0

        backdate_refund(db, refund.id)
        summary = await reconciler.sweep()

        assert summary.refunds_checked == 1
        assert summary.refunds_approved == 1
        db.expire_all()
        assert db.query(models.Refund).one().status == RefundStatus.APPROVED.value
        assert db.query(models.Transaction).one().status == "REFUNDED"
        assert SqlOrderBook(db).get_payment_status("order_rf") == OrderPaymentState.REFUNDED

    async def test_declined_refund_is_rejected(self, reconciler, orchestrator, gateways, sandbox, db):
        refund = await self.pending_refund(orchestrator, gateways, sandbox, amount=100000)
        sandbox.settle_refund(refund.gateway_refund_id, "DECLINED")
        backdate_refund(db, refund.id)

        summary = await reconciler.sweep()

        assert summary.refunds_rejected == 1
        db.expire_all()
        assert db.query(models.Refund).one().status == RefundStatus.REJECTED.value
        assert db.query(models.Transaction).one().status == "APPROVED"

    async def test_unsettled_refund_is_never_expired(self, reconciler, orchestrator, gateways, sandbox, db):
        refund = await self.pending_refund(orchestrator, gateways, sandbox)
        backdate_refund(db, refund.id)

        summary = await reconciler.sweep()

        assert summary.refunds_checked == 1
        assert summary.refunds_approved == summary.refunds_rejected == 0
        db.expire_all()
        assert db.query(models.Refund).one().status == RefundStatus.PENDING.value
