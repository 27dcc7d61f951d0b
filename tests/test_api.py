"""
Integration tests for the /payments API.

Uses FastAPI TestClient with dependency overrides so every request goes to
the in-memory DB and the sandbox gateway.
"""
import asyncio

import pytest

from payments import models
from payments.services.webhooks import WebhookProcessor
from tests.conftest import APPROVED_CARD, DECLINED_CARD, make_txn, sign, wompi_event


def card_payload(number=APPROVED_CARD, order_id="order_001", amount=450000, **extra):
    payload = {
        "order_id": order_id,
        "amount": amount,
        "currency": "cop",
        "method": "card",
        "customer_email": "ana@example.com",
        "card": {
            "number": number,
            "cvc": "123",
            "exp_month": "12",
            "exp_year": "29",
            "card_holder": "Ana Gomez",
        },
    }
    payload.update(extra)
    return payload


def create(client, **kwargs):
    return client.post("/payments/create", json=card_payload(**kwargs))


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------
class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "storefront-payments"}


# ---------------------------------------------------------------------------
# POST /payments/create
# ---------------------------------------------------------------------------
class TestCreateEndpoint:
    def test_approved(self, client, db):
        resp = create(client)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "APPROVED"
        assert body["outcome"] == "success"
        assert body["retryable"] is False
        assert body["redirect_url"] is None
        assert db.query(models.Transaction).one().id == body["transaction_id"]

    def test_card_number_with_spaces(self, client):
        resp = create(client, number="4242 4242 4242 4242")
        assert resp.json()["status"] == "APPROVED"

    def test_declined(self, client):
        body = create(client, number=DECLINED_CARD).json()
        assert body["status"] == "FAILED"
        assert body["outcome"] == "failed"

    def test_validation_error_is_400(self, client, db):
        resp = create(client, currency="USD")

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "VALIDATION_ERROR"
        assert db.query(models.GatewayLog).count() == 0

    def test_non_integer_amount_is_422(self, client):
        resp = create(client, amount=4500.50)
        assert resp.status_code == 422

    def test_gateway_outage_is_retryable(self, client, sandbox):
        sandbox.fail_next(10)
        body = create(client).json()
        assert body["outcome"] == "failed"
        assert body["retryable"] is True

    def test_idempotency_key(self, client, db):
        first = create(client, idempotency_key="checkout-abc").json()
        second = create(client, idempotency_key="checkout-abc").json()
        assert first["transaction_id"] == second["transaction_id"]
        assert db.query(models.Transaction).count() == 1


class TestPSEEndpoints:
    def test_pse_create_returns_redirect(self, client):
        resp = client.post("/payments/pse/create", json={
            "order_id": "order_pse",
            "amount": 450000,
            "bank_code": "1",
            "document_number": "1234567890",
            "full_name": "Ana Gomez",
            "customer_email": "ana@example.com",
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["outcome"] == "pending"
        assert body["redirect_url"]

    def test_card_while_pse_pending_is_400(self, client, db):
        client.post("/payments/pse/create", json={
            "order_id": "order_001", "amount": 450000, "bank_code": "1",
            "document_number": "1234567890", "full_name": "Ana Gomez", "customer_email": "ana@example.com",
        })

        resp = create(client)

        assert resp.status_code == 400
        assert "already has a payment in progress" in resp.json()["detail"]["message"]
        assert db.query(models.Transaction).count() == 1

    def test_pse_bad_user_type(self, client):
        resp = client.post("/payments/pse/create", json={
            "order_id": "order_pse", "amount": 450000, "bank_code": "1",
            "document_number": "1", "full_name": "x", "user_type": 7,
        })
        assert resp.status_code == 422

    def test_banks(self, client):
        resp = client.get("/payments/pse/banks")
        assert resp.status_code == 200
        assert {"code": "1007", "name": "Bancolombia"} in resp.json()


class TestMethodsEndpoint:
    def test_all_methods(self, client):
        methods = {m["method"] for m in client.get("/payments/methods").json()}
        assert methods == {"CARD", "PSE", "WALLET", "BANK_TRANSFER"}

    def test_filtered_by_amount(self, client):
        # Above the wallet limit
        methods = {m["method"] for m in client.get("/payments/methods?amount=450000000").json()}
        assert "WALLET" not in methods
        assert "PSE" in methods


# ---------------------------------------------------------------------------
# Verify, retry, refund
# ---------------------------------------------------------------------------
class TestTransactionEndpoints:
    def test_verify(self, client):
        txn_id = create(client).json()["transaction_id"]
        resp = client.get(f"/payments/{txn_id}/verify")
        assert resp.status_code == 200
        assert resp.json()["status"] == "APPROVED"

    def test_verify_unknown_is_404(self, client):
        resp = client.get("/payments/txn_missing/verify")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "TRANSACTION_NOT_FOUND"

    def test_retry(self, client, db):
        make_txn(db, txn_id="txn_retry")
        resp = client.post("/payments/txn_retry/retry")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "pending"

    def test_refund(self, client):
        txn_id = create(client).json()["transaction_id"]

        resp = client.post(f"/payments/{txn_id}/refund", json={"amount": 450000, "reason": "cancelled"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "APPROVED"
        assert body["transaction_id"] == txn_id
        assert client.get(f"/payments/{txn_id}").json()["transaction"]["status"] == "REFUNDED"

    def test_over_refund_is_400(self, client):
        txn_id = create(client).json()["transaction_id"]
        resp = client.post(f"/payments/{txn_id}/refund", json={"amount": 450001, "reason": "x"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_REFUND_AMOUNT"

    def test_empty_reason_is_422(self, client):
        resp = client.post("/payments/txn_any/refund", json={"amount": 1000, "reason": "   "})
        assert resp.status_code == 422

    def test_refund_outage_is_502(self, client, sandbox):
        txn_id = create(client).json()["transaction_id"]
        sandbox.fail_next(10)
        resp = client.post(f"/payments/{txn_id}/refund", json={"amount": 1000, "reason": "x"})
        assert resp.status_code == 502

    def test_pending_refund_sync(self, client, sandbox):
        txn_id = create(client).json()["transaction_id"]
        sandbox.pending_refunds = True
        refund = client.post(f"/payments/{txn_id}/refund", json={"amount": 450000, "reason": "x"}).json()
        assert refund["status"] == "PENDING"

        sandbox.settle_refund(refund["gateway_refund_id"], "APPROVED")
        resp = client.post(f"/payments/refunds/{refund['id']}/sync")

        assert resp.status_code == 200
        assert resp.json()["status"] == "APPROVED"
        assert client.get(f"/payments/{txn_id}").json()["transaction"]["status"] == "REFUNDED"

    def test_sync_unknown_refund_is_404(self, client):
        resp = client.post("/payments/refunds/ref_missing/sync")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "REFUND_NOT_FOUND"


class TestDetailEndpoint:
    def test_detail_includes_history(self, client):
        txn_id = create(client, number=DECLINED_CARD).json()["transaction_id"]

        resp = client.get(f"/payments/{txn_id}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["transaction"]["id"] == txn_id
        assert body["transaction"]["metadata"]["gateway.status"] == "DECLINED"
        assert body["refundable_amount"] == 0
        assert len(body["gateway_logs"]) == 1
        assert body["failed_attempts"][0]["error_code"] == "BANK_DECLINED"

    def test_detail_not_found(self, client):
        assert client.get("/payments/txn_missing").status_code == 404


class TestDuplicatesEndpoint:
    def test_duplicates_report(self, client, db):
        make_txn(db, txn_id="txn_d1")
        make_txn(db, txn_id="txn_d2")
        body = client.get("/payments/txn_d1/duplicates").json()
        assert body["duplicates_found"] == 1
        assert body["duplicates"][0]["duplicate_transaction_id"] == "txn_d2"

    def test_duplicates_not_found(self, client):
        assert client.get("/payments/txn_missing/duplicates").status_code == 404


# ---------------------------------------------------------------------------
# GET /payments/summary
# ---------------------------------------------------------------------------
class TestSummaryEndpoint:
    def test_empty_summary_has_no_rates(self, client):
        body = client.get("/payments/summary").json()
        assert body["total_transactions"] == 0
        assert body["success_rate"] is None
        assert body["average_ticket"] is None

    def test_summary_counts(self, client, db):
        make_txn(db, txn_id="txn_s1", order_id="o1", status="APPROVED", amount=400000)
        make_txn(db, txn_id="txn_s2", order_id="o2", status="APPROVED", amount=200000)
        make_txn(db, txn_id="txn_s3", order_id="o3", status="FAILED", amount=100000)
        make_txn(db, txn_id="txn_s4", order_id="o4", status="PENDING", amount=100000)

        body = client.get("/payments/summary").json()

        assert body["total_transactions"] == 4
        assert body["status_counts"]["APPROVED"] == 2
        assert body["approved_volume"] == 600000
        assert body["success_rate"] == pytest.approx(66.67)
        assert body["average_ticket"] == 300000
        assert body["methods"] == [{"method": "CARD", "count": 2, "volume": 600000}]


# ---------------------------------------------------------------------------
# POST /payments/reconcile
# ---------------------------------------------------------------------------
class TestReconcileEndpoint:
    def test_reconcile_expires_stale(self, client, db):
        make_txn(db, txn_id="txn_stale")
        body = client.post("/payments/reconcile").json()
        assert body["checked"] == 1
        assert body["expired"] == 1
        assert body["refunds_checked"] == 0

    def test_limit_above_cap_is_422(self, client):
        assert client.post("/payments/reconcile?limit=501").status_code == 422


# ---------------------------------------------------------------------------
# POST /payments/webhook/{gateway}
# ---------------------------------------------------------------------------
class TestWebhookEndpoint:
    def test_signed_webhook_is_processed(self, client, db):
        make_txn(db, txn_id="txn_wh", gateway_transaction_id="g-wh")
        payload = wompi_event("g-wh", "APPROVED")

        resp = client.post("/payments/webhook/wompi", content=payload,
                           headers={"X-Wompi-Signature": sign(payload), "Content-Type": "application/json"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "processed"
        assert resp.json()["received"] is True
        db.expire_all()
        assert db.query(models.Transaction).one().status == "APPROVED"

    def test_bad_signature_is_401(self, client, db):
        payload = wompi_event("g-wh", "APPROVED")
        resp = client.post("/payments/webhook/wompi", content=payload,
                           headers={"X-Wompi-Signature": "invalid_signature"})
        assert resp.status_code == 401
        assert db.query(models.WebhookEvent).count() == 0

    def test_missing_header_is_401(self, client):
        resp = client.post("/payments/webhook/wompi", content=wompi_event("g-wh", "APPROVED"))
        assert resp.status_code == 401

    def test_unknown_gateway_is_404(self, client):
        payload = wompi_event("g-wh", "APPROVED")
        resp = client.post("/payments/webhook/payu", content=payload,
                           headers={"X-Wompi-Signature": sign(payload)})
        assert resp.status_code == 404

    def test_rejected_transition_still_200(self, client, db):
        make_txn(db, txn_id="txn_wf", status="FAILED", gateway_transaction_id="g-wf")
        payload = wompi_event("g-wf", "APPROVED")

        resp = client.post("/payments/webhook/wompi", content=payload,
                           headers={"X-Wompi-Signature": sign(payload)})

        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"

    def test_malformed_body_is_stored_and_acknowledged(self, client, db):
        payload = b'{"event": "transaction.updated", "data": "x"}'

        resp = client.post("/payments/webhook/wompi", content=payload,
                           headers={"X-Wompi-Signature": sign(payload)})

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert db.query(models.WebhookEvent).one().raw_payload == payload.decode("utf-8")

    def test_processing_runs_off_the_event_loop(self, client, db, monkeypatch):
        seen = []
        real_handle = WebhookProcessor.handle

        def handle(self, *args):
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")
            return real_handle(self, *args)

        monkeypatch.setattr(WebhookProcessor, "handle", handle)
        make_txn(db, txn_id="txn_wt", gateway_transaction_id="g-wt")
        payload = wompi_event("g-wt", "APPROVED")

        resp = client.post("/payments/webhook/wompi", content=payload,
                           headers={"X-Wompi-Signature": sign(payload)})

        assert resp.status_code == 200
        assert seen == ["worker thread"]
