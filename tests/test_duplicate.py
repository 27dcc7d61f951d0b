"""
Unit tests for payments/services/duplicate.py.

Covers: detection criteria (customer/amount/window), confidence scoring,
duplicate_type classification, recommendation logic for status pairs,
edge cases (null customer_email, not found).
"""
import pytest
from datetime import datetime, timedelta

from payments.errors import TransactionNotFound
from payments.services.duplicate import find_duplicates, _confidence_score, _duplicate_type
from tests.conftest import make_txn

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0)


# ---------------------------------------------------------------------------
# Detection criteria
# ---------------------------------------------------------------------------
class TestDuplicateDetection:
    def test_detects_exact_amount_same_customer_within_window(self, db):
        make_txn(db, "txn_a", amount=100000, created_at=BASE_TIME)
        make_txn(db, "txn_b", amount=100000, created_at=BASE_TIME + timedelta(seconds=30))
        results = find_duplicates("txn_a", db)
        assert len(results) == 1
        assert results[0].duplicate_transaction_id == "txn_b"
        assert results[0].status == "PENDING"

    def test_detects_amount_within_5_percent(self, db):
        make_txn(db, "txn_a", amount=100000, created_at=BASE_TIME)
        # 105000 is the inclusive upper bound
        make_txn(db, "txn_b", amount=105000, created_at=BASE_TIME + timedelta(minutes=2))
        assert len(find_duplicates("txn_a", db)) == 1

    def test_ignores_amount_outside_5_percent(self, db):
        make_txn(db, "txn_a", amount=100000, created_at=BASE_TIME)
        make_txn(db, "txn_b", amount=106000, created_at=BASE_TIME + timedelta(minutes=2))
        assert find_duplicates("txn_a", db) == []

    def test_ignores_transactions_outside_10_minute_window(self, db):
        make_txn(db, "txn_a", amount=100000, created_at=BASE_TIME)
        make_txn(db, "txn_b", amount=100000, created_at=BASE_TIME + timedelta(minutes=11))
        assert find_duplicates("txn_a", db) == []

    def test_ignores_different_customer_same_amount(self, db):
        make_txn(db, "txn_a", amount=100000, customer_email="ana@example.com", created_at=BASE_TIME)
        make_txn(db, "txn_b", amount=100000, customer_email="luis@example.com",
                 created_at=BASE_TIME + timedelta(seconds=30))
        assert find_duplicates("txn_a", db) == []

    def test_null_customer_email_returns_empty(self, db):
        make_txn(db, "txn_a", customer_email=None, created_at=BASE_TIME)
        make_txn(db, "txn_b", customer_email=None, created_at=BASE_TIME + timedelta(seconds=30))
        assert find_duplicates("txn_a", db) == []

    def test_transaction_not_found(self, db):
        with pytest.raises(TransactionNotFound, match="not found"):
            find_duplicates("txn_nonexistent", db)

    def test_results_sorted_by_confidence_descending(self, db):
        make_txn(db, "txn_a", amount=100000, created_at=BASE_TIME)
        # High confidence: exact amount, same method, 10s gap
        make_txn(db, "txn_b", amount=100000, method="CARD", created_at=BASE_TIME + timedelta(seconds=10))
        # Lower confidence: within 5%, different method, 8min gap
        make_txn(db, "txn_c", amount=103000, method="PSE", created_at=BASE_TIME + timedelta(minutes=8))
        results = find_duplicates("txn_a", db)
        assert [r.duplicate_transaction_id for r in results] == ["txn_b", "txn_c"]


# ---------------------------------------------------------------------------
# Confidence scoring
# ---------------------------------------------------------------------------
class TestConfidenceScoring:
    def _make_pair(self, db, amount_a, amount_b, method_a, method_b, gap_seconds, order_b="order_001"):
        t1 = make_txn(db, "txn_a", amount=amount_a, method=method_a, created_at=BASE_TIME)
        t2 = make_txn(db, "txn_b", order_id=order_b, amount=amount_b, method=method_b,
                      created_at=BASE_TIME + timedelta(seconds=gap_seconds))
        return t1, t2

    def test_max_score_exact_amount_same_method_same_order(self, db):
        t1, t2 = self._make_pair(db, 100000, 100000, "CARD", "CARD", 30)
        # exact(40) + same_method(20) + gap<120s(30) + same_order(10) = 100
        assert _confidence_score(t1, t2) == 100

    def test_near_amount_different_method_large_gap_other_order(self, db):
        t1, t2 = self._make_pair(db, 100000, 104000, "CARD", "PSE", 500, order_b="order_002")
        # near(20) + diff_method(0) + gap>=300s(10) = 30
        assert _confidence_score(t1, t2) == 30

    def test_exact_amount_same_method_medium_gap(self, db):
        t1, t2 = self._make_pair(db, 100000, 100000, "CARD", "CARD", 200, order_b="order_002")
        # exact(40) + same_method(20) + gap<300s(20) = 80
        assert _confidence_score(t1, t2) == 80


class TestDuplicateType:
    @pytest.mark.parametrize("score,expected", [
        (100, "accidental_retry"),
        (80, "accidental_retry"),
        (70, "suspected_retry"),
        (60, "suspected_retry"),
        (30, "likely_legitimate"),
    ])
    def test_thresholds(self, score, expected):
        assert _duplicate_type(score) == expected


# ---------------------------------------------------------------------------
# Recommendation logic
# ---------------------------------------------------------------------------
class TestRecommendationLogic:
    def _pair(self, db, status_a, status_b, first="txn_a", second="txn_b"):
        make_txn(db, first, status=status_a, created_at=BASE_TIME)
        make_txn(db, second, status=status_b, created_at=BASE_TIME + timedelta(seconds=30))
        return find_duplicates(first, db)[0]

    def test_both_approved_recommends_refund_duplicate(self, db):
        assert self._pair(db, "APPROVED", "APPROVED").recommendation == "refund_duplicate"

    def test_approved_plus_pending_recommends_mark_as_duplicate(self, db):
        assert self._pair(db, "APPROVED", "PENDING").recommendation == "mark_as_duplicate"

    def test_both_failed_recommends_no_action(self, db):
        assert self._pair(db, "FAILED", "FAILED").recommendation == "no_action"

    def test_approved_plus_failed_recommends_no_action(self, db):
        assert self._pair(db, "APPROVED", "FAILED").recommendation == "no_action"

    def test_refunded_pair_goes_to_manual_review(self, db):
        assert self._pair(db, "REFUNDED", "APPROVED").recommendation == "manual_review"

    def test_refund_duplicate_keeps_earlier_transaction(self, db):
        """When both are approved, the EARLIER transaction should be kept."""
        entry = self._pair(db, "APPROVED", "APPROVED", first="txn_early", second="txn_late")
        assert "Keep txn_early" in entry.reasoning
        assert "Refund txn_late" in entry.reasoning
