"""
Payment orchestrator.

Drives a checkout payment from request validation to a settled (or pending)
Transaction:
1. Validate the request (no gateway call on bad input)
2. Honor the idempotency key
3. Persist a PENDING Transaction and commit
4. Call the gateway through the GatewayClient
5. Reconcile the answer through the state machine, recording failures
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payments import models
from payments.config import Settings
from payments.errors import GatewayUnavailable, PaymentError, ValidationError
from payments.gateways.base import CardData, ChargeRequest, GatewayResult, PSERedirectRequest
from payments.gateways.client import GatewayClient
from payments.models import PaymentMethod, TransactionStatus
from payments.services.methods import get_method, route_gateway
from payments.services.normalizer import claimed_status, flatten_metadata
from payments.services.orders import OrderBook, SqlOrderBook, sync_order
from payments.services.recorder import record_failed_attempt
from payments.services.store import TransactionStore, TransitionOutcome
from payments.utils.logging import bind_context

logger = structlog.get_logger(__name__)


OUTCOMES = {
    TransactionStatus.APPROVED: "success",
    TransactionStatus.REFUNDED: "success",
    TransactionStatus.PENDING: "pending",
    TransactionStatus.FAILED: "failed",
}

MESSAGES = {
    "success": "Payment approved",
    "pending": "Payment is being processed",
    "failed": "Payment could not be completed",
}

RETRYABLE_MESSAGE = "Payment service is temporarily unavailable, please try again"

# Gateway fields kept on the transaction for display
GATEWAY_METADATA_FIELDS = ("status", "status_message", "payment_method_type", "created_at", "finalized_at")


class CheckoutRequest:
    def __init__(
        self,
        order_id: str,
        amount: int,
        currency: str,
        method: str,
        customer_email: Optional[str] = None,
        card: Optional[CardData] = None,
        bank_code: Optional[str] = None,
        user_type: int = 0,
        document_type: str = "CC",
        document_number: str = "",
        full_name: str = "",
        phone_number: Optional[str] = None,
        redirect_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.order_id = order_id
        self.amount = amount
        self.currency = currency
        self.method = method
        self.customer_email = customer_email
        self.card = card
        self.bank_code = bank_code
        self.user_type = user_type
        self.document_type = document_type
        self.document_number = document_number
        self.full_name = full_name
        self.phone_number = phone_number
        self.redirect_url = redirect_url
        self.idempotency_key = idempotency_key
        self.metadata = metadata or {}


class PaymentResult:
    """What checkout sees: a tri-state outcome, never the gateway's error detail."""

    def __init__(self, transaction: models.Transaction, retryable: bool = False):
        self.transaction = transaction
        self.transaction_id = transaction.id
        self.status = TransactionStatus(transaction.status)
        self.outcome = OUTCOMES[self.status]
        self.retryable = retryable
        self.message = RETRYABLE_MESSAGE if retryable else MESSAGES[self.outcome]
        self.redirect_url = transaction.redirect_url if self.status == TransactionStatus.PENDING else None
        self.gateway_transaction_id = transaction.gateway_transaction_id

    @property
    def success(self) -> bool:
        return self.outcome == "success"


def _gateway_metadata(result: GatewayResult) -> Dict[str, Any]:
    data = result.raw.get("data", result.raw) if isinstance(result.raw, dict) else {}
    if not isinstance(data, dict):
        return {}
    picked = {field: data[field] for field in GATEWAY_METADATA_FIELDS if field in data}
    return flatten_metadata(picked, prefix="gateway.")


def _digits(value: Optional[str]) -> bool:
    return bool(value) and value.isdigit()


class PaymentOrchestrator:
    def __init__(
        self,
        db: Session,
        gateways: Dict[str, GatewayClient],
        settings: Settings,
        orders: Optional[OrderBook] = None,
    ):
        self.db = db
        self.store = TransactionStore(db)
        self.gateways = gateways
        self.settings = settings
        self.orders = orders or SqlOrderBook(db)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, request: CheckoutRequest) -> PaymentMethod:
        if not request.order_id:
            raise ValidationError("order_id is required")
        if isinstance(request.amount, bool) or not isinstance(request.amount, int) or request.amount <= 0:
            raise ValidationError("amount must be a positive integer in minor units")
        if (request.currency or "").upper() not in self.settings.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {request.currency}")

        try:
            method = PaymentMethod(request.method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {request.method}")
        info = get_method(method)
        if info is None or not info.enabled:
            raise ValidationError(f"Payment method {method.value} is not available")
        if not info.accepts(request.amount):
            raise ValidationError(
                f"Amount {request.amount} outside {method.value} limits [{info.min_amount}, {info.max_amount}]"
            )

        if method == PaymentMethod.CARD:
            card = request.card
            if card is None:
                raise ValidationError("Card data is required for CARD payments")
            if not _digits(card.number) or not 13 <= len(card.number) <= 19:
                raise ValidationError("Invalid card number")
            if not _digits(card.cvc) or len(card.cvc) not in (3, 4):
                raise ValidationError("Invalid card CVC")
            if not _digits(card.exp_month) or not 1 <= int(card.exp_month) <= 12:
                raise ValidationError("Invalid card expiry month")
            if not _digits(card.exp_year):
                raise ValidationError("Invalid card expiry year")
        elif method == PaymentMethod.PSE:
            if not request.bank_code:
                raise ValidationError("bank_code is required for PSE payments")
        elif method == PaymentMethod.WALLET:
            if not request.phone_number:
                raise ValidationError("phone_number is required for WALLET payments")
        return method

    def _ensure_payable(self, order_id: str) -> None:
        if self.orders.get_payment_status(order_id) == models.OrderPaymentState.PAID:
            raise ValidationError(f"Order {order_id} is already paid")
        if self.store.has_approved_charge(order_id):
            raise ValidationError(f"Order {order_id} already has an approved payment")

    def _route(self, method: PaymentMethod) -> GatewayClient:
        name = route_gateway(method, self.gateways, self.settings.GATEWAY_ROUTES)
        if name is None:
            raise ValidationError(f"No gateway available for payment method {method.value}")
        return self.gateways[name]

    def _client(self, gateway: str) -> GatewayClient:
        client = self.gateways.get(gateway)
        if client is None:
            raise PaymentError(f"No gateway client configured for {gateway}")
        return client

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def _apply_result(self, txn: models.Transaction, result: GatewayResult, source: str) -> TransitionOutcome:
        claimed = claimed_status(result.status)

        changes: Dict[str, Any] = {}
        if result.gateway_id and not txn.gateway_transaction_id:
            changes["gateway_transaction_id"] = result.gateway_id
        if result.redirect_url:
            changes["redirect_url"] = result.redirect_url
        metadata = _gateway_metadata(result)
        if metadata:
            changes["extra"] = {**(txn.extra or {}), **metadata}
        error_code = result.error_code or "DECLINED"
        if claimed == TransactionStatus.FAILED:
            changes["failure_reason"] = error_code

        def before_commit(current: models.Transaction, resolution) -> None:
            if not resolution.applies:
                return
            sync_order(self.db, self.orders, current, resolution.target)
            if resolution.target == TransactionStatus.FAILED:
                record_failed_attempt(
                    self.db, current, error_code, result.error_message,
                    metadata={"source": source, "gateway_status": result.status},
                )

        return self.store.apply_status(
            txn.id,
            claimed,
            source=source,
            observed_at=result.processed_at,
            changes=changes,
            before_commit=before_commit,
        )

    def _fail_unavailable(self, txn: models.Transaction, error: GatewayUnavailable) -> TransitionOutcome:
        def before_commit(current: models.Transaction, resolution) -> None:
            if not resolution.applies:
                return
            sync_order(self.db, self.orders, current, resolution.target)
            record_failed_attempt(
                self.db, current, "GATEWAY_ERROR", str(error),
                metadata={"source": "checkout", "retryable": True},
            )

        return self.store.apply_status(
            txn.id,
            TransactionStatus.FAILED,
            source="checkout",
            changes={"failure_reason": "GATEWAY_ERROR"},
            before_commit=before_commit,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_payment(self, request: CheckoutRequest) -> PaymentResult:
        """
        Start a payment for an order.

        Raises:
            ValidationError: bad request or order not payable (no gateway call)
        """
        method = self._validate(request)

        if request.idempotency_key:
            existing = self.store.find_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                logger.info("payment_idempotent_replay", transaction_id=existing.id, order_id=existing.order_id)
                return PaymentResult(existing)

        self._ensure_payable(request.order_id)
        client = self._route(method)

        def claim(new_txn: models.Transaction) -> None:
            self.store.claim_order(new_txn)
            sync_order(self.db, self.orders, new_txn, TransactionStatus.PENDING)

        try:
            txn = self.store.create(
                before_commit=claim,
                order_id=request.order_id,
                amount=request.amount,
                currency=request.currency.upper(),
                method=method.value,
                gateway=client.gateway_name,
                customer_email=request.customer_email,
                idempotency_key=request.idempotency_key,
                extra=flatten_metadata(request.metadata),
            )
        except IntegrityError:
            # Lost a race on the same idempotency key or on the order's active charge
            existing = None
            if request.idempotency_key:
                existing = self.store.find_by_idempotency_key(request.idempotency_key)
            if existing is None:
                raise ValidationError(f"Order {request.order_id} already has a payment in progress")
            return PaymentResult(existing)

        bind_context(transaction_id=txn.id, order_id=txn.order_id)

        try:
            if method == PaymentMethod.PSE:
                result = await client.create_pse_redirect(PSERedirectRequest(
                    reference=txn.id,
                    amount=txn.amount,
                    currency=txn.currency,
                    bank_code=request.bank_code,
                    customer_email=request.customer_email,
                    user_type=request.user_type,
                    document_type=request.document_type,
                    document_number=request.document_number,
                    full_name=request.full_name,
                    phone_number=request.phone_number or "",
                    redirect_url=request.redirect_url,
                ))
            else:
                result = await client.create_charge(ChargeRequest(
                    reference=txn.id,
                    amount=txn.amount,
                    currency=txn.currency,
                    method=method.value,
                    customer_email=request.customer_email,
                    card=request.card,
                    phone_number=request.phone_number,
                    redirect_url=request.redirect_url,
                ))
        except GatewayUnavailable as e:
            logger.error("payment_gateway_unavailable", transaction_id=txn.id, order_id=txn.order_id, error=str(e))
            outcome = self._fail_unavailable(txn, e)
            return PaymentResult(outcome.transaction, retryable=True)

        outcome = self._apply_result(txn, result, source="checkout")
        logger.info(
            "payment_created",
            transaction_id=txn.id,
            order_id=txn.order_id,
            gateway=txn.gateway,
            status=outcome.transaction.status,
        )
        return PaymentResult(outcome.transaction)

    async def verify_payment(self, transaction_id: str) -> PaymentResult:
        """
        Re-check a transaction with its gateway and reconcile.
        Terminal transactions, and ones the gateway never acknowledged, are
        answered from the store without a gateway call.

        Raises:
            TransactionNotFound: unknown id
            GatewayUnavailable: gateway still unreachable after retries
        """
        txn = self.store.require(transaction_id)
        bind_context(transaction_id=txn.id, order_id=txn.order_id)
        if txn.is_terminal or not txn.gateway_transaction_id:
            return PaymentResult(txn)

        result = await self._client(txn.gateway).verify(txn.gateway_transaction_id)
        outcome = self._apply_result(txn, result, source="verify")
        return PaymentResult(outcome.transaction)

    async def retry_payment(self, transaction_id: str) -> PaymentResult:
        """Re-runs verification. Never creates a new charge."""
        logger.info("payment_retry_requested", transaction_id=transaction_id)
        return await self.verify_payment(transaction_id)
