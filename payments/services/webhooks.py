"""
Webhook processor.

1. Resolve the gateway's shared secret (unknown gateway → ValidationError)
2. Verify the HMAC over the raw bytes (mismatch → AuthenticationError, nothing written)
3. Store the event durably
4. Match it to a Transaction by gateway id, falling back to our reference
5. Claim (gateway, gateway txn id, status) and apply the transition in one
   database transaction; a second delivery of the same claim is a duplicate
6. Mark the event processed

Once the event is stored the gateway gets a success answer even if the
transition was rejected, so it does not keep redelivering.
"""
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from payments import models
from payments.config import Settings
from payments.errors import AuthenticationError, ValidationError
from payments.models import utcnow
from payments.services.normalizer import ParsedWebhook, parse_webhook
from payments.services.orders import OrderBook, SqlOrderBook, sync_order
from payments.services.signature import verify_signature
from payments.services.state_machine import REJECT, Resolution
from payments.services.store import DuplicateDelivery, TransactionStore

logger = structlog.get_logger(__name__)

WEBHOOK_SOURCE = "webhook"

PROCESSED = "processed"
REJECTED = "rejected"
DUPLICATE = "duplicate"
ORPHAN = "orphan"
IGNORED = "ignored"


class WebhookOutcome:
    def __init__(
        self,
        status: str,
        event_id: int,
        transaction_id: Optional[str] = None,
        transaction_status: Optional[str] = None,
        note: Optional[str] = None,
    ):
        self.status = status
        self.event_id = event_id
        self.transaction_id = transaction_id
        self.transaction_status = transaction_status
        self.note = note


def idempotency_key(gateway: str, parsed: ParsedWebhook) -> str:
    return f"{gateway}:{parsed.gateway_transaction_id}:{parsed.claimed_status.value}"


class WebhookProcessor:
    def __init__(self, db: Session, settings: Settings, orders: Optional[OrderBook] = None):
        self.db = db
        self.store = TransactionStore(db)
        self.settings = settings
        self.orders = orders or SqlOrderBook(db)

    def _finish(self, event: models.WebhookEvent, status: str, note: Optional[str] = None,
                txn: Optional[models.Transaction] = None) -> WebhookOutcome:
        event.note = note
        event.processed_at = utcnow()
        if txn is not None:
            event.transaction_id = txn.id
        self.db.commit()
        return WebhookOutcome(
            status=status,
            event_id=event.id,
            transaction_id=txn.id if txn is not None else None,
            transaction_status=txn.status if txn is not None else None,
            note=note,
        )

    def _match(self, gateway: str, parsed: ParsedWebhook) -> Optional[models.Transaction]:
        txn = self.store.get_by_gateway_id(gateway, parsed.gateway_transaction_id)
        if txn is None and parsed.reference:
            txn = self.store.get(parsed.reference)
            if txn is not None and txn.gateway != gateway:
                return None
        return txn

    def handle(self, gateway: str, raw_payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """
        Raises:
            ValidationError: gateway has no configured webhook secret
            AuthenticationError: signature missing or wrong
            ConflictError: the transaction kept changing under us
        """
        secrets = self.settings.webhook_secrets
        if gateway not in secrets:
            raise ValidationError(f"Unknown gateway: {gateway}")
        if not verify_signature(raw_payload, signature_header, secrets[gateway]):
            logger.warning("webhook_signature_rejected", gateway=gateway, payload_bytes=len(raw_payload))
            raise AuthenticationError("Invalid webhook signature")

        event = models.WebhookEvent(
            gateway=gateway,
            event_type="unknown",
            raw_payload=raw_payload.decode("utf-8", errors="replace"),
        )
        self.db.add(event)
        self.db.commit()

        try:
            parsed = parse_webhook(gateway, raw_payload)
        except ValueError as e:
            logger.warning("webhook_unparseable", gateway=gateway, error=str(e))
            return self._finish(event, IGNORED, note=f"unparseable: {e}")

        event.event_type = parsed.event_type
        event.gateway_transaction_id = parsed.gateway_transaction_id
        event.reference = parsed.reference
        event.claimed_status = parsed.claimed_status.value
        event.observed_at = parsed.observed_at
        self.db.commit()
        logger.info(
            "webhook_received",
            gateway=gateway,
            event_id=event.id,
            gateway_transaction_id=parsed.gateway_transaction_id,
            claimed_status=parsed.claimed_status.value,
        )

        txn = self._match(gateway, parsed)
        if txn is None:
            logger.warning(
                "webhook_orphan",
                gateway=gateway,
                event_id=event.id,
                gateway_transaction_id=parsed.gateway_transaction_id,
                reference=parsed.reference,
            )
            return self._finish(event, ORPHAN, note="no matching transaction")

        if parsed.amount is not None and parsed.amount != txn.amount:
            detail = f"webhook amount {parsed.amount} != transaction amount {txn.amount}"
            txn = self.store.flag_for_review(txn.id, WEBHOOK_SOURCE, parsed.claimed_status, detail)
            return self._finish(event, REJECTED, note=detail, txn=txn)

        changes = {}
        if not txn.gateway_transaction_id:
            changes["gateway_transaction_id"] = parsed.gateway_transaction_id
        key = idempotency_key(gateway, parsed)

        def before_commit(current: models.Transaction, resolution: Resolution) -> None:
            event.transaction_id = current.id
            event.idempotency_key = key
            event.processed_at = utcnow()
            event.note = resolution.reason if resolution.action == REJECT else None
            if resolution.applies:
                sync_order(self.db, self.orders, current, resolution.target)

        try:
            outcome = self.store.apply_status(
                txn.id,
                parsed.claimed_status,
                source=WEBHOOK_SOURCE,
                observed_at=parsed.observed_at,
                changes=changes,
                before_commit=before_commit,
            )
        except DuplicateDelivery:
            logger.info("webhook_duplicate", gateway=gateway, event_id=event.id, idempotency_key=key)
            txn = self.store.require(txn.id)
            return self._finish(event, DUPLICATE, note="duplicate", txn=txn)

        status = REJECTED if outcome.resolution.action == REJECT else PROCESSED
        logger.info(
            "webhook_processed",
            gateway=gateway,
            event_id=event.id,
            transaction_id=outcome.transaction.id,
            result=status,
            transaction_status=outcome.transaction.status,
        )
        return WebhookOutcome(
            status=status,
            event_id=event.id,
            transaction_id=outcome.transaction.id,
            transaction_status=outcome.transaction.status,
            note=event.note,
        )
