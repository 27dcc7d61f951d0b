"""
Normalizes Wompi responses and webhook payloads to the canonical schema.

Gateway vocabularies are mapped to GatewayResult statuses
(approved / declined / pending / error / unknown), and those in turn to the
Transaction statuses the state machine understands.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from payments.gateways.base import GatewayResult
from payments.models import TransactionStatus


NORMALIZED_STATES = {
    # Wompi transactions
    "APPROVED": "approved",
    "DECLINED": "declined",
    "PENDING": "pending",
    "ERROR": "error",
    # A voided charge was captured first; the refund path owns REFUNDED
    "VOIDED": "approved",
}

REFUND_STATES = {
    "APPROVED": "approved",
    "VOIDED": "approved",
    "DECLINED": "declined",
    "ERROR": "declined",
    "PENDING": "pending",
}

CLAIMED_STATUS = {
    "approved": TransactionStatus.APPROVED,
    "declined": TransactionStatus.FAILED,
    "error": TransactionStatus.FAILED,
    "pending": TransactionStatus.PENDING,
    "unknown": TransactionStatus.PENDING,
}

WEBHOOK_EVENTS = {"transaction.updated"}

# Fragments of Wompi's status_message → decline code
DECLINE_CODES = {
    "fondos insuficientes": "INSUFFICIENT_FUNDS",
    "insufficient funds": "INSUFFICIENT_FUNDS",
    "tarjeta expirada": "EXPIRED_CARD",
    "expired card": "EXPIRED_CARD",
    "rechazada por el banco": "BANK_DECLINED",
}


def decline_code(status_message: Optional[str]) -> str:
    message = (status_message or "").lower()
    for fragment, code in DECLINE_CODES.items():
        if fragment in message:
            return code
    return "DECLINED"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO8601 string or unix epoch → naive UTC datetime. None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def claimed_status(result_status: str) -> TransactionStatus:
    return CLAIMED_STATUS.get(result_status, TransactionStatus.PENDING)


def normalize_wompi_transaction(raw: Dict[str, Any]) -> GatewayResult:
    """
    Maps a Wompi transaction object (the `data` of /transactions responses)
    to a GatewayResult.
    """
    data = raw.get("data", raw) if isinstance(raw, dict) else {}
    status = NORMALIZED_STATES.get(str(data.get("status", "")).upper(), "unknown")

    payment_method = data.get("payment_method") or {}
    extra = payment_method.get("extra") or {}
    redirect_url = extra.get("async_payment_url") or data.get("redirect_url")

    error_code = None
    error_message = None
    if status in ("declined", "error"):
        error_message = data.get("status_message")
        error_code = decline_code(error_message) if status == "declined" else "GATEWAY_ERROR"

    return GatewayResult(
        status=status,
        gateway_id=data.get("id"),
        redirect_url=redirect_url if status == "pending" else None,
        amount=data.get("amount_in_cents"),
        error_code=error_code,
        error_message=error_message,
        processed_at=parse_timestamp(data.get("finalized_at")),
        raw=raw,
    )


def normalize_wompi_refund(raw: Dict[str, Any]) -> GatewayResult:
    data = raw.get("data", raw) if isinstance(raw, dict) else {}
    transaction = data.get("transaction") or data
    status = REFUND_STATES.get(str(transaction.get("status", "")).upper(), "unknown")
    return GatewayResult(
        status=status,
        gateway_id=data.get("id") or transaction.get("id"),
        amount=data.get("amount_in_cents") or transaction.get("amount_in_cents"),
        error_code="REFUND_REJECTED" if status == "declined" else None,
        error_message=transaction.get("status_message"),
        processed_at=parse_timestamp(transaction.get("finalized_at")),
        raw=raw,
    )


def normalize_wompi_void_status(raw: Dict[str, Any], gateway_refund_id: Optional[str] = None) -> GatewayResult:
    """
    Refund status read off the refunded transaction: VOIDED means the void
    went through, anything else means it has not landed yet.
    """
    data = raw.get("data", raw) if isinstance(raw, dict) else {}
    voided = str(data.get("status", "")).upper() == "VOIDED"
    return GatewayResult(
        status="approved" if voided else "pending",
        gateway_id=gateway_refund_id or data.get("id"),
        amount=data.get("amount_in_cents"),
        processed_at=parse_timestamp(data.get("finalized_at")) if voided else None,
        raw=raw,
    )


class ParsedWebhook:
    def __init__(
        self,
        event_type: str,
        gateway_transaction_id: str,
        reference: Optional[str],
        claimed_status: TransactionStatus,
        observed_at: Optional[datetime],
        amount: Optional[int],
    ):
        self.event_type = event_type
        self.gateway_transaction_id = gateway_transaction_id
        self.reference = reference
        self.claimed_status = claimed_status
        self.observed_at = observed_at
        self.amount = amount


def _parse_wompi_webhook(payload: Dict[str, Any]) -> ParsedWebhook:
    event_type = payload.get("event")
    if event_type not in WEBHOOK_EVENTS:
        raise ValueError(f"Unsupported event: {event_type}")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValueError("Payload has no data object")
    transaction = data.get("transaction")
    if not isinstance(transaction, dict) or not transaction.get("id"):
        raise ValueError("Payload has no data.transaction.id")

    status = NORMALIZED_STATES.get(str(transaction.get("status", "")).upper())
    if status is None:
        raise ValueError(f"Unknown transaction status: {transaction.get('status')}")

    observed_at = (
        parse_timestamp(transaction.get("finalized_at"))
        or parse_timestamp(payload.get("sent_at"))
        or parse_timestamp(payload.get("timestamp"))
    )

    return ParsedWebhook(
        event_type=event_type,
        gateway_transaction_id=str(transaction["id"]),
        reference=transaction.get("reference"),
        claimed_status=claimed_status(status),
        observed_at=observed_at,
        amount=transaction.get("amount_in_cents"),
    )


WEBHOOK_PARSERS = {
    "wompi": _parse_wompi_webhook,
}


def parse_webhook(gateway: str, raw_payload: bytes) -> ParsedWebhook:
    """
    Parses a webhook body for the given gateway.

    Raises:
        ValueError: if the body is not JSON or lacks the fields we act on
    """
    parser = WEBHOOK_PARSERS.get(gateway)
    if parser is None:
        raise ValueError(f"Unknown gateway: {gateway}")
    try:
        payload = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Payload is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ValueError("Payload is not a JSON object")
    return parser(payload)


PRIMITIVES = (str, int, float, bool, type(None))


def flatten_metadata(data: Optional[Dict[str, Any]], prefix: str = "") -> Dict[str, Any]:
    """Flattens nested dicts to dotted keys; other non-primitives become JSON text."""
    flat: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_metadata(value, prefix=f"{name}."))
        elif isinstance(value, PRIMITIVES):
            flat[name] = value
        else:
            flat[name] = json.dumps(value, default=str)
    return flat
