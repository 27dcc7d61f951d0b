"""
Diagnostic records: gateway call logs and failed payment attempts.

Gateway logs are written through their own session and committed at once so a
rollback of the payment flow never erases them. A log write that fails is
reported and swallowed; it must not break a payment.
"""
import json
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payments import models
from payments.services.normalizer import flatten_metadata

logger = structlog.get_logger(__name__)

MAX_LOG_TEXT = 8000


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:MAX_LOG_TEXT]


class GatewayLogRecorder:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(
        self,
        gateway: str,
        operation: str,
        reference: Optional[str],
        request: Any,
        response: Any,
        response_time_ms: int,
        success: bool,
        attempt: int = 1,
    ) -> None:
        db = self._session_factory()
        try:
            db.add(models.GatewayLog(
                gateway=gateway,
                operation=operation,
                reference=reference,
                request=_dump(request),
                response=_dump(response),
                response_time_ms=response_time_ms,
                success=success,
                attempt=attempt,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "gateway_log_write_failed",
                gateway=gateway,
                operation=operation,
                reference=reference,
                error=str(e),
            )
        finally:
            db.close()


def record_failed_attempt(
    db: Session,
    txn: models.Transaction,
    error_code: str,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.FailedAttempt:
    """Adds a FailedAttempt to the caller's session. The caller commits."""
    attempt = models.FailedAttempt(
        order_id=txn.order_id,
        transaction_id=txn.id,
        gateway=txn.gateway,
        method=txn.method,
        amount=txn.amount,
        error_code=error_code,
        error_message=error_message,
        extra=flatten_metadata(metadata),
    )
    db.add(attempt)
    logger.info(
        "payment_attempt_failed",
        transaction_id=txn.id,
        order_id=txn.order_id,
        gateway=txn.gateway,
        error_code=error_code,
    )
    return attempt
