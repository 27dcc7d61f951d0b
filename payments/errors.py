"""Error taxonomy for the payments core.

Validation and authentication errors are raised before any gateway call.
GatewayUnavailable is the only error the gateway client retries.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    code = "PAYMENT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(PaymentError):
    code = "VALIDATION_ERROR"


class AuthenticationError(PaymentError):
    code = "INVALID_SIGNATURE"


class TransactionNotFound(PaymentError):
    code = "TRANSACTION_NOT_FOUND"


class GatewayUnavailable(PaymentError):
    """Network failure, timeout or 5xx. Safe to retry."""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, gateway: Optional[str] = None):
        super().__init__(message)
        self.gateway = gateway


class GatewayDeclined(PaymentError):
    """The gateway answered and refused the operation. Final, never retried."""

    code = "DECLINED"

    def __init__(self, message: str, code: Optional[str] = None, raw: Optional[Dict[str, Any]] = None):
        super().__init__(message, code)
        self.raw = raw or {}


class ConflictError(PaymentError):
    code = "CONFLICT"


class InvalidRefundAmount(PaymentError):
    code = "INVALID_REFUND_AMOUNT"


class RefundNotFound(TransactionNotFound):
    code = "REFUND_NOT_FOUND"
