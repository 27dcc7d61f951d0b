from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional


class GatewayResult:
    """
    Normalized answer from a gateway.

    status is one of approved / declined / pending / error / unknown.
    Fields the gateway did not send stay None.
    """

    def __init__(
        self,
        status: str,
        gateway_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
        amount: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None,
        raw: Optional[Dict[str, Any]] = None,
    ):
        self.status = status
        self.gateway_id = gateway_id
        self.redirect_url = redirect_url
        self.amount = amount
        self.error_code = error_code
        self.error_message = error_message
        self.processed_at = processed_at
        self.raw = raw or {}

    def to_log(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "gateway_id": self.gateway_id,
            "amount": self.amount,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "raw": self.raw,
        }


class CardData:
    def __init__(self, number: str, cvc: str, exp_month: str, exp_year: str, card_holder: str, installments: int = 1):
        self.number = number
        self.cvc = cvc
        self.exp_month = exp_month
        self.exp_year = exp_year
        self.card_holder = card_holder
        self.installments = installments

    @property
    def last4(self) -> str:
        return self.number[-4:]


class ChargeRequest:
    def __init__(
        self,
        reference: str,
        amount: int,
        currency: str,
        method: str,
        customer_email: Optional[str] = None,
        card: Optional[CardData] = None,
        phone_number: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ):
        self.reference = reference
        self.amount = amount
        self.currency = currency
        self.method = method
        self.customer_email = customer_email
        self.card = card
        self.phone_number = phone_number
        self.redirect_url = redirect_url

    def to_log(self) -> Dict[str, Any]:
        """Request as written to the gateway log. Never carries PAN or CVC."""
        data = {
            "reference": self.reference,
            "amount": self.amount,
            "currency": self.currency,
            "method": self.method,
            "customer_email": self.customer_email,
        }
        if self.card is not None:
            data["card_last4"] = self.card.last4
            data["installments"] = self.card.installments
        return data


class PSERedirectRequest:
    def __init__(
        self,
        reference: str,
        amount: int,
        currency: str,
        bank_code: str,
        customer_email: Optional[str] = None,
        user_type: int = 0,
        document_type: str = "CC",
        document_number: str = "",
        full_name: str = "",
        phone_number: str = "",
        redirect_url: Optional[str] = None,
    ):
        self.reference = reference
        self.amount = amount
        self.currency = currency
        self.bank_code = bank_code
        self.customer_email = customer_email
        self.user_type = user_type
        self.document_type = document_type
        self.document_number = document_number
        self.full_name = full_name
        self.phone_number = phone_number
        self.redirect_url = redirect_url

    def to_log(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "amount": self.amount,
            "currency": self.currency,
            "method": "PSE",
            "bank_code": self.bank_code,
            "user_type": self.user_type,
            "customer_email": self.customer_email,
        }


class BaseGateway(ABC):
    """Abstract base for payment gateway transports."""

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        pass

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> GatewayResult:
        """
        Create a charge. Raises GatewayUnavailable on network errors,
        timeouts and 5xx; GatewayDeclined when the gateway refuses.
        """
        pass

    @abstractmethod
    async def create_pse_redirect(self, request: PSERedirectRequest) -> GatewayResult:
        """Start a PSE bank transfer. The result carries the bank redirect URL."""
        pass

    @abstractmethod
    async def verify(self, gateway_transaction_id: str) -> GatewayResult:
        pass

    @abstractmethod
    async def refund(self, gateway_transaction_id: str, amount: int, reason: str) -> GatewayResult:
        pass

    @abstractmethod
    async def verify_refund(self, gateway_transaction_id: str, gateway_refund_id: Optional[str]) -> GatewayResult:
        """Current status of a refund the gateway answered as pending."""
        pass

    @abstractmethod
    async def list_pse_banks(self) -> List[Dict[str, str]]:
        pass
