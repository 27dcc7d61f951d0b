import asyncio
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from payments.errors import GatewayDeclined, GatewayUnavailable
from payments.gateways.base import BaseGateway, ChargeRequest, GatewayResult, PSERedirectRequest
from payments.services.normalizer import normalize_wompi_refund, normalize_wompi_transaction


APPROVED_CARDS = {
    "4242424242424242",
    "5555555555554444",
    "378282246310005",
}

DECLINED_CARDS = {
    "4000000000000002": "Transacción rechazada por el banco",
    "5000000000000009": "Transacción rechazada por el banco",
    "371449635398431": "Transacción rechazada por el banco",
    "4000000000009995": "Fondos insuficientes",
}

PSE_BANKS = [
    {"financial_institution_code": "1", "financial_institution_name": "Banco que aprueba"},
    {"financial_institution_code": "2", "financial_institution_name": "Banco que rechaza"},
    {"financial_institution_code": "1007", "financial_institution_name": "Bancolombia"},
    {"financial_institution_code": "1051", "financial_institution_name": "Davivienda"},
    {"financial_institution_code": "1001", "financial_institution_name": "Banco de Bogotá"},
]

# What a pending PSE transfer settles to on the next verify, by bank code
PSE_OUTCOMES = {
    "1": "APPROVED",
    "2": "DECLINED",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class SandboxGateway(BaseGateway):
    """
    Local Wompi simulator.
    Answers with Wompi-shaped payloads so responses go through the same
    normalizer as the HTTP transport.
    Cards: Wompi sandbox test numbers. PSE: bank "1" approves, "2" declines.
    Wallets stay PENDING until settle() is called; with pending_refunds set,
    refunds stay PENDING until settle_refund().
    """

    def __init__(self, gateway_name: str = "wompi", latency: Tuple[float, float] = (0.01, 0.2)):
        self._name = gateway_name
        self._latency = latency
        self._transactions: Dict[str, Dict[str, Any]] = {}
        self._refunded: Dict[str, int] = {}
        self._refunds: Dict[str, Dict[str, Any]] = {}
        self._failures_left = 0
        self.reject_refunds = False
        # Refunds answer PENDING until settle_refund()
        self.pending_refunds = False

    @property
    def gateway_name(self) -> str:
        return self._name

    def fail_next(self, times: int = 1) -> None:
        """Make the next `times` calls fail as a gateway outage."""
        self._failures_left = times

    def settle(self, gateway_transaction_id: str, status: str) -> None:
        """Force a stored transaction to a Wompi status (APPROVED, DECLINED, ...)."""
        txn = self._transactions[gateway_transaction_id]
        txn["status"] = status
        txn["finalized_at"] = _now_iso()

    def settle_refund(self, gateway_refund_id: str, status: str) -> None:
        """Force a pending refund to APPROVED or DECLINED."""
        refund = self._refunds[gateway_refund_id]
        refund["status"] = status
        refund["finalized_at"] = _now_iso()
        if status == "APPROVED":
            gateway_id = refund["transaction_id"]
            self._refunded[gateway_id] = self._refunded.get(gateway_id, 0) + refund["amount_in_cents"]

    def _refund_body(self, refund: Dict[str, Any], status_message: Optional[str] = None) -> Dict[str, Any]:
        return {
            "data": {
                "id": refund["id"],
                "amount_in_cents": refund["amount_in_cents"],
                "reason": refund["reason"],
                "transaction": {
                    "id": refund["transaction_id"],
                    "status": refund["status"],
                    "status_message": status_message,
                    "finalized_at": refund["finalized_at"],
                },
            }
        }

    async def _simulate_call(self) -> None:
        low, high = self._latency
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))
        if self._failures_left > 0:
            self._failures_left -= 1
            raise GatewayUnavailable("Sandbox: gateway unavailable", gateway=self._name)

    def _store(self, reference: str, amount: int, currency: str, email: Optional[str],
               payment_method: Dict[str, Any], status: str, status_message: Optional[str] = None) -> Dict[str, Any]:
        gateway_id = f"{random.randint(10000, 99999)}-{uuid.uuid4().hex[:10]}-{random.randint(10000, 99999)}"
        txn = {
            "id": gateway_id,
            "created_at": _now_iso(),
            "finalized_at": None if status == "PENDING" else _now_iso(),
            "amount_in_cents": amount,
            "reference": reference,
            "customer_email": email,
            "currency": currency,
            "payment_method_type": payment_method.get("type"),
            "payment_method": payment_method,
            "status": status,
            "status_message": status_message,
        }
        self._transactions[gateway_id] = txn
        return txn

    async def create_charge(self, request: ChargeRequest) -> GatewayResult:
        await self._simulate_call()

        if request.method == "CARD":
            number = request.card.number if request.card else ""
            if number in APPROVED_CARDS:
                status, message = "APPROVED", None
            else:
                status, message = "DECLINED", DECLINED_CARDS.get(number, "Tarjeta no válida")
            payment_method = {
                "type": "CARD",
                "installments": request.card.installments if request.card else 1,
                "extra": {"last_four": number[-4:], "brand": "VISA" if number.startswith("4") else "MASTERCARD"},
            }
        elif request.method == "WALLET":
            status, message = "PENDING", None
            payment_method = {"type": "NEQUI", "phone_number": request.phone_number}
        else:
            status, message = "PENDING", None
            payment_method = {
                "type": "BANCOLOMBIA_TRANSFER",
                "extra": {"async_payment_url": f"https://sandbox.wompi.co/bancolombia/{uuid.uuid4().hex[:8]}"},
            }

        txn = self._store(request.reference, request.amount, request.currency,
                          request.customer_email, payment_method, status, message)
        return normalize_wompi_transaction({"data": dict(txn)})

    async def create_pse_redirect(self, request: PSERedirectRequest) -> GatewayResult:
        await self._simulate_call()
        payment_method = {
            "type": "PSE",
            "user_type": request.user_type,
            "financial_institution_code": request.bank_code,
            "extra": {"async_payment_url": f"https://sandbox.wompi.co/pse/redirect/{uuid.uuid4().hex[:8]}"},
        }
        txn = self._store(request.reference, request.amount, request.currency,
                          request.customer_email, payment_method, "PENDING")
        return normalize_wompi_transaction({"data": dict(txn)})

    async def verify(self, gateway_transaction_id: str) -> GatewayResult:
        await self._simulate_call()
        txn = self._transactions.get(gateway_transaction_id)
        if txn is None:
            return GatewayResult(status="unknown", gateway_id=gateway_transaction_id, raw={"error": "NOT_FOUND"})

        method = txn["payment_method"]
        if txn["status"] == "PENDING" and method.get("type") == "PSE":
            outcome = PSE_OUTCOMES.get(method.get("financial_institution_code"))
            if outcome:
                self.settle(gateway_transaction_id, outcome)
                if outcome == "DECLINED":
                    txn["status_message"] = "Transacción rechazada por el banco"

        return normalize_wompi_transaction({"data": dict(txn)})

    async def refund(self, gateway_transaction_id: str, amount: int, reason: str) -> GatewayResult:
        await self._simulate_call()
        txn = self._transactions.get(gateway_transaction_id)
        if txn is None:
            raise GatewayDeclined("Sandbox: transaction not found", code="NOT_FOUND")

        refunded = self._refunded.get(gateway_transaction_id, 0)
        refund = {
            "id": f"rfd_{uuid.uuid4().hex[:10]}",
            "transaction_id": gateway_transaction_id,
            "amount_in_cents": amount,
            "reason": reason,
            "finalized_at": _now_iso(),
        }
        message = None
        if self.reject_refunds or txn["status"] != "APPROVED" or refunded + amount > txn["amount_in_cents"]:
            refund["status"], message = "DECLINED", "Reembolso rechazado"
        elif self.pending_refunds:
            refund["status"], refund["finalized_at"] = "PENDING", None
        else:
            refund["status"] = "APPROVED"
            self._refunded[gateway_transaction_id] = refunded + amount
        self._refunds[refund["id"]] = refund
        return normalize_wompi_refund(self._refund_body(refund, message))

    async def verify_refund(self, gateway_transaction_id: str, gateway_refund_id: Optional[str]) -> GatewayResult:
        await self._simulate_call()
        refund = self._refunds.get(gateway_refund_id or "")
        if refund is None or refund["transaction_id"] != gateway_transaction_id:
            return GatewayResult(status="unknown", gateway_id=gateway_refund_id, raw={"error": "NOT_FOUND"})
        return normalize_wompi_refund(self._refund_body(refund))

    async def list_pse_banks(self) -> List[Dict[str, str]]:
        await self._simulate_call()
        return [
            {"code": bank["financial_institution_code"], "name": bank["financial_institution_name"]}
            for bank in PSE_BANKS
        ]
