import hashlib
from typing import Any, Dict, List, Optional

import httpx
import structlog

from payments.errors import GatewayDeclined, GatewayUnavailable
from payments.gateways.base import BaseGateway, ChargeRequest, GatewayResult, PSERedirectRequest
from payments.services.normalizer import (
    normalize_wompi_refund,
    normalize_wompi_transaction,
    normalize_wompi_void_status,
)

logger = structlog.get_logger(__name__)


DEFAULT_PATHS = {
    "merchant": "/merchants/{public_key}",
    "card_token": "/tokens/cards",
    "transactions": "/transactions",
    "transaction": "/transactions/{id}",
    "refund": "/transactions/{id}/void",
    "pse_banks": "/pse/financial_institutions",
}

PAYMENT_METHOD_TYPES = {
    "CARD": "CARD",
    "WALLET": "NEQUI",
    "BANK_TRANSFER": "BANCOLOMBIA_TRANSFER",
    "PSE": "PSE",
}


def integrity_signature(reference: str, amount_in_cents: int, currency: str, integrity_secret: str) -> str:
    """Wompi integrity hash: sha256(reference + amount + currency + secret)."""
    payload = f"{reference}{amount_in_cents}{currency}{integrity_secret}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class WompiGateway(BaseGateway):
    """
    Wompi REST transport over httpx.
    Network errors, timeouts and 5xx → GatewayUnavailable.
    4xx → GatewayDeclined, except a 404 on verify which is reported as unknown.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        public_key: str,
        private_key: str,
        integrity_secret: str = "",
        paths: Optional[Dict[str, str]] = None,
    ):
        self._http = http
        self._public_key = public_key
        self._private_key = private_key
        self._integrity_secret = integrity_secret
        self._paths = {**DEFAULT_PATHS, **(paths or {})}

    @property
    def gateway_name(self) -> str:
        return "wompi"

    def _path(self, name: str, **params) -> str:
        return self._paths[name].format(public_key=self._public_key, **params)

    async def _send(self, method: str, path: str, *, private: bool = True, **kwargs) -> httpx.Response:
        key = self._private_key if private else self._public_key
        headers = {"Authorization": f"Bearer {key}"}
        try:
            response = await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"Wompi timeout on {method} {path}: {e}", gateway="wompi") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"Wompi connection error on {method} {path}: {e}", gateway="wompi") from e

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Wompi returned {response.status_code} on {method} {path}", gateway="wompi"
            )
        return response

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"text": response.text}
        return body if isinstance(body, dict) else {"data": body}

    def _raise_for_decline(self, response: httpx.Response) -> Dict[str, Any]:
        body = self._body(response)
        if response.status_code >= 400:
            error = body.get("error") or {}
            raise GatewayDeclined(
                error.get("reason") or f"Wompi rejected the request ({response.status_code})",
                code=error.get("type") or "DECLINED",
                raw=body,
            )
        return body

    async def _acceptance_token(self) -> str:
        response = await self._send("GET", self._path("merchant"), private=False)
        body = self._raise_for_decline(response)
        return body["data"]["presigned_acceptance"]["acceptance_token"]

    async def _tokenize_card(self, request: ChargeRequest) -> str:
        card = request.card
        response = await self._send("POST", self._path("card_token"), private=False, json={
            "number": card.number,
            "cvc": card.cvc,
            "exp_month": card.exp_month,
            "exp_year": card.exp_year,
            "card_holder": card.card_holder,
        })
        body = self._raise_for_decline(response)
        return body["data"]["id"]

    def _base_transaction(self, reference: str, amount: int, currency: str,
                          email: Optional[str], redirect_url: Optional[str], acceptance_token: str) -> Dict[str, Any]:
        data = {
            "acceptance_token": acceptance_token,
            "amount_in_cents": amount,
            "currency": currency,
            "customer_email": email,
            "reference": reference,
        }
        if redirect_url:
            data["redirect_url"] = redirect_url
        if self._integrity_secret:
            data["signature"] = integrity_signature(reference, amount, currency, self._integrity_secret)
        return data

    async def _create_transaction(self, body: Dict[str, Any]) -> GatewayResult:
        response = await self._send("POST", self._path("transactions"), json=body)
        raw = self._raise_for_decline(response)
        return normalize_wompi_transaction(raw)

    async def create_charge(self, request: ChargeRequest) -> GatewayResult:
        acceptance_token = await self._acceptance_token()
        body = self._base_transaction(
            request.reference, request.amount, request.currency,
            request.customer_email, request.redirect_url, acceptance_token,
        )

        method_type = PAYMENT_METHOD_TYPES.get(request.method, request.method)
        payment_method: Dict[str, Any] = {"type": method_type}
        if request.method == "CARD":
            payment_method["token"] = await self._tokenize_card(request)
            payment_method["installments"] = request.card.installments
        elif request.method == "WALLET":
            payment_method["phone_number"] = request.phone_number
        elif request.method == "BANK_TRANSFER":
            payment_method["user_type"] = "PERSON"
            payment_method["payment_description"] = f"Pedido {request.reference}"
        body["payment_method"] = payment_method

        return await self._create_transaction(body)

    async def create_pse_redirect(self, request: PSERedirectRequest) -> GatewayResult:
        acceptance_token = await self._acceptance_token()
        body = self._base_transaction(
            request.reference, request.amount, request.currency,
            request.customer_email, request.redirect_url, acceptance_token,
        )
        body["payment_method"] = {
            "type": "PSE",
            "user_type": request.user_type,
            "user_legal_id_type": request.document_type,
            "user_legal_id": request.document_number,
            "financial_institution_code": request.bank_code,
            "payment_description": f"Pedido {request.reference}",
        }
        body["customer_data"] = {
            "phone_number": request.phone_number,
            "full_name": request.full_name,
        }
        return await self._create_transaction(body)

    async def verify(self, gateway_transaction_id: str) -> GatewayResult:
        response = await self._send("GET", self._path("transaction", id=gateway_transaction_id))
        if response.status_code == 404:
            logger.warning("wompi_transaction_not_found", gateway_transaction_id=gateway_transaction_id)
            return GatewayResult(status="unknown", gateway_id=gateway_transaction_id, raw=self._body(response))
        raw = self._raise_for_decline(response)
        return normalize_wompi_transaction(raw)

    async def refund(self, gateway_transaction_id: str, amount: int, reason: str) -> GatewayResult:
        response = await self._send(
            "POST",
            self._path("refund", id=gateway_transaction_id),
            json={"amount_in_cents": amount, "reason": reason},
        )
        raw = self._raise_for_decline(response)
        return normalize_wompi_refund(raw)

    async def verify_refund(self, gateway_transaction_id: str, gateway_refund_id: Optional[str]) -> GatewayResult:
        # Voids have no resource of their own; the transaction turns VOIDED
        response = await self._send("GET", self._path("transaction", id=gateway_transaction_id))
        raw = self._raise_for_decline(response)
        return normalize_wompi_void_status(raw, gateway_refund_id)

    async def list_pse_banks(self) -> List[Dict[str, str]]:
        response = await self._send("GET", self._path("pse_banks"), private=False)
        body = self._raise_for_decline(response)
        return [
            {"code": bank["financial_institution_code"], "name": bank["financial_institution_name"]}
            for bank in body.get("data", [])
        ]
