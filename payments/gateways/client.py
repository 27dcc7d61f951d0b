"""
Gateway client: the only path from the payments core to a gateway.

Every call is bounded by a timeout and retried with exponential backoff on
GatewayUnavailable only. Declines come back as GatewayResult(status="declined").
One GatewayLog row is written per attempt. Transactions are never touched here.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from payments.config import Settings
from payments.errors import GatewayDeclined, GatewayUnavailable
from payments.gateways.base import BaseGateway, ChargeRequest, GatewayResult, PSERedirectRequest
from payments.gateways.sandbox import SandboxGateway
from payments.gateways.wompi import WompiGateway
from payments.services.recorder import GatewayLogRecorder

logger = structlog.get_logger(__name__)

# Gateways with an HTTP transport; any name works in sandbox mode
LIVE_TRANSPORTS = ("wompi",)


class GatewayClient:
    def __init__(
        self,
        gateway: BaseGateway,
        recorder: GatewayLogRecorder,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff: float = 0.5,
        backoff_max: float = 5.0,
    ):
        self.gateway = gateway
        self._recorder = recorder
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff
        self._backoff_max = backoff_max

    @property
    def gateway_name(self) -> str:
        return self.gateway.gateway_name

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff, max=self._backoff_max),
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        )

    async def _attempt(
        self,
        operation: str,
        reference: Optional[str],
        request_log: Any,
        call: Callable[[], Awaitable[Any]],
        attempt: int,
    ) -> Any:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            result = await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            self._recorder.record(self.gateway_name, operation, reference, request_log,
                                  {"error": "timeout", "timeout_seconds": self._timeout},
                                  elapsed_ms(), False, attempt)
            logger.warning("gateway_timeout", gateway=self.gateway_name, operation=operation,
                           reference=reference, attempt=attempt)
            raise GatewayUnavailable(
                f"{self.gateway_name} {operation} timed out after {self._timeout}s", gateway=self.gateway_name
            ) from e
        except GatewayUnavailable as e:
            self._recorder.record(self.gateway_name, operation, reference, request_log,
                                  {"error": str(e)}, elapsed_ms(), False, attempt)
            logger.warning("gateway_unavailable", gateway=self.gateway_name, operation=operation,
                           reference=reference, attempt=attempt, error=str(e))
            raise
        except GatewayDeclined as e:
            self._recorder.record(self.gateway_name, operation, reference, request_log,
                                  {"declined": e.code, "message": str(e), "raw": e.raw},
                                  elapsed_ms(), True, attempt)
            logger.info("gateway_declined", gateway=self.gateway_name, operation=operation,
                        reference=reference, code=e.code)
            return GatewayResult(status="declined", error_code=e.code, error_message=str(e), raw=e.raw)

        response_log = result.to_log() if isinstance(result, GatewayResult) else result
        self._recorder.record(self.gateway_name, operation, reference, request_log,
                              response_log, elapsed_ms(), True, attempt)
        return result

    async def _call(self, operation: str, reference: Optional[str], request_log: Any,
                    call: Callable[[], Awaitable[Any]]) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await self._attempt(
                    operation, reference, request_log, call, attempt.retry_state.attempt_number
                )

    async def create_charge(self, request: ChargeRequest) -> GatewayResult:
        return await self._call("create_charge", request.reference, request.to_log(),
                                lambda: self.gateway.create_charge(request))

    async def create_pse_redirect(self, request: PSERedirectRequest) -> GatewayResult:
        return await self._call("create_pse_redirect", request.reference, request.to_log(),
                                lambda: self.gateway.create_pse_redirect(request))

    async def verify(self, gateway_transaction_id: str) -> GatewayResult:
        return await self._call("verify", gateway_transaction_id, {"gateway_transaction_id": gateway_transaction_id},
                                lambda: self.gateway.verify(gateway_transaction_id))

    async def refund(self, gateway_transaction_id: str, amount: int, reason: str = "") -> GatewayResult:
        request_log = {"gateway_transaction_id": gateway_transaction_id, "amount": amount, "reason": reason}
        return await self._call("refund", gateway_transaction_id, request_log,
                                lambda: self.gateway.refund(gateway_transaction_id, amount, reason))

    async def verify_refund(self, gateway_transaction_id: str, gateway_refund_id: Optional[str]) -> GatewayResult:
        request_log = {"gateway_transaction_id": gateway_transaction_id, "gateway_refund_id": gateway_refund_id}
        return await self._call("verify_refund", gateway_transaction_id, request_log,
                                lambda: self.gateway.verify_refund(gateway_transaction_id, gateway_refund_id))

    async def list_pse_banks(self) -> List[Dict[str, str]]:
        return await self._call("list_pse_banks", None, None, self.gateway.list_pse_banks)


def build_gateway(settings: Settings, name: Optional[str] = None,
                  http: Optional[httpx.AsyncClient] = None) -> BaseGateway:
    name = name or settings.PAYMENT_GATEWAY
    if settings.GATEWAY_MODE == "live":
        if http is None:
            raise ValueError("Live gateway mode needs an HTTP client")
        if name not in LIVE_TRANSPORTS:
            raise ValueError(f"No live transport for gateway {name}")
        return WompiGateway(
            http,
            public_key=settings.WOMPI_PUBLIC_KEY,
            private_key=settings.WOMPI_PRIVATE_KEY,
            integrity_secret=settings.WOMPI_INTEGRITY_SECRET,
        )
    return SandboxGateway(gateway_name=name)


def build_gateway_clients(
    settings: Settings,
    session_factory: Callable,
    http: Optional[httpx.AsyncClient] = None,
) -> Dict[str, GatewayClient]:
    """Gateway name → GatewayClient for every configured gateway."""
    recorder = GatewayLogRecorder(session_factory)
    clients: Dict[str, GatewayClient] = {}
    for name in settings.gateway_names:
        client = GatewayClient(
            build_gateway(settings, name, http),
            recorder,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            backoff=settings.GATEWAY_BACKOFF_SECONDS,
            backoff_max=settings.GATEWAY_BACKOFF_MAX_SECONDS,
        )
        clients[client.gateway_name] = client
        logger.info("gateway_configured", gateway=client.gateway_name, mode=settings.GATEWAY_MODE)
    return clients
