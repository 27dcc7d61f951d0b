import time
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from payments.config import Settings, get_settings
from payments.database import get_db
from payments.dependencies import get_gateway_clients, get_orchestrator, get_reconciler, get_refund_manager
from payments.errors import (
    AuthenticationError,
    ConflictError,
    GatewayUnavailable,
    InvalidRefundAmount,
    PaymentError,
    TransactionNotFound,
    ValidationError,
)
from payments.gateways.base import CardData
from payments.gateways.client import GatewayClient
from payments.models import PaymentMethod
from payments.schemas.requests import CreatePaymentRequest, PSECreateRequest, RefundRequest
from payments.schemas.responses import (
    DuplicateReport,
    FailedTransaction,
    PaymentMethodInfo,
    PaymentResponse,
    PSEBank,
    ReconcileSummary,
    RefundOut,
    SummaryResponse,
    TransactionDetail,
)
from payments.services.duplicate import find_duplicates
from payments.services.methods import list_methods, route_gateway
from payments.services.orchestrator import CheckoutRequest, PaymentOrchestrator, PaymentResult
from payments.services.reconciliation import Reconciler
from payments.services.refunds import RefundManager
from payments.services.reporting import build_summary, transaction_detail

router = APIRouter()

STATUS_CODES = {
    ValidationError: 400,
    InvalidRefundAmount: 400,
    AuthenticationError: 401,
    TransactionNotFound: 404,
    ConflictError: 409,
    GatewayUnavailable: 502,
}


def http_error(error: PaymentError) -> HTTPException:
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            break
    else:
        status_code = 500
    if isinstance(error, GatewayUnavailable):
        return HTTPException(status_code=status_code, detail="Payment gateway unavailable, please retry")
    return HTTPException(status_code=status_code, detail={"code": error.code, "message": str(error)})


def _payment_response(result: PaymentResult) -> PaymentResponse:
    return PaymentResponse(
        transaction_id=result.transaction_id,
        status=result.status.value,
        outcome=result.outcome,
        message=result.message,
        retryable=result.retryable,
        redirect_url=result.redirect_url,
    )


@router.post("/create", response_model=PaymentResponse)
async def create_payment(
    request: CreatePaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Start a CARD, WALLET or BANK_TRANSFER payment for an order.

    The answer is a tri-state outcome (success / failed / pending). A gateway
    outage comes back as failed with retryable=true.
    """
    card = None
    if request.card is not None:
        card = CardData(**request.card.model_dump())
    try:
        result = await orchestrator.create_payment(CheckoutRequest(
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency,
            method=request.method,
            customer_email=request.customer_email,
            card=card,
            phone_number=request.phone_number,
            redirect_url=request.redirect_url,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        ))
    except PaymentError as e:
        raise http_error(e)
    return _payment_response(result)


@router.post("/pse/create", response_model=PaymentResponse)
async def create_pse_payment(
    request: PSECreateRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Start a PSE bank transfer. The response carries the bank redirect URL."""
    try:
        result = await orchestrator.create_payment(CheckoutRequest(
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency,
            method="PSE",
            customer_email=request.customer_email,
            bank_code=request.bank_code,
            user_type=request.user_type,
            document_type=request.document_type,
            document_number=request.document_number,
            full_name=request.full_name,
            phone_number=request.phone_number,
            redirect_url=request.redirect_url,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        ))
    except PaymentError as e:
        raise http_error(e)
    return _payment_response(result)


@router.get("/methods", response_model=List[PaymentMethodInfo])
def get_payment_methods(amount: Optional[int] = Query(None, gt=0)):
    """Enabled payment methods; with ?amount= only those whose limits accept it."""
    return [
        PaymentMethodInfo(
            method=info.method.value,
            name=info.name,
            description=info.description,
            min_amount=info.min_amount,
            max_amount=info.max_amount,
            fee_percentage=info.fee_percentage,
            fee_fixed=info.fee_fixed,
            processing_time=info.processing_time,
        )
        for info in list_methods(amount)
    ]


@router.get("/pse/banks", response_model=List[PSEBank])
async def get_pse_banks(
    gateways: Dict[str, GatewayClient] = Depends(get_gateway_clients),
    settings: Settings = Depends(get_settings),
):
    name = route_gateway(PaymentMethod.PSE, gateways, settings.GATEWAY_ROUTES)
    if name is None:
        raise HTTPException(status_code=503, detail="No payment gateway configured")
    client = gateways[name]
    try:
        banks = await client.list_pse_banks()
    except PaymentError as e:
        raise http_error(e)
    return [PSEBank(**bank) for bank in banks]


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Counts per status, captured and refunded volume, success rate and average ticket."""
    summary = build_summary(db, date_from, date_to)
    return SummaryResponse(
        total_transactions=summary.total_transactions,
        status_counts=summary.status_counts,
        total_volume=summary.total_volume,
        approved_volume=summary.approved_volume,
        refunded_volume=summary.refunded_volume,
        success_rate=summary.success_rate,
        average_ticket=summary.average_ticket,
        needs_review=summary.needs_review,
        methods=summary.methods,
        top_errors=summary.top_errors,
    )


@router.post("/reconcile", response_model=ReconcileSummary)
async def reconcile(
    limit: int = Query(500, gt=0, le=500),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Verify stale PENDING transactions concurrently and expire the ones that
    never settled, then settle refunds left PENDING. Partial failures are isolated.
    """
    start_ms = time.time() * 1000
    result = await reconciler.sweep(limit=limit)
    return ReconcileSummary(
        checked=result.checked,
        approved=result.approved,
        failed=result.failed,
        expired=result.expired,
        still_pending=result.still_pending,
        refunds_checked=result.refunds_checked,
        refunds_approved=result.refunds_approved,
        refunds_rejected=result.refunds_rejected,
        errors=[FailedTransaction(**error) for error in result.errors],
        processing_time_ms=int(time.time() * 1000 - start_ms),
    )


@router.get("/{transaction_id}/verify", response_model=PaymentResponse)
async def verify_payment(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Idempotent status re-check with the gateway."""
    try:
        result = await orchestrator.verify_payment(transaction_id)
    except PaymentError as e:
        raise http_error(e)
    return _payment_response(result)


@router.post("/{transaction_id}/retry", response_model=PaymentResponse)
async def retry_payment(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Re-run verification. A new charge needs a new /create call."""
    try:
        result = await orchestrator.retry_payment(transaction_id)
    except PaymentError as e:
        raise http_error(e)
    return _payment_response(result)


@router.post("/{transaction_id}/refund", response_model=RefundOut)
async def refund_payment(
    transaction_id: str,
    request: RefundRequest,
    refunds: RefundManager = Depends(get_refund_manager),
):
    try:
        refund = await refunds.refund(transaction_id, request.amount, request.reason)
    except PaymentError as e:
        raise http_error(e)
    return RefundOut.model_validate(refund)


@router.post("/refunds/{refund_id}/sync", response_model=RefundOut)
async def sync_refund(
    refund_id: str,
    refunds: RefundManager = Depends(get_refund_manager),
):
    """Re-check a PENDING refund with the gateway and settle it."""
    try:
        refund = await refunds.sync_refund(refund_id)
    except PaymentError as e:
        raise http_error(e)
    return RefundOut.model_validate(refund)


@router.get("/{transaction_id}/duplicates", response_model=DuplicateReport)
def get_duplicates(transaction_id: str, db: Session = Depends(get_db)):
    """
    Find likely duplicate charges for the given transaction.

    Detection criteria:
    - Same customer_email
    - Amount within ±5%
    - Created within ±10 minutes

    Returns confidence scores and recommended actions per duplicate pair.
    """
    try:
        duplicates = find_duplicates(transaction_id, db)
    except TransactionNotFound as e:
        raise http_error(e)

    return DuplicateReport(
        transaction_id=transaction_id,
        duplicates_found=len(duplicates),
        duplicates=duplicates,
    )


@router.get("/{transaction_id}", response_model=TransactionDetail)
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    """Transaction with its refunds, webhook events, gateway logs, failed attempts and conflicts."""
    try:
        detail = transaction_detail(db, transaction_id)
    except TransactionNotFound as e:
        raise http_error(e)

    return TransactionDetail.model_validate(detail, from_attributes=True)
