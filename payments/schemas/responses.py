from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentResponse(BaseModel):
    transaction_id: str
    status: str
    outcome: str  # "success" | "failed" | "pending"
    message: str
    retryable: bool = False
    redirect_url: Optional[str] = None


class PaymentMethodInfo(BaseModel):
    method: str
    name: str
    description: str
    min_amount: int
    max_amount: int
    fee_percentage: float
    fee_fixed: int
    processing_time: str


class PSEBank(BaseModel):
    code: str
    name: str


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: int


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    order_id: str
    amount: int
    currency: str
    method: str
    gateway: str
    gateway_transaction_id: Optional[str] = None
    status: str
    version: int
    failure_reason: Optional[str] = None
    redirect_url: Optional[str] = None
    customer_email: Optional[str] = None
    gateway_status_at: Optional[datetime] = None
    needs_review: bool
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: datetime
    updated_at: datetime


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    amount: int
    reason: str
    status: str
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    gateway: str
    event_type: str
    gateway_transaction_id: Optional[str] = None
    claimed_status: Optional[str] = None
    observed_at: Optional[datetime] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    note: Optional[str] = None


class GatewayLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    gateway: str
    operation: str
    request: Optional[str] = None
    response: Optional[str] = None
    response_time_ms: int
    success: bool
    attempt: int
    created_at: datetime


class FailedAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    error_code: str
    error_message: Optional[str] = None
    created_at: datetime


class ConflictOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: str
    current_status: str
    claimed_status: str
    resolution: str
    detail: Optional[str] = None
    created_at: datetime


class TransactionDetail(BaseModel):
    transaction: TransactionOut
    refunded_amount: int
    refundable_amount: int
    refunds: List[RefundOut]
    webhook_events: List[WebhookEventOut]
    gateway_logs: List[GatewayLogOut]
    failed_attempts: List[FailedAttemptOut]
    conflicts: List[ConflictOut]


class DuplicateEntry(BaseModel):
    duplicate_transaction_id: str
    confidence_score: int
    duplicate_type: str  # "accidental_retry" | "suspected_retry" | "likely_legitimate"
    time_gap_seconds: float
    status: str
    recommendation: str
    reasoning: str


class DuplicateReport(BaseModel):
    transaction_id: str
    duplicates_found: int
    duplicates: List[DuplicateEntry]


class FailedTransaction(BaseModel):
    transaction_id: str
    error: str


class ReconcileSummary(BaseModel):
    checked: int
    approved: int
    failed: int
    expired: int
    still_pending: int
    refunds_checked: int = 0
    refunds_approved: int = 0
    refunds_rejected: int = 0
    errors: List[FailedTransaction] = []
    processing_time_ms: int


class MethodVolume(BaseModel):
    method: str
    count: int
    volume: int


class ErrorCount(BaseModel):
    error_code: str
    count: int


class SummaryResponse(BaseModel):
    total_transactions: int
    status_counts: Dict[str, int]
    total_volume: int
    approved_volume: int
    refunded_volume: int
    success_rate: Optional[float] = None
    average_ticket: Optional[int] = None
    needs_review: int
    methods: List[MethodVolume]
    top_errors: List[ErrorCount]
