from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CardIn(BaseModel):
    number: str
    cvc: str
    exp_month: str
    exp_year: str
    card_holder: str
    installments: int = 1

    @field_validator("number")
    @classmethod
    def strip_number(cls, v):
        return v.replace(" ", "").replace("-", "")


class CreatePaymentRequest(BaseModel):
    order_id: str
    amount: int = Field(..., strict=True, description="Minor currency units")
    currency: str = "COP"
    method: str
    customer_email: Optional[str] = None
    card: Optional[CardIn] = None
    phone_number: Optional[str] = None
    redirect_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("method", "currency")
    @classmethod
    def upper(cls, v):
        return v.upper()


class PSECreateRequest(BaseModel):
    order_id: str
    amount: int = Field(..., strict=True, description="Minor currency units")
    currency: str = "COP"
    bank_code: str
    user_type: int = 0  # 0 natural person, 1 company
    document_type: str = "CC"
    document_number: str
    full_name: str
    customer_email: Optional[str] = None
    phone_number: Optional[str] = None
    redirect_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_type")
    @classmethod
    def validate_user_type(cls, v):
        if v not in (0, 1):
            raise ValueError("user_type must be 0 (person) or 1 (company)")
        return v


class RefundRequest(BaseModel):
    amount: int = Field(..., strict=True, description="Minor currency units")
    reason: str

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        if not v.strip():
            raise ValueError("reason cannot be empty")
        return v.strip()
