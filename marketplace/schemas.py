from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from shared.security_config import sanitize_input, strip_mongo_operators

from marketplace.models import BankAccount, CheckoutSnapshot


def with_id(doc: dict) -> dict:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return data


# --- Payments ---

class CheckoutRequest(BaseModel):
    checkout_data: CheckoutSnapshot
    payment_method: str = Field("qrph", pattern="^(qrph|card|gcash|grab_pay|paymaya)$")
    description: Optional[str] = Field(None, max_length=500)
    metadata: Dict[str, Any] = {}

    @field_validator("description")
    def sanitize_description(cls, v):
        return sanitize_input(v)

    @field_validator("metadata")
    def strip_operators(cls, v):
        return strip_mongo_operators(v)


class OrderPaymentRequest(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    metadata: Dict[str, Any] = {}

    @field_validator("metadata")
    def strip_operators(cls, v):
        return strip_mongo_operators(v)


class AttachMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class PaymentRefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)
    reason: str = Field("requested_by_customer", max_length=500)
    order_id: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_validator("reason")
    def sanitize_reason(cls, v):
        return sanitize_input(v)

    @field_validator("metadata")
    def strip_operators(cls, v):
        return strip_mongo_operators(v)


class CashInRequest(BaseModel):
    amount: int
    payment_method: str = Field("gcash", pattern="^(gcash|grab_pay|paymaya|card|qrph)$")


class WithdrawalRequest(BaseModel):
    amount: int
    bank_account: BankAccount


class PaymentResponse(BaseModel):
    id: str
    type: str
    user_id: str
    provider: str
    amount: int
    fee: int = 0
    net_amount: int = 0
    currency: str
    status: str
    description: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = None
    order_id: Optional[str] = None
    original_payment_id: Optional[str] = None
    orders_created: Optional[bool] = None
    order_ids: List[str] = []
    order_creation_error: Optional[str] = None
    refunded_amount: Optional[int] = None
    failure_reason: Optional[str] = None
    is_final: bool = False
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    payment: PaymentResponse
    qr_code_url: Optional[str] = None
    client_key: Optional[str] = None


class AttachResponse(BaseModel):
    payment: PaymentResponse
    next_action: Optional[Dict[str, Any]] = None


class RecoveryResponse(BaseModel):
    payment_id: str
    order_ids: List[str]


def payment_response(doc: dict) -> PaymentResponse:
    return PaymentResponse(**with_id(doc))


# --- Escrow ---

class EscrowNotesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("notes")
    def sanitize_notes(cls, v):
        return sanitize_input(v)


class EscrowReasonRequest(BaseModel):
    reason: str = Field(..., max_length=1000)

    @field_validator("reason")
    def sanitize_reason(cls, v):
        return sanitize_input(v)


class RefundRequestCreate(BaseModel):
    reason: str = Field(..., max_length=200)
    details: Optional[str] = Field(None, max_length=1000)

    @field_validator("reason", "details")
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class BulkReleaseRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class EscrowResponse(BaseModel):
    order_id: str
    customer_id: Optional[str] = None
    vendor_id: Optional[str] = None
    payment_id: Optional[str] = None
    subtotal: Optional[int] = None
    escrow_status: Optional[str] = None
    escrow_held_at: Optional[datetime] = None
    escrow_released_at: Optional[datetime] = None
    escrow_released_by: Optional[str] = None
    on_hold: Optional[bool] = None
    hold_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_reason_details: Optional[str] = None
    refund_requested_at: Optional[datetime] = None
    refund_approved_at: Optional[datetime] = None
    refund_rejection_reason: Optional[str] = None
    refund_payment_id: Optional[str] = None


class BulkResult(BaseModel):
    total_processed: int
    success_count: int
    failed_count: int
    successful: List[str]
    failed: List[Dict[str, Any]]


# --- Commissions ---

class RemitRequest(BaseModel):
    method: str = Field(..., pattern="^(wallet|gcash|bank_transfer)$")


class BulkRemitRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1, max_length=100)
    method: str = Field(..., pattern="^(wallet|gcash|bank_transfer)$")


class CommissionCreateRequest(BaseModel):
    rate: Optional[float] = Field(None, ge=0, le=100)


class CommissionResponse(BaseModel):
    id: str
    order_id: str
    vendor_id: str
    order_amount: int
    commission_rate: float
    commission_amount: int
    status: str
    due_date: datetime
    remitted_at: Optional[datetime] = None
    remittance_method: Optional[str] = None
    created_at: datetime


# --- Inventory ---

class StockAdjustRequest(BaseModel):
    delta: int
    option_id: Optional[str] = None

    @field_validator("delta")
    def non_zero(cls, v):
        if v == 0:
            raise ValueError("delta must not be zero")
        return v


class OptionStock(BaseModel):
    option_id: str
    label: str = ""
    stock: int
    sold: int


class StockResponse(BaseModel):
    product_id: str
    stock: int
    sold: int
    options: List[OptionStock] = []
