from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from typing_extensions import Annotated


class PaymentType(str, Enum):
    CHECKOUT = "checkout"
    REFUND = "refund"
    CASH_IN = "cash_in"
    WITHDRAW = "withdraw"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class EscrowStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    REMITTED = "remitted"
    OVERDUE = "overdue"
    WAIVED = "waived"


# Sentinel stored in order_creation_error while a worker materializes orders
ORDER_CREATION_IN_PROGRESS = "in_progress"

FINAL_PAYMENT_STATUSES = {
    PaymentStatus.SUCCEEDED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
}

CANCELLABLE_PAYMENT_STATUSES = {
    PaymentStatus.PENDING,
    PaymentStatus.AWAITING_PAYMENT,
    PaymentStatus.PROCESSING,
}

# Allowed payment status transitions: source -> targets
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.AWAITING_PAYMENT, PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
    },
    PaymentStatus.AWAITING_PAYMENT: {
        PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED,
        PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.AWAITING_PAYMENT, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.SUCCEEDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    # a charge the gateway reports after local expiry still settles
    PaymentStatus.EXPIRED: {PaymentStatus.SUCCEEDED},
}


def can_transition(current: str, target: str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS.get(PaymentStatus(current), set())


# --- Checkout snapshot ---

class ShippingAddress(BaseModel):
    street: Optional[str] = None
    barangay: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    zip_code: Optional[str] = None


class CheckoutItem(BaseModel):
    vendor_id: Optional[str] = None
    product_id: Optional[str] = None
    option_id: Optional[str] = None
    item_id: Optional[str] = None
    name: str = ""
    label: str = ""
    img_url: str = ""
    price: int = 0
    quantity: int = 1

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class CheckoutSnapshot(BaseModel):
    items: List[CheckoutItem] = []
    shipping_address: Optional[ShippingAddress] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    shipping_option: str = "J&T"
    shipping_fee: int = 0
    agreement_details: str = ""

    @property
    def items_total(self) -> int:
        return sum(item.line_total for item in self.items)


class BankAccount(BaseModel):
    account_number: str = Field(..., min_length=1)
    account_name: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)


# --- Payment variants ---

class PaymentBase(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    provider: str = "paymongo"
    amount: int = Field(..., ge=0)
    fee: int = Field(0, ge=0)
    net_amount: int = 0
    currency: str = "PHP"
    status: PaymentStatus = PaymentStatus.PENDING
    description: Optional[str] = Field(None, max_length=500)
    metadata: Dict[str, str] = {}
    is_final: bool = False
    idempotency_key: Optional[str] = None
    failure_reason: Optional[str] = Field(None, max_length=1000)
    payment_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    charge_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    webhook_received: bool = False
    webhook_received_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True

    @model_validator(mode="after")
    def default_net_amount(self):
        if not self.net_amount:
            self.net_amount = self.amount - self.fee
        return self

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"id"})


class CheckoutPayment(PaymentBase):
    type: Literal["checkout"] = "checkout"
    payment_method: str = "qrph"
    order_id: Optional[str] = None
    checkout_data: Optional[CheckoutSnapshot] = None
    refunded_amount: int = 0
    orders_created: bool = False
    order_ids: List[str] = []
    order_creation_error: Optional[str] = None
    materialized_vendor_ids: List[str] = []
    failed_vendor_ids: List[str] = []
    side_effects_vendor_ids: List[str] = []

    @model_validator(mode="after")
    def snapshot_or_order(self):
        if self.checkout_data is None and not self.order_id:
            raise ValueError("Checkout payment needs either an order_id or checkout_data")
        return self


class RefundPayment(PaymentBase):
    type: Literal["refund"] = "refund"
    original_payment_id: str
    order_id: Optional[str] = None
    refund_id: Optional[str] = None


class CashInPayment(PaymentBase):
    type: Literal["cash_in"] = "cash_in"


class WithdrawPayment(PaymentBase):
    type: Literal["withdraw"] = "withdraw"
    provider: str = "bank_transfer"
    bank_account: BankAccount


Payment = Annotated[
    Union[CheckoutPayment, RefundPayment, CashInPayment, WithdrawPayment],
    Field(discriminator="type"),
]

_payment_adapter = TypeAdapter(Payment)


def parse_payment(doc: dict):
    """Build the typed payment variant for a stored document."""
    data = dict(doc)
    if "_id" in data:
        data["_id"] = str(data["_id"])
    return _payment_adapter.validate_python(data)


# --- Orders ---

class OrderItemDB(BaseModel):
    product_id: Optional[str] = None
    option_id: Optional[str] = None
    name: str = ""
    label: str = ""
    img_url: str = ""
    price: int
    quantity: int = Field(1, ge=1)


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    customer_id: str
    vendor_id: str
    items: List[OrderItemDB]
    customer_name: str = ""
    phone: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    shipping_option: str = "J&T"
    shipping_fee: int = 0
    agreement_details: str = ""
    subtotal: int
    tracking_number: Optional[str] = None
    payment_id: Optional[str] = None
    payment_method: str = "qrph"
    payment_status: str = "Pending"
    paid_at: Optional[datetime] = None
    status: str = "pending"
    escrow_status: Optional[EscrowStatus] = None
    escrow_held_at: Optional[datetime] = None
    materialization_key: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


# --- Commissions ---

class CommissionDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: str
    vendor_id: str
    order_amount: int = Field(..., ge=0)
    commission_rate: float = Field(5.0, ge=0, le=100)
    commission_amount: int = Field(..., ge=0)
    payment_method: str = "cod"
    status: CommissionStatus = CommissionStatus.PENDING
    due_date: datetime
    remitted_at: Optional[datetime] = None
    remittance_method: Optional[str] = None
    remittance_idempotency_key: Optional[str] = None
    status_history: List[Dict[str, Any]] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


class AuditLogDB(BaseModel):
    actor_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.utcnow)
