from pydantic import BaseModel, Field, model_validator
from typing import Optional, Dict, Any
from datetime import date, datetime, timezone
from enum import Enum

# ============================================
# STATUS VOCABULARIES
# ============================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
NON_TERMINAL_ORDER_STATUSES = frozenset(set(OrderStatus) - TERMINAL_ORDER_STATUSES)
# Orders counted as "open" for the informational warning
OPEN_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SUCCESSFUL,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REVERSED,
})
ACTIVE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


class PaymentProvider(str, Enum):
    PAYSTACK = "paystack"
    CASH = "cash"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CASH = "cash"


class CylinderSize(str, Enum):
    SMALLEST = "smallest"
    SMALL = "small"
    MEDIUM = "medium"
    BIG = "big"
    LARGE = "large"
    COMMERCIAL = "commercial"


class ProviderStatus(str, Enum):
    """Paystack charge status vocabulary"""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    REVERSED = "reversed"
    ABANDONED = "abandoned"
    ONGOING = "ongoing"
    PROCESSING = "processing"
    QUEUED = "queued"


def value_of(status: Any) -> str:
    """Plain string for an enum member or a raw status string"""
    return status.value if isinstance(status, Enum) else str(status)


# ============================================
# ORDER
# ============================================

class OrderCreate(BaseModel):
    user_id: str
    cylinder_size: CylinderSize
    quantity: int = Field(ge=1)
    refill_amount: float = Field(ge=0)
    delivery_fee: float = Field(ge=0)
    total_amount: float = Field(ge=0)
    pickup_address: Optional[str] = None
    drop_off_address: str
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None
    scheduled_date: datetime
    scheduled_time: Optional[str] = None
    # Customer's calendar day, taken before scheduled_date is normalised to UTC
    scheduled_day: Optional[date] = None

    @model_validator(mode="after")
    def normalise_schedule(self) -> "OrderCreate":
        moment = self.scheduled_date
        self.scheduled_day = moment.date()
        if moment.tzinfo is not None:
            # Stored and compared as naive UTC, like every other timestamp
            self.scheduled_date = moment.astimezone(timezone.utc).replace(tzinfo=None)
        return self


# ============================================
# PAYMENT
# ============================================

class PaymentCreate(BaseModel):
    order_id: str
    user_id: str
    amount: float = Field(gt=0)
    payment_method: str
    currency: Optional[str] = None
    provider: Optional[PaymentProvider] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================
# USER REGISTRATION
# ============================================

class UserRegistration(BaseModel):
    name: str
    email: str
    phone: str


# ============================================
# WEBHOOK PAYLOAD (fields the core depends on)
# ============================================

class WebhookCustomer(BaseModel):
    id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    model_config = {"extra": "allow"}


class WebhookData(BaseModel):
    reference: str
    status: str
    amount: Optional[float] = None
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    id: Optional[int] = None
    channel: Optional[str] = None
    currency: Optional[str] = None
    customer: Optional[WebhookCustomer] = None

    model_config = {"extra": "allow"}


class WebhookEvent(BaseModel):
    event: str
    data: WebhookData

    model_config = {"extra": "allow"}
