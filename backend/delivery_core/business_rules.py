"""
BUSINESS RULE VALIDATOR

Read-only checks run before an order, payment, registration or
cancellation is allowed:
- violations block the action
- warnings are informational

Any unexpected failure during validation (lookup error, bad data) is
logged and reported as a blocking violation; it never escapes as an
exception.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging
import re

from motor.motor_asyncio import AsyncIOMotorDatabase

from .models import (
    OrderCreate, OrderStatus, PaymentCreate, PaymentMethod, PaymentStatus,
    NON_TERMINAL_ORDER_STATUSES, OPEN_ORDER_STATUSES, UserRegistration, value_of,
)
from .money import amounts_match, totals_consistent

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "Validation error occurred"

MIN_ADDRESS_LENGTH = 10
MAX_ORDERS_PER_WINDOW = 10
ORDER_WINDOW = timedelta(days=30)
MAX_RECENT_PAYMENTS = 5
PAYMENT_FRAUD_WINDOW = timedelta(minutes=60)
CANCELLATION_CUTOFF = timedelta(hours=2)

ALLOWED_PAYMENT_METHODS = frozenset(m.value for m in PaymentMethod)
# A new payment is blocked while the order already has one of these
BLOCKING_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.SUCCESSFUL)
UNCANCELLABLE_ORDER_STATUSES = {
    OrderStatus.DELIVERED.value: "Cannot cancel delivered order",
    OrderStatus.CANCELLED.value: "Order is already cancelled",
    OrderStatus.IN_TRANSIT.value: "Cannot cancel order that is in transit",
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Ghana numbers: +233 or 0, then 9 digits starting 2-9
PHONE_PATTERN = re.compile(r"^(\+233|0)[2-9]\d{8}$")
RESERVED_NAME_WORDS = ("test", "admin")


@dataclass
class ValidationResult:
    is_valid: bool
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_lists(cls, violations: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(is_valid=not violations, violations=violations, warnings=warnings or [])

    @classmethod
    def errored(cls) -> "ValidationResult":
        return cls(is_valid=False, violations=[VALIDATION_ERROR])


def scheduled_day_key(order: OrderCreate) -> str:
    """Customer-local calendar day of the delivery, as stored on the order"""
    return (order.scheduled_day or order.scheduled_date.date()).isoformat()


def _statuses(statuses) -> List[str]:
    return [value_of(s) for s in statuses]


class BusinessRuleValidator:
    """
    Pure validation over request data plus read-only lookups.

    The clock is injectable so time-window rules can be tested.
    """

    def __init__(self, db: AsyncIOMotorDatabase, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    # =========================================================================
    # ORDER CREATION
    # =========================================================================

    async def validate_order_creation(self, order: OrderCreate, session=None) -> ValidationResult:
        violations: List[str] = []
        warnings: List[str] = []

        try:
            now = self.clock()

            # 1. User must exist and be active
            user = await self.db.users.find_one({"user_id": order.user_id}, session=session)
            if not user:
                violations.append("User not found")
            elif not user.get("is_active", False):
                violations.append("User account is inactive")

            # 2. Inventory
            available = await self.db.cylinders.count_documents(
                {"size": value_of(order.cylinder_size), "status": "available"},
                session=session
            )
            if available < order.quantity:
                violations.append(
                    f"Insufficient cylinders available. Requested: {order.quantity}, Available: {available}"
                )

            # 3. Scheduled strictly in the future
            if order.scheduled_date <= now:
                violations.append("Scheduled date must be in the future")

            # 4. One non-terminal order per user per calendar day
            same_day = await self.db.orders.count_documents(
                {
                    "user_id": order.user_id,
                    "scheduled_day": scheduled_day_key(order),
                    "status": {"$in": _statuses(NON_TERMINAL_ORDER_STATUSES)},
                },
                session=session
            )
            if same_day > 0:
                violations.append("User already has an order scheduled for this date")

            # 5. Address
            if not order.drop_off_address or len(order.drop_off_address.strip()) < MIN_ADDRESS_LENGTH:
                violations.append(f"Delivery address must be at least {MIN_ADDRESS_LENGTH} characters long")

            # 6. Rolling 30-day order limit
            recent_orders = await self.db.orders.count_documents(
                {"user_id": order.user_id, "created_at": {"$gte": now - ORDER_WINDOW}},
                session=session
            )
            if recent_orders >= MAX_ORDERS_PER_WINDOW:
                violations.append(
                    f"User has reached the maximum order limit ({MAX_ORDERS_PER_WINDOW} orders per 30 days)"
                )

            # 7. Informational only
            open_orders = await self.db.orders.count_documents(
                {"user_id": order.user_id, "status": {"$in": _statuses(OPEN_ORDER_STATUSES)}},
                session=session
            )
            if open_orders > 0:
                warnings.append("User has pending orders")

            # Monetary breakdown must add up
            if not totals_consistent(order.refill_amount, order.delivery_fee, order.total_amount):
                violations.append("Total amount must equal refill amount plus delivery fee")

            self._log_completed("Order creation", violations, warnings, user_id=order.user_id)
            return ValidationResult.from_lists(violations, warnings)

        except Exception as e:
            return self._errored("order_creation_validation", e, user_id=order.user_id)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def validate_payment(self, payment: PaymentCreate, session=None) -> ValidationResult:
        violations: List[str] = []
        warnings: List[str] = []

        try:
            now = self.clock()

            # 1. Order exists and is awaiting payment
            order = await self.db.orders.find_one({"order_id": payment.order_id}, session=session)
            if not order:
                violations.append("Order not found")
            elif order["status"] != OrderStatus.PENDING.value:
                violations.append(
                    f"Order is not in a valid state for payment. Current status: {order['status']}"
                )

            # 2. Amount matches the order total
            if order and not amounts_match(order["total_amount"], payment.amount):
                violations.append(
                    f"Payment amount ({payment.amount}) does not match order total ({order['total_amount']})"
                )

            # 3. No double charge
            existing = await self.db.payments.find_one(
                {"order_id": payment.order_id, "status": {"$in": _statuses(BLOCKING_PAYMENT_STATUSES)}},
                session=session
            )
            if existing:
                if existing["status"] == PaymentStatus.PENDING.value:
                    violations.append("A payment for this order is already pending")
                else:
                    violations.append("Payment already exists for this order")

            # 4. Allow-listed method
            if payment.payment_method not in ALLOWED_PAYMENT_METHODS:
                violations.append(f"Invalid payment method: {payment.payment_method}")

            # 5. Fraud signal, non-blocking
            recent_payments = await self.db.payments.count_documents(
                {
                    "user_id": payment.user_id,
                    "status": PaymentStatus.SUCCESSFUL.value,
                    "created_at": {"$gte": now - PAYMENT_FRAUD_WINDOW},
                },
                session=session
            )
            if recent_payments >= MAX_RECENT_PAYMENTS:
                warnings.append("User has made multiple payments in the last hour")

            self._log_completed(
                "Payment", violations, warnings, order_id=payment.order_id, user_id=payment.user_id
            )
            return ValidationResult.from_lists(violations, warnings)

        except Exception as e:
            return self._errored("payment_validation", e, order_id=payment.order_id)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    async def validate_user_registration(self, registration: UserRegistration) -> ValidationResult:
        violations: List[str] = []
        warnings: List[str] = []

        try:
            if await self.db.users.find_one({"email": registration.email}):
                violations.append("Email already registered")

            if await self.db.users.find_one({"phone": registration.phone}):
                violations.append("Phone number already registered")

            if not EMAIL_PATTERN.match(registration.email or ""):
                violations.append("Invalid email format")

            if not PHONE_PATTERN.match(registration.phone or ""):
                violations.append("Invalid phone number format")

            name = (registration.name or "").strip()
            if len(name) < 2:
                violations.append("Name must be at least 2 characters long")

            if any(word in name.lower() for word in RESERVED_NAME_WORDS):
                warnings.append("Suspicious name pattern detected")

            self._log_completed("User registration", violations, warnings, email=registration.email)
            return ValidationResult.from_lists(violations, warnings)

        except Exception as e:
            return self._errored("user_registration_validation", e)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def validate_order_cancellation(self, order_id: str, user_id: str, session=None) -> ValidationResult:
        violations: List[str] = []

        try:
            order = await self.db.orders.find_one({"order_id": order_id, "user_id": user_id}, session=session)
            if not order:
                violations.append("Order not found or access denied")
            elif order["status"] in UNCANCELLABLE_ORDER_STATUSES:
                violations.append(UNCANCELLABLE_ORDER_STATUSES[order["status"]])

            if order and order.get("scheduled_date"):
                if order["scheduled_date"] - self.clock() < CANCELLATION_CUTOFF:
                    violations.append("Cannot cancel order less than 2 hours before scheduled delivery")

            self._log_completed("Order cancellation", violations, [], order_id=order_id, user_id=user_id)
            return ValidationResult.from_lists(violations)

        except Exception as e:
            return self._errored("order_cancellation_validation", e, order_id=order_id)

    # =========================================================================
    # LOGGING
    # =========================================================================

    def _log_completed(self, what: str, violations: List[str], warnings: List[str], **context) -> None:
        logger.info(
            f"[RULES] {what} validation completed: {len(violations)} violation(s), {len(warnings)} warning(s)",
            extra={
                "type": "business_rule_validation",
                "violations": len(violations),
                "warnings": len(warnings),
                **context,
            }
        )

    def _errored(self, context: str, error: Exception, **fields) -> ValidationResult:
        logger.exception(
            f"[RULES] {context} errored: {error}",
            extra={"type": "business_rule_validation_error", "context": context, **fields}
        )
        return ValidationResult.errored()
