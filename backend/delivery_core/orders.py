"""
ORDER LIFECYCLE

Owns order creation and every order status change:
- create: validate rules, then insert inside a transaction
- update_status: state-machine checked, compare-and-set on the current status
- cancel: cancellation rules, then cancel the order and its open payments together

A status change to the status the order already holds is a no-op.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import secrets
import time

from motor.motor_asyncio import AsyncIOMotorDatabase

from .business_rules import BusinessRuleValidator, scheduled_day_key
from .exceptions import BusinessRuleViolationError, OrderNotFoundError, TransactionFailedError
from .indexes import ORDER_SAME_DAY_INDEX
from .models import (
    ACTIVE_PAYMENT_STATUSES, NON_TERMINAL_ORDER_STATUSES, OrderCreate, OrderStatus, PaymentStatus, value_of,
)
from .money import to_float
from .state_machine import ORDER_STATE_MACHINE, PAYMENT_STATE_MACHINE, InvalidTransitionError
from .transactions import TransactionCoordinator, TransactionOptions, duplicate_key_index

logger = logging.getLogger(__name__)

CREATE_OPTIONS = TransactionOptions(timeout_ms=30000, retries=3)
SAME_DAY_VIOLATION = "User already has an order scheduled for this date"


def generate_order_id() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


class OrderLifecycle:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        validator: BusinessRuleValidator,
        coordinator: TransactionCoordinator,
        create_options: TransactionOptions = CREATE_OPTIONS
    ):
        self.db = db
        self.validator = validator
        self.coordinator = coordinator
        self.create_options = create_options
        self.machine = ORDER_STATE_MACHINE

    async def get(self, order_id: str, session=None) -> Dict[str, Any]:
        order = await self.db.orders.find_one({"order_id": order_id}, session=session)
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, request: OrderCreate) -> Dict[str, Any]:
        """
        Validate and persist a new order in status 'pending'.

        Raises:
            BusinessRuleViolationError: listing every violated rule
            TransactionFailedError: the insert could not be committed
        """
        result = await self.validator.validate_order_creation(request)
        if not result.is_valid:
            logger.info(
                f"[ORDER] Creation rejected for user {request.user_id}: {result.violations}",
                extra={"type": "order_rejected", "user_id": request.user_id}
            )
            raise BusinessRuleViolationError(result.violations, result.warnings, context="order_creation")

        scheduled_day = scheduled_day_key(request)

        async def insert_order(session):
            # Re-check inside the transaction to narrow the read-validate-write gap
            clash = await self.db.orders.find_one(
                {
                    "user_id": request.user_id,
                    "scheduled_day": scheduled_day,
                    "status": {"$in": [value_of(s) for s in NON_TERMINAL_ORDER_STATUSES]},
                },
                session=session
            )
            if clash:
                raise BusinessRuleViolationError([SAME_DAY_VIOLATION], context="order_creation")

            now = datetime.utcnow()
            order_doc = {
                "order_id": generate_order_id(),
                "user_id": request.user_id,
                "cylinder_size": value_of(request.cylinder_size),
                "quantity": request.quantity,
                "refill_amount": to_float(request.refill_amount),
                "delivery_fee": to_float(request.delivery_fee),
                "total_amount": to_float(request.total_amount),
                "pickup_address": request.pickup_address,
                "drop_off_address": request.drop_off_address.strip(),
                "receiver_name": request.receiver_name,
                "receiver_phone": request.receiver_phone,
                "payment_method": value_of(request.payment_method) if request.payment_method else None,
                "notes": request.notes,
                "scheduled_date": request.scheduled_date,
                "scheduled_day": scheduled_day,
                "scheduled_time": request.scheduled_time,
                "status": OrderStatus.PENDING.value,
                "status_history": [],
                "created_at": now,
                "updated_at": now,
            }
            await self.db.orders.insert_one(order_doc, session=session)
            return order_doc

        outcome = await self.coordinator.execute_transaction(insert_order, self.create_options)

        if not outcome.success:
            if isinstance(outcome.error, BusinessRuleViolationError):
                raise outcome.error
            if duplicate_key_index(outcome.error) == ORDER_SAME_DAY_INDEX:
                # Lost a race the in-transaction re-check could not see
                raise BusinessRuleViolationError([SAME_DAY_VIOLATION], context="order_creation") from outcome.error
            raise TransactionFailedError("order_creation", outcome.error) from outcome.error

        order = outcome.data
        logger.info(
            f"[ORDER] Created {order['order_id']} for user {order['user_id']}",
            extra={"type": "order_created", "order_id": order["order_id"], "user_id": order["user_id"]}
        )

        order = dict(order)
        order.pop("_id", None)
        order["warnings"] = result.warnings
        return order

    # =========================================================================
    # STATUS
    # =========================================================================

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        session=None,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Move an order to new_status.

        With a session the change joins the caller's transaction; without
        one it runs in its own.

        Raises:
            OrderNotFoundError
            InvalidTransitionError: move not allowed by the order state machine
            TransactionFailedError: only when running its own transaction
        """
        if session is not None:
            return await self._apply_status(session, order_id, new_status, actor, metadata)

        async def unit(s):
            return await self._apply_status(s, order_id, new_status, actor, metadata)

        outcome = await self.coordinator.execute_transaction(unit)
        if not outcome.success:
            if isinstance(outcome.error, (OrderNotFoundError, InvalidTransitionError)):
                raise outcome.error
            raise TransactionFailedError("order_status_update", outcome.error) from outcome.error
        return outcome.data

    async def _apply_status(self, session, order_id, new_status, actor, metadata) -> Dict[str, Any]:
        target = value_of(new_status)
        order = await self.get(order_id, session=session)
        current = order["status"]

        if current == target:
            logger.debug(f"[ORDER] {order_id} already {target}, nothing to do")
            return order

        self.machine.validate_transition(current, target)

        update = self.machine.build_update(current, target, actor=actor, metadata=metadata)
        result = await self.db.orders.update_one(
            {"order_id": order_id, "status": current},
            update,
            session=session
        )
        if result.matched_count == 0:
            # Moved by someone else between our read and write
            latest = await self.get(order_id, session=session)
            if latest["status"] == target:
                return latest
            raise InvalidTransitionError("order", latest["status"], target,
                                         self.machine.get_allowed_transitions(latest["status"]))

        logger.info(
            f"[ORDER] {order_id}: '{current}' -> '{target}'",
            extra={
                "type": "order_status_changed",
                "order_id": order_id,
                "from_state": current,
                "to_state": target,
                "actor": actor,
            }
        )
        return await self.get(order_id, session=session)

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel(self, order_id: str, requesting_user_id: str) -> Dict[str, Any]:
        """
        Cancel an order together with any payment still in flight for it,
        so a late gateway success cannot settle against a cancelled order.
        """
        result = await self.validator.validate_order_cancellation(order_id, requesting_user_id)
        if not result.is_valid:
            raise BusinessRuleViolationError(result.violations, context="order_cancellation")

        async def unit(session):
            order = await self._apply_status(
                session, order_id, OrderStatus.CANCELLED, requesting_user_id, {"reason": "cancelled_by_user"}
            )
            order["cancelled_payments"] = await self._cancel_open_payments(session, order_id, requesting_user_id)
            return order

        outcome = await self.coordinator.execute_transaction(unit)
        if not outcome.success:
            if isinstance(outcome.error, (OrderNotFoundError, InvalidTransitionError)):
                raise outcome.error
            raise TransactionFailedError("order_cancellation", outcome.error) from outcome.error
        return outcome.data

    async def _cancel_open_payments(self, session, order_id: str, actor: str) -> List[str]:
        open_payments = await self.db.payments.find(
            {"order_id": order_id, "status": {"$in": [value_of(s) for s in ACTIVE_PAYMENT_STATUSES]}},
            session=session
        ).to_list(None)

        cancelled = []
        for payment in open_payments:
            update = PAYMENT_STATE_MACHINE.build_update(
                payment["status"], PaymentStatus.CANCELLED, actor=actor,
                metadata={"source": "order_cancellation"}
            )
            result = await self.db.payments.update_one(
                {"payment_id": payment["payment_id"], "status": payment["status"]},
                update,
                session=session
            )
            if result.matched_count == 0:
                # Settled between the read and the write; the order change stands
                logger.warning(
                    f"[ORDER] Payment {payment['payment_id']} settled while order {order_id} was cancelled",
                    extra={"type": "cancellation_payment_raced", "order_id": order_id, "payment_id": payment["payment_id"]}
                )
                continue
            cancelled.append(payment["payment_id"])

        if cancelled:
            logger.info(
                f"[ORDER] Cancelled open payment(s) {cancelled} with order {order_id}",
                extra={"type": "order_payments_cancelled", "order_id": order_id, "payments": cancelled}
            )
        return cancelled

    # =========================================================================
    # PAYMENT RETRY
    # =========================================================================

    async def reopen_for_payment(self, order_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
        """Move a payment_failed order back to pending so a new payment can be taken."""
        return await self.update_status(
            order_id, OrderStatus.PENDING, actor=actor, metadata={"reason": "payment_retry"}
        )
