"""
PAYMENT RECONCILER

Owns payments from creation to a terminal status:
- create: payment rules, then insert in status 'pending'
- initialize_gateway_charge: persist the reference, call the gateway, record the handle
- update_status: the ONE status-change path, used by API calls and webhooks alike
- reconcile: webhook-driven status change, matched by provider reference only

Idempotency: a move into the status the payment already holds is a no-op.
The write is a compare-and-set on the current status, so when two
deliveries of the same webhook race, exactly one of them applies the
change and fires the cascade and notification.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import asyncio
import logging
import secrets
import time

from motor.motor_asyncio import AsyncIOMotorDatabase

from .business_rules import BusinessRuleValidator
from .exceptions import (
    BusinessRuleViolationError, GatewayUnavailableError, OrderNotFoundError,
    PaymentNotFoundError, TransactionFailedError,
)
from .indexes import PAYMENT_ACTIVE_INDEX
from .models import (
    ACTIVE_PAYMENT_STATUSES, OrderStatus, PaymentCreate, PaymentMethod,
    PaymentProvider, PaymentStatus, ProviderStatus, value_of,
)
from .money import amounts_match, from_minor_units, to_float
from .notifications import Notifier
from .orders import OrderLifecycle
from .retry import RetryConfig, RetryExecutor
from .state_machine import PAYMENT_STATE_MACHINE, InvalidTransitionError
from .transactions import TransactionCoordinator, duplicate_key_index

logger = logging.getLogger(__name__)

# Provider vocabulary -> canonical payment status. Anything not listed
# (abandoned, ongoing, queued, unknown strings) maps to PENDING.
PROVIDER_STATUS_MAP: Dict[ProviderStatus, PaymentStatus] = {
    ProviderStatus.SUCCESS: PaymentStatus.SUCCESSFUL,
    ProviderStatus.FAILED: PaymentStatus.FAILED,
    ProviderStatus.PENDING: PaymentStatus.PENDING,
    ProviderStatus.REVERSED: PaymentStatus.REVERSED,
}
DEFAULT_PAYMENT_STATUS = PaymentStatus.PENDING

# Order status each payment outcome cascades to
ORDER_CASCADE: Dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.SUCCESSFUL: OrderStatus.CONFIRMED,
    PaymentStatus.FAILED: OrderStatus.PAYMENT_FAILED,
}

GATEWAY_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=1000, backoff_multiplier=2, max_delay_ms=10000)


def map_provider_status(raw_status: Optional[str]) -> PaymentStatus:
    try:
        provider_status = ProviderStatus((raw_status or "").strip().lower())
    except ValueError:
        logger.warning(f"[PAYMENT] Unrecognised provider status '{raw_status}', treating as pending")
        return DEFAULT_PAYMENT_STATUS
    return PROVIDER_STATUS_MAP.get(provider_status, DEFAULT_PAYMENT_STATUS)


def generate_payment_id() -> str:
    return f"PAY-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


@dataclass
class StatusChange:
    payment: Dict[str, Any]
    previous_status: str
    new_status: str
    changed: bool
    order: Optional[Dict[str, Any]] = None


@dataclass
class ReconciliationResult:
    outcome: str  # applied | duplicate | ignored | not_found
    reference: str
    payment_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


class PaymentReconciler:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        validator: BusinessRuleValidator,
        coordinator: TransactionCoordinator,
        orders: OrderLifecycle,
        notifier: Notifier,
        retry_executor: Optional[RetryExecutor] = None,
        currency: str = "GHS",
        notification_timeout_ms: int = 5000,
        gateway_retry: RetryConfig = GATEWAY_RETRY
    ):
        self.db = db
        self.validator = validator
        self.coordinator = coordinator
        self.orders = orders
        self.notifier = notifier
        self.retry_executor = retry_executor or RetryExecutor()
        self.currency = currency
        self.notification_timeout_ms = notification_timeout_ms
        self.gateway_retry = gateway_retry
        self.machine = PAYMENT_STATE_MACHINE

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get(self, payment_id: str, session=None) -> Dict[str, Any]:
        payment = await self.db.payments.find_one({"payment_id": payment_id}, session=session)
        if not payment:
            raise PaymentNotFoundError("payment_id", payment_id)
        return payment

    async def find_by_provider_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        return await self.db.payments.find_one({"provider_reference": reference})

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, request: PaymentCreate) -> Dict[str, Any]:
        """
        Validate and persist a payment in status 'pending'.

        Raises:
            BusinessRuleViolationError
            TransactionFailedError
        """
        result = await self.validator.validate_payment(request)
        if not result.is_valid:
            logger.info(
                f"[PAYMENT] Creation rejected for order {request.order_id}: {result.violations}",
                extra={"type": "payment_rejected", "order_id": request.order_id}
            )
            raise BusinessRuleViolationError(result.violations, result.warnings, context="payment_creation")

        provider = request.provider or (
            PaymentProvider.CASH if request.payment_method == PaymentMethod.CASH.value else PaymentProvider.PAYSTACK
        )

        async def insert_payment(session):
            active = await self.db.payments.find_one(
                {"order_id": request.order_id, "status": {"$in": [value_of(s) for s in ACTIVE_PAYMENT_STATUSES]}},
                session=session
            )
            if active:
                raise BusinessRuleViolationError(
                    ["A payment for this order is already pending"], context="payment_creation"
                )

            now = datetime.utcnow()
            payment_doc = {
                "payment_id": generate_payment_id(),
                "order_id": request.order_id,
                "user_id": request.user_id,
                "amount": to_float(request.amount),
                "currency": request.currency or self.currency,
                "status": PaymentStatus.PENDING.value,
                "provider": value_of(provider),
                "payment_method": request.payment_method,
                "provider_reference": None,
                "provider_transaction_id": None,
                "description": request.description,
                "metadata": request.metadata,
                "user_email": request.user_email,
                "user_phone": request.user_phone,
                "failure_reason": None,
                "processed_at": None,
                "webhook_data": None,
                "status_history": [],
                "created_at": now,
                "updated_at": now,
            }
            await self.db.payments.insert_one(payment_doc, session=session)
            return payment_doc

        outcome = await self.coordinator.execute_transaction(insert_payment)
        if not outcome.success:
            if isinstance(outcome.error, (BusinessRuleViolationError, OrderNotFoundError)):
                raise outcome.error
            if duplicate_key_index(outcome.error) == PAYMENT_ACTIVE_INDEX:
                raise BusinessRuleViolationError(
                    ["A payment for this order is already pending"], context="payment_creation"
                ) from outcome.error
            raise TransactionFailedError("payment_creation", outcome.error) from outcome.error

        payment = _strip_id(outcome.data)
        logger.info(
            f"[PAYMENT] Created {payment['payment_id']} for order {payment['order_id']}",
            extra={"type": "payment_created", "payment_id": payment["payment_id"], "order_id": payment["order_id"]}
        )
        payment["warnings"] = result.warnings
        return payment

    # =========================================================================
    # GATEWAY CHARGE
    # =========================================================================

    async def initialize_gateway_charge(self, payment: Dict[str, Any], gateway_client) -> Dict[str, Any]:
        """
        Start a gateway charge for a pending payment.

        The reference is written to the payment BEFORE the gateway is
        called, so a webhook that beats the gateway response still finds it.
        """
        payment_id = payment["payment_id"]
        current = await self.get(payment_id)

        violations = []
        if current["provider"] != PaymentProvider.PAYSTACK.value:
            violations.append(f"Provider '{current['provider']}' does not use a gateway charge")
        if current["status"] != PaymentStatus.PENDING.value:
            violations.append(f"Payment is not awaiting a gateway charge. Current status: {current['status']}")
        if not current.get("user_email"):
            violations.append("Customer email is required for a gateway charge")
        if violations:
            raise BusinessRuleViolationError(violations, context="gateway_charge")

        reference = current.get("provider_reference") or payment_id
        await self._set_payment_fields(payment_id, {"provider_reference": reference})

        async def charge():
            return await gateway_client.initialize_charge(
                email=current["user_email"],
                amount=current["amount"],
                reference=reference,
                metadata={
                    "payment_id": payment_id,
                    "order_id": current["order_id"],
                    "user_id": current["user_id"],
                },
                currency=current.get("currency"),
            )

        handle = await self.retry_executor.retry(
            charge,
            self.gateway_retry,
            context=f"gateway charge {payment_id}",
            should_retry=lambda e: isinstance(e, GatewayUnavailableError),
        )

        gateway_reference = handle.get("reference") or reference
        await self._set_payment_fields(payment_id, {
            "provider_reference": gateway_reference,
            "gateway": {
                "authorization_url": handle.get("authorization_url"),
                "access_code": handle.get("access_code"),
                "initialized_at": datetime.utcnow(),
            },
        })

        try:
            await self.update_status(payment_id, PaymentStatus.PROCESSING, actor="gateway_charge")
        except InvalidTransitionError:
            # A webhook already settled the payment; leave it
            logger.info(f"[PAYMENT] {payment_id} settled before charge initialization returned")

        return {
            "payment_id": payment_id,
            "reference": gateway_reference,
            "authorization_url": handle.get("authorization_url"),
            "access_code": handle.get("access_code"),
        }

    async def _set_payment_fields(self, payment_id: str, fields: Dict[str, Any]) -> None:
        """Non-status fields only; status goes through update_status."""
        async def unit(session):
            result = await self.db.payments.update_one(
                {"payment_id": payment_id},
                {"$set": {**fields, "updated_at": datetime.utcnow()}},
                session=session
            )
            if result.matched_count == 0:
                raise PaymentNotFoundError("payment_id", payment_id)

        outcome = await self.coordinator.execute_transaction(unit)
        if not outcome.success:
            if isinstance(outcome.error, PaymentNotFoundError):
                raise outcome.error
            raise TransactionFailedError("payment_update", outcome.error) from outcome.error

    # =========================================================================
    # STATUS (single path)
    # =========================================================================

    async def update_status(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        metadata: Optional[Dict[str, Any]] = None,
        actor: str = "api"
    ) -> StatusChange:
        """
        Apply a payment status change and its order cascade atomically.

        Returns StatusChange(changed=False) when the payment already holds
        new_status. Notifications go out only for changes actually applied.

        Raises:
            PaymentNotFoundError
            InvalidTransitionError
            TransactionFailedError
        """
        target = value_of(new_status)

        async def unit(session):
            payment = await self.get(payment_id, session=session)
            current = payment["status"]

            if current == target:
                return StatusChange(payment, current, target, changed=False)

            self.machine.validate_transition(current, target)

            update = self.machine.build_update(
                current, target, actor=actor,
                metadata={"source": actor},
                extra_set=self._status_fields(target, metadata)
            )
            result = await self.db.payments.update_one(
                {"payment_id": payment_id, "status": current},
                update,
                session=session
            )
            if result.matched_count == 0:
                latest = await self.get(payment_id, session=session)
                if latest["status"] == target:
                    return StatusChange(latest, latest["status"], target, changed=False)
                raise InvalidTransitionError("payment", latest["status"], target,
                                             self.machine.get_allowed_transitions(latest["status"]))

            order = await self._cascade(session, payment, PaymentStatus(target))
            updated = await self.get(payment_id, session=session)
            return StatusChange(updated, current, target, changed=True, order=order)

        outcome = await self.coordinator.execute_transaction(unit)
        if not outcome.success:
            if isinstance(outcome.error, (PaymentNotFoundError, InvalidTransitionError)):
                raise outcome.error
            raise TransactionFailedError("payment_status_update", outcome.error) from outcome.error

        change: StatusChange = outcome.data
        change.payment = _strip_id(change.payment)

        if not change.changed:
            logger.info(
                f"[PAYMENT] {payment_id} already {target}, no-op",
                extra={"type": "payment_status_duplicate", "payment_id": payment_id, "status": target}
            )
            return change

        logger.info(
            f"[PAYMENT] {payment_id}: '{change.previous_status}' -> '{target}'",
            extra={
                "type": "payment_status_changed",
                "payment_id": payment_id,
                "from_state": change.previous_status,
                "to_state": target,
                "actor": actor,
            }
        )

        await self._notify(change, metadata or {})
        return change

    def _status_fields(self, target: str, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        gateway_data = (metadata or {}).get("gateway_data") or {}

        if target == PaymentStatus.SUCCESSFUL.value:
            fields["processed_at"] = datetime.utcnow()
        if target == PaymentStatus.FAILED.value:
            fields["failure_reason"] = (metadata or {}).get("gateway_response") or "Payment failed"
        if metadata:
            fields["webhook_data"] = metadata
        if gateway_data.get("id") is not None:
            fields["provider_transaction_id"] = str(gateway_data["id"])
        return fields

    async def _cascade(self, session, payment: Dict[str, Any], target: PaymentStatus) -> Optional[Dict[str, Any]]:
        order_status = ORDER_CASCADE.get(target)
        if order_status is None or not payment.get("order_id"):
            return None

        try:
            return await self.orders.update_status(
                payment["order_id"],
                order_status,
                session=session,
                actor=f"payment:{payment['payment_id']}",
                metadata={"payment_status": target.value}
            )
        except (InvalidTransitionError, OrderNotFoundError) as e:
            # The payment outcome stands even when the order has moved on
            logger.warning(
                f"[PAYMENT] Cascade to order {payment['order_id']} skipped: {e}",
                extra={"type": "cascade_skipped", "order_id": payment["order_id"], "payment_id": payment["payment_id"]}
            )
            return None

    async def _notify(self, change: StatusChange, metadata: Dict[str, Any]) -> None:
        """
        Best effort; a notifier failure never fails the status change.

        A success only confirms to the customer when the cascade actually
        confirmed the order. Money landing on an order that did not move
        (cancelled in the meantime, for one) gets a refund notice instead.
        """
        target = change.new_status
        if target not in (PaymentStatus.SUCCESSFUL.value, PaymentStatus.FAILED.value):
            return

        payment_id = change.payment.get("payment_id")
        try:
            order = change.order
            if order is None:
                order = await self.db.orders.find_one({"order_id": change.payment.get("order_id")})

            if target == PaymentStatus.FAILED.value:
                send = self.notifier.send_payment_failure(
                    change.payment, order, change.payment.get("failure_reason")
                )
            elif change.order is not None and change.order.get("status") == OrderStatus.CONFIRMED.value:
                send = self.notifier.send_order_confirmation(
                    change.payment, order, metadata.get("gateway_data") or {}
                )
            else:
                order_status = order.get("status") if order else "missing"
                logger.warning(
                    f"[PAYMENT] {payment_id} succeeded but order {change.payment.get('order_id')} is {order_status}",
                    extra={
                        "type": "payment_unfulfillable",
                        "payment_id": payment_id,
                        "order_id": change.payment.get("order_id"),
                        "order_status": order_status,
                    }
                )
                send = self.notifier.send_refund_notice(change.payment, order, f"order_{order_status}")

            await asyncio.wait_for(send, timeout=self.notification_timeout_ms / 1000)
        except Exception as e:
            logger.error(
                f"[PAYMENT] Notification for {payment_id} failed: {e}",
                extra={"type": "notification_error", "payment_id": payment_id}
            )

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self, provider_reference: str, webhook_data: Dict[str, Any]) -> ReconciliationResult:
        """
        Apply a gateway-reported status to the payment holding provider_reference.

        Never creates payments. Duplicate, stale or out-of-order events
        come back as 'duplicate' or 'ignored' results, not errors.
        """
        payment = await self.find_by_provider_reference(provider_reference)
        if not payment:
            logger.warning(
                f"[WEBHOOK] No payment for reference {provider_reference}",
                extra={"type": "webhook_orphaned", "reference": provider_reference}
            )
            return ReconciliationResult("not_found", provider_reference, reason="payment_not_found")

        payment_id = payment["payment_id"]
        target = map_provider_status(webhook_data.get("status"))

        reported_amount = webhook_data.get("amount")
        if target == PaymentStatus.SUCCESSFUL and reported_amount is not None:
            if not amounts_match(from_minor_units(reported_amount), payment["amount"]):
                logger.warning(
                    f"[WEBHOOK] Amount mismatch for {payment_id}: gateway {reported_amount} (minor units), "
                    f"expected {payment['amount']}",
                    extra={"type": "webhook_amount_mismatch", "payment_id": payment_id, "reference": provider_reference}
                )
                return ReconciliationResult(
                    "ignored", provider_reference, payment_id,
                    payment["status"], payment["status"], reason="amount_mismatch"
                )

        metadata = {
            "gateway_data": webhook_data,
            "gateway_response": webhook_data.get("gateway_response"),
            "paid_at": webhook_data.get("paid_at"),
            "received_at": datetime.utcnow(),
        }

        try:
            change = await self.update_status(payment_id, target, metadata, actor="webhook")
        except InvalidTransitionError as e:
            if target == PaymentStatus.SUCCESSFUL and e.from_state == PaymentStatus.CANCELLED.value:
                # Customer was charged after cancelling; needs a manual refund
                logger.warning(
                    f"[WEBHOOK] Gateway success for cancelled payment {payment_id}",
                    extra={"type": "payment_after_cancellation", "payment_id": payment_id, "reference": provider_reference}
                )
            logger.info(
                f"[WEBHOOK] Ignored out-of-order event for {payment_id}: {e}",
                extra={"type": "webhook_ignored", "payment_id": payment_id, "reference": provider_reference}
            )
            return ReconciliationResult(
                "ignored", provider_reference, payment_id,
                e.from_state, e.from_state, reason="illegal_transition"
            )

        return ReconciliationResult(
            "applied" if change.changed else "duplicate",
            provider_reference,
            payment_id,
            change.previous_status,
            change.new_status,
        )

    async def verify_and_reconcile(self, provider_reference: str, gateway_client) -> ReconciliationResult:
        """Pull the gateway record and reconcile it (recovery path for lost webhooks)."""
        record = await self.retry_executor.retry(
            lambda: gateway_client.verify_charge(provider_reference),
            self.gateway_retry,
            context=f"gateway verify {provider_reference}",
            should_retry=lambda e: isinstance(e, GatewayUnavailableError),
        )
        return await self.reconcile(provider_reference, record)

    async def cancel(self, payment_id: str) -> StatusChange:
        return await self.update_status(payment_id, PaymentStatus.CANCELLED, actor="api")
