"""
Payment notifications.

The reconciler needs three calls: confirmation on success, a failure notice,
and a refund notice when money arrives for an order that can no longer be
fulfilled. NotificationService records in-app notifications; email and SMS
transports live outside this package and can be plugged in by subclassing
Notifier.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


class Notifier:
    """Interface the payment reconciler dispatches to"""

    async def send_order_confirmation(
        self, payment: Dict[str, Any], order: Optional[Dict[str, Any]], gateway_data: Dict[str, Any]
    ) -> None:
        raise NotImplementedError

    async def send_payment_failure(
        self, payment: Dict[str, Any], order: Optional[Dict[str, Any]], reason: Optional[str]
    ) -> None:
        raise NotImplementedError

    async def send_refund_notice(
        self, payment: Dict[str, Any], order: Optional[Dict[str, Any]], reason: str
    ) -> None:
        raise NotImplementedError


class NotificationService(Notifier):
    """Stores notifications in the `notifications` collection"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.notifications

    async def _record(self, payment: Dict[str, Any], kind: str, title: str, message: str, **details) -> str:
        doc = {
            "user_id": payment.get("user_id"),
            "type": kind,
            "title": title,
            "message": message,
            "order_id": payment.get("order_id"),
            "payment_id": payment.get("payment_id"),
            "email": payment.get("user_email"),
            "phone": payment.get("user_phone"),
            "details": details,
            "is_read": False,
            "created_at": datetime.utcnow(),
        }
        result = await self.collection.insert_one(doc)
        logger.info(f"[NOTIFY] {kind} for payment {payment.get('payment_id')} to user {payment.get('user_id')}")
        return str(result.inserted_id)

    async def send_order_confirmation(self, payment, order, gateway_data) -> None:
        customer = gateway_data.get("customer") or {}
        name = " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p) or "Customer"
        scheduled = order.get("scheduled_date") if order else None

        await self._record(
            payment,
            "order_confirmation",
            "Order confirmed",
            f"Hi {name}, payment of {payment.get('currency', '')} {payment.get('amount')} for order "
            f"{payment.get('order_id')} was received. Your order is confirmed.",
            cylinder_size=order.get("cylinder_size") if order else None,
            scheduled_date=scheduled.isoformat() if isinstance(scheduled, datetime) else scheduled,
            amount=payment.get("amount"),
            channel=gateway_data.get("channel"),
        )

    async def send_payment_failure(self, payment, order, reason) -> None:
        await self._record(
            payment,
            "payment_failure",
            "Payment failed",
            f"Payment for order {payment.get('order_id')} failed. Reason: {reason or 'unknown'}. "
            "Please try again or contact support.",
            reason=reason,
        )

    async def send_refund_notice(self, payment, order, reason) -> None:
        await self._record(
            payment,
            "payment_refund",
            "Payment will be refunded",
            f"We received {payment.get('currency', '')} {payment.get('amount')} for order "
            f"{payment.get('order_id')}, but the order can no longer be delivered. "
            "The payment will be refunded.",
            reason=reason,
            order_status=order.get("status") if order else None,
            amount=payment.get("amount"),
        )
