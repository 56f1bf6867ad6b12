"""
Database indexes for orders, payments and the lookups the business rules run.

The partial unique indexes back the one-order-per-day and
one-active-payment-per-order rules at the database level. Partial
filters with $in need MongoDB 6.0+.
"""

import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from .models import ACTIVE_PAYMENT_STATUSES, NON_TERMINAL_ORDER_STATUSES, value_of

logger = logging.getLogger(__name__)

STRING_VALUES = {"$type": "string"}

# Names the services match on when a write trips a backstop index
ORDER_SAME_DAY_INDEX = "idx_order_user_day_active_unique"
PAYMENT_ACTIVE_INDEX = "idx_payment_order_active_unique"


async def create_indexes(db: AsyncIOMotorDatabase) -> None:
    """Idempotent; create_index is a no-op for an identical existing index."""

    # Orders
    await db.orders.create_index([("order_id", 1)], unique=True, name="idx_order_id_unique")
    await db.orders.create_index([("user_id", 1), ("scheduled_date", 1)], name="idx_order_user_scheduled_date")
    await db.orders.create_index([("user_id", 1), ("created_at", -1)], name="idx_order_user_created_at")
    await db.orders.create_index([("status", 1)], name="idx_order_status")
    await db.orders.create_index(
        [("user_id", 1), ("scheduled_day", 1)],
        unique=True,
        partialFilterExpression={"status": {"$in": sorted(value_of(s) for s in NON_TERMINAL_ORDER_STATUSES)}},
        name=ORDER_SAME_DAY_INDEX
    )

    # Payments
    await db.payments.create_index([("payment_id", 1)], unique=True, name="idx_payment_id_unique")
    await db.payments.create_index(
        [("provider_reference", 1)],
        unique=True,
        partialFilterExpression={"provider_reference": STRING_VALUES},
        name="idx_payment_provider_reference_unique"
    )
    await db.payments.create_index([("order_id", 1), ("status", 1)], name="idx_payment_order_status")
    await db.payments.create_index(
        [("user_id", 1), ("status", 1), ("created_at", -1)],
        name="idx_payment_user_status_created_at"
    )
    await db.payments.create_index(
        [("order_id", 1)],
        unique=True,
        partialFilterExpression={"status": {"$in": sorted(value_of(s) for s in ACTIVE_PAYMENT_STATUSES)}},
        name=PAYMENT_ACTIVE_INDEX
    )

    # Rule lookups
    await db.users.create_index([("user_id", 1)], unique=True, name="idx_user_id_unique")
    await db.users.create_index([("email", 1)], unique=True, partialFilterExpression={"email": STRING_VALUES}, name="idx_user_email_unique")
    await db.users.create_index([("phone", 1)], unique=True, partialFilterExpression={"phone": STRING_VALUES}, name="idx_user_phone_unique")
    await db.cylinders.create_index([("size", 1), ("status", 1)], name="idx_cylinder_size_status")
    await db.notifications.create_index([("user_id", 1), ("created_at", -1)], name="idx_notification_user_created_at")

    logger.info("[DB] Indexes ensured for orders, payments, users, cylinders, notifications")
