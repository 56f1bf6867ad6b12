"""
Shared fixtures: an in-memory motor double, a fixed clock and fully wired
core services.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from delivery_core.business_rules import BusinessRuleValidator
from delivery_core.models import OrderCreate, PaymentCreate
from delivery_core.notifications import Notifier
from delivery_core.orders import OrderLifecycle
from delivery_core.payments import PaymentReconciler
from delivery_core.retry import RetryExecutor
from delivery_core.transactions import TransactionCoordinator

from tests.fake_mongo import FakeClient

NOW = datetime(2026, 3, 2, 9, 0, 0)
DEFAULT_ADDRESS = "14 Liberation Road, Airport Residential, Accra"


class RecordingSleep:
    """Replaces asyncio.sleep; remembers every delay in seconds"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.confirmations: List[Dict[str, Any]] = []
        self.failures: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.error: Exception = None

    async def send_order_confirmation(self, payment, order, gateway_data):
        if self.error:
            raise self.error
        self.confirmations.append({"payment": payment, "order": order, "gateway_data": gateway_data})

    async def send_payment_failure(self, payment, order, reason):
        if self.error:
            raise self.error
        self.failures.append({"payment": payment, "order": order, "reason": reason})

    async def send_refund_notice(self, payment, order, reason):
        if self.error:
            raise self.error
        self.refunds.append({"payment": payment, "order": order, "reason": reason})


def make_order_request(**overrides) -> OrderCreate:
    data = {
        "user_id": "user-1",
        "cylinder_size": "big",
        "quantity": 1,
        "refill_amount": 20.0,
        "delivery_fee": 5.0,
        "total_amount": 25.0,
        "drop_off_address": DEFAULT_ADDRESS,
        "receiver_name": "Ama Mensah",
        "receiver_phone": "0241234567",
        "payment_method": "card",
        "scheduled_date": NOW + timedelta(days=1),
        "scheduled_time": "10:00",
    }
    data.update(overrides)
    return OrderCreate(**data)


def make_payment_request(order: Dict[str, Any], **overrides) -> PaymentCreate:
    data = {
        "order_id": order["order_id"],
        "user_id": order["user_id"],
        "amount": order["total_amount"],
        "payment_method": "card",
        "user_email": "ama@example.com",
        "user_phone": "0241234567",
    }
    data.update(overrides)
    return PaymentCreate(**data)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def db(client):
    return client["lpg_delivery_test"]


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def retry_executor(sleep):
    return RetryExecutor(sleep=sleep)


@pytest.fixture
def coordinator(client, retry_executor):
    return TransactionCoordinator(client, retry_executor=retry_executor)


@pytest.fixture
def validator(db):
    return BusinessRuleValidator(db, clock=lambda: NOW)


@pytest.fixture
def orders(db, validator, coordinator):
    return OrderLifecycle(db, validator, coordinator)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payments(db, validator, coordinator, orders, notifier, retry_executor):
    return PaymentReconciler(db, validator, coordinator, orders, notifier, retry_executor=retry_executor)


@pytest.fixture
async def seeded_db(db):
    """Active customer plus three available 'big' cylinders"""
    await db.users.insert_one({
        "user_id": "user-1",
        "name": "Ama Mensah",
        "email": "ama@example.com",
        "phone": "0241234567",
        "is_active": True,
    })
    for n in range(3):
        await db.cylinders.insert_one({"cylinder_id": f"CYL-{n}", "size": "big", "status": "available"})
    return db


@pytest.fixture
async def pending_order(seeded_db, orders):
    return await orders.create(make_order_request())


@pytest.fixture
async def pending_payment(pending_order, payments, db):
    """Card payment whose gateway reference is already recorded"""
    payment = await payments.create(make_payment_request(pending_order))
    await db.payments.update_one(
        {"payment_id": payment["payment_id"]},
        {"$set": {"provider_reference": f"ref-{payment['payment_id']}"}}
    )
    payment["provider_reference"] = f"ref-{payment['payment_id']}"
    return payment
