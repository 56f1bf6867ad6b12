"""
OrderLifecycle: creation, state transitions, cancellation
"""
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from delivery_core.exceptions import BusinessRuleViolationError, OrderNotFoundError
from delivery_core.models import OrderStatus, PaymentStatus
from delivery_core.state_machine import InvalidTransitionError
from delivery_core.transactions import TransactionOptions

from tests.conftest import NOW, make_order_request


class TestOrderCreation:
    """create()"""

    async def test_creates_pending_order(self, seeded_db, orders):
        order = await orders.create(make_order_request())

        assert order["order_id"].startswith("ORD-")
        assert order["status"] == "pending"
        assert order["total_amount"] == 25.0
        assert order["scheduled_day"] == (NOW + timedelta(days=1)).date().isoformat()
        assert order["warnings"] == []
        assert "_id" not in order

        stored = await seeded_db.orders.find_one({"order_id": order["order_id"]})
        assert stored["status"] == "pending"
        assert stored["status_history"] == []

    async def test_rule_violation_raises_with_all_reasons(self, seeded_db, orders):
        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await orders.create(make_order_request(quantity=5, drop_off_address="Osu"))

        assert len(exc_info.value.violations) == 2
        assert await seeded_db.orders.count_documents({}) == 0

    async def test_second_order_same_day_is_rejected(self, seeded_db, orders):
        await orders.create(make_order_request())

        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await orders.create(make_order_request(scheduled_time="16:00"))

        assert "User already has an order scheduled for this date" in exc_info.value.violations
        assert await seeded_db.orders.count_documents({}) == 1

    async def test_same_day_clash_is_rechecked_inside_transaction(self, seeded_db, orders, validator, monkeypatch):
        """A clash that appears after validation still blocks the insert"""
        original = validator.validate_order_creation

        async def validate_then_race(order, session=None):
            result = await original(order, session)
            await seeded_db.orders.insert_one({
                "order_id": "ORD-racer",
                "user_id": order.user_id,
                "scheduled_date": order.scheduled_date,
                "scheduled_day": order.scheduled_day.isoformat(),
                "status": "pending",
            })
            return result

        monkeypatch.setattr(validator, "validate_order_creation", validate_then_race)

        with pytest.raises(BusinessRuleViolationError):
            await orders.create(make_order_request())

        assert await seeded_db.orders.count_documents({}) == 1

    async def test_warnings_are_returned(self, seeded_db, orders):
        await orders.create(make_order_request(scheduled_date=NOW + timedelta(days=2)))
        order = await orders.create(make_order_request())
        assert order["warnings"] == ["User has pending orders"]

    async def test_offset_schedule_is_stored_as_utc_with_customer_day(self, seeded_db, orders):
        scheduled = datetime(2026, 3, 4, 1, 0, tzinfo=timezone(timedelta(hours=3)))

        order = await orders.create(make_order_request(scheduled_date=scheduled))

        assert order["scheduled_date"] == datetime(2026, 3, 3, 22, 0)
        assert order["scheduled_day"] == "2026-03-04"

    async def test_same_day_index_conflict_is_a_rule_violation(self, seeded_db, orders, client):
        """A concurrent insert caught by the unique index is reported like the rule, not retried"""
        client.commit_errors.append(DuplicateKeyError(
            "E11000 duplicate key error collection: lpg_delivery_test.orders "
            "index: idx_order_user_day_active_unique dup key: { user_id: \"user-1\", scheduled_day: \"2026-03-03\" }",
            11000,
        ))

        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await orders.create(make_order_request())

        assert exc_info.value.violations == ["User already has an order scheduled for this date"]
        assert client.sessions_started == 1
        assert await seeded_db.orders.count_documents({}) == 0


class TestOrderStatus:
    """update_status()"""

    async def test_valid_transition_records_history(self, pending_order, orders):
        order = await orders.update_status(pending_order["order_id"], OrderStatus.CONFIRMED, actor="ops")

        assert order["status"] == "confirmed"
        entry = order["status_history"][-1]
        assert entry["from_state"] == "pending"
        assert entry["to_state"] == "confirmed"
        assert entry["transitioned_by"] == "ops"

    async def test_invalid_transition_raises(self, pending_order, orders):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await orders.update_status(pending_order["order_id"], OrderStatus.DELIVERED)

        assert set(exc_info.value.allowed) == {"confirmed", "cancelled", "payment_failed"}

    async def test_same_status_is_a_no_op(self, pending_order, orders):
        order = await orders.update_status(pending_order["order_id"], OrderStatus.PENDING)
        assert order["status"] == "pending"
        assert order["status_history"] == []

    async def test_full_delivery_path(self, pending_order, orders):
        order_id = pending_order["order_id"]
        for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED):
            await orders.update_status(order_id, status)

        order = await orders.get(order_id)
        assert order["status"] == "delivered"
        assert len(order["status_history"]) == 4

    async def test_terminal_status_is_sticky(self, pending_order, orders):
        await orders.update_status(pending_order["order_id"], OrderStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            await orders.update_status(pending_order["order_id"], OrderStatus.CONFIRMED)

    async def test_unknown_order(self, seeded_db, orders):
        with pytest.raises(OrderNotFoundError):
            await orders.update_status("ORD-missing", OrderStatus.CONFIRMED)

    async def test_joins_callers_transaction(self, pending_order, orders, coordinator, seeded_db):
        """With a session the change rolls back with the caller's unit of work"""
        async def unit(session):
            await orders.update_status(pending_order["order_id"], OrderStatus.CONFIRMED, session=session)
            raise RuntimeError("caller failed later")

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=1))

        assert outcome.success is False
        stored = await seeded_db.orders.find_one({"order_id": pending_order["order_id"]})
        assert stored["status"] == "pending"


class TestOrderCancellation:
    """cancel()"""

    async def test_owner_can_cancel(self, pending_order, orders):
        order = await orders.cancel(pending_order["order_id"], "user-1")

        assert order["status"] == "cancelled"
        assert order["status_history"][-1]["metadata"] == {"reason": "cancelled_by_user"}

    async def test_other_user_cannot_cancel(self, pending_order, orders):
        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await orders.cancel(pending_order["order_id"], "user-2")

        assert exc_info.value.violations == ["Order not found or access denied"]

    async def test_cancelled_order_frees_the_day(self, pending_order, orders):
        await orders.cancel(pending_order["order_id"], "user-1")
        order = await orders.create(make_order_request())
        assert order["status"] == "pending"

    async def test_cancel_also_cancels_open_payment(self, pending_payment, pending_order, orders, seeded_db):
        order = await orders.cancel(pending_order["order_id"], "user-1")

        assert order["status"] == "cancelled"
        assert order["cancelled_payments"] == [pending_payment["payment_id"]]

        payment = await seeded_db.payments.find_one({"payment_id": pending_payment["payment_id"]})
        assert payment["status"] == "cancelled"
        assert payment["status_history"][-1]["metadata"] == {"source": "order_cancellation"}

    async def test_cancel_leaves_settled_payments_alone(self, pending_payment, pending_order, orders, payments, seeded_db):
        await payments.update_status(pending_payment["payment_id"], PaymentStatus.FAILED)

        order = await orders.cancel(pending_order["order_id"], "user-1")

        assert order["cancelled_payments"] == []
        payment = await seeded_db.payments.find_one({"payment_id": pending_payment["payment_id"]})
        assert payment["status"] == "failed"


class TestPaymentRetry:
    """reopen_for_payment()"""

    async def test_reopens_payment_failed_order(self, pending_order, orders):
        await orders.update_status(pending_order["order_id"], OrderStatus.PAYMENT_FAILED)

        order = await orders.reopen_for_payment(pending_order["order_id"], actor="user-1")

        assert order["status"] == "pending"
        assert order["status_history"][-1]["transitioned_by"] == "user-1"
        assert order["status_history"][-1]["metadata"] == {"reason": "payment_retry"}

    async def test_confirmed_order_cannot_be_reopened(self, pending_order, orders):
        await orders.update_status(pending_order["order_id"], OrderStatus.CONFIRMED)

        with pytest.raises(InvalidTransitionError):
            await orders.reopen_for_payment(pending_order["order_id"])
