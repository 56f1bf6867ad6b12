"""
TransactionCoordinator: atomicity, retries, statistics
"""
import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError

from delivery_core.exceptions import BusinessRuleViolationError
from delivery_core.retry import RetryConfig
from delivery_core.transactions import TransactionOptions, TransactionStats, duplicate_key_index


class TestExecuteTransaction:
    """Single unit of work"""

    async def test_commits_and_returns_data(self, coordinator, db, client):
        async def unit(session):
            await db.orders.insert_one({"order_id": "ORD-1"}, session=session)
            return "ORD-1"

        outcome = await coordinator.execute_transaction(unit)

        assert outcome.success is True
        assert outcome.data == "ORD-1"
        assert outcome.attempts == 1
        assert await db.orders.count_documents({}) == 1
        assert client.sessions_started == client.sessions_ended == 1

    async def test_uses_majority_concerns_and_commit_timeout(self, coordinator, client):
        async def unit(session):
            return None

        await coordinator.execute_transaction(unit, TransactionOptions(timeout_ms=1500, retries=1))

        kwargs = client.transaction_kwargs[0]
        assert kwargs["read_concern"].level == "majority"
        assert kwargs["write_concern"].document == {"w": "majority"}
        assert kwargs["max_commit_time_ms"] == 1500

    async def test_failed_unit_leaves_no_writes(self, coordinator, db):
        """A two-write unit that fails after the first write commits nothing"""
        async def unit(session):
            await db.orders.insert_one({"order_id": "ORD-1"}, session=session)
            await db.payments.insert_one({"payment_id": "PAY-1"}, session=session)
            raise RuntimeError("crash between writes")

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=1))

        assert outcome.success is False
        assert isinstance(outcome.error, RuntimeError)
        assert await db.orders.count_documents({}) == 0
        assert await db.payments.count_documents({}) == 0

    async def test_transient_commit_failure_is_retried_with_new_session(self, coordinator, db, client):
        client.commit_errors.append(AutoReconnect("primary stepped down"))

        async def unit(session):
            await db.orders.insert_one({"order_id": "ORD-1"}, session=session)

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=3))

        assert outcome.success is True
        assert outcome.attempts == 2
        assert client.sessions_started == 2
        assert await db.orders.count_documents({}) == 1

    async def test_business_error_is_not_retried(self, coordinator, client):
        calls = []

        async def unit(session):
            calls.append(1)
            raise BusinessRuleViolationError(["User not found"])

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=3))

        assert outcome.success is False
        assert len(calls) == 1
        assert isinstance(outcome.error, BusinessRuleViolationError)

    async def test_duplicate_key_is_not_retried(self, coordinator, client):
        client.commit_errors.append(DuplicateKeyError(
            "E11000 duplicate key error collection: lpg_delivery_test.orders index: idx_order_id_unique dup key: { order_id: \"ORD-1\" }",
            11000,
        ))

        async def unit(session):
            return "written"

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=3))

        assert outcome.success is False
        assert client.sessions_started == 1
        assert duplicate_key_index(outcome.error) == "idx_order_id_unique"

    def test_duplicate_key_index_ignores_other_errors(self):
        assert duplicate_key_index(AutoReconnect("down")) is None
        assert duplicate_key_index(None) is None

    async def test_exhausted_retries_report_failure(self, coordinator, client):
        client.commit_errors.extend([AutoReconnect("down")] * 3)

        async def unit(session):
            return "never committed"

        outcome = await coordinator.execute_transaction(unit, TransactionOptions(retries=3))

        assert outcome.success is False
        assert outcome.attempts == 3
        stats = coordinator.get_stats()
        assert stats["failed_transactions"] == 1
        assert stats["total_retries"] == 2
        assert stats["active_sessions"] == 0

    async def test_rejects_bad_options(self, coordinator):
        async def unit(session):
            return None

        with pytest.raises(ValueError):
            await coordinator.execute_transaction(unit, TransactionOptions(retries=0))


class TestBatchAndBackoff:
    """Batch transactions and whole-transaction backoff"""

    async def test_batch_is_all_or_nothing(self, coordinator, db):
        async def first(session):
            await db.orders.insert_one({"order_id": "ORD-1"}, session=session)
            return 1

        async def second(session):
            raise RuntimeError("second operation failed")

        outcome = await coordinator.execute_batch_transaction([first, second], TransactionOptions(retries=1))

        assert outcome.success is False
        assert await db.orders.count_documents({}) == 0

    async def test_batch_returns_results_in_order(self, coordinator):
        def op(value):
            async def run(session):
                return value
            return run

        operations = [op("a"), op("b")]
        outcome = await coordinator.execute_batch_transaction(operations)
        assert outcome.data == ["a", "b"]

    async def test_execute_with_retry_backs_off_between_transactions(self, coordinator, client, sleep, db):
        client.commit_errors.extend([AutoReconnect("down"), AutoReconnect("down")])

        async def unit(session):
            await db.orders.insert_one({"order_id": "ORD-1"}, session=session)

        outcome = await coordinator.execute_with_retry(
            unit, retry_config=RetryConfig(max_attempts=3, initial_delay_ms=100, max_delay_ms=1000)
        )

        assert outcome.success is True
        assert outcome.attempts == 3
        assert sleep.delays == [0.1, 0.2]

    async def test_execute_with_retry_never_raises(self, coordinator, client):
        client.commit_errors.extend([AutoReconnect("down")] * 2)

        async def unit(session):
            return None

        outcome = await coordinator.execute_with_retry(unit, retry_config=RetryConfig(max_attempts=2))

        assert outcome.success is False
        assert isinstance(outcome.error, AutoReconnect)


class TestTransactionStats:
    def test_average_over_recent_samples(self):
        stats = TransactionStats(history_size=2)
        stats.record(True, 10, 0)
        stats.record(True, 20, 0)
        stats.record(False, 30, 1)

        snapshot = stats.snapshot()
        assert snapshot["total_transactions"] == 3
        assert snapshot["successful_transactions"] == 2
        assert snapshot["average_duration_ms"] == 25.0
        assert snapshot["samples"] == 2
