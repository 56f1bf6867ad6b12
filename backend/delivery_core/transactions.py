"""
TRANSACTION COORDINATOR

Runs a unit of work inside a MongoDB transaction:
- New session per attempt; a failed session is ended, never reused
- Read concern "majority" and write concern "majority"
- Whole-unit retries on transient failure
- Business errors (rule violations, illegal transitions) stop immediately
- Running statistics owned by the coordinator instance

Business-level failures come back as TransactionOutcome(success=False).
Only misconfiguration raises.

Usage:
    async def unit(session):
        await db.orders.insert_one(doc, session=session)
        return doc

    outcome = await coordinator.execute_transaction(unit, TransactionOptions(timeout_ms=30000, retries=3))
    if not outcome.success:
        ...
"""

from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type
import logging
import re
import threading
import time

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReadPreference
from pymongo.errors import DuplicateKeyError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from .exceptions import BusinessRuleViolationError, OrderNotFoundError, PaymentNotFoundError
from .retry import RetryConfig, RetryExecutor
from .state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[Any], Awaitable[Any]]

# Errors that no amount of retrying will fix
NON_RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (
    BusinessRuleViolationError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentNotFoundError,
    DuplicateKeyError,
)

DUPLICATE_INDEX_PATTERN = re.compile(r"index: (\S+)")


def duplicate_key_index(error: Optional[BaseException]) -> Optional[str]:
    """Name of the unique index a DuplicateKeyError tripped, else None"""
    if not isinstance(error, DuplicateKeyError):
        return None
    message = (error.details or {}).get("errmsg") or str(error)
    match = DUPLICATE_INDEX_PATTERN.search(message)
    return match.group(1) if match else None


@dataclass(frozen=True)
class TransactionOptions:
    timeout_ms: int = 30000
    retries: int = 3


@dataclass
class TransactionOutcome:
    """Ephemeral result of a unit of work. Never persisted."""
    success: bool
    data: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0


class TransactionStats:
    """
    Lock-guarded counters for observability.

    Durations keep a bounded history so the average reflects recent load.
    """

    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._durations = deque(maxlen=history_size)
        self.total_transactions = 0
        self.successful_transactions = 0
        self.failed_transactions = 0
        self.total_retries = 0
        self.active_sessions = 0

    def session_started(self) -> None:
        with self._lock:
            self.active_sessions += 1

    def session_ended(self) -> None:
        with self._lock:
            self.active_sessions -= 1

    def record(self, success: bool, duration_ms: float, retries: int) -> None:
        with self._lock:
            self.total_transactions += 1
            if success:
                self.successful_transactions += 1
            else:
                self.failed_transactions += 1
            self.total_retries += retries
            self._durations.append(duration_ms)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            average = sum(self._durations) / len(self._durations) if self._durations else 0.0
            return {
                "active_sessions": self.active_sessions,
                "total_transactions": self.total_transactions,
                "successful_transactions": self.successful_transactions,
                "failed_transactions": self.failed_transactions,
                "total_retries": self.total_retries,
                "average_duration_ms": round(average, 3),
                "samples": len(self._durations),
            }


class TransactionCoordinator:
    """
    Explicit transaction wrapper.

    Callers invoke execute_transaction(fn) themselves; nothing is
    intercepted behind their back.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        stats: Optional[TransactionStats] = None,
        retry_executor: Optional[RetryExecutor] = None,
        non_retryable: Tuple[Type[Exception], ...] = NON_RETRYABLE_ERRORS
    ):
        self.client = client
        self.stats = stats or TransactionStats()
        self.retry_executor = retry_executor or RetryExecutor()
        self.non_retryable = non_retryable

    def _check_options(self, options: TransactionOptions) -> None:
        if options.retries < 1:
            raise ValueError(f"Transaction retries must be at least 1, got {options.retries}")
        if options.timeout_ms <= 0:
            raise ValueError(f"Transaction timeout must be positive, got {options.timeout_ms}")

    def is_retryable(self, error: BaseException) -> bool:
        return not isinstance(error, self.non_retryable)

    # =========================================================================
    # SINGLE UNIT OF WORK
    # =========================================================================

    async def execute_transaction(
        self,
        unit_of_work: UnitOfWork,
        options: Optional[TransactionOptions] = None
    ) -> TransactionOutcome:
        options = options or TransactionOptions()
        self._check_options(options)

        started = time.monotonic()
        last_error: Optional[BaseException] = None
        attempt = 0

        for attempt in range(1, options.retries + 1):
            session = await self.client.start_session()
            self.stats.session_started()

            try:
                logger.info(
                    f"[TXN] Starting transaction (attempt {attempt}/{options.retries})",
                    extra={"type": "transaction_start", "attempt": attempt, "max_retries": options.retries}
                )

                result = await session.with_transaction(
                    unit_of_work,
                    read_concern=ReadConcern("majority"),
                    write_concern=WriteConcern("majority"),
                    read_preference=ReadPreference.PRIMARY,
                    max_commit_time_ms=options.timeout_ms,
                )

                logger.info(
                    "[TXN] Transaction completed successfully",
                    extra={"type": "transaction_success", "attempt": attempt}
                )

                self.stats.record(True, (time.monotonic() - started) * 1000, attempt - 1)
                return TransactionOutcome(success=True, data=result, attempts=attempt)

            except Exception as e:
                last_error = e

                logger.error(
                    f"[TXN] Transaction attempt {attempt} failed: {e}",
                    extra={"type": "transaction_error", "attempt": attempt, "max_retries": options.retries}
                )

                if not self.is_retryable(e):
                    break

            finally:
                await session.end_session()
                self.stats.session_ended()

        logger.warning(
            f"[TXN] Transaction failed after {attempt} attempt(s)",
            extra={
                "type": "transaction_failure",
                "attempts": attempt,
                "error": type(last_error).__name__ if last_error else None,
            }
        )

        self.stats.record(False, (time.monotonic() - started) * 1000, attempt - 1)
        return TransactionOutcome(success=False, error=last_error, attempts=attempt)

    # =========================================================================
    # BATCH
    # =========================================================================

    async def execute_batch_transaction(
        self,
        operations: Sequence[UnitOfWork],
        options: Optional[TransactionOptions] = None
    ) -> TransactionOutcome:
        """
        Run operations in order inside ONE transaction.
        Any failure aborts the whole batch.
        """
        async def batch(session) -> List[Any]:
            results = []
            for operation in operations:
                results.append(await operation(session))
            return results

        return await self.execute_transaction(batch, options)

    # =========================================================================
    # BACKOFF BETWEEN WHOLE TRANSACTIONS
    # =========================================================================

    async def execute_with_retry(
        self,
        unit_of_work: UnitOfWork,
        options: Optional[TransactionOptions] = None,
        retry_config: Optional[RetryConfig] = None
    ) -> TransactionOutcome:
        """
        Each attempt is a fresh execute_transaction with retries=1, spaced
        out by the retry executor's exponential backoff.
        """
        options = options or TransactionOptions()
        self._check_options(options)
        retry_config = retry_config or RetryConfig(max_attempts=options.retries)
        single = replace(options, retries=1)
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            outcome = await self.execute_transaction(unit_of_work, single)
            if not outcome.success:
                if attempts < retry_config.max_attempts and self.is_retryable(outcome.error):
                    logger.info(
                        f"[TXN] Transaction failed, retrying in {retry_config.delay_for(attempts - 1):.0f}ms",
                        extra={
                            "type": "transaction_retry",
                            "attempt": attempts,
                            "max_retries": retry_config.max_attempts,
                            "retry_delay_ms": retry_config.delay_for(attempts - 1),
                        }
                    )
                raise outcome.error
            return outcome

        try:
            outcome = await self.retry_executor.retry(
                attempt,
                retry_config,
                context="transaction",
                should_retry=self.is_retryable,
            )
            outcome.attempts = attempts
            return outcome
        except Exception as e:
            return TransactionOutcome(success=False, error=e, attempts=attempts)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.snapshot()
