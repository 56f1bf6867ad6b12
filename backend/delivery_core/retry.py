"""
BOUNDED RETRY WITH EXPONENTIAL BACKOFF

Delay before attempt n+2 (n = 0 for the first retry):
    min(initial_delay_ms * backoff_multiplier ** n, max_delay_ms)

No jitter. The last error is re-raised unchanged once attempts run out.
An optional asyncio.Event lets callers abandon the loop between attempts.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, List
import asyncio
import logging

from .exceptions import RetryCancelledError

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_ms: float = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: float = 10000

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, retry_index: int) -> float:
        """Delay in ms before retry number retry_index (0-based)."""
        return min(self.initial_delay_ms * (self.backoff_multiplier ** retry_index), self.max_delay_ms)

    def delays(self) -> List[float]:
        """All delays this config would wait through, in order."""
        return [self.delay_for(n) for n in range(self.max_attempts - 1)]


DEFAULT_RETRY_CONFIG = RetryConfig()


class RetryExecutor:
    """
    Runs an async operation until it succeeds or attempts run out.

    Holds no shared state; the only side effects are the operation's own.
    """

    def __init__(self, sleep: Sleep = asyncio.sleep):
        self._sleep = sleep

    async def retry(
        self,
        operation: Operation,
        config: Optional[RetryConfig] = None,
        context: str = "Unknown operation",
        should_retry: Optional[Callable[[Exception], bool]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Any:
        """
        Args:
            operation: zero-argument coroutine function
            config: attempts and backoff; defaults to 3 attempts, 1s doubling, 10s cap
            context: name used in log events
            should_retry: returns False for errors that must not be retried
            cancel_event: checked between attempts; when set the loop stops

        Raises:
            The last error from the operation, unchanged
            RetryCancelledError if cancel_event was set between attempts
        """
        config = config or DEFAULT_RETRY_CONFIG
        last_error: Optional[Exception] = None

        for attempt in range(1, config.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"[RETRY] {context} cancelled before attempt {attempt}",
                    extra={"type": "retry_cancelled", "operation": context, "attempt": attempt}
                )
                raise RetryCancelledError(context, attempt - 1, last_error) from last_error

            try:
                logger.info(
                    f"[RETRY] Attempting {context} (attempt {attempt}/{config.max_attempts})",
                    extra={
                        "type": "retry_attempt",
                        "operation": context,
                        "attempt": attempt,
                        "max_attempts": config.max_attempts,
                    }
                )

                result = await operation()

                if attempt > 1:
                    logger.info(
                        f"[RETRY] {context} succeeded after {attempt} attempts",
                        extra={"type": "retry_success", "operation": context, "attempts": attempt}
                    )

                return result

            except Exception as e:
                last_error = e

                logger.error(
                    f"[RETRY] {context} failed on attempt {attempt}: {e}",
                    extra={
                        "type": "retry_error",
                        "operation": context,
                        "attempt": attempt,
                        "max_attempts": config.max_attempts,
                    }
                )

                if should_retry is not None and not should_retry(e):
                    logger.info(
                        f"[RETRY] {context} raised a non-retryable error, giving up",
                        extra={"type": "retry_failed", "operation": context, "attempts": attempt}
                    )
                    raise

                if attempt == config.max_attempts:
                    logger.error(
                        f"[RETRY] {context} failed after {attempt} attempts",
                        extra={
                            "type": "retry_failed",
                            "operation": context,
                            "attempts": attempt,
                            "severity": "high",
                        }
                    )
                    raise

                await self._sleep(config.delay_for(attempt - 1) / 1000)

        # max_attempts >= 1 always returns or raises inside the loop
        raise AssertionError("unreachable")
