"""
RECOVERY ORCHESTRATOR

System-level recovery, not per-request retries:
- execute_with_circuit_breaker: per-call timeout plus a per-name failure counter
- execute_recovery_actions: named actions with optional fallback and retry
- perform_health_check_with_recovery: concurrent checks, recovery on failure
- handle_graceful_shutdown: concurrent cleanup bounded by a timeout

Circuit states:
    CLOSED     calls run; consecutive failures are counted
    OPEN       calls fail fast with CircuitOpenError until reset_timeout_ms passes
    HALF_OPEN  one trial call; success closes the circuit, failure re-opens it
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import logging
import time

from .exceptions import CircuitOpenError, CircuitTimeoutError
from .retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)

AsyncAction = Callable[[], Awaitable[Any]]


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False


@dataclass
class RecoveryAction:
    """A named recovery step. retry, when given, wraps execute in the retry executor."""
    name: str
    execute: AsyncAction
    fallback: Optional[AsyncAction] = None
    retry: Optional[RetryConfig] = None


@dataclass
class RecoveryReport:
    success: bool
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


class RecoveryOrchestrator:
    def __init__(
        self,
        retry_executor: Optional[RetryExecutor] = None,
        failure_threshold: int = 5,
        reset_timeout_ms: float = 30000,
        clock: Callable[[], float] = time.monotonic
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.retry_executor = retry_executor or RetryExecutor()
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._circuits: Dict[str, CircuitBreakerState] = {}

    # =========================================================================
    # CIRCUIT BREAKER
    # =========================================================================

    def get_circuit(self, name: str) -> CircuitBreakerState:
        return self._circuits.setdefault(name, CircuitBreakerState())

    def reset_circuit(self, name: str) -> None:
        self._circuits.pop(name, None)

    def _admit(self, name: str, circuit: CircuitBreakerState) -> None:
        """Decide whether a call may run. Raises CircuitOpenError when it may not."""
        if circuit.state == CircuitState.OPEN:
            elapsed_ms = (self._clock() - circuit.opened_at) * 1000
            if elapsed_ms < self.reset_timeout_ms:
                retry_after = self.reset_timeout_ms - elapsed_ms
                logger.warning(
                    f"[RECOVERY] Circuit '{name}' is open, rejecting call",
                    extra={"type": "circuit_breaker_open", "circuit": name, "retry_after_ms": retry_after}
                )
                raise CircuitOpenError(name, retry_after)

            circuit.state = CircuitState.HALF_OPEN
            logger.info(f"[RECOVERY] Circuit '{name}' half-open, allowing trial call")

        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.trial_in_flight:
                raise CircuitOpenError(name, 0)
            circuit.trial_in_flight = True

    def _record_success(self, name: str, circuit: CircuitBreakerState) -> None:
        if circuit.state != CircuitState.CLOSED:
            logger.info(f"[RECOVERY] Circuit '{name}' closed")
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.opened_at = None
        circuit.trial_in_flight = False

    def _record_failure(self, name: str, circuit: CircuitBreakerState) -> None:
        circuit.consecutive_failures += 1
        circuit.trial_in_flight = False

        if circuit.state == CircuitState.HALF_OPEN or circuit.consecutive_failures >= self.failure_threshold:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.error(
                f"[RECOVERY] Circuit '{name}' opened after {circuit.consecutive_failures} consecutive failure(s)",
                extra={"type": "circuit_breaker_open", "circuit": name, "failures": circuit.consecutive_failures}
            )

    async def execute_with_circuit_breaker(
        self,
        operation: AsyncAction,
        name: str,
        timeout_ms: float = 10000
    ) -> Any:
        """
        Run operation under the named circuit with a timeout.

        Raises:
            CircuitOpenError: circuit open, operation not called
            CircuitTimeoutError: operation did not settle within timeout_ms
            Whatever the operation raised
        """
        circuit = self.get_circuit(name)
        self._admit(name, circuit)

        try:
            result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            self._record_failure(name, circuit)
            logger.error(
                f"[RECOVERY] Circuit '{name}' operation timed out after {timeout_ms}ms",
                extra={"type": "circuit_breaker_error", "circuit": name, "severity": "medium"}
            )
            raise CircuitTimeoutError(name, timeout_ms) from e
        except Exception as e:
            self._record_failure(name, circuit)
            logger.error(
                f"[RECOVERY] Circuit '{name}' operation failed: {e}",
                extra={"type": "circuit_breaker_error", "circuit": name, "severity": "medium"}
            )
            raise
        except BaseException:
            # Cancelled mid-call: no verdict, but the half-open slot must be released
            circuit.trial_in_flight = False
            raise

        self._record_success(name, circuit)
        logger.info(
            f"[RECOVERY] Circuit '{name}' operation succeeded",
            extra={"type": "circuit_breaker_success", "circuit": name}
        )
        return result

    # =========================================================================
    # RECOVERY ACTIONS
    # =========================================================================

    async def execute_recovery_actions(
        self,
        actions: Sequence[RecoveryAction],
        context: str = "Recovery actions"
    ) -> RecoveryReport:
        """
        Run every action in order; one failing action never stops the rest.

        An action counts as recovered when either execute or its fallback
        succeeds. errors lists every failure seen, including ones a fallback
        later covered.
        """
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        logger.info(
            f"[RECOVERY] Starting recovery actions for {context}",
            extra={"type": "recovery_start", "context": context, "action_count": len(actions)}
        )

        for action in actions:
            logger.info(
                f"[RECOVERY] Executing recovery action: {action.name}",
                extra={"type": "recovery_action", "action": action.name, "context": context}
            )
            try:
                if action.retry is not None:
                    value = await self.retry_executor.retry(action.execute, action.retry, context=action.name)
                else:
                    value = await action.execute()
                results.append({"action": action.name, "success": True, "result": value})
                logger.info(
                    f"[RECOVERY] Recovery action {action.name} completed successfully",
                    extra={"type": "recovery_success", "action": action.name, "context": context}
                )
                continue
            except Exception as e:
                errors.append({"action": action.name, "error": str(e), "fallback": False})
                logger.error(
                    f"[RECOVERY] Recovery action {action.name} failed: {e}",
                    extra={"type": "recovery_error", "action": action.name, "context": context}
                )

            if action.fallback is None:
                results.append({"action": action.name, "success": False})
                continue

            logger.info(
                f"[RECOVERY] Executing fallback for {action.name}",
                extra={"type": "recovery_fallback", "action": action.name, "context": context}
            )
            try:
                value = await action.fallback()
                results.append({"action": action.name, "success": True, "result": value, "fallback": True})
                logger.info(
                    f"[RECOVERY] Fallback for {action.name} completed successfully",
                    extra={"type": "recovery_fallback_success", "action": action.name, "context": context}
                )
            except Exception as e:
                errors.append({"action": action.name, "error": str(e), "fallback": True})
                results.append({"action": action.name, "success": False, "fallback": True})
                logger.error(
                    f"[RECOVERY] Fallback for {action.name} failed: {e}",
                    extra={
                        "type": "recovery_fallback_error",
                        "action": action.name,
                        "context": context,
                        "severity": "high",
                    }
                )

        success = all(r["success"] for r in results)
        logger.info(
            f"[RECOVERY] Recovery actions completed for {context}",
            extra={
                "type": "recovery_complete",
                "context": context,
                "success": success,
                "action_count": len(actions),
                "success_count": sum(1 for r in results if r["success"]),
                "error_count": len(errors),
            }
        )
        return RecoveryReport(success=success, results=results, errors=errors)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def perform_health_check_with_recovery(
        self,
        checks: Sequence[Callable[[], Awaitable[bool]]],
        recovery_actions: Sequence[RecoveryAction]
    ) -> Dict[str, bool]:
        """A check is healthy only when it returns True; raising counts as unhealthy."""
        outcomes = await asyncio.gather(*(check() for check in checks), return_exceptions=True)
        healthy = all(outcome is True for outcome in outcomes)

        if healthy:
            return {"healthy": True, "recovered": False}

        if not recovery_actions:
            return {"healthy": False, "recovered": False}

        logger.warning(
            "[RECOVERY] Health check failed, attempting recovery",
            extra={
                "type": "health_check_recovery",
                "failed_checks": sum(1 for outcome in outcomes if outcome is not True),
                "recovery_actions": len(recovery_actions),
            }
        )
        report = await self.execute_recovery_actions(recovery_actions, "Health check recovery")
        return {"healthy": False, "recovered": report.success}

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def handle_graceful_shutdown(
        self,
        cleanup_actions: Sequence[AsyncAction],
        timeout_ms: float = 30000
    ) -> bool:
        """
        Run cleanup actions concurrently. Returns False if the timeout hit
        first; individual cleanup failures are logged and do not count.
        """
        logger.info(
            "[RECOVERY] Starting graceful shutdown",
            extra={"type": "graceful_shutdown_start", "action_count": len(cleanup_actions), "timeout_ms": timeout_ms}
        )

        async def run(index: int, action: AsyncAction) -> None:
            try:
                await action()
                logger.info(
                    f"[RECOVERY] Cleanup action {index} completed",
                    extra={"type": "cleanup_success", "action_index": index}
                )
            except Exception as e:
                logger.error(
                    f"[RECOVERY] Cleanup action {index} failed: {e}",
                    extra={"type": "cleanup_error", "action_index": index}
                )

        try:
            await asyncio.wait_for(
                asyncio.gather(*(run(i, action) for i, action in enumerate(cleanup_actions, start=1))),
                timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.error(
                f"[RECOVERY] Graceful shutdown timed out after {timeout_ms}ms",
                extra={"type": "graceful_shutdown_timeout", "severity": "high"}
            )
            return False

        logger.info("[RECOVERY] Graceful shutdown completed", extra={"type": "graceful_shutdown_complete"})
        return True
