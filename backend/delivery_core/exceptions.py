"""
Error taxonomy for the order/payment core.

- Business rule violations: user-correctable, never retried
- Not-found errors for orders and payments
- Transaction failures: infrastructure errors after retries are exhausted
- Gateway errors: split into retryable (unavailable) and final (request rejected)
- Configuration errors: raised at startup, never retried
"""

from typing import List, Optional


class DeliveryCoreError(Exception):
    """Base exception for the delivery core"""
    pass


class ConfigurationError(DeliveryCoreError):
    """Raised when required settings are missing or malformed"""
    pass


class BusinessRuleViolationError(DeliveryCoreError):
    """Raised when a proposed action breaks one or more business rules"""
    def __init__(self, violations: List[str], warnings: Optional[List[str]] = None, context: str = ""):
        self.violations = list(violations)
        self.warnings = list(warnings or [])
        self.context = context
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}Business rule violation(s): {'; '.join(self.violations)}")


class OrderNotFoundError(DeliveryCoreError):
    """Raised when an order lookup by order_id finds nothing"""
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentNotFoundError(DeliveryCoreError):
    """Raised when a payment lookup finds nothing"""
    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value
        super().__init__(f"Payment not found for {key}={value}")


class TransactionFailedError(DeliveryCoreError):
    """Raised when a unit of work could not be committed after all retries"""
    def __init__(self, operation: str, error: Optional[BaseException] = None):
        self.operation = operation
        self.error = error
        super().__init__(f"Transaction failed: {operation}")


class GatewayError(DeliveryCoreError):
    """Base class for payment gateway failures"""
    pass


class GatewayRequestError(GatewayError):
    """Gateway rejected the request (4xx or status=false). Not retried."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayUnavailableError(GatewayError):
    """Gateway unreachable, timed out or returned 5xx. Retried."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RetryCancelledError(DeliveryCoreError):
    """Raised when a retry loop is cancelled between attempts"""
    def __init__(self, context: str, attempts: int, last_error: Optional[BaseException] = None):
        self.context = context
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry of '{context}' cancelled after {attempts} attempt(s)")


class CircuitOpenError(DeliveryCoreError):
    """Raised when a circuit is open and calls are rejected without running"""
    def __init__(self, circuit: str, retry_after_ms: float):
        self.circuit = circuit
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Circuit '{circuit}' is OPEN. Retry in {retry_after_ms:.0f}ms")


class CircuitTimeoutError(DeliveryCoreError):
    """Raised when an operation guarded by a circuit does not settle in time"""
    def __init__(self, circuit: str, timeout_ms: float):
        self.circuit = circuit
        self.timeout_ms = timeout_ms
        super().__init__(f"Operation timeout on circuit '{circuit}' after {timeout_ms:.0f}ms")
