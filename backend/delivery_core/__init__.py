"""
Order and payment core for LPG delivery
"""
from .exceptions import (
    DeliveryCoreError,
    ConfigurationError,
    BusinessRuleViolationError,
    OrderNotFoundError,
    PaymentNotFoundError,
    TransactionFailedError,
    GatewayError,
    GatewayRequestError,
    GatewayUnavailableError,
    RetryCancelledError,
    CircuitOpenError,
    CircuitTimeoutError
)

from .retry import (
    RetryConfig,
    RetryExecutor
)

from .transactions import (
    TransactionCoordinator,
    TransactionOptions,
    TransactionOutcome,
    TransactionStats
)

from .state_machine import (
    StateMachine,
    InvalidTransitionError,
    ORDER_STATE_MACHINE,
    PAYMENT_STATE_MACHINE
)

from .business_rules import (
    BusinessRuleValidator,
    ValidationResult
)

from .orders import OrderLifecycle

from .payments import (
    PaymentReconciler,
    ReconciliationResult,
    StatusChange
)

from .recovery import (
    RecoveryOrchestrator,
    RecoveryAction,
    RecoveryReport
)

from .notifications import (
    Notifier,
    NotificationService
)

from .paystack import (
    PaystackClient,
    verify_webhook_signature
)

from .webhooks import WebhookProcessor

__all__ = [
    # Errors
    'DeliveryCoreError',
    'ConfigurationError',
    'BusinessRuleViolationError',
    'OrderNotFoundError',
    'PaymentNotFoundError',
    'TransactionFailedError',
    'GatewayError',
    'GatewayRequestError',
    'GatewayUnavailableError',
    'RetryCancelledError',
    'CircuitOpenError',
    'CircuitTimeoutError',
    'InvalidTransitionError',
    # Retry and transactions
    'RetryConfig',
    'RetryExecutor',
    'TransactionCoordinator',
    'TransactionOptions',
    'TransactionOutcome',
    'TransactionStats',
    # State machines
    'StateMachine',
    'ORDER_STATE_MACHINE',
    'PAYMENT_STATE_MACHINE',
    # Rules and lifecycles
    'BusinessRuleValidator',
    'ValidationResult',
    'OrderLifecycle',
    'PaymentReconciler',
    'ReconciliationResult',
    'StatusChange',
    # Recovery
    'RecoveryOrchestrator',
    'RecoveryAction',
    'RecoveryReport',
    # Collaborators
    'Notifier',
    'NotificationService',
    'PaystackClient',
    'verify_webhook_signature',
    'WebhookProcessor',
]
