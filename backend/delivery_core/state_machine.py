"""
STATE MACHINES FOR ORDERS AND PAYMENTS

A small reusable state machine with:
- Transition registration
- Transition validation with the allowed targets in the error
- Sticky terminal states (nothing may leave them)
- MongoDB update documents for status changes and history entries

Usage:
    ORDER_STATE_MACHINE.validate_transition("pending", "confirmed")
    update = ORDER_STATE_MACHINE.build_update("pending", "confirmed", actor="webhook")
    await db.orders.update_one({"order_id": oid, "status": "pending"}, update, session=session)
"""

from typing import Dict, Any, Optional, List, Set, Tuple, Iterable
from datetime import datetime
import logging

from .exceptions import DeliveryCoreError
from .models import (
    OrderStatus, PaymentStatus,
    TERMINAL_ORDER_STATUSES, TERMINAL_PAYMENT_STATUSES,
    value_of,
)

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(DeliveryCoreError):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    """Raised when attempting an invalid state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message)


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a state transition."""

    def __init__(self, from_state: str, to_state: str, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Transition table for one entity type.

    Terminal states are declared up front; registering a transition out of
    one is a programming error and raises immediately.
    """

    def __init__(
        self,
        entity_name: str,
        terminal_states: Iterable[Any] = (),
        status_field: str = "status",
        history_field: Optional[str] = "status_history"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field
        self._terminal: Set[str] = {value_of(s) for s in terminal_states}

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set(self._terminal)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: Any, to_state: Any, description: str = "") -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        src, dst = value_of(from_state), value_of(to_state)

        if src in self._terminal:
            raise StateMachineError(
                f"Cannot register transition out of terminal state for {self.entity_name}: '{src}' -> '{dst}'"
            )
        if src == dst:
            raise StateMachineError(f"Self-transition is not a transition: '{src}'")

        self._transitions[(src, dst)] = Transition(src, dst, description)
        self._states.update((src, dst))

        logger.debug(f"[STATE_MACHINE] Registered {self.entity_name}: '{src}' -> '{dst}'")
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def is_terminal(self, state: Any) -> bool:
        return value_of(state) in self._terminal

    def get_allowed_transitions(self, from_state: Any) -> List[str]:
        """Get list of valid target states from a given state."""
        src = value_of(from_state)
        return [dst for (s, dst) in self._transitions if s == src]

    def can_transition(self, from_state: Any, to_state: Any) -> bool:
        return (value_of(from_state), value_of(to_state)) in self._transitions

    def validate_transition(self, from_state: Any, to_state: Any) -> None:
        """Raises InvalidTransitionError if the move is not registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=value_of(from_state),
                to_state=value_of(to_state),
                allowed=self.get_allowed_transitions(from_state)
            )

    # =========================================================================
    # UPDATE DOCUMENTS
    # =========================================================================

    def get_history_entry(
        self,
        from_state: Any,
        to_state: Any,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": value_of(from_state),
            "to_state": value_of(to_state),
            "transitioned_at": at or datetime.utcnow(),
            "transitioned_by": actor,
            "metadata": metadata or {}
        }

    def build_update(
        self,
        from_state: Any,
        to_state: Any,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        extra_set: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Build the MongoDB update for a validated transition.

        Callers filter on the current status as well, so a concurrent writer
        that moved the document first makes the update match nothing.
        """
        now = datetime.utcnow()
        update: Dict[str, Any] = {
            "$set": {
                self.status_field: value_of(to_state),
                "updated_at": now,
                **(extra_set or {})
            }
        }
        if self.history_field:
            update["$push"] = {
                self.history_field: self.get_history_entry(from_state, to_state, actor, metadata, now)
            }
        return update

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_graph(self) -> Dict[str, List[str]]:
        """Get state graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions:
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# ENTITY MACHINES
# =============================================================================

def build_order_state_machine() -> StateMachine:
    machine = StateMachine("order", terminal_states=TERMINAL_ORDER_STATUSES)
    (machine
        .register(OrderStatus.PENDING, OrderStatus.CONFIRMED, "Payment confirmed")
        .register(OrderStatus.PENDING, OrderStatus.CANCELLED, "Cancelled before confirmation")
        .register(OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED, "Payment failed")
        .register(OrderStatus.CONFIRMED, OrderStatus.PROCESSING, "Dispatch preparation started")
        .register(OrderStatus.CONFIRMED, OrderStatus.CANCELLED, "Cancelled after confirmation")
        .register(OrderStatus.PROCESSING, OrderStatus.IN_TRANSIT, "Left the depot")
        .register(OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED, "Delivered to customer")
        .register(OrderStatus.PAYMENT_FAILED, OrderStatus.PENDING, "Payment retried")
        .register(OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED, "Abandoned after failed payment"))
    return machine


def build_payment_state_machine() -> StateMachine:
    machine = StateMachine("payment", terminal_states=TERMINAL_PAYMENT_STATUSES)
    for src in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        for dst in (PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED,
                    PaymentStatus.REVERSED, PaymentStatus.CANCELLED):
            machine.register(src, dst)
    machine.register(PaymentStatus.PENDING, PaymentStatus.PROCESSING, "Gateway charge initialized")
    return machine


ORDER_STATE_MACHINE = build_order_state_machine()
PAYMENT_STATE_MACHINE = build_payment_state_machine()
