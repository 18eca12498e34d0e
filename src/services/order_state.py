"""
Order state machine - pure transition rules shared by the dispatcher, the reaper and operators.

Nothing here touches the database. Callers take the per-order lock, re-read the
order, build an OrderView, ask this module what to do, and then write the
result (order fields + exactly one audit entry) in the same transaction.

Graph:
    pending         → confirmed | payment_failed | cancelled
    payment_failed  → pending | cancelled
    confirmed       → preparing | cancelled
    preparing       → ready | cancelled
    ready           → picked_up | cancelled
    picked_up       → refunded
    cancelled       → refunded
    refunded        → (terminal)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_FAILED = "payment_failed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class AuditAction(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_UPDATED = "payment_updated"
    ITEM_ADDED = "item_added"
    ITEM_REMOVED = "item_removed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderStatus.PENDING.value: frozenset({"confirmed", "payment_failed", "cancelled"}),
    OrderStatus.PAYMENT_FAILED.value: frozenset({"pending", "cancelled"}),
    OrderStatus.CONFIRMED.value: frozenset({"preparing", "cancelled"}),
    OrderStatus.PREPARING.value: frozenset({"ready", "cancelled"}),
    OrderStatus.READY.value: frozenset({"picked_up", "cancelled"}),
    OrderStatus.PICKED_UP.value: frozenset({"refunded"}),
    OrderStatus.CANCELLED.value: frozenset({"refunded"}),
    OrderStatus.REFUNDED.value: frozenset(),
}

TERMINAL_STATUSES = frozenset({"picked_up", "cancelled", "refunded"})
AWAITING_PAYMENT_STATUSES = frozenset({"pending", "payment_failed"})
ADVANCED_STATUSES = frozenset({"confirmed", "preparing", "ready", "picked_up"})
REFUNDABLE_STATUSES = frozenset({"picked_up", "cancelled"})

# Targets an operator may request directly. confirmed is reachable only through payment.
MANUAL_TARGETS = frozenset({"preparing", "ready", "picked_up", "cancelled", "pending", "refunded"})

PAYMENT_FAILURE_POLICIES = ("cancel", "retry_payment")

# Timestamp column stamped when an order enters a status
STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "preparing": "preparation_started_at",
    "ready": "ready_at",
    "picked_up": "picked_up_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}


class InvalidTransitionError(Exception):
    """Raised when a requested manual transition is not an edge of the graph."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        allowed = ", ".join(sorted(ALLOWED_TRANSITIONS.get(current, ()))) or "none (terminal state)"
        super().__init__(
            message or f"Cannot transition from {current} to {target}. Valid next states: {allowed}"
        )


def is_valid_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_valid_path(statuses: Iterable[str]) -> bool:
    """True if every consecutive pair of statuses is an edge of the graph, starting at pending."""
    statuses = list(statuses)
    if not statuses:
        return True
    if statuses[0] != OrderStatus.PENDING.value:
        return False
    return all(is_valid_transition(a, b) for a, b in zip(statuses, statuses[1:]))


# ---------------------------------------------------------------------------
# Gateway event classification
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


EVENT_KINDS: dict[str, EventKind] = {
    "payment.paid": EventKind.SUCCEEDED,
    "source.chargeable": EventKind.SUCCEEDED,
    "checkout_session.payment.paid": EventKind.SUCCEEDED,
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment.failed": EventKind.FAILED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "refund.updated": EventKind.REFUNDED,
    "payment.refunded": EventKind.REFUNDED,
}


def classify_event(event_type: Optional[str]) -> EventKind:
    """Map a gateway event type to its kind. Anything unrecognised is UNKNOWN (fails closed)."""
    return EVENT_KINDS.get((event_type or "").strip().lower(), EventKind.UNKNOWN)


@dataclass(frozen=True)
class EventDetails:
    """The parts of a gateway payload the transition rules read."""
    gateway_payment_id: Optional[str] = None
    amount: Optional[Decimal] = None  # major units
    reason: Optional[str] = None
    resource_status: Optional[str] = None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TransitionOutcome(str, Enum):
    APPLY = "apply"
    NOOP = "noop"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class OrderView:
    """Read-only snapshot of the fields the rules depend on."""
    status: str
    total: Optional[Decimal] = None
    gateway_payment_id: Optional[str] = None
    refund_required: bool = False


def view_of(order) -> OrderView:
    return OrderView(
        status=order.status,
        total=order.total,
        gateway_payment_id=order.gateway_payment_id,
        refund_required=bool(order.refund_required),
    )


@dataclass(frozen=True)
class Transition:
    outcome: TransitionOutcome
    action: Optional[str] = None
    changes: dict = field(default_factory=dict)
    notes: Optional[str] = None
    anomaly: Optional[str] = None

    @property
    def target_status(self) -> Optional[str]:
        return self.changes.get("status")

    @property
    def writes_audit(self) -> bool:
        return self.outcome != TransitionOutcome.NOOP


def noop(notes: str) -> Transition:
    return Transition(outcome=TransitionOutcome.NOOP, notes=notes)


def _status_changes(target: str, now: datetime) -> dict:
    changes = {"status": target}
    stamp = STATUS_TIMESTAMPS.get(target)
    if stamp:
        changes[stamp] = now
    return changes


def _action_for(target: str) -> str:
    if target == OrderStatus.CANCELLED.value:
        return AuditAction.CANCELLED.value
    if target == OrderStatus.REFUNDED.value:
        return AuditAction.REFUNDED.value
    return AuditAction.STATUS_CHANGED.value


def compute_event_transition(
    view: OrderView,
    kind: EventKind,
    details: EventDetails,
    *,
    now: datetime,
    failure_policy: str = "cancel",
) -> Transition:
    """
    Decide what a gateway event does to an order in its current state.
    Applying the result of a replayed event against a later state yields NOOP or ANOMALY,
    never a second status change.
    """
    status = view.status

    if kind == EventKind.SUCCEEDED:
        if status == OrderStatus.PENDING.value:
            changes = _status_changes(OrderStatus.CONFIRMED.value, now)
            if details.gateway_payment_id and not view.gateway_payment_id:
                changes["gateway_payment_id"] = details.gateway_payment_id
            return Transition(
                outcome=TransitionOutcome.APPLY,
                action=AuditAction.STATUS_CHANGED.value,
                changes=changes,
                notes="Payment confirmed by gateway",
            )
        if status in ADVANCED_STATUSES:
            if (
                details.gateway_payment_id
                and view.gateway_payment_id
                and details.gateway_payment_id != view.gateway_payment_id
            ):
                logger.warning(
                    "Payment success for already-%s order carries a different payment id (%s vs %s)",
                    status, details.gateway_payment_id, view.gateway_payment_id,
                )
            return noop(f"Payment already acknowledged (order is {status})")
        # cancelled, refunded, payment_failed: money taken on an order that is not live
        changes = {}
        if not view.refund_required:
            changes["refund_required"] = True
        if details.gateway_payment_id and not view.gateway_payment_id:
            changes["gateway_payment_id"] = details.gateway_payment_id
        return Transition(
            outcome=TransitionOutcome.ANOMALY,
            action=AuditAction.PAYMENT_UPDATED.value,
            changes=changes,
            notes=f"Payment succeeded while order is {status}; flagged for refund",
            anomaly="payment_after_" + status,
        )

    if kind == EventKind.FAILED:
        if status != OrderStatus.PENDING.value:
            return noop(f"Payment failure ignored (order is {status})")
        reason = "payment_failed"
        if details.reason:
            reason = f"payment_failed: {details.reason}"
        if failure_policy == "retry_payment":
            changes = _status_changes(OrderStatus.PAYMENT_FAILED.value, now)
            changes["cancellation_reason"] = reason
            return Transition(
                outcome=TransitionOutcome.APPLY,
                action=AuditAction.STATUS_CHANGED.value,
                changes=changes,
                notes="Payment failed; awaiting retry",
            )
        changes = _status_changes(OrderStatus.CANCELLED.value, now)
        changes["cancellation_reason"] = reason
        return Transition(
            outcome=TransitionOutcome.APPLY,
            action=AuditAction.CANCELLED.value,
            changes=changes,
            notes="Payment failed; order cancelled",
        )

    if kind == EventKind.REFUNDED:
        if details.resource_status and details.resource_status != "succeeded":
            return noop(f"Refund not settled (status {details.resource_status})")
        if status == OrderStatus.REFUNDED.value:
            return noop("Refund already recorded")
        if status in REFUNDABLE_STATUSES:
            changes = _status_changes(OrderStatus.REFUNDED.value, now)
            changes["refund_amount"] = details.amount if details.amount is not None else view.total
            if view.refund_required:
                changes["refund_required"] = False
            return Transition(
                outcome=TransitionOutcome.APPLY,
                action=AuditAction.REFUNDED.value,
                changes=changes,
                notes="Refund settled by gateway",
            )
        return Transition(
            outcome=TransitionOutcome.ANOMALY,
            action=AuditAction.PAYMENT_UPDATED.value,
            changes={},
            notes=f"Refund settled while order is {status}; needs reconciliation",
            anomaly="refund_while_" + status,
        )

    raise ValueError(f"No transition rules for event kind {kind.value}")


def compute_manual_transition(
    view: OrderView,
    target: str,
    *,
    now: datetime,
    reason: Optional[str] = None,
    no_show: bool = False,
    refund_amount: Optional[Decimal] = None,
) -> Transition:
    """Validate and describe an operator-driven transition. Raises InvalidTransitionError."""
    current = view.status

    if target not in MANUAL_TARGETS:
        raise InvalidTransitionError(current, target, f"{target} cannot be set manually")
    if current == target:
        return noop(f"Order already {target}")
    if not is_valid_transition(current, target):
        raise InvalidTransitionError(current, target)

    changes = _status_changes(target, now)
    notes = reason

    if target == OrderStatus.CANCELLED.value:
        if no_show and current != OrderStatus.READY.value:
            raise InvalidTransitionError(current, target, "Only ready orders can be marked no-show")
        changes["cancellation_reason"] = reason or ("no_show" if no_show else "cancelled_by_operator")
        if no_show:
            changes["no_show"] = True
    elif target == OrderStatus.PENDING.value:
        changes["cancellation_reason"] = None
        notes = reason or "Payment retry requested"
    elif target == OrderStatus.REFUNDED.value:
        amount = refund_amount if refund_amount is not None else view.total
        if amount is not None and view.total is not None and amount > view.total:
            raise InvalidTransitionError(current, target, "Refund amount exceeds order total")
        changes["refund_amount"] = amount
        if view.refund_required:
            changes["refund_required"] = False

    return Transition(
        outcome=TransitionOutcome.APPLY,
        action=_action_for(target),
        changes=changes,
        notes=notes,
    )


def compute_reaper_transition(
    view: OrderView,
    *,
    now: datetime,
    reason: str = "abandoned",
    no_show: bool = False,
) -> Transition:
    """Force-cancel a stale order. NOOP if another writer already moved it."""
    expected = OrderStatus.READY.value if no_show else None
    if view.status in TERMINAL_STATUSES:
        return noop(f"Order already {view.status}")
    if expected and view.status != expected:
        return noop(f"Order no longer {expected} (now {view.status})")
    if not expected and view.status not in AWAITING_PAYMENT_STATUSES:
        return noop(f"Order no longer awaiting payment (now {view.status})")

    changes = _status_changes(OrderStatus.CANCELLED.value, now)
    changes["cancellation_reason"] = reason
    if no_show:
        changes["no_show"] = True
    return Transition(
        outcome=TransitionOutcome.APPLY,
        action=AuditAction.CANCELLED.value,
        changes=changes,
        notes="No-show: not picked up before deadline" if no_show else "Abandoned: no payment before deadline",
    )
