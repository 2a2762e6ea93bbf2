"""
TradeBridge Core: Order State Machine

Explicit order lifecycle with guarded transitions.

    created -> payment_pending -> (payment_confirmed | payment_failed)
    payment_confirmed -> steam_offer_pending -> steam_offer_sent
        -> (steam_offer_accepted | steam_offer_expired)
    steam_offer_accepted -> steam_hold_pending -> trade_completed
    steam_hold_pending -> escalated (release failed, or offer died after acceptance)
    steam_offer_expired -> refund_initiated -> refund_completed

Facts that match no outgoing edge are rejected with StaleFact and never
applied. The machine only mutates orders; scheduling, polling and external
calls are the orchestrator's job.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Dict, Any, List, Callable
import logging

from core.exceptions import StaleFact, UnknownOrder
from core.facts import Fact, FactKind

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Order lifecycle states"""
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"            # terminal
    STEAM_OFFER_PENDING = "steam_offer_pending"
    STEAM_OFFER_SENT = "steam_offer_sent"
    STEAM_OFFER_ACCEPTED = "steam_offer_accepted"
    STEAM_OFFER_EXPIRED = "steam_offer_expired"
    STEAM_HOLD_PENDING = "steam_hold_pending"
    TRADE_COMPLETED = "trade_completed"          # terminal
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"        # terminal
    ESCALATED = "escalated"                      # terminal, needs an operator


TERMINAL_STATES = {
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.TRADE_COMPLETED,
    OrderStatus.REFUND_COMPLETED,
    OrderStatus.ESCALATED,
}

OUTCOMES = {
    OrderStatus.TRADE_COMPLETED: "completed",
    OrderStatus.REFUND_COMPLETED: "refunded",
    OrderStatus.PAYMENT_FAILED: "failed",
    OrderStatus.ESCALATED: "failed",
}

# States covered by the payment-await deadline
PAYMENT_WINDOW = {OrderStatus.CREATED, OrderStatus.PAYMENT_PENDING}


@dataclass
class Order:
    """
    One purchase attempt.

    Mutated only through OrderStateMachine; never deleted.
    """
    order_id: str
    buyer_ref: str
    item_ref: str
    price_amount: int
    risk_score: str
    trade_url: str = ""
    items: List[str] = field(default_factory=list)
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state_entered_at: Optional[datetime] = None

    payment_ref: Optional[str] = None
    escrow_id: Optional[str] = None
    offer_id: Optional[str] = None
    refund_ref: Optional[str] = None

    flagged_for_audit: bool = False
    failure_reason: Optional[str] = None
    offer_attempts: int = 0
    release_requested: bool = False
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.order_id:
            raise ValueError("order_id is required")
        if self.price_amount <= 0:
            raise ValueError("price_amount must be positive")
        if not self.items:
            self.items = [self.item_ref]
        if self.state_entered_at is None:
            self.state_entered_at = self.created_at

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def outcome(self) -> Optional[str]:
        """completed / refunded / failed once terminal, else None"""
        return OUTCOMES.get(self.status)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "buyer_ref": self.buyer_ref,
            "item_ref": self.item_ref,
            "price_amount": self.price_amount,
            "risk_score": self.risk_score,
            "trade_url": self.trade_url,
            "items": list(self.items),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "state_entered_at": self.state_entered_at.isoformat(),
            "payment_ref": self.payment_ref,
            "escrow_id": self.escrow_id,
            "offer_id": self.offer_id,
            "refund_ref": self.refund_ref,
            "flagged_for_audit": self.flagged_for_audit,
            "failure_reason": self.failure_reason,
            "offer_attempts": self.offer_attempts,
            "release_requested": self.release_requested,
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            order_id=data["order_id"],
            buyer_ref=data["buyer_ref"],
            item_ref=data["item_ref"],
            price_amount=int(data["price_amount"]),
            risk_score=data["risk_score"],
            trade_url=data.get("trade_url", ""),
            items=list(data.get("items") or []),
            status=OrderStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            state_entered_at=datetime.fromisoformat(data["state_entered_at"]),
            payment_ref=data.get("payment_ref"),
            escrow_id=data.get("escrow_id"),
            offer_id=data.get("offer_id"),
            refund_ref=data.get("refund_ref"),
            flagged_for_audit=bool(data.get("flagged_for_audit", False)),
            failure_reason=data.get("failure_reason"),
            offer_attempts=int(data.get("offer_attempts", 0)),
            release_requested=bool(data.get("release_requested", False)),
            history=list(data.get("history") or []),
        )


@dataclass(frozen=True)
class Step:
    """One accepted fact. from_status == to_status for self-loops."""
    order_id: str
    fact: Fact
    from_status: OrderStatus
    to_status: OrderStatus

    @property
    def is_transition(self) -> bool:
        return self.from_status is not self.to_status

    @property
    def entered_terminal(self) -> bool:
        return self.is_transition and self.to_status in TERMINAL_STATES


class OrderStateMachine:
    """
    Guarded transitions for every tracked order.

    Callers hold ``lock_for(order_id)`` around ``apply`` so exactly one fact
    is applied per order at a time; different orders never contend.
    """

    # state -> fact -> next state
    TRANSITIONS: Dict[OrderStatus, Dict[FactKind, OrderStatus]] = {
        OrderStatus.CREATED: {
            FactKind.PAYMENT_SUBMITTED: OrderStatus.PAYMENT_PENDING,
            FactKind.PAYMENT_TIMEOUT: OrderStatus.PAYMENT_FAILED,
        },
        OrderStatus.PAYMENT_PENDING: {
            FactKind.PAYMENT_CONFIRMED: OrderStatus.PAYMENT_CONFIRMED,
            FactKind.PAYMENT_FAILED: OrderStatus.PAYMENT_FAILED,
            FactKind.PAYMENT_TIMEOUT: OrderStatus.PAYMENT_FAILED,
        },
        OrderStatus.PAYMENT_CONFIRMED: {
            FactKind.ESCROW_LOCKED: OrderStatus.STEAM_OFFER_PENDING,
            FactKind.ESCROW_LOCK_FAILED: OrderStatus.ESCALATED,
        },
        OrderStatus.STEAM_OFFER_PENDING: {
            FactKind.OFFER_SENT: OrderStatus.STEAM_OFFER_SENT,
            FactKind.OFFER_DEFERRED: OrderStatus.STEAM_OFFER_PENDING,
            FactKind.OFFER_RETRY_DUE: OrderStatus.STEAM_OFFER_PENDING,
            FactKind.OFFER_FAILED: OrderStatus.REFUND_INITIATED,
        },
        OrderStatus.STEAM_OFFER_SENT: {
            FactKind.OFFER_ACCEPTED: OrderStatus.STEAM_OFFER_ACCEPTED,
            FactKind.OFFER_EXPIRED: OrderStatus.STEAM_OFFER_EXPIRED,
            FactKind.OFFER_TIMEOUT: OrderStatus.STEAM_OFFER_EXPIRED,
        },
        OrderStatus.STEAM_OFFER_ACCEPTED: {
            FactKind.HOLD_STARTED: OrderStatus.STEAM_HOLD_PENDING,
        },
        OrderStatus.STEAM_HOLD_PENDING: {
            FactKind.OFFER_HELD: OrderStatus.STEAM_HOLD_PENDING,
            FactKind.HOLD_CLEARED: OrderStatus.STEAM_HOLD_PENDING,
            FactKind.ESCROW_RELEASED: OrderStatus.TRADE_COMPLETED,
            FactKind.ESCROW_RELEASE_FAILED: OrderStatus.ESCALATED,
            # Items may already have moved; an operator decides release or refund
            FactKind.OFFER_EXPIRED: OrderStatus.ESCALATED,
        },
        OrderStatus.STEAM_OFFER_EXPIRED: {
            FactKind.REFUND_REQUESTED: OrderStatus.REFUND_INITIATED,
        },
        OrderStatus.REFUND_INITIATED: {
            FactKind.REFUND_PROCESSED: OrderStatus.REFUND_COMPLETED,
            FactKind.REFUND_FAILED: OrderStatus.ESCALATED,
        },
        # Terminal states have no outbound transitions
        OrderStatus.PAYMENT_FAILED: {},
        OrderStatus.TRADE_COMPLETED: {},
        OrderStatus.REFUND_COMPLETED: {},
        OrderStatus.ESCALATED: {},
    }

    # Entering these states immediately applies the follow-up fact
    AUTOMATIC = {
        OrderStatus.STEAM_OFFER_ACCEPTED: FactKind.HOLD_STARTED,
        OrderStatus.STEAM_OFFER_EXPIRED: FactKind.REFUND_REQUESTED,
    }

    # Facts whose ref must equal the order's recorded reference
    REF_FIELDS = {
        FactKind.PAYMENT_CONFIRMED: "payment_ref",
        FactKind.PAYMENT_FAILED: "payment_ref",
        FactKind.OFFER_ACCEPTED: "offer_id",
        FactKind.OFFER_HELD: "offer_id",
        FactKind.OFFER_EXPIRED: "offer_id",
        FactKind.HOLD_CLEARED: "offer_id",
        FactKind.ESCROW_RELEASED: "escrow_id",
        FactKind.ESCROW_RELEASE_FAILED: "escrow_id",
    }

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.orders: Dict[str, Order] = {}
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()
        logger.info("OrderStateMachine initialized")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def create_order(
        self,
        order_id: str,
        buyer_ref: str,
        item_ref: str,
        price_amount: int,
        risk_score: str,
        trade_url: str = "",
        items: Optional[List[str]] = None,
        flagged_for_audit: bool = False,
    ) -> Order:
        """
        Create a new order in CREATED.

        Raises:
            ValueError: order_id already tracked, or invalid fields
        """
        now = self._clock()
        order = Order(
            order_id=order_id,
            buyer_ref=buyer_ref,
            item_ref=item_ref,
            price_amount=int(price_amount),
            risk_score=risk_score,
            trade_url=trade_url,
            items=list(items or []),
            created_at=now,
            state_entered_at=now,
            flagged_for_audit=flagged_for_audit,
        )
        with self._registry_lock:
            if order_id in self.orders:
                raise ValueError(f"Order {order_id} already exists")
            self.orders[order_id] = order
            self._locks[order_id] = Lock()

        logger.info(f"Created order {order_id}: {item_ref} for {price_amount} (risk={risk_score})")
        return order

    def load(self, order: Order) -> None:
        """Track an order restored from the state store."""
        with self._registry_lock:
            self.orders[order.order_id] = order
            self._locks.setdefault(order.order_id, Lock())

    def lock_for(self, order_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(order_id)
        if lock is None:
            raise UnknownOrder(order_id)
        return lock

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def require(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise UnknownOrder(order_id)
        return order

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply(self, fact: Fact) -> List[Step]:
        """
        Apply one fact plus any automatic follow-ups.

        Caller must hold lock_for(fact.order_id).

        Returns:
            Accepted steps in order (self-loops included)

        Raises:
            StaleFact: no edge for this fact, or reference mismatch
            UnknownOrder: order not tracked
        """
        order = self.require(fact.order_id)
        steps = [self._apply_one(order, fact)]

        follow_up = self.AUTOMATIC.get(order.status)
        while follow_up is not None:
            steps.append(self._apply_one(order, Fact(follow_up, order.order_id, observed_at=fact.observed_at)))
            follow_up = self.AUTOMATIC.get(order.status)
        return steps

    def _apply_one(self, order: Order, fact: Fact) -> Step:
        current = order.status
        next_status = self.TRANSITIONS.get(current, {}).get(fact.kind)
        if next_status is None:
            raise StaleFact(order.order_id, current.value, fact.kind.value)

        ref_field = self.REF_FIELDS.get(fact.kind)
        if ref_field and fact.ref is not None:
            expected = getattr(order, ref_field)
            if expected is not None and fact.ref != expected:
                raise StaleFact(
                    order.order_id, current.value, fact.kind.value,
                    mismatch=True, detail=f"{ref_field}={expected}, fact ref={fact.ref}",
                )

        if fact.kind is FactKind.HOLD_CLEARED:
            if order.release_requested:
                raise StaleFact(order.order_id, current.value, fact.kind.value, detail="release already requested")
            order.release_requested = True

        self._record_refs(order, fact)

        if fact.kind is FactKind.OFFER_DEFERRED:
            order.offer_attempts += 1

        if next_status is current:
            logger.debug(f"Order {order.order_id} accepted {fact.kind.value} in {current.value}")
            return Step(order.order_id, fact, current, current)

        now = self._clock()
        order.status = next_status
        order.state_entered_at = now
        if fact.reason and next_status in (
            OrderStatus.PAYMENT_FAILED, OrderStatus.ESCALATED, OrderStatus.REFUND_INITIATED,
        ):
            order.failure_reason = fact.reason
        order.history.append({
            "from": current.value,
            "to": next_status.value,
            "fact": fact.kind.value,
            "at": now.isoformat(),
        })

        logger.info(f"Order {order.order_id} transitioned: {current.value} → {next_status.value}")
        return Step(order.order_id, fact, current, next_status)

    @staticmethod
    def _record_refs(order: Order, fact: Fact) -> None:
        if fact.kind is FactKind.PAYMENT_SUBMITTED:
            if not fact.ref:
                raise ValueError("payment_submitted requires a payment reference")
            order.payment_ref = fact.ref
        elif fact.kind is FactKind.ESCROW_LOCKED:
            if not fact.ref:
                raise ValueError("escrow_locked requires an escrow id")
            order.escrow_id = fact.ref
        elif fact.kind is FactKind.OFFER_SENT:
            if not fact.ref:
                raise ValueError("offer_sent requires an offer id")
            order.offer_id = fact.ref
        elif fact.kind is FactKind.REFUND_PROCESSED:
            order.refund_ref = fact.ref

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_orders(self) -> List[Order]:
        return [o for o in list(self.orders.values()) if not o.is_terminal()]

    def get_terminal_orders(self) -> List[Order]:
        return [o for o in list(self.orders.values()) if o.is_terminal()]

    def get_orders_by_status(self, status: OrderStatus) -> List[Order]:
        return [o for o in list(self.orders.values()) if o.status is status]

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of all orders"""
        orders = list(self.orders.values())
        status_counts = {status.value: 0 for status in OrderStatus}
        for order in orders:
            status_counts[order.status.value] += 1
        return {
            "total_orders": len(orders),
            "active_orders": sum(1 for o in orders if not o.is_terminal()),
            "terminal_orders": sum(1 for o in orders if o.is_terminal()),
            "flagged_for_audit": sum(1 for o in orders if o.flagged_for_audit),
            "status_counts": status_counts,
        }
