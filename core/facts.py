"""
TradeBridge Core: Facts

Facts are what collaborators report to the order state machine. They are
tagged by FactKind and carry the reference they concern so the machine can
reject facts addressed to a different payment, escrow or offer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class FactKind(Enum):
    """Every fact the machine understands"""
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_TIMEOUT = "payment_timeout"

    ESCROW_LOCKED = "escrow_locked"
    ESCROW_LOCK_FAILED = "escrow_lock_failed"

    OFFER_SENT = "offer_sent"
    OFFER_FAILED = "offer_failed"
    OFFER_DEFERRED = "offer_deferred"      # internal, quota back-off
    OFFER_RETRY_DUE = "offer_retry_due"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_HELD = "offer_held"
    OFFER_EXPIRED = "offer_expired"
    OFFER_TIMEOUT = "offer_timeout"

    HOLD_STARTED = "hold_started"          # internal, follows acceptance
    HOLD_CLEARED = "hold_cleared"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_RELEASE_FAILED = "escrow_release_failed"

    REFUND_REQUESTED = "refund_requested"  # internal, follows expiry
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"


TIMEOUT_KINDS = {FactKind.PAYMENT_TIMEOUT, FactKind.OFFER_TIMEOUT}


@dataclass(frozen=True)
class Fact:
    """A single observation about one order."""
    kind: FactKind
    order_id: str
    ref: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_timeout(self) -> bool:
        return self.kind in TIMEOUT_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order_id": self.order_id,
            "ref": self.ref,
            "reason": self.reason,
            "data": dict(self.data),
            "observed_at": self.observed_at.isoformat(),
        }
