"""
TradeBridge Core: Payment Watcher

Polls the payment rail for each watched payment reference and reports the
outcome as a fact, exactly once per reference.

Reports:
- PAYMENT_CONFIRMED when the rail shows enough confirmations for the expected amount
- PAYMENT_FAILED on amount mismatch or a rail-reported failure

Rail outages and malformed receipts never produce a failure; the reference is
retried on a later pass with full-jitter backoff. Deadlines belong to the
TimeoutScheduler.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional

from core.exceptions import MalformedPayload, RailUnavailable
from core.facts import Fact, FactKind
from core.payloads import RailReceipt, parse_rail_receipt
from core.retry import backoff_delay

logger = logging.getLogger(__name__)


@dataclass
class PaymentWatch:
    """One payment reference being observed"""
    handle: str
    order_id: str
    payment_ref: str
    expected_amount: int
    next_poll_at: float = 0.0
    failures: int = 0


class PaymentWatcher:
    """
    Registry of watched payment references plus a single polling pass.

    The runner decides the cadence by calling ``poll_once`` periodically.
    """

    def __init__(
        self,
        rail,
        required_confirmations: int = 1,
        on_fact: Optional[Callable[[Fact], None]] = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        reported_retention: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            rail: Object with ``get_payment(payment_ref) -> dict``
            required_confirmations: Confirmation depth needed before reporting
            on_fact: Receives every reported fact
            base_delay: Backoff base after a transient rail failure
            max_delay: Backoff cap
            reported_retention: Seconds a reported reference is remembered, so a
                re-watch within that time is ignored
            clock: Monotonic seconds (injectable for tests)
        """
        self.rail = rail
        self.required_confirmations = max(int(required_confirmations), 1)
        self.on_fact = on_fact
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.reported_retention = reported_retention
        self._clock = clock

        self._watches: Dict[str, PaymentWatch] = {}
        self._reported: Dict[str, float] = {}  # payment_ref -> reported at
        self._lock = Lock()

    def watch(self, order_id: str, payment_ref: str, expected_amount: int) -> str:
        """Start watching ``payment_ref``; returns a subscription handle."""
        handle = f"watch:{payment_ref}"
        with self._lock:
            if payment_ref in self._reported:
                logger.debug(f"Payment {payment_ref} already reported; not re-watching")
                return handle
            existing = self._watches.get(payment_ref)
            if existing:
                return existing.handle
            self._watches[payment_ref] = PaymentWatch(
                handle=handle,
                order_id=order_id,
                payment_ref=payment_ref,
                expected_amount=int(expected_amount),
            )
        logger.info(f"Watching payment {payment_ref} for order {order_id} (expect {expected_amount})")
        return handle

    def unwatch(self, payment_ref: str) -> None:
        with self._lock:
            if self._watches.pop(payment_ref, None):
                logger.debug(f"Stopped watching payment {payment_ref}")

    def is_watching(self, payment_ref: str) -> bool:
        with self._lock:
            return payment_ref in self._watches

    def poll_once(self, now: Optional[float] = None) -> List[Fact]:
        """
        Query the rail once for every watch that is due.

        Returns:
            Facts reported during this pass
        """
        now = self._clock() if now is None else now
        with self._lock:
            self._forget_reported(now)
            due = [w for w in self._watches.values() if w.next_poll_at <= now]

        facts: List[Fact] = []
        for watch in due:
            fact = self._check(watch, now)
            if fact is None:
                continue
            with self._lock:
                # Lost a race with unwatch() or another pass
                if watch.payment_ref in self._reported or watch.payment_ref not in self._watches:
                    continue
                self._reported[watch.payment_ref] = now
                self._watches.pop(watch.payment_ref, None)
            facts.append(fact)

        for fact in facts:
            logger.info(f"Payment {fact.ref} for order {fact.order_id}: {fact.kind.value}")
            if self.on_fact:
                self.on_fact(fact)
        return facts

    def _forget_reported(self, now: float) -> None:
        """Drop reported references older than the retention window. Caller holds _lock."""
        cutoff = now - self.reported_retention
        expired = [ref for ref, at in self._reported.items() if at < cutoff]
        for ref in expired:
            del self._reported[ref]
        if expired:
            logger.debug(f"Forgot {len(expired)} reported payment reference(s)")

    def _check(self, watch: PaymentWatch, now: float) -> Optional[Fact]:
        try:
            receipt = parse_rail_receipt(self.rail.get_payment(watch.payment_ref))
            if receipt.payment_ref != watch.payment_ref:
                raise MalformedPayload(
                    "payment_rail",
                    f"receipt for {receipt.payment_ref} returned for {watch.payment_ref}",
                )
        except (RailUnavailable, MalformedPayload) as e:
            self._defer(watch, now, e)
            return None

        watch.failures = 0
        return self._judge(watch, receipt)

    def _defer(self, watch: PaymentWatch, now: float, error: Exception) -> None:
        delay = backoff_delay(watch.failures, self.base_delay, self.max_delay)
        with self._lock:
            watch.failures += 1
            watch.next_poll_at = now + delay
        logger.warning(
            f"Rail check for {watch.payment_ref} failed ({error}); "
            f"retry in {delay:.1f}s (failure #{watch.failures})"
        )

    def _judge(self, watch: PaymentWatch, receipt: RailReceipt) -> Optional[Fact]:
        if receipt.status == "failed":
            return Fact(
                FactKind.PAYMENT_FAILED,
                watch.order_id,
                ref=watch.payment_ref,
                reason=receipt.failure_reason or "rail reported failure",
            )

        if receipt.status != "confirmed":
            return None

        if receipt.amount != watch.expected_amount:
            return Fact(
                FactKind.PAYMENT_FAILED,
                watch.order_id,
                ref=watch.payment_ref,
                reason=f"amount mismatch: expected {watch.expected_amount}, got {receipt.amount}",
                data={"received_amount": receipt.amount},
            )

        if receipt.confirmations < self.required_confirmations:
            logger.debug(
                f"Payment {watch.payment_ref} at {receipt.confirmations}/"
                f"{self.required_confirmations} confirmations"
            )
            return None

        return Fact(
            FactKind.PAYMENT_CONFIRMED,
            watch.order_id,
            ref=watch.payment_ref,
            data={"confirmations": receipt.confirmations, "amount": receipt.amount},
        )
