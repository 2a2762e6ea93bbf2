"""
TradeBridge Core: Timeout Scheduler

One deadline per (order_id, watch). Scheduling again replaces the previous
deadline; a replaced or cancelled deadline never fires.

Watches in use:
- payment:      payment-await deadline (created / payment_pending)
- offer:        offer-await deadline, OfferRecord.expires_at
- offer_retry:  quota back-off before re-sending an offer
"""

import dataclasses
import heapq
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from core.facts import Fact

logger = logging.getLogger(__name__)

DeadlineKey = Tuple[str, str]


class TimeoutScheduler:
    """
    Heap of deadlines with generation tokens.

    Every schedule() bumps the key's generation; heap entries whose
    generation is no longer current are dropped when they surface.
    """

    def __init__(
        self,
        on_fire: Optional[Callable[[Fact], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_wait_seconds: float = 1.0,
    ):
        self.on_fire = on_fire
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_wait_seconds = max_wait_seconds

        self._heap: List[Tuple[datetime, int, DeadlineKey, Fact]] = []
        self._current: Dict[DeadlineKey, int] = {}
        self._generations = itertools.count(1)
        self._cond = threading.Condition()

        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def schedule(self, order_id: str, watch: str, fire_at: datetime, fact: Fact) -> None:
        key = (order_id, watch)
        with self._cond:
            generation = next(self._generations)
            self._current[key] = generation
            heapq.heappush(self._heap, (fire_at, generation, key, fact))
            self._cond.notify()
        logger.debug(f"Deadline {watch} for order {order_id} at {fire_at.isoformat()}")

    def cancel(self, order_id: str, watch: Optional[str] = None) -> None:
        """Retire one watch, or every watch of the order when ``watch`` is None."""
        with self._cond:
            if watch is not None:
                self._current.pop((order_id, watch), None)
                return
            for key in [k for k in self._current if k[0] == order_id]:
                del self._current[key]

    def pending(self, order_id: Optional[str] = None) -> Dict[DeadlineKey, datetime]:
        with self._cond:
            live = {}
            for fire_at, generation, key, _ in self._heap:
                if self._current.get(key) == generation and (order_id is None or key[0] == order_id):
                    live[key] = fire_at
            return live

    def fire_due(self, now: Optional[datetime] = None) -> List[Fact]:
        """Fire every live deadline at or before ``now``."""
        now = now or self._clock()
        due: List[Fact] = []
        with self._cond:
            while self._heap and self._heap[0][0] <= now:
                fire_at, generation, key, fact = heapq.heappop(self._heap)
                if self._current.get(key) != generation:
                    continue
                del self._current[key]
                due.append(dataclasses.replace(fact, observed_at=now))

        for fact in due:
            logger.info(f"Deadline fired: {fact.kind.value} for order {fact.order_id}")
            if self.on_fire is None:
                continue
            try:
                self.on_fire(fact)
            except Exception:
                logger.exception(f"Deadline handler failed for order {fact.order_id}")
        return due

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name="timeout-scheduler", daemon=True)
        self._thread.start()
        logger.info("Timeout scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Timeout scheduler stopped")

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                wait = self.max_wait_seconds
                if self._heap:
                    until_next = (self._heap[0][0] - self._clock()).total_seconds()
                    wait = max(0.0, min(wait, until_next))
                if wait > 0:
                    self._cond.wait(wait)
                if self._stopping:
                    return
            self.fire_due()
