"""
TradeBridge Core: Trade Orchestrator

Drives orders through the saga: payment -> escrow lock -> offer -> release,
with escrow refund compensating the lock when the offer side fails.

Flow for every fact:
1. Under the order's lock: apply the fact, arm/retire deadlines and payment
   watches, persist the order
2. Lock released: publish events, metrics and audit entries
3. Dispatch step handlers (external calls) to the executor; each handler
   turns its outcome into a new fact and feeds it back through handle_fact
"""

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import (
    QuotaExceeded,
    RiskRejected,
    StaleFact,
    TerminalError,
    TradeEngineError,
    TransientError,
)
from core.facts import Fact, FactKind
from core.order_state import (
    OUTCOMES,
    PAYMENT_WINDOW,
    Order,
    OrderStateMachine,
    OrderStatus,
    Step,
)
from core.risk import RiskSignals
from infra.alerting import AlertService, AlertSeverity
from infra.events import EventPublisher
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

# (step name, action, failure fact kind, failure ref)
Effect = Tuple[str, Callable[[], Fact], FactKind, Optional[str]]


class TradeOrchestrator:
    """
    Top-level coordinator. Owns every order transition and refund decision.

    Collaborators report facts; nothing else writes order state.
    """

    def __init__(
        self,
        machine: OrderStateMachine,
        risk_scorer,
        payment_watcher,
        escrow,
        offers,
        scheduler,
        publisher: Optional[EventPublisher] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        store=None,
        audit=None,
        executor=None,
        clock: Optional[Callable[[], datetime]] = None,
        payment_timeout: timedelta = timedelta(minutes=10),
        max_offer_deferrals: int = 5,
    ):
        self.machine = machine
        self.risk = risk_scorer
        self.payment_watcher = payment_watcher
        self.escrow = escrow
        self.offers = offers
        self.scheduler = scheduler
        self.publisher = publisher or EventPublisher()
        self.alerts = alerts or AlertService.disabled()
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.store = store
        self.audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.payment_timeout = payment_timeout
        self.max_offer_deferrals = max_offer_deferrals

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="saga-step")

        # Collaborators report back through handle_fact
        self.payment_watcher.on_fact = self.handle_fact
        self.offers.on_fact = self.handle_fact
        self.scheduler.on_fire = self.handle_fact

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    def place_order(
        self,
        order_id: str,
        buyer_ref: str,
        item_ref: str,
        price_amount: int,
        signals: RiskSignals,
        trade_url: str = "",
        items: Optional[List[str]] = None,
    ) -> Order:
        """
        Risk-gate a purchase request and create the order.

        Raises:
            RiskRejected: High risk; no order is created
        """
        existing = self.machine.get_order(order_id)
        if existing is not None:
            logger.warning(f"Order {order_id} already exists")
            return existing

        if signals.price_amount != price_amount:
            logger.warning(
                f"Order {order_id}: risk signals priced at {signals.price_amount}, "
                f"scoring the order price {price_amount} instead"
            )
            signals = dataclasses.replace(signals, price_amount=price_amount)

        assessment = self.risk.assess(signals)
        self.metrics.record_risk(assessment.level.value)

        if assessment.blocked:
            logger.warning(f"Order {order_id} rejected by risk gate: {'; '.join(assessment.reasons)}")
            if self.audit:
                self.audit.log_risk_rejection(order_id, buyer_ref, item_ref, price_amount, assessment)
            self.publisher.publish(
                "order.risk_rejected",
                order_id,
                buyer_ref=buyer_ref,
                item_ref=item_ref,
                price_amount=price_amount,
                reasons=list(assessment.reasons),
            )
            raise RiskRejected(assessment.reasons, assessment)

        order = self.machine.create_order(
            order_id=order_id,
            buyer_ref=buyer_ref,
            item_ref=item_ref,
            price_amount=price_amount,
            risk_score=assessment.level.value,
            trade_url=trade_url,
            items=items,
            flagged_for_audit=assessment.needs_audit,
        )

        with self.machine.lock_for(order_id):
            self.scheduler.schedule(
                order_id,
                "payment",
                order.created_at + self.payment_timeout,
                Fact(FactKind.PAYMENT_TIMEOUT, order_id, reason="payment not confirmed in time"),
            )
            self._persist(order)

        self.publisher.publish(
            "order.created",
            order_id,
            risk_score=order.risk_score,
            flagged_for_audit=order.flagged_for_audit,
            price_amount=order.price_amount,
        )
        if self.audit:
            self.audit.log_order_created(order, assessment)
        self._update_active_gauge()
        return order

    def submit_payment(self, order_id: str, payment_ref: str) -> bool:
        """Buyer submitted a payment; start watching the rail for it."""
        return self.handle_fact(Fact(FactKind.PAYMENT_SUBMITTED, order_id, ref=payment_ref))

    def handle_fact(self, fact: Fact) -> bool:
        """
        Apply one fact to its order.

        Returns:
            True if accepted (including self-loops), False if discarded
        """
        effects: List[Effect] = []
        stale: Optional[StaleFact] = None

        with self.machine.lock_for(fact.order_id):
            order = self.machine.require(fact.order_id)
            try:
                steps = self.machine.apply(fact)
            except StaleFact as e:
                stale = e
                steps = []
            else:
                for step in steps:
                    self._bookkeep(order, step)
                    effects.extend(self._effects_for(order, step))
                self._persist(order)
                view = order.to_dict()

        if stale is not None:
            self._discard(fact, stale)
            return False

        self._announce(view, steps)
        for effect in effects:
            self._dispatch(fact.order_id, effect)
        self._update_active_gauge()
        return True

    def poll(self) -> int:
        """One polling pass over the payment rail and open offers."""
        facts = self.payment_watcher.poll_once()
        facts += self.offers.poll_once()
        return len(facts)

    def resume(self) -> int:
        """
        Reload non-terminal orders from the store after a restart.

        Deadlines and payment watches are re-armed; steps whose outcome may
        have been lost are dispatched again (they are idempotent).

        Returns:
            Number of orders resumed
        """
        if self.store is None:
            return 0

        resumed = 0
        for order_id, raw in self.store.all("orders").items():
            if self.machine.get_order(order_id) is not None:
                continue
            order = Order.from_dict(raw)
            self.machine.load(order)
            if order.is_terminal():
                continue

            with self.machine.lock_for(order_id):
                self._rearm(order)
                effects = self._recovery_effects(order)
            for effect in effects:
                self._dispatch(order_id, effect)
            resumed += 1

        if resumed:
            logger.info(f"Resumed {resumed} in-flight orders")
        self._update_active_gauge()
        return resumed

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.machine.get_order(order_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Bookkeeping (order lock held)
    # ------------------------------------------------------------------

    def _bookkeep(self, order: Order, step: Step) -> None:
        order_id = order.order_id
        source, target = step.from_status, step.to_status

        if step.fact.kind is FactKind.OFFER_DEFERRED:
            retry_after = float(step.fact.data.get("retry_after", 1.0))
            self.scheduler.schedule(
                order_id,
                "offer_retry",
                self._clock() + timedelta(seconds=retry_after),
                Fact(FactKind.OFFER_RETRY_DUE, order_id),
            )

        if not step.is_transition:
            return

        if target is OrderStatus.PAYMENT_PENDING:
            self.payment_watcher.watch(order_id, order.payment_ref, order.price_amount)

        if source in PAYMENT_WINDOW and target not in PAYMENT_WINDOW:
            self.scheduler.cancel(order_id, "payment")
            if order.payment_ref:
                self.payment_watcher.unwatch(order.payment_ref)

        if source is OrderStatus.STEAM_OFFER_PENDING:
            self.scheduler.cancel(order_id, "offer_retry")

        if target is OrderStatus.STEAM_OFFER_SENT:
            self._arm_offer_deadline(order)

        if source is OrderStatus.STEAM_OFFER_SENT:
            self.scheduler.cancel(order_id, "offer")
            if target is OrderStatus.STEAM_OFFER_EXPIRED and order.offer_id:
                self.offers.retire(order.offer_id)

        if step.entered_terminal:
            self.scheduler.cancel(order_id)

    def _arm_offer_deadline(self, order: Order) -> None:
        record = self.offers.get_record(order.offer_id) if order.offer_id else None
        if record is None:
            logger.error(f"No offer record for order {order.order_id}; offer deadline not armed")
            return
        self.scheduler.schedule(
            order.order_id,
            "offer",
            record.expires_at,
            Fact(FactKind.OFFER_TIMEOUT, order.order_id, reason="offer not accepted before expiry"),
        )

    def _rearm(self, order: Order) -> None:
        if order.status in PAYMENT_WINDOW:
            self.scheduler.schedule(
                order.order_id,
                "payment",
                order.created_at + self.payment_timeout,
                Fact(FactKind.PAYMENT_TIMEOUT, order.order_id, reason="payment not confirmed in time"),
            )
            if order.status is OrderStatus.PAYMENT_PENDING:
                self.payment_watcher.watch(order.order_id, order.payment_ref, order.price_amount)
        elif order.status is OrderStatus.STEAM_OFFER_SENT:
            self._arm_offer_deadline(order)

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    def _effects_for(self, order: Order, step: Step) -> List[Effect]:
        if step.fact.kind is FactKind.OFFER_RETRY_DUE:
            return [self._send_offer_effect(order)]
        if step.fact.kind is FactKind.HOLD_CLEARED:
            return [self._release_effect(order)]
        if not step.is_transition:
            return []
        if step.to_status is OrderStatus.PAYMENT_CONFIRMED:
            return [self._lock_effect(order)]
        if step.to_status is OrderStatus.STEAM_OFFER_PENDING:
            return [self._send_offer_effect(order)]
        if step.to_status is OrderStatus.REFUND_INITIATED:
            return [self._refund_effect(order)]
        return []

    def _recovery_effects(self, order: Order) -> List[Effect]:
        if order.status is OrderStatus.PAYMENT_CONFIRMED:
            return [self._lock_effect(order)]
        if order.status is OrderStatus.STEAM_OFFER_PENDING:
            return [self._send_offer_effect(order)]
        if order.status is OrderStatus.STEAM_HOLD_PENDING and order.release_requested:
            return [self._release_effect(order)]
        if order.status is OrderStatus.REFUND_INITIATED:
            return [self._refund_effect(order)]
        return []

    def _lock_effect(self, order: Order) -> Effect:
        order_id, amount = order.order_id, order.price_amount

        def action() -> Fact:
            try:
                escrow_id = self.escrow.lock(order_id, amount)
            except TradeEngineError as e:
                return Fact(FactKind.ESCROW_LOCK_FAILED, order_id, reason=str(e))
            return Fact(FactKind.ESCROW_LOCKED, order_id, ref=escrow_id)

        return ("escrow_lock", action, FactKind.ESCROW_LOCK_FAILED, None)

    def _send_offer_effect(self, order: Order) -> Effect:
        order_id = order.order_id
        buyer_ref, items, trade_url = order.buyer_ref, list(order.items), order.trade_url
        attempts = order.offer_attempts

        def action() -> Fact:
            try:
                offer_id = self.offers.create_and_send(order_id, buyer_ref, items, trade_url)
            except QuotaExceeded as e:
                if attempts >= self.max_offer_deferrals:
                    return Fact(FactKind.OFFER_FAILED, order_id, reason=f"quota deferrals exhausted: {e}")
                return Fact(
                    FactKind.OFFER_DEFERRED,
                    order_id,
                    reason=str(e),
                    data={"retry_after": e.retry_after},
                )
            except (TerminalError, TransientError) as e:
                return Fact(FactKind.OFFER_FAILED, order_id, reason=str(e))
            return Fact(FactKind.OFFER_SENT, order_id, ref=offer_id)

        return ("offer_send", action, FactKind.OFFER_FAILED, None)

    def _release_effect(self, order: Order) -> Effect:
        order_id, escrow_id = order.order_id, order.escrow_id

        def action() -> Fact:
            try:
                self.escrow.release(escrow_id)
            except TradeEngineError as e:
                return Fact(FactKind.ESCROW_RELEASE_FAILED, order_id, ref=escrow_id, reason=str(e))
            return Fact(FactKind.ESCROW_RELEASED, order_id, ref=escrow_id)

        return ("escrow_release", action, FactKind.ESCROW_RELEASE_FAILED, escrow_id)

    def _refund_effect(self, order: Order) -> Effect:
        order_id, escrow_id = order.order_id, order.escrow_id

        def action() -> Fact:
            try:
                refund_ref = self.escrow.refund(escrow_id)
            except TradeEngineError as e:
                return Fact(FactKind.REFUND_FAILED, order_id, reason=str(e))
            return Fact(FactKind.REFUND_PROCESSED, order_id, ref=refund_ref, data={"escrow_id": escrow_id})

        return ("escrow_refund", action, FactKind.REFUND_FAILED, None)

    def _dispatch(self, order_id: str, effect: Effect) -> None:
        self.executor.submit(self._run_step, order_id, effect)

    def _run_step(self, order_id: str, effect: Effect) -> None:
        name, action, failure_kind, failure_ref = effect
        started = time.monotonic()
        try:
            fact = action()
        except Exception as e:
            logger.exception(f"Step {name} crashed for order {order_id}")
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                f"Saga step {name} crashed",
                str(e),
                {"order_id": order_id},
            )
            fact = Fact(failure_kind, order_id, ref=failure_ref, reason=f"{name} crashed: {e}")
        finally:
            self.metrics.record_step_duration(name, time.monotonic() - started)
        self.handle_fact(fact)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _announce(self, view: Dict[str, Any], steps: List[Step]) -> None:
        order_id = view["order_id"]
        for step in steps:
            if not step.is_transition:
                continue
            source, target = step.from_status.value, step.to_status.value
            self.metrics.record_transition(source, target)
            self.publisher.publish(
                "order.transition",
                order_id,
                from_status=source,
                to_status=target,
                fact=step.fact.kind.value,
                reason=step.fact.reason,
            )
            if self.audit:
                self.audit.log_transition(order_id, source, target, step.fact.kind.value, step.fact.reason)

            if not step.entered_terminal:
                continue

            self.metrics.record_terminal(target)
            self.publisher.publish(
                "order.terminal",
                order_id,
                status=target,
                outcome=OUTCOMES[step.to_status],
                refund_ref=view["refund_ref"],
                failure_reason=view["failure_reason"],
            )
            if step.to_status is OrderStatus.ESCALATED:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Order escalated",
                    f"Order {order_id} needs operator action: {view['failure_reason']}",
                    {"order_id": order_id, "escrow_id": view["escrow_id"], "from": source},
                )

    def _discard(self, fact: Fact, error: StaleFact) -> None:
        logger.warning(f"Discarded fact: {error}")
        self.metrics.record_discarded_fact(fact.kind.value)
        self.publisher.publish(
            "order.fact_discarded",
            fact.order_id,
            fact=fact.kind.value,
            status=error.status,
            mismatch=error.mismatch,
        )
        if error.mismatch:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Ordering anomaly",
                str(error),
                {"order_id": fact.order_id, "ref": fact.ref},
            )
            if self.audit:
                self.audit.log_anomaly(fact.order_id, str(error), {"fact": fact.to_dict()})

    def _persist(self, order: Order) -> None:
        if self.store is not None:
            self.store.put("orders", order.order_id, order.to_dict())

    def _update_active_gauge(self) -> None:
        self.metrics.record_active_orders(len(self.machine.get_active_orders()))
