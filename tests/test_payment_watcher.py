"""
Tests for Payment Watcher

Validates exactly-once reporting, confirmation depth, amount mismatch and
rail failures, and backoff when the rail is unavailable.
"""
from unittest.mock import Mock, patch

from core.exceptions import RailUnavailable
from core.facts import FactKind
from core.payment_watcher import PaymentWatcher
from tests.helpers import FakeRail


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_watcher(required_confirmations: int = 1):
    rail = FakeRail()
    on_fact = Mock()
    clock = Clock()
    watcher = PaymentWatcher(rail, required_confirmations=required_confirmations, on_fact=on_fact, clock=clock)
    return watcher, rail, on_fact, clock


class TestWatchRegistry:
    """watch / unwatch"""

    def test_watch_returns_handle(self):
        watcher, _, _, _ = make_watcher()
        assert watcher.watch("ord-1", "pay-1", 500) == "watch:pay-1"
        assert watcher.is_watching("pay-1")

    def test_watch_twice_is_one_watch(self):
        watcher, rail, _, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        watcher.watch("ord-1", "pay-1", 500)
        watcher.poll_once()
        assert rail.calls == ["pay-1"]

    def test_unwatch_stops_polling(self):
        watcher, rail, on_fact, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        watcher.unwatch("pay-1")
        rail.set("pay-1", "confirmed", 500)
        assert watcher.poll_once() == []
        assert rail.calls == []
        on_fact.assert_not_called()


class TestConfirmation:
    """Happy path and confirmation depth"""

    def test_pending_reports_nothing(self):
        watcher, _, on_fact, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        assert watcher.poll_once() == []
        assert watcher.is_watching("pay-1")
        on_fact.assert_not_called()

    def test_confirmed_reported_once(self):
        """Confirmation is reported exactly once, then the watch is retired"""
        watcher, rail, on_fact, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "confirmed", 500, confirmations=3)

        facts = watcher.poll_once()
        assert len(facts) == 1
        assert facts[0].kind is FactKind.PAYMENT_CONFIRMED
        assert facts[0].ref == "pay-1"
        assert facts[0].order_id == "ord-1"
        assert facts[0].data["confirmations"] == 3
        on_fact.assert_called_once_with(facts[0])

        assert watcher.poll_once() == []
        assert not watcher.is_watching("pay-1")

    def test_rewatch_after_report_is_ignored(self):
        watcher, rail, on_fact, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "confirmed", 500)
        watcher.poll_once()

        watcher.watch("ord-1", "pay-1", 500)
        assert not watcher.is_watching("pay-1")
        assert on_fact.call_count == 1

    def test_reported_refs_forgotten_after_retention(self):
        """Reported references are kept for a day, not forever"""
        watcher, rail, _, clock = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "confirmed", 500)
        watcher.poll_once()

        clock.now += 86400
        watcher.poll_once()
        watcher.watch("ord-1", "pay-1", 500)
        assert not watcher.is_watching("pay-1")

        clock.now += 1
        watcher.poll_once()
        assert watcher._reported == {}
        watcher.watch("ord-1", "pay-1", 500)
        assert watcher.is_watching("pay-1")

    def test_waits_for_required_confirmations(self):
        watcher, rail, _, _ = make_watcher(required_confirmations=3)
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "confirmed", 500, confirmations=2)
        assert watcher.poll_once() == []

        rail.set("pay-1", "confirmed", 500, confirmations=3)
        assert [f.kind for f in watcher.poll_once()] == [FactKind.PAYMENT_CONFIRMED]

    def test_finalized_status_normalized(self):
        """Commitment-level statuses count as confirmed"""
        watcher, rail, _, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "finalized", 500)
        assert watcher.poll_once()[0].kind is FactKind.PAYMENT_CONFIRMED


class TestFailures:
    """Rail-reported failures and mismatches"""

    def test_amount_mismatch_is_failure(self):
        """Confirmed payment for the wrong amount fails the order"""
        watcher, rail, _, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "confirmed", 450)

        fact = watcher.poll_once()[0]
        assert fact.kind is FactKind.PAYMENT_FAILED
        assert "amount mismatch" in fact.reason
        assert fact.data["received_amount"] == 450

    def test_rail_failure_is_reported(self):
        watcher, rail, _, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.set("pay-1", "failed", 0, failure_reason="signature rejected")

        fact = watcher.poll_once()[0]
        assert fact.kind is FactKind.PAYMENT_FAILED
        assert fact.reason == "signature rejected"


class TestRailOutage:
    """Transient rail problems never fail the order"""

    def test_outage_backs_off(self):
        """An unavailable rail defers the next poll by the backoff delay"""
        watcher, rail, on_fact, clock = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.errors.append(RailUnavailable("503"))

        with patch("core.payment_watcher.backoff_delay", return_value=4.0):
            assert watcher.poll_once() == []
        assert watcher.is_watching("pay-1")

        rail.set("pay-1", "confirmed", 500)
        clock.now += 2
        assert watcher.poll_once() == []
        assert rail.calls == ["pay-1"]

        clock.now += 2
        assert len(watcher.poll_once()) == 1
        on_fact.assert_called_once()

    def test_malformed_receipt_is_retried(self):
        watcher, rail, on_fact, clock = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.receipts["pay-1"] = {"payment_ref": "pay-1", "status": "bogus"}

        assert watcher.poll_once() == []
        on_fact.assert_not_called()
        assert watcher.is_watching("pay-1")

    def test_receipt_for_other_reference_is_malformed(self):
        watcher, rail, _, _ = make_watcher()
        watcher.watch("ord-1", "pay-1", 500)
        rail.receipts["pay-1"] = {"payment_ref": "pay-2", "status": "confirmed", "amount": 500}
        assert watcher.poll_once() == []
