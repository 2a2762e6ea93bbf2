"""
Tests for outbound event fan-out.
"""
from unittest.mock import Mock

from infra.events import EventPublisher


class TestEventPublisher:
    """Synchronous publisher"""

    def test_subscribers_receive_events_in_order(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe(lambda e: seen.append(("a", e.kind)))
        publisher.subscribe(lambda e: seen.append(("b", e.kind)))

        publisher.publish("order.created", "ord-1", risk_score="low")
        assert seen == [("a", "order.created"), ("b", "order.created")]

    def test_failing_subscriber_is_isolated(self):
        publisher = EventPublisher()
        after = Mock()
        publisher.subscribe(Mock(side_effect=RuntimeError("ui down")))
        publisher.subscribe(after)

        event = publisher.publish("order.terminal", "ord-1", outcome="completed")
        after.assert_called_once_with(event)

    def test_history_filters(self):
        publisher = EventPublisher(history_size=3)
        publisher.publish("order.created", "ord-1")
        publisher.publish("order.created", "ord-2")
        publisher.publish("order.terminal", "ord-1")
        publisher.publish("quota.exceeded", None, reason="window")

        assert len(publisher.history()) == 3
        assert [e.order_id for e in publisher.history("order.created")] == ["ord-2"]
        assert publisher.history(order_id="ord-1")[0].kind == "order.terminal"

    def test_to_dict(self):
        event = EventPublisher().publish("order.transition", "ord-1", from_status="created")
        data = event.to_dict()
        assert data["payload"] == {"from_status": "created"}
        assert data["at"]
