"""
Alert delivery and deduplication.

Verifies:
1. Identical alerts within the dedupe window are sent once
2. Alerts below min_severity are dropped
3. Dry-run mode logs instead of posting
4. Webhook failures are logged, never raised

NOTE: These tests use time mocking for deterministic timing.
"""

from unittest.mock import patch

import pytest
import requests

from infra.alerting import AlertConfig, AlertService, AlertSeverity


@pytest.fixture
def alert_config():
    """Create test alert configuration."""
    return AlertConfig(
        enabled=True,
        webhook_url="https://test.webhook.com/alert",
        min_severity=AlertSeverity.WARNING,
        dry_run=False,
        timeout=5.0,
        dedupe_seconds=60.0,
    )


@pytest.fixture
def alert_service(alert_config):
    return AlertService(alert_config)


class TestDelivery:
    """Webhook posting"""

    def test_posts_payload(self, alert_service):
        with patch("infra.alerting.requests.post") as mock_post:
            alert_service.notify(AlertSeverity.CRITICAL, "Order escalated", "refund failed", {"order_id": "ord-1"})

        mock_post.assert_called_once()
        payload = mock_post.call_args.kwargs["json"]
        assert payload["severity"] == "CRITICAL"
        assert "Order escalated" in payload["text"]
        assert "order_id=ord-1" in payload["text"]
        assert mock_post.call_args.kwargs["timeout"] == 5.0

    def test_below_min_severity_dropped(self, alert_service):
        with patch("infra.alerting.requests.post") as mock_post:
            alert_service.notify(AlertSeverity.INFO, "note", "fyi")
        mock_post.assert_not_called()
        assert alert_service.sent_count == 0

    def test_webhook_failure_is_logged(self, alert_service):
        with patch("infra.alerting.requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            alert_service.notify(AlertSeverity.CRITICAL, "Escrow anomaly", "cannot refund")
        assert alert_service.sent_count == 1

    def test_dry_run_does_not_post(self, alert_config):
        alert_config.dry_run = True
        service = AlertService(alert_config)
        with patch("infra.alerting.requests.post") as mock_post:
            service.notify(AlertSeverity.CRITICAL, "Order escalated", "x")
        mock_post.assert_not_called()
        assert service.sent_count == 1

    def test_disabled_service(self):
        service = AlertService.disabled()
        assert not service.is_enabled()
        with patch("infra.alerting.requests.post") as mock_post:
            service.notify(AlertSeverity.CRITICAL, "x", "y")
        mock_post.assert_not_called()

    def test_enabled_without_webhook_disables(self):
        service = AlertService.from_config({"enabled": True, "webhook_env": "TRADEBRIDGE_TEST_UNSET_WEBHOOK"})
        assert not service.is_enabled()


class TestDeduplication:
    """Identical alerts inside the window"""

    def test_identical_alerts_deduped(self, alert_service):
        with patch("infra.alerting.requests.post") as mock_post, \
                patch("infra.alerting.time.monotonic", side_effect=[100.0, 130.0]):
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "same")
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "same")
        assert mock_post.call_count == 1

    def test_dedupe_expires(self, alert_service):
        with patch("infra.alerting.requests.post") as mock_post, \
                patch("infra.alerting.time.monotonic", side_effect=[100.0, 161.0]):
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "same")
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "same")
        assert mock_post.call_count == 2

    def test_old_fingerprints_cleaned_up(self, alert_service):
        """Fingerprints past the dedupe window do not accumulate"""
        with patch("infra.alerting.requests.post"), \
                patch("infra.alerting.time.monotonic", side_effect=[100.0, 130.0, 200.0]):
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "ord-1")
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "ord-2")
            assert len(alert_service._last_sent) == 2
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "ord-3")
        assert len(alert_service._last_sent) == 1

    def test_different_messages_not_deduped(self, alert_service):
        with patch("infra.alerting.requests.post") as mock_post:
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "ord-1")
            alert_service.notify(AlertSeverity.WARNING, "Ordering anomaly", "ord-2")
        assert mock_post.call_count == 2


class TestSeverity:
    @pytest.mark.parametrize("value,expected", [
        ("critical", AlertSeverity.CRITICAL),
        ("INFO", AlertSeverity.INFO),
        ("bogus", AlertSeverity.WARNING),
        ("", AlertSeverity.WARNING),
    ])
    def test_from_string(self, value, expected):
        assert AlertSeverity.from_string(value) is expected
