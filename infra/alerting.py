"""Operator alerts for escrow anomalies and escalated orders."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class AlertService:
    """
    Send notifications that need an operator.

    Identical alerts (same severity, title and message) inside the dedupe
    window are suppressed. In dry-run mode alerts are only logged.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not config.webhook_url and not config.dry_run:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
            self._enabled = False

        self._last_sent: Dict[str, float] = {}
        self._last_cleanup: Optional[float] = None
        self._sent_count = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)

        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", True)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "warning"),
                default=AlertSeverity.WARNING,
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    @classmethod
    def disabled(cls) -> "AlertService":
        return cls(AlertConfig(enabled=False, webhook_url=None, min_severity=AlertSeverity.WARNING, dry_run=False))

    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def sent_count(self) -> int:
        return self._sent_count

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return
        if severity.value < self._config.min_severity.value:
            return

        fingerprint = self._fingerprint(severity, title, message)
        now = time.monotonic()
        with self._lock:
            self._cleanup_old_alerts(now)
            last = self._last_sent.get(fingerprint)
            if last is not None and now - last < self._config.dedupe_seconds:
                logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
                return
            self._last_sent[fingerprint] = now
            self._sent_count += 1

        self._send_alert(severity, title, message, context)

    def _cleanup_old_alerts(self, now: float) -> None:
        """Forget fingerprints whose dedupe window has passed. Caller holds _lock."""
        if self._last_cleanup is not None and now - self._last_cleanup < 60.0:
            return
        self._last_cleanup = now

        to_remove = [
            fp for fp, sent_at in self._last_sent.items()
            if now - sent_at >= self._config.dedupe_seconds
        ]
        for fp in to_remove:
            del self._last_sent[fp]
        if to_remove:
            logger.debug(f"Cleaned up {len(to_remove)} old alert fingerprint(s)")

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        payload = self._build_payload(severity, title, message, context)
        try:
            response = requests.post(
                self._config.webhook_url,
                json=payload,
                timeout=self._config.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            line_items.append("context=" + ", ".join(f"{k}={v}" for k, v in sorted(context.items())))
        return {"text": " | ".join(filter(None, line_items)), "severity": severity.name}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
