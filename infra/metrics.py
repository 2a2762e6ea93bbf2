"""Prometheus-backed metrics hooks for the order engine."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "tradebridge_"


class MetricsRecorder:
    """
    Expose order lifecycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Local counters mirror the exported ones so health output and tests can
    read them without scraping.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9108):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9108) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._local: Dict[str, int] = {}
        self._local_lock = threading.Lock()

        self._transitions_counter = Counter(
            "tradebridge_order_transitions_total",
            "Applied order state transitions",
            labelnames=("from_status", "to_status"),
        )
        self._terminal_counter = Counter(
            "tradebridge_orders_terminal_total",
            "Orders that reached a terminal state",
            labelnames=("status",),
        )
        self._discarded_counter = Counter(
            "tradebridge_facts_discarded_total",
            "Facts rejected by the transition guard",
            labelnames=("kind",),
        )
        self._risk_counter = Counter(
            "tradebridge_risk_assessments_total",
            "Risk gate outcomes",
            labelnames=("level",),
        )
        self._quota_denials_counter = Counter(
            "tradebridge_quota_denials_total",
            "Quota guard denials",
            labelnames=("reason",),
        )
        self._escrow_ops_counter = Counter(
            "tradebridge_escrow_operations_total",
            "Escrow coordinator operations",
            labelnames=("operation", "outcome"),
        )
        self._active_orders_gauge = Gauge(
            "tradebridge_active_orders",
            "Orders not yet in a terminal state",
        )
        self._step_summary = Summary(
            "tradebridge_step_duration_seconds",
            "Duration of saga step handlers (external calls)",
            labelnames=("step",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str) -> None:
        with self._local_lock:
            self._local[key] = self._local.get(key, 0) + 1

    def count(self, key: str) -> int:
        with self._local_lock:
            return self._local.get(key, 0)

    def record_transition(self, from_status: str, to_status: str) -> None:
        self._bump(f"transition:{from_status}->{to_status}")
        self._transitions_counter.labels(from_status=from_status, to_status=to_status).inc()

    def record_terminal(self, status: str) -> None:
        self._bump(f"terminal:{status}")
        self._terminal_counter.labels(status=status).inc()

    def record_discarded_fact(self, kind: str) -> None:
        self._bump(f"discarded:{kind}")
        self._discarded_counter.labels(kind=kind).inc()

    def record_risk(self, level: str) -> None:
        self._bump(f"risk:{level}")
        self._risk_counter.labels(level=level).inc()

    def record_quota_denial(self, reason: str) -> None:
        self._bump(f"quota_denied:{reason}")
        self._quota_denials_counter.labels(reason=reason).inc()

    def record_escrow_op(self, operation: str, outcome: str) -> None:
        self._bump(f"escrow:{operation}:{outcome}")
        self._escrow_ops_counter.labels(operation=operation, outcome=outcome).inc()

    def record_active_orders(self, count: int) -> None:
        self._active_orders_gauge.set(max(count, 0))

    def record_step_duration(self, step: str, duration: float) -> None:
        self._step_summary.labels(step=step).observe(max(duration, 0.0))


__all__ = ["MetricsRecorder"]
