"""
TradeBridge Runner: Main Loop

Wires the engine from config and drives it.

Flow:
1. Validate and load config/app.yaml + config/policy.yaml
2. Build collaborators (HTTP clients, store, alerts, metrics)
3. Resume in-flight orders from the state store
4. Start the timeout scheduler thread
5. Poll the payment rail and open offers every poll interval
"""

import logging
import os
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from core.audit_log import AuditLogger
from core.clients import EscrowServiceClient, PaymentRailClient, TradePlatformClient
from core.escrow import EscrowCoordinator
from core.offer_manager import OfferManager
from core.orchestrator import TradeOrchestrator
from core.order_state import OrderStateMachine
from core.payment_watcher import PaymentWatcher
from core.quota_guard import QuotaGuard
from core.risk import RiskPolicy, RiskScorer
from core.timeout_scheduler import TimeoutScheduler
from infra.alerting import AlertService, AlertSeverity
from infra.events import EventPublisher, OutboundEvent
from infra.metrics import MetricsRecorder
from infra.state_store import create_state_store_from_config
from tools.config_validator import load_config

logger = logging.getLogger(__name__)


def _api_key(endpoint_cfg: Dict[str, Any]) -> str:
    env_key = endpoint_cfg.get("api_key_env")
    return os.getenv(env_key, "") if env_key else ""


def _client_kwargs(endpoint_cfg: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "base_url": endpoint_cfg["base_url"],
        "api_key": _api_key(endpoint_cfg),
        "timeout": endpoint_cfg["timeout_seconds"],
        "max_in_flight": endpoint_cfg["max_in_flight"],
        "max_retries": endpoint_cfg["max_retries"],
    }


class TradeEngine:
    """
    Service wrapper around TradeOrchestrator.

    Responsibilities:
    - Load config
    - Build and wire components
    - Run the polling loop
    - Shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        try:
            config = load_config(config_dir)
        except ValueError as e:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for line in str(e).splitlines()[1:]:
                logger.error(line)
            logger.error("=" * 80)
            raise

        self.app_config = config["app"]
        self.policy_config = config["policy"]
        app_section = self.app_config["app"]

        # Logging setup
        handlers = [logging.StreamHandler()]
        log_file = app_section.get("log_file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, app_section["log_level"]),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )
        logger.info(f"Starting {app_section['name']}")

        self.poll_interval = float(app_section["poll_interval_seconds"])

        monitoring = self.app_config["monitoring"]
        self.metrics = MetricsRecorder(enabled=monitoring["metrics_enabled"], port=monitoring["metrics_port"])
        self.alerts = AlertService.from_config(monitoring["alerts"])
        self.publisher = EventPublisher()
        self.publisher.subscribe(self._log_event)
        self.store = create_state_store_from_config(self.app_config["state"])

        audit_cfg = self.app_config["audit"]
        self.audit = AuditLogger(audit_cfg["path"]) if audit_cfg["enabled"] else None

        retry = self.policy_config["retry"]
        timeouts = self.policy_config["timeouts"]
        retry_kwargs = {
            "max_attempts": retry["max_attempts"],
            "base_delay": retry["base_delay_seconds"],
            "max_delay": retry["max_delay_seconds"],
        }

        rail_cfg = self.app_config["payment_rail"]
        escrow_cfg = self.app_config["escrow_service"]
        platform_cfg = self.app_config["trade_platform"]

        rail = PaymentRailClient(**_client_kwargs(rail_cfg))
        escrow_service = EscrowServiceClient(**_client_kwargs(escrow_cfg))
        platform = TradePlatformClient(**_client_kwargs(platform_cfg))

        self.quota_guard = QuotaGuard.from_config(
            self.policy_config["quota"],
            publisher=self.publisher,
            metrics=self.metrics,
        )
        self.scheduler = TimeoutScheduler()
        self.payment_watcher = PaymentWatcher(
            rail,
            required_confirmations=rail_cfg["required_confirmations"],
            base_delay=retry["base_delay_seconds"],
            max_delay=retry["max_delay_seconds"],
        )
        self.escrow = EscrowCoordinator(
            escrow_service,
            store=self.store,
            publisher=self.publisher,
            alerts=self.alerts,
            metrics=self.metrics,
            max_open_locks=escrow_cfg.get("max_open_locks"),
            **retry_kwargs,
        )
        self.offers = OfferManager(
            platform,
            self.quota_guard,
            api_key=platform.api_key or "default",
            store=self.store,
            min_poll_interval=timedelta(seconds=self.policy_config["offers"]["min_poll_interval_seconds"]),
            **retry_kwargs,
        )
        self.orchestrator = TradeOrchestrator(
            machine=OrderStateMachine(),
            risk_scorer=RiskScorer(RiskPolicy.from_config(self.policy_config["risk"])),
            payment_watcher=self.payment_watcher,
            escrow=self.escrow,
            offers=self.offers,
            scheduler=self.scheduler,
            publisher=self.publisher,
            alerts=self.alerts,
            metrics=self.metrics,
            store=self.store,
            audit=self.audit,
            executor=ThreadPoolExecutor(
                max_workers=app_section["worker_threads"],
                thread_name_prefix="saga-step",
            ),
            payment_timeout=timedelta(seconds=timeouts["payment_seconds"]),
            max_offer_deferrals=self.policy_config["offers"]["max_quota_deferrals"],
        )

        self._stop_event = threading.Event()
        self._started = False

    @staticmethod
    def _log_event(event: OutboundEvent) -> None:
        logger.info(f"event {event.kind} order={event.order_id} {event.payload}")

    def start(self) -> None:
        if self._started:
            return
        self.metrics.start()
        resumed = self.orchestrator.resume()
        self.scheduler.start()
        self._started = True
        logger.info(f"Engine started ({resumed} orders resumed)")

    def run_once(self) -> int:
        """One polling pass plus any due deadlines."""
        reported = self.orchestrator.poll()
        self.scheduler.fire_due()
        return reported

    def run_forever(self, poll_interval: Optional[float] = None) -> None:
        interval = max(float(poll_interval or self.poll_interval), 0.1)
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.start()
        logger.info(f"Starting polling loop (interval={interval}s)")
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                reported = self.run_once()
                if reported:
                    logger.debug(f"Polling pass reported {reported} facts")
            except Exception as e:
                logger.exception("Polling pass failed")
                self.alerts.notify(AlertSeverity.CRITICAL, "Polling pass failed", str(e))
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(interval - elapsed, 0.0))

        self.stop()

    def _handle_stop(self, *_):
        logger.info("Shutdown signal received; stopping after current pass")
        self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self.scheduler.stop()
        self.orchestrator.shutdown(wait=True)
        summary = self.orchestrator.machine.get_summary()
        logger.info(
            f"Engine stopped: {summary['active_orders']} active, "
            f"{summary['terminal_orders']} terminal orders"
        )


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="TradeBridge trade orchestration engine")
    parser.add_argument("--once", action="store_true", help="Run one polling pass and exit")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polling passes")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    engine = TradeEngine(config_dir=args.config_dir)

    if args.once:
        engine.start()
        engine.run_once()
        engine.stop()
    else:
        engine.run_forever(poll_interval=args.poll_interval)


if __name__ == "__main__":
    main()
