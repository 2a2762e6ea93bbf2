"""
TradeBridge Core: Audit Logger

Structured trail of order decisions for compliance and debugging.
"""

import json
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs:
    - Order creation (with risk level and audit flag)
    - Every applied transition
    - Risk rejections (order never created)
    - Ordering anomalies (discarded facts with mismatched references)

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_order_created(self, order: Any, assessment: Optional[Any] = None) -> None:
        entry = {
            "event": "ORDER_CREATED",
            "order_id": order.order_id,
            "buyer_ref": order.buyer_ref,
            "item_ref": order.item_ref,
            "price_amount": order.price_amount,
            "risk_score": order.risk_score,
            "flagged_for_audit": order.flagged_for_audit,
        }
        if assessment is not None:
            entry["risk"] = assessment.to_dict()
        self._write(entry)

    def log_transition(self, order_id: str, from_status: str, to_status: str,
                       fact: str, reason: Optional[str] = None) -> None:
        self._write({
            "event": "TRANSITION",
            "order_id": order_id,
            "from": from_status,
            "to": to_status,
            "fact": fact,
            "reason": reason,
        })

    def log_risk_rejection(self, order_id: str, buyer_ref: str, item_ref: str,
                           price_amount: int, assessment: Any) -> None:
        self._write({
            "event": "RISK_REJECTED",
            "order_id": order_id,
            "buyer_ref": buyer_ref,
            "item_ref": item_ref,
            "price_amount": price_amount,
            "risk": assessment.to_dict(),
        })

    def log_anomaly(self, order_id: str, detail: str, context: Optional[Dict[str, Any]] = None) -> None:
        entry = {"event": "ANOMALY", "order_id": order_id, "detail": detail}
        if context:
            entry["context"] = context
        self._write(entry)

    def _write(self, entry: Dict[str, Any]) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            logger.debug(f"Audited {entry['event']} for {entry.get('order_id')}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent_entries(self, n: int = 10, order_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries.

        Args:
            n: Number of entries to retrieve
            order_id: Only entries for this order

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if order_id and entry.get("order_id") != order_id:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
