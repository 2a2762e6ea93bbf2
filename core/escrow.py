"""
TradeBridge Core: Escrow Coordinator

Wraps the escrow service's lock/release/refund with idempotency keys and a
local record of every escrow's lock status.

Idempotency key = "{order_id}:{operation}". Repeating an operation that
already succeeded returns the cached result without touching the service.

Failure handling:
- EscrowUnavailable: retried with bounded backoff, then RetriesExhausted
- InsufficientFunds: raised immediately
- Release of a Refunded escrow or refund of a Released one:
  InvalidEscrowState plus an escrow.anomaly event and a CRITICAL alert
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

from core.exceptions import EscrowUnavailable, InvalidEscrowState
from core.retry import retry_call
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


class LockStatus(Enum):
    PENDING = "pending"
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


@dataclass
class EscrowRecord:
    """Local view of one escrow; locked_amount never changes once Locked"""
    escrow_id: str
    order_id: str
    locked_amount: int
    lock_status: LockStatus = LockStatus.PENDING
    last_op_attempt: Optional[datetime] = None
    op_idempotency_key: Optional[str] = None
    refund_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escrow_id": self.escrow_id,
            "order_id": self.order_id,
            "locked_amount": self.locked_amount,
            "lock_status": self.lock_status.value,
            "last_op_attempt": self.last_op_attempt.isoformat() if self.last_op_attempt else None,
            "op_idempotency_key": self.op_idempotency_key,
            "refund_ref": self.refund_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowRecord":
        last = data.get("last_op_attempt")
        return cls(
            escrow_id=data["escrow_id"],
            order_id=data["order_id"],
            locked_amount=int(data["locked_amount"]),
            lock_status=LockStatus(data.get("lock_status", "pending")),
            last_op_attempt=datetime.fromisoformat(last) if last else None,
            op_idempotency_key=data.get("op_idempotency_key"),
            refund_ref=data.get("refund_ref"),
        )


def idempotency_key(order_id: str, operation: str) -> str:
    return f"{order_id}:{operation}"


class EscrowCoordinator:
    """
    Idempotent facade over the escrow service.

    Service contract:
        lock(order_id, amount, idempotency_key) -> escrow_id
        release(escrow_id, idempotency_key) -> None
        refund(escrow_id, idempotency_key) -> refund_ref
    """

    def __init__(
        self,
        service,
        store=None,
        publisher=None,
        alerts=None,
        metrics=None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_open_locks: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.service = service
        self.store = store
        self.publisher = publisher
        self.alerts = alerts
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_open_locks = max_open_locks
        self._sleep = sleep

        self._records: Dict[str, EscrowRecord] = {}
        self._by_order: Dict[str, str] = {}
        self._results: Dict[str, Any] = {}
        self._reserved = 0  # pool slots held by lock calls in flight
        self._lock = Lock()

        if store is not None:
            self._load()

    def _load(self) -> None:
        for escrow_id, raw in self.store.all("escrows").items():
            record = EscrowRecord.from_dict(raw)
            self._records[escrow_id] = record
            self._by_order[record.order_id] = escrow_id
            if record.lock_status is not LockStatus.PENDING:
                self._results[idempotency_key(record.order_id, "lock")] = escrow_id
            if record.lock_status is LockStatus.RELEASED:
                self._results[idempotency_key(record.order_id, "release")] = escrow_id
            if record.lock_status is LockStatus.REFUNDED:
                self._results[idempotency_key(record.order_id, "refund")] = record.refund_ref
        if self._records:
            logger.info(f"Loaded {len(self._records)} escrow records")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, escrow_id: str) -> Optional[EscrowRecord]:
        with self._lock:
            return self._records.get(escrow_id)

    def record_for_order(self, order_id: str) -> Optional[EscrowRecord]:
        with self._lock:
            escrow_id = self._by_order.get(order_id)
            return self._records.get(escrow_id) if escrow_id else None

    def open_locks(self) -> int:
        with self._lock:
            return self._open_locks_locked()

    def _open_locks_locked(self) -> int:
        return self._reserved + sum(1 for r in self._records.values() if r.lock_status is LockStatus.LOCKED)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def lock(self, order_id: str, amount: int) -> str:
        """Lock ``amount`` for ``order_id``; returns the escrow id."""
        key = idempotency_key(order_id, "lock")
        with self._lock:
            if key in self._results:
                logger.info(f"Escrow lock for {order_id} already done; returning cached result")
                return self._results[key]
        if amount <= 0:
            raise ValueError(f"Escrow amount must be positive, got {amount}")

        def attempt() -> str:
            # The slot stays reserved until the record lands or the call fails
            with self._lock:
                if self.max_open_locks is not None and self._open_locks_locked() >= self.max_open_locks:
                    raise EscrowUnavailable(f"escrow pool exhausted ({self.max_open_locks} open locks)")
                self._reserved += 1
            try:
                return self.service.lock(order_id=order_id, amount=amount, idempotency_key=key)
            except Exception:
                with self._lock:
                    self._reserved -= 1
                raise

        escrow_id = self._call("lock", attempt)

        record = EscrowRecord(
            escrow_id=escrow_id,
            order_id=order_id,
            locked_amount=amount,
            lock_status=LockStatus.LOCKED,
            last_op_attempt=datetime.now(timezone.utc),
            op_idempotency_key=key,
        )
        with self._lock:
            self._reserved -= 1
            self._records[escrow_id] = record
            self._by_order[order_id] = escrow_id
            self._results[key] = escrow_id
        self._persist(record)
        logger.info(f"Escrow {escrow_id} locked {amount} for order {order_id}")
        return escrow_id

    def release(self, escrow_id: str) -> str:
        """Release funds to the seller; returns the escrow id."""
        record = self._require(escrow_id, "release")
        key = idempotency_key(record.order_id, "release")
        with self._lock:
            if key in self._results:
                return self._results[key]
            status = record.lock_status
        if status is not LockStatus.LOCKED:
            self._anomaly(record, "release")

        self._call(
            "release",
            lambda: self.service.release(escrow_id=escrow_id, idempotency_key=key),
            record,
        )

        with self._lock:
            record.lock_status = LockStatus.RELEASED
            record.last_op_attempt = datetime.now(timezone.utc)
            record.op_idempotency_key = key
            self._results[key] = escrow_id
        self._persist(record)
        logger.info(f"Escrow {escrow_id} released for order {record.order_id}")
        return escrow_id

    def refund(self, escrow_id: str) -> str:
        """Return locked funds to the buyer; returns the refund reference."""
        record = self._require(escrow_id, "refund")
        key = idempotency_key(record.order_id, "refund")
        with self._lock:
            if key in self._results:
                return self._results[key]
            status = record.lock_status
        if status is not LockStatus.LOCKED:
            self._anomaly(record, "refund")

        refund_ref = self._call(
            "refund",
            lambda: self.service.refund(escrow_id=escrow_id, idempotency_key=key),
            record,
        )

        with self._lock:
            record.lock_status = LockStatus.REFUNDED
            record.refund_ref = refund_ref
            record.last_op_attempt = datetime.now(timezone.utc)
            record.op_idempotency_key = key
            self._results[key] = refund_ref
        self._persist(record)
        logger.info(f"Escrow {escrow_id} refunded for order {record.order_id} (ref {refund_ref})")
        return refund_ref

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[[], Any], record: Optional[EscrowRecord] = None) -> Any:
        if record is not None:
            with self._lock:
                record.last_op_attempt = datetime.now(timezone.utc)
        try:
            result = retry_call(
                fn,
                operation=f"escrow {operation}",
                retry_on=(EscrowUnavailable,),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
            )
        except InvalidEscrowState as e:
            # Service disagrees with our record
            if record is not None:
                self._report_anomaly(record, operation, e)
            self._record_op(operation, "anomaly")
            raise
        except Exception:
            self._record_op(operation, "failed")
            raise
        self._record_op(operation, "ok")
        return result

    def _require(self, escrow_id: str, operation: str) -> EscrowRecord:
        record = self.get_record(escrow_id)
        if record is None:
            raise InvalidEscrowState(escrow_id, "unknown", operation)
        return record

    def _anomaly(self, record: EscrowRecord, operation: str) -> None:
        error = InvalidEscrowState(record.escrow_id, record.lock_status.value, operation)
        self._report_anomaly(record, operation, error)
        self._record_op(operation, "anomaly")
        raise error

    def _report_anomaly(self, record: EscrowRecord, operation: str, error: InvalidEscrowState) -> None:
        logger.error(f"Escrow anomaly for order {record.order_id}: {error}")
        if self.publisher:
            self.publisher.publish(
                "escrow.anomaly",
                record.order_id,
                escrow_id=record.escrow_id,
                status=error.status,
                operation=operation,
            )
        if self.alerts:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Escrow anomaly",
                str(error),
                {"order_id": record.order_id, "escrow_id": record.escrow_id},
            )

    def _record_op(self, operation: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_escrow_op(operation, outcome)

    def _persist(self, record: EscrowRecord) -> None:
        if self.store is not None:
            self.store.put("escrows", record.escrow_id, record.to_dict())
