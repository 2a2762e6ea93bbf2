"""
TradeBridge Core: External Offer Manager

Creates trade offers on the external platform and mirrors their status back
as facts. Every platform call is admitted by the QuotaGuard first.

Status mapping (platform -> OfferStatus):
    pending                                   -> PENDING
    sent                                      -> SENT
    accepted                                  -> ACCEPTED
    held                                      -> HELD
    completed                                 -> COMPLETED
    expired/declined/canceled/invalid(_items) -> EXPIRED

The manager never expires an offer by wall clock; expires_at is only used by
the TimeoutScheduler.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import PartnerValidationFailed, QuotaExceeded, TransientError, TransientNetworkError
from core.facts import Fact, FactKind
from core.payloads import PlatformOffer, parse_platform_offer
from core.retry import retry_call

logger = logging.getLogger(__name__)

OFFER_TTL = timedelta(minutes=15)
# Every status poll is charged to the same quota key as offer creation
MIN_POLL_INTERVAL = timedelta(seconds=60)


class OfferStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    HELD = "held"
    COMPLETED = "completed"


PLATFORM_STATE_MAP = {
    "pending": OfferStatus.PENDING,
    "sent": OfferStatus.SENT,
    "accepted": OfferStatus.ACCEPTED,
    "held": OfferStatus.HELD,
    "completed": OfferStatus.COMPLETED,
    "expired": OfferStatus.EXPIRED,
    "declined": OfferStatus.EXPIRED,
    "canceled": OfferStatus.EXPIRED,
    "invalid_items": OfferStatus.EXPIRED,
    "invalid": OfferStatus.EXPIRED,
}

# Offers still worth polling
OPEN_STATUSES = {OfferStatus.PENDING, OfferStatus.SENT, OfferStatus.ACCEPTED, OfferStatus.HELD}


@dataclass
class OfferRecord:
    """Local view of one offer; expires_at is fixed at send time"""
    offer_id: str
    order_id: str
    offer_status: OfferStatus
    sent_at: datetime
    expires_at: datetime
    accepted_reported: bool = False
    last_polled_at: Optional[datetime] = None
    hold_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "order_id": self.order_id,
            "offer_status": self.offer_status.value,
            "sent_at": self.sent_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "accepted_reported": self.accepted_reported,
            "last_polled_at": self.last_polled_at.isoformat() if self.last_polled_at else None,
            "hold_until": self.hold_until.isoformat() if self.hold_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfferRecord":
        def _ts(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            offer_id=data["offer_id"],
            order_id=data["order_id"],
            offer_status=OfferStatus(data["offer_status"]),
            sent_at=_ts(data["sent_at"]),
            expires_at=_ts(data["expires_at"]),
            accepted_reported=bool(data.get("accepted_reported", False)),
            last_polled_at=_ts(data.get("last_polled_at")),
            hold_until=_ts(data.get("hold_until")),
        )


def map_platform_state(offer: PlatformOffer) -> OfferStatus:
    return PLATFORM_STATE_MAP[offer.state]


class OfferManager:
    """
    Platform contract:
        create_offer(buyer_ref, items, trade_url, message) -> dict
        get_offer(offer_id) -> dict
    """

    def __init__(
        self,
        platform,
        quota_guard,
        api_key: str,
        store=None,
        on_fact: Optional[Callable[[Fact], None]] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        min_poll_interval: timedelta = MIN_POLL_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.platform = platform
        self.quota_guard = quota_guard
        self.api_key = api_key
        self.store = store
        self.on_fact = on_fact
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.min_poll_interval = min_poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self._records: Dict[str, OfferRecord] = {}
        self._by_order: Dict[str, str] = {}
        self._lock = Lock()

        if store is not None:
            for offer_id, raw in store.all("offers").items():
                record = OfferRecord.from_dict(raw)
                self._records[offer_id] = record
                self._by_order[record.order_id] = offer_id

    def get_record(self, offer_id: str) -> Optional[OfferRecord]:
        with self._lock:
            return self._records.get(offer_id)

    def record_for_order(self, order_id: str) -> Optional[OfferRecord]:
        with self._lock:
            offer_id = self._by_order.get(order_id)
            return self._records.get(offer_id) if offer_id else None

    def _admit(self) -> None:
        decision = self.quota_guard.admit(self.api_key)
        if not decision.allowed:
            raise QuotaExceeded(self.api_key, decision.retry_after, decision.reason or "window")

    def create_and_send(self, order_id: str, buyer_ref: str, items: List[str], trade_url: str) -> str:
        """
        Create and send the offer for ``order_id``; returns the offer id.

        Idempotent per order: a second call returns the existing offer id.

        Raises:
            QuotaExceeded: quota guard (or the platform) denied the call
            PartnerValidationFailed: platform rejected the trade target
            RetriesExhausted: transient network failures exceeded the budget
        """
        existing = self.record_for_order(order_id)
        if existing:
            logger.info(f"Offer for order {order_id} already sent ({existing.offer_id})")
            return existing.offer_id

        def attempt() -> PlatformOffer:
            self._admit()
            payload = self.platform.create_offer(
                buyer_ref=buyer_ref,
                items=list(items),
                trade_url=trade_url,
                message=f"TradeBridge order {order_id}",
            )
            return parse_platform_offer(payload)

        offer = retry_call(
            attempt,
            operation=f"create offer for {order_id}",
            retry_on=(TransientNetworkError,),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
        )

        sent_at = self._clock()
        record = OfferRecord(
            offer_id=offer.offer_id,
            order_id=order_id,
            offer_status=OfferStatus.SENT,
            sent_at=sent_at,
            expires_at=sent_at + OFFER_TTL,
        )
        with self._lock:
            self._records[record.offer_id] = record
            self._by_order[order_id] = record.offer_id
        self._persist(record)
        logger.info(
            f"Offer {record.offer_id} sent for order {order_id}, "
            f"expires {record.expires_at.isoformat()}"
        )
        return record.offer_id

    def poll_status(self, offer_id: str) -> OfferStatus:
        """Ask the platform for the offer's current status."""
        status, _ = self._fetch(offer_id)
        return status

    def _fetch(self, offer_id: str):
        self._admit()
        offer = parse_platform_offer(self.platform.get_offer(offer_id))
        if offer.offer_id != offer_id:
            logger.warning(f"Platform answered {offer.offer_id} when asked for {offer_id}")
        return map_platform_state(offer), offer

    def poll_once(self) -> List[Fact]:
        """
        Poll open offers and report status changes.

        An offer polled less than min_poll_interval ago is skipped. Transient
        failures and quota denials skip the offer until the next pass.
        """
        now = self._clock()
        with self._lock:
            open_ids = [
                r.offer_id for r in self._records.values()
                if r.offer_status in OPEN_STATUSES and self._poll_due(r, now)
            ]

        facts: List[Fact] = []
        for offer_id in open_ids:
            try:
                status, offer = self._fetch(offer_id)
            except QuotaExceeded as e:
                logger.warning(f"Offer polling paused by quota: {e}")
                break
            except (TransientError, PartnerValidationFailed) as e:
                logger.warning(f"Polling offer {offer_id} failed: {e}")
                self._mark_polled(offer_id, now)
                continue
            facts.extend(self._observe(offer_id, status, offer.hold_until))

        for fact in facts:
            if self.on_fact:
                self.on_fact(fact)
        return facts

    def _poll_due(self, record: OfferRecord, now: datetime) -> bool:
        if record.last_polled_at is None:
            return True
        return now - record.last_polled_at >= self.min_poll_interval

    def _mark_polled(self, offer_id: str, now: datetime) -> None:
        with self._lock:
            record = self._records.get(offer_id)
            if record is not None:
                record.last_polled_at = now

    def _observe(self, offer_id: str, status: OfferStatus, hold_until: Optional[datetime] = None) -> List[Fact]:
        """Turn a polled status into facts. Called for every poll result."""
        with self._lock:
            record = self._records.get(offer_id)
            if record is None:
                return []
            record.last_polled_at = self._clock()
            previous = record.offer_status
            if status is previous or previous not in OPEN_STATUSES:
                return []

            facts: List[Fact] = []
            order_id = record.order_id

            # held/completed imply acceptance even if we never saw it
            if status in (OfferStatus.ACCEPTED, OfferStatus.HELD, OfferStatus.COMPLETED):
                if not record.accepted_reported:
                    record.accepted_reported = True
                    facts.append(Fact(FactKind.OFFER_ACCEPTED, order_id, ref=offer_id))

            if status is OfferStatus.HELD:
                record.hold_until = hold_until
                data = {"hold_until": hold_until.isoformat()} if hold_until else {}
                facts.append(Fact(FactKind.OFFER_HELD, order_id, ref=offer_id, data=data))
            elif status is OfferStatus.COMPLETED:
                facts.append(Fact(FactKind.HOLD_CLEARED, order_id, ref=offer_id))
            elif status is OfferStatus.EXPIRED:
                reason = "platform reported expiry"
                if record.accepted_reported:
                    reason = f"platform reported {previous.value} offer as expired after acceptance"
                facts.append(Fact(FactKind.OFFER_EXPIRED, order_id, ref=offer_id, reason=reason))

            record.offer_status = status

        logger.info(f"Offer {offer_id}: {previous.value} -> {status.value}")
        self._persist(record)
        return facts

    def retire(self, offer_id: str) -> None:
        """Stop polling an offer the order no longer waits on."""
        with self._lock:
            record = self._records.get(offer_id)
            if record is None or record.offer_status not in (OfferStatus.PENDING, OfferStatus.SENT):
                return
            record.offer_status = OfferStatus.EXPIRED
        logger.info(f"Offer {offer_id} retired locally")
        self._persist(record)

    def _persist(self, record: OfferRecord) -> None:
        if self.store is not None:
            self.store.put("offers", record.offer_id, record.to_dict())
