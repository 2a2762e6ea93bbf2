"""Outbound event fan-out for notification and UI collaborators."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundEvent:
    kind: str
    order_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "order_id": self.order_id,
            "payload": dict(self.payload),
            "at": self.at.isoformat(),
        }


Subscriber = Callable[[OutboundEvent], None]


class EventPublisher:
    """
    Synchronous in-process publisher.

    Subscribers are called in registration order on the publishing thread.
    A failing subscriber is logged and skipped; it never breaks the publisher
    or the order that produced the event.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: List[Subscriber] = []
        self._history: Deque[OutboundEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def publish(self, kind: str, order_id: Optional[str] = None, **payload: Any) -> OutboundEvent:
        event = OutboundEvent(kind=kind, order_id=order_id, payload=payload)
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:
                logger.error("Event subscriber failed for %s (order=%s): %s", kind, order_id, exc)
        return event

    def history(self, kind: Optional[str] = None, order_id: Optional[str] = None) -> List[OutboundEvent]:
        with self._lock:
            events = list(self._history)
        return [
            e for e in events
            if (kind is None or e.kind == kind) and (order_id is None or e.order_id == order_id)
        ]


__all__ = ["EventPublisher", "OutboundEvent"]
