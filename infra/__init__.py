"""Infrastructure modules for TradeBridge"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .events import EventPublisher, OutboundEvent  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"EventPublisher",
	"OutboundEvent",
	"MetricsRecorder",
	"StateStore",
]
