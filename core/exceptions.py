"""Shared exception types for the trade orchestration engine.

Three families drive every handling decision:

- TransientError: retry with bounded backoff, order stays where it is
- TerminalError: no retry, the order moves to a failed/rejected outcome
- OrderingAnomaly: discard with an alert, never retry blindly

QuotaExceeded sits outside the families because its caller backs off by the
guard's ``retry_after`` instead of the generic retry policy.
"""

from typing import Optional


class TradeEngineError(Exception):
    """Base class for all engine errors."""


class TransientError(TradeEngineError):
    """Recoverable failure of an external call."""


class TerminalError(TradeEngineError):
    """Order-fatal failure; retrying cannot help."""


class OrderingAnomaly(TradeEngineError):
    """A fact or operation arrived in a state that cannot accept it."""


class TransientNetworkError(TransientError):
    """Network or 5xx failure talking to the trading platform."""


class RailUnavailable(TransientError):
    """Payment rail could not be reached or answered with a server error."""


class EscrowUnavailable(TransientError):
    """Escrow service unreachable, or the escrow pool is exhausted."""


class MalformedPayload(TransientError):
    """External payload failed validation at the boundary."""

    def __init__(self, source: str, detail: str):
        super().__init__(f"{source}: {detail}")
        self.source = source
        self.detail = detail


class InsufficientFunds(TerminalError):
    """Escrow service refused the lock for lack of funds."""


class PartnerValidationFailed(TerminalError):
    """Trading platform rejected the trade target (bad trade URL, private inventory...)."""


class RiskRejected(TerminalError):
    """Risk gate blocked order creation."""

    def __init__(self, reasons, assessment=None):
        self.reasons = list(reasons)
        self.assessment = assessment
        super().__init__("; ".join(self.reasons) or "risk rejected")


class RetriesExhausted(TerminalError):
    """Transient failures exceeded the bounded retry budget."""

    def __init__(self, operation: str, attempts: int, original: Optional[Exception] = None):
        super().__init__(f"{operation} failed after {attempts} attempts: {original}")
        self.operation = operation
        self.attempts = attempts
        self.original = original


class InvalidEscrowState(OrderingAnomaly):
    """Escrow operation not valid for the record's current lock status."""

    def __init__(self, escrow_id: str, status: str, operation: str):
        super().__init__(f"cannot {operation} escrow {escrow_id} in status {status}")
        self.escrow_id = escrow_id
        self.status = status
        self.operation = operation


class UnknownOrder(TradeEngineError):
    """No order with the given id is tracked."""


class QuotaExceeded(TradeEngineError):
    """Quota guard denied the call; retry after ``retry_after`` seconds."""

    def __init__(self, key: str, retry_after: float, reason: str = "window"):
        super().__init__(f"quota exceeded for key {key[:6]}... ({reason}); retry after {retry_after:.1f}s")
        self.key = key
        self.retry_after = retry_after
        self.reason = reason


class StaleFact(OrderingAnomaly):
    """Fact has no outgoing edge from the order's state, or names another reference."""

    def __init__(self, order_id: str, status: str, kind: str, mismatch: bool = False, detail: str = ""):
        label = "reference mismatch" if mismatch else "no valid edge"
        message = f"{kind} discarded for order {order_id} in {status}: {label}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.order_id = order_id
        self.status = status
        self.kind = kind
        self.mismatch = mismatch
