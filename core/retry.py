"""
TradeBridge Core: Retry Policy

Exponential backoff with full jitter for transient collaborator failures.

    delay(attempt) = uniform(0, min(cap, base * 2 ** attempt))

Used by the escrow coordinator, the offer manager and the HTTP clients.
Exhausting the budget raises RetriesExhausted, which callers treat as
order-fatal.
"""

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.exceptions import RetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


def backoff_delay(attempt: int, base: float = DEFAULT_BASE_DELAY, cap: float = DEFAULT_MAX_DELAY) -> float:
    """Full-jitter delay for a zero-based attempt number."""
    ceiling = min(cap, base * (2 ** max(attempt, 0)))
    return random.uniform(0, ceiling)


def retry_call(
    fn: Callable[[], T],
    *,
    operation: str,
    retry_on: Tuple[Type[BaseException], ...],
    max_attempts: int = 3,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or the attempt budget is spent.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately.

    Raises:
        RetriesExhausted: after ``max_attempts`` retryable failures
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            logger.warning(f"{operation} failed: {exc}, attempt {attempt + 1}/{max_attempts}")

        if attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(f"Retrying {operation} in {delay:.1f}s...")
            sleep(delay)

    logger.error(f"All {max_attempts} attempts exhausted for {operation}")
    raise RetriesExhausted(operation, max_attempts, last_error)  # type: ignore[arg-type]
