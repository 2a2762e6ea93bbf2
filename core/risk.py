"""
TradeBridge Core: Risk Scorer

Deterministic gate applied once per purchase request, before an order exists.

Factors (score = max severity):
1. Price deviation from the item's historical mean
2. Buyer trade velocity (trades in the trailing 24h)
3. Account age (amplifies velocity for young accounts)
4. Optional external advisory level

HIGH blocks creation, MEDIUM proceeds flagged for audit, LOW proceeds.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    """Ordered severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def worst(cls, levels) -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RANKS = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


@dataclass(frozen=True)
class RiskSignals:
    """
    Inputs supplied by the analytics collaborator at order-creation time.

    Price figures are integer minor units, matching Order.price_amount.
    """
    price_amount: int
    historical_average: Optional[float]
    historical_std_dev: Optional[float]
    buyer_trade_velocity: int = 0        # trades in trailing 24h
    buyer_account_age_days: float = 0.0
    advisory_level: Optional[RiskLevel] = None


@dataclass
class RiskPolicy:
    """Thresholds from policy.yaml (risk block)"""
    high_deviation_sigma: float = 2.0
    medium_deviation_sigma: float = 1.0
    velocity_medium: int = 5
    velocity_high: int = 20
    min_account_age_days: float = 7.0
    young_velocity_medium: int = 2

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "RiskPolicy":
        raw = raw or {}
        defaults = cls()
        return cls(
            high_deviation_sigma=float(raw.get("high_deviation_sigma", defaults.high_deviation_sigma)),
            medium_deviation_sigma=float(raw.get("medium_deviation_sigma", defaults.medium_deviation_sigma)),
            velocity_medium=int(raw.get("velocity_medium", defaults.velocity_medium)),
            velocity_high=int(raw.get("velocity_high", defaults.velocity_high)),
            min_account_age_days=float(raw.get("min_account_age_days", defaults.min_account_age_days)),
            young_velocity_medium=int(raw.get("young_velocity_medium", defaults.young_velocity_medium)),
        )


@dataclass(frozen=True)
class RiskAssessment:
    """Result of the gate; only ``level`` outlives the request"""
    level: RiskLevel
    factors: Dict[str, RiskLevel] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.level is RiskLevel.HIGH

    @property
    def needs_audit(self) -> bool:
        return self.level is RiskLevel.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "factors": {name: level.value for name, level in self.factors.items()},
            "reasons": list(self.reasons),
        }


def _price_factor(signals: RiskSignals, policy: RiskPolicy, reasons: List[str]) -> RiskLevel:
    mean = signals.historical_average
    std = signals.historical_std_dev

    if mean is None or std is None or std < 0:
        reasons.append("no price history for item")
        return RiskLevel.MEDIUM

    deviation = abs(signals.price_amount - mean)
    if std == 0:
        if deviation == 0:
            return RiskLevel.LOW
        reasons.append("price differs from a flat price history")
        return RiskLevel.MEDIUM

    sigmas = deviation / std
    if sigmas > policy.high_deviation_sigma:
        reasons.append(f"price {sigmas:.2f} std devs from historical mean")
        return RiskLevel.HIGH
    if sigmas > policy.medium_deviation_sigma:
        reasons.append(f"price {sigmas:.2f} std devs from historical mean")
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _velocity_factor(signals: RiskSignals, policy: RiskPolicy, reasons: List[str]) -> RiskLevel:
    velocity = max(signals.buyer_trade_velocity, 0)
    if velocity >= policy.velocity_high:
        reasons.append(f"buyer velocity {velocity} trades/24h")
        return RiskLevel.HIGH
    if velocity >= policy.velocity_medium:
        reasons.append(f"buyer velocity {velocity} trades/24h")
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _account_age_factor(signals: RiskSignals, policy: RiskPolicy, reasons: List[str]) -> RiskLevel:
    if signals.buyer_account_age_days >= policy.min_account_age_days:
        return RiskLevel.LOW

    velocity = max(signals.buyer_trade_velocity, 0)
    if velocity >= policy.velocity_medium:
        reasons.append(f"young account ({signals.buyer_account_age_days:.1f}d) trading in bursts")
        return RiskLevel.HIGH
    if velocity >= policy.young_velocity_medium:
        reasons.append(f"young account ({signals.buyer_account_age_days:.1f}d) with repeat trades")
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score(signals: RiskSignals, policy: Optional[RiskPolicy] = None) -> RiskAssessment:
    """
    Classify a purchase request.

    Pure function: no I/O, no clock, same inputs always give the same result.
    """
    policy = policy or RiskPolicy()
    reasons: List[str] = []

    factors = {
        "price_deviation": _price_factor(signals, policy, reasons),
        "velocity": _velocity_factor(signals, policy, reasons),
        "account_age": _account_age_factor(signals, policy, reasons),
    }
    if signals.advisory_level is not None:
        factors["advisory"] = signals.advisory_level
        if signals.advisory_level is not RiskLevel.LOW:
            reasons.append(f"advisory scorer says {signals.advisory_level.value}")

    return RiskAssessment(
        level=RiskLevel.worst(factors.values()),
        factors=factors,
        reasons=reasons,
    )


class RiskScorer:
    """Holds the policy and logs outcomes; scoring itself is ``score``."""

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def assess(self, signals: RiskSignals) -> RiskAssessment:
        assessment = score(signals, self.policy)
        if assessment.level is not RiskLevel.LOW:
            logger.info(f"Risk {assessment.level.value}: {'; '.join(assessment.reasons)}")
        return assessment
