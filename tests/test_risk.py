"""
Tests for Risk Scorer

Validates price deviation tiers, velocity and account age factors, advisory
input, and that the overall level is the worst factor.
"""
import pytest

from core.risk import RiskLevel, RiskPolicy, RiskScorer, RiskSignals, score


def signals(**overrides):
    base = dict(
        price_amount=10_000,
        historical_average=10_000.0,
        historical_std_dev=1_000.0,
        buyer_trade_velocity=0,
        buyer_account_age_days=400.0,
    )
    base.update(overrides)
    return RiskSignals(**base)


class TestPriceDeviation:
    """Price vs historical mean"""

    def test_price_at_mean_is_low(self):
        """Price equal to the mean scores LOW"""
        assert score(signals()).level is RiskLevel.LOW

    def test_one_and_a_half_sigma_is_medium(self):
        """Deviation between 1σ and 2σ flags for audit"""
        result = score(signals(price_amount=11_500))
        assert result.level is RiskLevel.MEDIUM
        assert result.needs_audit
        assert not result.blocked

    def test_beyond_two_sigma_is_high(self):
        """Deviation over 2σ blocks"""
        result = score(signals(price_amount=7_000))
        assert result.level is RiskLevel.HIGH
        assert result.blocked
        assert any("std devs" in reason for reason in result.reasons)

    def test_exactly_two_sigma_is_medium(self):
        """Tier boundaries are exclusive"""
        assert score(signals(price_amount=12_000)).level is RiskLevel.MEDIUM

    def test_missing_history_is_medium(self):
        """No price history never passes silently"""
        result = score(signals(historical_average=None, historical_std_dev=None))
        assert result.level is RiskLevel.MEDIUM
        assert "no price history for item" in result.reasons

    def test_flat_history(self):
        """Zero std dev: exact match LOW, anything else MEDIUM"""
        assert score(signals(historical_std_dev=0.0)).level is RiskLevel.LOW
        assert score(signals(historical_std_dev=0.0, price_amount=10_001)).level is RiskLevel.MEDIUM


class TestBuyerFactors:
    """Velocity and account age"""

    def test_velocity_tiers(self):
        """5 trades/24h is MEDIUM, 20 is HIGH"""
        assert score(signals(buyer_trade_velocity=4)).level is RiskLevel.LOW
        assert score(signals(buyer_trade_velocity=5)).level is RiskLevel.MEDIUM
        assert score(signals(buyer_trade_velocity=20)).level is RiskLevel.HIGH

    def test_young_account_with_repeat_trades_is_medium(self):
        """Young accounts are flagged at a lower velocity"""
        result = score(signals(buyer_account_age_days=2.0, buyer_trade_velocity=2))
        assert result.factors["account_age"] is RiskLevel.MEDIUM
        assert result.level is RiskLevel.MEDIUM

    def test_young_account_trading_in_bursts_is_high(self):
        """Young account at the velocity threshold blocks"""
        result = score(signals(buyer_account_age_days=1.0, buyer_trade_velocity=5))
        assert result.factors["account_age"] is RiskLevel.HIGH
        assert result.blocked

    def test_young_account_single_trade_is_low(self):
        assert score(signals(buyer_account_age_days=0.5, buyer_trade_velocity=1)).level is RiskLevel.LOW


class TestScore:
    """Combination rules"""

    def test_worst_factor_wins(self):
        """LOW price + HIGH velocity = HIGH"""
        result = score(signals(buyer_trade_velocity=25))
        assert result.factors["price_deviation"] is RiskLevel.LOW
        assert result.level is RiskLevel.HIGH

    def test_advisory_can_raise_level(self):
        """External advisory participates as another factor"""
        result = score(signals(advisory_level=RiskLevel.MEDIUM))
        assert result.level is RiskLevel.MEDIUM
        assert result.factors["advisory"] is RiskLevel.MEDIUM

    def test_advisory_cannot_lower_level(self):
        result = score(signals(price_amount=1_000, advisory_level=RiskLevel.LOW))
        assert result.level is RiskLevel.HIGH

    def test_deterministic(self):
        """Same inputs give the same assessment"""
        s = signals(price_amount=11_700, buyer_trade_velocity=6)
        assert score(s) == score(s)

    def test_to_dict(self):
        data = score(signals(price_amount=11_500)).to_dict()
        assert data["level"] == "medium"
        assert data["factors"]["price_deviation"] == "medium"

    def test_worst_of_nothing_is_low(self):
        assert RiskLevel.worst([]) is RiskLevel.LOW


class TestRiskPolicy:
    """Thresholds from config"""

    def test_from_config_overrides(self):
        policy = RiskPolicy.from_config({"high_deviation_sigma": 3.0, "velocity_high": 50})
        assert policy.high_deviation_sigma == 3.0
        assert policy.velocity_high == 50
        assert policy.medium_deviation_sigma == 1.0

    def test_from_config_none_uses_defaults(self):
        assert RiskPolicy.from_config(None) == RiskPolicy()

    def test_scorer_uses_policy(self):
        """Looser policy lets a 2.5σ price through as MEDIUM"""
        scorer = RiskScorer(RiskPolicy(high_deviation_sigma=3.0))
        assert scorer.assess(signals(price_amount=12_500)).level is RiskLevel.MEDIUM

    @pytest.mark.parametrize("price,expected", [
        (10_500, RiskLevel.LOW),
        (11_001, RiskLevel.MEDIUM),
        (12_001, RiskLevel.HIGH),
    ])
    def test_default_scorer_tiers(self, price, expected):
        assert RiskScorer().assess(signals(price_amount=price)).level is expected
