"""Test helpers for the TradeBridge test suite"""

from tests.helpers.collaborators import (
    EngineHarness,
    FakeEscrowService,
    FakePlatform,
    FakeRail,
    InlineExecutor,
    ManualClock,
    low_risk_signals,
)

__all__ = [
    "EngineHarness",
    "FakeEscrowService",
    "FakePlatform",
    "FakeRail",
    "InlineExecutor",
    "ManualClock",
    "low_risk_signals",
]
