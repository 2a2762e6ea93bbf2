"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tools.config_validator import (
    AppSchema,
    PolicySchema,
    load_config,
    validate_all_configs,
    validate_app,
    validate_policy,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"

MINIMAL_APP = {
    "payment_rail": {"base_url": "http://rail.local"},
    "escrow_service": {"base_url": "http://escrow.local"},
    "trade_platform": {"base_url": "https://platform.local"},
}


def write_configs(tmp_path, app=None, policy=None):
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(MINIMAL_APP if app is None else app))
    (tmp_path / "policy.yaml").write_text(yaml.safe_dump({} if policy is None else policy))
    return tmp_path


class TestShippedConfig:
    """Config files in the repository"""

    def test_repo_config_is_valid(self):
        assert validate_all_configs(str(REPO_CONFIG)) == []

    def test_load_config_fills_defaults(self):
        config = load_config(str(REPO_CONFIG))
        assert config["policy"]["timeouts"]["payment_seconds"] == 600
        assert "offer_seconds" not in config["policy"]["timeouts"]
        assert config["policy"]["offers"]["min_poll_interval_seconds"] == 60
        assert config["app"]["payment_rail"]["required_confirmations"] == 1


class TestAppValidation:
    """app.yaml schema"""

    def test_minimal_app_config(self, tmp_path):
        write_configs(tmp_path)
        assert validate_app(tmp_path) == []
        app = AppSchema(**MINIMAL_APP)
        assert app.state.store == "json"
        assert app.monitoring.alerts.min_severity == "warning"

    def test_missing_endpoint(self, tmp_path):
        app = dict(MINIMAL_APP)
        del app["escrow_service"]
        write_configs(tmp_path, app=app)
        errors = validate_app(tmp_path)
        assert any("escrow_service" in e for e in errors)

    def test_base_url_must_be_http(self, tmp_path):
        app = dict(MINIMAL_APP, payment_rail={"base_url": "ftp://rail"})
        write_configs(tmp_path, app=app)
        errors = validate_app(tmp_path)
        assert any("payment_rail -> base_url" in e for e in errors)

    def test_unknown_store_backend(self, tmp_path):
        app = dict(MINIMAL_APP, state={"store": "redis"})
        write_configs(tmp_path, app=app)
        assert validate_app(tmp_path)

    def test_log_level_normalized(self):
        app = AppSchema(**dict(MINIMAL_APP, app={"log_level": "debug"}))
        assert app.app.log_level == "DEBUG"

    def test_missing_file(self, tmp_path):
        errors = validate_app(tmp_path)
        assert errors and "not found" in errors[0]

    def test_malformed_yaml_reports_line(self, tmp_path):
        (tmp_path / "app.yaml").write_text("payment_rail:\n  base_url: [unclosed\n")
        errors = validate_app(tmp_path)
        assert errors and "Invalid YAML" in errors[0]
        assert "line" in errors[0]


class TestPolicyValidation:
    """policy.yaml schema"""

    def test_empty_policy_uses_defaults(self, tmp_path):
        write_configs(tmp_path)
        assert validate_policy(tmp_path) == []
        policy = PolicySchema()
        assert policy.quota.window_limit == 100
        assert policy.quota.window_seconds == 900
        assert policy.retry.max_attempts == 3

    def test_negative_timeout_rejected(self, tmp_path):
        write_configs(tmp_path, policy={"timeouts": {"payment_seconds": -1}})
        errors = validate_policy(tmp_path)
        assert any("timeouts -> payment_seconds" in e for e in errors)

    def test_rotation_threshold_bounded(self):
        with pytest.raises(ValidationError):
            PolicySchema(quota={"rotation_threshold": 1.5})


class TestSanityChecks:
    """Cross-field consistency"""

    def test_medium_sigma_must_be_below_high(self, tmp_path):
        write_configs(tmp_path, policy={"risk": {"medium_deviation_sigma": 3.0, "high_deviation_sigma": 2.0}})
        errors = validate_all_configs(str(tmp_path))
        assert any("medium_deviation_sigma" in e for e in errors)

    def test_offer_deadline_longer_than_poll(self, tmp_path):
        """Offers expire a fixed 15 minutes after sending; polling must be faster"""
        write_configs(tmp_path, app=dict(MINIMAL_APP, app={"poll_interval_seconds": 1200}))
        errors = validate_all_configs(str(tmp_path))
        assert any("900s offer deadline" in e for e in errors)

    def test_offer_deadline_not_configurable(self):
        policy = PolicySchema(timeouts={"payment_seconds": 300, "offer_seconds": 30})
        assert not hasattr(policy.timeouts, "offer_seconds")

    def test_offer_polling_must_leave_quota_for_sends(self, tmp_path):
        write_configs(
            tmp_path,
            app=dict(MINIMAL_APP, app={"poll_interval_seconds": 5}),
            policy={"offers": {"min_poll_interval_seconds": 5}},
        )
        errors = validate_all_configs(str(tmp_path))
        assert any("180 times per quota window" in e for e in errors)

    def test_default_offer_polling_fits_quota(self, tmp_path):
        write_configs(tmp_path, app=dict(MINIMAL_APP, app={"poll_interval_seconds": 5}))
        assert validate_all_configs(str(tmp_path)) == []

    def test_load_config_raises_on_errors(self, tmp_path):
        write_configs(tmp_path, policy={"retry": {"base_delay_seconds": 60, "max_delay_seconds": 5}})
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(str(tmp_path))
