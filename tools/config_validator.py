"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the engine starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.offer_manager import OFFER_TTL

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Process-level settings"""
    name: str = Field(default="tradebridge", min_length=1)
    log_level: str = Field(default="INFO", description="Root log level")
    log_file: Optional[str] = Field(default="logs/tradebridge.log", description="Log file (None = stream only)")
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Rail/offer polling cadence")
    worker_threads: int = Field(default=8, gt=0, description="Saga step handler threads")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {v}")
        return level


class ServiceEndpoint(BaseModel):
    """HTTP collaborator settings; the API key itself comes from the environment"""
    base_url: str = Field(min_length=1)
    api_key_env: Optional[str] = Field(default=None, description="Env var holding the API key")
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_in_flight: int = Field(default=8, gt=0, description="Concurrent requests cap")
    max_retries: int = Field(default=1, ge=1, description="HTTP attempts per call")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be http(s), got {v}")
        return v


class PaymentRailEndpoint(ServiceEndpoint):
    required_confirmations: int = Field(default=1, ge=1)


class EscrowEndpoint(ServiceEndpoint):
    max_open_locks: Optional[int] = Field(default=None, gt=0, description="Escrow pool limit")


class StateConfig(BaseModel):
    store: str = Field(default="json", pattern="^(json|memory)$")
    path: Optional[str] = Field(default="data/.orders.json")


class AuditConfig(BaseModel):
    enabled: bool = True
    path: str = Field(default="logs/audit.jsonl")


class AlertsConfig(BaseModel):
    enabled: bool = True
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9108, gt=0, lt=65536)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    payment_rail: PaymentRailEndpoint
    escrow_service: EscrowEndpoint
    trade_platform: ServiceEndpoint
    state: StateConfig = Field(default_factory=StateConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Policy Schema =====
class RiskPolicyConfig(BaseModel):
    """Risk gate thresholds"""
    high_deviation_sigma: float = Field(default=2.0, gt=0, description="Deviation that blocks the order")
    medium_deviation_sigma: float = Field(default=1.0, gt=0, description="Deviation that flags for audit")
    velocity_medium: int = Field(default=5, ge=1, description="Trades/24h flagged for audit")
    velocity_high: int = Field(default=20, ge=1, description="Trades/24h that block")
    min_account_age_days: float = Field(default=7.0, ge=0)
    young_velocity_medium: int = Field(default=2, ge=1, description="Trades/24h flagged for young accounts")


class QuotaPolicyConfig(BaseModel):
    """Trading platform API budget per key"""
    window_limit: int = Field(default=100, gt=0)
    window_seconds: float = Field(default=900, gt=0)
    daily_limit: int = Field(default=100_000, gt=0)
    rotation_threshold: float = Field(default=0.9, gt=0, le=1)


class TimeoutsConfig(BaseModel):
    payment_seconds: float = Field(default=600, gt=0, description="Payment-await deadline from creation")


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=30.0, gt=0)


class OffersConfig(BaseModel):
    max_quota_deferrals: int = Field(default=5, ge=0, description="Quota back-offs before the offer is failed")
    min_poll_interval_seconds: float = Field(default=60, gt=0, description="Minimum gap between polls of one offer")


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskPolicyConfig = Field(default_factory=RiskPolicyConfig)
    quota: QuotaPolicyConfig = Field(default_factory=QuotaPolicyConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    offers: OffersConfig = Field(default_factory=OffersConfig)


SCHEMAS = {
    "app.yaml": AppSchema,
    "policy.yaml": PolicySchema,
}


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, name: str) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / name)
        SCHEMAS[name](**config)
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{name}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{name}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml")


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml")


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks that single-field constraints cannot express.

    Detects:
    - Medium deviation threshold at or above the high threshold
    - Velocity tiers out of order
    - Retry base delay above its cap
    - Offer deadline shorter than one polling interval
    - Offer status polling that would use up the quota window
    """
    errors: List[str] = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))

    if policy.risk.medium_deviation_sigma >= policy.risk.high_deviation_sigma:
        errors.append(
            f"policy.yaml: risk.medium_deviation_sigma ({policy.risk.medium_deviation_sigma}) "
            f"must be below high_deviation_sigma ({policy.risk.high_deviation_sigma})"
        )
    if policy.risk.velocity_medium > policy.risk.velocity_high:
        errors.append("policy.yaml: risk.velocity_medium must not exceed velocity_high")
    if policy.risk.young_velocity_medium > policy.risk.velocity_medium:
        errors.append("policy.yaml: risk.young_velocity_medium must not exceed velocity_medium")
    if policy.retry.base_delay_seconds > policy.retry.max_delay_seconds:
        errors.append("policy.yaml: retry.base_delay_seconds must not exceed max_delay_seconds")
    if OFFER_TTL.total_seconds() <= app.app.poll_interval_seconds:
        errors.append(
            f"app.yaml: app.poll_interval_seconds must be below the {OFFER_TTL.total_seconds():.0f}s offer deadline"
        )

    poll_gap = max(app.app.poll_interval_seconds, policy.offers.min_poll_interval_seconds)
    polls_per_window = policy.quota.window_seconds / poll_gap
    if polls_per_window > policy.quota.window_limit / 2:
        errors.append(
            f"policy.yaml: one open offer is polled up to {polls_per_window:.0f} times per quota window, "
            f"more than half of quota.window_limit ({policy.quota.window_limit}); "
            "raise offers.min_poll_interval_seconds"
        )

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")
    return all_errors


def load_config(config_dir: str = "config") -> Dict[str, Dict[str, Any]]:
    """
    Validate and load both files with defaults filled in.

    Returns:
        {"app": {...}, "policy": {...}}

    Raises:
        ValueError: if any validation error is found
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError("Invalid configuration:\n" + "\n".join(f"  • {e}" for e in errors))

    config_path = Path(config_dir)
    return {
        "app": AppSchema(**load_yaml_file(config_path / "app.yaml")).model_dump(),
        "policy": PolicySchema(**load_yaml_file(config_path / "policy.yaml")).model_dump(),
    }


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
