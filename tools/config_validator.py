"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas so a typo in a
threshold is caught at startup instead of in the middle of an exit sweep.

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

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(pattern="^(DRY_RUN|PAPER|LIVE)$", description="Execution mode")
    name: str = Field(default="position-monitor", min_length=1)

    @field_validator('mode', mode='before')
    @classmethod
    def upper_mode(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class BrokerConfig(BaseModel):
    api_key_env: str = Field(default="ALPACA_API_KEY")
    secret_key_env: str = Field(default="ALPACA_SECRET_KEY")
    read_only: bool = Field(default=False, description="Refuse order submission")
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    client_order_prefix: str = Field(default="posmon", min_length=1, max_length=20)


class LedgerConfig(BaseModel):
    backend: str = Field(pattern="^(sheets|json|memory)$", description="Ledger storage backend")
    json_path: str = Field(default="data/ledger.json")
    spreadsheet_id_env: str = Field(default="GOOGLE_SPREADSHEET_ID")
    client_email_env: str = Field(default="GOOGLE_CLIENT_EMAIL")
    private_key_env: str = Field(default="GOOGLE_PRIVATE_KEY")
    read_through_cache: bool = Field(default=True)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, ge=1)
    require_market_open: bool = Field(default=True)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/position-monitor.log")

    @field_validator('level', mode='before')
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, ge=1, le=65535)


class AlertsConfig(BaseModel):
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    ledger: LedgerConfig
    rate_limits: Dict[str, float] = Field(default_factory=dict)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @field_validator('rate_limits')
    @classmethod
    def validate_rate_limits(cls, v: Dict[str, float]) -> Dict[str, float]:
        for channel, rate in v.items():
            if rate <= 0:
                raise ValueError(f"Rate limit for {channel} must be positive, got {rate}")
        return v


# ===== Policy Schema =====
class GateConfig(BaseModel):
    """Trade validation gate thresholds"""
    min_seconds_between_trades: float = Field(ge=0, description="Per-symbol cooldown (seconds)")
    signal_improvement_threshold: float = Field(ge=0, le=10, description="Relative strength improvement to add")
    max_position_value_usd: float = Field(gt=0, description="Absolute notional ceiling per order")
    max_position_pct_of_equity: float = Field(gt=0, le=1, description="Notional ceiling as fraction of equity")
    check_pending_orders: bool = Field(default=True)


class ExitsConfig(BaseModel):
    """Exit monitor behaviour"""
    price_buffer: float = Field(ge=0, lt=0.1, description="Trigger buffer fraction")
    max_retries: int = Field(ge=1, le=10, description="Exit order attempts")
    retry_delay_seconds: float = Field(ge=0, le=60, description="Fixed delay between attempts")
    fill_poll_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    emergency_stop_enabled: bool = Field(default=True)
    reprotect_unprotected: bool = Field(default=False)
    reprotect_stop_loss_pct: float = Field(default=0.03, gt=0, lt=1)
    reprotect_take_profit_pct: float = Field(default=0.06, gt=0, lt=1)


class RiskConfig(BaseModel):
    """Sizing and circuit breakers"""
    max_position_size: float = Field(gt=0, lt=1, description="Max fraction of equity per entry")
    min_position_value_usd: float = Field(ge=0, description="Smallest entry worth placing")
    stop_loss_pct: float = Field(gt=0, lt=1)
    take_profit_pct: float = Field(gt=0, lt=1)
    max_concurrent_positions: int = Field(gt=0)
    max_daily_loss: float = Field(gt=0, lt=1, description="Daily loss fraction that halts entries")


class PositionLevelsConfig(BaseModel):
    ttl_hours: float = Field(gt=0, le=24 * 30, description="Stored levels expiry horizon")


class PolicySchema(BaseModel):
    """Complete policy.yaml schema"""
    gate: GateConfig
    exits: ExitsConfig
    risk: RiskConfig
    position_levels: PositionLevelsConfig


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
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

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Cross-field checks that individual field constraints can't express."""
    errors = []
    policy = load_yaml_file(config_dir / "policy.yaml")
    app = load_yaml_file(config_dir / "app.yaml")

    risk = policy.get("risk", {})
    gate = policy.get("gate", {})
    exits = policy.get("exits", {})

    if risk.get("take_profit_pct", 0) <= exits.get("price_buffer", 0):
        errors.append("policy.yaml: risk.take_profit_pct must exceed exits.price_buffer")
    if risk.get("stop_loss_pct", 0) <= exits.get("price_buffer", 0):
        errors.append("policy.yaml: risk.stop_loss_pct must exceed exits.price_buffer")
    if risk.get("max_position_size", 0) > gate.get("max_position_pct_of_equity", 1):
        errors.append(
            "policy.yaml: risk.max_position_size exceeds gate.max_position_pct_of_equity; "
            "every full-size entry would be rejected"
        )

    mode = str(app.get("app", {}).get("mode", "")).upper()
    backend = app.get("ledger", {}).get("backend")
    if mode == "LIVE" and backend == "memory":
        errors.append("app.yaml: LIVE mode requires a persistent ledger backend (sheets or json)")
    if mode == "LIVE" and app.get("broker", {}).get("read_only"):
        errors.append("app.yaml: LIVE mode with broker.read_only=true cannot place exit orders")

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

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print("Configuration OK")
