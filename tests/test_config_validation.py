"""
Tests for configuration validation (Pydantic schemas + sanity checks)
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    load_yaml_file,
    validate_all_configs,
    validate_app,
    validate_policy,
    validate_sanity_checks,
)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    """Writable copy of the shipped config."""
    for name in ("app.yaml", "policy.yaml"):
        (tmp_path / name).write_text((CONFIG_DIR / name).read_text())
    return tmp_path


def _edit(config_dir, filename, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


def test_shipped_config_is_valid():
    assert validate_all_configs(str(CONFIG_DIR)) == []


def test_invalid_mode(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="YOLO"))
    errors = validate_app(config_dir)
    assert any("app -> mode" in e for e in errors)


def test_mode_is_case_insensitive(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="paper"))
    assert validate_app(config_dir) == []


def test_unknown_ledger_backend(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["ledger"].update(backend="mongo"))
    assert any("ledger -> backend" in e for e in validate_app(config_dir))


def test_negative_rate_limit(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["rate_limits"].update(broker=-1))
    assert any("Rate limit for broker" in e for e in validate_app(config_dir))


def test_missing_policy_section(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d.pop("exits"))
    assert any(e.startswith("policy.yaml: exits") for e in validate_policy(config_dir))


def test_buffer_out_of_range(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(price_buffer=0.5))
    assert any("exits -> price_buffer" in e for e in validate_policy(config_dir))


def test_pct_of_equity_is_fraction(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["gate"].update(max_position_pct_of_equity=10))
    assert validate_policy(config_dir)


def test_sanity_buffer_vs_stop(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(price_buffer=0.05))
    errors = validate_sanity_checks(config_dir)
    assert any("stop_loss_pct must exceed" in e for e in errors)


def test_sanity_size_vs_gate(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk"].update(max_position_size=0.5))
    assert any("every full-size entry" in e for e in validate_sanity_checks(config_dir))


def test_live_requires_persistent_ledger(config_dir):
    def mutate(d):
        d["app"]["mode"] = "LIVE"
        d["ledger"]["backend"] = "memory"
    _edit(config_dir, "app.yaml", mutate)
    assert any("persistent ledger" in e for e in validate_all_configs(str(config_dir)))


def test_missing_file(tmp_path):
    errors = validate_all_configs(str(tmp_path))
    assert any("app.yaml" in e and "not found" in e for e in errors)


def test_malformed_yaml_reports_line(config_dir):
    path = config_dir / "policy.yaml"
    path.write_text("gate:\n  min_seconds_between_trades: [60\n")
    with pytest.raises(yaml.YAMLError, match="line"):
        load_yaml_file(path)
