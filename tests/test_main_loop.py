"""
Tests for TradingLoop wiring and operator commands
"""
from pathlib import Path

import pytest
import yaml

from runner.main_loop import TradingLoop
from tests.helpers import FakeBroker

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    app = yaml.safe_load((CONFIG_DIR / "app.yaml").read_text())
    app["ledger"]["backend"] = "memory"
    app["logging"]["file"] = str(tmp_path / "logs" / "monitor.log")
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(app))
    (tmp_path / "policy.yaml").write_text((CONFIG_DIR / "policy.yaml").read_text())
    return tmp_path


def _swap_broker(loop, broker):
    loop.broker = broker
    loop.gate.broker = broker
    loop.exit_monitor.broker = broker
    loop.pipeline.broker = broker


def test_wires_dry_run_components(config_dir):
    loop = TradingLoop(config_dir=str(config_dir))
    assert loop.mode == "DRY_RUN"
    assert loop.dry_run
    assert loop.broker.read_only
    assert loop.exit_monitor.dry_run
    assert loop.store.ttl.total_seconds() == 24 * 3600


def test_invalid_config_refuses_to_start(config_dir):
    policy = yaml.safe_load((config_dir / "policy.yaml").read_text())
    policy["exits"]["price_buffer"] = 0.5
    (config_dir / "policy.yaml").write_text(yaml.safe_dump(policy))

    with pytest.raises(ValueError, match="Invalid configuration"):
        TradingLoop(config_dir=str(config_dir))


def test_status_and_cleanup(config_dir):
    loop = TradingLoop(config_dir=str(config_dir))
    broker = FakeBroker()
    broker.add_position("AAPL", 10, 100.0)
    _swap_broker(loop, broker)
    loop.store.store_levels("AAPL", {"side": "long", "stop_loss": 97.0, "take_profit": 106.0})

    status = loop.status()
    assert status["mode"] == "DRY_RUN"
    assert status["unprotected"] == []
    assert status["performance"]["position_count"] == 1
    assert loop.cleanup_expired() == {"cleaned": 0}
    assert loop.init_ledger() == {"created": []}


def test_monitor_in_dry_run_never_submits(config_dir):
    loop = TradingLoop(config_dir=str(config_dir))
    broker = FakeBroker()
    broker.add_position("AAPL", 10, 100.0)
    broker.set_quote("AAPL", 90.0)
    _swap_broker(loop, broker)
    loop.store.store_levels("AAPL", {"side": "long", "stop_loss": 97.0})

    summary = loop.monitor()
    assert summary["exits_executed"] == 0
    assert broker.submitted == []
