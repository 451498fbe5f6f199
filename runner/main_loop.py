"""
Runner: Main Loop

Entry point for scheduled invocations. Each tick is independent: components
are wired from config, the ledger cache is reset, and nothing learned during
the tick is kept except what the ledger stores.

Commands:
    run             exit sweep + entries from a signal file (once or looping)
    monitor         exit sweep only
    status          protection coverage and stored-level stats
    cleanup         delete expired stored levels
    emergency-stop  flatten every position, clearing levels of those closed
    init-ledger     create ledger tables/headers if missing
"""

import json
import logging
import signal
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.broker_alpaca import create_broker_from_config
from core.exceptions import BrokerError
from core.exit_monitor import ExitMonitor
from core.position_store import PositionStateStore
from core.risk import RiskManager
from core.trade_gate import TradeGate
from core.trade_journal import TradeJournal
from core.trading_cycle import CycleResult, TradingCyclePipeline
from infra.alerting import AlertService
from infra.clock import get_clock
from infra.ledger import create_ledger_from_config
from infra.metrics import MetricsRecorder
from infra.rate_limiter import RateLimiter
from strategy.signals import load_signals

logger = logging.getLogger(__name__)


class TradingLoop:
    """
    Wires config, ledger, broker and the engine components together.

    Responsibilities:
    - Validate and load config
    - Configure logging
    - Run single invocations or a paced loop
    - Expose operator commands
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        self.mode = self.app_config.get("app", {}).get("mode", "DRY_RUN").upper()
        self.dry_run = self.mode == "DRY_RUN"

        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/position-monitor.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )
        logger.info(f"Starting position monitor in mode={self.mode}")

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        self.clock = get_clock()
        self.alerts = AlertService.from_config(self.app_config.get("alerts"))
        self.rate_limiter = RateLimiter(self.app_config.get("rate_limits") or {})

        self.ledger = create_ledger_from_config(self.app_config.get("ledger"), rate_limiter=self.rate_limiter)
        self.broker = create_broker_from_config(
            self.app_config.get("broker"), mode=self.mode, rate_limiter=self.rate_limiter
        )

        levels_cfg = self.policy_config.get("position_levels", {}) or {}
        self.store = PositionStateStore(
            self.ledger, clock=self.clock,
            ttl_hours=float(levels_cfg.get("ttl_hours", 24)), metrics=self.metrics,
        )
        self.journal = TradeJournal(self.ledger, clock=self.clock, metrics=self.metrics)
        self.gate = TradeGate(
            self.policy_config.get("gate", {}), self.journal, self.broker,
            clock=self.clock, metrics=self.metrics,
        )
        self.exit_monitor = ExitMonitor(
            self.policy_config.get("exits", {}), self.broker, self.store, journal=self.journal,
            clock=self.clock, metrics=self.metrics, alerts=self.alerts, dry_run=self.dry_run,
        )
        self.risk = RiskManager(self.policy_config.get("risk", {}))

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 300))
        self.pipeline = TradingCyclePipeline(
            self.ledger, self.broker, self.store, self.journal, self.gate,
            self.exit_monitor, self.risk, clock=self.clock, metrics=self.metrics,
            alerts=self.alerts, dry_run=self.dry_run,
            require_market_open=bool(loop_cfg.get("require_market_open", True)),
        )

        self._running = True
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingLoop in {self.mode} mode")

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received; stopping after the current invocation")
        self._running = False

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f)

    def run_cycle(self, signals_file: Optional[str] = None) -> CycleResult:
        signals = load_signals(signals_file) if signals_file else []
        return self.pipeline.execute_cycle(signals)

    def run_forever(self, signals_file: Optional[str] = None,
                    interval_seconds: Optional[float] = None) -> None:
        """
        Run invocations back to back, pacing cycle starts.

        The signal file is re-read every tick so the producer can rewrite it.
        """
        interval = max(float(interval_seconds or self.loop_interval_seconds), 1.0)
        logger.info(f"Starting continuous loop (interval={interval}s)")

        while self._running:
            start = time.monotonic()
            try:
                self.run_cycle(signals_file)
            except Exception as e:
                logger.exception(f"Cycle failed: {e}")
            elapsed = time.monotonic() - start
            sleep_for = max(1.0, interval - elapsed)
            logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            time.sleep(sleep_for)

        logger.info("Loop stopped cleanly.")

    def monitor(self) -> Dict[str, Any]:
        self.ledger.begin_invocation()
        return self.exit_monitor.sweep().to_dict()

    def status(self) -> Dict[str, Any]:
        self.ledger.begin_invocation()
        status = self.exit_monitor.monitoring_status()
        status["mode"] = self.mode
        status["recent_trades"] = [
            {"symbol": t.symbol, "side": t.side, "quantity": t.quantity, "price": t.price,
             "status": t.status, "timestamp": t.timestamp.isoformat() if t.timestamp else None}
            for t in self.journal.recent_trades(limit=10)
        ]
        try:
            status["performance"] = self.risk.performance_snapshot(
                self.broker.get_account(), self.broker.get_positions()
            )
        except BrokerError as e:
            logger.warning(f"Performance snapshot unavailable: {e}")
            status["performance"] = None
        return status

    def cleanup_expired(self) -> Dict[str, Any]:
        self.ledger.begin_invocation()
        return {"cleaned": self.store.cleanup_expired()}

    def emergency_stop(self) -> Dict[str, Any]:
        self.ledger.begin_invocation()
        result = self.exit_monitor.emergency_stop()
        return {
            "status": result.status,
            "reason": result.reason,
            "closed": result.closed,
            "levels_cleared": result.levels_cleared,
            "errors": result.errors,
        }

    def init_ledger(self) -> Dict[str, Any]:
        return {"created": self.ledger.initialize()}


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Position lifecycle and exit monitor")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Exit sweep then entries from a signal file")
    run.add_argument("--signals", help="YAML/JSON file with candidate signals")
    run.add_argument("--loop", action="store_true", help="Keep running on an interval")
    run.add_argument("--interval", type=float, default=None, help="Seconds between cycles")

    sub.add_parser("monitor", help="Exit sweep only")
    sub.add_parser("status", help="Protection coverage report")
    sub.add_parser("cleanup", help="Delete expired stored levels")
    sub.add_parser("init-ledger", help="Create ledger tables if missing")
    stop = sub.add_parser("emergency-stop", help="Flatten all positions")
    stop.add_argument("--confirm", action="store_true", help="Required to proceed")

    args = parser.parse_args()
    loop = TradingLoop(config_dir=args.config_dir)

    if args.command == "run":
        if args.loop:
            loop.run_forever(args.signals, args.interval)
            return
        output = loop.run_cycle(args.signals).to_dict()
    elif args.command == "monitor":
        output = loop.monitor()
    elif args.command == "status":
        output = loop.status()
    elif args.command == "cleanup":
        output = loop.cleanup_expired()
    elif args.command == "init-ledger":
        output = loop.init_ledger()
    else:
        if not args.confirm:
            parser.error("emergency-stop requires --confirm")
        output = loop.emergency_stop()

    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
