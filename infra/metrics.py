"""Prometheus-backed metrics hooks for the exit sweep and entry pipeline."""

from __future__ import annotations

import logging
from collections import Counter as Tally
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "posmon_"


@dataclass
class CycleStats:
    status: str
    signals: int
    approved: int
    executed: int
    exits: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Local tallies are kept even when the exporter is disabled so tests and
    the status command can inspect them.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._exit_tally: Tally = Tally()
        self._rejection_tally: Tally = Tally()
        self._ledger_error_tally: Tally = Tally()
        self._orphans_cleaned = 0
        self._unprotected = 0

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._exits_counter = None
            self._gate_counter = None
            self._orphans_counter = None
            self._ledger_errors_counter = None
            self._unprotected_gauge = None
            self._tracked_gauge = None
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full invocation (exit sweep + entries)",
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycle_total",
            "Invocations by status",
            labelnames=("status",),
        )
        self._exits_counter = Counter(
            f"{METRIC_PREFIX}exits_total",
            "Exit attempts by trigger and outcome",
            labelnames=("trigger", "status"),
        )
        self._gate_counter = Counter(
            f"{METRIC_PREFIX}gate_decisions_total",
            "Trade gate decisions by outcome and deciding check",
            labelnames=("outcome", "check"),
        )
        self._orphans_counter = Counter(
            f"{METRIC_PREFIX}orphaned_levels_cleaned_total",
            "Stored exit levels deleted because the broker no longer holds the symbol",
        )
        self._ledger_errors_counter = Counter(
            f"{METRIC_PREFIX}ledger_errors_total",
            "Ledger transport failures by operation",
            labelnames=("operation",),
        )
        self._unprotected_gauge = Gauge(
            f"{METRIC_PREFIX}unprotected_positions",
            "Held positions without stored exit levels in the last sweep",
        )
        self._tracked_gauge = Gauge(
            f"{METRIC_PREFIX}tracked_positions",
            "Held positions seen in the last sweep",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            assert self._cycle_summary and self._cycle_counter
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()
        self._last_cycle_stats = stats

    def record_exit(self, trigger: str, status: str) -> None:
        self._exit_tally[(trigger or "none", status)] += 1
        if self._enabled and self._exits_counter:
            self._exits_counter.labels(trigger=trigger or "none", status=status).inc()

    def record_gate_decision(self, approved: bool, check: str = "") -> None:
        outcome = "approved" if approved else "rejected"
        if not approved:
            self._rejection_tally[check or "unknown"] += 1
        if self._enabled and self._gate_counter:
            self._gate_counter.labels(outcome=outcome, check=check or "all").inc()

    def record_orphans_cleaned(self, count: int) -> None:
        if count <= 0:
            return
        self._orphans_cleaned += count
        if self._enabled and self._orphans_counter:
            self._orphans_counter.inc(count)

    def record_ledger_error(self, operation: str) -> None:
        self._ledger_error_tally[operation] += 1
        if self._enabled and self._ledger_errors_counter:
            self._ledger_errors_counter.labels(operation=operation).inc()

    def record_sweep_coverage(self, tracked: int, unprotected: int) -> None:
        self._unprotected = unprotected
        if self._enabled and self._unprotected_gauge and self._tracked_gauge:
            self._tracked_gauge.set(tracked)
            self._unprotected_gauge.set(unprotected)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def exit_snapshot(self) -> Dict[str, int]:
        return {f"{trigger}:{status}": count for (trigger, status), count in self._exit_tally.items()}

    def rejection_snapshot(self) -> Dict[str, int]:
        return dict(self._rejection_tally)

    def ledger_error_snapshot(self) -> Dict[str, int]:
        return dict(self._ledger_error_tally)

    def orphans_cleaned(self) -> int:
        return self._orphans_cleaned
