from __future__ import annotations

import json
import logging

from liquidity_backtester.config.settings import AppConfig, MonitoringConfig
from liquidity_backtester.monitoring import bootstrap_observability
from liquidity_backtester.monitoring.logger import (
    StructuredFormatter,
    current_run_id,
    run_scope,
)
from liquidity_backtester.monitoring.metrics import METRICS, MetricsRegistry


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("liquidity_backtester.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_emits_json_with_extras() -> None:
    record = _record("Rebalanced into [%s, %s]", sqrt_price_x96=2**120)
    record.args = (194_160, 196_080)
    record.run_id = "abc123"

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "Rebalanced into [194160, 196080]"
    assert payload["level"] == "INFO"
    assert payload["run_id"] == "abc123"
    assert payload["extra"] == {"sqrt_price_x96": 2**120}


def test_run_scope_sets_and_restores_run_id() -> None:
    assert current_run_id() == "-"
    with run_scope("run-1") as outer:
        assert outer == "run-1"
        assert current_run_id() == "run-1"
        with run_scope(None) as generated:
            assert len(generated) == 12
            assert current_run_id() == generated
        assert current_run_id() == "run-1"
    assert current_run_id() == "-"


def test_metrics_registry_counters_gauges_and_timers() -> None:
    registry = MetricsRegistry(max_hist_samples=2)
    registry.increment("replay.events.swap")
    registry.increment("replay.events.swap", 2)
    registry.gauge("ledger.balance0", 1_500)
    for value in (1.0, 2.0, 3.0):
        registry.observe("replay.day_seconds", value)
    with registry.timed("engine.swap_seconds"):
        pass

    snapshot = registry.snapshot()

    assert snapshot["counters"]["replay.events.swap"] == 3
    assert snapshot["gauges"]["ledger.balance0"] == 1_500.0
    assert snapshot["histograms"]["replay.day_seconds"]["count"] == 2.0
    assert snapshot["histograms"]["replay.day_seconds"]["p99"] == 3.0
    assert snapshot["histograms"]["engine.swap_seconds"]["count"] == 1.0


def test_bootstrap_configures_root_logger_and_resets_metrics() -> None:
    METRICS.increment("stale")
    config = AppConfig(monitoring=MonitoringConfig(log_level="DEBUG"))
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        bootstrap_observability(config=config)
        assert METRICS.get("stale") == 0
        assert any(isinstance(handler.formatter, StructuredFormatter) for handler in root.handlers)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
