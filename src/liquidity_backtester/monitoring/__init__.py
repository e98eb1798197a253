"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging, get_logger, run_scope
from .metrics import METRICS


def bootstrap_observability(*, config: Optional[AppConfig] = None, reset_metrics: bool = True) -> None:
    """Configure logging and start a run with a clean metrics registry."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring, force=True)
    if reset_metrics:
        METRICS.reset()


__all__ = ["bootstrap_observability", "get_logger", "run_scope", "METRICS"]
