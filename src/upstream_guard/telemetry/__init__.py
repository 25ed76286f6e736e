"""
Telemetry module for upstream-guard.

Provides structured logging and breaker metrics collection.
"""

from upstream_guard.telemetry.logger import (
    GuardLogger,
    LogContext,
    LogLevel,
    SensitiveDataMasker,
    configure_logging,
    get_log_context,
    get_logger,
    log_context,
)
from upstream_guard.telemetry.metrics import (
    BreakerMetricsCollector,
    get_metrics_collector,
    set_metrics_collector,
)

__all__ = [
    # Metrics
    "BreakerMetricsCollector",
    # Logger
    "GuardLogger",
    "LogContext",
    "LogLevel",
    "SensitiveDataMasker",
    "configure_logging",
    "get_log_context",
    "get_logger",
    "get_metrics_collector",
    "log_context",
    "set_metrics_collector",
]
