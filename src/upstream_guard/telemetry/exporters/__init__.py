"""Metrics exporters."""

from upstream_guard.telemetry.exporters.prometheus import PrometheusExporter

__all__ = ["PrometheusExporter"]
