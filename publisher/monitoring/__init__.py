"""Operational read surface: metrics snapshots, health checks and the ops API."""

from publisher.monitoring.health import HealthMonitor, HealthStatus
from publisher.monitoring.reporter import MetricsReporter, PipelineSnapshot, SourceMetrics

__all__ = [
    "HealthMonitor",
    "HealthStatus",
    "MetricsReporter",
    "PipelineSnapshot",
    "SourceMetrics",
]
