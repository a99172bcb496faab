"""
Monitoring Module

Provides Prometheus metrics and health checks.
"""

from .health import ComponentHealth, HealthStatus, SystemHealth, TelemetryHealthCheck
from .metrics import Metrics, get_metrics, start_metrics_server

__all__ = [
    "ComponentHealth",
    "HealthStatus",
    "Metrics",
    "SystemHealth",
    "TelemetryHealthCheck",
    "get_metrics",
    "start_metrics_server",
]
