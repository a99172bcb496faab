"""Telemetry capture: the ingestor and its session tracking."""

from .ingestor import TelemetryIngestor
from .sessions import SessionManager

__all__ = ["SessionManager", "TelemetryIngestor"]
