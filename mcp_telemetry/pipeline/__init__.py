"""Per-event processing: features, anomaly heuristics and the orchestrator."""

from .anomalies import AnomalyDetector
from .features import FeatureExtractor
from .orchestrator import TelemetryPipeline

__all__ = ["AnomalyDetector", "FeatureExtractor", "TelemetryPipeline"]
