import logging

import pytest

from mcp_telemetry.config import Settings
from mcp_telemetry.logging_config import get_log_level, mask_url

pytestmark = pytest.mark.unit


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.telemetry_enabled is True
    assert settings.telemetry_consumer_group == "ingestors"
    assert settings.telemetry_consumer_id.startswith("pipeline-")
    assert settings.anomaly_latency_threshold_ms == 5000
    assert settings.anomaly_latency_high_threshold_ms == 10000
    assert settings.qdrant_vector_dims == "auto"
    assert settings.redis_stream_max_length == 100000


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TELEMETRY_BATCH_SIZE", "25")
    monkeypatch.setenv("EMBEDDING_ENABLED", "false")
    monkeypatch.setenv("ANOMALY_DRIFT_SIMILARITY_THRESHOLD", "0.7")

    settings = Settings(_env_file=None)

    assert settings.telemetry_batch_size == 25
    assert settings.embedding_enabled is False
    assert settings.anomaly_drift_similarity_threshold == 0.7


@pytest.mark.parametrize(
    ("level", "expected"),
    [("DEBUG", logging.DEBUG), ("INFO", logging.INFO), ("WARNING", logging.WARNING), ("ERROR", logging.ERROR)],
)
def test_log_level(level, expected):
    assert get_log_level(Settings(_env_file=None, log_level=level)) == expected


def test_mask_url_hides_passwords():
    assert mask_url("postgresql://postgres:secret@db:5432/mcp") == "postgresql://postgres:***@db:5432/mcp"
    assert mask_url("redis://localhost:6379/0") == "redis://localhost:6379/0"
