"""
Test Configuration and Fixtures

Shared fixtures for the telemetry test suite. Every collaborator is an
in-memory fake; no test needs Redis, PostgreSQL, MongoDB, Qdrant or an
embedding service.
"""

import os

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

# Set test environment variables before importing the package.
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("HEALTH_CHECK_INTERVAL_MS", "3600000")
os.environ.setdefault("EMBEDDING_RETRY_DELAY_MS", "0")
os.environ.setdefault("QDRANT_RETRY_DELAY_MS", "0")


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (in-memory collaborators)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers so we can run:
    - pytest -m unit
    - pytest -m integration

    Convention:
    - tests/integration/** => integration
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        # If the test is already explicitly tiered, do not override.
        if item.get_closest_marker("integration") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path or "\\tests\\integration\\" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_clock():
    """Deterministic clock for session and circuit breaker tests."""
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


@pytest.fixture
def metrics():
    """Metrics bound to a private registry so tests never collide."""
    from mcp_telemetry.monitoring.metrics import Metrics

    return Metrics(registry=CollectorRegistry())


@pytest.fixture
def normalizer():
    from mcp_telemetry.events.envelope import EnvelopeNormalizer

    return EnvelopeNormalizer(default_tenant="test")


@pytest.fixture
def fake_redis():
    from tests.support.redis_store import FakeRedis

    return FakeRedis()


@pytest_asyncio.fixture
async def transport(fake_redis, metrics):
    """Initialized stream transport over the in-memory Redis fake."""
    from mcp_telemetry.streaming.streams import StreamTransport

    transport = StreamTransport(
        "redis://localhost:6379/1",
        max_length=1000,
        block_timeout_ms=0,
        retry_delay_ms=0,
        client=fake_redis,
        metrics=metrics,
    )
    await transport.initialize()
    yield transport
    await transport.close()


@pytest.fixture
def embedding_service():
    from tests.support.embedding_service import FakeEmbeddingService

    return FakeEmbeddingService()
