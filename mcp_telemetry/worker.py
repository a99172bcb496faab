"""
Telemetry Worker Process

Standalone process that runs the telemetry pipeline against the raw stream.

Usage:
    python -m mcp_telemetry.worker

This worker:
1. Archives raw envelopes and persists structured events
2. Extracts features and publishes them to the features stream
3. Embeds completed tool calls into the vector index
4. Detects anomalies and publishes them to the anomaly stream
"""

import asyncio
import signal

import structlog

from mcp_telemetry.config import Settings, get_settings
from mcp_telemetry.logging_config import configure_logging
from mcp_telemetry.manager import TelemetryManager
from mcp_telemetry.monitoring.metrics import start_metrics_server

logger = structlog.get_logger()


async def main(settings: Settings | None = None) -> None:
    """Main entry point for the telemetry worker."""
    settings = settings or get_settings()
    configure_logging(settings)

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)

    manager = TelemetryManager(settings)
    shutdown_event = asyncio.Event()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))

    try:
        if not await manager.initialize(auto_start=True):
            logger.info("Telemetry worker exiting, telemetry disabled")
            return
        logger.info("Telemetry worker started", consumer_id=manager.pipeline.consumer_id)
        await shutdown_event.wait()
    finally:
        await manager.shutdown()
        logger.info("Telemetry worker stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
