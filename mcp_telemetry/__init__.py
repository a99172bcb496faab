"""
MCP Telemetry

Telemetry event pipeline for an MCP tool hub.

Components:
- TelemetryIngestor: non-blocking capture of tool calls and lifecycle events
- StreamTransport: Redis Streams transport and hot-metrics cache
- TelemetryPipeline: archive, features, persistence, embeddings, anomalies
- TelemetryManager: builds the component graph and owns its lifecycle

Usage:
    from mcp_telemetry.manager import TelemetryManager

    manager = TelemetryManager()
    await manager.initialize()
    handler = manager.ingestor.wrap_tool_execution(handler, {"server": "github", "tool": "search"})
    ...
    await manager.shutdown()
"""

__version__ = "0.1.0"
