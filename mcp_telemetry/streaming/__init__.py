"""
Redis Streams transport.

Streams:
- telemetry:raw: envelopes from the ingestor
- telemetry:features: feature records from the pipeline
- telemetry:anomaly: anomaly records from the pipeline
"""

from .streams import ConsumerGroups, HotKeys, StreamMessage, StreamTransport, Streams

__all__ = [
    "ConsumerGroups",
    "HotKeys",
    "StreamMessage",
    "StreamTransport",
    "Streams",
]
