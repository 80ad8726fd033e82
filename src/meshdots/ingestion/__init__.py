"""Ingestion layer.

This package contains adapters that turn decoded mesh events and MeshCore
MQTT envelopes into normalized write events for the aggregation engine.
"""

__all__: list[str] = []
