"""lorawatch - telemetry ingestion and liveness tracking for LoRa sensor nodes."""

__version__ = "0.1.0"
