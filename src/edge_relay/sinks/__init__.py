"""Sink adapters: MQTT for publishing, TimescaleDB for persistence."""

from .mqtt import MqttSink
from .timescale import TimescaleSink, TimescaleTransaction

__all__ = ["MqttSink", "TimescaleSink", "TimescaleTransaction"]
