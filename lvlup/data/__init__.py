"""
Synthetic Telemetry Module
"""
from .generators import TelemetryBatch, TelemetryGenerator

__all__ = ["TelemetryBatch", "TelemetryGenerator"]
