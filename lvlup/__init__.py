"""
LvlUp Aggregation Engine

Scheduled rollups, job locking, HyperLogLog sketches and ClickHouse sync
for game telemetry.
"""

__version__ = "1.0.0"
