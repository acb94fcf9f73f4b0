"""
Cardinality Sketch Module
"""
from .hll import DEFAULT_PRECISION, HyperLogLog, merge

__all__ = ["DEFAULT_PRECISION", "HyperLogLog", "merge"]
