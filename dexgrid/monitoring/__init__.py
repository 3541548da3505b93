"""
Monitoring and observability package.

This package contains the Prometheus metrics for the grid ledger and lifecycle.
"""

from dexgrid.monitoring.metrics import GridMetrics

__all__ = [
    "GridMetrics",
]
