"""
Orchestrator package.

This package contains the polling runner that executes manager decisions.
"""

from dexgrid.orchestrator.grid_runner import CycleResult, GridRunner, build_runner

__all__ = [
    "CycleResult",
    "GridRunner",
    "build_runner",
]
