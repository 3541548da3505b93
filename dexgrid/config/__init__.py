"""
Configuration package.

This package contains environment settings and the typed per-bot
trading configuration with its YAML profile loader.
"""

from dexgrid.config.config import Settings
from dexgrid.config.manager_config import (
    AbsoluteAmount,
    AbsolutePrice,
    ManagerConfig,
    PercentFromMarket,
    PercentOfTotal,
    RelativeToMarket,
    load_bot_profiles,
    select_bot_profile,
)

__all__ = [
    "Settings",
    "AbsoluteAmount",
    "AbsolutePrice",
    "ManagerConfig",
    "PercentFromMarket",
    "PercentOfTotal",
    "RelativeToMarket",
    "load_bot_profiles",
    "select_bot_profile",
]
