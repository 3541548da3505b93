"""
dexgrid - order-grid decision engine for a single DEX asset pair.
"""

__version__ = "0.4.0"
