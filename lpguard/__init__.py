"""
lpguard: risk and rebalancing engine for concentrated-liquidity positions.
"""

__version__ = "0.1.0"
