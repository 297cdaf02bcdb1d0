"""
Core package - shared primitives with no engine dependencies.
"""

from lpguard.core.errors import (
    AmmError,
    LpGuardError,
    OrderValidationError,
    PriceUnavailableError,
    StoreCorruptError,
    StoreError,
    TerminalAmmError,
    TransientAmmError,
)
from lpguard.core.utils import KeyedLocks, now_ms

__all__ = [
    "AmmError",
    "LpGuardError",
    "OrderValidationError",
    "PriceUnavailableError",
    "StoreCorruptError",
    "StoreError",
    "TerminalAmmError",
    "TransientAmmError",
    "KeyedLocks",
    "now_ms",
]
