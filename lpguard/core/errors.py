"""
Error taxonomy for the engine.

Every remote failure carries a ``transient`` flag so callers can decide
whether a retry makes sense without sniffing exception messages.
"""

from __future__ import annotations


class LpGuardError(Exception):
    """Base class for all engine errors."""

    transient: bool = False


class AmmError(LpGuardError):
    """Failure reported by the AMM client."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class TransientAmmError(AmmError):
    """Stale ledger reference, network timeout, slippage-band miss."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class TerminalAmmError(AmmError):
    """Malformed parameters or a rejected instruction. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class PriceUnavailableError(LpGuardError):
    """Price lookup failed or returned no usable value."""

    def __init__(self, asset_id: str, message: str = "", transient: bool = True) -> None:
        super().__init__(message or f"price unavailable for {asset_id}")
        self.asset_id = asset_id
        self.transient = transient


class OrderValidationError(LpGuardError):
    """Order config rejected at submission time."""


class StoreError(LpGuardError):
    """Persistence layer failure. Fatal for the current cycle only."""


class StoreCorruptError(StoreError):
    """State file exists but cannot be decoded."""
