"""
Narrow interface to the AMM client.

The engine never builds transactions or does bin-price math itself; it
talks to an object satisfying ``AmmClient``. Implementations raise
``TransientAmmError`` for stale ledger references, timeouts and slippage
misses, and ``TerminalAmmError`` for anything a retry cannot fix.

Token amounts crossing this boundary are raw integer base units; ``PoolInfo``
carries the decimals needed to normalize them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class PoolInfo:
    pool_id: str
    token_x: str
    token_y: str
    decimals_x: int
    decimals_y: int


@dataclass(frozen=True)
class ActiveBin:
    bin_id: int
    # Price of one X in units of Y, decimal-normalized.
    price: float


@dataclass(frozen=True)
class BinRange:
    min_bin: int
    max_bin: int

    def __post_init__(self) -> None:
        if self.min_bin > self.max_bin:
            raise ValueError(f"invalid bin range [{self.min_bin}, {self.max_bin}]")

    @property
    def width(self) -> int:
        return self.max_bin - self.min_bin


@dataclass(frozen=True)
class LiquidityAmount:
    amount_x: int = 0
    amount_y: int = 0

    @property
    def is_empty(self) -> bool:
        return self.amount_x <= 0 and self.amount_y <= 0


@dataclass(frozen=True)
class AmmPosition:
    """Source-of-truth view of one on-chain position."""
    position_id: str
    pool_id: str
    lower_bin: int
    upper_bin: int
    amount_x: int
    amount_y: int
    fee_x: int = 0
    fee_y: int = 0

    @property
    def bin_range(self) -> BinRange:
        return BinRange(self.lower_bin, self.upper_bin)

    @property
    def is_empty(self) -> bool:
        return self.amount_x <= 0 and self.amount_y <= 0


@dataclass(frozen=True)
class ClaimedFees:
    fee_x: int = 0
    fee_y: int = 0


@dataclass(frozen=True)
class TxResult:
    signatures: List[str] = field(default_factory=list)
    closed: bool = False
    note: Optional[str] = None


@runtime_checkable
class AmmClient(Protocol):
    async def get_pool(self, pool_id: str) -> PoolInfo: ...

    async def get_active_bin(self, pool_id: str) -> ActiveBin: ...

    async def get_user_positions(self, pool_id: str, owner: str) -> List[AmmPosition]: ...

    async def open_position(self, pool_id: str, amount: LiquidityAmount, bin_range: BinRange) -> str: ...

    async def add_liquidity(self, position_id: str, amount: LiquidityAmount) -> TxResult: ...

    async def remove_liquidity(
        self,
        position_id: str,
        bin_range: BinRange,
        bps: int,
        claim_and_close: bool,
    ) -> TxResult: ...

    async def claim_fees(self, position_id: str) -> ClaimedFees: ...

    async def get_pool_volume_usd(self, pool_id: str) -> float: ...


def to_ui_amount(raw: int, decimals: int) -> float:
    return raw / (10 ** decimals)


def to_raw_amount(ui: float, decimals: int) -> int:
    return int(ui * (10 ** decimals))
