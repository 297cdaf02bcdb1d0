from lpguard.amm.client import (
    ActiveBin,
    AmmClient,
    AmmPosition,
    BinRange,
    ClaimedFees,
    LiquidityAmount,
    PoolInfo,
    TxResult,
)

__all__ = [
    "ActiveBin",
    "AmmClient",
    "AmmPosition",
    "BinRange",
    "ClaimedFees",
    "LiquidityAmount",
    "PoolInfo",
    "TxResult",
]
