"""
Domain records shared by the stores and managers.

Persisted records (Position, Order) round-trip through ``to_dict`` /
``from_dict``; everything derived during a cycle lives on EnrichedPosition
and is never treated as ground truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from lpguard.core.utils import now_ms


class PositionStatus(str, Enum):
    IN_RANGE = "IN_RANGE"
    NEAR_EDGE = "NEAR_EDGE"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"


class OrderState(str, Enum):
    """
    Order lifecycle.

    ACTIVE ──┬──> EXECUTED
             └──> FAILED

    Both targets are terminal; nothing re-enters ACTIVE.
    """
    ACTIVE = "ACTIVE"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class OrderSide(str, Enum):
    X = "X"
    Y = "Y"


@dataclass
class FeeSample:
    """One point of a position's fee/value time series."""
    timestamp_ms: int
    fee_x: float
    fee_y: float
    fees_usd: float
    position_value_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestampMs": self.timestamp_ms,
            "feeX": self.fee_x,
            "feeY": self.fee_y,
            "feesUSD": self.fees_usd,
            "positionValueUSD": self.position_value_usd,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeSample":
        return cls(
            timestamp_ms=int(data["timestampMs"]),
            fee_x=float(data.get("feeX", 0.0)),
            fee_y=float(data.get("feeY", 0.0)),
            fees_usd=float(data.get("feesUSD", 0.0)),
            position_value_usd=float(data.get("positionValueUSD", 0.0)),
        )


@dataclass
class Position:
    """One managed liquidity range, as persisted."""
    id: str
    pool_id: str
    min_bin: int
    max_bin: int
    original_active_bin: int
    snapshot_value_usd: float
    created_at_ms: int = field(default_factory=now_ms)
    last_rebalance_ms: int = 0
    fee_history: List[FeeSample] = field(default_factory=list)
    # Last computed display snapshot (value, status, ...). Cache only.
    last_snapshot: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.min_bin >= self.max_bin:
            raise ValueError(
                f"position {self.id}: min_bin {self.min_bin} must be < max_bin {self.max_bin}"
            )

    @property
    def half_width(self) -> int:
        return (self.max_bin - self.min_bin) // 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "poolId": self.pool_id,
            "minBin": self.min_bin,
            "maxBin": self.max_bin,
            "originalActiveBin": self.original_active_bin,
            "snapshotValueUSD": self.snapshot_value_usd,
            "createdAtMs": self.created_at_ms,
            "lastRebalanceMs": self.last_rebalance_ms,
            "feeHistory": [s.to_dict() for s in self.fee_history],
            "lastSnapshot": self.last_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=str(data["id"]),
            pool_id=str(data["poolId"]),
            min_bin=int(data["minBin"]),
            max_bin=int(data["maxBin"]),
            original_active_bin=int(data["originalActiveBin"]),
            snapshot_value_usd=float(data.get("snapshotValueUSD", 0.0)),
            created_at_ms=int(data.get("createdAtMs", 0)),
            last_rebalance_ms=int(data.get("lastRebalanceMs", 0)),
            fee_history=[FeeSample.from_dict(s) for s in data.get("feeHistory", [])],
            last_snapshot=dict(data.get("lastSnapshot") or {}),
        )


@dataclass
class EnrichedPosition:
    """A Position plus the fields derived in one valuation cycle."""
    position: Position
    current_active_bin: Optional[int] = None
    percentage_through_range: Optional[float] = None
    status: Optional[PositionStatus] = None
    current_value_usd: Optional[float] = None
    percentage_change: Optional[float] = None
    token_x_amount: Optional[float] = None
    token_y_amount: Optional[float] = None
    token_x_value_usd: Optional[float] = None
    token_y_value_usd: Optional[float] = None
    pending_fees_usd: Optional[float] = None
    fee_x_amount: Optional[float] = None
    fee_y_amount: Optional[float] = None
    daily_apr: Optional[float] = None
    valuation_error: Optional[str] = None

    @property
    def is_valued(self) -> bool:
        return self.current_value_usd is not None

    def to_dict(self) -> Dict[str, Any]:
        pos = self.position
        return {
            "id": pos.id,
            "poolId": pos.pool_id,
            "minBin": pos.min_bin,
            "maxBin": pos.max_bin,
            "originalActiveBin": pos.original_active_bin,
            "snapshotValueUSD": pos.snapshot_value_usd,
            "currentActiveBin": self.current_active_bin,
            "percentageThroughRange": self.percentage_through_range,
            "status": self.status.value if self.status else None,
            "currentValueUSD": self.current_value_usd,
            "percentageChange": self.percentage_change,
            "tokenXAmount": self.token_x_amount,
            "tokenYAmount": self.token_y_amount,
            "tokenXValueUSD": self.token_x_value_usd,
            "tokenYValueUSD": self.token_y_value_usd,
            "pendingFeesUSD": self.pending_fees_usd,
            "feeXAmount": self.fee_x_amount,
            "feeYAmount": self.fee_y_amount,
            "dailyAPR": self.daily_apr,
            "valuationError": self.valuation_error,
        }


@dataclass
class Order:
    """A conditional instruction awaiting a price trigger."""
    id: str
    pool_id: str
    order_type: OrderType
    trigger_price_usd: float
    size_usd: Optional[float] = None
    close_bps: Optional[int] = None
    side: Optional[OrderSide] = None
    created_at: int = field(default_factory=now_ms)
    state: OrderState = OrderState.ACTIVE
    finished_at: Optional[int] = None
    result: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not OrderState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "poolId": self.pool_id,
            "orderType": self.order_type.value,
            "triggerPriceUSD": self.trigger_price_usd,
            "sizeUSD": self.size_usd,
            "closeBps": self.close_bps,
            "side": self.side.value if self.side else None,
            "createdAt": self.created_at,
            "state": self.state.value,
            "finishedAt": self.finished_at,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        side = data.get("side")
        close_bps = data.get("closeBps")
        size_usd = data.get("sizeUSD")
        return cls(
            id=str(data["id"]),
            pool_id=str(data["poolId"]),
            order_type=OrderType(data["orderType"]),
            trigger_price_usd=float(data["triggerPriceUSD"]),
            size_usd=float(size_usd) if size_usd is not None else None,
            close_bps=int(close_bps) if close_bps is not None else None,
            side=OrderSide(side) if side else None,
            created_at=int(data.get("createdAt", 0)),
            state=OrderState(data.get("state", OrderState.ACTIVE.value)),
            finished_at=data.get("finishedAt"),
            result=data.get("result"),
        )


@dataclass
class OperationResult:
    """Structured outcome returned across the engine boundary."""
    success: bool
    reason: str = ""
    order_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    """Aggregate of a best-effort batch action over many positions."""
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {"succeeded": list(self.succeeded), "failed": dict(self.failed)}
