"""
Position valuation: USD value, P&L against the snapshot and range status.

Range status depends only on (active_bin, min_bin, max_bin). Value depends
on prices; when a price cannot be obtained the range fields are still
filled in and the value fields stay None.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple

from lpguard.amm.client import ActiveBin, AmmPosition, PoolInfo, to_ui_amount
from lpguard.core.errors import PriceUnavailableError
from lpguard.core.json_utils import dumps
from lpguard.models import EnrichedPosition, Position, PositionStatus
from lpguard.pricing.oracle import PriceOracle
from lpguard.state.position_store import daily_apr


def classify_range(
    active_bin: int,
    min_bin: int,
    max_bin: int,
    low_pct: float = 30.0,
    high_pct: float = 70.0,
) -> Tuple[float, PositionStatus]:
    """
    Return (percentage_through_range, status).

    The percentage is not clamped; values below 0 or above 100 mean the
    active bin left the range.
    """
    width = max_bin - min_bin
    if width <= 0:
        raise ValueError(f"invalid range [{min_bin}, {max_bin}]")
    pct = (active_bin - min_bin) * 100.0 / width
    if active_bin < min_bin or active_bin > max_bin:
        return pct, PositionStatus.OUT_OF_RANGE
    if pct <= low_pct or pct >= high_pct:
        return pct, PositionStatus.NEAR_EDGE
    return pct, PositionStatus.IN_RANGE


class PositionValuator:
    def __init__(
        self,
        oracle: PriceOracle,
        reference_asset: str,
        near_edge_low_pct: float = 30.0,
        near_edge_high_pct: float = 70.0,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.oracle = oracle
        self.reference_asset = reference_asset
        self.low_pct = near_edge_low_pct
        self.high_pct = near_edge_high_pct
        self._log_event_cb = log_event_callback

    def _log_event(self, event: str, **kw: Any) -> None:
        if self._log_event_cb:
            self._log_event_cb(event, **kw)
        else:
            logging.getLogger("lpguard").debug(dumps({"event": event, **kw}))

    async def unit_prices(self, pool: PoolInfo, active_bin: ActiveBin) -> Tuple[float, float]:
        """
        USD price of one X and one Y.

        When either side is the reference asset, the other side is priced
        through the pool's own bin price instead of a second oracle lookup.
        """
        price = active_bin.price
        if pool.token_y == self.reference_asset:
            ref = await self.oracle.get_usd_price(self.reference_asset)
            return price * ref, ref
        if pool.token_x == self.reference_asset:
            if price <= 0:
                raise PriceUnavailableError(pool.pool_id, f"bad bin price {price}", transient=False)
            ref = await self.oracle.get_usd_price(self.reference_asset)
            return ref, ref / price
        prices = await self.oracle.get_usd_prices([pool.token_x, pool.token_y])
        return prices[pool.token_x], prices[pool.token_y]

    async def valuate(
        self,
        position: Position,
        pool: PoolInfo,
        amm_position: Optional[AmmPosition],
        active_bin: ActiveBin,
    ) -> EnrichedPosition:
        pct, status = classify_range(
            active_bin.bin_id, position.min_bin, position.max_bin, self.low_pct, self.high_pct
        )
        enriched = EnrichedPosition(
            position=position,
            current_active_bin=active_bin.bin_id,
            percentage_through_range=pct,
            status=status,
            daily_apr=daily_apr(position),
        )
        if amm_position is None:
            enriched.valuation_error = "position not found on chain"
            return enriched

        x_amt = to_ui_amount(amm_position.amount_x, pool.decimals_x)
        y_amt = to_ui_amount(amm_position.amount_y, pool.decimals_y)
        fee_x = to_ui_amount(amm_position.fee_x, pool.decimals_x)
        fee_y = to_ui_amount(amm_position.fee_y, pool.decimals_y)
        enriched.token_x_amount = x_amt
        enriched.token_y_amount = y_amt
        enriched.fee_x_amount = fee_x
        enriched.fee_y_amount = fee_y

        try:
            x_usd, y_usd = await self.unit_prices(pool, active_bin)
        except PriceUnavailableError as exc:
            enriched.valuation_error = str(exc)
            self._log_event("valuation_price_missing", position_id=position.id, err=str(exc))
            return enriched

        enriched.token_x_value_usd = x_amt * x_usd
        enriched.token_y_value_usd = y_amt * y_usd
        enriched.current_value_usd = enriched.token_x_value_usd + enriched.token_y_value_usd
        enriched.pending_fees_usd = fee_x * x_usd + fee_y * y_usd
        if position.snapshot_value_usd:
            enriched.percentage_change = (
                (enriched.current_value_usd - position.snapshot_value_usd)
                / position.snapshot_value_usd
                * 100.0
            )
        return enriched

    async def value_usd(self, pool: PoolInfo, amm_position: AmmPosition, active_bin: ActiveBin) -> float:
        """Current USD value of liquidity only (no fees). Raises on missing prices."""
        x_usd, y_usd = await self.unit_prices(pool, active_bin)
        return (
            to_ui_amount(amm_position.amount_x, pool.decimals_x) * x_usd
            + to_ui_amount(amm_position.amount_y, pool.decimals_y) * y_usd
        )
