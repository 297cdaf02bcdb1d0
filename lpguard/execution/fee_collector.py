"""
FeeCollector: periodic fee claims over tracked positions, optionally
compounding the claimed amounts back into the same position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from lpguard.amm.client import ClaimedFees, LiquidityAmount, PoolInfo, to_ui_amount
from lpguard.amm.reader import ChainReader
from lpguard.core.errors import PriceUnavailableError, StoreError
from lpguard.core.json_utils import dumps
from lpguard.engine_context import EngineContext

log = logging.getLogger("lpguard")


@dataclass
class FeeClaimResult:
    claimed: Dict[str, ClaimedFees] = field(default_factory=dict)
    compounded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    claimed_usd: float = 0.0


class FeeCollector:
    def __init__(
        self,
        ctx: EngineContext,
        compound: Optional[bool] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.ctx = ctx
        self.compound = ctx.settings.auto_compound_enabled if compound is None else compound
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def claim_all(self) -> FeeClaimResult:
        result = FeeClaimResult()
        reader = ChainReader(
            self.ctx.amm,
            self.ctx.settings.owner,
            self.ctx.retry_policy,
            log_event=self._log_event,
            on_retry=self.ctx.metrics.record_retry,
        )
        for pos in await self.ctx.position_store.list():
            try:
                await self._claim_one(pos.id, pos.pool_id, reader, result)
            except Exception as exc:
                result.failed[pos.id] = str(exc) or type(exc).__name__
                log.error(dumps({"event": "fee_claim_failed", "position_id": pos.id, "err": str(exc)}))
        self._log_event(
            "fee_claim_done",
            claimed=len(result.claimed),
            compounded=len(result.compounded),
            claimed_usd=round(result.claimed_usd, 2),
            failed=result.failed,
        )
        return result

    async def _claim_one(self, position_id: str, pool_id: str, reader: ChainReader, result: FeeClaimResult) -> None:
        async with self.ctx.position_locks.hold(position_id):
            amm_pos = await reader.position(pool_id, position_id)
            if amm_pos is None:
                return
            if amm_pos.fee_x <= 0 and amm_pos.fee_y <= 0:
                return
            claimed = await reader.call("claim_fees", lambda: self.ctx.amm.claim_fees(position_id))
            result.claimed[position_id] = claimed
            await self._account_fees(position_id, pool_id, claimed, reader, result)
            if not self.compound or (claimed.fee_x <= 0 and claimed.fee_y <= 0):
                return
            amount = LiquidityAmount(amount_x=claimed.fee_x, amount_y=claimed.fee_y)
            await reader.call("add_liquidity", lambda: self.ctx.amm.add_liquidity(position_id, amount))
            result.compounded.append(position_id)

    async def _account_fees(
        self, position_id: str, pool_id: str, claimed: ClaimedFees, reader: ChainReader, result: FeeClaimResult
    ) -> None:
        if claimed.fee_x <= 0 and claimed.fee_y <= 0:
            return
        pool: PoolInfo = await reader.pool(pool_id)
        try:
            x_usd, y_usd = await self.ctx.valuator.unit_prices(pool, await reader.active_bin(pool_id))
        except PriceUnavailableError as exc:
            self._log_event("fee_price_missing", position_id=position_id, err=str(exc))
            return
        usd = to_ui_amount(claimed.fee_x, pool.decimals_x) * x_usd + to_ui_amount(claimed.fee_y, pool.decimals_y) * y_usd
        result.claimed_usd += usd
        self.ctx.metrics.fees_claimed_usd.inc(usd)

    async def run_cycle(self) -> Optional[FeeClaimResult]:
        try:
            return await self.claim_all()
        except StoreError as exc:
            self.ctx.metrics.loop_errors.labels(loop="fees", kind="store").inc()
            log.warning(dumps({"event": "fee_cycle_skipped", "err": str(exc)}))
            return None
