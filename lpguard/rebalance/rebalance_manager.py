"""
RebalanceManager: re-range positions that drifted from their center or
are about to leave their range.

A rebalance claims fees, fully closes the position and reopens the same
half-width centered on the current active bin with the withdrawn amounts
plus the claimed fees. The snapshot value carries over, increased by the
realized fees.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from lpguard.amm.client import ActiveBin, BinRange, ClaimedFees, LiquidityAmount, to_ui_amount
from lpguard.amm.reader import ChainReader
from lpguard.core.errors import PriceUnavailableError, StoreError
from lpguard.core.json_utils import dumps
from lpguard.core.utils import now_ms
from lpguard.engine_context import EngineContext
from lpguard.models import Position

log = logging.getLogger("lpguard")


def needs_rebalance(
    active_bin: int,
    original_active_bin: int,
    min_bin: int,
    max_bin: int,
    drift_bins: int = 6,
    edge_bins: int = 4,
) -> bool:
    if active_bin <= original_active_bin - drift_bins or active_bin >= original_active_bin + drift_bins:
        return True
    return active_bin <= min_bin + edge_bins or active_bin >= max_bin - edge_bins


@dataclass
class RebalanceScanResult:
    checked: List[str] = field(default_factory=list)
    # old position id -> new position id
    rebalanced: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": list(self.checked),
            "rebalanced": dict(self.rebalanced),
            "skipped": dict(self.skipped),
            "failed": dict(self.failed),
        }


class RebalanceManager:
    def __init__(self, ctx: EngineContext, log_event: Optional[Callable[..., None]] = None) -> None:
        self.ctx = ctx
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def _reader(self) -> ChainReader:
        return ChainReader(
            self.ctx.amm,
            self.ctx.settings.owner,
            self.ctx.retry_policy,
            log_event=self._log_event,
            on_retry=self.ctx.metrics.record_retry,
        )

    def _needs(self, pos: Position, active_bin: int) -> bool:
        s = self.ctx.settings
        return needs_rebalance(
            active_bin, pos.original_active_bin, pos.min_bin, pos.max_bin, s.drift_bins, s.edge_bins
        )

    def _cooling_down(self, pos: Position, now: int) -> bool:
        cooldown_ms = int(self.ctx.settings.rebalance_cooldown_sec * 1000)
        return pos.last_rebalance_ms > 0 and now - pos.last_rebalance_ms < cooldown_ms

    async def check_and_rebalance_positions(self) -> RebalanceScanResult:
        """Scan every stored position; one failure never stops the scan."""
        result = RebalanceScanResult()
        reader = self._reader()
        active_bins: Dict[str, ActiveBin] = {}
        positions = await self.ctx.position_store.list()
        now = now_ms()
        for pos in positions:
            result.checked.append(pos.id)
            try:
                active = active_bins.get(pos.pool_id)
                if active is None:
                    active = await reader.active_bin(pos.pool_id)
                    active_bins[pos.pool_id] = active
                if not self._needs(pos, active.bin_id):
                    continue
                if self._cooling_down(pos, now):
                    result.skipped[pos.id] = "cooldown"
                    continue
                new_id = await self._rebalance_one(pos.id, pos.pool_id, reader, result)
                if new_id:
                    result.rebalanced[pos.id] = new_id
            except Exception as exc:
                result.failed[pos.id] = str(exc) or type(exc).__name__
                self.ctx.metrics.rebalance_failures.inc()
                log.error(dumps({"event": "rebalance_failed", "position_id": pos.id, "err": str(exc)}))
        self._log_event("rebalance_scan_done", **result.to_dict())
        return result

    async def _rebalance_one(
        self, position_id: str, pool_id: str, reader: ChainReader, result: RebalanceScanResult
    ) -> Optional[str]:
        amm = self.ctx.amm
        store = self.ctx.position_store
        async with self.ctx.position_locks.hold(position_id):
            pos = await store.get(position_id)
            if pos is None:
                result.skipped[position_id] = "deleted"
                return None
            amm_pos = await reader.position(pool_id, position_id)
            if amm_pos is None:
                await store.delete(position_id)
                result.skipped[position_id] = "not on chain"
                self._log_event("rebalance_position_gone", position_id=position_id)
                return None
            pool = await reader.pool(pool_id)
            active = await reader.active_bin(pool_id)
            if not self._needs(pos, active.bin_id):
                result.skipped[position_id] = "recovered"
                return None

            half = pos.half_width
            new_min = active.bin_id - half
            new_range = BinRange(new_min, new_min + pos.max_bin - pos.min_bin)
            # Built before touching the chain so a bad range fails with nothing moved.
            draft = Position(
                id=position_id,
                pool_id=pool_id,
                min_bin=new_range.min_bin,
                max_bin=new_range.max_bin,
                original_active_bin=active.bin_id,
                snapshot_value_usd=pos.snapshot_value_usd,
            )

            self._log_event(
                "rebalance_start",
                position_id=position_id,
                active_bin=active.bin_id,
                original_active_bin=pos.original_active_bin,
                range=[pos.min_bin, pos.max_bin],
            )
            claimed: ClaimedFees = await reader.call("claim_fees", lambda: amm.claim_fees(position_id))
            await reader.call(
                "remove_liquidity",
                lambda: amm.remove_liquidity(position_id, amm_pos.bin_range, 10000, True),
            )
            self.ctx.metrics.liquidity_removals.labels(reason="rebalance").inc()
            await store.delete(position_id)

            amount = LiquidityAmount(
                amount_x=amm_pos.amount_x + claimed.fee_x,
                amount_y=amm_pos.amount_y + claimed.fee_y,
            )
            try:
                new_id = await reader.call("open_position", lambda: amm.open_position(pool_id, amount, new_range))
            except Exception as exc:
                # Liquidity sits in the wallet now; it is not lost, only unmanaged.
                log.error(dumps({
                    "event": "rebalance_reopen_failed",
                    "position_id": position_id,
                    "amount_x": amount.amount_x,
                    "amount_y": amount.amount_y,
                    "err": str(exc),
                }))
                raise

            fees_usd = 0.0
            if claimed.fee_x or claimed.fee_y:
                try:
                    x_usd, y_usd = await self.ctx.valuator.unit_prices(pool, active)
                    fees_usd = (
                        to_ui_amount(claimed.fee_x, pool.decimals_x) * x_usd
                        + to_ui_amount(claimed.fee_y, pool.decimals_y) * y_usd
                    )
                    self.ctx.metrics.fees_claimed_usd.inc(fees_usd)
                except PriceUnavailableError as exc:
                    self._log_event("rebalance_fee_price_missing", position_id=position_id, err=str(exc))

            await store.put(replace(
                draft,
                id=new_id,
                snapshot_value_usd=pos.snapshot_value_usd + fees_usd,
                last_rebalance_ms=now_ms(),
            ))
            self.ctx.metrics.rebalances.inc()
            self._log_event(
                "rebalance_done",
                old_position_id=position_id,
                new_position_id=new_id,
                range=[new_range.min_bin, new_range.max_bin],
                fees_usd=round(fees_usd, 6),
            )
            return new_id

    async def run_cycle(self) -> Optional[RebalanceScanResult]:
        started = time.monotonic()
        try:
            result = await self.check_and_rebalance_positions()
        except StoreError as exc:
            self.ctx.metrics.loop_errors.labels(loop="rebalance", kind="store").inc()
            log.warning(dumps({"event": "rebalance_cycle_skipped", "err": str(exc)}))
            return None
        self.ctx.metrics.loop_duration_sec.labels(loop="rebalance").observe(time.monotonic() - started)
        return result
