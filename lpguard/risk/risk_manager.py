"""
RiskManager: circuit breakers over managed positions.

Handles:
- Drawdown per position against its snapshot value
- Trading volume drop against a rolling per-pool baseline
- Proportional size reduction and emergency full liquidation
- Reconciling the position store with the chain

Every mutating path takes the position lock and re-reads the on-chain
position before acting, so overlapping triggers degrade to a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from lpguard.amm.client import AmmPosition
from lpguard.amm.reader import ChainReader
from lpguard.core.errors import StoreError
from lpguard.core.json_utils import dumps
from lpguard.core.utils import now_ms
from lpguard.engine_context import EngineContext
from lpguard.models import BatchResult, Position

log = logging.getLogger("lpguard")

FULL_BPS = 10000


@dataclass
class VolumeBaseline:
    """Rolling per-pool volume samples over ``window_sec``."""
    window_sec: float
    samples: Dict[str, Deque[Tuple[int, float]]] = field(default_factory=dict)

    def record(self, pool_id: str, volume_usd: float, ts_ms: Optional[int] = None) -> None:
        ts_ms = ts_ms if ts_ms is not None else now_ms()
        buf = self.samples.setdefault(pool_id, deque())
        buf.append((ts_ms, volume_usd))
        self._trim(pool_id, ts_ms)

    def _trim(self, pool_id: str, ts_ms: int) -> None:
        buf = self.samples.get(pool_id)
        if not buf:
            return
        cutoff = ts_ms - int(self.window_sec * 1000)
        while buf and buf[0][0] < cutoff:
            buf.popleft()

    def baseline(self, pool_id: str, ts_ms: Optional[int] = None) -> Optional[float]:
        """Mean of in-window samples, or None without history."""
        ts_ms = ts_ms if ts_ms is not None else now_ms()
        cutoff = ts_ms - int(self.window_sec * 1000)
        values = [v for t, v in self.samples.get(pool_id, ()) if t >= cutoff]
        if not values:
            return None
        return sum(values) / len(values)


@dataclass
class RiskState:
    """Process-scoped risk bookkeeping, one per engine."""
    max_drawdown_pct: float
    volume_drop_ratio: float
    reduction_bps: int
    volume: VolumeBaseline
    last_check_ms: int = 0
    trips: int = 0


@dataclass
class CircuitBreakerResult:
    checked: List[str] = field(default_factory=list)
    tripped: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass
class SyncResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed_pools: Dict[str, str] = field(default_factory=dict)


@dataclass
class RiskCycleResult:
    sync: SyncResult
    breakers: CircuitBreakerResult
    volume_drop: bool = False
    reduction: Optional[BatchResult] = None


class RiskManager:
    def __init__(self, ctx: EngineContext, log_event: Optional[Callable[..., None]] = None) -> None:
        self.ctx = ctx
        s = ctx.settings
        self.state = RiskState(
            max_drawdown_pct=s.max_drawdown_pct,
            volume_drop_ratio=s.volume_drop_ratio,
            reduction_bps=s.reduction_bps,
            volume=VolumeBaseline(window_sec=s.volume_window_sec),
        )
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

    async def _monitored_pools(self) -> List[str]:
        pools = list(self.ctx.settings.pools)
        for pos in await self.ctx.position_store.list():
            if pos.pool_id not in pools:
                pools.append(pos.pool_id)
        return pools

    # ------------------------------------------------------------------
    # Drawdown
    # ------------------------------------------------------------------

    async def enforce_all_circuit_breakers(self) -> CircuitBreakerResult:
        """
        Recompute drawdown for every position from fresh chain data and
        reduce the ones past ``max_drawdown_pct``. A tripped position's
        snapshot is rebased to its post-reduction value, so calling this
        again without a price move does nothing.
        """
        result = CircuitBreakerResult()
        reader = self._reader()
        positions = await self.ctx.position_store.list()
        for pos in positions:
            result.checked.append(pos.id)
            try:
                await self._enforce_one(pos.id, pos.pool_id, reader, result)
            except Exception as exc:
                result.failed[pos.id] = str(exc)
                self._log_event("drawdown_check_failed", position_id=pos.id, err=str(exc))
        self.state.last_check_ms = now_ms()
        return result

    async def _enforce_one(
        self, position_id: str, pool_id: str, reader: ChainReader, result: CircuitBreakerResult
    ) -> None:
        async with self.ctx.position_locks.hold(position_id):
            pos = await self.ctx.position_store.get(position_id)
            if pos is None:
                result.skipped[position_id] = "deleted"
                return
            if pos.snapshot_value_usd <= 0:
                result.skipped[position_id] = "no snapshot"
                return
            amm_pos = await reader.position(pool_id, position_id)
            if amm_pos is None or amm_pos.is_empty:
                result.skipped[position_id] = "not on chain"
                return
            pool = await reader.pool(pool_id)
            active = await reader.active_bin(pool_id)
            current = await self.ctx.valuator.value_usd(pool, amm_pos, active)
            drawdown = (pos.snapshot_value_usd - current) / pos.snapshot_value_usd
            if drawdown <= self.state.max_drawdown_pct:
                return

            bps = self.state.reduction_bps
            self.state.trips += 1
            self.ctx.metrics.circuit_breaker_trips.labels(breaker="drawdown").inc()
            log.warning(dumps({
                "event": "drawdown_breach",
                "position_id": position_id,
                "snapshot_usd": round(pos.snapshot_value_usd, 4),
                "current_usd": round(current, 4),
                "drawdown": round(drawdown, 6),
                "threshold": self.state.max_drawdown_pct,
                "bps": bps,
            }))
            await self._remove(pos, amm_pos, bps, reader, reason="drawdown")
            if bps < FULL_BPS:
                await self.ctx.position_store.update_fields(
                    position_id, snapshot_value_usd=current * (1 - bps / FULL_BPS)
                )
            result.tripped.append(position_id)

    async def _remove(
        self, pos: Position, amm_pos: AmmPosition, bps: int, reader: ChainReader, reason: str
    ) -> None:
        """Caller holds the position lock and passes a fresh ``amm_pos``."""
        full = bps >= FULL_BPS
        await reader.call(
            "remove_liquidity",
            lambda: self.ctx.amm.remove_liquidity(pos.id, amm_pos.bin_range, min(bps, FULL_BPS), full),
        )
        self.ctx.metrics.liquidity_removals.labels(reason=reason).inc()
        if full:
            await self.ctx.position_store.delete(pos.id)
        self._log_event("liquidity_removed", position_id=pos.id, pool_id=pos.pool_id, bps=bps, reason=reason)

    # ------------------------------------------------------------------
    # Volume
    # ------------------------------------------------------------------

    async def fetch_pool_volumes(self, pools: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """Current USD volume per pool; pools whose lookup fails are left out."""
        pools = list(pools) if pools is not None else await self._monitored_pools()
        reader = self._reader()
        out: Dict[str, float] = {}
        for pool_id in pools:
            try:
                out[pool_id] = float(
                    await reader.call("get_pool_volume_usd", lambda p=pool_id: self.ctx.amm.get_pool_volume_usd(p))
                )
            except Exception as exc:
                self._log_event("volume_fetch_failed", pool_id=pool_id, err=str(exc))
        return out

    async def check_volume_drop(
        self,
        ratio_threshold: Optional[float] = None,
        current: Optional[Dict[str, float]] = None,
    ) -> bool:
        """
        True when any monitored pool's current volume divided by its rolling
        baseline is at or below ``ratio_threshold``. Reads only; recording
        the new sample is ``record_volume_samples``' job.
        """
        ratio_threshold = self.state.volume_drop_ratio if ratio_threshold is None else ratio_threshold
        if current is None:
            current = await self.fetch_pool_volumes()
        ts = now_ms()
        dropped = False
        for pool_id, volume in current.items():
            base = self.state.volume.baseline(pool_id, ts)
            if base is None or base <= 0:
                continue
            ratio = volume / base
            if ratio <= ratio_threshold:
                dropped = True
                self._log_event(
                    "volume_drop_detected",
                    pool_id=pool_id,
                    current_usd=volume,
                    baseline_usd=round(base, 4),
                    ratio=round(ratio, 6),
                    threshold=ratio_threshold,
                )
        return dropped

    def record_volume_samples(self, volumes: Dict[str, float], ts_ms: Optional[int] = None) -> None:
        ts = ts_ms if ts_ms is not None else now_ms()
        for pool_id, volume in volumes.items():
            self.state.volume.record(pool_id, volume, ts)

    # ------------------------------------------------------------------
    # Size reduction / liquidation
    # ------------------------------------------------------------------

    async def adjust_position_size(self, bps: int, position_ids: Optional[Iterable[str]] = None) -> BatchResult:
        """
        Remove ``bps`` of every tracked position (or of ``position_ids``).
        Best effort: one failure is recorded and the rest still run.
        """
        if not 1 <= bps <= FULL_BPS:
            raise ValueError(f"bps must be within [1, {FULL_BPS}], got {bps}")
        positions = await self.ctx.position_store.list()
        if position_ids is not None:
            wanted = set(position_ids)
            positions = [p for p in positions if p.id in wanted]
        reader = self._reader()
        result = BatchResult()
        for pos in positions:
            try:
                done = await self._reduce_one(pos.id, pos.pool_id, bps, reader)
            except Exception as exc:
                result.failed[pos.id] = str(exc)
                log.error(dumps({"event": "reduce_failed", "position_id": pos.id, "bps": bps, "err": str(exc)}))
                continue
            if done:
                result.succeeded.append(pos.id)
            else:
                result.failed[pos.id] = "not on chain"
        self._log_event("position_size_adjusted", bps=bps, **result.to_dict())
        return result

    async def _reduce_one(self, position_id: str, pool_id: str, bps: int, reader: ChainReader) -> bool:
        async with self.ctx.position_locks.hold(position_id):
            pos = await self.ctx.position_store.get(position_id)
            if pos is None:
                return False
            amm_pos = await reader.position(pool_id, position_id)
            if amm_pos is None or amm_pos.is_empty:
                return False
            await self._remove(pos, amm_pos, bps, reader, reason="reduce")
            if bps < FULL_BPS:
                await self.ctx.position_store.update_fields(
                    position_id, snapshot_value_usd=pos.snapshot_value_usd * (1 - bps / FULL_BPS)
                )
            return True

    async def close_all_positions(self) -> BatchResult:
        """Fully close every tracked position in parallel; never stops early."""
        positions = await self.ctx.position_store.list()
        log.critical(dumps({"event": "emergency_close_all", "positions": len(positions)}))
        reader = self._reader()

        async def _one(pos: Position) -> Tuple[str, Optional[str]]:
            try:
                await self._close_one(pos, reader)
                return pos.id, None
            except Exception as exc:
                return pos.id, str(exc) or type(exc).__name__

        result = BatchResult()
        for pid, err in await asyncio.gather(*(_one(p) for p in positions)):
            if err is None:
                result.succeeded.append(pid)
            else:
                result.failed[pid] = err
                log.error(dumps({"event": "emergency_close_failed", "position_id": pid, "err": err}))
        self._log_event("emergency_close_done", **result.to_dict())
        return result

    async def _close_one(self, pos: Position, reader: ChainReader) -> None:
        async with self.ctx.position_locks.hold(pos.id):
            current = await self.ctx.position_store.get(pos.id)
            if current is None:
                return
            amm_pos = await reader.position(pos.pool_id, pos.id)
            if amm_pos is None:
                await self.ctx.position_store.delete(pos.id)
                return
            await self._remove(current, amm_pos, FULL_BPS, reader, reason="emergency")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_positions_with_chain(self) -> SyncResult:
        """
        Insert on-chain positions the store does not know and drop stored
        ones the chain no longer has. A pool whose listing fails is left
        untouched.
        """
        result = SyncResult()
        reader = self._reader()
        stored = {p.id: p for p in await self.ctx.position_store.list()}
        for pool_id in await self._monitored_pools():
            try:
                on_chain = await reader.positions(pool_id, fresh=True)
            except Exception as exc:
                result.failed_pools[pool_id] = str(exc)
                self._log_event("sync_pool_failed", pool_id=pool_id, err=str(exc))
                continue

            for pid, amm_pos in on_chain.items():
                if pid in stored:
                    continue
                async with self.ctx.position_locks.hold(pid):
                    if await self.ctx.position_store.get(pid) is not None:
                        continue
                    snapshot = await self._initial_value(pool_id, amm_pos, reader)
                    await self.ctx.position_store.put(Position(
                        id=pid,
                        pool_id=pool_id,
                        min_bin=amm_pos.lower_bin,
                        max_bin=max(amm_pos.upper_bin, amm_pos.lower_bin + 1),
                        original_active_bin=(amm_pos.lower_bin + amm_pos.upper_bin) // 2,
                        snapshot_value_usd=snapshot,
                    ))
                result.added.append(pid)

            for pid, pos in stored.items():
                if pos.pool_id != pool_id or pid in on_chain:
                    continue
                async with self.ctx.position_locks.hold(pid):
                    if await self.ctx.position_store.delete(pid):
                        result.removed.append(pid)

        if result.added or result.removed:
            self._log_event("positions_synced", **result.__dict__)
        self.ctx.metrics.tracked_positions.set(len(await self.ctx.position_store.list()))
        return result

    async def _initial_value(self, pool_id: str, amm_pos: AmmPosition, reader: ChainReader) -> float:
        try:
            pool = await reader.pool(pool_id)
            active = await reader.active_bin(pool_id)
            return await self.ctx.valuator.value_usd(pool, amm_pos, active)
        except Exception as exc:
            self._log_event("sync_valuation_failed", position_id=amm_pos.position_id, err=str(exc))
            return 0.0

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[RiskCycleResult]:
        """
        One risk pass: sync, drawdown breakers, volume-drop check (reduce on
        trip), then record the new volume sample. A store failure skips the
        pass; the next timer tick retries.
        """
        started = time.monotonic()
        try:
            sync = await self.sync_positions_with_chain()
            breakers = await self.enforce_all_circuit_breakers()
            volumes = await self.fetch_pool_volumes()
            dropped = await self.check_volume_drop(current=volumes)
            reduction = None
            if dropped:
                self.ctx.metrics.circuit_breaker_trips.labels(breaker="volume_drop").inc()
                reduction = await self.adjust_position_size(self.state.reduction_bps)
            self.record_volume_samples(volumes)
        except StoreError as exc:
            self.ctx.metrics.loop_errors.labels(loop="risk", kind="store").inc()
            log.warning(dumps({"event": "risk_cycle_skipped", "err": str(exc)}))
            return None
        self.ctx.metrics.loop_duration_sec.labels(loop="risk").observe(time.monotonic() - started)
        return RiskCycleResult(sync=sync, breakers=breakers, volume_drop=dropped, reduction=reduction)
