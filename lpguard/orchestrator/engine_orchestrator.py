"""
EngineOrchestrator: owns the periodic loops and exposes the engine's
public operations.

Loops (each an asyncio task sharing ``ctx.stop_event``):
    - risk: chain sync, drawdown breakers, volume-drop check
    - rebalance: drift / edge scan
    - orders:<pool>: one per pool with orders, created on first submission
    - fees: optional auto-claim / auto-compound

Public operations return structured results and never raise.

Usage:
    ctx = EngineContext.build(settings, amm)
    engine = EngineOrchestrator(ctx)
    await engine.initialize()
    ...
    await engine.shutdown()
    await engine.wait_closed()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, List, Mapping, Optional

from lpguard.amm.reader import ChainReader
from lpguard.core.errors import OrderValidationError
from lpguard.core.json_utils import dumps
from lpguard.core.utils import now_ms
from lpguard.engine_context import EngineContext
from lpguard.execution.fee_collector import FeeCollector
from lpguard.execution.order_manager import OrderManager, validate_order_config
from lpguard.infra.scheduling import run_periodic
from lpguard.models import EnrichedPosition, FeeSample, OperationResult, OrderState, PositionStatus
from lpguard.rebalance.rebalance_manager import RebalanceManager
from lpguard.risk.risk_manager import RiskManager
from lpguard.state.position_store import daily_apr

log = logging.getLogger("lpguard")


@dataclass
class OrchestratorStats:
    running: bool
    tasks: List[str]
    order_pools: List[str]
    started_at_ms: Optional[int]


class EngineOrchestrator:
    def __init__(self, ctx: EngineContext, log_event: Optional[Callable[..., None]] = None) -> None:
        self.ctx = ctx
        self._log_event = log_event or self._default_log
        self.risk = RiskManager(ctx, log_event=log_event)
        self.rebalancer = RebalanceManager(ctx, log_event=log_event)
        self.fee_collector = FeeCollector(ctx, log_event=log_event)
        self.order_managers: Dict[str, OrderManager] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._started_at_ms: Optional[int] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_task(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=f"lpguard:{name}")
        self._tasks[name] = task

    async def initialize(self) -> None:
        """Start every loop, restore persisted orders, run one rebalance pass."""
        if self._running:
            return
        s = self.ctx.settings
        self.ctx.stop_event.clear()
        self._running = True
        self._started_at_ms = now_ms()
        self._log_event(
            "engine_start",
            risk_interval_sec=s.risk_interval_sec,
            rebalance_interval_sec=s.rebalance_interval_sec,
            order_poll_interval_sec=s.order_poll_interval_sec,
            auto_claim=s.auto_claim_enabled,
        )

        self._start_task("risk", run_periodic(
            "risk", self.risk.run_cycle, s.risk_interval_sec, self.ctx.stop_event,
            metrics=self.ctx.metrics, run_immediately=False,
        ))
        self._start_task("rebalance", run_periodic(
            "rebalance", self.rebalancer.run_cycle, s.rebalance_interval_sec, self.ctx.stop_event,
            metrics=self.ctx.metrics, run_immediately=False,
        ))
        if s.auto_claim_enabled:
            self._start_task("fees", run_periodic(
                "fees", self.fee_collector.run_cycle, s.fee_claim_interval_sec, self.ctx.stop_event,
                metrics=self.ctx.metrics, run_immediately=False,
            ))

        for pool_id, mgr in self.order_managers.items():
            self._ensure_order_loop(pool_id, mgr)
        await self._restore_orders()
        await self.trigger_rebalance_check()

    async def _restore_orders(self) -> None:
        try:
            orders = await self.ctx.order_store.list()
        except Exception as exc:
            log.error(dumps({"event": "order_restore_failed", "err": str(exc)}))
            return
        pools = sorted({o.pool_id for o in orders if o.state is OrderState.ACTIVE})
        for pool_id in pools:
            self._order_manager(pool_id)
        if pools:
            self._log_event("orders_restored", pools=pools, orders=len(orders))

    def _order_manager(self, pool_id: str) -> OrderManager:
        mgr = self.order_managers.get(pool_id)
        if mgr is None:
            mgr = OrderManager(self.ctx, pool_id, log_event=None)
            self.order_managers[pool_id] = mgr
            self._log_event("order_manager_created", pool_id=pool_id)
        self._ensure_order_loop(pool_id, mgr)
        return mgr

    def _ensure_order_loop(self, pool_id: str, mgr: OrderManager) -> None:
        """Start the pool's poll loop unless one is already alive."""
        name = f"orders:{pool_id}"
        task = self._tasks.get(name)
        if not self._running or (task is not None and not task.done()):
            return
        self._start_task(name, run_periodic(
            name, mgr.run_cycle, self.ctx.settings.order_poll_interval_sec,
            self.ctx.stop_event, metrics=self.ctx.metrics, run_immediately=False,
        ))

    async def shutdown(self) -> None:
        """
        Stop scheduling new cycles and return immediately. In-flight cycles
        (and any liquidity call inside them) run to completion; use
        ``wait_closed`` to wait for them.
        """
        if not self._running:
            return
        self._running = False
        self.ctx.stop_event.set()
        self._log_event("engine_shutdown", tasks=sorted(self._tasks))

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.error(dumps({"event": "loop_crashed", "task": task.get_name(), "err": str(task.exception())}))
            if pending:
                self._log_event("shutdown_pending_tasks", tasks=[t.get_name() for t in pending])
                return
        self._tasks.clear()
        await self.ctx.oracle.aclose()
        self._log_event("engine_closed")

    def get_stats(self) -> OrchestratorStats:
        return OrchestratorStats(
            running=self._running,
            tasks=sorted(self._tasks),
            order_pools=sorted(self.order_managers),
            started_at_ms=self._started_at_ms,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit_order(self, pool_id: str, config: Mapping[str, Any]) -> OperationResult:
        try:
            order = validate_order_config(pool_id, config)
        except OrderValidationError as exc:
            self._log_event("order_rejected", pool_id=pool_id, reason=str(exc))
            return OperationResult(success=False, reason=str(exc))
        try:
            await self._order_manager(pool_id).add(order)
        except Exception as exc:
            log.error(dumps({"event": "order_submit_failed", "pool_id": pool_id, "err": str(exc)}))
            return OperationResult(success=False, reason=f"could not persist order: {exc}")
        return OperationResult(
            success=True,
            reason="order accepted",
            order_id=order.id,
            details={"orderType": order.order_type.value, "poolId": pool_id},
        )

    async def trigger_rebalance_check(self) -> OperationResult:
        try:
            result = await self.rebalancer.check_and_rebalance_positions()
        except Exception as exc:
            log.warning(dumps({"event": "rebalance_check_failed", "err": str(exc)}))
            return OperationResult(success=False, reason=f"rebalance check failed: {exc}")
        return OperationResult(
            success=not result.failed,
            reason=(
                f"checked {len(result.checked)}, rebalanced {len(result.rebalanced)}, "
                f"failed {len(result.failed)}"
            ),
            details=result.to_dict(),
        )

    async def emergency_close_all_positions(self) -> OperationResult:
        try:
            result = await self.risk.close_all_positions()
        except Exception as exc:
            log.critical(dumps({"event": "emergency_close_error", "err": str(exc)}))
            return OperationResult(success=False, reason=f"emergency close failed: {exc}")
        return OperationResult(
            success=result.success,
            reason=f"closed {len(result.succeeded)}, failed {len(result.failed)}",
            details=result.to_dict(),
        )

    async def get_positions_summary(self) -> Dict[str, Any]:
        """
        Value every tracked position, append a fee sample to each valued
        one and return per-position detail plus totals.
        """
        try:
            positions = await self.ctx.position_store.list()
        except Exception as exc:
            log.warning(dumps({"event": "summary_failed", "err": str(exc)}))
            return {"success": False, "reason": str(exc), "positions": []}

        reader = ChainReader(
            self.ctx.amm,
            self.ctx.settings.owner,
            self.ctx.retry_policy,
            log_event=self._log_event,
            on_retry=self.ctx.metrics.record_retry,
        )
        enriched: List[EnrichedPosition] = []
        for pos in positions:
            try:
                pool = await reader.pool(pos.pool_id)
                active = await reader.active_bin(pos.pool_id)
                on_chain = await reader.positions(pos.pool_id)
                item = await self.ctx.valuator.valuate(pos, pool, on_chain.get(pos.id), active)
            except Exception as exc:
                item = EnrichedPosition(position=pos, valuation_error=str(exc) or type(exc).__name__)
            if item.is_valued:
                await self._record_fee_sample(item)
            enriched.append(item)

        counts = {status: 0 for status in PositionStatus}
        for item in enriched:
            if item.status is not None:
                counts[item.status] += 1
        total_value = sum(e.current_value_usd or 0.0 for e in enriched)
        total_fees = sum(e.pending_fees_usd or 0.0 for e in enriched)

        self.ctx.metrics.tracked_positions.set(len(enriched))
        self.ctx.metrics.total_value_usd.set(total_value)
        for status, n in counts.items():
            self.ctx.metrics.positions_by_status.labels(status=status.value).set(n)

        return {
            "success": True,
            "totalPositions": len(enriched),
            "inRange": counts[PositionStatus.IN_RANGE],
            "nearEdge": counts[PositionStatus.NEAR_EDGE],
            "outOfRange": counts[PositionStatus.OUT_OF_RANGE],
            "totalValueUSD": total_value,
            "totalPendingFeesUSD": total_fees,
            "positions": [e.to_dict() for e in enriched],
        }

    async def _record_fee_sample(self, item: EnrichedPosition) -> None:
        pos = item.position
        sample = FeeSample(
            timestamp_ms=now_ms(),
            fee_x=item.fee_x_amount or 0.0,
            fee_y=item.fee_y_amount or 0.0,
            fees_usd=item.pending_fees_usd or 0.0,
            position_value_usd=item.current_value_usd or 0.0,
        )
        try:
            if await self.ctx.position_store.append_fee_sample(pos.id, sample):
                pos.fee_history.append(sample)
                item.daily_apr = daily_apr(pos)
            await self.ctx.position_store.update_snapshot(pos.id, {
                "currentValueUSD": item.current_value_usd,
                "percentageChange": item.percentage_change,
                "status": item.status.value if item.status else None,
                "pendingFeesUSD": item.pending_fees_usd,
                "dailyAPR": item.daily_apr,
                "updatedAtMs": sample.timestamp_ms,
            })
        except Exception as exc:
            self._log_event("fee_sample_failed", position_id=pos.id, err=str(exc))
