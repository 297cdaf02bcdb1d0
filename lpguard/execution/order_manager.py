"""
OrderManager: price-triggered LIMIT / TAKE_PROFIT / STOP_LOSS orders for
one pool.

Lifecycle per order:

    ACTIVE ──trigger──> (removed from active set) ──execute──┬──> EXECUTED
                                                             └──> FAILED

An order leaves the active set before its execution starts, so a poll that
overlaps a slow execution cannot fire it twice. Failed orders are not
retried; the caller resubmits.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from lpguard.amm.client import BinRange, LiquidityAmount, to_raw_amount
from lpguard.amm.reader import ChainReader
from lpguard.core.errors import OrderValidationError, StoreError
from lpguard.core.json_utils import dumps
from lpguard.core.utils import now_ms
from lpguard.engine_context import EngineContext
from lpguard.infra.scheduling import run_periodic
from lpguard.models import Order, OrderSide, OrderState, OrderType, Position

log = logging.getLogger("lpguard")

FULL_BPS = 10000

_ALIASES = {
    "order_type": ("orderType", "order_type", "type"),
    "trigger_price": ("triggerPrice", "triggerPriceUSD", "trigger_price", "trigger_price_usd"),
    "size_usd": ("sizeUSD", "size_usd", "positionSize"),
    "close_bps": ("closeBps", "close_bps"),
    "side": ("side",),
}


def _pick(config: Mapping[str, Any], name: str) -> Any:
    for key in _ALIASES[name]:
        if key in config and config[key] is not None:
            return config[key]
    return None


def _positive_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OrderValidationError(f"{name} must be a number")
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise OrderValidationError(f"{name} must be a finite number > 0")
    return value


def validate_order_config(pool_id: str, config: Mapping[str, Any]) -> Order:
    """Build an ACTIVE Order from user input or raise OrderValidationError."""
    if not pool_id:
        raise OrderValidationError("pool id is required")
    if not isinstance(config, Mapping):
        raise OrderValidationError("order config must be a mapping")

    raw_type = _pick(config, "order_type")
    try:
        order_type = OrderType(str(raw_type).upper())
    except ValueError:
        raise OrderValidationError(f"unknown order type {raw_type!r}") from None

    trigger = _positive_number(_pick(config, "trigger_price"), "triggerPrice")
    order = Order(
        id=uuid.uuid4().hex,
        pool_id=pool_id,
        order_type=order_type,
        trigger_price_usd=trigger,
    )

    if order_type is OrderType.LIMIT:
        order.size_usd = _positive_number(_pick(config, "size_usd"), "sizeUSD")
        raw_side = _pick(config, "side")
        try:
            order.side = OrderSide(str(raw_side).upper())
        except ValueError:
            raise OrderValidationError("LIMIT orders require side X or Y") from None
    else:
        bps = _pick(config, "close_bps")
        if isinstance(bps, bool) or not isinstance(bps, (int, float)) or int(bps) != bps:
            raise OrderValidationError("closeBps must be an integer")
        if not 1 <= int(bps) <= FULL_BPS:
            raise OrderValidationError(f"closeBps must be within [1, {FULL_BPS}]")
        order.close_bps = int(bps)
    return order


def should_trigger(order: Order, price: float, tolerance_pct: float = 0.01) -> bool:
    """
    LIMIT fires only inside a band of ``tolerance_pct`` below the trigger;
    a price far below it does not fill.
    """
    trigger = order.trigger_price_usd
    if order.order_type is OrderType.LIMIT:
        return abs(price - trigger) <= trigger * tolerance_pct and price <= trigger
    if order.order_type is OrderType.TAKE_PROFIT:
        return price >= trigger
    if order.order_type is OrderType.STOP_LOSS:
        return price <= trigger
    return False


class OrderExecutionError(Exception):
    pass


@dataclass
class OrderPollResult:
    pool_id: str
    price_usd: Optional[float] = None
    evaluated: int = 0
    executed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None


class OrderManager:
    def __init__(self, ctx: EngineContext, pool_id: str, log_event: Optional[Callable[..., None]] = None) -> None:
        self.ctx = ctx
        self.pool_id = pool_id
        self._in_flight: Set[str] = set()
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, "pool_id": self.pool_id, **kwargs}))

    def _reader(self) -> ChainReader:
        return ChainReader(
            self.ctx.amm,
            self.ctx.settings.owner,
            self.ctx.retry_policy,
            log_event=self._log_event,
            on_retry=self.ctx.metrics.record_retry,
        )

    async def submit(self, config: Mapping[str, Any]) -> Order:
        return await self.add(validate_order_config(self.pool_id, config))

    async def add(self, order: Order) -> Order:
        if order.pool_id != self.pool_id:
            raise OrderValidationError(f"order for pool {order.pool_id} sent to manager of {self.pool_id}")
        await self.ctx.order_store.put(order)
        self._log_event(
            "order_submitted",
            order_id=order.id,
            order_type=order.order_type.value,
            trigger_price=order.trigger_price_usd,
        )
        return order

    async def poll_once(self) -> OrderPollResult:
        result = OrderPollResult(pool_id=self.pool_id)
        orders = [o for o in await self.ctx.order_store.list(self.pool_id) if o.state is OrderState.ACTIVE]
        if not orders:
            result.skipped_reason = "no active orders"
            return result

        reader = self._reader()
        try:
            pool = await reader.pool(self.pool_id)
            active = await reader.active_bin(self.pool_id)
            price = await self.ctx.oracle.pool_price_usd(pool, active)
        except Exception as exc:
            result.skipped_reason = f"price unavailable: {exc}"
            log.warning(dumps({"event": "order_poll_skipped", "pool_id": self.pool_id, "err": str(exc)}))
            return result
        result.price_usd = price

        tolerance = self.ctx.settings.limit_tolerance_pct
        for order in orders:
            if order.id in self._in_flight:
                continue
            result.evaluated += 1
            if not should_trigger(order, price, tolerance):
                continue
            # Claim the order; whoever deletes it owns the execution.
            if not await self.ctx.order_store.delete(order.id):
                continue
            self.ctx.metrics.orders_triggered.labels(order_type=order.order_type.value).inc()
            self._log_event(
                "order_triggered",
                order_id=order.id,
                order_type=order.order_type.value,
                trigger_price=order.trigger_price_usd,
                price=price,
            )
            self._in_flight.add(order.id)
            try:
                await self._execute(order, reader)
                order.state = OrderState.EXECUTED
                result.executed.append(order.id)
                self.ctx.metrics.orders_executed.labels(order_type=order.order_type.value).inc()
            except Exception as exc:
                order.state = OrderState.FAILED
                order.result = str(exc) or type(exc).__name__
                result.failed[order.id] = order.result
                self.ctx.metrics.orders_failed.labels(order_type=order.order_type.value).inc()
                log.error(dumps({
                    "event": "order_failed",
                    "order_id": order.id,
                    "order_type": order.order_type.value,
                    "err": order.result,
                }))
            finally:
                order.finished_at = now_ms()
                self._in_flight.discard(order.id)
            await self.ctx.order_store.record_terminal(order)
        return result

    async def _execute(self, order: Order, reader: ChainReader) -> None:
        if order.order_type is OrderType.LIMIT:
            await self._execute_limit(order, reader)
        else:
            await self._execute_close(order, reader)

    async def _execute_limit(self, order: Order, reader: ChainReader) -> None:
        pool = await reader.pool(self.pool_id)
        active = await reader.active_bin(self.pool_id)
        x_usd, y_usd = await self.ctx.valuator.unit_prices(pool, active)
        width = self.ctx.settings.single_sided_bin_width
        if order.side is OrderSide.X:
            amount = LiquidityAmount(amount_x=to_raw_amount(order.size_usd / x_usd, pool.decimals_x))
            bin_range = BinRange(active.bin_id, active.bin_id + width)
        else:
            amount = LiquidityAmount(amount_y=to_raw_amount(order.size_usd / y_usd, pool.decimals_y))
            bin_range = BinRange(active.bin_id - width, active.bin_id)
        if amount.is_empty:
            raise OrderExecutionError(f"size {order.size_usd} USD rounds to zero tokens")

        position_id = await reader.call(
            "open_position", lambda: self.ctx.amm.open_position(self.pool_id, amount, bin_range)
        )
        await self.ctx.position_store.put(Position(
            id=position_id,
            pool_id=self.pool_id,
            min_bin=bin_range.min_bin,
            max_bin=bin_range.max_bin,
            original_active_bin=active.bin_id,
            snapshot_value_usd=float(order.size_usd),
        ))
        order.result = position_id
        self._log_event(
            "limit_filled",
            order_id=order.id,
            position_id=position_id,
            side=order.side.value,
            range=[bin_range.min_bin, bin_range.max_bin],
        )

    async def _execute_close(self, order: Order, reader: ChainReader) -> None:
        bps = int(order.close_bps)
        on_chain = await reader.positions(self.pool_id, fresh=True)
        if not on_chain:
            raise OrderExecutionError("no positions in pool")

        async def _close(position_id: str) -> Optional[str]:
            try:
                await self._close_position(position_id, bps, reader)
                return None
            except Exception as exc:
                return str(exc) or type(exc).__name__

        ids = list(on_chain)
        errors = await asyncio.gather(*(_close(pid) for pid in ids))
        failed = {pid: err for pid, err in zip(ids, errors) if err is not None}
        if failed:
            raise OrderExecutionError(f"{len(failed)}/{len(ids)} closes failed: {failed}")
        order.result = f"closed {bps} bps of {len(ids)} positions"

    async def _close_position(self, position_id: str, bps: int, reader: ChainReader) -> None:
        full = bps >= FULL_BPS
        async with self.ctx.position_locks.hold(position_id):
            amm_pos = await reader.position(self.pool_id, position_id)
            if amm_pos is None:
                if full:
                    await self.ctx.position_store.delete(position_id)
                    return
                raise OrderExecutionError(f"position {position_id} vanished before close")
            await reader.call(
                "remove_liquidity",
                lambda: self.ctx.amm.remove_liquidity(position_id, amm_pos.bin_range, bps, full),
            )
            self.ctx.metrics.liquidity_removals.labels(reason="order").inc()
            if full:
                await self.ctx.position_store.delete(position_id)
                return
            stored = await self.ctx.position_store.get(position_id)
            if stored is not None:
                await self.ctx.position_store.update_fields(
                    position_id, snapshot_value_usd=stored.snapshot_value_usd * (1 - bps / FULL_BPS)
                )

    async def run_cycle(self) -> Optional[OrderPollResult]:
        started = time.monotonic()
        try:
            result = await self.poll_once()
        except StoreError as exc:
            self.ctx.metrics.loop_errors.labels(loop="orders", kind="store").inc()
            log.warning(dumps({"event": "order_poll_skipped", "pool_id": self.pool_id, "err": str(exc)}))
            return None
        self.ctx.metrics.loop_duration_sec.labels(loop="orders").observe(time.monotonic() - started)
        return result

    async def run_loop(self, interval: Optional[float] = None, stop_event: Optional[asyncio.Event] = None) -> None:
        await run_periodic(
            f"orders:{self.pool_id}",
            self.run_cycle,
            interval if interval is not None else self.ctx.settings.order_poll_interval_sec,
            stop_event or self.ctx.stop_event,
            metrics=self.ctx.metrics,
        )
