"""
Tests for OrderManager: validation, trigger rules, execution and the
ACTIVE -> EXECUTED | FAILED lifecycle.
"""

import asyncio
import math

import pytest

from lpguard.amm.client import ActiveBin
from lpguard.core.errors import OrderValidationError
from lpguard.execution.order_manager import OrderManager, should_trigger, validate_order_config
from lpguard.models import Order, OrderSide, OrderState, OrderType

from tests.fakes import POOL


def _set_usd_price(amm, usd: float, bin_id: int = 100) -> None:
    # Pool quotes X in SOL at $100/SOL.
    amm.active[POOL] = ActiveBin(bin_id, usd / 100.0)


def _order(order_type, trigger, **kw):
    return Order(id="o", pool_id=POOL, order_type=order_type, trigger_price_usd=trigger, **kw)


class TestValidation:
    """Malformed configs never reach the store."""

    def test_valid_limit(self):
        order = validate_order_config(POOL, {"orderType": "LIMIT", "triggerPrice": 1.0, "sizeUSD": 50, "side": "x"})
        assert order.order_type is OrderType.LIMIT
        assert order.side is OrderSide.X
        assert order.state is OrderState.ACTIVE
        assert order.size_usd == 50.0

    def test_valid_take_profit_snake_case(self):
        order = validate_order_config(POOL, {"order_type": "take_profit", "trigger_price": 2, "close_bps": 5000})
        assert order.order_type is OrderType.TAKE_PROFIT
        assert order.close_bps == 5000

    @pytest.mark.parametrize("config", [
        {"orderType": "LIMIT", "triggerPrice": 1.0, "sizeUSD": 50},
        {"orderType": "LIMIT", "triggerPrice": 1.0, "side": "X"},
        {"orderType": "LIMIT", "triggerPrice": 1.0, "sizeUSD": -5, "side": "X"},
        {"orderType": "LIMIT", "triggerPrice": 1.0, "sizeUSD": 5, "side": "Z"},
        {"orderType": "STOP_LOSS", "triggerPrice": 1.0},
        {"orderType": "STOP_LOSS", "triggerPrice": 1.0, "closeBps": 0},
        {"orderType": "STOP_LOSS", "triggerPrice": 1.0, "closeBps": 10001},
        {"orderType": "STOP_LOSS", "triggerPrice": 1.0, "closeBps": 12.5},
        {"orderType": "STOP_LOSS", "triggerPrice": 1.0, "closeBps": True},
        {"orderType": "TAKE_PROFIT", "triggerPrice": 0, "closeBps": 100},
        {"orderType": "TAKE_PROFIT", "triggerPrice": math.nan, "closeBps": 100},
        {"orderType": "TAKE_PROFIT", "triggerPrice": "2.0", "closeBps": 100},
        {"orderType": "MARKET", "triggerPrice": 1.0},
        {},
    ])
    def test_rejected(self, config):
        with pytest.raises(OrderValidationError):
            validate_order_config(POOL, config)


class TestTriggerRules:
    """Trigger conditions per order type."""

    def test_limit_fires_inside_band(self):
        order = _order(OrderType.LIMIT, 1.00, size_usd=10, side=OrderSide.X)
        assert should_trigger(order, 0.995)
        assert should_trigger(order, 1.00)

    def test_limit_ignores_far_below(self):
        order = _order(OrderType.LIMIT, 1.00, size_usd=10, side=OrderSide.X)
        assert not should_trigger(order, 0.90)

    def test_limit_ignores_above(self):
        order = _order(OrderType.LIMIT, 1.00, size_usd=10, side=OrderSide.X)
        assert not should_trigger(order, 1.005)

    def test_take_profit(self):
        order = _order(OrderType.TAKE_PROFIT, 2.00, close_bps=5000)
        assert should_trigger(order, 2.10)
        assert should_trigger(order, 2.00)
        assert not should_trigger(order, 1.99)

    def test_stop_loss(self):
        order = _order(OrderType.STOP_LOSS, 2.00, close_bps=5000)
        assert should_trigger(order, 1.50)
        assert not should_trigger(order, 2.01)


class TestExecution:
    """poll_once end to end against the fake AMM."""

    @pytest.mark.asyncio
    async def test_take_profit_closes_half_and_executes(self, ctx, amm, seed_position):
        await seed_position()
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 2.00, "closeBps": 5000})
        _set_usd_price(amm, 2.10)

        result = await mgr.poll_once()

        assert result.executed == [order.id]
        assert len(amm.remove_calls) == 1
        pid, bin_range, bps, close = amm.remove_calls[0]
        assert (pid, bps, close) == ("pos-1", 5000, False)
        assert (bin_range.min_bin, bin_range.max_bin) == (90, 110)
        assert amm.owner_positions["pos-1"].amount_x == 5_000_000
        stored = await ctx.order_store.get(order.id)
        assert stored.state is OrderState.EXECUTED
        assert stored.finished_at is not None
        assert await ctx.order_store.list() == []
        assert (await ctx.position_store.get("pos-1")).snapshot_value_usd == pytest.approx(500.0)

    @pytest.mark.asyncio
    async def test_stop_loss_full_close_claims_and_drops_position(self, ctx, amm, seed_position):
        await seed_position()
        mgr = OrderManager(ctx, POOL)
        await mgr.submit({"orderType": "STOP_LOSS", "triggerPrice": 0.50, "closeBps": 10000})
        _set_usd_price(amm, 0.40)

        await mgr.poll_once()

        assert amm.remove_calls[0][2:] == (10000, True)
        assert "pos-1" not in amm.owner_positions
        assert await ctx.position_store.get("pos-1") is None

    @pytest.mark.asyncio
    async def test_limit_x_side_opens_single_sided_position(self, ctx, amm):
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "LIMIT", "triggerPrice": 1.00, "sizeUSD": 100, "side": "X"})
        _set_usd_price(amm, 0.995)

        result = await mgr.poll_once()

        assert result.executed == [order.id]
        pool_id, amount, bin_range = amm.open_calls[0]
        assert (bin_range.min_bin, bin_range.max_bin) == (100, 169)
        assert amount.amount_y == 0
        assert amount.amount_x == pytest.approx(100 / 0.995 * 1_000_000, abs=1)
        stored = await ctx.position_store.list()
        assert len(stored) == 1
        assert stored[0].snapshot_value_usd == 100.0
        assert stored[0].original_active_bin == 100
        assert (await ctx.order_store.get(order.id)).result == stored[0].id

    @pytest.mark.asyncio
    async def test_limit_y_side_range_below_active(self, ctx, amm):
        mgr = OrderManager(ctx, POOL)
        await mgr.submit({"orderType": "LIMIT", "triggerPrice": 1.00, "sizeUSD": 100, "side": "Y"})
        _set_usd_price(amm, 0.995)

        await mgr.poll_once()

        _, amount, bin_range = amm.open_calls[0]
        assert (bin_range.min_bin, bin_range.max_bin) == (31, 100)
        assert amount.amount_y == 1_000_000_000
        assert amount.amount_x == 0

    @pytest.mark.asyncio
    async def test_limit_outside_band_stays_active(self, ctx, amm):
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "LIMIT", "triggerPrice": 1.00, "sizeUSD": 100, "side": "X"})
        _set_usd_price(amm, 0.90)

        result = await mgr.poll_once()

        assert result.executed == []
        assert result.evaluated == 1
        assert amm.open_calls == []
        assert (await ctx.order_store.get(order.id)).state is OrderState.ACTIVE

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_never_retries(self, ctx, amm, seed_position):
        await seed_position()
        amm.fail_remove.add("pos-1")
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "STOP_LOSS", "triggerPrice": 1.0, "closeBps": 2500})
        _set_usd_price(amm, 0.5)

        first = await mgr.poll_once()
        amm.fail_remove.clear()
        second = await mgr.poll_once()

        assert order.id in first.failed
        stored = await ctx.order_store.get(order.id)
        assert stored.state is OrderState.FAILED
        assert "remove rejected" in stored.result
        assert second.evaluated == 0
        assert amm.remove_calls == []

    @pytest.mark.asyncio
    async def test_no_positions_fails_order(self, ctx, amm):
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 1.0, "closeBps": 5000})
        _set_usd_price(amm, 2.0)

        await mgr.poll_once()

        assert (await ctx.order_store.get(order.id)).state is OrderState.FAILED

    @pytest.mark.asyncio
    async def test_executed_order_not_reevaluated(self, ctx, amm, seed_position):
        await seed_position()
        mgr = OrderManager(ctx, POOL)
        await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 2.0, "closeBps": 1000})
        _set_usd_price(amm, 2.5)

        await mgr.poll_once()
        await mgr.poll_once()

        assert len(amm.remove_calls) == 1

    @pytest.mark.asyncio
    async def test_order_leaves_active_set_before_execution(self, ctx, amm, seed_position):
        await seed_position()
        mgr = OrderManager(ctx, POOL)
        await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 2.0, "closeBps": 5000})
        _set_usd_price(amm, 2.5)

        seen_active = []
        original = amm.remove_liquidity

        async def _spy(*args, **kwargs):
            seen_active.append(len(await ctx.order_store.list()))
            return await original(*args, **kwargs)

        amm.remove_liquidity = _spy
        await mgr.poll_once()

        assert seen_active == [0]

    @pytest.mark.asyncio
    async def test_overlapping_polls_execute_once(self, ctx, amm, seed_position):
        await seed_position()
        mgr = OrderManager(ctx, POOL)
        await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 2.0, "closeBps": 5000})
        _set_usd_price(amm, 2.5)

        results = await asyncio.gather(mgr.poll_once(), OrderManager(ctx, POOL).poll_once())

        assert sum(len(r.executed) for r in results) == 1
        assert len(amm.remove_calls) == 1

    @pytest.mark.asyncio
    async def test_transient_remove_is_retried(self, ctx, amm, seed_position):
        await seed_position()
        amm.transient_failures["remove_liquidity"] = 2
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "TAKE_PROFIT", "triggerPrice": 2.0, "closeBps": 5000})
        _set_usd_price(amm, 2.5)

        await mgr.poll_once()

        assert (await ctx.order_store.get(order.id)).state is OrderState.EXECUTED
        assert ctx.metrics.registry.get_sample_value("lp_retries_total", {"label": "remove_liquidity"}) == 2

    @pytest.mark.asyncio
    async def test_missing_price_skips_poll(self, ctx, amm, oracle, seed_position):
        await seed_position()
        oracle.prices.clear()
        mgr = OrderManager(ctx, POOL)
        order = await mgr.submit({"orderType": "STOP_LOSS", "triggerPrice": 5.0, "closeBps": 5000})

        result = await mgr.poll_once()

        assert result.skipped_reason.startswith("price unavailable")
        assert (await ctx.order_store.get(order.id)).state is OrderState.ACTIVE
        assert amm.remove_calls == []

    @pytest.mark.asyncio
    async def test_manager_only_sees_its_pool(self, ctx, amm):
        other = OrderManager(ctx, "pool-2")
        await other.submit({"orderType": "STOP_LOSS", "triggerPrice": 5.0, "closeBps": 5000})
        result = await OrderManager(ctx, POOL).poll_once()
        assert result.skipped_reason == "no active orders"
