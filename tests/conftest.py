"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

import pytest

from lpguard.amm.client import AmmPosition
from lpguard.config.config import SOL_MINT, Settings
from lpguard.engine_context import EngineContext
from lpguard.models import Position
from lpguard.monitoring.metrics_rich import EngineMetrics
from lpguard.state.order_store import OrderStore
from lpguard.state.position_store import PositionStore

from tests.fakes import POOL, FakeAmmClient, FakeOracle


@pytest.fixture
def settings(tmp_path):
    return Settings(
        owner="owner-1",
        pools=(POOL,),
        reference_asset=SOL_MINT,
        state_dir=str(tmp_path),
        retry_attempts=3,
        retry_base_delay_sec=0.0,
        retry_max_delay_sec=0.0,
        log_file="",
    )


@pytest.fixture
def amm():
    return FakeAmmClient()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def ctx(settings, amm, oracle):
    return EngineContext(
        settings=settings,
        amm=amm,
        oracle=oracle,
        position_store=PositionStore(settings.positions_path, settings.fee_history_max),
        order_store=OrderStore(settings.orders_path, settings.order_history_path),
        metrics=EngineMetrics(),
    )


@pytest.fixture
def seed_position(ctx, amm):
    """
    Register a position both on the fake chain and in the store.

    Default liquidity: 10 X (= $500 at bin price 0.5 SOL) + 5 SOL ($500).
    """
    async def _seed(
        pid: str = "pos-1",
        min_bin: int = 90,
        max_bin: int = 110,
        original_active_bin: int = 100,
        snapshot_value_usd: float = 1000.0,
        amount_x: int = 10_000_000,
        amount_y: int = 5_000_000_000,
        fee_x: int = 0,
        fee_y: int = 0,
        pool_id: str = POOL,
        on_chain: bool = True,
    ) -> Position:
        if on_chain:
            amm.add(AmmPosition(pid, pool_id, min_bin, max_bin, amount_x, amount_y, fee_x, fee_y))
        pos = Position(
            id=pid,
            pool_id=pool_id,
            min_bin=min_bin,
            max_bin=max_bin,
            original_active_bin=original_active_bin,
            snapshot_value_usd=snapshot_value_usd,
        )
        await ctx.position_store.put(pos)
        return pos

    return _seed
