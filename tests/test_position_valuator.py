"""
Tests for PositionValuator and range classification.
"""

import pytest

from lpguard.amm.client import ActiveBin, AmmPosition, PoolInfo
from lpguard.config.config import SOL_MINT, USDC_MINT
from lpguard.models import FeeSample, Position, PositionStatus
from lpguard.valuation.valuator import PositionValuator, classify_range

from tests.fakes import POOL, TOKEN_X, FakeOracle


def _position(min_bin=90, max_bin=110, snapshot=1000.0):
    return Position(
        id="pos-1",
        pool_id=POOL,
        min_bin=min_bin,
        max_bin=max_bin,
        original_active_bin=100,
        snapshot_value_usd=snapshot,
    )


def _amm_position(amount_x=10_000_000, amount_y=5_000_000_000, fee_x=0, fee_y=0):
    return AmmPosition("pos-1", POOL, 90, 110, amount_x, amount_y, fee_x, fee_y)


POOL_REF_Y = PoolInfo(POOL, TOKEN_X, SOL_MINT, decimals_x=6, decimals_y=9)


class TestClassifyRange:
    """Status is a pure function of (active, min, max)."""

    def test_centered_is_in_range(self):
        pct, status = classify_range(100, 90, 110)
        assert pct == 50.0
        assert status is PositionStatus.IN_RANGE

    def test_below_min_is_out_of_range(self):
        pct, status = classify_range(88, 90, 110)
        assert status is PositionStatus.OUT_OF_RANGE
        assert pct < 0

    def test_quarter_is_near_edge(self):
        pct, status = classify_range(95, 90, 110)
        assert pct == 25.0
        assert status is PositionStatus.NEAR_EDGE

    def test_band_boundaries_are_near_edge(self):
        assert classify_range(96, 90, 110)[1] is PositionStatus.NEAR_EDGE  # 30%
        assert classify_range(104, 90, 110)[1] is PositionStatus.NEAR_EDGE  # 70%
        assert classify_range(97, 90, 110)[1] is PositionStatus.IN_RANGE

    def test_range_edges_are_inside(self):
        assert classify_range(90, 90, 110)[1] is PositionStatus.NEAR_EDGE
        assert classify_range(110, 90, 110)[1] is PositionStatus.NEAR_EDGE
        assert classify_range(111, 90, 110)[1] is PositionStatus.OUT_OF_RANGE

    def test_out_of_range_never_reports_in_range(self):
        for active in list(range(0, 90)) + list(range(111, 200)):
            assert classify_range(active, 90, 110)[1] is PositionStatus.OUT_OF_RANGE

    def test_empty_range_rejected(self):
        with pytest.raises(ValueError):
            classify_range(100, 100, 100)


class TestValuation:
    """USD valuation against the reference asset."""

    @pytest.mark.asyncio
    async def test_reference_asset_as_token_y(self):
        valuator = PositionValuator(FakeOracle(), SOL_MINT)
        enriched = await valuator.valuate(_position(), POOL_REF_Y, _amm_position(), ActiveBin(100, 0.5))

        # 10 X * 0.5 SOL * $100 + 5 SOL * $100
        assert enriched.token_x_value_usd == pytest.approx(500.0)
        assert enriched.token_y_value_usd == pytest.approx(500.0)
        assert enriched.current_value_usd == pytest.approx(1000.0)
        assert enriched.percentage_change == pytest.approx(0.0)
        assert enriched.status is PositionStatus.IN_RANGE
        assert enriched.percentage_through_range == 50.0

    @pytest.mark.asyncio
    async def test_reference_asset_as_token_x(self):
        pool = PoolInfo(POOL, SOL_MINT, "TOKY", decimals_x=9, decimals_y=6)
        amm_pos = AmmPosition("pos-1", POOL, 90, 110, 1_000_000_000, 200_000_000)
        valuator = PositionValuator(FakeOracle(), SOL_MINT)
        # One SOL buys 200 Y, so one Y is $0.50
        enriched = await valuator.valuate(_position(snapshot=200.0), pool, amm_pos, ActiveBin(100, 200.0))

        assert enriched.token_x_value_usd == pytest.approx(100.0)
        assert enriched.token_y_value_usd == pytest.approx(100.0)
        assert enriched.percentage_change == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_unrelated_pair_uses_oracle_for_both_sides(self):
        oracle = FakeOracle({"AAA": 2.0, USDC_MINT: 1.0})
        pool = PoolInfo(POOL, "AAA", USDC_MINT, decimals_x=0, decimals_y=0)
        amm_pos = AmmPosition("pos-1", POOL, 90, 110, 10, 30)
        enriched = await PositionValuator(oracle, SOL_MINT).valuate(
            _position(snapshot=40.0), pool, amm_pos, ActiveBin(100, 123.0)
        )
        assert enriched.current_value_usd == pytest.approx(50.0)
        assert enriched.percentage_change == pytest.approx(25.0)

    @pytest.mark.asyncio
    async def test_pending_fees_valued(self):
        amm_pos = _amm_position(fee_x=2_000_000, fee_y=100_000_000)
        enriched = await PositionValuator(FakeOracle(), SOL_MINT).valuate(
            _position(), POOL_REF_Y, amm_pos, ActiveBin(100, 0.5)
        )
        # 2 X * $50 + 0.1 SOL * $100
        assert enriched.pending_fees_usd == pytest.approx(110.0)
        assert enriched.fee_x_amount == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_zero_snapshot_omits_percentage_change(self):
        enriched = await PositionValuator(FakeOracle(), SOL_MINT).valuate(
            _position(snapshot=0.0), POOL_REF_Y, _amm_position(), ActiveBin(100, 0.5)
        )
        assert enriched.current_value_usd == pytest.approx(1000.0)
        assert enriched.percentage_change is None

    @pytest.mark.asyncio
    async def test_missing_price_keeps_range_fields(self):
        valuator = PositionValuator(FakeOracle(prices={}), SOL_MINT)
        enriched = await valuator.valuate(_position(), POOL_REF_Y, _amm_position(), ActiveBin(95, 0.5))

        assert enriched.status is PositionStatus.NEAR_EDGE
        assert enriched.percentage_through_range == 25.0
        assert enriched.current_value_usd is None
        assert enriched.percentage_change is None
        assert enriched.valuation_error
        assert not enriched.is_valued

    @pytest.mark.asyncio
    async def test_position_missing_on_chain(self):
        enriched = await PositionValuator(FakeOracle(), SOL_MINT).valuate(
            _position(), POOL_REF_Y, None, ActiveBin(100, 0.5)
        )
        assert enriched.status is PositionStatus.IN_RANGE
        assert enriched.current_value_usd is None
        assert "not found" in enriched.valuation_error

    @pytest.mark.asyncio
    async def test_daily_apr_from_history(self):
        pos = _position()
        pos.fee_history = [
            FeeSample(0, 0, 0, 0.0, 1000.0),
            FeeSample(86_400_000, 0, 0, 10.0, 1000.0),
        ]
        enriched = await PositionValuator(FakeOracle(), SOL_MINT).valuate(
            pos, POOL_REF_Y, _amm_position(), ActiveBin(100, 0.5)
        )
        assert enriched.daily_apr == pytest.approx(1.0)
