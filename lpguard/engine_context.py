"""
Engine-wide collaborators, built once and handed to every manager.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from lpguard.amm.client import AmmClient
from lpguard.config.config import Settings
from lpguard.core.utils import KeyedLocks
from lpguard.infra.retry import RetryPolicy
from lpguard.monitoring.metrics_rich import EngineMetrics
from lpguard.pricing.oracle import PriceOracle
from lpguard.state.order_store import OrderStore
from lpguard.state.position_store import PositionStore
from lpguard.valuation.valuator import PositionValuator


@dataclass
class EngineContext:
    settings: Settings
    amm: AmmClient
    oracle: PriceOracle
    position_store: PositionStore
    order_store: OrderStore
    metrics: EngineMetrics = field(default_factory=EngineMetrics)
    position_locks: KeyedLocks = field(default_factory=KeyedLocks)
    # Shared cancellation token for every periodic loop.
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    valuator: Optional[PositionValuator] = None

    def __post_init__(self) -> None:
        if self.valuator is None:
            self.valuator = PositionValuator(
                self.oracle,
                self.settings.reference_asset,
                self.settings.near_edge_low_pct,
                self.settings.near_edge_high_pct,
            )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings)

    @classmethod
    def build(cls, settings: Settings, amm: AmmClient, oracle: Optional[PriceOracle] = None) -> "EngineContext":
        metrics = EngineMetrics()
        if oracle is None:
            oracle = PriceOracle(
                settings.price_api_url,
                timeout=settings.http_timeout,
                cache_ttl_ms=settings.price_cache_ttl_ms,
                retry_policy=RetryPolicy.from_settings(settings),
                stable_assets=settings.stable_assets,
                on_retry=metrics.record_retry,
            )
        return cls(
            settings=settings,
            amm=amm,
            oracle=oracle,
            position_store=PositionStore(settings.positions_path, settings.fee_history_max),
            order_store=OrderStore(settings.orders_path, settings.order_history_path),
            metrics=metrics,
        )
