"""
Retrying read-through view of AMM state for one scan.

Pool metadata is cached for the lifetime of the reader (it never changes);
position lists are cached per pool unless ``fresh=True`` is asked for,
which every mutating path does right after taking a position lock.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from lpguard.amm.client import ActiveBin, AmmClient, AmmPosition, PoolInfo
from lpguard.infra.retry import RetryPolicy, retry_async


class ChainReader:
    def __init__(
        self,
        amm: AmmClient,
        owner: str,
        retry_policy: RetryPolicy,
        log_event: Optional[Callable[..., None]] = None,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.amm = amm
        self.owner = owner
        self._retry = retry_policy
        self._log_event = log_event
        self._on_retry = on_retry
        self._pools: Dict[str, PoolInfo] = {}
        self._positions: Dict[str, Dict[str, AmmPosition]] = {}

    async def call(self, label: str, fn: Callable[[], Any]) -> Any:
        return await retry_async(fn, self._retry, label, log_event=self._log_event, on_retry=self._on_retry)

    async def pool(self, pool_id: str) -> PoolInfo:
        info = self._pools.get(pool_id)
        if info is None:
            info = await self.call("get_pool", lambda: self.amm.get_pool(pool_id))
            self._pools[pool_id] = info
        return info

    async def active_bin(self, pool_id: str) -> ActiveBin:
        return await self.call("get_active_bin", lambda: self.amm.get_active_bin(pool_id))

    async def positions(self, pool_id: str, fresh: bool = False) -> Dict[str, AmmPosition]:
        if fresh or pool_id not in self._positions:
            rows: List[AmmPosition] = await self.call(
                "get_user_positions", lambda: self.amm.get_user_positions(pool_id, self.owner)
            )
            self._positions[pool_id] = {p.position_id: p for p in rows}
        return self._positions[pool_id]

    async def position(self, pool_id: str, position_id: str) -> Optional[AmmPosition]:
        """Fresh on-chain view of one position; None once it is gone."""
        rows = await self.positions(pool_id, fresh=True)
        return rows.get(position_id)
