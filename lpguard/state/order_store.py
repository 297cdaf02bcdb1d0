"""
Durable store of conditional orders.

``orders.json`` holds the ACTIVE set only; once an order reaches a
terminal state it is moved to ``order_history.json`` and never returns.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from lpguard.core.errors import StoreCorruptError
from lpguard.models import Order, OrderState
from lpguard.state.state_atomic import AtomicJsonStore


def _decode(oid: str, raw: Any) -> Order:
    try:
        return Order.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreCorruptError(f"bad order record {oid}: {exc}") from exc


class OrderStore:
    def __init__(self, active_path: str | Path, history_path: str | Path) -> None:
        self._active = AtomicJsonStore(active_path)
        self._history = AtomicJsonStore(history_path)

    async def get(self, order_id: str) -> Optional[Order]:
        active = await self._active.load()
        if order_id in active:
            return _decode(order_id, active[order_id])
        history = await self._history.load()
        if order_id in history:
            return _decode(order_id, history[order_id])
        return None

    async def list(self, pool_id: Optional[str] = None) -> List[Order]:
        """ACTIVE orders, optionally restricted to one pool."""
        data = await self._active.load()
        orders = [_decode(oid, raw) for oid, raw in data.items()]
        if pool_id is not None:
            orders = [o for o in orders if o.pool_id == pool_id]
        return sorted(orders, key=lambda o: o.created_at)

    async def list_history(self, pool_id: Optional[str] = None) -> List[Order]:
        data = await self._history.load()
        orders = [_decode(oid, raw) for oid, raw in data.items()]
        if pool_id is not None:
            orders = [o for o in orders if o.pool_id == pool_id]
        return sorted(orders, key=lambda o: o.finished_at or 0)

    async def put(self, order: Order) -> None:
        if order.state is not OrderState.ACTIVE:
            raise ValueError(f"order {order.id} is {order.state.value}; use record_terminal")
        record = order.to_dict()

        def _apply(data: Dict[str, Any]) -> None:
            data[order.id] = record

        await self._active.mutate(_apply)

    async def delete(self, order_id: str) -> bool:
        """Remove from the active set. True only for the caller that removed it."""
        def _apply(data: Dict[str, Any]) -> bool:
            return data.pop(order_id, None) is not None

        return await self._active.mutate(_apply)

    async def record_terminal(self, order: Order) -> None:
        if not order.is_terminal:
            raise ValueError(f"order {order.id} is still ACTIVE")
        record = order.to_dict()

        def _apply(data: Dict[str, Any]) -> None:
            data[order.id] = record

        await self._history.mutate(_apply)
