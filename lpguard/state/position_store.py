"""
Durable store of managed positions and their fee time series.

Backed by ``positions.json`` (``{position_id: record}``). Every mutating
call re-reads the file, applies one change and fsyncs before returning, so
concurrent loops never write back a stale copy of someone else's record.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from lpguard.core.errors import StoreCorruptError
from lpguard.models import FeeSample, Position
from lpguard.state.state_atomic import AtomicJsonStore

MS_PER_DAY = 86_400_000


class PositionStore:
    def __init__(self, path: str | Path, fee_history_max: int = 500) -> None:
        self._store = AtomicJsonStore(path)
        self._fee_history_max = fee_history_max

    @property
    def path(self) -> Path:
        return self._store.path

    @staticmethod
    def _decode(pid: str, raw: Any) -> Position:
        try:
            return Position.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreCorruptError(f"bad position record {pid}: {exc}") from exc

    async def get(self, position_id: str) -> Optional[Position]:
        data = await self._store.load()
        raw = data.get(position_id)
        if raw is None:
            return None
        return self._decode(position_id, raw)

    async def list(self, pool_id: Optional[str] = None) -> List[Position]:
        data = await self._store.load()
        out = [self._decode(pid, raw) for pid, raw in data.items()]
        if pool_id is not None:
            out = [p for p in out if p.pool_id == pool_id]
        return out

    async def put(self, position: Position) -> None:
        record = position.to_dict()

        def _apply(data: Dict[str, Any]) -> None:
            data[position.id] = record

        await self._store.mutate(_apply)

    async def delete(self, position_id: str) -> bool:
        def _apply(data: Dict[str, Any]) -> bool:
            return data.pop(position_id, None) is not None

        return await self._store.mutate(_apply)

    async def append_fee_sample(self, position_id: str, sample: FeeSample) -> bool:
        """
        Append to the position's fee history.

        Returns False (and writes nothing) when the position is unknown or
        the sample is not strictly newer than the last one.
        """
        def _apply(data: Dict[str, Any]) -> bool:
            raw = data.get(position_id)
            if raw is None:
                return False
            history = raw.setdefault("feeHistory", [])
            if history and int(history[-1]["timestampMs"]) >= sample.timestamp_ms:
                return False
            history.append(sample.to_dict())
            if len(history) > self._fee_history_max:
                del history[: len(history) - self._fee_history_max]
            return True

        return await self._store.mutate(_apply)

    async def update_snapshot(self, position_id: str, fields: Dict[str, Any]) -> bool:
        def _apply(data: Dict[str, Any]) -> bool:
            raw = data.get(position_id)
            if raw is None:
                return False
            raw["lastSnapshot"] = dict(fields)
            return True

        return await self._store.mutate(_apply)

    async def update_fields(self, position_id: str, **fields: Any) -> Optional[Position]:
        """Patch persisted attributes of one position (snake_case names)."""
        def _apply(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            raw = data.get(position_id)
            if raw is None:
                return None
            pos = self._decode(position_id, raw)
            for key, value in fields.items():
                if not hasattr(pos, key):
                    raise AttributeError(f"Position has no field {key}")
                setattr(pos, key, value)
            data[position_id] = pos.to_dict()
            return data[position_id]

        raw = await self._store.mutate(_apply)
        return Position.from_dict(raw) if raw is not None else None


def daily_apr(position: Position) -> Optional[float]:
    """
    Fee yield per day as a percentage of the average position value.

    Earned fees are the sum of positive increments between consecutive
    samples; a drop (fees were claimed) restarts the counter from the new
    value instead of counting as a loss.
    """
    history = position.fee_history
    if len(history) < 2:
        return None
    elapsed_ms = history[-1].timestamp_ms - history[0].timestamp_ms
    if elapsed_ms <= 0:
        return None

    earned = 0.0
    for prev, cur in zip(history, history[1:]):
        delta = cur.fees_usd - prev.fees_usd
        if delta > 0:
            earned += delta
        elif delta < 0 and cur.fees_usd > 0:
            earned += cur.fees_usd

    values = [s.position_value_usd for s in history if s.position_value_usd > 0]
    if not values:
        return None
    avg_value = sum(values) / len(values)
    days = elapsed_ms / MS_PER_DAY
    return earned / avg_value / days * 100.0
