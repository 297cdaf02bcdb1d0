"""
USD price lookups over HTTP with a short per-asset cache.

Talks to a Jupiter-style price endpoint:

    GET /price/v2?ids=<mintA>,<mintB>
    {"data": {"<mintA>": {"id": "...", "price": "151.2"}, ...}}
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import httpx

from lpguard.amm.client import ActiveBin, PoolInfo
from lpguard.core.errors import PriceUnavailableError
from lpguard.core.json_utils import dumps
from lpguard.infra.retry import RetryPolicy, retry_async


class PriceOracle:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        cache_ttl_ms: int = 5000,
        retry_policy: Optional[RetryPolicy] = None,
        stable_assets: Iterable[str] = (),
        log_event_callback: Optional[Callable[..., None]] = None,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        # A shared client is never closed here; an owned one is closed in aclose().
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=timeout)
            self._owns_client = True
        self._ttl_ms = cache_ttl_ms
        self._retry = retry_policy or RetryPolicy()
        self._stable = frozenset(stable_assets)
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._log_event_cb = log_event_callback
        self._on_retry = on_retry

    def _log_event(self, event: str, **kw: Any) -> None:
        if self._log_event_cb:
            self._log_event_cb(event, **kw)
        else:
            logging.getLogger("lpguard").info(dumps({"event": event, **kw}))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def is_stable(self, asset_id: str) -> bool:
        return asset_id in self._stable

    def _cached(self, asset_id: str) -> Optional[float]:
        hit = self._cache.get(asset_id)
        if hit is None:
            return None
        price, ts = hit
        if (time.monotonic() - ts) * 1000 > self._ttl_ms:
            self._cache.pop(asset_id, None)
            return None
        return price

    def invalidate(self, asset_id: Optional[str] = None) -> None:
        if asset_id is None:
            self._cache.clear()
        else:
            self._cache.pop(asset_id, None)

    async def get_usd_price(self, asset_id: str) -> float:
        prices = await self.get_usd_prices([asset_id])
        return prices[asset_id]

    async def get_usd_prices(self, asset_ids: Iterable[str]) -> Dict[str, float]:
        """
        Resolve every id or raise PriceUnavailableError naming the first
        missing one. Cached ids are not re-requested.
        """
        wanted = list(dict.fromkeys(asset_ids))
        out: Dict[str, float] = {}
        missing = []
        for asset_id in wanted:
            cached = self._cached(asset_id)
            if cached is None:
                missing.append(asset_id)
            else:
                out[asset_id] = cached
        if missing:
            fetched = await retry_async(
                lambda: self._fetch(missing),
                self._retry,
                label="price_fetch",
                log_event=self._log_event,
                on_retry=self._on_retry,
            )
            now = time.monotonic()
            for asset_id in missing:
                price = fetched.get(asset_id)
                if price is None:
                    raise PriceUnavailableError(asset_id, transient=False)
                self._cache[asset_id] = (price, now)
                out[asset_id] = price
        return out

    async def _fetch(self, asset_ids: list) -> Dict[str, float]:
        if self._owns_client and self.client.is_closed:
            # Reopened after an engine restart closed it.
            self.client = httpx.AsyncClient(http2=True, timeout=self._timeout)
        try:
            resp = await self.client.get(f"{self.base_url}/price/v2", params={"ids": ",".join(asset_ids)})
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise PriceUnavailableError(
                ",".join(asset_ids),
                f"price api returned {status}",
                transient=status >= 500 or status == 429,
            ) from exc
        except httpx.TransportError as exc:
            raise PriceUnavailableError(",".join(asset_ids), f"price api unreachable: {exc}") from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise PriceUnavailableError(",".join(asset_ids), "price api returned invalid json") from exc

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return {}
        prices: Dict[str, float] = {}
        for asset_id in asset_ids:
            entry = data.get(asset_id)
            if not isinstance(entry, dict):
                continue
            try:
                price = float(entry.get("price"))
            except (TypeError, ValueError):
                continue
            if math.isfinite(price) and price > 0:
                prices[asset_id] = price
        return prices

    async def pool_price_usd(self, pool: PoolInfo, active_bin: ActiveBin) -> float:
        """
        USD price of one token X, derived from the pool's own bin price so it
        agrees with on-chain state. A stable X is priced directly.
        """
        if self.is_stable(pool.token_x):
            return await self.get_usd_price(pool.token_x)
        if active_bin.price <= 0 or not math.isfinite(active_bin.price):
            raise PriceUnavailableError(pool.pool_id, f"bad bin price {active_bin.price}", transient=False)
        y_usd = await self.get_usd_price(pool.token_y)
        return active_bin.price * y_usd
