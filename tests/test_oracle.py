"""
Tests for PriceOracle over a mocked HTTP transport.
"""

import httpx
import pytest

from lpguard.amm.client import ActiveBin, PoolInfo
from lpguard.config.config import SOL_MINT, USDC_MINT
from lpguard.core.errors import PriceUnavailableError
from lpguard.infra.retry import RetryPolicy
from lpguard.pricing.oracle import PriceOracle

BASE = "https://prices.test"
NO_WAIT = RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


class _Api:
    """Scripted price endpoint: pops one response per request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)


def _prices(**by_id):
    return {"data": {k: {"id": k, "price": str(v)} for k, v in by_id.items()}}


def _oracle(api, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    kwargs.setdefault("retry_policy", NO_WAIT)
    return PriceOracle(BASE, client=client, **kwargs), client


class TestPriceOracle:
    """get_usd_price / get_usd_prices"""

    @pytest.mark.asyncio
    async def test_parses_and_caches(self):
        api = _Api((200, _prices(**{SOL_MINT: 151.25})))
        oracle, client = _oracle(api)

        assert await oracle.get_usd_price(SOL_MINT) == 151.25
        assert await oracle.get_usd_price(SOL_MINT) == 151.25

        assert len(api.requests) == 1
        assert api.requests[0].url.path == "/price/v2"
        assert api.requests[0].url.params["ids"] == SOL_MINT
        await client.aclose()

    @pytest.mark.asyncio
    async def test_batch_requests_only_uncached_ids(self):
        api = _Api(
            (200, _prices(**{SOL_MINT: 100})),
            (200, _prices(**{USDC_MINT: 1.0})),
        )
        oracle, client = _oracle(api)

        await oracle.get_usd_price(SOL_MINT)
        prices = await oracle.get_usd_prices([SOL_MINT, USDC_MINT])

        assert prices == {SOL_MINT: 100.0, USDC_MINT: 1.0}
        assert api.requests[1].url.params["ids"] == USDC_MINT
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self):
        api = _Api((200, _prices(**{SOL_MINT: 100})))
        oracle, client = _oracle(api)

        await oracle.get_usd_price(SOL_MINT)
        oracle.invalidate(SOL_MINT)
        await oracle.get_usd_price(SOL_MINT)

        assert len(api.requests) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        api = _Api((503, {}), (200, _prices(**{SOL_MINT: 99})))
        retries = []
        oracle, client = _oracle(api, on_retry=retries.append)

        assert await oracle.get_usd_price(SOL_MINT) == 99.0
        assert retries == ["price_fetch"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        api = _Api((404, {}))
        oracle, client = _oracle(api)

        with pytest.raises(PriceUnavailableError) as exc_info:
            await oracle.get_usd_price(SOL_MINT)

        assert not exc_info.value.transient
        assert len(api.requests) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self):
        api = _Api((500, {}))
        oracle, client = _oracle(api)

        with pytest.raises(PriceUnavailableError):
            await oracle.get_usd_price(SOL_MINT)

        assert len(api.requests) == NO_WAIT.attempts
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"data": {}},
        {"data": {SOL_MINT: {"price": None}}},
        {"data": {SOL_MINT: {"price": "-1"}}},
        {"data": {SOL_MINT: {"price": "nan"}}},
        {"unexpected": True},
    ])
    async def test_unusable_price_is_unavailable(self, body):
        oracle, client = _oracle(_Api((200, body)))
        with pytest.raises(PriceUnavailableError) as exc_info:
            await oracle.get_usd_price(SOL_MINT)
        assert exc_info.value.asset_id == SOL_MINT
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        oracle, client = _oracle(_Api((200, b"<html>")))
        with pytest.raises(PriceUnavailableError):
            await oracle.get_usd_price(SOL_MINT)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_shared_client_left_open(self):
        oracle, client = _oracle(_Api((200, _prices(**{SOL_MINT: 1}))))
        await oracle.aclose()
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        oracle = PriceOracle(BASE)
        await oracle.aclose()
        assert oracle.client.is_closed

    @pytest.mark.asyncio
    async def test_owned_client_reopens_after_close(self, monkeypatch):
        real_client = httpx.AsyncClient
        api = _Api((200, _prices(**{SOL_MINT: 150})))
        oracle = PriceOracle(BASE, retry_policy=NO_WAIT)
        await oracle.aclose()
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kw: real_client(transport=httpx.MockTransport(api)))

        assert await oracle.get_usd_price(SOL_MINT) == 150.0
        assert not oracle.client.is_closed
        await oracle.aclose()


class TestPoolPrice:
    """pool_price_usd()"""

    @pytest.mark.asyncio
    async def test_bin_price_times_quote_usd(self):
        oracle, client = _oracle(_Api((200, _prices(**{SOL_MINT: 100}))))
        pool = PoolInfo("p", "TOKX", SOL_MINT, decimals_x=6, decimals_y=9)
        assert await oracle.pool_price_usd(pool, ActiveBin(100, 0.021)) == pytest.approx(2.1)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stable_base_priced_directly(self):
        api = _Api((200, _prices(**{USDC_MINT: 0.9998})))
        oracle, client = _oracle(api, stable_assets=[USDC_MINT])
        pool = PoolInfo("p", USDC_MINT, SOL_MINT, decimals_x=6, decimals_y=9)
        assert await oracle.pool_price_usd(pool, ActiveBin(100, 0.0066)) == 0.9998
        await client.aclose()

    @pytest.mark.asyncio
    async def test_bad_bin_price(self):
        oracle, client = _oracle(_Api((200, _prices(**{SOL_MINT: 100}))))
        pool = PoolInfo("p", "TOKX", SOL_MINT, decimals_x=6, decimals_y=9)
        with pytest.raises(PriceUnavailableError):
            await oracle.pool_price_usd(pool, ActiveBin(100, 0.0))
        await client.aclose()
