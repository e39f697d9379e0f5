"""Tests for spectrebot.services.stats_api."""

import httpx
import pytest

from spectrebot.services.stats_api import StatsAPIClient, StatsAPIError


class TestStatsAPIClient:
    @pytest.mark.asyncio
    async def test_profile_is_cached(self):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(200, json={"stats": {"rank_rating": 1500}, "matches": []})

        client = StatsAPIClient(
            "https://stats.example/api/v1/",
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        first = await client.get_full_profile("abc")
        second = await client.get_full_profile("abc")

        assert first == second
        assert calls == ["/api/v1/player/abc/full_profile"]

        client.invalidate("abc")
        await client.get_full_profile("abc")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_error_status(self):
        client = StatsAPIClient(
            "https://stats.example",
            http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
        )

        with pytest.raises(StatsAPIError):
            await client.get_full_profile("missing")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("down")

        client = StatsAPIClient(
            "https://stats.example",
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(StatsAPIError):
            await client.get_full_profile("abc")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>oops</html>"),
            httpx.Response(200, json=["not", "a", "dict"]),
        ],
    )
    async def test_malformed_payload(self, response):
        client = StatsAPIClient(
            "https://stats.example",
            http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)),
        )

        with pytest.raises(StatsAPIError):
            await client.get_full_profile("abc")
        assert client._cache.get("abc") is None
