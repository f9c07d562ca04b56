"""Tests for SODA client."""

from datetime import date
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from beverage_sync.services.soda_client import SODAClient, SODAClientError


def _response(status: int, json=None, headers=None) -> httpx.Response:
    return httpx.Response(
        status,
        json=json,
        headers=headers,
        request=httpx.Request("GET", "http://test/resource/naix-2893.json"),
    )


def _status_error(status: int, headers=None) -> httpx.HTTPStatusError:
    response = _response(status, headers=headers)
    return httpx.HTTPStatusError("error", request=response.request, response=response)


class TestSODAClient:
    """Tests for SODAClient."""

    def test_init_with_token(self):
        """Test client initialization with app token."""
        client = SODAClient(app_token="test_token")
        assert client.headers["X-App-Token"] == "test_token"

    def test_init_without_token(self, test_settings):
        """Test client initialization without app token."""
        test_settings.soda_app_token = None
        with patch(
            "beverage_sync.services.soda_client.get_settings", return_value=test_settings
        ):
            client = SODAClient(app_token=None)
        assert "X-App-Token" not in client.headers

    def test_token_defaults_to_settings(self, test_settings):
        test_settings.soda_app_token = "from_env"
        with patch(
            "beverage_sync.services.soda_client.get_settings", return_value=test_settings
        ):
            client = SODAClient()
        assert client.app_token == "from_env"
        assert client.headers["X-App-Token"] == "from_env"

    def test_url(self):
        client = SODAClient(base_url="https://data.texas.gov/resource", dataset_id="naix-2893")
        assert client.url == "https://data.texas.gov/resource/naix-2893.json"

    def test_backoff_delays(self):
        client = SODAClient(backoff_base=2, backoff_multiplier=2)
        assert [client.backoff_delay(n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_params_descending_with_tiebreak(self):
        client = SODAClient()
        params = client.build_params(offset=100, limit=50)

        assert params["$limit"] == 50
        assert params["$offset"] == 100
        assert params["$order"] == "obligation_end_date_yyyymmdd DESC, :id"
        assert "$where" not in params

    def test_params_half_open_window(self):
        client = SODAClient()
        params = client.build_params(
            offset=0, limit=5000, order="ASC", start=date(2023, 9, 1), end=date(2024, 3, 31)
        )

        assert params["$order"] == "obligation_end_date_yyyymmdd ASC, :id"
        assert params["$where"] == (
            "obligation_end_date_yyyymmdd >= '2023-09-01T00:00:00.000' "
            "AND obligation_end_date_yyyymmdd < '2024-03-31T00:00:00.000'"
        )

    def test_params_lower_bound_only(self):
        client = SODAClient()
        params = client.build_params(offset=0, limit=10, start=date(2021, 3, 1))
        assert params["$where"] == "obligation_end_date_yyyymmdd >= '2021-03-01T00:00:00.000'"

    def test_params_reject_bad_order(self):
        with pytest.raises(ValueError):
            SODAClient().build_params(offset=0, limit=10, order="sideways")

    @pytest.mark.asyncio
    async def test_fetch_page_passes_window(self):
        client = SODAClient(app_token="test")
        client._request_with_retry = AsyncMock(return_value=[{"tabc_permit_number": "MB1"}])

        records = await client.fetch_page(
            0, 10, order="ASC", start=date(2024, 1, 1), end=date(2024, 3, 1)
        )

        assert len(records) == 1
        params = client._request_with_retry.call_args.kwargs["params"]
        assert "$where" in params
        assert params["$order"].endswith("ASC, :id")

    @pytest.mark.asyncio
    async def test_fetch_latest(self):
        client = SODAClient(app_token="test")
        client._request_with_retry = AsyncMock(return_value=[])

        await client.fetch_latest(100)

        params = client._request_with_retry.call_args.kwargs["params"]
        assert params == {"$limit": 100, "$order": "obligation_end_date_yyyymmdd DESC"}

    @pytest.mark.asyncio
    async def test_retry_on_rate_limit_with_backoff(self):
        """429 is retried; delays follow base x multiplier^(attempt-1)."""
        sleep = AsyncMock()
        client = SODAClient(max_attempts=3, backoff_base=2, backoff_multiplier=2, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = _status_error(429)

            with pytest.raises(SODAClientError) as exc_info:
                await client._request_with_retry("http://test/resource")

        assert "Failed after 3 attempts" in str(exc_info.value)
        assert mock_get.call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2, 4]

    @pytest.mark.asyncio
    async def test_rate_limit_honors_longer_retry_after(self):
        sleep = AsyncMock()
        client = SODAClient(max_attempts=2, backoff_base=2, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = [
                _status_error(429, headers={"Retry-After": "30"}),
                _response(200, json=[]),
            ]
            records = await client._request_with_retry("http://test/resource")

        assert records == []
        assert sleep.await_args_list[0].args[0] == 30

    @pytest.mark.asyncio
    async def test_recovers_after_server_error(self):
        sleep = AsyncMock()
        client = SODAClient(max_attempts=3, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = [
                _status_error(503),
                _response(200, json=[{"tabc_permit_number": "MB1"}]),
            ]
            records = await client._request_with_retry("http://test/resource")

        assert records == [{"tabc_permit_number": "MB1"}]
        assert mock_get.call_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_timeout(self):
        sleep = AsyncMock()
        client = SODAClient(max_attempts=2, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = httpx.ReadTimeout("timed out")

            with pytest.raises(SODAClientError):
                await client._request_with_retry("http://test/resource")

        assert mock_get.call_count == 2
        # No sleep after the final attempt
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_network_error(self):
        sleep = AsyncMock()
        client = SODAClient(max_attempts=2, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = [
                httpx.ConnectError("connection refused"),
                _response(200, json=[]),
            ]
            assert await client._request_with_retry("http://test/resource") == []

    @pytest.mark.asyncio
    async def test_no_retry_on_client_error(self):
        """Test no retry on 4xx client errors (except 429)."""
        sleep = AsyncMock()
        client = SODAClient(max_attempts=3, sleep=sleep)

        with patch("httpx.AsyncClient.get") as mock_get:
            mock_get.side_effect = _status_error(400)

            with pytest.raises(SODAClientError):
                await client._request_with_retry("http://test/resource")

            # Should only try once for client errors
            assert mock_get.call_count == 1
        sleep.assert_not_awaited()
