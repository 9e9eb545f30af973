"""Tests for the remote data source client."""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from bizcache.errors import RemoteUnavailableError
from bizcache.models import Business, Category
from bizcache.sync import RemoteDataSource


@pytest.fixture
def remote():
    """Create a remote data source."""
    return RemoteDataSource(
        base_url="https://api.example.com/rest/v1/",
        max_retries=2,
    )


def _mock_transport(handler):
    """Patch httpx.AsyncClient to route requests through ``handler``."""
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return patch("bizcache.sync.remote.httpx.AsyncClient", side_effect=factory)


class TestRemoteDataSource:
    """Tests for RemoteDataSource."""

    def test_init_strips_trailing_slash(self, remote):
        assert remote.base_url == "https://api.example.com/rest/v1"
        assert remote.max_retries == 2

    @pytest.mark.asyncio
    async def test_no_remote_url(self):
        remote = RemoteDataSource(base_url=None)

        with pytest.raises(RemoteUnavailableError, match="No remote URL"):
            await remote.fetch_remote_version()

    @pytest.mark.asyncio
    async def test_fetch_remote_version(self, remote):
        with patch.object(
            remote,
            "_request_with_retry",
            new=AsyncMock(
                return_value=([{"version": 42, "updated_at": "2026-02-03T10:00:00Z"}], None)
            ),
        ):
            descriptor = await remote.fetch_remote_version()

        assert descriptor.version_token == "42"

    @pytest.mark.asyncio
    async def test_fetch_remote_version_malformed(self, remote):
        with patch.object(
            remote, "_request_with_retry", new=AsyncMock(return_value=([], None))
        ):
            with pytest.raises(RemoteUnavailableError, match="Malformed"):
                await remote.fetch_remote_version()

    @pytest.mark.asyncio
    async def test_fetch_full_dataset(self, remote):
        responses = {
            "/categories": ([{"id": "c1", "name": "Grocery"}], None),
            "/businesses": ([{"id": "b1", "shopName": "Ganesh Kirana"}], None),
        }

        async def fake_request(path):
            return responses[path]

        with patch.object(remote, "_request_with_retry", new=fake_request):
            dataset = await remote.fetch_full_dataset()

        assert dataset["categories"] == [Category("c1", "Grocery")]
        assert dataset["businesses"] == [Business(id="b1", shop_name="Ganesh Kirana")]

    @pytest.mark.asyncio
    async def test_fetch_full_dataset_partial_failure(self, remote):
        """Test one failing collection fails the whole snapshot."""

        async def fake_request(path):
            if path == "/businesses":
                return None, "HTTP 503: unavailable"
            return [], None

        with patch.object(remote, "_request_with_retry", new=fake_request):
            with pytest.raises(RemoteUnavailableError, match="businesses"):
                await remote.fetch_full_dataset()

    @pytest.mark.asyncio
    async def test_request_success_over_http(self, remote):
        def handler(request):
            assert request.url.path == "/rest/v1/data_version"
            return httpx.Response(
                200, json={"version_token": "v3", "updated_at": "2026-02-03T10:00:00"}
            )

        with _mock_transport(handler):
            descriptor = await remote.fetch_remote_version()

        assert descriptor.version_token == "v3"

    @pytest.mark.asyncio
    async def test_server_error_retries(self, remote):
        """Test 5xx responses are retried with backoff."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        with _mock_transport(handler), patch(
            "bizcache.sync.remote.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            with pytest.raises(RemoteUnavailableError, match="Max retries"):
                await remote.fetch_remote_version()

        assert len(calls) == 2
        sleep.assert_awaited_once_with(1.0)
        assert remote.get_status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, remote):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="bad key")

        with _mock_transport(handler):
            with pytest.raises(RemoteUnavailableError, match="HTTP 401"):
                await remote.fetch_remote_version()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connect_error_retried(self, remote):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _mock_transport(handler), patch(
            "bizcache.sync.remote.asyncio.sleep", new=AsyncMock()
        ):
            assert await remote.check_connection() is False

    @pytest.mark.asyncio
    async def test_headers_sent(self):
        remote = RemoteDataSource(
            base_url="https://api.example.com", headers={"apikey": "secret"}
        )
        seen = {}

        def handler(request):
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, json=[])

        with _mock_transport(handler):
            await remote._request_with_retry("/categories")

        assert seen["apikey"] == "secret"
