"""Unit tests for the Study Sync API client."""

import json

import httpx
import pytest

from pystudysync.api import StudySyncClient
from pystudysync.auth import TokenAuth
from pystudysync.exceptions import (
    StudySyncAPIError,
    StudySyncAuthenticationError,
    StudySyncInvalidResponseError,
    StudySyncNetworkError,
    StudySyncNotFoundError,
    StudySyncRateLimitError,
    StudySyncServerError,
    StudySyncValidationError,
    SyncErrorKind,
)
from pystudysync.models import DataType

API_URL = "https://sync.test/api"


class Recorder:
    """Transport handler that records requests and replays responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # The last response repeats for every further request
        if len(self.responses) > 1:
            response = self.responses.pop(0)
        else:
            response = self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def make_client(handler, token="test_token", max_retries=2):
    return StudySyncClient(
        auth=TokenAuth(token),
        api_url=API_URL,
        max_retries=max_retries,
        retry_delay=0,
        transport=httpx.MockTransport(handler),
    )


class TestClientInit:
    """Tests for StudySyncClient initialization."""

    def test_trailing_slash_stripped(self):
        client = StudySyncClient(auth=TokenAuth("t"), api_url="https://x.test/api/")
        assert client.api_url == "https://x.test/api"

    @pytest.mark.asyncio
    async def test_missing_token_raises_validation_error(self):
        """Test that requests without a token fail before hitting the wire."""
        handler = Recorder(httpx.Response(200, json={"version": 1}))

        async with make_client(handler, token=None) as client:
            with pytest.raises(StudySyncValidationError, match="Access token"):
                await client.get_version(DataType.PLAYLISTS)

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_invalid_data_type(self):
        handler = Recorder(httpx.Response(200, json={}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncValidationError, match="Invalid data type"):
                await client.get_data("unknown")


class TestGetVersion:
    """Tests for the version endpoint."""

    @pytest.mark.asyncio
    async def test_reads_version_and_protocol_header(self):
        """Test that the protocol header is parsed."""
        handler = Recorder(
            httpx.Response(
                200, json={"version": 7}, headers={"X-Sync-Protocol-Version": "2"}
            )
        )

        async with make_client(handler) as client:
            info = await client.get_version("focus_records")

        assert info.version == 7
        assert info.protocol_version == 2
        request = handler.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/api/data/focus_records/version"
        assert request.headers["Authorization"] == "Bearer test_token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Sync-Protocol-Version": "v2"}])
    async def test_missing_or_malformed_header(self, headers):
        """Test that an absent or unreadable header yields None."""
        handler = Recorder(httpx.Response(200, json={"version": 1}, headers=headers))

        async with make_client(handler) as client:
            info = await client.get_version(DataType.PLAYLISTS)

        assert info.protocol_version is None


class TestDataEndpoints:
    """Tests for get/put/delta/delete."""

    @pytest.mark.asyncio
    async def test_get_data(self):
        handler = Recorder(
            httpx.Response(200, json={"type": "playlists", "data": [1], "version": 3})
        )

        async with make_client(handler) as client:
            snapshot = await client.get_data(DataType.PLAYLISTS)

        assert snapshot.data == [1]
        assert snapshot.version == 3

    @pytest.mark.asyncio
    async def test_get_all_data_skips_unknown_types(self):
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "data": {
                        "playlists": {"data": {"playlists": []}, "version": 2},
                        "legacy_thing": {"data": 1, "version": 1},
                    }
                },
            )
        )

        async with make_client(handler) as client:
            snapshots = await client.get_all_data()

        assert list(snapshots) == [DataType.PLAYLISTS]
        assert snapshots[DataType.PLAYLISTS].version == 2

    @pytest.mark.asyncio
    async def test_get_all_data_skips_malformed_entries(self):
        handler = Recorder(
            httpx.Response(
                200,
                json={"data": {"playlists": "junk", "share_config": {"version": 1}}},
            )
        )

        async with make_client(handler) as client:
            snapshots = await client.get_all_data()

        assert list(snapshots) == [DataType.SHARE_CONFIG]
        assert snapshots[DataType.SHARE_CONFIG].data is None

    @pytest.mark.asyncio
    async def test_put_data_success(self):
        """Test that the full snapshot and base version are sent."""
        handler = Recorder(
            httpx.Response(200, json={"success": True, "version": 5, "merged": False})
        )

        async with make_client(handler) as client:
            result = await client.put_data(DataType.USER_SETTINGS, {"lang": "en"}, 4)

        assert result.success is True
        assert result.version == 5
        assert handler.requests[0].method == "PUT"
        assert handler.last_json == {"data": {"lang": "en"}, "version": 4}

    @pytest.mark.asyncio
    async def test_put_data_conflict_in_body(self):
        """Test a conflict reported with status 200."""
        handler = Recorder(
            httpx.Response(
                200,
                json={"conflict": True, "serverData": {"a": 1}, "serverVersion": 9},
            )
        )

        async with make_client(handler) as client:
            result = await client.put_data(DataType.USER_SETTINGS, {"a": 2}, 4)

        assert result.success is False
        assert result.conflict is True
        assert result.server_data == {"a": 1}
        assert result.server_version == 9

    @pytest.mark.asyncio
    async def test_put_data_conflict_status(self):
        """Test a conflict reported with status 409."""
        handler = Recorder(
            httpx.Response(
                409,
                json={
                    "error": "Version conflict",
                    "conflict": True,
                    "serverData": [1],
                    "serverVersion": "6",
                },
            )
        )

        async with make_client(handler) as client:
            result = await client.put_data(DataType.FOCUS_RECORDS, [], 4)

        assert result.conflict is True
        assert result.server_data == [1]
        assert result.server_version == 6
        assert result.error == "Version conflict"
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_apply_delta(self):
        handler = Recorder(httpx.Response(200, json={"success": True, "version": 8}))
        changes = [{"action": "add", "record": {"id": 1}, "timestamp": 1}]

        async with make_client(handler) as client:
            result = await client.apply_delta(DataType.FOCUS_RECORDS, changes, 7)

        assert result.success is True
        assert result.version == 8
        assert handler.requests[0].url.path == "/api/data/focus_records/delta"
        assert handler.last_json == {"changes": changes, "version": 7}

    @pytest.mark.asyncio
    async def test_delete_data(self):
        handler = Recorder(httpx.Response(200, json={"success": True}))

        async with make_client(handler) as client:
            await client.delete_data(DataType.SHARE_CONFIG)

        assert handler.requests[0].method == "DELETE"
        assert handler.requests[0].url.path == "/api/data/share_config"


class TestBatchSync:
    """Tests for the batch endpoint."""

    @pytest.mark.asyncio
    async def test_batch_results_list(self):
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "results": [
                        {"type": "playlists", "success": True, "version": 3},
                        {
                            "type": "user_settings",
                            "success": False,
                            "conflict": True,
                            "error": "Version conflict",
                        },
                    ]
                },
            )
        )

        async with make_client(handler) as client:
            results = await client.batch_sync(
                [{"type": DataType.PLAYLISTS, "data": {}, "version": 2}],
                {DataType.PLAYLISTS: 2},
            )

        assert handler.last_json == {
            "changes": [{"type": "playlists", "data": {}, "version": 2}],
            "versions": {"playlists": 2},
        }
        assert results[DataType.PLAYLISTS].version == 3
        assert results[DataType.USER_SETTINGS].conflict is True

    @pytest.mark.asyncio
    async def test_batch_results_map(self):
        handler = Recorder(
            httpx.Response(200, json={"playlists": {"success": True, "version": 4}})
        )

        async with make_client(handler) as client:
            results = await client.batch_sync([], {})

        assert results[DataType.PLAYLISTS].success is True

    @pytest.mark.asyncio
    async def test_malformed_result_items_skipped(self):
        """Test that non-object result entries do not break parsing."""
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "results": [
                        "oops",
                        None,
                        {"type": "playlists", "success": True, "version": 3},
                    ]
                },
            )
        )

        async with make_client(handler) as client:
            results = await client.batch_sync([], {})

        assert list(results) == [DataType.PLAYLISTS]

    @pytest.mark.asyncio
    async def test_malformed_map_values_skipped(self):
        handler = Recorder(
            httpx.Response(
                200,
                json={"playlists": 7, "user_settings": {"success": True, "version": 2}},
            )
        )

        async with make_client(handler) as client:
            results = await client.batch_sync([], {})

        assert list(results) == [DataType.USER_SETTINGS]

    @pytest.mark.asyncio
    async def test_malformed_results_container(self):
        handler = Recorder(httpx.Response(200, json={"results": "nope"}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncInvalidResponseError):
                await client.batch_sync([], {})

    @pytest.mark.asyncio
    async def test_malformed_change_rejected(self):
        handler = Recorder(httpx.Response(200, json={}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncValidationError, match="Invalid sync request"):
                await client.batch_sync([{"type": "playlists"}], {})

        assert handler.requests == []


class TestErrorHandling:
    """Tests for status mapping and retries."""

    @pytest.mark.asyncio
    async def test_401_not_retried(self):
        handler = Recorder(httpx.Response(401, json={"error": "Token expired"}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncAuthenticationError, match="Token expired"):
                await client.get_data(DataType.PLAYLISTS)

        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_404(self):
        handler = Recorder(httpx.Response(404, json={}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncNotFoundError):
                await client.get_data(DataType.PLAYLISTS)

    @pytest.mark.asyncio
    async def test_400_is_api_error(self):
        handler = Recorder(httpx.Response(400, json={"error": "bad payload"}))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncAPIError, match="400: bad payload"):
                await client.get_data(DataType.PLAYLISTS)

    @pytest.mark.asyncio
    async def test_server_error_retried_then_raised(self):
        """Test that 5xx responses are retried max_retries times."""
        handler = Recorder(httpx.Response(503, json={}))

        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(StudySyncServerError) as exc_info:
                await client.get_data(DataType.PLAYLISTS)

        assert len(handler.requests) == 3
        assert exc_info.value.kind == SyncErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        handler = Recorder(
            httpx.Response(500, json={}),
            httpx.Response(200, json={"data": 1, "version": 2}),
        )

        async with make_client(handler) as client:
            snapshot = await client.get_data(DataType.PLAYLISTS)

        assert snapshot.version == 2
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self):
        handler = Recorder(
            httpx.Response(429, json={}, headers={"Retry-After": "0"}),
        )

        async with make_client(handler, max_retries=1) as client:
            with pytest.raises(StudySyncRateLimitError):
                await client.get_data(DataType.PLAYLISTS)

        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self):
        """Test that connection errors map to the network error kind."""
        handler = Recorder(httpx.ConnectError("connection refused"))

        async with make_client(handler, max_retries=1) as client:
            with pytest.raises(StudySyncNetworkError, match="connection refused"):
                await client.get_version(DataType.PLAYLISTS)

        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        handler = Recorder(httpx.Response(200, text="<html>maintenance</html>"))

        async with make_client(handler) as client:
            with pytest.raises(StudySyncInvalidResponseError):
                await client.get_data(DataType.PLAYLISTS)


class TestRetryDelay:
    """Tests for the backoff calculation."""

    def test_exponential_backoff_with_jitter(self):
        client = StudySyncClient(auth=TokenAuth("t"), api_url=API_URL, retry_delay=1.0)

        for attempt, base in [(0, 1.0), (1, 2.0), (2, 4.0)]:
            delay = client._calculate_retry_delay(attempt)
            assert base * 0.75 <= delay <= base * 1.25
