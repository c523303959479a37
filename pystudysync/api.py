"""Async API client for the study data sync endpoints."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Iterable, Mapping

import httpx

from .auth import AuthProvider, TokenAuth
from .config import config
from .exceptions import (
    StudySyncAPIError,
    StudySyncAuthenticationError,
    StudySyncConflictError,
    StudySyncInvalidResponseError,
    StudySyncNetworkError,
    StudySyncNotFoundError,
    StudySyncPermissionError,
    StudySyncRateLimitError,
    StudySyncServerError,
    StudySyncValidationError,
)
from .models import (
    BatchItemResult,
    DataType,
    DeltaResult,
    PutResult,
    RemoteSnapshot,
    VersionInfo,
)
from .utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    PROTOCOL_HEADER,
    coerce_int,
)

logger = logging.getLogger(__name__)


class StudySyncClient:
    """Client for the per-data-type sync API."""

    def __init__(
        self,
        auth: AuthProvider | None = None,
        api_url: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            auth: Provider of the bearer token (uses the configured token
                if not provided)
            api_url: Optional API URL (uses config if not provided)
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport, mainly for testing
        """
        self.auth = auth if auth is not None else TokenAuth(config.access_token)
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> StudySyncClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _auth_headers(self) -> dict[str, str]:
        token = self.auth.get_access_token()
        if not token:
            raise StudySyncValidationError("Access token must not be empty")
        return {"Authorization": f"Bearer {token}"}

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _handle_http_error(
        self, response: httpx.Response, attempt: int
    ) -> tuple[Exception, bool]:
        """Map an error response to an exception.

        Args:
            response: The error response
            attempt: Current attempt number

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = response.status_code
        body = _safe_json(response)
        server_msg = None
        if isinstance(body, dict):
            server_msg = body.get("error") or body.get("message")

        if status_code == 401:
            return (
                StudySyncAuthenticationError(
                    server_msg or "Access token expired or invalid", body
                ),
                False,
            )
        if status_code == 403:
            return (
                StudySyncPermissionError(
                    "Access forbidden - check your permissions", body
                ),
                False,
            )
        if status_code == 404:
            return (StudySyncNotFoundError("Resource not found", body), False)
        if status_code == 409:
            server_data = None
            server_version = None
            if isinstance(body, dict):
                server_data = body.get("serverData")
                if body.get("serverVersion") is not None:
                    server_version = coerce_int(body.get("serverVersion"))
            return (
                StudySyncConflictError(
                    server_msg or "Data version conflict",
                    server_data=server_data,
                    server_version=server_version,
                    details=body,
                ),
                False,
            )
        if status_code == 429:
            return (
                StudySyncRateLimitError(
                    "Rate limit exceeded - please try again later", body
                ),
                attempt < self.max_retries,
            )

        error_msg = f"API request failed with status {status_code}"
        if server_msg:
            error_msg = f"{error_msg}: {server_msg}"
        if 500 <= status_code < 600:
            return (StudySyncServerError(error_msg, body), attempt < self.max_retries)
        return (StudySyncAPIError(error_msg, body), False)

    async def _send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            **kwargs: Additional arguments passed to httpx

        Returns:
            The successful response

        Raises:
            StudySyncAPIError: If the request fails after all retries
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = {"Accept": "application/json", **self._auth_headers()}
        client = self._get_client()
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.RequestError as e:
                last_exception = StudySyncNetworkError(f"Network error: {e}")
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        f"{method} {endpoint} failed ({e}), retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exception from e

            if response.is_success:
                return response

            error, should_retry = self._handle_http_error(response, attempt)
            last_exception = error
            if not should_retry:
                raise error

            # Special handling for rate limits: use Retry-After header
            retry_after = response.headers.get("Retry-After")
            if isinstance(error, StudySyncRateLimitError) and (
                retry_after and retry_after.isdigit()
            ):
                delay = float(retry_after)
            else:
                delay = self._calculate_retry_delay(attempt)
            logger.debug(
                f"{method} {endpoint} returned {response.status_code}, "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

        # If we get here, we've exhausted all retries
        if last_exception:
            raise last_exception
        raise StudySyncAPIError("Request failed after all retry attempts")

    def _parse_json(self, response: httpx.Response) -> Any:
        """Parse a response body as JSON.

        Raises:
            StudySyncInvalidResponseError: If the body is not JSON
        """
        if not response.content:
            return {}
        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            raise StudySyncInvalidResponseError(
                f"Unexpected response type: {content_type or 'unknown'}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise StudySyncInvalidResponseError(
                "Invalid JSON response from server"
            ) from e

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request and return the parsed JSON body."""
        response = await self._send(method, endpoint, **kwargs)
        return self._parse_json(response)

    # =========================
    # Data Operations
    # =========================

    async def get_version(self, data_type: DataType | str) -> VersionInfo:
        """Get the server version of a data type.

        Args:
            data_type: Data type to query

        Returns:
            VersionInfo with the version and the protocol header value
            (None when the server did not send the header)
        """
        data_type = DataType.parse(data_type)
        response = await self._send("GET", f"/data/{data_type.value}/version")
        body = self._parse_json(response)

        protocol_version = None
        header = response.headers.get(PROTOCOL_HEADER)
        if header is not None:
            try:
                protocol_version = int(header)
            except ValueError:
                logger.warning(f"Ignoring malformed {PROTOCOL_HEADER}: {header!r}")

        return VersionInfo(
            version=coerce_int(body.get("version") if isinstance(body, dict) else 0),
            protocol_version=protocol_version,
        )

    async def get_data(self, data_type: DataType | str) -> RemoteSnapshot:
        """Download the full server snapshot of a data type.

        Returns:
            RemoteSnapshot; ``data`` is None when the server holds nothing
        """
        data_type = DataType.parse(data_type)
        body = await self._request("GET", f"/data/{data_type.value}")
        if not isinstance(body, dict):
            raise StudySyncInvalidResponseError("Expected an object response")
        return RemoteSnapshot(
            data=body.get("data"), version=coerce_int(body.get("version"))
        )

    async def get_all_data(self) -> dict[DataType, RemoteSnapshot]:
        """Download every data type the server holds for the user."""
        body = await self._request("GET", "/data")
        snapshots: dict[DataType, RemoteSnapshot] = {}
        entries = body.get("data", {}) if isinstance(body, dict) else {}
        if not isinstance(entries, dict):
            raise StudySyncInvalidResponseError("Expected a map of data types")
        for type_name, entry in entries.items():
            try:
                data_type = DataType.parse(type_name)
            except StudySyncValidationError:
                logger.debug(f"Skipping unknown data type from server: {type_name}")
                continue
            if not isinstance(entry, dict):
                logger.debug(f"Skipping malformed entry for {type_name}")
                continue
            snapshots[data_type] = RemoteSnapshot(
                data=entry.get("data"), version=coerce_int(entry.get("version"))
            )
        return snapshots

    async def put_data(
        self, data_type: DataType | str, data: Any, version: int | None
    ) -> PutResult:
        """Upload the full snapshot of a data type.

        Args:
            data_type: Data type to update
            data: Full JSON snapshot
            version: Server version this write is based on

        Returns:
            PutResult; ``conflict`` is True when the server holds a newer
            version (reported either as 409 or inside a 200 body)
        """
        data_type = DataType.parse(data_type)
        try:
            body = await self._request(
                "PUT",
                f"/data/{data_type.value}",
                json={"data": data, "version": version},
            )
        except StudySyncConflictError as e:
            return PutResult(
                success=False,
                conflict=True,
                server_data=e.server_data,
                server_version=e.server_version,
                error=e.message,
            )
        if not isinstance(body, dict):
            raise StudySyncInvalidResponseError("Expected an object response")
        return PutResult.from_api_response(body)

    async def apply_delta(
        self,
        data_type: DataType | str,
        changes: list[dict[str, Any]],
        version: int | None,
    ) -> DeltaResult:
        """Upload only the queued changes of a data type.

        Args:
            data_type: Data type to patch
            changes: Delta changes (see ChangeQueueEntry.to_delta)
            version: Server version the changes are based on
        """
        data_type = DataType.parse(data_type)
        body = await self._request(
            "POST",
            f"/data/{data_type.value}/delta",
            json={"changes": changes, "version": version},
        )
        if not isinstance(body, dict):
            raise StudySyncInvalidResponseError("Expected an object response")
        version = body.get("version")
        server_version = body.get("serverVersion")
        return DeltaResult(
            success=bool(body.get("success")),
            version=coerce_int(version) if version is not None else None,
            server_version=(
                coerce_int(server_version) if server_version is not None else None
            ),
            error=body.get("error"),
        )

    async def batch_sync(
        self,
        changes: Iterable[Mapping[str, Any]],
        versions: Mapping[DataType, int],
    ) -> dict[DataType, BatchItemResult]:
        """Upload changes for several data types in one request.

        Args:
            changes: Items of the form {"type", "data", "version"}
            versions: Local version per data type

        Returns:
            Result per data type

        Raises:
            StudySyncValidationError: If a change is malformed
        """
        payload_changes = []
        for change in changes:
            if "type" not in change or "data" not in change:
                raise StudySyncValidationError("Invalid sync request format")
            data_type = DataType.parse(change["type"])
            payload_changes.append({**change, "type": data_type.value})

        body = await self._request(
            "POST",
            "/data/sync",
            json={
                "changes": payload_changes,
                "versions": {t.value: v for t, v in versions.items()},
            },
        )
        return _parse_batch_results(body)

    async def delete_data(self, data_type: DataType | str) -> None:
        """Delete the server copy of a data type."""
        data_type = DataType.parse(data_type)
        await self._request("DELETE", f"/data/{data_type.value}")


def _safe_json(response: httpx.Response) -> Any:
    """Best-effort JSON parse of an error body."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _parse_batch_results(body: Any) -> dict[DataType, BatchItemResult]:
    """Parse a batch response; accepts a list under "results" or a type map."""
    if not isinstance(body, dict):
        raise StudySyncInvalidResponseError("Expected an object response")

    raw = body.get("results", body)
    if isinstance(raw, dict):
        items = [
            {"type": key, **value} if isinstance(value, dict) else value
            for key, value in raw.items()
        ]
    elif isinstance(raw, list):
        items = raw
    else:
        raise StudySyncInvalidResponseError("Malformed batch sync response")

    results: dict[DataType, BatchItemResult] = {}
    for item in items:
        if not isinstance(item, dict):
            logger.debug(f"Skipping malformed batch result: {item!r}")
            continue
        try:
            data_type = DataType.parse(item.get("type"))
        except StudySyncValidationError:
            logger.debug(f"Skipping batch result for unknown type: {item.get('type')}")
            continue
        version = item.get("version")
        results[data_type] = BatchItemResult(
            data_type=data_type,
            success=bool(item.get("success")),
            version=coerce_int(version) if version is not None else None,
            conflict=bool(item.get("conflict", False)),
            error=item.get("error"),
        )
    return results
