"""HTTP client for the record REST surface."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from ..errors import SyncError
from ..store.records import Record, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class CatchupResponse:
    """Parsed ``GET /records/since`` response."""

    records: list[Record]
    server_time: datetime
    total_count: int
    deleted_ids: list[str] = field(default_factory=list)


@dataclass
class SnapshotResponse:
    """Parsed ``GET /records`` response."""

    records: list[Record]
    server_time: datetime | None = None  # None if the server did not report it


class RecordsClient:
    """Async client for the record REST API.

    Every failure surfaces as :class:`SyncError`. Connection problems,
    timeouts and server errors are retryable; other client errors are not.
    A response is fully parsed before it is returned, so callers never see
    a partial batch.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Server base URL (e.g., "http://localhost:5050").
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (e.g., ASGITransport in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Make a request and map failures to SyncError.

        Returns:
            The response, or None for a 404 when ``allow_not_found`` is set.
        """
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise SyncError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 500:
            raise SyncError(
                f"Server error {response.status_code} on {method} {path}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise SyncError(
                f"HTTP {response.status_code} on {method} {path}: {response.text}",
                retryable=False,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _parse_records(items: Any) -> list[Record]:
        if not isinstance(items, list):
            raise SyncError("Malformed response: expected a list of records", retryable=False)
        try:
            return [Record.from_dict(item) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise SyncError(f"Malformed record in response: {e}", retryable=False) from e

    async def get_all(self) -> list[Record]:
        """Fetch every record, most recently created first."""
        return (await self.get_snapshot()).records

    async def get_snapshot(self) -> SnapshotResponse:
        """Fetch every record along with the server time of the listing."""
        response = await self._request("GET", "/records")
        records = self._parse_records(response.json())

        server_time = None
        if header := response.headers.get("X-Server-Time"):
            try:
                server_time = parse_timestamp(header)
            except ValueError as e:
                raise SyncError(f"Malformed X-Server-Time header: {e}", retryable=False) from e
        return SnapshotResponse(records=records, server_time=server_time)

    async def get_since(self, since: datetime) -> CatchupResponse:
        """Fetch records created or updated after a watermark.

        Args:
            since: Exclusive watermark.

        Returns:
            Parsed catch-up response.
        """
        response = await self._request(
            "GET", "/records/since", params={"since": format_timestamp(since)}
        )
        data = response.json()
        if not isinstance(data, dict):
            raise SyncError("Malformed catch-up response", retryable=False)

        records = self._parse_records(data.get("records", []))
        try:
            server_time = parse_timestamp(data["serverTime"])
        except (KeyError, TypeError, ValueError) as e:
            raise SyncError(f"Malformed catch-up response: {e}", retryable=False) from e

        logger.debug(f"Fetched {len(records)} records since {format_timestamp(since)}")
        return CatchupResponse(
            records=records,
            server_time=server_time,
            total_count=data.get("totalCount", len(records)),
            deleted_ids=[str(i) for i in data.get("deletedIds", [])],
        )

    async def get(self, record_id: str) -> Record | None:
        response = await self._request("GET", f"/records/{record_id}", allow_not_found=True)
        if response is None:
            return None
        return Record.from_dict(response.json())

    async def create(self, fields: dict[str, Any]) -> Record:
        response = await self._request("POST", "/records", json=fields)
        return Record.from_dict(response.json())

    async def update(self, record_id: str, changes: dict[str, Any]) -> Record | None:
        response = await self._request(
            "PATCH", f"/records/{record_id}", allow_not_found=True, json=changes
        )
        if response is None:
            return None
        return Record.from_dict(response.json())

    async def delete(self, record_id: str) -> bool:
        response = await self._request("DELETE", f"/records/{record_id}", allow_not_found=True)
        return response is not None

    async def health(self) -> dict[str, Any]:
        response = await self._request("GET", "/health")
        return response.json()

    async def stats(self) -> dict[str, Any]:
        response = await self._request("GET", "/stats")
        return response.json()
