"""Remote store client.

The remote store holds one table per entity and must support upsert by ``id``
and an ascending, capped range query on ``updated_at``. This module defines
that contract (:class:`RemoteStore`), its error hierarchy, and the HTTP
implementation for a PostgREST endpoint such as Supabase:

- lazily created ``httpx.AsyncClient`` guarded by a lock
- bounded retries with linear backoff for transport errors, 429 and 5xx
- request metrics for the diagnostics API
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from tillsync.core.settings import Settings, settings
from tillsync.db.time import to_iso

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_BAD_REQUEST = 400
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500

WireRow = dict[str, Any]


class RemoteStoreError(RuntimeError):
    """Base exception for remote store failures (network or server side)."""


class RemoteDisabledError(RemoteStoreError):
    """Raised when the remote store is used without being configured."""


class RemoteRejectedError(RemoteStoreError):
    """Raised when the remote store refuses a request (validation, auth, schema)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"remote store rejected request ({status_code}): {message}")
        self.status_code = status_code


class RemoteStore(Protocol):
    """Operations the sync engine needs from the remote store."""

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        """Insert or fully replace ``rows`` keyed by ``id``."""
        ...

    async def fetch_since(
        self,
        table: str,
        since: datetime | None,
        *,
        limit: int,
        business_unit_id: str,
        after_id: str | None = None,
    ) -> list[WireRow]:
        """Return up to ``limit`` rows ordered by ``(updated_at, id)``.

        Without ``after_id`` the rows have ``updated_at >= since``. With it,
        they come strictly after the key ``(since, after_id)``.
        """
        ...

    async def fetch_by_ids(self, table: str, ids: Sequence[str]) -> list[WireRow]:
        """Return the rows with the given ids (diagnostics)."""
        ...

    async def close(self) -> None: ...


@dataclass
class RemoteMetrics:
    """Request counters for the remote store."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    total_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        self.request_count += 1
        self.total_response_time += response_time
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def snapshot(self) -> dict[str, Any]:
        average = self.total_response_time / self.request_count if self.request_count else 0.0
        return {
            "requests": self.request_count,
            "successes": self.success_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "average_response_time": average,
            "errors_by_type": dict(self.error_counts_by_type),
        }


@dataclass(frozen=True)
class RemoteConfig:
    """Immutable configuration for the PostgREST remote store."""

    base_url: str | None
    api_key: str | None
    timeout_seconds: float
    max_retries: int
    upsert_chunk: int
    retry_backoff_seconds: float = 0.5

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


def load_remote_config(config: Settings | None = None) -> RemoteConfig:
    """Build remote configuration from settings."""
    config = config or settings
    return RemoteConfig(
        base_url=config.remote_url,
        api_key=config.remote_api_key,
        timeout_seconds=float(config.remote_timeout_seconds),
        max_retries=max(0, int(config.remote_max_retries)),
        upsert_chunk=max(1, int(config.remote_upsert_chunk)),
    )


def _chunks(rows: Sequence[Mapping[str, Any]], size: int) -> list[list[Mapping[str, Any]]]:
    return [list(rows[start : start + size]) for start in range(0, len(rows), size)]


class PostgrestRemoteStore:
    """HTTP client for a PostgREST (Supabase compatible) remote store."""

    def __init__(
        self,
        config: RemoteConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_remote_config()
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = RemoteMetrics()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get_metrics(self) -> dict[str, Any]:
        return self._metrics.snapshot()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise RemoteDisabledError("remote store URL is not configured")

        async with self._client_lock:
            if self._client is None:
                headers = {"Content-Type": "application/json"}
                if self.config.api_key:
                    headers["apikey"] = self.config.api_key
                    headers["Authorization"] = f"Bearer {self.config.api_key}"
                base_url = (self.config.base_url or "").rstrip("/") + "/rest/v1"
                self._client = httpx.AsyncClient(
                    base_url=base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""

        method: str
        path: str
        params: Mapping[str, str] | None = None
        json_data: Any | None = None
        headers: dict[str, str] | None = None

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        endpoint = f"{params.method} {params.path}"
        attempt = 0

        while True:
            start_time = time.monotonic()
            error: RemoteStoreError
            try:
                response = await client.request(
                    params.method,
                    params.path,
                    params=params.params,
                    json=params.json_data,
                    headers=params.headers,
                )
            except httpx.HTTPError as exc:
                self._metrics.record_request(time.monotonic() - start_time, False, "network_error")
                error = RemoteStoreError(f"{endpoint} failed: {exc}")
            else:
                elapsed = time.monotonic() - start_time
                status = response.status_code
                if status < HTTP_BAD_REQUEST:
                    self._metrics.record_request(elapsed, True)
                    return response
                self._metrics.record_request(elapsed, False, f"http_{status}")
                if status != HTTP_TOO_MANY_REQUESTS and status < HTTP_INTERNAL_SERVER_ERROR:
                    raise RemoteRejectedError(status, response.text[:500])
                error = RemoteStoreError(f"{endpoint} responded with {status}")

            if attempt >= self.config.max_retries:
                raise error
            attempt += 1
            self._metrics.retry_count += 1
            delay = self.config.retry_backoff_seconds * attempt
            logger.warning("%s; retrying (%s/%s) in %.2fs", error, attempt, self.config.max_retries, delay)
            await self._sleep(delay)

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        if not rows:
            return
        for chunk in _chunks(rows, self.config.upsert_chunk):
            await self._request(
                self.RequestParams(
                    method="POST",
                    path=f"/{table}",
                    params={"on_conflict": "id"},
                    json_data=chunk,
                    headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
                )
            )

    async def fetch_since(
        self,
        table: str,
        since: datetime | None,
        *,
        limit: int,
        business_unit_id: str,
        after_id: str | None = None,
    ) -> list[WireRow]:
        query = {
            "select": "*",
            "or": f"(shop_id.eq.{business_unit_id},shop_id.is.null)",
            "order": "updated_at.asc,id.asc",
            "limit": str(int(limit)),
        }
        if since is not None and after_id is not None:
            stamp = to_iso(since)
            query["and"] = (
                f'(or(updated_at.gt."{stamp}",'
                f'and(updated_at.eq."{stamp}",id.gt."{after_id}")))'
            )
        elif since is not None:
            query["updated_at"] = f"gte.{to_iso(since)}"
        response = await self._request(
            self.RequestParams(method="GET", path=f"/{table}", params=query)
        )
        return self._rows(response, table)

    async def fetch_by_ids(self, table: str, ids: Sequence[str]) -> list[WireRow]:
        if not ids:
            return []
        query = {"select": "*", "id": f"in.({','.join(ids)})"}
        response = await self._request(
            self.RequestParams(method="GET", path=f"/{table}", params=query)
        )
        return self._rows(response, table)

    async def health_check(self) -> dict[str, Any]:
        """Return reachability of the remote store without raising."""
        if not self.enabled:
            return {"status": "disabled", "enabled": False}
        try:
            client = await self._ensure_client()
            response = await client.get("/")
        except httpx.HTTPError as exc:
            return {"status": "unreachable", "enabled": True, "error": str(exc)}
        status = "healthy" if response.status_code < HTTP_INTERNAL_SERVER_ERROR else "unhealthy"
        return {"status": status, "enabled": True, "status_code": response.status_code}

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    @staticmethod
    def _rows(response: httpx.Response, table: str) -> list[WireRow]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError(f"{table}: response is not JSON") from exc
        if not isinstance(payload, list):
            raise RemoteStoreError(f"{table}: expected a list of rows, got {type(payload).__name__}")
        return [dict(row) for row in payload]


class _RemoteStoreSingleton:
    """Singleton wrapper for the configured remote store."""

    _instance: PostgrestRemoteStore | None = None

    @classmethod
    def get_instance(cls) -> PostgrestRemoteStore:
        if cls._instance is None:
            cls._instance = PostgrestRemoteStore()
        return cls._instance


def get_remote_store() -> PostgrestRemoteStore:
    """Return the process-wide remote store client."""
    return _RemoteStoreSingleton.get_instance()


def remote_enabled() -> bool:
    return get_remote_store().enabled
