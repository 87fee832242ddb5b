"""
Record store client.

Talks to the hosted record store's row API (PostgREST dialect):
- Reads: GET /rest/v1/{table} with ``col=eq.value`` filters
- Writes: POST / PATCH / DELETE on the same path
- Maps HTTP and transport failures onto the engagement error taxonomy
- Retries reads with exponential backoff; writes are never retried
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import httpx
import structlog

from .errors import AuthRequired, Conflict, EngagementError, Invalid, NotAuthorized, Transient
from .metrics import MetricsCollector

log = structlog.get_logger()

REST_PREFIX = "/rest/v1"

UNIQUE_VIOLATION = "23505"
INSUFFICIENT_PRIVILEGE = "42501"


def _encode_filters(filters: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for column, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set, frozenset)):
            joined = ",".join(str(v) for v in value)
            params.append((column, f"in.({joined})"))
        elif value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{value}"))
    return params


def error_from_response(response: httpx.Response, table: str | None = None) -> EngagementError:
    """Translate a failed store response into an EngagementError."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    store_code = body.get("code")
    message = body.get("message") or f"Store returned HTTP {response.status_code}"
    status = response.status_code

    if status == 409 or store_code == UNIQUE_VIOLATION:
        return Conflict(message, table=table, store_code=store_code)
    if status == 401:
        return AuthRequired(message)
    if status == 403 or store_code == INSUFFICIENT_PRIVILEGE:
        return NotAuthorized(message, store_code=store_code)
    if status == 429 or status >= 500:
        return Transient(message, status_code=status)
    return Invalid(message)


class RecordStoreClient:
    """
    Async client for the record store.

    One instance per engagement core. The access token changes with the
    session; the project key is fixed.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        read_retries: int = 3,
        retry_base_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._read_retries = max(1, read_retries)
        self._retry_base_seconds = retry_base_seconds
        self._transport = transport
        self._metrics = metrics
        self._access_token: str | None = None
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RecordStoreClient":
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    # --- Reads ---

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        columns: str = "*",
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all rows of ``table`` matching ``filters``."""
        params = [("select", columns), *_encode_filters(filters)]
        if order:
            params.append(("order", order))
        response = await self._read("GET", f"{REST_PREFIX}/{table}", table, params=params)
        return response.json()

    async def select_one(
        self,
        table: str,
        filters: Mapping[str, Any],
        columns: str = "*",
    ) -> dict[str, Any] | None:
        """Fetch at most one row; None when nothing matches."""
        rows = await self.select(table, filters, columns=columns)
        if len(rows) > 1:
            log.warning("records.multiple_rows", table=table, count=len(rows))
        return rows[0] if rows else None

    # --- Writes ---

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        response = await self._write(
            "POST", table, json=dict(row), headers={"Prefer": "return=representation"}
        )
        rows = response.json()
        return rows[0] if isinstance(rows, list) else rows

    async def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Update matching rows in place; returns the rows the store changed."""
        response = await self._write(
            "PATCH",
            table,
            params=_encode_filters(filters),
            json=dict(values),
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def delete(self, table: str, filters: Mapping[str, Any]) -> None:
        """Delete matching rows. Deleting nothing is not an error."""
        await self._write("DELETE", table, params=_encode_filters(filters))

    # --- Transport ---

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
        token = self._access_token or self._api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        table: str,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise Transient("Record store client is not open")
        extra_headers = kwargs.pop("headers", None) or {}
        try:
            response = await self._client.request(
                method, path, headers={**self._headers(), **extra_headers}, **kwargs
            )
        except httpx.TransportError as exc:
            raise Transient(f"Record store unreachable: {exc}") from exc

        if response.is_error:
            raise error_from_response(response, table)
        return response

    async def _read(self, method: str, path: str, table: str, **kwargs: Any) -> httpx.Response:
        last_exc: Transient | None = None
        for attempt in range(self._read_retries):
            try:
                return await self._send(method, path, table, **kwargs)
            except Transient as exc:
                last_exc = exc

            if attempt + 1 < self._read_retries:
                backoff = self._retry_base_seconds * (2 ** attempt)
                log.warning(
                    "records.read_retry",
                    table=table,
                    attempt=attempt + 1,
                    backoff=backoff,
                    error=str(last_exc),
                )
                await asyncio.sleep(backoff)

        if self._metrics:
            self._metrics.inc("store_read_errors_total")
        raise last_exc or Transient(f"Record store read failed: {table}")

    async def _write(self, method: str, table: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._send(method, f"{REST_PREFIX}/{table}", table, **kwargs)
        except Conflict:
            raise
        except EngagementError as exc:
            log.warning("records.write_failed", method=method, table=table, code=exc.code)
            if self._metrics:
                self._metrics.inc("store_write_errors_total")
            raise
