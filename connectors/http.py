"""
Shared HTTP plumbing for API-backed connectors (GraphQL, HubSpot,
Salesforce, REST).

Provides:
- A scoped httpx.AsyncClient per connector session
- Retry logic with exponential backoff for transient failures
- Mapping of HTTP failures onto the connector error taxonomy
- The fetch -> coerce -> project template for executing SQL against an API
"""

from abc import abstractmethod
from typing import Any, Dict, List, Optional
import asyncio
import logging
import time

import httpx

from connectors.base import BaseConnector
from connectors.projection import coerce_records, execute_projection, parse_select
from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConnectorError,
    QueryExecutionError,
    RateLimitError,
    ResourceNotFoundError,
    SourceConnectionError,
)
from schemas.connector import ConnectionConfig, QueryResult

logger = logging.getLogger(__name__)


class HttpConnector(BaseConnector):
    """
    Base class for connectors that speak HTTP.

    Attributes:
        max_retries: Maximum number of attempts per request
        retry_delay: Initial retry delay in seconds (doubles per attempt)
        timeout: Request timeout in seconds
        row_ceiling: Hard cap on records fetched for one query
        page_size: Records requested per page
    """

    def __init__(
        self,
        config: ConnectionConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        row_ceiling: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        super().__init__(config)
        self.transport = transport
        self.max_retries = max(1, max_retries if max_retries is not None else settings.CONNECTOR_MAX_RETRIES)
        self.retry_delay = retry_delay if retry_delay is not None else settings.CONNECTOR_RETRY_DELAY_SECONDS
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS
        self.row_ceiling = row_ceiling or settings.CONNECTOR_ROW_CEILING
        self.page_size = page_size or settings.CONNECTOR_PAGE_SIZE
        self._client: Optional[httpx.AsyncClient] = None

    async def _open(self) -> None:
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        headers.update(self.extra("headers") or {})
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Returns:
            HTTP response (2xx)

        Raises:
            AuthenticationError: 401 / 403
            ResourceNotFoundError: 404
            RateLimitError: 429 after max retries
            SourceConnectionError: 5xx, timeouts and network errors after max retries
            QueryExecutionError: any other 4xx
        """
        if self._client is None:
            await self.connect()
        request_headers = headers if headers is not None else self._headers()

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries}: {method} {self.redact(url)}")
                response = await self._client.request(
                    method, url, params=params, json=json, data=data, headers=request_headers
                )
            except httpx.TimeoutException:
                if not is_last:
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise SourceConnectionError(
                    f"{self.display_name} request timed out after {self.max_retries} attempts",
                    context={"url": self.redact(url), "timeout": self.timeout},
                ) from None
            except httpx.TransportError as e:
                if not is_last:
                    logger.warning(f"Network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise SourceConnectionError(
                    f"{self.display_name} unreachable: {self.redact(e)}",
                    context={"url": self.redact(url), "retry_count": attempt + 1},
                ) from None

            status = response.status_code
            if status in (401, 403):
                raise AuthenticationError(
                    f"{self.display_name} authentication failed ({status})",
                    context={"status_code": status, "url": self.redact(url)},
                )
            if status == 404:
                raise ResourceNotFoundError(
                    f"{self.display_name} resource not found: {self.redact(url)}",
                    context={"status_code": 404},
                )
            if status == 429:
                retry_after = self._retry_after(response, delay)
                if not is_last:
                    logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                raise RateLimitError(
                    f"{self.display_name} rate limit exceeded",
                    context={"status_code": 429, "url": self.redact(url), "retry_count": attempt + 1},
                    retry_after=int(retry_after),
                )
            if status >= 500:
                if not is_last:
                    logger.warning(
                        f"Server error {status}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise SourceConnectionError(
                    f"{self.display_name} server error {status} after {self.max_retries} attempts",
                    context={"status_code": status, "url": self.redact(url)},
                )
            if status >= 400:
                raise QueryExecutionError(
                    f"{self.display_name} rejected the request ({status}): {self.redact(response.text[:300])}",
                    context={"status_code": status, "url": self.redact(url)},
                )
            return response

        raise SourceConnectionError(f"{self.display_name} max retries exceeded")

    def _retry_after(self, response: httpx.Response, default: float) -> float:
        try:
            return float(response.headers.get("Retry-After", default))
        except ValueError:
            return default

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise ConnectorError(
                f"{self.display_name} returned a non-JSON response",
                context={"status_code": response.status_code, "body": self.redact(response.text[:200])},
            ) from None

    # ------------------------------------------------------------------
    # Query template
    # ------------------------------------------------------------------

    async def execute_query(self, sql: str, max_rows: Optional[int] = None) -> QueryResult:
        """
        Fetch the referenced collection, coerce it to canonical types and
        evaluate ``sql`` against it locally. The fetch itself stops at the
        row ceiling; ``max_rows`` caps the evaluated result.
        """
        start = time.perf_counter()
        select = parse_select(sql)

        records = await self.fetch_records(select.table, select.columns)
        if len(records) > self.row_ceiling:
            records = records[: self.row_ceiling]
        type_hints = await self.column_types(select.table)
        rows, column_types = coerce_records(records, type_hints)

        result = execute_projection(rows, sql, select.table, column_types=column_types)
        if max_rows is not None and result.row_count > max_rows:
            result.rows = result.rows[:max_rows]
            result.row_count = max_rows
            result.truncated = True
        result.execution_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"{self.display_name} query on {select.table}: fetched {len(records)} records, "
            f"returned {result.row_count} rows in {result.execution_time_ms}ms"
        )
        return result

    @abstractmethod
    async def fetch_records(self, table: str, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Raw records of ``table``; ``columns`` is a hint, None means all."""

    async def column_types(self, table: str) -> Dict[str, str]:
        """Canonical types declared by the origin for ``table`` (may be empty)."""
        return {}

    @staticmethod
    def _as_records(items: List[Any]) -> List[Dict[str, Any]]:
        """Wrap primitive items so every record is a mapping."""
        return [item if isinstance(item, dict) else {"value": item} for item in items]

    def _ceiling_reached(self, records: List[Any]) -> bool:
        if len(records) >= self.row_ceiling:
            logger.warning(f"{self.display_name} row ceiling of {self.row_ceiling} reached; stopping pagination")
            return True
        return False
