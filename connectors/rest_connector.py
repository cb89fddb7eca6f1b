"""
Generic JSON REST API connector.

Each configured endpoint is a table:

    extra_config = {
        "endpoints": {"orders": "/v1/orders"},
        "data_path": "payload.items",          # optional, dot-separated
        "api_key": "...",                     # optional, sent as X-API-Key
        "pagination": {
            "type": "cursor",                 # none | offset | cursor | page
            "cursor_path": "next_cursor",
            "cursor_param": "cursor",
        },
    }
"""

from typing import Any, Dict, List, Optional
import logging

from connectors.http import HttpConnector
from connectors.projection import BOOLEAN, INTEGER, REAL, TEXT
from connectors.registry import register_connector
from core.exceptions import ConnectorError, QueryExecutionError
from schemas.connector import ColumnInfo, SchemaInfo, TableInfo

logger = logging.getLogger(__name__)

COMMON_DATA_KEYS = ("data", "results", "items", "records", "rows")

PAGINATION_TYPES = ("none", "offset", "cursor", "page")


def detect_value_type(value: Any) -> str:
    """Canonical column type of a JSON value."""
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, float):
        return INTEGER if value.is_integer() else REAL
    return TEXT


def extract_data(body: Any, data_path: Optional[str] = None) -> List[Any]:
    """
    Locate the record array in a response body.

    Without ``data_path`` the body itself or one of the common wrapper keys
    must hold the array.
    """
    if not data_path:
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            for key in COMMON_DATA_KEYS:
                if isinstance(body.get(key), list):
                    return body[key]
        raise QueryExecutionError("No data array found in response")

    current = body
    for part in data_path.split("."):
        if not isinstance(current, dict):
            raise QueryExecutionError(f"Expected object at path: {part}")
        if part not in current:
            raise QueryExecutionError(f"Path not found: {part}")
        current = current[part]

    if not isinstance(current, list):
        raise QueryExecutionError(f"Expected array at path: {data_path}")
    return current


def _lookup(body: Any, path: str) -> Any:
    current = body
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


@register_connector("rest")
class RESTConnector(HttpConnector):
    """REST connector with data-path extraction and pagination."""

    display_name = "REST API"

    def _config_errors(self) -> List[str]:
        errors = super()._config_errors()
        if not self.config.api_url:
            errors.append("API URL is required for REST connector")
        if not self.extra("endpoints"):
            errors.append("At least one endpoint must be configured in extra_config.endpoints")
        pagination_type = (self.extra("pagination") or {}).get("type", "none")
        if pagination_type not in PAGINATION_TYPES:
            errors.append(f"Pagination type must be one of: {', '.join(PAGINATION_TYPES)}")
        return errors

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.extra("api_key"):
            headers["X-API-Key"] = self.extra("api_key")
        return headers

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.config.api_url.rstrip('/')}/{path.lstrip('/')}"

    async def _ping(self) -> None:
        await self._request("GET", self._url(self.extra("health_endpoint", "/")))

    async def fetch_schema(self) -> SchemaInfo:
        tables = []
        for name in self.extra("endpoints"):
            try:
                records = await self._fetch_page(name, {})
            except ConnectorError as e:
                logger.warning(f"Failed to fetch schema for endpoint {name}: {e.message}")
                continue
            if not records:
                continue

            records = self._as_records(records)
            columns: Dict[str, Optional[str]] = {}
            for record in records:
                for key, value in record.items():
                    if columns.get(key) is None and value is not None:
                        columns[key] = detect_value_type(value)
                    else:
                        columns.setdefault(key, None)
            tables.append(TableInfo(
                name=name,
                schema="rest_api",
                columns=[ColumnInfo(name=k, type=v or TEXT) for k, v in columns.items()],
            ))

        return SchemaInfo(tables=tables)

    def _endpoint(self, table: str) -> str:
        endpoints = self.extra("endpoints") or {}
        if table not in endpoints:
            raise QueryExecutionError(
                f"Unknown table/endpoint: {table}",
                context={"table": table, "endpoints": sorted(endpoints)},
            )
        return endpoints[table]

    async def _fetch_page(self, table: str, params: Dict[str, Any]) -> List[Any]:
        body = await self._fetch_body(table, params)
        return extract_data(body, self.extra("data_path"))

    async def _fetch_body(self, table: str, params: Dict[str, Any]) -> Any:
        response = await self._request("GET", self._url(self._endpoint(table)), params=params or None)
        return self._json(response)

    async def fetch_records(self, table: str, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        pagination = self.extra("pagination") or {}
        pagination_type = pagination.get("type", "none")
        limit = int(pagination.get("limit", self.page_size))
        params: Dict[str, Any] = dict(self.extra("query_params") or {})
        page = int(pagination.get("start_page", 1))

        if pagination_type == "offset":
            params[pagination.get("limit_param", "limit")] = limit
            params[pagination.get("offset_param", "offset")] = 0
        elif pagination_type == "page":
            params[pagination.get("page_param", "page")] = page

        records: List[Dict[str, Any]] = []
        while True:
            body = await self._fetch_body(table, params)
            batch = self._as_records(extract_data(body, self.extra("data_path")))
            records.extend(batch)
            if not batch or self._ceiling_reached(records):
                break

            if pagination_type == "cursor":
                cursor = _lookup(body, pagination.get("cursor_path", "next_cursor"))
                if not cursor:
                    break
                params[pagination.get("cursor_param", "cursor")] = cursor
            elif pagination_type == "offset":
                if len(batch) < limit:
                    break
                params[pagination.get("offset_param", "offset")] = len(records)
            elif pagination_type == "page":
                total_pages = _lookup(body, pagination.get("total_pages_path", "total_pages"))
                if total_pages is None or page >= int(total_pages):
                    break
                page += 1
                params[pagination.get("page_param", "page")] = page
            else:
                break

        logger.info(f"Fetched {len(records)} records from endpoint {table}")
        return records[: self.row_ceiling]
