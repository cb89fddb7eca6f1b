"""
HubSpot CRM connector (CRM v3 REST API).

Standard CRM objects are exposed as tables; their properties are columns.
"""

from typing import Any, Dict, List, Optional
import logging

from connectors.http import HttpConnector
from connectors.projection import BOOLEAN, REAL, TEXT, TIMESTAMP
from connectors.registry import register_connector
from core.exceptions import ConnectorError, QueryExecutionError
from schemas.connector import ColumnInfo, SchemaInfo, TableInfo

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hubapi.com"

OBJECTS = ("contacts", "companies", "deals", "tickets", "products", "quotes")

PROPERTY_TYPES = {
    "number": REAL,
    "date": TIMESTAMP,
    "datetime": TIMESTAMP,
    "bool": BOOLEAN,
    "enumeration": TEXT,
    "string": TEXT,
}


@register_connector("hubspot")
class HubSpotConnector(HttpConnector):
    """
    HubSpot connector using a private-app access token.

    Records are paged with the ``after`` cursor, 100 per page.
    """

    display_name = "HubSpot"

    def __init__(self, config, **options):
        super().__init__(config, **options)
        self._property_cache: Dict[str, Dict[str, str]] = {}

    @property
    def base_url(self) -> str:
        return (self.config.api_url or self.extra("base_url") or DEFAULT_BASE_URL).rstrip("/")

    def _token(self) -> Optional[str]:
        return self.config.auth_token or self.extra("api_key")

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self._token()}"
        return headers

    def _config_errors(self) -> List[str]:
        errors = super()._config_errors()
        if not self._token():
            errors.append("Access token or API key is required for HubSpot")
        return errors

    async def _ping(self) -> None:
        await self._request("GET", f"{self.base_url}/crm/v3/objects/contacts", params={"limit": 1})

    async def _properties(self, object_type: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"{self.base_url}/crm/v3/properties/{object_type}")
        return self._json(response).get("results") or []

    async def fetch_schema(self) -> SchemaInfo:
        tables = []
        for object_type in OBJECTS:
            try:
                properties = await self._properties(object_type)
            except ConnectorError as e:
                logger.warning(f"Failed to fetch HubSpot schema for {object_type}: {e.message}")
                continue

            columns = [ColumnInfo(name="id", type=TEXT, nullable=False, is_primary=True)]
            for prop in properties:
                if prop.get("name") == "id":
                    continue
                columns.append(ColumnInfo(
                    name=prop["name"],
                    type=PROPERTY_TYPES.get(prop.get("type"), TEXT),
                    nullable=not prop.get("required", False),
                ))
            tables.append(TableInfo(name=object_type, schema="hubspot", columns=columns))

        return SchemaInfo(tables=tables)

    def _object_type(self, table: str) -> str:
        object_type = table.lower()
        if object_type not in OBJECTS:
            raise QueryExecutionError(
                f"Unsupported HubSpot object: {table}",
                context={"table": table, "supported": list(OBJECTS)},
            )
        return object_type

    async def column_types(self, table: str) -> Dict[str, str]:
        object_type = self._object_type(table)
        if object_type not in self._property_cache:
            try:
                properties = await self._properties(object_type)
            except ConnectorError as e:
                logger.warning(f"HubSpot property types unavailable for {object_type}; inferring: {e.message}")
                properties = []
            types = {p["name"]: PROPERTY_TYPES.get(p.get("type"), TEXT) for p in properties if p.get("name")}
            types["id"] = TEXT
            self._property_cache[object_type] = types
        return self._property_cache[object_type]

    async def fetch_records(self, table: str, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        object_type = self._object_type(table)
        url = f"{self.base_url}/crm/v3/objects/{object_type}"
        params: Dict[str, Any] = {"limit": min(self.page_size, 100), "archived": "false"}
        requested = [c for c in (columns or []) if c != "id"]
        if requested:
            params["properties"] = ",".join(requested)

        records: List[Dict[str, Any]] = []
        after = None
        while True:
            if after:
                params["after"] = after
            body = self._json(await self._request("GET", url, params=params))
            for result in body.get("results") or []:
                records.append({"id": result.get("id"), **(result.get("properties") or {})})

            after = ((body.get("paging") or {}).get("next") or {}).get("after")
            if not after or self._ceiling_reached(records):
                break

        logger.info(f"Fetched {len(records)} HubSpot {object_type}")
        return records[: self.row_ceiling]
