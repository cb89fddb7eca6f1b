"""
Salesforce connector (REST API + SOQL).

Authentication:
    - OAuth access token + ``extra_config["instance_url"]``, or
    - username/password via the OAuth password grant (needs ``client_id`` and
      ``client_secret``; ``security_token`` is appended to the password)

SObjects are tables. A query pulls the referenced fields with SOQL (following
``nextRecordsUrl``) and the original SQL is evaluated locally, since SOQL has
no ``SELECT *``, aggregates over arbitrary columns or joins.
"""

from typing import Any, Dict, List, Optional
import logging

import httpx

from connectors.http import HttpConnector
from connectors.projection import BOOLEAN, INTEGER, REAL, TEXT, TIMESTAMP
from connectors.registry import register_connector
from core.exceptions import AuthenticationError, ConnectorError
from schemas.connector import ColumnInfo, SchemaInfo, TableInfo

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_API_VERSION = "58.0"

COMMON_OBJECTS = ("Account", "Contact", "Lead", "Opportunity", "Case", "Task", "Event", "User")

FIELD_TYPES = {
    "int": INTEGER,
    "double": REAL,
    "currency": REAL,
    "percent": REAL,
    "boolean": BOOLEAN,
    "date": TIMESTAMP,
    "datetime": TIMESTAMP,
}

# compound fields cannot be selected alongside their components
_COMPOUND_TYPES = ("address", "location")


@register_connector("salesforce")
class SalesforceConnector(HttpConnector):
    """Salesforce connector."""

    display_name = "Salesforce"

    def __init__(self, config, **options):
        super().__init__(config, **options)
        self._access_token: Optional[str] = config.auth_token
        self._instance_url: Optional[str] = self.extra("instance_url")
        self._issued_token = False
        self._describe_cache: Dict[str, Dict[str, Any]] = {}

    @property
    def api_version(self) -> str:
        return str(self.extra("api_version", DEFAULT_API_VERSION))

    @property
    def data_url(self) -> str:
        return f"{self._instance_url.rstrip('/')}/services/data/v{self.api_version}"

    def _config_errors(self) -> List[str]:
        errors = super()._config_errors()
        has_user_pass = bool(self.config.username and self.config.password)
        has_oauth = bool(self.config.auth_token and self.extra("instance_url"))
        if not has_user_pass and not has_oauth:
            errors.append("Either username/password OR auth token + instance URL is required for Salesforce")
        if has_user_pass and not has_oauth and not (self.extra("client_id") and self.extra("client_secret")):
            errors.append("client_id and client_secret are required for username/password login")
        return errors

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}", "Accept": "application/json"}

    def redact(self, text) -> str:
        message = super().redact(text)
        if self._access_token and self._access_token != self.config.auth_token:
            message = message.replace(self._access_token, "***")
        return message

    async def _open(self) -> None:
        await super()._open()
        if self._access_token and self._instance_url:
            return

        login_url = self.extra("login_url", DEFAULT_LOGIN_URL).rstrip("/")
        password = f"{self.config.password}{self.extra('security_token') or ''}"
        response = await self._request(
            "POST",
            f"{login_url}/services/oauth2/token",
            data={
                "grant_type": "password",
                "client_id": self.extra("client_id"),
                "client_secret": self.extra("client_secret"),
                "username": self.config.username,
                "password": password,
            },
            headers={"Accept": "application/json"},
        )
        body = self._json(response)
        if not body.get("access_token"):
            raise AuthenticationError("Salesforce login returned no access token")
        self._access_token = body["access_token"]
        self._instance_url = body.get("instance_url") or self._instance_url
        self._issued_token = True

    async def _close(self) -> None:
        try:
            if self._issued_token and self._client is not None:
                login_url = self.extra("login_url", DEFAULT_LOGIN_URL).rstrip("/")
                try:
                    await self._client.post(f"{login_url}/services/oauth2/revoke", data={"token": self._access_token})
                except httpx.HTTPError as e:
                    logger.warning(f"Salesforce token revoke failed: {self.redact(e)}")
                self._access_token = self.config.auth_token
                self._issued_token = False
        finally:
            await super()._close()

    async def _soql(self, soql: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.data_url}/query", params={"q": soql})
        return self._json(response)

    async def _ping(self) -> None:
        await self._soql("SELECT Id FROM User LIMIT 1")

    async def _describe(self, sobject: str) -> Dict[str, Any]:
        if sobject not in self._describe_cache:
            response = await self._request("GET", f"{self.data_url}/sobjects/{sobject}/describe")
            self._describe_cache[sobject] = self._json(response)
        return self._describe_cache[sobject]

    async def fetch_schema(self) -> SchemaInfo:
        await self.connect()
        body = self._json(await self._request("GET", f"{self.data_url}/sobjects"))
        wanted = set(self.extra("objects") or COMMON_OBJECTS)

        tables = []
        for sobject in body.get("sobjects") or []:
            name = sobject.get("name")
            if name not in wanted:
                continue
            try:
                metadata = await self._describe(name)
            except ConnectorError as e:
                logger.warning(f"Failed to describe Salesforce object {name}: {e.message}")
                continue
            columns = [
                ColumnInfo(
                    name=f["name"],
                    type=FIELD_TYPES.get(f.get("type"), TEXT),
                    nullable=bool(f.get("nillable", True)),
                    is_primary=f["name"] == "Id",
                    is_foreign=bool(f.get("referenceTo")),
                )
                for f in metadata.get("fields") or []
            ]
            tables.append(TableInfo(name=name, schema="salesforce", columns=columns))

        return SchemaInfo(tables=tables)

    async def column_types(self, table: str) -> Dict[str, str]:
        metadata = await self._describe(table)
        return {f["name"]: FIELD_TYPES.get(f.get("type"), TEXT) for f in metadata.get("fields") or []}

    async def fetch_records(self, table: str, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        await self.connect()
        metadata = await self._describe(table)
        known = {f["name"].lower(): f["name"] for f in metadata.get("fields") or []}
        if columns:
            fields = [known[c.lower()] for c in columns if c.lower() in known]
        else:
            fields = [
                f["name"] for f in metadata.get("fields") or []
                if f.get("type") not in _COMPOUND_TYPES
            ]
        fields = fields or ["Id"]

        soql = f"SELECT {', '.join(fields)} FROM {metadata.get('name', table)}"
        body = await self._soql(soql)
        records: List[Dict[str, Any]] = []
        while True:
            for record in body.get("records") or []:
                records.append({k: v for k, v in record.items() if k != "attributes"})
            next_url = body.get("nextRecordsUrl")
            if body.get("done", True) or not next_url or self._ceiling_reached(records):
                break
            body = self._json(await self._request("GET", f"{self._instance_url.rstrip('/')}{next_url}"))

        logger.info(f"Fetched {len(records)} Salesforce {table} records")
        return records[: self.row_ceiling]
