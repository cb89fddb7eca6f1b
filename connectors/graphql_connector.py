"""
GraphQL connector.

Each top-level query field is treated as a table. The GraphQL document used
for a table comes from ``extra_config["queries"][table]`` when configured,
otherwise it is built from ``extra_config["fields"][table]`` (or the columns
the SQL references).

Optional variable-based pagination:

    extra_config = {
        "pagination": {"limit_var": "first", "offset_var": "skip"},
        "queries": {"users": "query($first: Int, $skip: Int) { users(first: $first, skip: $skip) { id name } }"},
    }
"""

from typing import Any, Dict, List, Optional
import json
import logging

from connectors.http import HttpConnector
from connectors.projection import BOOLEAN, INTEGER, REAL, TEXT
from connectors.registry import register_connector
from core.exceptions import QueryExecutionError
from schemas.connector import ColumnInfo, SchemaInfo, TableInfo

logger = logging.getLogger(__name__)

PING_QUERY = "query { __schema { queryType { name } } }"

INTROSPECTION_QUERY = """
query {
  __schema {
    types {
      name
      kind
      fields {
        name
        type { name kind ofType { name kind } }
      }
    }
  }
}
"""

SCALAR_TYPES = {
    "Int": INTEGER,
    "Float": REAL,
    "Boolean": BOOLEAN,
    "ID": TEXT,
    "String": TEXT,
}


@register_connector("graphql")
class GraphQLConnector(HttpConnector):
    """Any GraphQL API reachable over HTTP POST."""

    display_name = "GraphQL"

    def _config_errors(self) -> List[str]:
        errors = super()._config_errors()
        if not self.config.api_url:
            errors.append("GraphQL API URL is required")
        return errors

    async def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        response = await self._request("POST", self.config.api_url, json=payload)
        body = self._json(response)
        if body.get("errors"):
            raise QueryExecutionError(
                f"GraphQL errors: {self.redact(json.dumps(body['errors'])[:500])}",
                context={"source_type": "graphql"},
            )
        return body.get("data") or {}

    async def _ping(self) -> None:
        await self._graphql(PING_QUERY)

    async def fetch_schema(self) -> SchemaInfo:
        data = await self._graphql(INTROSPECTION_QUERY)
        types = (data.get("__schema") or {}).get("types") or []

        tables = []
        for gql_type in types:
            name = gql_type.get("name") or ""
            if name.startswith("__") or gql_type.get("kind") != "OBJECT" or not gql_type.get("fields"):
                continue
            columns = []
            for gql_field in gql_type["fields"]:
                field_type = gql_field.get("type") or {}
                inner = field_type.get("ofType") or {}
                type_name = field_type.get("name") or inner.get("name") or field_type.get("kind")
                columns.append(ColumnInfo(
                    name=gql_field["name"],
                    type=SCALAR_TYPES.get(type_name, TEXT),
                    nullable=field_type.get("kind") != "NON_NULL",
                    is_primary=gql_field["name"] == "id",
                ))
            tables.append(TableInfo(name=name, schema="graphql", columns=columns))

        return SchemaInfo(tables=tables)

    def _document_for(self, table: str, columns: Optional[List[str]]) -> str:
        configured = (self.extra("queries") or {}).get(table)
        if configured:
            return configured
        fields = (self.extra("fields") or {}).get(table) or columns or ["id"]
        return "query {\n  %s {\n    %s\n  }\n}" % (table, "\n    ".join(fields))

    @staticmethod
    def _extract_records(data: Dict[str, Any], table: str) -> List[Dict[str, Any]]:
        value = data.get(table, data)
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            # connection-style payloads: first list field holds the records
            for nested in value.values():
                if isinstance(nested, list):
                    return nested
            return [value]
        return [] if value is None else [{"value": value}]

    async def fetch_records(self, table: str, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        document = self._document_for(table, columns)
        pagination = self.extra("pagination") or {}
        limit_var = pagination.get("limit_var")

        if not limit_var:
            data = await self._graphql(document)
            return self._as_records(self._extract_records(data, table))[: self.row_ceiling]

        offset_var = pagination.get("offset_var", "offset")
        records: List[Dict[str, Any]] = []
        while True:
            data = await self._graphql(document, {limit_var: self.page_size, offset_var: len(records)})
            page = self._as_records(self._extract_records(data, table))
            records.extend(page)
            if len(page) < self.page_size or self._ceiling_reached(records):
                break

        logger.info(f"Fetched {len(records)} GraphQL records for {table}")
        return records[: self.row_ceiling]
