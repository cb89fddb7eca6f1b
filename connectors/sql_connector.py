"""
Native SQL connector for PostgreSQL, MySQL and SQLite.

Queries run directly on the source through a SQLAlchemy async engine
(asyncpg, aiomysql or aiosqlite); schema comes from SQLAlchemy inspection.
"""

from typing import Any, Dict, List, Optional
import logging
import time

from sqlalchemy import inspect
from sqlalchemy.engine import URL
from sqlalchemy.exc import CompileError, DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from connectors.base import BaseConnector
from connectors.projection import to_plain_value
from connectors.registry import register_connector
from core.config import settings
from core.exceptions import AuthenticationError, QueryExecutionError, SourceConnectionError
from schemas.connector import ColumnInfo, ConnectionConfig, QueryResult, SchemaInfo, TableInfo

logger = logging.getLogger(__name__)

DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_AUTH_MARKERS = ("password authentication failed", "access denied", "invalid password", "authentication failed")


@register_connector("postgres", "postgresql", "mysql", "sqlite")
class SQLConnector(BaseConnector):
    """
    SQL database connector.

    Attributes:
        timeout: Connect timeout in seconds
        query_timeout: Statement timeout in seconds (PostgreSQL and MySQL)
    """

    display_name = "SQL"

    def __init__(self, config: ConnectionConfig, timeout: Optional[float] = None,
                 query_timeout: Optional[float] = None):
        super().__init__(config)
        self.dialect = config.type.lower()
        self.display_name = {"sqlite": "SQLite", "mysql": "MySQL"}.get(self.dialect, "PostgreSQL")
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS
        self.query_timeout = query_timeout or settings.CONNECTOR_QUERY_TIMEOUT_SECONDS
        self._engine: Optional[AsyncEngine] = None

    def _config_errors(self) -> List[str]:
        errors = super()._config_errors()
        if not self.config.database:
            errors.append("Database name is required")
        if self.dialect != "sqlite":
            if not self.config.host:
                errors.append("Host is required")
            if not self.config.username:
                errors.append("Username is required")
        return errors

    def url(self) -> URL:
        if self.dialect == "sqlite":
            return URL.create(DRIVERS["sqlite"], database=self.config.database)
        return URL.create(
            DRIVERS[self.dialect],
            username=self.config.username,
            password=self.config.password,
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
        )

    async def _open(self) -> None:
        self._engine = create_async_engine(
            self.url(),
            poolclass=NullPool,
            connect_args=self._connect_args(),
        )

    def _connect_args(self) -> Dict[str, Any]:
        """Driver arguments: connect timeout plus a per-statement timeout where the driver has one."""
        if self.dialect == "mysql":
            return {
                "connect_timeout": self.timeout,
                "init_command": f"SET SESSION MAX_EXECUTION_TIME={int(self.query_timeout * 1000)}",
            }
        if self.dialect == "sqlite":
            return {"timeout": self.timeout}
        return {"timeout": self.timeout, "command_timeout": self.query_timeout}

    async def _close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    def _wrap_error(self, e: Exception, action: str) -> Exception:
        """Translate a driver error into the connector taxonomy."""
        message = self.redact(getattr(e, "orig", None) or e)
        lowered = message.lower()
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return AuthenticationError(f"{self.display_name} authentication failed", context={"action": action})
        if isinstance(e, DBAPIError) and e.connection_invalidated:
            return SourceConnectionError(f"{self.display_name} connection lost: {message}", context={"action": action})
        if isinstance(e, (OSError, ConnectionError)) or "could not connect" in lowered or "unable to open" in lowered:
            return SourceConnectionError(f"{self.display_name} unreachable: {message}", context={"action": action})
        return QueryExecutionError(f"{self.display_name} {action} failed: {message}", context={"action": action})

    async def _ping(self) -> None:
        try:
            async with self._engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
        except (SQLAlchemyError, OSError) as e:
            raise self._wrap_error(e, "connect") from None

    async def fetch_schema(self) -> SchemaInfo:
        await self.connect()
        try:
            async with self._engine.connect() as conn:
                tables = await conn.run_sync(self._inspect)
        except (SQLAlchemyError, OSError) as e:
            raise self._wrap_error(e, "schema inspection") from None
        return SchemaInfo(tables=tables)

    @staticmethod
    def _inspect(sync_conn) -> List[TableInfo]:
        inspector = inspect(sync_conn)
        schema_name = inspector.default_schema_name
        tables = []
        for table_name in inspector.get_table_names():
            primary = set(inspector.get_pk_constraint(table_name).get("constrained_columns") or [])
            foreign = set()
            for fk in inspector.get_foreign_keys(table_name):
                foreign.update(fk.get("constrained_columns") or [])

            columns = []
            for column in inspector.get_columns(table_name):
                try:
                    type_name = str(column["type"])
                except (CompileError, NotImplementedError):
                    type_name = column["type"].__class__.__name__.upper()
                columns.append(ColumnInfo(
                    name=column["name"],
                    type=type_name,
                    nullable=bool(column.get("nullable", True)),
                    is_primary=column["name"] in primary,
                    is_foreign=column["name"] in foreign,
                ))
            tables.append(TableInfo(name=table_name, schema=schema_name, columns=columns))
        return tables

    async def execute_query(self, sql: str, max_rows: Optional[int] = None) -> QueryResult:
        await self.connect()
        start = time.perf_counter()
        try:
            async with self._engine.connect() as conn:
                columns, records, truncated = await conn.run_sync(self._run_statement, sql, max_rows)
        except (SQLAlchemyError, OSError) as e:
            raise self._wrap_error(e, "query") from None

        rows: List[Dict[str, Any]] = [
            {column: to_plain_value(value) for column, value in zip(columns, record)}
            for record in records
        ]
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.debug(f"{self.display_name} query returned {len(rows)} rows in {elapsed_ms}ms")
        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            execution_time_ms=elapsed_ms,
            truncated=truncated,
        )

    @staticmethod
    def _run_statement(sync_conn, sql: str, max_rows: Optional[int]):
        """
        Execute ``sql``; with ``max_rows`` the rows are streamed from a
        server-side cursor and reading stops after ``max_rows + 1``.
        """
        options = {"no_parameters": True}
        if max_rows is not None:
            options["stream_results"] = True
        result = sync_conn.exec_driver_sql(sql, execution_options=options)
        if not result.returns_rows:
            sync_conn.commit()
            return [], [], False
        columns = list(result.keys())
        if max_rows is None:
            return columns, result.fetchall(), False
        records = result.fetchmany(max_rows + 1)
        result.close()
        return columns, records[:max_rows], len(records) > max_rows
