"""
Base connector contract shared by every data source.

A connector adapts one wire protocol (SQL driver, GraphQL, CRM REST API)
into a uniform query/schema interface. Connectors hold a live session, so
callers acquire them as async context managers:

    async with create_connector(config) as connector:
        result = await connector.execute_query("SELECT * FROM customers")

The session is released on every exit path, including failures mid-query.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional
import logging

from core.exceptions import ConfigurationError, ETLException
from core.security import redact
from schemas.connector import (
    ConnectionConfig,
    ConnectionTestResult,
    ConfigValidationResult,
    QueryResult,
    SchemaInfo,
)

logger = logging.getLogger(__name__)


class BaseConnector(ABC):
    """
    Abstract base class for all connectors.

    Responsibilities:
    - Validate the subset of ConnectionConfig the source needs
    - Open and release the underlying session (engine, HTTP client)
    - Answer schema and query requests with the shared result models
    - Keep credentials out of every message it produces

    Subclasses implement ``_open``, ``_close``, ``_ping``, ``fetch_schema``
    and ``execute_query``.
    """

    display_name = "Connector"

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self._connected = False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.config}>"

    async def __aenter__(self) -> "BaseConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Validate configuration (before any I/O) and open the session."""
        if self._connected:
            return
        validation = self.validate_config()
        if not validation.valid:
            raise ConfigurationError(
                f"Invalid {self.display_name} configuration: {'; '.join(validation.errors)}",
                context={"source_type": self.config.type, "errors": validation.errors},
            )
        try:
            await self._open()
        except BaseException:
            await self._close()
            raise
        self._connected = True

    async def disconnect(self) -> None:
        """Release the session. Safe to call more than once."""
        if not self._connected:
            return
        try:
            await self._close()
        finally:
            self._connected = False

    async def _open(self) -> None:
        pass

    async def _close(self) -> None:
        pass

    @abstractmethod
    async def _ping(self) -> None:
        """Cheapest round trip that proves the source is reachable."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        """
        Check connectivity. Never raises; failures are reported in the result.
        """
        validation = self.validate_config()
        if not validation.valid:
            return ConnectionTestResult(success=False, error="; ".join(validation.errors))

        try:
            await self.connect()
            await self._ping()
        except Exception as e:
            message = e.message if isinstance(e, ETLException) else str(e)
            error = self.redact(f"{self.display_name} connection failed: {message}")
            logger.warning(error)
            return ConnectionTestResult(success=False, error=error)

        return ConnectionTestResult(success=True)

    @abstractmethod
    async def fetch_schema(self) -> SchemaInfo:
        """Tables (or collections) with their columns."""

    @abstractmethod
    async def execute_query(self, sql: str, max_rows: Optional[int] = None) -> QueryResult:
        """
        Run ``sql`` and return columns + rows.

        With ``max_rows`` at most that many rows are read from the source and
        ``truncated`` is set when more were available.
        """

    def validate_config(self) -> ConfigValidationResult:
        errors = self._config_errors()
        return ConfigValidationResult(valid=not errors, errors=errors)

    def _config_errors(self) -> List[str]:
        errors = []
        if not self.config.type:
            errors.append("Connection type is required")
        return errors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def redact(self, text: Optional[Any]) -> str:
        return redact(str(text) if text is not None else "", self.config.secrets())

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.config.extra_config or {}).get(key, default)
