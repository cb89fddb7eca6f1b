"""
Pydantic schemas for the connector contract.

Every connector accepts a ConnectionConfig and answers with the result
models below, regardless of the wire protocol behind it.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.security import REDACTED, redact_mapping


class ConnectionConfig(BaseModel):
    """
    Superset of connection fields; each connector validates only its subset.

    Secrets (password, auth_token, extra_config credentials) never appear in
    ``repr`` or ``safe_dict()``.
    """
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = Field(None, repr=False)
    api_url: Optional[str] = None
    auth_token: Optional[str] = Field(None, repr=False)
    extra_config: Dict[str, Any] = Field(default_factory=dict, repr=False)

    def secrets(self) -> List[str]:
        """Values that must be scrubbed from any message derived from this config."""
        values = [self.password, self.auth_token]
        for key in ("client_secret", "api_key", "token", "security_token"):
            value = self.extra_config.get(key)
            if isinstance(value, str):
                values.append(value)
        return [v for v in values if v]

    def safe_dict(self) -> Dict[str, Any]:
        data = redact_mapping(self.dict())
        if data.get("extra_config"):
            data["extra_config"] = redact_mapping(data["extra_config"])
        return data

    def __str__(self) -> str:
        host = self.host or self.api_url or self.database or "?"
        return f"{self.type}://{host} (password={REDACTED if self.password else None})"


class ColumnInfo(BaseModel):
    name: str
    type: str
    nullable: bool = True
    is_primary: bool = False
    is_foreign: bool = False


class TableInfo(BaseModel):
    name: str
    schema_name: Optional[str] = Field(None, alias="schema")
    columns: List[ColumnInfo] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class SchemaInfo(BaseModel):
    tables: List[TableInfo] = Field(default_factory=list)


class QueryResult(BaseModel):
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    truncated: bool = False


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None


class ConfigValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
