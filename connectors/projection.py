"""
Embedded query evaluation for sources without a native SQL engine.

Non-SQL connectors (GraphQL, CRM and REST APIs) fetch raw records and then
apply the caller's SQL to them locally:

    1. parse_select() pulls the collection name and referenced columns
    2. coerce_records() maps origin values onto canonical column types
       (INTEGER, REAL, BOOLEAN, TEXT, TIMESTAMP)
    3. execute_projection() loads the rows into an in-memory SQLite database
       through pandas and runs the original statement against it

The result column set is whatever the SELECT projects.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import json
import logging
import re
import sqlite3
import time

import pandas as pd
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import UserDefinedType

from core.exceptions import QueryExecutionError
from schemas.connector import QueryResult

logger = logging.getLogger(__name__)

INTEGER = "INTEGER"
REAL = "REAL"
BOOLEAN = "BOOLEAN"
TEXT = "TEXT"
TIMESTAMP = "TIMESTAMP"

CANONICAL_TYPES = (INTEGER, REAL, BOOLEAN, TEXT, TIMESTAMP)

_FROM = re.compile(r"\bFROM\s+[`\"\[]?([A-Za-z_]\w*)[`\"\]]?", re.IGNORECASE)
_SELECT = re.compile(r"^\s*SELECT\s+(?:DISTINCT\s+)?(.*?)\s+FROM\b", re.IGNORECASE | re.DOTALL)
_SELECT_LIST = re.compile(r"\bSELECT\s+(?:DISTINCT\s+|ALL\s+)?(.*?)\s+FROM\b", re.IGNORECASE | re.DOTALL)
_PLAIN_COLUMN = re.compile(
    r"^[`\"]?(?:[A-Za-z_]\w*[`\"]?\.[`\"]?)?([A-Za-z_]\w*)[`\"]?(?:\s+(?:AS\s+)?[`\"]?(\w+)[`\"]?)?$",
    re.IGNORECASE,
)
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_LITERAL_OR_COMMENT = re.compile(
    r"('(?:[^']|'')*')|(\"(?:[^\"]|\"\")*\")|(--[^\n]*)|(/\*.*?(?:\*/|$))",
    re.DOTALL,
)
_STATEMENT_START = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_WRITE_KEYWORD = re.compile(
    r"\b(INSERT|UPDATE|DELETE|REPLACE|ATTACH|DETACH|PRAGMA|CREATE|DROP|ALTER|VACUUM|REINDEX)\b",
    re.IGNORECASE,
)
_ALIAS = re.compile(r"\bAS\s+[`\"]?([A-Za-z_]\w*)", re.IGNORECASE)
_IDENTIFIER = re.compile(r"(?<![\w.])(?:[A-Za-z_]\w*\.)?[`\"]?([A-Za-z_]\w*)[`\"]?(\s*\()?")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")
_DIGITS = re.compile(r"[+-]?\d+")

_SQL_KEYWORDS = {
    "select", "from", "where", "and", "or", "not", "in", "is", "null", "like",
    "between", "order", "by", "group", "having", "limit", "offset", "asc",
    "desc", "as", "true", "false", "case", "when", "then", "else", "end",
    "distinct", "on", "join", "inner", "left", "right", "outer", "full",
    "cross", "union", "all", "exists", "collate", "nocase", "escape", "glob",
    "with", "recursive", "nulls", "first", "last", "intersect", "except",
    "integer", "int", "real", "text", "numeric", "blob", "boolean", "varchar",
    "current_timestamp", "current_date", "current_time",
}


@dataclass
class SelectInfo:
    """What a SELECT statement needs from its source."""
    table: str
    projection: Optional[List[str]]
    columns: Optional[List[str]] = field(default=None)
    statement: str = ""
    referenced: List[str] = field(default_factory=list)
    wildcard: bool = False

    @property
    def is_star(self) -> bool:
        return self.projection is None


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving quoted text alone."""
    return _LITERAL_OR_COMMENT.sub(lambda m: m.group(1) or m.group(2) or " ", sql)


def _identifiers(text: str, skip: set) -> List[str]:
    names: List[str] = []
    for match in _IDENTIFIER.finditer(text):
        name, is_call = match.group(1), match.group(2)
        if is_call or name.lower() in _SQL_KEYWORDS or name in skip or name in names:
            continue
        names.append(name)
    return names


def parse_select(sql: str) -> SelectInfo:
    """
    Extract the target collection and the columns a statement references.

    Only a single read statement (SELECT, or WITH ... SELECT) is accepted;
    comments are dropped before anything else is looked at.

    ``projection`` holds the plain column names in the SELECT list (None for
    ``*`` or expressions). ``columns`` adds columns used by WHERE / ORDER BY
    etc. and is what a connector should request from the origin; None means
    fetch everything. ``referenced`` lists every column name the statement
    mentions, expressions and aggregates included.
    """
    statement = strip_comments(sql or "").strip().rstrip(";").strip()
    bare = _STRING_LITERAL.sub("''", statement)
    if ";" in bare:
        raise QueryExecutionError(
            "Only a single SELECT statement is supported",
            context={"sql": (sql or "")[:200]},
        )
    if not _STATEMENT_START.match(bare):
        raise QueryExecutionError(
            "Only SELECT statements are supported",
            context={"sql": (sql or "")[:200]},
        )
    if bare.lstrip()[:4].upper() == "WITH" and _WRITE_KEYWORD.search(bare):
        raise QueryExecutionError(
            "Only SELECT statements are supported",
            context={"sql": (sql or "")[:200]},
        )

    table_match = _FROM.search(bare)
    if not table_match:
        raise QueryExecutionError(
            "Could not extract table name from SQL",
            context={"sql": (sql or "")[:200]},
        )
    table = table_match.group(1)

    projection = None
    aliases = set()
    wildcard = False
    select_match = _SELECT.search(bare)
    if select_match:
        items = [item.strip() for item in select_match.group(1).split(",")]
        wildcard = any(item == "*" or item.endswith(".*") for item in items)
        names = []
        for item in items:
            plain = _PLAIN_COLUMN.match(item)
            if item == "*" or not plain:
                names = None
                break
            names.append(plain.group(1))
            if plain.group(2):
                aliases.add(plain.group(2))
        projection = names

    tail = bare[table_match.end():]
    columns = None
    if projection is not None:
        columns = list(projection)
        for name in _identifiers(tail, aliases | {table}):
            if name not in columns:
                columns.append(name)

    aliases.update(_ALIAS.findall(bare))
    skip = aliases | {table}
    referenced = list(projection or [])
    for select_list in _SELECT_LIST.findall(bare):
        for name in _identifiers(select_list, skip):
            if name not in referenced:
                referenced.append(name)
    for name in _identifiers(tail, skip):
        if name not in referenced:
            referenced.append(name)

    return SelectInfo(
        table=table,
        projection=projection,
        columns=columns,
        statement=statement,
        referenced=referenced,
        wildcard=wildcard,
    )


# ============================================================================
# Type coercion
# ============================================================================

def infer_type(value: Any) -> str:
    """Canonical type of a single origin value."""
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, (float, Decimal)):
        return REAL
    if isinstance(value, (datetime, date)):
        return TIMESTAMP
    if isinstance(value, str) and _ISO_DATETIME.match(value.strip()):
        return TIMESTAMP
    return TEXT


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds (HubSpot date properties)
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    raw = str(value).strip()
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc).replace(tzinfo=None)
    raw = raw.replace("Z", "+00:00")
    if re.search(r"[+-]\d{4}$", raw):
        raw = f"{raw[:-2]}:{raw[-2:]}"
    return datetime.fromisoformat(raw)


def coerce_value(value: Any, canonical: str) -> Any:
    """
    Convert ``value`` to ``canonical``. Values that cannot be converted are
    kept as text rather than dropped.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    try:
        if canonical == INTEGER:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, int):
                return value
            if isinstance(value, str) and _DIGITS.fullmatch(value.strip()):
                return int(value.strip())
            if isinstance(value, Decimal) and value == value.to_integral_value():
                return int(value)
            number = float(value)
            return int(number) if number.is_integer() else number
        if canonical == REAL:
            return float(value)
        if canonical == BOOLEAN:
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in ("true", "1", "yes", "t", "y"):
                return True
            if lowered in ("false", "0", "no", "f", "n"):
                return False
            return str(value)
        if canonical == TIMESTAMP:
            return parse_timestamp(value).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value if isinstance(value, (int, float, bool)) else str(value)


def coerce_records(
    records: Iterable[Dict[str, Any]],
    type_hints: Optional[Dict[str, str]] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    """
    Normalize raw records into rows with canonical column types.

    Column order is first-seen order across records. A column's type comes
    from ``type_hints`` when the origin declares it, otherwise from its first
    non-null value.
    """
    records = list(records)
    hints = {k: v.upper() for k, v in (type_hints or {}).items() if v and v.upper() in CANONICAL_TYPES}

    columns: List[str] = []
    seen = set()
    for record in records:
        for key in record:
            if key not in seen:
                seen.add(key)
                columns.append(key)

    column_types: Dict[str, str] = {}
    for column in columns:
        if column in hints:
            column_types[column] = hints[column]
            continue
        column_types[column] = TEXT
        for record in records:
            value = record.get(column)
            if value is not None and value != "":
                column_types[column] = infer_type(value)
                break

    rows = [
        {column: coerce_value(record.get(column), column_types[column]) for column in columns}
        for record in records
    ]
    return rows, column_types


def to_plain_value(value: Any) -> Any:
    """JSON-friendly rendering of a driver value."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (dict, list, str, int, float, bool)) or value is None:
        return value
    return str(value)


# ============================================================================
# Embedded evaluator
# ============================================================================

class _Affinity(UserDefinedType):
    """Bare SQLite column type; values are bound untouched."""

    cache_ok = True

    def __init__(self, name: str):
        self.name = name

    def get_col_spec(self, **kw) -> str:
        return self.name


# NUMERIC keeps integers as integers and non-integral values as reals
_AFFINITIES = {
    INTEGER: "NUMERIC",
    REAL: "REAL",
    BOOLEAN: "NUMERIC",
    TEXT: "TEXT",
    TIMESTAMP: "TEXT",
}


_READ_ONLY_ACTIONS = {
    sqlite3.SQLITE_SELECT,
    sqlite3.SQLITE_READ,
    sqlite3.SQLITE_FUNCTION,
    sqlite3.SQLITE_RECURSIVE,
    sqlite3.SQLITE_TRANSACTION,
}


def _read_only(action, arg1, arg2, db_name, source):
    """SQLite authorizer that refuses everything except reads."""
    if action in _READ_ONLY_ACTIONS:
        return sqlite3.SQLITE_OK
    return sqlite3.SQLITE_DENY


def execute_projection(
    rows: List[Dict[str, Any]],
    sql: str,
    table: str,
    column_types: Optional[Dict[str, str]] = None,
) -> QueryResult:
    """
    Run ``sql`` against ``rows`` registered as ``table``.

    Rows are loaded into a private in-memory SQLite database (one per call),
    so predicates, aggregation, ordering and LIMIT behave as in SQL.
    BOOLEAN columns are restored from SQLite's 0/1 storage when they appear
    unchanged in the result.
    """
    start = time.perf_counter()
    column_types = column_types or {}
    select = parse_select(sql)

    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    if not columns:
        # nothing fetched: the table still needs every column the statement names
        columns = list(column_types)
        columns += [name for name in select.referenced if name not in columns]
    if not columns:
        if select.wildcard:
            return QueryResult(columns=[], rows=[], row_count=0, execution_time_ms=0)
        columns = ["_empty"]

    frame = pd.DataFrame(rows, columns=columns, dtype=object)
    dtype = {
        column: _Affinity(_AFFINITIES[column_types[column]])
        for column in columns
        if column_types.get(column) in _AFFINITIES
    }
    engine = create_engine("sqlite://", poolclass=StaticPool)
    try:
        with engine.connect() as conn:
            frame.to_sql(table, conn, index=False, if_exists="replace", dtype=dtype or None)
            conn.commit()
            conn.connection.dbapi_connection.set_authorizer(_read_only)
            result = conn.exec_driver_sql(select.statement)
            result_columns = list(result.keys())
            result_rows = [dict(zip(result_columns, record)) for record in result.fetchall()]
    except SQLAlchemyError as e:
        message = str(getattr(e, "orig", None) or e)
        raise QueryExecutionError(
            f"Query failed against {table}: {message}",
            context={"table": table},
        ) from None
    finally:
        engine.dispose()

    bool_columns = [c for c in result_columns if column_types.get(c) == BOOLEAN]
    for row in result_rows:
        for column in bool_columns:
            if row[column] in (0, 1):
                row[column] = bool(row[column])

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    logger.debug(f"Projected {len(rows)} {table} rows to {len(result_rows)} in {elapsed_ms}ms")

    return QueryResult(
        columns=result_columns,
        rows=result_rows,
        row_count=len(result_rows),
        execution_time_ms=elapsed_ms,
    )
