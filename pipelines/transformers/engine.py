"""
Transformation engine: ordered, column-level operations over a record batch.

The engine is a pure function of (rows, steps). Input rows are never
mutated; every step produces new row dicts, and steps apply strictly in
list order.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union
import json
import logging
import re
import time

import pandas as pd
from pydantic import ValidationError

from connectors.projection import parse_timestamp
from core.exceptions import ConfigurationError, DataFormatError
from pipelines.transformers.expressions import (
    ExpressionError,
    build_frame,
    compile_expression,
    evaluate,
    is_finite,
)
from schemas.pipeline import TransformationStep

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
StepLike = Union[TransformationStep, Dict[str, Any]]

_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0"}

# steps that remove rows rather than rewrite them
ROW_DROPPING_STEPS = ("filter", "dedupe")


@dataclass
class StepReport:
    index: int
    type: str
    rows_in: int
    rows_out: int

    @property
    def dropped(self) -> int:
        return self.rows_in - self.rows_out


@dataclass
class TransformationResult:
    """Output rows plus what each step did to them."""
    rows: List[Row]
    steps: List[StepReport] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def rows_dropped(self) -> int:
        return sum(s.dropped for s in self.steps if s.type in ROW_DROPPING_STEPS)


# ============================================================================
# Public API
# ============================================================================

def parse_steps(steps: Optional[Iterable[StepLike]]) -> List[TransformationStep]:
    """Validate raw step dicts; invalid steps raise ConfigurationError."""
    parsed = []
    for index, step in enumerate(steps or []):
        if isinstance(step, TransformationStep):
            parsed.append(step)
            continue
        try:
            parsed.append(TransformationStep(**step))
        except (ValidationError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid transformation step #{index}: {e}",
                context={"step_index": index},
                original_exception=e,
            )
    return parsed


def apply_transformations(rows: Sequence[Row], steps: Optional[Iterable[StepLike]]) -> List[Row]:
    """Apply ``steps`` in order and return the transformed rows."""
    return run_transformations(rows, steps).rows


def run_transformations(rows: Sequence[Row], steps: Optional[Iterable[StepLike]]) -> TransformationResult:
    """
    Apply ``steps`` in order and report per-step row counts.

    Raises:
        ConfigurationError: A step is invalid (bad expression, unknown type)
        DataFormatError: A fail-fast cast or derive hit an uncoercible value
    """
    parsed = parse_steps(steps)
    started = time.perf_counter()

    current = [dict(row) for row in rows]
    reports = []
    for index, step in enumerate(parsed):
        handler = _HANDLERS[step.type]
        rows_in = len(current)
        current = handler(current, step, index)
        reports.append(StepReport(index=index, type=step.type, rows_in=rows_in, rows_out=len(current)))

    duration_ms = (time.perf_counter() - started) * 1000
    logger.debug(f"Applied {len(parsed)} transformation steps to {len(rows)} rows in {duration_ms:.1f}ms")
    return TransformationResult(rows=current, steps=reports, duration_ms=duration_ms)


# ============================================================================
# Value helpers
# ============================================================================

def cast_value(value: Any, target_type: str) -> Any:
    """
    Coerce ``value`` to ``target_type``. Null stays null.

    Raises:
        ValueError: Value cannot be represented in the target type
    """
    if value is None:
        return None

    if target_type == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if target_type == "integer":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{value!r} is not an integer")
            return int(value)
        if isinstance(value, int):
            return value
        raw = str(value).strip().replace(",", "")
        try:
            return int(raw)
        except ValueError:
            # handle "10.0" strings
            number = float(raw)
            if not number.is_integer():
                raise ValueError(f"{value!r} is not an integer")
            return int(number)

    if target_type == "float":
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        return float(str(value).strip().replace(",", ""))

    if target_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        raw = str(value).strip().lower()
        if raw in _TRUE_STRINGS:
            return True
        if raw in _FALSE_STRINGS:
            return False
        raise ValueError(f"{value!r} is not a boolean")

    if target_type == "timestamp":
        try:
            return parse_timestamp(value).isoformat()
        except (TypeError, OverflowError, OSError) as e:
            raise ValueError(str(e))

    raise ValueError(f"Unknown cast type: {target_type}")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    return [value]


def _equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    if isinstance(left, bool) or isinstance(right, bool):
        try:
            return cast_value(left, "boolean") == cast_value(right, "boolean")
        except ValueError:
            return False
    return str(left) == str(right)


def _compare(left: Any, right: Any) -> Optional[int]:
    """
    -1/0/1, numeric when both sides are numeric, string order when neither is.
    None (no match) when either side is null or only one side is numeric.
    """
    if left is None or right is None:
        return None
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        a, b = left_num, right_num
    elif left_num is None and right_num is None:
        a, b = str(left), str(right)
    else:
        return None
    return (a > b) - (a < b)


def matches(value: Any, operator: str, target: Any) -> bool:
    """Evaluate one filter predicate against a cell value."""
    if operator == "is_null":
        return _is_blank(value)
    if operator == "not_null":
        return not _is_blank(value)
    if operator == "eq":
        return _equals(value, target)
    if operator == "neq":
        return not _equals(value, target)
    if operator == "contains":
        return value is not None and str(target) in str(value)
    if operator == "not_contains":
        return value is None or str(target) not in str(value)
    if operator == "in":
        return any(_equals(value, candidate) for candidate in _as_list(target))
    if operator == "not_in":
        return not any(_equals(value, candidate) for candidate in _as_list(target))

    order = _compare(value, target)
    if order is None:
        return False
    return {
        "gt": order > 0,
        "gte": order >= 0,
        "lt": order < 0,
        "lte": order <= 0,
    }[operator]


def _hashable(value: Any) -> Any:
    """Dedupe key for a cell; values of different types never collide."""
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple)):
        return ("json", json.dumps(value, sort_keys=True, default=str))
    try:
        hash(value)
    except TypeError:
        return ("repr", repr(value))
    return (type(value).__name__, value)


# ============================================================================
# Step handlers
# ============================================================================

def _trim(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    columns = step.target_columns()
    result = []
    for row in rows:
        keys = columns or list(row)
        result.append({
            k: (v.strip() if k in keys and isinstance(v, str) else v)
            for k, v in row.items()
        })
    return result


def _rename(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    result = []
    for row in rows:
        if step.column not in row:
            result.append(dict(row))
            continue
        renamed = {}
        for k, v in row.items():
            if k == step.column:
                renamed[step.new_name] = v
            elif k != step.new_name:
                renamed[k] = v
        result.append(renamed)
    return result


def _cast(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    result = []
    failures = 0
    for row_index, row in enumerate(rows):
        new_row = dict(row)
        if step.column in row:
            try:
                new_row[step.column] = cast_value(row[step.column], step.target_type)
            except (ValueError, TypeError) as e:
                if step.fail_fast:
                    raise DataFormatError(
                        f"Cannot cast value {row[step.column]!r} in column '{step.column}' to {step.target_type}",
                        context={"step_index": index, "column": step.column, "row_index": row_index},
                        original_exception=e,
                    )
                failures += 1
                new_row[step.column] = None
        result.append(new_row)
    if failures:
        logger.debug(f"Cast step #{index} nulled {failures} uncoercible values in '{step.column}'")
    return result


def _filter(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    return [dict(row) for row in rows if matches(row.get(step.column), step.operator, step.value)]


def _dedupe(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    if not rows:
        return []
    columns = step.target_columns()
    keys = pd.DataFrame(
        [{k: _hashable(v) for k, v in row.items()} for row in rows],
        dtype=object,
    )
    if columns:
        keys = keys.reindex(columns=columns)
    if keys.columns.empty:
        return [dict(rows[0])]
    kept = keys.drop_duplicates(keep="first").index
    return [dict(rows[i]) for i in kept]


def _derive(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    expression = compile_expression(step.expression)
    if not rows:
        return []
    try:
        values = evaluate(build_frame(rows), expression)
    except ExpressionError as e:
        logger.debug(f"Derive step #{index} evaluating row by row: {e}")
        values = []
        for row in rows:
            try:
                values.extend(evaluate(build_frame([row]), expression))
            except ExpressionError as row_error:
                values.append(row_error)

    result = []
    for row_index, (row, value) in enumerate(zip(rows, values)):
        if not isinstance(value, ExpressionError) and not is_finite(value):
            value = ExpressionError(f"result is {value}")
        if isinstance(value, ExpressionError):
            if step.fail_fast:
                raise DataFormatError(
                    f"Expression {step.expression!r} failed on row {row_index}: {value}",
                    context={"step_index": index, "column": step.new_name, "row_index": row_index},
                    original_exception=value,
                )
            value = None
        new_row = dict(row)
        new_row[step.new_name] = value
        result.append(new_row)
    return result


def _drop(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    dropped = set(step.target_columns())
    return [{k: v for k, v in row.items() if k not in dropped} for row in rows]


def _keep(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    kept = step.target_columns()
    return [{c: row[c] for c in kept if c in row} for row in rows]


def _replace(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    pattern = re.compile(step.pattern)
    result = []
    for row in rows:
        new_row = dict(row)
        value = row.get(step.column)
        if isinstance(value, str):
            new_row[step.column] = pattern.sub(step.replacement, value)
        result.append(new_row)
    return result


def _default_value(rows: List[Row], step: TransformationStep, index: int) -> List[Row]:
    result = []
    for row in rows:
        new_row = dict(row)
        if _is_blank(row.get(step.column)):
            new_row[step.column] = step.value
        result.append(new_row)
    return result


_HANDLERS: Dict[str, Callable[[List[Row], TransformationStep, int], List[Row]]] = {
    "trim": _trim,
    "rename": _rename,
    "cast": _cast,
    "filter": _filter,
    "dedupe": _dedupe,
    "derive": _derive,
    "drop": _drop,
    "keep": _keep,
    "replace": _replace,
    "default_value": _default_value,
}
