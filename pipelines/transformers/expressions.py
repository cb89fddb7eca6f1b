"""
Expression evaluation for ``derive`` steps.

Expressions are vetted with :mod:`ast` and then evaluated column-wise with
``DataFrame.eval`` (python engine). Column values are referenced by bare
name and the helper functions below are supplied as resolvers:

    price * quantity
    round(amount / 100, 2)
    iif(age >= 18, "adult", "minor")
    concat(first_name, " ", last_name)

Text is joined with ``concat``; ``+`` is arithmetic only.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List
import ast
import math

import numpy as np
import pandas as pd

from core.exceptions import ConfigurationError


class ExpressionError(ValueError):
    """Expression failed to evaluate."""


def to_python(value: Any) -> Any:
    """Plain Python value for a pandas/numpy cell; missing values become None."""
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
    return value


def _column(values: List[Any], index: pd.Index) -> pd.Series:
    try:
        array = pd.array(values)
    except (TypeError, ValueError, OverflowError):
        array = pd.array(values, dtype=object)
    return pd.Series(array, index=index)


def build_frame(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """One nullable-typed column per key, in first-seen order."""
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    index = pd.RangeIndex(len(rows))
    return pd.DataFrame({c: _column([row.get(c) for row in rows], index) for c in columns}, index=index)


def _rowwise(combine: Callable[..., Any]) -> Callable[..., Any]:
    """Lift a per-value function so it accepts Series and scalars alike."""
    def helper(*args):
        series = [arg for arg in args if isinstance(arg, pd.Series)]
        if not series:
            return combine(*[to_python(arg) for arg in args])
        index = series[0].index
        columns = [
            list(arg.astype(object)) if isinstance(arg, pd.Series) else [arg] * len(index)
            for arg in args
        ]
        values = [combine(*[to_python(v) for v in cells]) for cells in zip(*columns)]
        return _column(values, index)
    return helper


def _null_safe(fn: Callable[..., Any]) -> Callable[..., Any]:
    def call(value, *rest):
        if value is None:
            return None
        return fn(value, *rest)
    return call


def _extreme(pick):
    def call(*args):
        if any(arg is None for arg in args):
            return None
        return pick(args)
    return call


def _coalesce(*args):
    for arg in args:
        if arg is not None:
            return arg
    return None


def _concat(*args):
    return "".join(str(a) for a in args if a is not None)


def _iif(condition, when_true, when_false):
    return when_true if condition else when_false


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": _rowwise(_null_safe(abs)),
    "round": _rowwise(_null_safe(round)),
    "min": _rowwise(_extreme(min)),
    "max": _rowwise(_extreme(max)),
    "len": _rowwise(_null_safe(len)),
    "int": _rowwise(_null_safe(int)),
    "float": _rowwise(_null_safe(float)),
    "str": _rowwise(_null_safe(str)),
    "upper": _rowwise(_null_safe(lambda s: str(s).upper())),
    "lower": _rowwise(_null_safe(lambda s: str(s).lower())),
    "strip": _rowwise(_null_safe(lambda s: str(s).strip())),
    "concat": _rowwise(_concat),
    "coalesce": _rowwise(_coalesce),
    "iif": _rowwise(_iif),
}

CONSTANTS = {"null": None, "true": True, "false": False}

_MAX_EXPONENT = 100

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare,
    ast.Call, ast.Name, ast.Constant, ast.Load, ast.List, ast.Tuple,
    ast.And, ast.Or,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.USub, ast.UAdd, ast.Not,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn,
)


@dataclass(frozen=True)
class CompiledExpression:
    source: str
    names: FrozenSet[str]


def _constant_exponent(node: ast.AST) -> bool:
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        node = node.operand
    return (
        isinstance(node, ast.Constant)
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
        and abs(node.value) <= _MAX_EXPONENT
    )


def compile_expression(expression: str) -> CompiledExpression:
    """
    Parse and vet an expression.

    Raises:
        ConfigurationError: Syntax error, disallowed construct or unknown function
    """
    source = expression.strip()
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConfigurationError(
            f"Invalid expression {expression!r}: {e.msg}",
            context={"expression": expression},
        )

    names = set()
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConfigurationError(
                f"Unsupported construct in expression {expression!r}: {type(node).__name__}",
                context={"expression": expression},
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                name = getattr(node.func, "id", type(node.func).__name__)
                raise ConfigurationError(
                    f"Unknown function {name!r} in expression; allowed: {', '.join(sorted(FUNCTIONS))}",
                    context={"expression": expression},
                )
            if node.keywords:
                raise ConfigurationError(
                    f"Keyword arguments are not supported in expression {expression!r}",
                    context={"expression": expression},
                )
        elif isinstance(node, ast.BinOp) and isinstance(node.op, ast.Pow):
            if not _constant_exponent(node.right):
                raise ConfigurationError(
                    f"Exponent must be a number no larger than {_MAX_EXPONENT} in {expression!r}",
                    context={"expression": expression},
                )
        elif isinstance(node, ast.Name):
            names.add(node.id)

    called = {n.func.id for n in ast.walk(tree) if isinstance(n, ast.Call)}
    return CompiledExpression(source=source, names=frozenset(names - called - set(CONSTANTS)))


def evaluate(frame: pd.DataFrame, compiled: CompiledExpression) -> List[Any]:
    """
    Evaluate ``compiled`` over every row of ``frame``.

    Columns the expression names but the frame lacks evaluate as null.
    Returns one plain Python value per row.

    Raises:
        ExpressionError: The expression cannot be evaluated over this frame
    """
    frame = frame.copy()
    for name in compiled.names:
        if name not in frame.columns:
            frame[name] = pd.Series([None] * len(frame), index=frame.index, dtype=object)

    helpers = {
        name: value
        for name, value in {**FUNCTIONS, **CONSTANTS}.items()
        if name not in frame.columns
    }
    try:
        result = frame.eval(compiled.source, engine="python", resolvers=(helpers,))
    except (
        TypeError, ValueError, ArithmeticError, LookupError,
        AttributeError, NameError, NotImplementedError,
    ) as e:
        raise ExpressionError(str(e)) from e

    if isinstance(result, pd.DataFrame) or callable(result):
        raise ExpressionError(f"Expression {compiled.source!r} does not produce a value")
    if not isinstance(result, pd.Series):
        return [to_python(result)] * len(frame)
    if len(result) != len(frame):
        raise ExpressionError(f"Expression {compiled.source!r} produced {len(result)} values for {len(frame)} rows")
    return [to_python(value) for value in result.astype(object)]


def is_finite(value: Any) -> bool:
    return not isinstance(value, float) or math.isfinite(value)
