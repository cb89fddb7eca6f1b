"""
Data quality engine.

Validates a record batch against declarative rules and classifies every
violation by the rule's severity. Violations are data, never exceptions:
deciding whether a FAIL violation aborts the run is the worker's job.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import json
import logging
import re

from pydantic import ValidationError

from core.config import settings
from core.exceptions import ConfigurationError
from schemas.pipeline import QualityRule

logger = logging.getLogger(__name__)

RuleLike = Union[QualityRule, Dict[str, Any]]


@dataclass
class Violation:
    row_index: int
    column: str
    rule_type: str
    value: Any
    message: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QualityReport:
    """
    Outcome of one validation pass.

    Attributes:
        valid_rows: Rows carrying no FAIL-severity violation, in input order
        violations: Detailed violations, capped at ``max_detailed``
        total_violations: All violations, including the omitted ones
        fail_count / warn_count: Totals per severity
        omitted_count: Violations counted but not detailed
    """
    valid_rows: List[Dict[str, Any]] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)
    total_violations: int = 0
    fail_count: int = 0
    warn_count: int = 0
    omitted_count: int = 0

    @property
    def has_failures(self) -> bool:
        return self.fail_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid_rows": len(self.valid_rows),
            "violations": [v.to_dict() for v in self.violations],
            "total_violations": self.total_violations,
            "fail_count": self.fail_count,
            "warn_count": self.warn_count,
            "omitted_count": self.omitted_count,
        }


def parse_rules(rules: Optional[Iterable[RuleLike]]) -> List[QualityRule]:
    """Validate raw rule dicts; invalid rules raise ConfigurationError."""
    parsed = []
    for index, rule in enumerate(rules or []):
        if isinstance(rule, QualityRule):
            parsed.append(rule)
            continue
        try:
            parsed.append(QualityRule(**rule))
        except (ValidationError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid quality rule #{index}: {e}",
                context={"rule_index": index},
                original_exception=e,
            )
    return parsed


def _is_null(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


class _RuleChecker:
    """Stateful per-rule checker; ``unique`` remembers values seen so far."""

    def __init__(self, rule: QualityRule):
        self.rule = rule
        self.seen = set()
        self.regex = re.compile(rule.pattern) if rule.rule_type == "regex" else None

    def check(self, row: Dict[str, Any]) -> Optional[str]:
        """Violation message for ``row``, or None when the row passes."""
        rule = self.rule
        value = row.get(rule.column)

        if rule.rule_type == "not_null":
            if _is_null(value):
                return f"Column '{rule.column}' cannot be null/empty"
            return None

        # remaining rule types ignore nulls; not_null covers them
        if value is None:
            return None

        if rule.rule_type == "unique":
            key = json.dumps(value, sort_keys=True, default=str)
            if key in self.seen:
                return f"Duplicate value '{value}' in column '{rule.column}'"
            self.seen.add(key)
            return None

        if rule.rule_type == "range":
            number = _number(value)
            if number is None:
                return f"Value '{value}' in column '{rule.column}' is not numeric"
            if rule.min is not None and number < rule.min:
                return f"Value {value} is below minimum {_format_bound(rule.min)}"
            if rule.max is not None and number > rule.max:
                return f"Value {value} is above maximum {_format_bound(rule.max)}"
            return None

        if rule.rule_type == "regex":
            if not self.regex.search(str(value)):
                return f"Value '{value}' does not match pattern {rule.pattern}"
            return None

        return None


def validate_rows(
    rows: Sequence[Dict[str, Any]],
    rules: Optional[Iterable[RuleLike]],
    max_detailed: Optional[int] = None,
) -> QualityReport:
    """
    Validate ``rows`` against ``rules``.

    Args:
        rows: Record batch (not mutated)
        rules: QualityRule models or raw rule dicts
        max_detailed: Cap on detailed violations (QUALITY_MAX_DETAILED_VIOLATIONS)

    Returns:
        QualityReport; never raises for violations

    Raises:
        ConfigurationError: A rule is invalid
    """
    checkers = [_RuleChecker(rule) for rule in parse_rules(rules)]
    limit = settings.QUALITY_MAX_DETAILED_VIOLATIONS if max_detailed is None else max_detailed
    report = QualityReport()

    for index, row in enumerate(rows):
        row_failed = False
        for checker in checkers:
            message = checker.check(row)
            if message is None:
                continue

            severity = checker.rule.severity
            report.total_violations += 1
            if severity == "FAIL":
                report.fail_count += 1
                row_failed = True
            else:
                report.warn_count += 1

            if len(report.violations) < limit:
                report.violations.append(Violation(
                    row_index=index,
                    column=checker.rule.column,
                    rule_type=checker.rule.rule_type,
                    value=row.get(checker.rule.column),
                    message=message,
                    severity=severity,
                ))
            else:
                report.omitted_count += 1

        if not row_failed:
            report.valid_rows.append(row)

    if report.total_violations:
        logger.debug(
            f"Quality check: {report.total_violations} violations "
            f"({report.fail_count} FAIL, {report.warn_count} WARN) over {len(rows)} rows"
        )
    return report
