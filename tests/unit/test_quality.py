"""
Unit tests for the data quality engine
"""

import pytest

from core.exceptions import ConfigurationError
from pipelines.quality.engine import validate_rows
from schemas.pipeline import QualityRule


class TestQualityRules:
    """Rule semantics"""

    def test_not_null_flags_null_and_empty(self):
        rows = [{"email": "a@x"}, {"email": None}, {"email": "  "}, {}]
        report = validate_rows(rows, [{"column": "email", "type": "not_null", "severity": "FAIL"}])

        assert [v.row_index for v in report.violations] == [1, 2, 3]
        assert report.fail_count == 3
        assert report.violations[0].message == "Column 'email' cannot be null/empty"

    def test_unique_ignores_nulls_and_flags_repeats(self):
        rows = [{"id": 1}, {"id": 2}, {"id": 1}, {"id": None}, {"id": None}]
        report = validate_rows(rows, [{"column": "id", "type": "unique", "severity": "WARN"}])

        assert report.total_violations == 1
        assert report.violations[0].row_index == 2
        assert report.violations[0].message == "Duplicate value '1' in column 'id'"

    def test_range_min_max(self):
        rows = [{"age": 5}, {"age": 30}, {"age": 130}, {"age": "abc"}, {"age": None}]
        report = validate_rows(rows, [{"column": "age", "type": "range", "min": 18, "max": 120}])

        messages = [v.message for v in report.violations]
        assert messages == [
            "Value 5 is below minimum 18",
            "Value 130 is above maximum 120",
            "Value 'abc' in column 'age' is not numeric",
        ]

    def test_range_legacy_value(self):
        rule = QualityRule(column="age", type="range", value="10,100")
        assert rule.min == 10 and rule.max == 100

    def test_regex_search_semantics(self):
        rows = [{"email": "ada@example.com"}, {"email": "not-an-email"}]
        report = validate_rows(rows, [{"column": "email", "type": "regex", "pattern": r"@\w+\."}])

        assert report.total_violations == 1
        assert report.violations[0].row_index == 1

    def test_invalid_rule_raises(self):
        with pytest.raises(ConfigurationError):
            validate_rows([{}], [{"column": "x", "type": "regex", "pattern": "("}])


class TestQualityReport:
    """Severity classification and caps"""

    def test_warn_only_keeps_all_rows(self):
        rows = [{"a": None}, {"a": 1}]
        report = validate_rows(rows, [{"column": "a", "type": "not_null", "severity": "WARN"}])

        assert report.warn_count == 1
        assert report.fail_count == 0
        assert not report.has_failures
        assert report.valid_rows == rows

    def test_valid_rows_exclude_fail_violations(self):
        rows = [{"a": None, "b": None}, {"a": 1, "b": None}]
        report = validate_rows(rows, [
            {"column": "a", "type": "not_null", "severity": "FAIL"},
            {"column": "b", "type": "not_null", "severity": "WARN"},
        ])

        assert report.valid_rows == [{"a": 1, "b": None}]
        assert report.total_violations == 3
        assert report.fail_count == 1
        assert report.warn_count == 2

    def test_detailed_violations_are_capped(self):
        rows = [{"a": None} for _ in range(10)]
        report = validate_rows(rows, [{"column": "a", "type": "not_null"}], max_detailed=4)

        assert len(report.violations) == 4
        assert report.omitted_count == 6
        assert report.total_violations == 10

    def test_no_rules(self):
        report = validate_rows([{"a": 1}], [])
        assert report.total_violations == 0
        assert report.valid_rows == [{"a": 1}]
