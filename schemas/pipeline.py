"""
Pydantic schemas for pipeline configuration and execution records.

TransformationStep and QualityRule are value objects stored as JSON on the
Pipeline row; they are validated here both at the API boundary and again by
the worker before a run starts.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, root_validator, validator

from models.base import JobStatus, PipelineMode, RunStatus


# ============================================================================
# Transformation Steps
# ============================================================================

STEP_TYPES = (
    "trim", "rename", "cast", "filter", "dedupe", "derive",
    "drop", "keep", "replace", "default_value",
)

CAST_TYPES = ("integer", "float", "string", "boolean", "timestamp")

FILTER_OPERATORS = (
    "eq", "neq", "gt", "gte", "lt", "lte",
    "contains", "not_contains", "in", "not_in", "is_null", "not_null",
)

OPERATOR_ALIASES = {
    "=": "eq", "==": "eq", "!=": "neq", "<>": "neq",
    ">": "gt", ">=": "gte", "<": "lt", "<=": "lte",
}


class TransformationStep(BaseModel):
    """
    One column-level operation. Only the fields relevant to ``type`` are used.

    Required fields per type:
        trim: column or columns (all string columns when both are empty)
        rename: column, new_name
        cast: column, target_type
        filter: column, operator (value for binary operators)
        dedupe: columns (optional, whole row when empty)
        derive: new_name, expression
        drop / keep: columns
        replace: column, pattern (replacement defaults to "")
        default_value: column, value
    """
    type: str
    column: Optional[str] = None
    columns: List[str] = Field(default_factory=list)
    new_name: Optional[str] = None
    target_type: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None
    expression: Optional[str] = None
    pattern: Optional[str] = None
    replacement: str = ""
    fail_fast: bool = False

    @validator("type")
    def validate_type(cls, v):
        if v not in STEP_TYPES:
            raise ValueError(f"type must be one of: {', '.join(STEP_TYPES)}")
        return v

    @validator("operator")
    def normalize_operator(cls, v):
        if v is None:
            return v
        v = OPERATOR_ALIASES.get(v.strip(), v.strip().lower())
        if v not in FILTER_OPERATORS:
            raise ValueError(f"operator must be one of: {', '.join(FILTER_OPERATORS)}")
        return v

    @validator("target_type")
    def validate_target_type(cls, v):
        if v is not None and v.lower() not in CAST_TYPES:
            raise ValueError(f"target_type must be one of: {', '.join(CAST_TYPES)}")
        return v.lower() if v else v

    @root_validator(skip_on_failure=True)
    def check_required_fields(cls, values):
        """Per-type required fields."""
        step_type = values.get("type")
        missing = []
        if step_type in ("rename", "cast", "filter", "replace", "default_value") and not values.get("column"):
            missing.append("column")
        if step_type in ("rename", "derive") and not values.get("new_name"):
            missing.append("new_name")
        if step_type == "cast" and not values.get("target_type"):
            missing.append("target_type")
        if step_type == "filter" and not values.get("operator"):
            missing.append("operator")
        if step_type == "derive" and not values.get("expression"):
            missing.append("expression")
        if step_type in ("drop", "keep") and not values.get("columns"):
            missing.append("columns")
        if step_type == "replace":
            pattern = values.get("pattern")
            if not pattern:
                missing.append("pattern")
            else:
                try:
                    re.compile(pattern)
                except re.error as e:
                    raise ValueError(f"invalid regex pattern: {e}")
        if missing:
            raise ValueError(f"{step_type} step requires: {', '.join(missing)}")
        return values

    def target_columns(self) -> List[str]:
        """Columns named by ``column`` and ``columns``, in that order."""
        names = [self.column] if self.column else []
        return names + [c for c in self.columns if c not in names]


# ============================================================================
# Quality Rules
# ============================================================================

RULE_TYPES = ("not_null", "unique", "range", "regex")


class QualityRule(BaseModel):
    """
    Declarative data quality rule. Severity is a static property of the rule.

    Parameters:
        range: min and/or max (a legacy "min,max" string in ``value`` is accepted)
        regex: pattern (or ``value``), matched with search semantics
    """
    column: str
    rule_type: str = Field(..., alias="type")
    severity: str = "FAIL"
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    value: Optional[str] = None
    description: Optional[str] = None

    class Config:
        populate_by_name = True

    @validator("rule_type")
    def validate_rule_type(cls, v):
        if v not in RULE_TYPES:
            raise ValueError(f"rule type must be one of: {', '.join(RULE_TYPES)}")
        return v

    @validator("severity")
    def validate_severity(cls, v):
        v = (v or "FAIL").upper()
        if v not in ("WARN", "FAIL"):
            raise ValueError("severity must be WARN or FAIL")
        return v

    @root_validator(skip_on_failure=True)
    def check_parameters(cls, values):
        rule_type = values.get("rule_type")
        if rule_type == "range":
            low, high = values.get("min"), values.get("max")
            if low is None and high is None:
                legacy = values.get("value")
                if not legacy or "," not in legacy:
                    raise ValueError("range rule requires min and/or max")
                raw_low, raw_high = [p.strip() for p in legacy.split(",", 1)]
                try:
                    values["min"] = float(raw_low) if raw_low else None
                    values["max"] = float(raw_high) if raw_high else None
                except ValueError:
                    raise ValueError(f"range bounds must be numeric: {legacy!r}")
        elif rule_type == "regex":
            pattern = values.get("pattern") or values.get("value")
            if not pattern:
                raise ValueError("regex rule requires pattern")
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex pattern: {e}")
            values["pattern"] = pattern
        return values


# ============================================================================
# Pipeline CRUD
# ============================================================================

class PipelineBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    workspace_id: str = "default"
    source_type: str
    source_config: Dict[str, Any] = Field(default_factory=dict)
    destination_type: str = "internal"
    destination_config: Optional[Dict[str, Any]] = None
    mode: PipelineMode = PipelineMode.ETL
    transformation_steps: List[TransformationStep] = Field(default_factory=list)
    quality_rules: List[QualityRule] = Field(default_factory=list)
    schedule_cron: Optional[str] = None
    is_active: bool = True

    @validator("source_config")
    def validate_source_config(cls, v):
        if not (v.get("query") or v.get("table")):
            raise ValueError("source_config requires 'query' or 'table'")
        return v


class PipelineCreate(PipelineBase):
    """Request body for creating a pipeline"""

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Active customers",
                "source_type": "postgres",
                "source_config": {"connection_id": "c0ffee00-0000-4000-8000-000000000001", "table": "customers"},
                "mode": "ETL",
                "transformation_steps": [
                    {"type": "trim", "column": "name"},
                    {"type": "filter", "column": "age", "operator": "gte", "value": 21},
                ],
                "quality_rules": [
                    {"column": "email", "type": "not_null", "severity": "FAIL"},
                ],
                "schedule_cron": "0 * * * *",
            }
        }


class PipelineUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    source_type: Optional[str] = None
    source_config: Optional[Dict[str, Any]] = None
    destination_type: Optional[str] = None
    destination_config: Optional[Dict[str, Any]] = None
    mode: Optional[PipelineMode] = None
    transformation_steps: Optional[List[TransformationStep]] = None
    quality_rules: Optional[List[QualityRule]] = None
    schedule_cron: Optional[str] = None
    is_active: Optional[bool] = None


class PipelineResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    workspace_id: str
    source_type: str
    source_config: Dict[str, Any]
    destination_type: str
    destination_config: Optional[Dict[str, Any]] = None
    mode: PipelineMode
    transformation_steps: List[Dict[str, Any]] = Field(default_factory=list)
    quality_rules: List[Dict[str, Any]] = Field(default_factory=list)
    schedule_cron: Optional[str] = None
    is_active: bool
    last_run_at: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


# ============================================================================
# Executions
# ============================================================================

class JobExecutionResponse(BaseModel):
    id: str
    pipeline_id: str
    status: JobStatus
    trigger: str
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    rows_processed: int = 0
    attempts: int = 0
    batch_id: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True
