from __future__ import annotations

import json
import math
import re
from typing import Any, Literal, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from spendcube.errors import ResponseParseError

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

M = TypeVar("M", bound=BaseModel)


class _ModelOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AlternativeCode(_ModelOutput):
    code: str = Field(validation_alias=AliasChoices("code", "unspscCode", "unspsc_code"))
    title: str = Field(default="", validation_alias=AliasChoices("title", "unspscTitle", "unspsc_title"))
    confidence: float | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _finite_confidence(cls, value: Any) -> float | None:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None


class ClassificationOutput(_ModelOutput):
    code: str = Field(min_length=1, validation_alias=AliasChoices("code", "unspscCode", "unspsc_code"))
    title: str = Field(default="", validation_alias=AliasChoices("title", "unspscTitle", "unspsc_title"))
    confidence: float = 50.0
    reasoning: str = ""
    segment: str | None = None
    family: str | None = None
    alternative_codes: list[AlternativeCode] = Field(
        default_factory=list,
        validation_alias=AliasChoices("alternative_codes", "alternativeCodes"),
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 50.0
        if not math.isfinite(number):
            return 50.0
        return max(0.0, min(100.0, number))

    @field_validator("code", mode="before")
    @classmethod
    def _code_as_text(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class ReportedIssue(_ModelOutput):
    type: str
    severity: Literal["low", "medium", "high"] = "medium"
    message: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _known_severity(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"low", "medium", "high"} else "medium"


class RubricDimensionOutput(_ModelOutput):
    dimension: str = Field(validation_alias=AliasChoices("dimension", "name", "key"))
    score: float | None = None
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _numeric_score(cls, value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None


class RubricOutput(_ModelOutput):
    dimensions: list[RubricDimensionOutput] = Field(default_factory=list)
    issues: list[ReportedIssue] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("dimensions", mode="before")
    @classmethod
    def _dimensions_from_mapping(cls, value: Any) -> Any:
        # {"codeAccuracy": {"score": 80, "reasoning": "..."}} or {"codeAccuracy": 80}
        if isinstance(value, dict):
            rows = []
            for key, item in value.items():
                if isinstance(item, dict):
                    rows.append({"dimension": key, **item})
                else:
                    rows.append({"dimension": key, "score": item})
            return rows
        return value


class EnrichmentOutput(_ModelOutput):
    company_type: str = Field(default="Other", validation_alias=AliasChoices("company_type", "companyType"))
    industry: str = "Unknown"
    risk_level: Literal["low", "medium", "high", "unknown"] = Field(
        default="unknown", validation_alias=AliasChoices("risk_level", "riskLevel")
    )
    spend_type: Literal["direct", "indirect", "capex", "opex"] = Field(
        default="indirect", validation_alias=AliasChoices("spend_type", "spendType")
    )
    strategic_importance: Literal["critical", "important", "routine", "tactical"] = Field(
        default="routine", validation_alias=AliasChoices("strategic_importance", "strategicImportance")
    )
    consolidation_opportunity: bool = Field(
        default=False,
        validation_alias=AliasChoices("consolidation_opportunity", "consolidationOpportunity"),
    )
    insights: list[str] = Field(default_factory=list)


def extract_json_object(text: str) -> dict[str, Any]:
    match = _JSON_OBJECT_RE.search(text or "")
    if match is None:
        raise ResponseParseError("No JSON object found in model response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"JSON parse error in model response: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ResponseParseError("JSON parse error: model response is not an object")
    return payload


def parse_model_output(text: str, model_cls: type[M]) -> M:
    payload = extract_json_object(text)
    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        raise ResponseParseError(
            f"schema validation failed for {model_cls.__name__}: {exc.error_count()} errors"
        ) from exc


class RecordPayload(BaseModel):
    id: str = Field(min_length=1)
    vendor: str = ""
    description: str = ""
    amount: float | str = 0.0
    date: str = ""
    department: str | None = None
    cost_center: str | None = None
    po_number: str | None = None
    invoice_number: str | None = None


class SubmitRecordsRequest(BaseModel):
    records: list[RecordPayload] = Field(default_factory=list)
    intent: str = ""
    enrich: bool = False


class DecisionRequest(BaseModel):
    item_id: str = Field(min_length=1)
    action: Literal["approve", "modify", "reject", "escalate"]
    selected_code: str | None = None
    selected_title: str | None = None
    notes: str | None = None
    decided_by: str = "reviewer"


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
