"""Domain records flowing through the pipeline.

All records are plain dataclasses so they can be checkpointed as JSON
(``as_dict`` / ``from_dict``).  Records are treated as immutable once merged
into session state: corrections produce new decision records instead of
mutating a classification.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, TypeVar

Verdict = Literal["approved", "flagged", "rejected"]
Severity = Literal["low", "medium", "high"]
Priority = Literal["low", "medium", "high", "critical"]
HITLStatus = Literal["pending", "decided"]
DecisionAction = Literal["approve", "modify", "reject", "escalate"]

VERDICTS: tuple[str, ...] = ("approved", "flagged", "rejected")
DECISION_ACTIONS: tuple[str, ...] = ("approve", "modify", "reject", "escalate")

_R = TypeVar("_R")


def utcnow_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _from_mapping(cls: type[_R], data: dict[str, Any]) -> _R:
    names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass(frozen=True)
class InputRecord:
    id: str
    vendor: str
    description: str
    amount: float = 0.0
    date: str = ""
    department: str | None = None
    cost_center: str | None = None
    po_number: str | None = None
    invoice_number: str | None = None
    raw_vendor: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InputRecord":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class Classification:
    record_id: str
    code: str
    title: str
    confidence: float
    reasoning: str
    segment: str | None = None
    family: str | None = None
    alternative_codes: list[dict[str, Any]] = field(default_factory=list)
    source: str = "model"
    classified_by: str = "classification-stage"
    classified_at: str = field(default_factory=utcnow_iso)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Classification":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class DimensionScore:
    name: str
    score: float
    weight: float
    reasoning: str = ""
    defaulted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DimensionScore":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class QAIssue:
    type: str
    severity: Severity
    message: str

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QAIssue":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class QAResult:
    record_id: str
    dimensions: list[DimensionScore]
    weighted_score: float
    verdict: Verdict
    issues: list[QAIssue] = field(default_factory=list)
    reported_issues: list[QAIssue] = field(default_factory=list)
    reasoning: str = ""
    evaluated_by: str = "qa-stage"
    evaluated_at: str = field(default_factory=utcnow_iso)

    @property
    def classification_id(self) -> str:
        # One classification per record id.
        return self.record_id

    def issue_types(self) -> set[str]:
        return {issue.type for issue in [*self.issues, *self.reported_issues]}

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QAResult":
        payload = dict(data)
        payload["dimensions"] = [DimensionScore.from_dict(d) for d in data.get("dimensions", [])]
        payload["issues"] = [QAIssue.from_dict(i) for i in data.get("issues", [])]
        payload["reported_issues"] = [QAIssue.from_dict(i) for i in data.get("reported_issues", [])]
        return _from_mapping(cls, payload)


@dataclass(frozen=True)
class HITLItem:
    id: str
    record_id: str
    reason: str
    priority: Priority
    status: HITLStatus = "pending"
    verdict: str | None = None
    confidence: float | None = None
    context: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    decided_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HITLItem":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class HITLDecision:
    item_id: str
    action: DecisionAction
    record_id: str = ""
    selected_code: str | None = None
    selected_title: str | None = None
    notes: str | None = None
    decided_by: str = "reviewer"
    decided_at: str = field(default_factory=utcnow_iso)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HITLDecision":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class ErrorRecord:
    stage: str
    code: str
    message: str
    recoverable: bool
    retry_count: int
    max_retries: int
    category: str = "unknown"
    record_id: str | None = None
    suggested_action: str = ""
    fallback_action: str | None = None
    occurred_at: str = field(default_factory=utcnow_iso)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorRecord":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class EnrichmentData:
    record_id: str
    company_type: str = "Other"
    industry: str = "Unknown"
    risk_level: str = "unknown"
    spend_type: str = "indirect"
    strategic_importance: str = "routine"
    consolidation_opportunity: bool = False
    insights: list[str] = field(default_factory=list)
    source: str = "model"
    enriched_at: str = field(default_factory=utcnow_iso)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnrichmentData":
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class StageTransition:
    from_stage: str
    to_stage: str
    reason: str = ""
    turn: int = 0
    at: str = field(default_factory=utcnow_iso)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageTransition":
        return _from_mapping(cls, data)
