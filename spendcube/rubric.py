"""Six-dimension weighted quality rubric for classifications.

The scoring math is pure: ``score_rubric`` maps (dimension scores, source
confidence) to a ``QAResult`` with no randomness, so the same inputs always
produce the same verdict and issue list.  Only ``evaluate_classification``
talks to the text-generation backend.

Verdict policy (applied in this order):
  1. base mapping: >= 75 approved, >= 50 flagged, otherwise rejected
  2. confidence < 50 caps the verdict at flagged (rejected stays rejected)
  3. approved with confidence < 70 is downgraded to flagged
A cap only ever lowers a verdict.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from spendcube.models import Classification, DimensionScore, InputRecord, QAIssue, QAResult
from spendcube.schemas import RubricOutput, parse_model_output

if TYPE_CHECKING:
    from spendcube.llm_provider import TextGenerator

logger = logging.getLogger(__name__)

APPROVED_THRESHOLD = 75.0
FLAGGED_THRESHOLD = 50.0
LOW_CONFIDENCE_CAP = 50.0
APPROVAL_MIN_CONFIDENCE = 70.0
ISSUE_THRESHOLD = 50.0
HIGH_SEVERITY_THRESHOLD = 30.0
DEFAULT_DIMENSION_SCORE = 50.0
MISSING_SCORE_REASONING = "Score not provided, defaulting to 50"

REPORTED_ISSUE_TYPES: tuple[str, ...] = (
    "confidence_low",
    "code_mismatch",
    "description_unclear",
    "amount_anomaly",
    "vendor_unknown",
)


@dataclass(frozen=True)
class RubricDimension:
    key: str
    name: str
    weight: float
    description: str


RUBRIC_DIMENSIONS: tuple[RubricDimension, ...] = (
    RubricDimension(
        "codeAccuracy", "Code Accuracy", 0.30, "Does the code correctly identify the product or service?"
    ),
    RubricDimension(
        "levelAppropriateness",
        "Level Appropriateness",
        0.15,
        "Is the code at the right hierarchy level (segment/family/class/commodity)?",
    ),
    RubricDimension(
        "confidenceCalibration",
        "Confidence Calibration",
        0.15,
        "Is the confidence score justified by the evidence?",
    ),
    RubricDimension(
        "descriptionMatch", "Description Match", 0.20, "Do description keywords align with the code title?"
    ),
    RubricDimension(
        "vendorConsistency",
        "Vendor Consistency",
        0.10,
        "Is the code consistent with what this vendor typically provides?",
    ),
    RubricDimension(
        "amountReasonableness",
        "Amount Reasonableness",
        0.10,
        "Is the amount reasonable for this type of product or service?",
    ),
)

DIMENSIONS_BY_KEY: dict[str, RubricDimension] = {d.key: d for d in RUBRIC_DIMENSIONS}

_VERDICT_RANK = {"rejected": 0, "flagged": 1, "approved": 2}


def total_weight() -> float:
    return sum(d.weight for d in RUBRIC_DIMENSIONS)


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def weighted_score(dimensions: Sequence[DimensionScore]) -> float:
    total = sum(d.score * d.weight for d in dimensions)
    return round(total, 9)


def base_verdict(score: float) -> str:
    if score >= APPROVED_THRESHOLD:
        return "approved"
    if score >= FLAGGED_THRESHOLD:
        return "flagged"
    return "rejected"


def _cap(verdict: str, ceiling: str) -> str:
    return verdict if _VERDICT_RANK[verdict] <= _VERDICT_RANK[ceiling] else ceiling


def determine_verdict(score: float, confidence: float) -> str:
    verdict = base_verdict(score)
    if confidence < LOW_CONFIDENCE_CAP:
        verdict = _cap(verdict, "flagged")
    if verdict == "approved" and confidence < APPROVAL_MIN_CONFIDENCE:
        verdict = "flagged"
    return verdict


def normalize_dimensions(raw: Mapping[str, tuple[float | None, str]]) -> list[DimensionScore]:
    """Build all six dimension scores in rubric order.

    ``raw`` maps dimension key to ``(score, reasoning)``; a missing key, a
    ``None`` score or a non-finite score is defaulted to 50 with a note
    instead of failing.
    """
    dims: list[DimensionScore] = []
    for dim in RUBRIC_DIMENSIONS:
        score, reasoning = raw.get(dim.key, (None, ""))
        if score is None or not math.isfinite(score):
            dims.append(
                DimensionScore(
                    name=dim.key,
                    score=DEFAULT_DIMENSION_SCORE,
                    weight=dim.weight,
                    reasoning=MISSING_SCORE_REASONING,
                    defaulted=True,
                )
            )
            continue
        dims.append(
            DimensionScore(name=dim.key, score=_clamp_score(score), weight=dim.weight, reasoning=reasoning)
        )
    return dims


def dimension_issues(dimensions: Sequence[DimensionScore]) -> list[QAIssue]:
    issues: list[QAIssue] = []
    for dim in dimensions:
        if dim.score >= ISSUE_THRESHOLD:
            continue
        label = DIMENSIONS_BY_KEY[dim.name].name if dim.name in DIMENSIONS_BY_KEY else dim.name
        issues.append(
            QAIssue(
                type=f"{dim.name}_low",
                severity="high" if dim.score < HIGH_SEVERITY_THRESHOLD else "medium",
                message=f"{label} scored {dim.score:g}: {dim.reasoning}".rstrip(": "),
            )
        )
    return issues


def score_rubric(
    *,
    record_id: str,
    dimensions: Sequence[DimensionScore],
    confidence: float,
    reported_issues: Sequence[QAIssue] = (),
    reasoning: str = "",
) -> QAResult:
    score = weighted_score(dimensions)
    base = base_verdict(score)
    verdict = determine_verdict(score, confidence)

    issues = dimension_issues(dimensions)
    if verdict != base:
        issues.append(
            QAIssue(
                type="confidence_low",
                severity="high" if confidence < LOW_CONFIDENCE_CAP else "medium",
                message=f"Confidence {confidence:g}% lowered verdict from {base} to {verdict}",
            )
        )

    if not reasoning:
        reasoning = f"Weighted score: {score:.1f}. " + ", ".join(f"{d.name}: {d.score:g}" for d in dimensions)

    return QAResult(
        record_id=record_id,
        dimensions=list(dimensions),
        weighted_score=score,
        verdict=verdict,  # type: ignore[arg-type]
        issues=issues,
        reported_issues=list(reported_issues),
        reasoning=reasoning,
    )


def rubric_from_output(output: RubricOutput) -> tuple[list[DimensionScore], list[QAIssue]]:
    raw: dict[str, tuple[float | None, str]] = {}
    for row in output.dimensions:
        if row.dimension in DIMENSIONS_BY_KEY and row.dimension not in raw:
            raw[row.dimension] = (row.score, row.reasoning)
    missing = [d.key for d in RUBRIC_DIMENSIONS if raw.get(d.key, (None, ""))[0] is None]
    if missing:
        logger.warning("rubric response missing dimensions %s, defaulting to 50", ",".join(missing))
    reported = [
        QAIssue(type=issue.type, severity=issue.severity, message=issue.message)
        for issue in output.issues
        if issue.type in REPORTED_ISSUE_TYPES
    ]
    return normalize_dimensions(raw), reported


def fallback_qa_result(classification: Classification, reason: str) -> QAResult:
    """QA result used when evaluation itself failed: every dimension at 50."""
    dims = normalize_dimensions({})
    result = score_rubric(
        record_id=classification.record_id,
        dimensions=dims,
        confidence=classification.confidence,
        reasoning=f"QA evaluation failed, routed to human review: {reason}",
    )
    return result


QA_SYSTEM_PROMPT = """You are a procurement QA judge. Evaluate a UNSPSC classification using a
six-dimension rubric and score EACH dimension from 0 to 100.

Dimensions and weights:
""" + "\n".join(f"- {d.key} ({int(d.weight * 100)}%): {d.description}" for d in RUBRIC_DIMENSIONS) + """

Respond with JSON only:
{"dimensions": [{"dimension": "<key>", "score": <0-100>, "reasoning": "<why>"}],
 "issues": [{"type": "<confidence_low|code_mismatch|description_unclear|amount_anomaly|vendor_unknown>",
             "severity": "low|medium|high", "message": "<text>"}],
 "reasoning": "<overall evaluation>"}"""


def build_qa_prompt(classification: Classification, record: InputRecord) -> str:
    lines = [
        "Evaluate this classification using the six-dimension rubric.",
        "",
        "## Record",
        f"- Vendor: {record.vendor}",
        f"- Description: {record.description}",
        f"- Amount: {record.amount:,.2f}",
    ]
    if record.department:
        lines.append(f"- Department: {record.department}")
    if record.date:
        lines.append(f"- Date: {record.date}")
    lines.extend(
        [
            "",
            "## Classification",
            f"- Code: {classification.code}",
            f"- Title: {classification.title}",
            f"- Segment: {classification.segment or 'N/A'}",
            f"- Family: {classification.family or 'N/A'}",
            f"- Confidence: {classification.confidence:g}%",
            f"- Reasoning: {classification.reasoning}",
        ]
    )
    return "\n".join(lines)


async def evaluate_classification(
    *,
    generator: "TextGenerator",
    classification: Classification,
    record: InputRecord,
) -> QAResult:
    """Score one classification.

    Upstream failures and unparseable responses propagate to the caller's
    retry loop; a parseable response with missing dimensions never fails.
    """
    text = await generator.generate(QA_SYSTEM_PROMPT, build_qa_prompt(classification, record))
    output = parse_model_output(text, RubricOutput)
    dims, reported = rubric_from_output(output)
    return score_rubric(
        record_id=classification.record_id,
        dimensions=dims,
        confidence=classification.confidence,
        reported_issues=reported,
        reasoning=output.reasoning,
    )
