"""Human review queue: item creation, decision validation, effective view.

Each HITL item moves ``pending -> decided`` exactly once.  Decisions never
mutate the stored classification; ``effective_classifications`` applies them
on read:

  - approve:  classification kept as is
  - modify:   replacement code/title at confidence 100
  - reject:   record reported as ``unclassified``; downstream stages skip it
  - escalate: classification kept, record marked ``escalated``
"""

from __future__ import annotations

import dataclasses
from collections import Counter
from typing import Any

from spendcube.models import (
    DECISION_ACTIONS,
    Classification,
    HITLDecision,
    HITLItem,
    InputRecord,
    QAResult,
    utcnow_iso,
)
from spendcube.state import SessionState

LOW_CONFIDENCE = 50.0
REVIEW_CONFIDENCE = 70.0
HIGH_VALUE_AMOUNT = 100000.0

_PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def hitl_item_id(record_id: str) -> str:
    return f"hitl_{record_id}"


def needs_review(qa_result: QAResult, classification: Classification) -> bool:
    return qa_result.verdict in {"flagged", "rejected"} or classification.confidence < LOW_CONFIDENCE


def _raise_priority(current: str, floor: str) -> str:
    return floor if _PRIORITY_RANK[floor] > _PRIORITY_RANK[current] else current


def review_reason_and_priority(
    *,
    record: InputRecord,
    classification: Classification,
    qa_result: QAResult,
) -> tuple[str, str]:
    reason = "qa_flagged"
    priority = "medium"

    if qa_result.verdict == "rejected":
        reason, priority = "qa_rejected", "high"
    elif classification.confidence < LOW_CONFIDENCE:
        reason, priority = "low_confidence", "high"
    elif classification.confidence < REVIEW_CONFIDENCE:
        reason, priority = "low_confidence", "medium"

    issue_types = qa_result.issue_types()
    if "amount_anomaly" in issue_types:
        reason, priority = "amount_anomaly", "high"
    elif "vendor_unknown" in issue_types:
        reason = "vendor_anomaly"

    if record.amount >= HIGH_VALUE_AMOUNT:
        priority = _raise_priority(priority, "critical")
    return reason, priority


def create_hitl_item(
    *,
    record: InputRecord,
    classification: Classification,
    qa_result: QAResult,
) -> HITLItem:
    reason, priority = review_reason_and_priority(
        record=record, classification=classification, qa_result=qa_result
    )
    return HITLItem(
        id=hitl_item_id(record.id),
        record_id=record.id,
        reason=reason,
        priority=priority,  # type: ignore[arg-type]
        verdict=qa_result.verdict,
        confidence=classification.confidence,
        context={
            "vendor": record.vendor,
            "description": record.description,
            "amount": record.amount,
            "code": classification.code,
            "title": classification.title,
            "weighted_score": qa_result.weighted_score,
            "issues": [i.as_dict() for i in [*qa_result.issues, *qa_result.reported_issues]],
            "suggested_codes": list(classification.alternative_codes),
        },
    )


def items_missing_review(state: SessionState) -> list[str]:
    """Record ids whose QA result needs review but have no HITL item yet."""
    have_item = {item.record_id for item in state.hitl_queue.values()}
    missing: list[str] = []
    for record_id, qa_result in state.qa_results.items():
        classification = state.classifications.get(record_id)
        if classification is None or record_id in have_item:
            continue
        if needs_review(qa_result, classification):
            missing.append(record_id)
    return missing


def validate_decision(decision: HITLDecision) -> list[str]:
    errors: list[str] = []
    if not decision.item_id:
        errors.append("item_id is required")
    if decision.action not in DECISION_ACTIONS:
        errors.append("action must be one of: approve, modify, reject, escalate")
    if decision.action == "modify":
        if not (decision.selected_code or "").strip():
            errors.append("selected_code is required for modify action")
        if not (decision.selected_title or "").strip():
            errors.append("selected_title is required for modify action")
    return errors


def apply_decision(state: SessionState, decision: HITLDecision) -> dict[str, Any]:
    """State updates that record ``decision`` against its pending item.

    The caller validates the decision and checks the item is pending.
    """
    item = state.hitl_queue[decision.item_id]
    decided_at = decision.decided_at or utcnow_iso()
    recorded = dataclasses.replace(decision, record_id=item.record_id, decided_at=decided_at)
    decided_item = dataclasses.replace(item, status="decided", decided_at=decided_at)
    return {
        "hitl_queue": {item.id: decided_item},
        "hitl_decisions": [recorded],
    }


def decisions_by_record(state: SessionState) -> dict[str, HITLDecision]:
    return {d.record_id: d for d in state.hitl_decisions if d.record_id}


def effective_classifications(state: SessionState) -> dict[str, Classification]:
    decisions = decisions_by_record(state)
    effective: dict[str, Classification] = {}
    for record_id, classification in state.classifications.items():
        decision = decisions.get(record_id)
        if decision is None or decision.action in {"approve", "escalate"}:
            effective[record_id] = classification
        elif decision.action == "modify":
            effective[record_id] = dataclasses.replace(
                classification,
                code=str(decision.selected_code),
                title=str(decision.selected_title),
                confidence=100.0,
                reasoning=decision.notes or f"Human override by {decision.decided_by}",
                source="human",
                classified_by=f"human:{decision.decided_by}",
                classified_at=decision.decided_at,
            )
        # reject: no effective classification
    return effective


def record_status(state: SessionState, record_id: str) -> str:
    decision = decisions_by_record(state).get(record_id)
    if decision is not None:
        return {
            "approve": "classified",
            "modify": "corrected",
            "reject": "unclassified",
            "escalate": "escalated",
        }[decision.action]
    item = state.hitl_queue.get(hitl_item_id(record_id))
    if item is not None and item.status == "pending":
        return "pending_review"
    if record_id in state.classifications:
        return "classified" if record_id in state.qa_results else "awaiting_qa"
    if record_id in state.failed_record_ids("classifying"):
        return "failed"
    return "pending"


def final_records(state: SessionState) -> list[dict[str, Any]]:
    effective = effective_classifications(state)
    rows: list[dict[str, Any]] = []
    for record_id, record in state.input_records.items():
        classification = effective.get(record_id)
        qa_result = state.qa_results.get(record_id)
        enrichment = state.enrichments.get(record_id)
        rows.append(
            {
                "record": record.as_dict(),
                "status": record_status(state, record_id),
                "code": classification.code if classification else None,
                "title": classification.title if classification else None,
                "confidence": classification.confidence if classification else None,
                "verdict": qa_result.verdict if qa_result else None,
                "weighted_score": qa_result.weighted_score if qa_result else None,
                "enrichment": enrichment.as_dict() if enrichment else None,
            }
        )
    return rows


def hitl_queue_stats(state: SessionState) -> dict[str, Any]:
    actions = {d.item_id: d.action for d in state.hitl_decisions}
    counts = Counter(actions.values())
    items = list(state.hitl_queue.values())
    return {
        "total": len(items),
        "pending": sum(1 for item in items if item.status == "pending"),
        "approved": counts.get("approve", 0),
        "modified": counts.get("modify", 0),
        "rejected": counts.get("reject", 0),
        "escalated": counts.get("escalate", 0),
        "by_reason": dict(Counter(item.reason for item in items)),
        "by_priority": dict(Counter(item.priority for item in items)),
    }
