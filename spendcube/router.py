"""Stage router: picks the next hop from the current session state.

``routing_decision`` is a pure function of the state; calling it twice on the
same state returns the same decision.  Ordering rule: classification before
QA, QA before human review, human review before enrichment.

``respond`` ends the turn: the orchestrator stores ``hitl`` (awaiting a
decision), ``error`` or ``complete`` as the session stage.  ``end`` means the
session is terminal and nothing runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from spendcube.hitl import effective_classifications, items_missing_review
from spendcube.models import ErrorRecord
from spendcube.state import SessionState

ANALYSIS_INTENT_RE = re.compile(r"analyz|analys|savings|risk|trend|insight|benchmark", re.IGNORECASE)
ENRICHMENT_INTENT_RE = re.compile(r"enrich", re.IGNORECASE)

TARGET_STAGE: dict[str, str] = {
    "classification": "classifying",
    "qa": "qa",
    "hitl": "hitl",
    "enrichment": "enriching",
    "analysis": "analyzing",
    "respond": "respond",
    "end": "end",
}


@dataclass(frozen=True)
class PipelineStatus:
    has_records: bool
    unclassified: tuple[str, ...]
    unvalidated: tuple[str, ...]
    missing_review: tuple[str, ...]
    pending_review: tuple[str, ...]
    needs_enrichment: bool
    analysis_requested: bool
    analysis_done: bool

    @property
    def fully_processed(self) -> bool:
        return (
            self.has_records
            and not self.unclassified
            and not self.unvalidated
            and not self.missing_review
            and not self.pending_review
        )

    @property
    def needs_analysis(self) -> bool:
        return self.analysis_requested and self.fully_processed and not self.analysis_done


@dataclass(frozen=True)
class RoutingDecision:
    target: str
    reason: str

    @property
    def stage(self) -> str:
        return TARGET_STAGE[self.target]


def is_analysis_intent(text: str) -> bool:
    return bool(ANALYSIS_INTENT_RE.search(text or ""))


def is_enrichment_intent(text: str) -> bool:
    return bool(ENRICHMENT_INTENT_RE.search(text or ""))


def pipeline_status(state: SessionState) -> PipelineStatus:
    failed_classification = state.failed_record_ids("classifying")
    failed_qa = state.failed_record_ids("qa")

    unclassified = tuple(
        rid
        for rid in state.input_records
        if rid not in state.classifications and rid not in failed_classification
    )
    unvalidated = tuple(
        rid for rid in state.classifications if rid not in state.qa_results and rid not in failed_qa
    )
    missing_review = tuple(items_missing_review(state))
    pending_review = tuple(item.record_id for item in state.pending_hitl_items())

    enrichment_requested = state.enrichment_requested or is_enrichment_intent(state.intent)
    resolved = not unclassified and not unvalidated and not missing_review and not pending_review
    needs_enrichment = False
    if enrichment_requested and resolved:
        failed_enrichment = state.failed_record_ids("enriching")
        needs_enrichment = any(
            rid not in state.enrichments and rid not in failed_enrichment
            for rid in effective_classifications(state)
        )

    return PipelineStatus(
        has_records=bool(state.input_records),
        unclassified=unclassified,
        unvalidated=unvalidated,
        missing_review=missing_review,
        pending_review=pending_review,
        needs_enrichment=needs_enrichment,
        analysis_requested=is_analysis_intent(state.intent),
        analysis_done=state.analysis is not None,
    )


def _stage_level_errors(state: SessionState) -> list[ErrorRecord]:
    return [e for e in state.errors if e.record_id is None]


def _after_review(status: PipelineStatus) -> RoutingDecision:
    if status.needs_enrichment:
        return RoutingDecision("enrichment", "resolved classifications need enrichment")
    if status.needs_analysis:
        return RoutingDecision("analysis", "batch fully processed; computing spend analysis")
    return RoutingDecision("respond", "processing complete; providing summary")


def _from_idle(status: PipelineStatus) -> RoutingDecision:
    if not status.has_records:
        return RoutingDecision("respond", "no records to process")
    if status.unclassified:
        return RoutingDecision("classification", f"{len(status.unclassified)} record(s) need classification")
    if status.unvalidated:
        return RoutingDecision("qa", f"{len(status.unvalidated)} classification(s) need QA")
    if status.missing_review or status.pending_review:
        return RoutingDecision("hitl", "items flagged for human review")
    return _after_review(status)


def routing_decision(state: SessionState) -> RoutingDecision:
    stage = state.stage
    if stage == "error":
        unrecoverable = [e for e in _stage_level_errors(state) if not e.recoverable]
        if unrecoverable:
            return RoutingDecision("end", f"unrecoverable error: {unrecoverable[-1].message}")
        return RoutingDecision("respond", "recoverable error; reporting to caller")
    if stage == "complete":
        return RoutingDecision("end", "session complete")

    status = pipeline_status(state)

    if stage == "idle":
        return _from_idle(status)

    if stage == "classifying":
        if status.unclassified:
            return RoutingDecision(
                "classification", f"{len(status.unclassified)} record(s) still need classification"
            )
        return _from_idle(status)

    if stage == "qa":
        if status.unvalidated:
            return RoutingDecision("qa", f"{len(status.unvalidated)} classification(s) still need QA")
        if status.missing_review:
            return RoutingDecision("hitl", f"{len(status.missing_review)} flagged item(s) need a review entry")
        if status.pending_review:
            return RoutingDecision("hitl", f"{len(status.pending_review)} item(s) awaiting review")
        return _after_review(status)

    if stage == "hitl":
        if status.missing_review:
            return RoutingDecision("hitl", f"{len(status.missing_review)} flagged item(s) need a review entry")
        if status.pending_review:
            return RoutingDecision(
                "respond", f"awaiting human decision on {len(status.pending_review)} item(s)"
            )
        return _after_review(status)

    if stage == "enriching":
        if status.needs_enrichment:
            return RoutingDecision("enrichment", "records still need enrichment")
        if status.needs_analysis:
            return RoutingDecision("analysis", "batch fully processed; computing spend analysis")
        return RoutingDecision("respond", "enrichment complete")

    if stage == "analyzing":
        return RoutingDecision("respond", "analysis complete")

    return RoutingDecision("end", f"unknown stage: {stage}")


def next_stage(state: SessionState) -> str:
    """Stage name of the next hop: classifying, qa, hitl, enriching, analyzing, respond or end."""
    return routing_decision(state).stage
