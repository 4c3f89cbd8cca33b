"""Stage functions of the pipeline.

Each stage reads a ``SessionState`` and returns the updates to fold into it;
none of them mutates state.  Item work runs through the ``BatchExecutor``
and only plain results come back to this serial path.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from spendcube import taxonomy
from spendcube.cache import ClassificationCache
from spendcube.errors import ResponseParseError
from spendcube.events import EventNotifier
from spendcube.executor import (
    BatchExecutor,
    BatchResult,
    TaxonomySearchFn,
    classify_record,
)
from spendcube.hitl import (
    create_hitl_item,
    effective_classifications,
    items_missing_review,
    record_status,
)
from spendcube.llm_provider import TextGenerator
from spendcube.models import Classification, EnrichmentData, ErrorRecord, InputRecord, QAResult, utcnow_iso
from spendcube.normalization import normalize_record
from spendcube.router import pipeline_status
from spendcube.rubric import evaluate_classification, fallback_qa_result
from spendcube.schemas import EnrichmentOutput, parse_model_output
from spendcube.settings import PipelineSettings
from spendcube.state import SessionState

logger = logging.getLogger(__name__)

CONCENTRATION_SHARE = 20.0
SAVINGS_RATE = 0.12

_DIRECT_SEGMENT_RE = re.compile(r"raw material|manufacturing|production", re.IGNORECASE)
_CAPEX_SEGMENT_RE = re.compile(r"equipment|machinery|furniture", re.IGNORECASE)


@dataclass
class StageContext:
    executor: BatchExecutor
    generator: TextGenerator
    cache: ClassificationCache
    settings: PipelineSettings
    notifier: EventNotifier = field(default_factory=EventNotifier)
    taxonomy_search: TaxonomySearchFn = taxonomy.search
    cancel_event: asyncio.Event | None = None


@dataclass
class StageOutcome:
    updates: dict[str, Any]
    cancelled: bool = False
    stopped_by: ErrorRecord | None = None


def _progress(ctx: StageContext, *, session_id: str, stage: str) -> Callable[[dict[str, Any]], None]:
    def emit(payload: dict[str, Any]) -> None:
        ctx.notifier.on_progress({**payload, "session_id": session_id, "stage": stage})

    return emit


def _stopped_by(batch: BatchResult[Any]) -> ErrorRecord | None:
    return batch.errors[0] if batch.stopped and batch.errors else None


def _retry_updates(state: SessionState, stage: str, batch: BatchResult[Any]) -> dict[str, int]:
    updates: dict[str, int] = {}
    for item_id, count in batch.retry_counts.items():
        key = f"{stage}:{item_id}"
        updates[key] = state.retry_counts.get(key, 0) + count
    return updates


async def classification_stage(state: SessionState, ctx: StageContext) -> StageOutcome:
    status = pipeline_status(state)
    records = [state.input_records[rid] for rid in status.unclassified]
    # Records are cleansed once; raw_vendor marks a record as already normalized.
    normalized = [r if r.raw_vendor is not None else normalize_record(r) for r in records]

    metrics = ctx.executor.start_metrics("classification", len(normalized))
    generator = ctx.executor.governed(ctx.generator, cancel_event=ctx.cancel_event, metrics=metrics)

    async def classify(record: InputRecord) -> Classification:
        return await classify_record(
            record,
            generator=generator,
            cache=ctx.cache,
            taxonomy_search=ctx.taxonomy_search,
            metrics=metrics,
        )

    batch = await ctx.executor.run_batch(
        normalized,
        classify,
        config=ctx.settings.classification_batch,
        stage="classifying",
        item_id=lambda r: r.id,
        on_progress=_progress(ctx, session_id=state.session_id, stage="classifying"),
        cancel_event=ctx.cancel_event,
        continue_on_error=ctx.settings.continue_on_error,
        metrics=metrics,
    )
    if metrics is not None and ctx.executor.tracker is not None:
        ctx.executor.tracker.end(metrics)

    return StageOutcome(
        updates={
            "input_records": {r.id: r for r in normalized},
            "classifications": {c.record_id: c for c in batch.results},
            "errors": list(batch.errors),
            "retry_counts": _retry_updates(state, "classifying", batch),
        },
        cancelled=batch.cancelled,
        stopped_by=_stopped_by(batch),
    )


async def qa_stage(state: SessionState, ctx: StageContext) -> StageOutcome:
    status = pipeline_status(state)
    pairs = [(state.classifications[rid], state.input_records[rid]) for rid in status.unvalidated]

    metrics = ctx.executor.start_metrics("qa", len(pairs))
    generator = ctx.executor.governed(ctx.generator, cancel_event=ctx.cancel_event, metrics=metrics)

    async def evaluate(pair: tuple[Classification, InputRecord]) -> QAResult:
        classification, record = pair
        return await evaluate_classification(generator=generator, classification=classification, record=record)

    batch = await ctx.executor.run_batch(
        pairs,
        evaluate,
        config=ctx.settings.qa_batch,
        stage="qa",
        item_id=lambda pair: pair[0].record_id,
        on_progress=_progress(ctx, session_id=state.session_id, stage="qa"),
        cancel_event=ctx.cancel_event,
        continue_on_error=ctx.settings.continue_on_error,
        metrics=metrics,
    )
    if metrics is not None and ctx.executor.tracker is not None:
        ctx.executor.tracker.end(metrics)

    qa_results = {q.record_id: q for q in batch.results}
    for error in batch.errors:
        classification = state.classifications.get(error.record_id or "")
        if classification is None:
            continue
        logger.warning("record=%s QA failed (%s), sending to human review", error.record_id, error.category)
        qa_results[classification.record_id] = fallback_qa_result(classification, error.message)

    return StageOutcome(
        updates={
            "qa_results": qa_results,
            "errors": list(batch.errors),
            "retry_counts": _retry_updates(state, "qa", batch),
        },
        cancelled=batch.cancelled,
        stopped_by=_stopped_by(batch),
    )


async def hitl_stage(state: SessionState, ctx: StageContext) -> StageOutcome:
    created = {}
    for record_id in items_missing_review(state):
        item = create_hitl_item(
            record=state.input_records[record_id],
            classification=state.classifications[record_id],
            qa_result=state.qa_results[record_id],
        )
        created[item.id] = item
    for item in created.values():
        logger.info("hitl item created id=%s reason=%s priority=%s", item.id, item.reason, item.priority)
        ctx.notifier.on_hitl_created(item)
    return StageOutcome(updates={"hitl_queue": created})


def infer_spend_type(segment: str | None) -> str:
    if not segment:
        return "indirect"
    if _DIRECT_SEGMENT_RE.search(segment):
        return "direct"
    if _CAPEX_SEGMENT_RE.search(segment):
        return "capex"
    return "indirect"


def infer_strategic_importance(amount: float) -> str:
    if amount >= 100000:
        return "critical"
    if amount >= 25000:
        return "important"
    if amount >= 5000:
        return "routine"
    return "tactical"


def rule_based_enrichment(record: InputRecord, classification: Classification, reason: str = "") -> EnrichmentData:
    insights = [f"Inferred from segment '{classification.segment or 'unknown'}' and amount."]
    if reason:
        insights.append(f"Model enrichment unavailable: {reason}")
    return EnrichmentData(
        record_id=record.id,
        industry=classification.segment or "Unknown",
        risk_level="unknown",
        spend_type=infer_spend_type(classification.segment),
        strategic_importance=infer_strategic_importance(record.amount),
        insights=insights,
        source="rules",
    )


ENRICHMENT_SYSTEM_PROMPT = """You are a procurement spend enrichment analyst. Given a vendor and its
classified spend, describe the vendor and the spend.

Respond with JSON only:
{"company_type": "<Public|Private|Government|Non-profit|Other>", "industry": "<industry>",
 "risk_level": "low|medium|high|unknown", "spend_type": "direct|indirect|capex|opex",
 "strategic_importance": "critical|important|routine|tactical",
 "consolidation_opportunity": true|false, "insights": ["<insight>"]}"""


def build_enrichment_prompt(record: InputRecord, classification: Classification) -> str:
    return "\n".join(
        [
            "Enrich this classified spend record.",
            "",
            f"- Vendor: {record.vendor}",
            f"- Description: {record.description}",
            f"- Amount: {record.amount:,.2f}",
            f"- Code: {classification.code}",
            f"- Title: {classification.title}",
            f"- Segment: {classification.segment or 'Unknown'}",
        ]
    )


async def enrich_record(
    record: InputRecord,
    classification: Classification,
    *,
    generator: TextGenerator,
) -> EnrichmentData:
    text = await generator.generate(ENRICHMENT_SYSTEM_PROMPT, build_enrichment_prompt(record, classification))
    try:
        output = parse_model_output(text, EnrichmentOutput)
    except ResponseParseError as exc:
        logger.warning("record=%s enrichment parse failed, using rules: %s", record.id, exc)
        return rule_based_enrichment(record, classification, str(exc))
    return EnrichmentData(record_id=record.id, **output.model_dump())


async def enrichment_stage(state: SessionState, ctx: StageContext) -> StageOutcome:
    failed = state.failed_record_ids("enriching")
    effective = effective_classifications(state)
    pairs = [
        (state.input_records[rid], classification)
        for rid, classification in effective.items()
        if rid not in state.enrichments and rid not in failed
    ]

    metrics = ctx.executor.start_metrics("enrichment", len(pairs))
    generator = ctx.executor.governed(ctx.generator, cancel_event=ctx.cancel_event, metrics=metrics)

    async def enrich(pair: tuple[InputRecord, Classification]) -> EnrichmentData:
        record, classification = pair
        return await enrich_record(record, classification, generator=generator)

    batch = await ctx.executor.run_batch(
        pairs,
        enrich,
        config=ctx.settings.enrichment_batch,
        stage="enriching",
        item_id=lambda pair: pair[0].id,
        on_progress=_progress(ctx, session_id=state.session_id, stage="enriching"),
        cancel_event=ctx.cancel_event,
        continue_on_error=ctx.settings.continue_on_error,
        metrics=metrics,
    )
    if metrics is not None and ctx.executor.tracker is not None:
        ctx.executor.tracker.end(metrics)

    enrichments = {e.record_id: e for e in batch.results}
    for error in batch.errors:
        rid = error.record_id or ""
        if rid in effective:
            enrichments[rid] = rule_based_enrichment(state.input_records[rid], effective[rid], error.message)

    return StageOutcome(
        updates={
            "enrichments": enrichments,
            "errors": list(batch.errors),
            "retry_counts": _retry_updates(state, "enriching", batch),
        },
        cancelled=batch.cancelled,
        stopped_by=_stopped_by(batch),
    )


def analysis_kind(intent: str) -> str:
    text = (intent or "").lower()
    if "saving" in text:
        return "savings"
    if "risk" in text:
        return "risk"
    if "trend" in text:
        return "trend"
    return "overview"


def spend_analysis(state: SessionState) -> dict[str, Any]:
    """Deterministic spend summary over the resolved records."""
    effective = effective_classifications(state)
    records = list(state.input_records.values())
    total_spend = round(sum(r.amount for r in records), 2)

    by_vendor: dict[str, float] = defaultdict(float)
    by_category: dict[str, float] = defaultdict(float)
    for record in records:
        by_vendor[record.vendor or "Unknown"] += record.amount
        classification = effective.get(record.id)
        by_category[classification.title if classification else "Unclassified"] += record.amount

    def ranked(values: dict[str, float]) -> dict[str, float]:
        return {k: round(v, 2) for k, v in sorted(values.items(), key=lambda kv: (-kv[1], kv[0]))}

    vendors = ranked(by_vendor)
    top_vendor = next(iter(vendors), None)

    def share(amount: float) -> float:
        return round(amount / total_spend * 100, 1) if total_spend else 0.0

    statuses = [record_status(state, r.id) for r in records]
    kind = analysis_kind(state.intent)

    summary: dict[str, Any] = {
        "type": kind,
        "record_count": len(records),
        "vendor_count": len(vendors),
        "total_spend": total_spend,
        "spend_by_category": ranked(by_category),
        "spend_by_vendor": dict(list(vendors.items())[:10]),
        "top_vendor": top_vendor,
        "top_vendor_share": share(vendors[top_vendor]) if top_vendor else 0.0,
        "high_concentration_vendors": [v for v, amount in vendors.items() if share(amount) > CONCENTRATION_SHARE],
        "classification_coverage": round(len(effective) / len(records) * 100, 1) if records else 0.0,
        "items_needing_review": sum(1 for s in statuses if s in {"pending_review", "escalated"}),
        "analyzed_at": utcnow_iso(),
    }
    if kind == "savings":
        summary["estimated_savings"] = round(total_spend * SAVINGS_RATE, 2)
    return summary


async def analysis_stage(state: SessionState, ctx: StageContext) -> StageOutcome:
    return StageOutcome(updates={"analysis": spend_analysis(state)})


STAGE_HANDLERS = {
    "classification": classification_stage,
    "qa": qa_stage,
    "hitl": hitl_stage,
    "enrichment": enrichment_stage,
    "analysis": analysis_stage,
}
