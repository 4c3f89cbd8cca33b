"""Bounded-concurrency batch execution and the cache-first classifier.

``BatchExecutor.run_batch`` splits items into chunks of ``batch_size`` and
runs up to ``max_concurrency`` chunks at once (one wave); every item of a
chunk runs concurrently.  Wave N+1 starts only after wave N has finished,
with ``inter_batch_delay_ms`` in between.  Each item goes through
``with_retry`` so one failing item never aborts its siblings.

Cancellation is cooperative: once the event is set no new upstream call
starts, in-flight calls finish and their results are kept.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from spendcube import taxonomy
from spendcube.cache import CacheEntry, ClassificationCache
from spendcube.diagnostics import ErrorDiagnosis, with_retry
from spendcube.errors import BatchCancelled, ResponseParseError
from spendcube.governor import BatchConfig, RateLimiter, SleepFn, plan_waves
from spendcube.llm_provider import TextGenerator
from spendcube.models import Classification, ErrorRecord, InputRecord
from spendcube.performance import OperationMetrics, PerformanceTracker
from spendcube.schemas import ClassificationOutput, parse_model_output

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProgressFn = Callable[[dict[str, Any]], None]
TaxonomySearchFn = Callable[[str, int], list[dict[str, Any]]]

PARSE_FALLBACK_CONFIDENCE = 30.0
UNMATCHED_CODE = ("00000000", "Unclassified")


class GovernedGenerator:
    """Wraps a generator with the shared token bucket and the cancel flag.

    A token is taken before every upstream call; cache hits never reach
    this wrapper and so never consume one.
    """

    def __init__(
        self,
        generator: TextGenerator,
        *,
        rate_limiter: RateLimiter | None = None,
        cancel_event: asyncio.Event | None = None,
        metrics: OperationMetrics | None = None,
    ) -> None:
        self.generator = generator
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self.metrics = metrics

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        if self.rate_limiter is not None:
            waited = await self.rate_limiter.acquire()
            if self.metrics is not None and waited:
                self.metrics.record_wait(waited)
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BatchCancelled("batch cancelled before upstream call")
        return await self.generator.generate(system_prompt, user_prompt)


@dataclass
class ItemOutcome(Generic[R]):
    index: int
    item_id: str | None
    result: R | None = None
    error: ErrorRecord | None = None
    retries: int = 0
    skipped: bool = False


@dataclass
class BatchResult(Generic[R]):
    results: list[R] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    retry_counts: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    stopped: bool = False

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def failure_count(self) -> int:
        return len(self.errors)

    @property
    def total_retries(self) -> int:
        return sum(self.retry_counts.values())


class BatchExecutor:
    def __init__(
        self,
        *,
        rate_limiter: RateLimiter | None = None,
        tracker: PerformanceTracker | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
        backoff_cap_ms: int = 60000,
        max_item_retries: int | None = 3,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.tracker = tracker
        self._sleep = sleep
        self._rng = rng
        self.backoff_cap_ms = backoff_cap_ms
        self.max_item_retries = max_item_retries

    def governed(
        self,
        generator: TextGenerator,
        *,
        cancel_event: asyncio.Event | None = None,
        metrics: OperationMetrics | None = None,
    ) -> GovernedGenerator:
        return GovernedGenerator(
            generator,
            rate_limiter=self.rate_limiter,
            cancel_event=cancel_event,
            metrics=metrics,
        )

    def start_metrics(self, operation_type: str, item_count: int) -> OperationMetrics | None:
        if self.tracker is None:
            return None
        return self.tracker.start(operation_type, item_count)

    async def run_batch(
        self,
        items: Sequence[T],
        op: Callable[[T], Awaitable[R]],
        *,
        config: BatchConfig,
        stage: str,
        item_id: Callable[[T], str] | None = None,
        on_progress: ProgressFn | None = None,
        cancel_event: asyncio.Event | None = None,
        continue_on_error: bool = True,
        metrics: OperationMetrics | None = None,
    ) -> BatchResult[R]:
        """Run ``op`` over ``items``; results come back in submission order.

        With ``continue_on_error`` true, ``len(results) + len(errors)``
        equals ``len(items)`` minus any items skipped by cancellation.
        """
        owns_metrics = metrics is None
        if metrics is None:
            metrics = self.start_metrics(stage, len(items))
        outcomes: list[ItemOutcome[R] | None] = [None] * len(items)
        total = len(items)
        completed = 0
        stopped = False

        def ident(index: int) -> str:
            return item_id(items[index]) if item_id is not None else str(index)

        def report(outcome: ItemOutcome[R]) -> None:
            nonlocal completed
            completed += 1
            if on_progress is None:
                return
            last = outcome.result if outcome.error is None else outcome.error
            try:
                on_progress({"completed_count": completed, "total_count": total, "last_result": last})
            except Exception:
                logger.warning("progress listener failed for stage=%s", stage, exc_info=True)

        async def run_item(index: int) -> ItemOutcome[R]:
            key = ident(index)

            async def attempt() -> R:
                if cancel_event is not None and cancel_event.is_set():
                    raise BatchCancelled("batch cancelled")
                return await op(items[index])

            def on_retry(attempt_no: int, delay_ms: float, diagnosis: ErrorDiagnosis) -> None:
                if metrics is not None:
                    metrics.record_retries(1)

            try:
                retry = await with_retry(
                    attempt,
                    stage=stage,
                    record_id=key,
                    max_retries=self.max_item_retries,
                    backoff_cap_ms=self.backoff_cap_ms,
                    sleep=self._sleep,
                    rng=self._rng,
                    on_retry=on_retry,
                    cancel_event=cancel_event,
                )
            except BatchCancelled:
                return ItemOutcome(index=index, item_id=key, skipped=True)
            outcome: ItemOutcome[R] = ItemOutcome(
                index=index,
                item_id=key,
                result=retry.result,
                error=retry.error,
                retries=retry.retries,
            )
            report(outcome)
            return outcome

        async def run_chunk(indices: range) -> list[ItemOutcome[R]]:
            gathered = await asyncio.gather(*(run_item(i) for i in indices), return_exceptions=True)
            chunk_outcomes: list[ItemOutcome[R]] = []
            for index, value in zip(indices, gathered):
                if isinstance(value, BaseException):
                    logger.error("stage=%s item=%s raised outside retry: %r", stage, ident(index), value)
                    raise value
                chunk_outcomes.append(value)
            return chunk_outcomes

        waves = plan_waves(total, config)
        for wave_no, wave in enumerate(waves):
            if stopped or (cancel_event is not None and cancel_event.is_set()):
                break
            wave_results = await asyncio.gather(*(run_chunk(chunk) for chunk in wave))
            for chunk_outcomes in wave_results:
                for outcome in chunk_outcomes:
                    outcomes[outcome.index] = outcome
            if not continue_on_error and any(
                o.error is not None for chunk in wave_results for o in chunk
            ):
                logger.warning("stage=%s stopping batch after item failure (continue_on_error=false)", stage)
                stopped = True
                break
            if wave_no < len(waves) - 1 and config.inter_batch_delay_ms > 0:
                await self._sleep(config.inter_batch_delay_ms / 1000.0)

        batch: BatchResult[R] = BatchResult(stopped=stopped)
        for index, outcome in enumerate(outcomes):
            if outcome is None or outcome.skipped:
                batch.skipped.append(ident(index))
                continue
            if outcome.retries and outcome.item_id is not None:
                batch.retry_counts[outcome.item_id] = outcome.retries
            if outcome.error is not None:
                batch.errors.append(outcome.error)
                if metrics is not None:
                    metrics.record_error()
            else:
                batch.results.append(outcome.result)  # type: ignore[arg-type]
                if metrics is not None:
                    metrics.record_success()
        batch.cancelled = bool(batch.skipped) and cancel_event is not None and cancel_event.is_set()
        if metrics is not None and batch.skipped:
            metrics.record_skipped(len(batch.skipped))
        if owns_metrics and metrics is not None and self.tracker is not None:
            self.tracker.end(metrics)

        logger.info(
            "stage=%s batch done total=%s ok=%s failed=%s skipped=%s retries=%s",
            stage,
            total,
            batch.success_count,
            batch.failure_count,
            len(batch.skipped),
            batch.total_retries,
        )
        return batch


CLASSIFICATION_SYSTEM_PROMPT = """You are a procurement classifier. Assign the single best UNSPSC
commodity code (8 digits) to a spend record. Prefer one of the candidate codes when it fits.

Respond with JSON only:
{"code": "<8 digits>", "title": "<code title>", "segment": "<segment>", "family": "<family>",
 "confidence": <0-100>, "reasoning": "<why>",
 "alternative_codes": [{"code": "<8 digits>", "title": "<title>", "confidence": <0-100>}]}"""


def build_classification_prompt(record: InputRecord, candidates: Sequence[dict[str, Any]]) -> str:
    lines = [
        "Classify this spend record.",
        "",
        f"- Vendor: {record.vendor}",
        f"- Description: {record.description}",
        f"- Amount: {record.amount:,.2f}",
    ]
    if record.department:
        lines.append(f"- Department: {record.department}")
    if candidates:
        lines.extend(["", "Candidate codes:"])
        lines.extend(f"  {c['code']} {c['title']} (score {c.get('score', 0):.2f})" for c in candidates)
    return "\n".join(lines)


def _parse_fallback(record: InputRecord, candidates: Sequence[dict[str, Any]], reason: str) -> Classification:
    if candidates:
        best = candidates[0]
        code, title = best["code"], best["title"]
        segment, family = best.get("segment"), best.get("family")
    else:
        (code, title), segment, family = UNMATCHED_CODE, None, None
    return Classification(
        record_id=record.id,
        code=code,
        title=title,
        confidence=PARSE_FALLBACK_CONFIDENCE,
        reasoning=f"Model response unusable ({reason}); best taxonomy match used.",
        segment=segment,
        family=family,
        alternative_codes=[{"code": c["code"], "title": c["title"]} for c in candidates[1:]],
        source="fallback:taxonomy",
    )


async def classify_record(
    record: InputRecord,
    *,
    generator: TextGenerator,
    cache: ClassificationCache,
    taxonomy_search: TaxonomySearchFn = taxonomy.search,
    metrics: OperationMetrics | None = None,
) -> Classification:
    """Classify one record, consulting the cache before any upstream call."""
    cached = cache.lookup(record.vendor, record.description)
    if cached is not None:
        if metrics is not None:
            metrics.record_cache_hit()
        return Classification(
            record_id=record.id,
            code=cached.code,
            title=cached.title,
            confidence=cached.confidence,
            reasoning=f"Served from {cached.source} cache",
            segment=cached.segment,
            family=cached.family,
            source=f"cache:{cached.source}",
        )
    if metrics is not None:
        metrics.record_cache_miss()

    candidates = taxonomy_search(f"{record.vendor} {record.description}".strip(), 5)
    text = await generator.generate(CLASSIFICATION_SYSTEM_PROMPT, build_classification_prompt(record, candidates))
    try:
        output = parse_model_output(text, ClassificationOutput)
    except ResponseParseError as exc:
        logger.warning("record=%s classification parse failed: %s", record.id, exc)
        return _parse_fallback(record, candidates, str(exc))

    segment, family = output.segment, output.family
    known = taxonomy.get_code(output.code)
    if known is not None:
        segment = segment or known.segment
        family = family or known.family
    classification = Classification(
        record_id=record.id,
        code=output.code,
        title=output.title or (known.title if known else ""),
        confidence=output.confidence,
        reasoning=output.reasoning,
        segment=segment,
        family=family,
        alternative_codes=[alt.model_dump() for alt in output.alternative_codes],
    )
    cache.store(
        record.vendor,
        record.description,
        CacheEntry(
            code=classification.code,
            title=classification.title,
            confidence=classification.confidence,
            segment=segment,
            family=family,
        ),
    )
    return classification
