import asyncio
import json

import pytest

from spendcube.cache import CacheEntry, ClassificationCache
from spendcube.errors import BatchCancelled
from spendcube.executor import (
    PARSE_FALLBACK_CONFIDENCE,
    BatchExecutor,
    GovernedGenerator,
    classify_record,
)
from spendcube.governor import BatchConfig, RateLimiter
from spendcube.models import InputRecord
from spendcube.performance import PerformanceTracker


async def _no_sleep(seconds: float) -> None:
    return None


def _executor(**kwargs) -> BatchExecutor:
    kwargs.setdefault("sleep", _no_sleep)
    kwargs.setdefault("tracker", PerformanceTracker())
    return BatchExecutor(**kwargs)


class TestRunBatch:
    def test_every_item_is_a_result_or_an_error(self):
        async def op(item: int) -> int:
            if item % 4 == 0:
                raise ValueError(f"invalid input {item}")
            return item * 2

        batch = asyncio.run(
            _executor().run_batch(
                list(range(1, 13)),
                op,
                config=BatchConfig(batch_size=3, max_concurrency=2),
                stage="classifying",
                item_id=lambda i: f"r{i}",
            )
        )
        assert batch.success_count + batch.failure_count == 12
        assert batch.results == [i * 2 for i in range(1, 13) if i % 4]
        assert sorted(e.record_id for e in batch.errors) == ["r12", "r4", "r8"]
        assert batch.skipped == []

    def test_in_flight_never_exceeds_ceiling(self):
        config = BatchConfig(batch_size=4, max_concurrency=2)
        state = {"in_flight": 0, "peak": 0}

        async def op(item: int) -> int:
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0)
            state["in_flight"] -= 1
            return item

        batch = asyncio.run(_executor().run_batch(list(range(20)), op, config=config, stage="qa"))
        assert batch.success_count == 20
        assert state["peak"] <= config.in_flight_ceiling

    def test_waves_are_separated_by_delay(self):
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        async def op(item: int) -> int:
            return item

        asyncio.run(
            _executor(sleep=record_sleep).run_batch(
                list(range(5)),
                op,
                config=BatchConfig(batch_size=1, max_concurrency=2, inter_batch_delay_ms=200),
                stage="qa",
            )
        )
        assert delays == [0.2, 0.2]

    def test_progress_reports_each_item_once(self):
        events: list[dict] = []

        async def op(item: int) -> int:
            return item

        def listener(payload: dict) -> None:
            events.append(payload)
            raise RuntimeError("listener failures never stop the batch")

        batch = asyncio.run(
            _executor().run_batch(
                list(range(7)),
                op,
                config=BatchConfig(batch_size=3, max_concurrency=1),
                stage="qa",
                on_progress=listener,
            )
        )
        assert batch.success_count == 7
        assert [e["completed_count"] for e in events] == list(range(1, 8))
        assert {e["total_count"] for e in events} == {7}

    def test_stop_after_failing_wave(self):
        seen: list[int] = []

        async def op(item: int) -> int:
            seen.append(item)
            if item == 0:
                raise ValueError("invalid input")
            return item

        batch = asyncio.run(
            _executor().run_batch(
                list(range(6)),
                op,
                config=BatchConfig(batch_size=2, max_concurrency=1),
                stage="classifying",
                continue_on_error=False,
            )
        )
        assert sorted(seen) == [0, 1]
        assert batch.failure_count == 1
        assert batch.skipped == ["2", "3", "4", "5"]
        assert batch.cancelled is False

    def test_cancellation_skips_unstarted_items_and_keeps_finished_ones(self):
        async def scenario():
            cancel = asyncio.Event()

            async def op(item: int) -> int:
                if item == 1:
                    cancel.set()
                return item

            return await _executor().run_batch(
                list(range(6)),
                op,
                config=BatchConfig(batch_size=2, max_concurrency=1),
                stage="classifying",
                cancel_event=cancel,
                item_id=lambda i: f"r{i}",
            )

        batch = asyncio.run(scenario())
        assert batch.results == [0, 1]
        assert batch.skipped == ["r2", "r3", "r4", "r5"]
        assert batch.cancelled is True

    def test_retries_are_counted_per_item(self):
        attempts: dict[int, int] = {}

        async def op(item: int) -> int:
            attempts[item] = attempts.get(item, 0) + 1
            if item == 2 and attempts[item] == 1:
                raise RuntimeError("503 service unavailable")
            return item

        tracker = PerformanceTracker()
        batch = asyncio.run(
            _executor(tracker=tracker).run_batch(
                [1, 2, 3],
                op,
                config=BatchConfig(batch_size=3, max_concurrency=1),
                stage="qa",
                item_id=lambda i: f"r{i}",
            )
        )
        assert batch.retry_counts == {"r2": 1}
        assert batch.total_retries == 1
        summary = tracker.summary()
        assert summary["total_retries"] == 1
        assert summary["by_operation_type"]["qa"]["count"] == 1


class _Recorder:
    def __init__(self, text: str):
        self.text = text
        self.calls = 0

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls += 1
        return self.text


def test_governed_generator_stops_after_cancel():
    async def scenario():
        cancel = asyncio.Event()
        inner = _Recorder("{}")
        governed = GovernedGenerator(
            inner, rate_limiter=RateLimiter(max_tokens=5, refill_rate=5.0), cancel_event=cancel
        )
        await governed.generate("s", "u")
        cancel.set()
        with pytest.raises(BatchCancelled):
            await governed.generate("s", "u")
        return inner.calls

    assert asyncio.run(scenario()) == 1


class TestClassifyRecord:
    record = InputRecord(id="r1", vendor="Dell", description="laptop order", amount=1500.0)

    def test_cache_hit_skips_generator(self):
        cache = ClassificationCache()
        cache.store("Dell", "laptop order", CacheEntry(code="43211503", title="Notebook computers", confidence=92.0))
        generator = _Recorder("{}")
        result = asyncio.run(classify_record(self.record, generator=generator, cache=cache))
        assert generator.calls == 0
        assert result.source == "cache:exact"
        assert result.confidence == 92.0

    def test_model_answer_is_enriched_from_taxonomy_and_cached(self):
        cache = ClassificationCache()
        generator = _Recorder(json.dumps({"code": "43211503", "confidence": 88, "reasoning": "laptop"}))
        result = asyncio.run(classify_record(self.record, generator=generator, cache=cache))
        assert result.title == "Notebook computers"
        assert result.segment == "Information Technology"
        assert result.source == "model"
        hit = cache.lookup("Dell", "laptop order")
        assert hit is not None and hit.code == "43211503"

    def test_non_finite_confidence_becomes_default(self):
        cache = ClassificationCache()
        generator = _Recorder('{"code": "43211503", "confidence": NaN, "reasoning": "laptop"}')
        result = asyncio.run(classify_record(self.record, generator=generator, cache=cache))
        assert result.confidence == 50.0
        assert result.source == "model"

    def test_unparseable_answer_falls_back_to_best_candidate(self):
        cache = ClassificationCache()
        generator = _Recorder("I think it is a laptop")
        result = asyncio.run(classify_record(self.record, generator=generator, cache=cache))
        assert result.confidence == PARSE_FALLBACK_CONFIDENCE
        assert result.source == "fallback:taxonomy"
        assert result.code == "43211503"
        assert cache.lookup("Dell", "laptop order") is None

    def test_unparseable_answer_without_candidates_is_unclassified(self):
        generator = _Recorder("???")
        result = asyncio.run(
            classify_record(
                self.record,
                generator=generator,
                cache=ClassificationCache(),
                taxonomy_search=lambda query, limit: [],
            )
        )
        assert result.code == "00000000"
        assert result.title == "Unclassified"
