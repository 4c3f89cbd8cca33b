import asyncio

import pytest

from spendcube.governor import BATCH_CONFIGS, BatchConfig, RateLimiter, plan_waves
from spendcube.settings import PipelineSettings


def test_default_batch_configs():
    assert BATCH_CONFIGS["classification"] == BatchConfig(batch_size=10, max_concurrency=3, inter_batch_delay_ms=100)
    assert BATCH_CONFIGS["qa"] == BatchConfig(batch_size=5, max_concurrency=2, inter_batch_delay_ms=200)
    assert BATCH_CONFIGS["enrichment"] == BatchConfig(batch_size=20, max_concurrency=5, inter_batch_delay_ms=50)
    assert BATCH_CONFIGS["classification"].in_flight_ceiling == 30


def test_settings_defaults_come_from_batch_configs():
    settings = PipelineSettings()
    assert settings.classification_batch == BATCH_CONFIGS["classification"]
    assert settings.qa_batch == BATCH_CONFIGS["qa"]
    assert settings.enrichment_batch == BATCH_CONFIGS["enrichment"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"batch_size": 0, "max_concurrency": 1},
        {"batch_size": 1, "max_concurrency": 0},
        {"batch_size": 1, "max_concurrency": 1, "inter_batch_delay_ms": -1},
    ],
)
def test_batch_config_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        BatchConfig(**kwargs)


def test_plan_waves_groups_chunks_by_concurrency():
    waves = plan_waves(25, BatchConfig(batch_size=5, max_concurrency=2))
    assert len(waves) == 3
    assert [len(w) for w in waves] == [2, 2, 1]
    flattened = [i for wave in waves for chunk in wave for i in chunk]
    assert flattened == list(range(25))


def test_plan_waves_empty():
    assert plan_waves(0, BatchConfig(batch_size=5, max_concurrency=2)) == []


def test_rate_limiter_window_from_tokens_and_refill():
    limiter = RateLimiter(max_tokens=10, refill_rate=5.0)
    assert limiter.window_ms == 2000
    assert limiter.poll_interval_s == 0.025


def test_rate_limiter_burst_then_waits_for_window():
    sleeps: list[float] = []

    async def recording_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(seconds)

    limiter = RateLimiter(max_tokens=2, refill_rate=20.0, sleep=recording_sleep)

    async def scenario():
        return [await limiter.acquire() for _ in range(3)]

    waited = asyncio.run(scenario())
    assert waited[:2] == [0.0, 0.0]
    assert waited[2] > 0
    assert waited[2] == pytest.approx(sum(sleeps))
    assert all(s == pytest.approx(0.025) for s in sleeps)


def test_rate_limiter_try_acquire_is_non_blocking():
    limiter = RateLimiter(max_tokens=1, refill_rate=0.01)
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False


def test_rate_limiter_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        RateLimiter(max_tokens=0, refill_rate=1.0)
    with pytest.raises(ValueError):
        RateLimiter(max_tokens=1, refill_rate=0)
