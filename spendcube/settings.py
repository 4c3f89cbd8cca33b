"""Environment-driven configuration for the pipeline core.

Every value has a default so the pipeline runs offline out of the box
(mock text generation, in-memory checkpoints).  Values are read once, when
``PipelineSettings.from_env`` is called, and clamped to sane minimums.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from spendcube.governor import BATCH_CONFIGS, BatchConfig


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_batch_config(env: Mapping[str, str], prefix: str, default: BatchConfig) -> BatchConfig:
    return BatchConfig(
        batch_size=_env_int(env, f"{prefix}_BATCH_SIZE", default=default.batch_size, minimum=1),
        max_concurrency=_env_int(
            env, f"{prefix}_MAX_CONCURRENCY", default=default.max_concurrency, minimum=1
        ),
        inter_batch_delay_ms=_env_int(
            env, f"{prefix}_DELAY_MS", default=default.inter_batch_delay_ms, minimum=0
        ),
    )


@dataclass(frozen=True)
class PipelineSettings:
    classification_batch: BatchConfig = field(default_factory=lambda: BATCH_CONFIGS["classification"])
    qa_batch: BatchConfig = field(default_factory=lambda: BATCH_CONFIGS["qa"])
    enrichment_batch: BatchConfig = field(default_factory=lambda: BATCH_CONFIGS["enrichment"])
    cache_exact_ttl_s: int = 600
    cache_vendor_ttl_s: int = 3600
    cache_vendor_confidence_factor: float = 0.9
    rate_limit_max_tokens: int = 10
    rate_limit_refill_per_s: float = 5.0
    retry_backoff_cap_ms: int = 60000
    retry_max_item_retries: int = 3
    continue_on_error: bool = True
    max_steps: int = 32
    checkpoint_backend: str = "memory"
    checkpoint_sqlite_path: str = ".runtime/spendcube_checkpoints.sqlite3"
    postgres_dsn: str = ""
    checkpoint_retention_hours: int = 72

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        env = os.environ if environ is None else environ
        return cls(
            classification_batch=_env_batch_config(env, "PIPELINE_CLASSIFICATION", BATCH_CONFIGS["classification"]),
            qa_batch=_env_batch_config(env, "PIPELINE_QA", BATCH_CONFIGS["qa"]),
            enrichment_batch=_env_batch_config(env, "PIPELINE_ENRICHMENT", BATCH_CONFIGS["enrichment"]),
            cache_exact_ttl_s=_env_int(env, "CACHE_EXACT_TTL_S", default=600, minimum=1),
            cache_vendor_ttl_s=_env_int(env, "CACHE_VENDOR_TTL_S", default=3600, minimum=1),
            cache_vendor_confidence_factor=_env_float(
                env, "CACHE_VENDOR_CONFIDENCE_FACTOR", default=0.9, minimum=0.0, maximum=1.0
            ),
            rate_limit_max_tokens=_env_int(env, "RATE_LIMIT_MAX_TOKENS", default=10, minimum=1),
            rate_limit_refill_per_s=_env_float(env, "RATE_LIMIT_REFILL_PER_S", default=5.0, minimum=0.001),
            retry_backoff_cap_ms=_env_int(env, "RETRY_BACKOFF_CAP_MS", default=60000, minimum=0),
            retry_max_item_retries=_env_int(env, "RETRY_MAX_ITEM_RETRIES", default=3, minimum=0),
            continue_on_error=_env_bool(env, "PIPELINE_CONTINUE_ON_ERROR", default=True),
            max_steps=_env_int(env, "PIPELINE_MAX_STEPS", default=32, minimum=1),
            checkpoint_backend=(env.get("CHECKPOINT_BACKEND", "memory").strip().lower() or "memory"),
            checkpoint_sqlite_path=(
                env.get("CHECKPOINT_SQLITE_PATH", "").strip() or ".runtime/spendcube_checkpoints.sqlite3"
            ),
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            checkpoint_retention_hours=_env_int(env, "CHECKPOINT_RETENTION_HOURS", default=72, minimum=1),
        )
