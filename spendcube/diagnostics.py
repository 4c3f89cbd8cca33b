"""Failure diagnosis and retry policy.

A failure is classified by matching its message against ordered category
patterns; the first match wins and ``unknown`` is the default.  Every
category carries its own recoverability, base delay, retry budget and
optional fallback action.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from spendcube.errors import BatchCancelled
from spendcube.models import ErrorRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ErrorCategory:
    name: str
    pattern: re.Pattern[str] | None
    is_recoverable: bool
    delay_ms: int
    max_retries: int
    code: str
    suggested_action: str
    fallback_action: str | None = None


ERROR_CATEGORIES: tuple[ErrorCategory, ...] = (
    ErrorCategory(
        name="rate_limit",
        pattern=re.compile(r"rate.?limit|too.?many.?requests|\b429\b|quota.?exceeded", re.IGNORECASE),
        is_recoverable=True,
        delay_ms=60000,
        max_retries=3,
        code="RATE_LIMIT",
        suggested_action="Wait 60s before retrying; switch to the fallback model if the limit persists.",
        fallback_action="use_fallback_model",
    ),
    ErrorCategory(
        name="token_limit",
        pattern=re.compile(r"token.?limit|context.?length|max.?tokens|input.?too.?long", re.IGNORECASE),
        is_recoverable=True,
        delay_ms=0,
        max_retries=2,
        code="PROCESSING_ERROR",
        suggested_action="Reduce batch size or split input into smaller chunks.",
        fallback_action="reduce_batch_size",
    ),
    ErrorCategory(
        name="network",
        pattern=re.compile(r"network|connection|econnrefused|etimedout|socket|\bdns\b", re.IGNORECASE),
        is_recoverable=True,
        delay_ms=5000,
        max_retries=3,
        code="PROCESSING_ERROR",
        suggested_action="Check network connectivity; retry with exponential backoff.",
    ),
    ErrorCategory(
        name="timeout",
        pattern=re.compile(r"timeout|timed.?out|deadline.?exceeded", re.IGNORECASE),
        is_recoverable=True,
        delay_ms=2000,
        max_retries=2,
        code="TIMEOUT",
        suggested_action="Increase timeout or reduce workload; retry with a smaller batch.",
    ),
    ErrorCategory(
        name="validation",
        pattern=re.compile(r"validation|invalid.?input|schema|parse.?error|json", re.IGNORECASE),
        is_recoverable=False,
        delay_ms=0,
        max_retries=0,
        code="INVALID_INPUT",
        suggested_action="Fix input data; check schema compliance.",
        fallback_action="skip_item",
    ),
    ErrorCategory(
        name="backend_error",
        pattern=re.compile(
            r"model.?error|internal.?error|\b500\b|\b502\b|\b503\b|service.?unavailable|bad.?gateway",
            re.IGNORECASE,
        ),
        is_recoverable=True,
        delay_ms=10000,
        max_retries=2,
        code="MODEL_ERROR",
        suggested_action="Switch to the fallback model; report if the issue persists.",
        fallback_action="use_fallback_model",
    ),
    ErrorCategory(
        name="tool_error",
        pattern=re.compile(r"tool.?error|tool.?failed|execution.?failed", re.IGNORECASE),
        is_recoverable=True,
        delay_ms=1000,
        max_retries=2,
        code="TOOL_ERROR",
        suggested_action="Verify tool inputs; check tool availability.",
    ),
)

UNKNOWN_CATEGORY = ErrorCategory(
    name="unknown",
    pattern=None,
    is_recoverable=True,
    delay_ms=5000,
    max_retries=1,
    code="UNKNOWN",
    suggested_action="Retry once with backoff, then escalate to human review if the failure persists.",
)


@dataclass(frozen=True)
class ErrorDiagnosis:
    category: ErrorCategory
    message: str

    @property
    def is_recoverable(self) -> bool:
        return self.category.is_recoverable

    @property
    def delay_ms(self) -> int:
        return self.category.delay_ms

    @property
    def max_retries(self) -> int:
        return self.category.max_retries

    @property
    def fallback_action(self) -> str | None:
        return self.category.fallback_action

    @property
    def suggested_action(self) -> str:
        return self.category.suggested_action

    def as_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.name,
            "is_recoverable": self.is_recoverable,
            "message": self.message,
            "delay_ms": self.delay_ms,
            "max_retries": self.max_retries,
            "fallback_action": self.fallback_action,
            "suggested_action": self.suggested_action,
        }


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    message = str(error)
    return message or error.__class__.__name__


def diagnose_error(error: BaseException | str) -> ErrorDiagnosis:
    message = _error_message(error)
    for category in ERROR_CATEGORIES:
        if category.pattern is not None and category.pattern.search(message):
            return ErrorDiagnosis(category=category, message=message)
    return ErrorDiagnosis(category=UNKNOWN_CATEGORY, message=message)


def create_error_record(
    *,
    stage: str,
    error: BaseException | str,
    retry_count: int = 0,
    max_retries: int | None = None,
    record_id: str | None = None,
) -> ErrorRecord:
    diagnosis = diagnose_error(error)
    limit = diagnosis.max_retries if max_retries is None else min(diagnosis.max_retries, max_retries)
    return ErrorRecord(
        stage=stage,
        code=diagnosis.category.code,
        category=diagnosis.category.name,
        message=diagnosis.message,
        recoverable=diagnosis.is_recoverable and retry_count < limit,
        retry_count=retry_count,
        max_retries=limit,
        record_id=record_id,
        suggested_action=diagnosis.suggested_action,
        fallback_action=diagnosis.fallback_action,
    )


def calculate_backoff(
    base_delay_ms: float,
    attempt: int,
    *,
    cap_ms: float = 60000,
    jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    """``min(base * 2**attempt, cap)`` plus 10-30% jitter."""
    delay = min(float(base_delay_ms) * (2 ** max(0, int(attempt))), float(cap_ms))
    if not jitter:
        return delay
    source = rng if rng is not None else random
    return delay * (1 + source.uniform(0.1, 0.3))


@dataclass
class RetryOutcome(Generic[T]):
    result: T | None = None
    error: ErrorRecord | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


async def _backoff_sleep(
    seconds: float,
    *,
    sleep: Callable[[float], Awaitable[None]],
    cancel_event: asyncio.Event | None,
) -> None:
    if cancel_event is None:
        await sleep(seconds)
        return
    if cancel_event.is_set():
        raise BatchCancelled("batch cancelled before backoff")
    sleeper = asyncio.ensure_future(sleep(seconds))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [task for task in (sleeper, waiter) if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if cancel_event.is_set():
        raise BatchCancelled("batch cancelled during backoff")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    stage: str,
    record_id: str | None = None,
    max_retries: int | None = None,
    base_delay_ms: int = 1000,
    backoff_cap_ms: int = 60000,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
    on_retry: Callable[[int, float, ErrorDiagnosis], None] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RetryOutcome[T]:
    """Run ``fn`` until it succeeds or the diagnosed category gives up.

    The retry budget is the category's ``max_retries``, capped by
    ``max_retries`` when the caller passes one.  Exhaustion is returned as an
    ``ErrorRecord``, never raised.  ``BatchCancelled`` is not a failure and
    propagates untouched.  Setting ``cancel_event`` cuts a backoff sleep short with
    ``BatchCancelled``.
    """
    attempt = 0
    while True:
        try:
            result = await fn()
            return RetryOutcome(result=result, attempts=attempt + 1)
        except BatchCancelled:
            raise
        except Exception as exc:
            diagnosis = diagnose_error(exc)
            limit = diagnosis.max_retries if max_retries is None else min(diagnosis.max_retries, max_retries)
            if not diagnosis.is_recoverable or attempt >= limit:
                logger.warning(
                    "giving up stage=%s record=%s category=%s attempts=%s: %s",
                    stage,
                    record_id,
                    diagnosis.category.name,
                    attempt + 1,
                    diagnosis.message,
                )
                record = create_error_record(
                    stage=stage,
                    error=exc,
                    retry_count=attempt,
                    max_retries=max_retries,
                    record_id=record_id,
                )
                return RetryOutcome(error=record, attempts=attempt + 1)

            delay_ms = calculate_backoff(
                diagnosis.delay_ms or base_delay_ms,
                attempt,
                cap_ms=backoff_cap_ms,
                rng=rng,
            )
            logger.warning(
                "retrying stage=%s record=%s category=%s attempt=%s delay_ms=%.0f",
                stage,
                record_id,
                diagnosis.category.name,
                attempt + 1,
                delay_ms,
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay_ms, diagnosis)
            await _backoff_sleep(delay_ms / 1000.0, sleep=sleep, cancel_event=cancel_event)
            attempt += 1


@dataclass
class BatchErrorResult(Generic[R]):
    results: list[R] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0


async def with_batch_error_handling(
    items: Sequence[T],
    process: Callable[[T], Awaitable[R]],
    *,
    stage: str,
    continue_on_error: bool = True,
    max_item_retries: int | None = 2,
    item_id: Callable[[T], str | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> BatchErrorResult[R]:
    """Process items one after another through the retrying operation.

    With ``continue_on_error`` false the batch stops at the first item whose
    retries are exhausted.
    """
    outcome: BatchErrorResult[R] = BatchErrorResult()
    for item in items:
        attempt = await with_retry(
            lambda item=item: process(item),
            stage=stage,
            record_id=item_id(item) if item_id is not None else None,
            max_retries=max_item_retries,
            sleep=sleep,
            rng=rng,
        )
        if attempt.ok:
            outcome.results.append(attempt.result)  # type: ignore[arg-type]
            outcome.success_count += 1
            continue
        assert attempt.error is not None
        outcome.errors.append(attempt.error)
        outcome.failure_count += 1
        if not continue_on_error:
            break
    return outcome
