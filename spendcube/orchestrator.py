"""Pipeline orchestration: ``submit``, ``resume`` and ``get_state``.

Each call is one turn.  The orchestrator loads the session checkpoint, then
cycles: ask the router for the next hop, run that stage, merge its updates,
save.  A turn ends when the router answers ``respond`` (the stored stage
becomes ``hitl``, ``error`` or ``complete``) or ``end``.

A pending human review is a hard stop for the turn.  Nothing waits in
memory during the pause; ``resume`` re-enters the router from the
checkpointed ``hitl`` stage.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import random
from collections.abc import Iterable, Mapping
from typing import Any

from spendcube import taxonomy
from spendcube.cache import CacheEntry, ClassificationCache
from spendcube.checkpoints import CheckpointStore, InMemoryCheckpointStore, create_checkpoint_store_from_env
from spendcube.diagnostics import create_error_record
from spendcube.errors import PipelineError
from spendcube.events import EventNotifier
from spendcube.executor import BatchExecutor, TaxonomySearchFn
from spendcube.governor import RateLimiter, SleepFn
from spendcube.hitl import (
    apply_decision,
    final_records,
    hitl_queue_stats,
    validate_decision,
)
from spendcube.llm_provider import TextGenerator, create_generator_from_env
from spendcube.models import HITLDecision, InputRecord, utcnow_iso
from spendcube.normalization import record_from_mapping
from spendcube.performance import PerformanceTracker
from spendcube.router import routing_decision
from spendcube.settings import PipelineSettings
from spendcube.stages import STAGE_HANDLERS, StageContext
from spendcube.state import SessionState, merge_state, new_session
from spendcube.tools_registry import create_default_registry, make_taxonomy_search

logger = logging.getLogger(__name__)

RESPOND = "respond"


def _not_found(session_id: str) -> PipelineError:
    return PipelineError(
        code="SESSION_NOT_FOUND",
        message=f"session not found: {session_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


class _SessionLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        settings: PipelineSettings | None = None,
        generator: TextGenerator | None = None,
        checkpoint_store: CheckpointStore | None = None,
        cache: ClassificationCache | None = None,
        tracker: PerformanceTracker | None = None,
        notifier: EventNotifier | None = None,
        rate_limiter: RateLimiter | None = None,
        taxonomy_search: TaxonomySearchFn | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.generator = generator if generator is not None else create_generator_from_env()
        self.checkpoints = checkpoint_store or InMemoryCheckpointStore(
            retention_hours=self.settings.checkpoint_retention_hours
        )
        self.cache = cache or ClassificationCache.from_settings(self.settings)
        self.tracker = tracker or PerformanceTracker()
        self.notifier = notifier or EventNotifier()
        self.rate_limiter = rate_limiter or RateLimiter(
            max_tokens=self.settings.rate_limit_max_tokens,
            refill_rate=self.settings.rate_limit_refill_per_s,
        )
        self.taxonomy_search = taxonomy_search or make_taxonomy_search(create_default_registry())
        self.executor = BatchExecutor(
            rate_limiter=self.rate_limiter,
            tracker=self.tracker,
            sleep=sleep,
            rng=rng,
            backoff_cap_ms=self.settings.retry_backoff_cap_ms,
            max_item_retries=self.settings.retry_max_item_retries,
        )
        self._locks: dict[str, _SessionLock] = {}

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "PipelineOrchestrator":
        settings = PipelineSettings.from_env(environ)
        overrides.setdefault("generator", create_generator_from_env(environ))
        overrides.setdefault("checkpoint_store", create_checkpoint_store_from_env(environ))
        return cls(settings=settings, **overrides)

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str):
        # Entries live only while a turn holds or waits for them.
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]

    async def _load(self, session_id: str) -> SessionState | None:
        return await asyncio.to_thread(self.checkpoints.load, session_id)

    async def _save(self, state: SessionState) -> None:
        await asyncio.to_thread(self.checkpoints.save, state)

    async def get_state(self, session_id: str) -> SessionState:
        state = await self._load(session_id)
        if state is None:
            raise _not_found(session_id)
        return state

    async def submit(
        self,
        session_id: str,
        records: Iterable[InputRecord | Mapping[str, Any]],
        intent_text: str = "",
        *,
        enrich: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionState:
        """Add records to a session and run the pipeline until it responds.

        Record ids already in the session are ignored.
        """
        parsed: list[InputRecord] = []
        for raw in records:
            try:
                parsed.append(raw if isinstance(raw, InputRecord) else record_from_mapping(raw))
            except ValueError as exc:
                raise PipelineError(
                    code="RECORDS_INVALID",
                    message=str(exc),
                    error_class="validation",
                    retryable=False,
                    http_status=400,
                ) from exc

        async with self._session_lock(session_id):
            state = await self._load(session_id) or new_session(session_id)
            if state.awaiting_decision or state.pending_hitl_items():
                raise PipelineError(
                    code="SESSION_AWAITING_DECISION",
                    message=f"session {session_id} is waiting for {len(state.pending_hitl_items())} review decision(s)",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )

            added = {r.id: r for r in parsed if r.id not in state.input_records}
            updates: dict[str, Any] = {
                "input_records": added,
                "intent": intent_text,
                "enrichment_requested": enrich,
                "stage": "idle",
                "turn": state.turn + 1,
                "updated_at": utcnow_iso(),
            }
            if added:
                updates["analysis"] = None
            state = merge_state(state, updates)
            logger.info(
                "submit session=%s turn=%s new_records=%s ignored=%s",
                session_id,
                state.turn,
                len(added),
                len(parsed) - len(added),
            )
            return await self._run_turn(state, cancel_event=cancel_event)

    async def resume(
        self,
        session_id: str,
        decision: HITLDecision | Mapping[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionState:
        """Record one review decision and continue from the checkpoint."""
        if not isinstance(decision, HITLDecision):
            decision = HITLDecision.from_dict(dict(decision))

        async with self._session_lock(session_id):
            state = await self.get_state(session_id)
            item = state.hitl_queue.get(decision.item_id)
            if item is None:
                raise PipelineError(
                    code="HITL_ITEM_NOT_FOUND",
                    message=f"review item not found: {decision.item_id}",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                )
            if item.status != "pending":
                raise PipelineError(
                    code="HITL_ITEM_ALREADY_DECIDED",
                    message=f"review item already decided: {decision.item_id}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            problems = validate_decision(decision)
            if problems:
                raise PipelineError(
                    code="HITL_DECISION_INVALID",
                    message="; ".join(problems),
                    error_class="validation",
                    retryable=False,
                    http_status=400,
                )

            updates = apply_decision(state, decision)
            state = merge_state(
                state,
                {**updates, "turn": state.turn + 1, "awaiting_decision": False, "updated_at": utcnow_iso()},
            )
            logger.info(
                "resume session=%s item=%s action=%s pending=%s",
                session_id,
                item.id,
                decision.action,
                len(state.pending_hitl_items()),
            )
            if decision.action == "modify":
                self._learn_correction(state.input_records[item.record_id], decision)
            return await self._run_turn(state, cancel_event=cancel_event)

    def _learn_correction(self, record: InputRecord, decision: HITLDecision) -> None:
        known = taxonomy.get_code(str(decision.selected_code))
        self.cache.store(
            record.vendor,
            record.description,
            CacheEntry(
                code=str(decision.selected_code),
                title=str(decision.selected_title),
                confidence=100.0,
                segment=known.segment if known else None,
                family=known.family if known else None,
            ),
        )

    def _transition(self, state: SessionState, to_stage: str, reason: str) -> SessionState:
        from_stage = state.stage
        entry = {"from": from_stage, "to": to_stage, "at": utcnow_iso(), "turn": state.turn, "reason": reason}
        updates: dict[str, Any] = {"stage_history": [entry], "updated_at": entry["at"]}
        if to_stage != RESPOND:
            updates["stage"] = to_stage
        logger.info("session=%s stage %s -> %s (%s)", state.session_id, from_stage, to_stage, reason)
        self.notifier.on_stage_change(
            session_id=state.session_id, from_stage=from_stage, to_stage=to_stage, reason=reason
        )
        return merge_state(state, updates)

    def _fail(self, state: SessionState, error: BaseException, *, stage: str) -> SessionState:
        record = dataclasses.replace(create_error_record(stage=stage, error=error), recoverable=False)
        state = merge_state(state, {"errors": [record]})
        return self._transition(state, "error", f"{stage} failed: {record.message}")

    async def _run_turn(self, state: SessionState, *, cancel_event: asyncio.Event | None) -> SessionState:
        ctx = StageContext(
            executor=self.executor,
            generator=self.generator,
            cache=self.cache,
            settings=self.settings,
            notifier=self.notifier,
            taxonomy_search=self.taxonomy_search,
            cancel_event=cancel_event,
        )
        for _ in range(self.settings.max_steps):
            try:
                decision = routing_decision(state)
            except Exception as exc:
                logger.exception("router failed for session=%s", state.session_id)
                state = self._fail(state, exc, stage="router")
                continue

            if decision.target == "end":
                break
            if decision.target == RESPOND:
                state = self._transition(state, RESPOND, decision.reason)
                if state.stage == "error":
                    final = "error"
                elif state.pending_hitl_items():
                    final = "hitl"
                else:
                    final = "complete"
                state = merge_state(state, {"stage": final, "awaiting_decision": final == "hitl"})
                break

            state = self._transition(state, decision.stage, decision.reason)
            handler = STAGE_HANDLERS[decision.target]
            try:
                outcome = await handler(state, ctx)
            except Exception as exc:
                logger.exception("stage %s failed for session=%s", decision.stage, state.session_id)
                state = self._fail(state, exc, stage=decision.stage)
                continue
            state = merge_state(state, outcome.updates)
            await self._save(state)
            if outcome.stopped_by is not None:
                failed = outcome.stopped_by
                logger.warning(
                    "session=%s %s stopped at record=%s (continue_on_error=false)",
                    state.session_id,
                    decision.stage,
                    failed.record_id,
                )
                state = self._fail(
                    state,
                    RuntimeError(f"batch stopped after record {failed.record_id} failed: {failed.message}"),
                    stage=decision.stage,
                )
                continue
            if outcome.cancelled:
                logger.info("session=%s cancelled during %s", state.session_id, decision.stage)
                break
        else:
            logger.warning("session=%s hit max_steps=%s", state.session_id, self.settings.max_steps)
            state = self._fail(
                state,
                RuntimeError(f"router exceeded {self.settings.max_steps} steps in one turn"),
                stage="router",
            )

        await self._save(state)
        return state

    async def hitl_queue(self, session_id: str) -> dict[str, Any]:
        state = await self.get_state(session_id)
        pending = sorted(
            state.pending_hitl_items(),
            key=lambda item: ({"critical": 0, "high": 1, "medium": 2, "low": 3}[item.priority], item.created_at),
        )
        return {"items": [item.as_dict() for item in pending], "stats": hitl_queue_stats(state)}


def session_summary(state: SessionState, *, tracker: PerformanceTracker | None = None) -> dict[str, Any]:
    verdicts = {"approved": 0, "flagged": 0, "rejected": 0}
    for qa_result in state.qa_results.values():
        verdicts[qa_result.verdict] += 1
    summary: dict[str, Any] = {
        "session_id": state.session_id,
        "stage": state.stage,
        "turn": state.turn,
        "awaiting_decision": state.awaiting_decision,
        "stage_path": state.turn_path(),
        "counts": {
            "records": len(state.input_records),
            "classifications": len(state.classifications),
            "qa_results": len(state.qa_results),
            "enrichments": len(state.enrichments),
            "errors": len(state.errors),
            "retries": state.total_retries,
        },
        "verdicts": verdicts,
        "hitl": hitl_queue_stats(state),
        "records": final_records(state),
        "errors": [e.as_dict() for e in state.errors],
        "analysis": state.analysis,
    }
    if tracker is not None:
        summary["performance"] = tracker.summary()
    return summary
