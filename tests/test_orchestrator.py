import asyncio

import pytest

from spendcube import orchestrator as orchestrator_module
from spendcube import stages
from spendcube.checkpoints import SqliteCheckpointStore
from spendcube.errors import PipelineError
from spendcube.events import EventNotifier
from spendcube.governor import BatchConfig
from spendcube.models import HITLDecision
from spendcube.orchestrator import session_summary
from spendcube.settings import PipelineSettings


def _run(coro):
    return asyncio.run(coro)


class TestHappyPath:
    def test_clean_batch_completes_without_review(self, make_orchestrator, scripted, records):
        generator = scripted()
        pipeline = make_orchestrator(generator)

        state = _run(pipeline.submit("s-clean", records(10), "classify these"))

        assert state.turn_path() == ["idle", "classifying", "qa", "respond"]
        assert state.stage == "complete"
        assert state.awaiting_decision is False
        assert len(state.classifications) == 10
        assert {q.verdict for q in state.qa_results.values()} == {"approved"}
        assert state.hitl_queue == {}
        assert generator.count("classification") == 10
        assert generator.count("qa") == 10

        summary = session_summary(state, tracker=pipeline.tracker)
        assert summary["counts"]["records"] == 10
        assert summary["verdicts"] == {"approved": 10, "flagged": 0, "rejected": 0}
        assert {row["status"] for row in summary["records"]} == {"classified"}
        assert summary["performance"]["total_operations"] == 2

    def test_records_are_normalized_once(self, make_orchestrator, scripted):
        pipeline = make_orchestrator(scripted())
        raw = [{"id": "r1", "vendor": "  MSFT ", "description": "office   licence", "amount": "$1,250.50"}]
        state = _run(pipeline.submit("s-norm", raw))
        record = state.input_records["r1"]
        assert record.vendor == "Microsoft"
        assert record.raw_vendor == "  MSFT "
        assert record.description == "office licence"
        assert record.amount == 1250.5

    def test_resubmitting_known_ids_does_no_work(self, make_orchestrator, scripted, records):
        generator = scripted()
        pipeline = make_orchestrator(generator)

        async def scenario():
            await pipeline.submit("s-dup", records(3))
            return await pipeline.submit("s-dup", records(3))

        state = _run(scenario())
        assert state.turn == 2
        assert state.turn_path() == ["idle", "respond"]
        assert generator.count("classification") == 3
        assert len(state.input_records) == 3

    def test_progress_and_stage_events(self, make_orchestrator, scripted, records):
        notifier = EventNotifier()
        progress: list[dict] = []
        changes: list[dict] = []
        notifier.subscribe("progress", progress.append)
        notifier.subscribe("stage_change", changes.append)
        pipeline = make_orchestrator(scripted(), notifier=notifier)

        _run(pipeline.submit("s-events", records(4)))

        assert [(p["stage"], p["completed_count"]) for p in progress if p["stage"] == "classifying"][-1] == (
            "classifying",
            4,
        )
        assert len(progress) == 8
        assert [(c["from"], c["to"]) for c in changes] == [
            ("idle", "classifying"),
            ("classifying", "qa"),
            ("qa", "respond"),
        ]


class TestHumanReview:
    def test_low_confidence_record_pauses_then_resumes(self, make_orchestrator, scripted, records):
        notifier = EventNotifier()
        created: list = []
        notifier.subscribe("hitl_created", created.append)
        generator = scripted(confidence_by_description={"laptop order 3": 40.0})
        pipeline = make_orchestrator(generator, notifier=notifier)

        async def scenario():
            paused = await pipeline.submit("s-review", records(5))
            queue = await pipeline.hitl_queue("s-review")
            resumed = await pipeline.resume("s-review", HITLDecision(item_id="hitl_r3", action="approve"))
            return paused, queue, resumed

        paused, queue, resumed = _run(scenario())

        assert paused.turn_path() == ["idle", "classifying", "qa", "hitl", "respond"]
        assert paused.stage == "hitl"
        assert paused.awaiting_decision is True
        assert paused.qa_results["r3"].verdict == "flagged"
        item = paused.hitl_queue["hitl_r3"]
        assert (item.reason, item.priority) == ("low_confidence", "high")
        assert [i.id for i in created] == ["hitl_r3"]
        assert [i["id"] for i in queue["items"]] == ["hitl_r3"]
        assert queue["stats"]["pending"] == 1

        assert resumed.turn_path() == ["hitl", "respond"]
        assert resumed.stage == "complete"
        assert resumed.awaiting_decision is False
        assert resumed.pending_hitl_items() == []
        assert generator.count("classification") == 5

    def test_pending_count_drops_one_decision_at_a_time(self, make_orchestrator, scripted, records):
        generator = scripted(confidence_by_description={"laptop order 2": 40.0, "laptop order 4": 45.0})
        pipeline = make_orchestrator(generator)

        async def scenario():
            paused = await pipeline.submit("s-two", records(4))
            first = await pipeline.resume("s-two", HITLDecision(item_id="hitl_r2", action="approve"))
            second = await pipeline.resume("s-two", HITLDecision(item_id="hitl_r4", action="approve"))
            return paused, first, second

        paused, first, second = _run(scenario())

        pending = [len(s.pending_hitl_items()) for s in (paused, first, second)]
        assert pending == [2, 1, 0]
        assert sorted(paused.hitl_queue) == ["hitl_r2", "hitl_r4"]

        assert first.stage == "hitl"
        assert first.awaiting_decision is True
        assert first.turn_path() == ["hitl", "respond"]

        assert second.stage == "complete"
        assert second.awaiting_decision is False
        decided = [d.item_id for d in second.hitl_decisions]
        assert sorted(decided) == ["hitl_r2", "hitl_r4"]
        assert all(item.status == "decided" for item in second.hitl_queue.values())

    def test_reject_leaves_record_unclassified(self, make_orchestrator, scripted, records):
        pipeline = make_orchestrator(scripted(confidence_by_description={"laptop order 2": 30.0}))

        async def scenario():
            await pipeline.submit("s-reject", records(2))
            return await pipeline.resume("s-reject", {"item_id": "hitl_r2", "action": "reject"})

        state = _run(scenario())
        rows = {row["record"]["id"]: row for row in session_summary(state)["records"]}
        assert rows["r2"]["status"] == "unclassified"
        assert rows["r2"]["code"] is None
        assert rows["r1"]["status"] == "classified"
        assert state.stage == "complete"

    def test_modify_teaches_the_cache(self, make_orchestrator, scripted, records):
        generator = scripted(confidence_by_description={"laptop order 1": 35.0})
        pipeline = make_orchestrator(generator)
        decision = HITLDecision(
            item_id="hitl_r1",
            action="modify",
            selected_code="43211507",
            selected_title="Desktop computers",
            decided_by="ana",
        )
        repeat = [dict(records(1)[0], id="r99")]

        async def scenario():
            await pipeline.submit("s-modify", records(1))
            corrected = await pipeline.resume("s-modify", decision)
            again = await pipeline.submit("s-other", repeat)
            return corrected, again

        corrected, again = _run(scenario())
        rows = session_summary(corrected)["records"]
        assert rows[0]["status"] == "corrected"
        assert rows[0]["code"] == "43211507"
        assert rows[0]["confidence"] == 100.0

        hit = pipeline.cache.lookup("Vendor 1", "laptop order 1")
        assert hit is not None
        assert (hit.code, hit.confidence, hit.source) == ("43211507", 100.0, "exact")
        assert again.classifications["r99"].source == "cache:exact"
        assert again.classifications["r99"].code == "43211507"
        assert generator.count("classification") == 1

    def test_submit_while_paused_is_rejected(self, make_orchestrator, scripted, records):
        pipeline = make_orchestrator(scripted(confidence=40.0))

        async def scenario():
            await pipeline.submit("s-busy", records(1))
            await pipeline.submit("s-busy", records(2))

        with pytest.raises(PipelineError) as exc_info:
            _run(scenario())
        assert exc_info.value.code == "SESSION_AWAITING_DECISION"
        assert exc_info.value.http_status == 409

    @pytest.mark.parametrize(
        ("decision", "code", "status"),
        [
            ({"item_id": "hitl_nope", "action": "approve"}, "HITL_ITEM_NOT_FOUND", 404),
            ({"item_id": "hitl_r1", "action": "modify"}, "HITL_DECISION_INVALID", 400),
        ],
    )
    def test_invalid_decisions(self, make_orchestrator, scripted, records, decision, code, status):
        pipeline = make_orchestrator(scripted(confidence=40.0))

        async def scenario():
            await pipeline.submit("s-bad", records(1))
            await pipeline.resume("s-bad", decision)

        with pytest.raises(PipelineError) as exc_info:
            _run(scenario())
        assert (exc_info.value.code, exc_info.value.http_status) == (code, status)

    def test_item_cannot_be_decided_twice(self, make_orchestrator, scripted, records):
        pipeline = make_orchestrator(scripted(confidence_by_description={"laptop order 1": 40.0}))

        async def scenario():
            await pipeline.submit("s-twice", records(2))
            await pipeline.resume("s-twice", {"item_id": "hitl_r1", "action": "approve"})
            await pipeline.resume("s-twice", {"item_id": "hitl_r1", "action": "approve"})

        with pytest.raises(PipelineError) as exc_info:
            _run(scenario())
        assert exc_info.value.code == "HITL_ITEM_ALREADY_DECIDED"

    def test_unknown_session(self, make_orchestrator, scripted):
        pipeline = make_orchestrator(scripted())
        with pytest.raises(PipelineError) as exc_info:
            _run(pipeline.get_state("missing"))
        assert exc_info.value.code == "SESSION_NOT_FOUND"

    def test_resume_after_restart_uses_checkpoint(self, make_orchestrator, scripted, records, tmp_path):
        store = SqliteCheckpointStore(tmp_path / "checkpoints.sqlite3")
        first = make_orchestrator(scripted(confidence_by_description={"laptop order 2": 45.0}), checkpoint_store=store)
        second = make_orchestrator(scripted(), checkpoint_store=store)

        async def scenario():
            await first.submit("s-restart", records(2))
            return await second.resume("s-restart", {"item_id": "hitl_r2", "action": "approve"})

        state = _run(scenario())
        assert state.stage == "complete"
        assert state.turn == 2
        assert state.stage_path[:2] == ["idle", "classifying"]


class TestFailures:
    def test_rate_limited_call_is_retried_transparently(self, make_orchestrator, scripted, records, sleeps):
        generator = scripted(failures={("classification", "laptop order 1"): [RuntimeError("429 rate limit exceeded")]})
        pipeline = make_orchestrator(generator)

        state = _run(pipeline.submit("s-retry", records(10)))

        assert state.errors == []
        assert state.total_retries == 1
        assert state.retry_counts == {"classifying:r1": 1}
        assert len(state.classifications) == 10
        assert len([s for s in sleeps if s >= 60]) == 1
        assert state.stage == "complete"

    def test_qa_failure_sends_record_to_review(self, make_orchestrator, scripted, records):
        generator = scripted(failures={("qa", "laptop order 2"): [ValueError("invalid json from judge")]})
        pipeline = make_orchestrator(generator)

        state = _run(pipeline.submit("s-qa-fail", records(3)))

        assert [(e.stage, e.record_id, e.category) for e in state.errors] == [("qa", "r2", "validation")]
        assert state.qa_results["r2"].verdict == "flagged"
        assert "QA evaluation failed" in state.qa_results["r2"].reasoning
        assert state.hitl_queue["hitl_r2"].reason == "qa_flagged"
        assert state.stage == "hitl"

    def test_router_failure_ends_in_error_stage(self, make_orchestrator, scripted, records, monkeypatch):
        real = orchestrator_module.routing_decision
        calls = {"n": 0}

        def flaky_router(state):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("router exploded")
            return real(state)

        monkeypatch.setattr(orchestrator_module, "routing_decision", flaky_router)
        pipeline = make_orchestrator(scripted())

        async def scenario():
            result = await pipeline.submit("s-router", records(1))
            return result, await pipeline.get_state("s-router")

        state, stored = _run(scenario())
        assert state.stage == "error"
        assert stored.stage == "error"
        assert state.errors[-1].stage == "router"
        assert state.errors[-1].recoverable is False
        assert state.classifications == {}

    def test_stage_crash_is_recorded(self, make_orchestrator, scripted, records, monkeypatch):
        async def broken_qa(state, ctx):
            raise RuntimeError("qa stage crashed")

        monkeypatch.setitem(stages.STAGE_HANDLERS, "qa", broken_qa)
        pipeline = make_orchestrator(scripted())

        state = _run(pipeline.submit("s-crash", records(2)))
        assert state.stage == "error"
        assert state.errors[-1].stage == "qa"
        assert "qa stage crashed" in state.errors[-1].message
        assert len(state.classifications) == 2

    def test_cancelled_turn_can_be_continued(self, make_orchestrator, scripted, records):
        generator = scripted()
        pipeline = make_orchestrator(generator)

        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            halted = await pipeline.submit("s-cancel", records(3), cancel_event=cancel)
            finished = await pipeline.submit("s-cancel", [])
            return halted, finished

        halted, finished = _run(scenario())
        assert halted.stage == "classifying"
        assert halted.classifications == {}
        assert finished.stage == "complete"
        assert len(finished.classifications) == 3

    def test_stop_on_first_failure_when_opted_in(self, make_orchestrator, scripted, records):
        settings = PipelineSettings(
            classification_batch=BatchConfig(batch_size=1, max_concurrency=1),
            continue_on_error=False,
            rate_limit_max_tokens=1000,
            rate_limit_refill_per_s=1000.0,
        )
        generator = scripted(
            failures={("classification", "laptop order 2"): [ValueError("invalid input: unreadable record")]}
        )
        pipeline = make_orchestrator(generator, settings=settings)

        state = _run(pipeline.submit("s-strict", records(4)))

        assert state.stage == "error"
        assert sorted(state.classifications) == ["r1"]
        assert generator.count("classification") == 2
        item_error, stage_error = state.errors
        assert (item_error.record_id, item_error.category) == ("r2", "validation")
        assert stage_error.record_id is None
        assert stage_error.stage == "classifying"
        assert stage_error.recoverable is False
        assert "r2" in stage_error.message

    def test_failures_are_isolated_by_default(self, make_orchestrator, scripted, records):
        generator = scripted(
            failures={("classification", "laptop order 2"): [ValueError("invalid input: unreadable record")]}
        )
        pipeline = make_orchestrator(generator)

        state = _run(pipeline.submit("s-lenient", records(4)))

        assert state.stage == "complete"
        assert sorted(state.classifications) == ["r1", "r3", "r4"]
        assert [e.record_id for e in state.errors] == ["r2"]


class TestDownstreamStages:
    def test_analysis_intent_adds_spend_summary(self, make_orchestrator, scripted, records):
        pipeline = make_orchestrator(scripted())
        state = _run(pipeline.submit("s-analysis", records(3), "classify and analyze savings"))

        assert state.turn_path() == ["idle", "classifying", "qa", "analyzing", "respond"]
        analysis = state.analysis
        assert analysis["type"] == "savings"
        assert analysis["record_count"] == 3
        assert analysis["total_spend"] == 3600.0
        assert analysis["estimated_savings"] == 432.0
        assert analysis["classification_coverage"] == 100.0
        assert analysis["spend_by_category"] == {"Notebook computers": 3600.0}

    def test_enrichment_runs_after_review(self, make_orchestrator, scripted, records):
        generator = scripted(raw_by_description={("enrichment", "laptop order 2"): "no idea"})
        pipeline = make_orchestrator(generator)
        state = _run(pipeline.submit("s-enrich", records(3, amount=30000.0), enrich=True))

        assert state.turn_path() == ["idle", "classifying", "qa", "enriching", "respond"]
        assert state.enrichments["r1"].source == "model"
        assert state.enrichments["r1"].spend_type == "capex"
        fallback = state.enrichments["r2"]
        assert fallback.source == "rules"
        assert fallback.strategic_importance == "important"
        assert fallback.spend_type == "indirect"


def test_session_locks_are_released_after_each_turn(make_orchestrator, scripted, records):
    pipeline = make_orchestrator(scripted())

    async def scenario():
        states = await asyncio.gather(
            pipeline.submit("s-lock-a", records(2)),
            pipeline.submit("s-lock-a", records(3)),
            pipeline.submit("s-lock-b", records(1)),
        )
        return states, dict(pipeline._locks)

    states, locks = _run(scenario())
    assert locks == {}
    assert {s.session_id for s in states} == {"s-lock-a", "s-lock-b"}
    assert max(len(s.input_records) for s in states if s.session_id == "s-lock-a") == 3
