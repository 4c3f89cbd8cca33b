from spendcube.models import Classification, ErrorRecord, HITLItem, InputRecord, QAResult
from spendcube.router import is_analysis_intent, next_stage, pipeline_status, routing_decision
from spendcube.state import merge_state, new_session


def _record(rid: str) -> InputRecord:
    return InputRecord(id=rid, vendor="Dell", description="laptop order", amount=100.0)


def _classification(rid: str) -> Classification:
    return Classification(record_id=rid, code="43211503", title="Notebook computers", confidence=90.0, reasoning="x")


def _qa(rid: str, verdict: str = "approved") -> QAResult:
    return QAResult(record_id=rid, dimensions=[], weighted_score=90.0, verdict=verdict)


def _state(**updates):
    return merge_state(new_session("s1"), updates)


def test_empty_session_responds():
    assert routing_decision(_state()).target == "respond"


def test_classification_before_qa_before_review():
    state = _state(input_records={"r1": _record("r1"), "r2": _record("r2")}, classifications={"r1": _classification("r1")})
    assert routing_decision(state).target == "classification"

    state = merge_state(state, {"classifications": {"r2": _classification("r2")}, "stage": "classifying"})
    assert routing_decision(state).target == "qa"

    state = merge_state(state, {"qa_results": {"r1": _qa("r1", "flagged"), "r2": _qa("r2")}, "stage": "qa"})
    assert routing_decision(state).target == "hitl"


def test_routing_is_pure():
    state = _state(input_records={"r1": _record("r1")}, stage="classifying")
    assert routing_decision(state) == routing_decision(state)


def test_failed_records_do_not_loop():
    error = ErrorRecord(stage="classifying", code="INVALID_INPUT", message="bad", recoverable=False, retry_count=0, max_retries=0, record_id="r1")
    state = _state(input_records={"r1": _record("r1")}, errors=[error], stage="classifying")
    assert pipeline_status(state).unclassified == ()
    assert routing_decision(state).target == "respond"


def test_pending_review_pauses_the_turn():
    item = HITLItem(id="hitl_r1", record_id="r1", reason="qa_flagged", priority="medium")
    state = _state(
        input_records={"r1": _record("r1")},
        classifications={"r1": _classification("r1")},
        qa_results={"r1": _qa("r1", "flagged")},
        hitl_queue={item.id: item},
        stage="hitl",
    )
    decision = routing_decision(state)
    assert decision.target == "respond"
    assert "awaiting human decision" in decision.reason


def test_enrichment_then_analysis_after_review():
    state = _state(
        input_records={"r1": _record("r1")},
        classifications={"r1": _classification("r1")},
        qa_results={"r1": _qa("r1")},
        intent="classify and analyze savings",
        enrichment_requested=True,
        stage="qa",
    )
    assert routing_decision(state).target == "enrichment"
    assert routing_decision(merge_state(state, {"enrichment_requested": False})).target == "analysis"
    done = merge_state(state, {"enrichment_requested": False, "analysis": {"type": "savings"}})
    assert routing_decision(done).target == "respond"


def test_terminal_stages():
    assert routing_decision(_state(stage="complete")).target == "end"
    fatal = ErrorRecord(stage="router", code="UNKNOWN", message="boom", recoverable=False, retry_count=0, max_retries=0)
    assert routing_decision(_state(stage="error", errors=[fatal])).target == "end"
    soft = ErrorRecord(stage="router", code="UNKNOWN", message="boom", recoverable=True, retry_count=0, max_retries=1)
    assert routing_decision(_state(stage="error", errors=[soft])).target == "respond"


def test_analysis_intent_detection():
    assert is_analysis_intent("Please analyze supplier risk")
    assert is_analysis_intent("find savings")
    assert not is_analysis_intent("classify these invoices")


def test_next_stage_returns_stage_names():
    state = _state(input_records={"r1": _record("r1")})
    assert next_stage(state) == "classifying"

    state = merge_state(state, {"classifications": {"r1": _classification("r1")}, "stage": "classifying"})
    assert next_stage(state) == "qa"

    state = merge_state(state, {"qa_results": {"r1": _qa("r1")}, "stage": "qa", "intent": "savings analysis"})
    assert next_stage(state) == "analyzing"

    state = merge_state(state, {"analysis": {"total_spend": 100.0}, "stage": "analyzing"})
    assert next_stage(state) == "respond"

    assert next_stage(merge_state(state, {"stage": "complete"})) == "end"


def test_next_stage_enrichment_is_enriching():
    state = _state(
        input_records={"r1": _record("r1")},
        classifications={"r1": _classification("r1")},
        qa_results={"r1": _qa("r1")},
        enrichment_requested=True,
        stage="qa",
    )
    assert next_stage(state) == "enriching"


def test_next_stage_is_idempotent():
    state = _state(input_records={"r1": _record("r1"), "r2": _record("r2")}, stage="classifying")
    first = next_stage(state)
    assert next_stage(state) == first == "classifying"
    assert state.stage == "classifying"
