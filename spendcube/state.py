"""Session state and its per-field merge reducers.

Stage functions never touch a ``SessionState`` directly; they return an update
dict which the orchestrator folds in with ``merge_state`` on its single
serial path.  Each field has exactly one reducer:

  - ``append``:  logs (decisions, errors, stage history) grow, never shrink
  - ``upsert``:  id-keyed maps (records, classifications, QA results, HITL queue)
  - ``replace``: scalars (stage, intent, flags, analysis summary)
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from spendcube.models import (
    Classification,
    EnrichmentData,
    ErrorRecord,
    HITLDecision,
    HITLItem,
    InputRecord,
    QAResult,
    utcnow_iso,
)

STAGES: tuple[str, ...] = (
    "idle",
    "classifying",
    "qa",
    "hitl",
    "enriching",
    "analyzing",
    "complete",
    "error",
)

REDUCERS: dict[str, str] = {
    "input_records": "upsert",
    "classifications": "upsert",
    "qa_results": "upsert",
    "hitl_queue": "upsert",
    "enrichments": "upsert",
    "retry_counts": "upsert",
    "hitl_decisions": "append",
    "errors": "append",
    "stage_history": "append",
    "stage": "replace",
    "intent": "replace",
    "enrichment_requested": "replace",
    "awaiting_decision": "replace",
    "analysis": "replace",
    "turn": "replace",
    "updated_at": "replace",
}


@dataclass(frozen=True)
class SessionState:
    session_id: str
    input_records: dict[str, InputRecord] = field(default_factory=dict)
    classifications: dict[str, Classification] = field(default_factory=dict)
    qa_results: dict[str, QAResult] = field(default_factory=dict)
    hitl_queue: dict[str, HITLItem] = field(default_factory=dict)
    hitl_decisions: list[HITLDecision] = field(default_factory=list)
    enrichments: dict[str, EnrichmentData] = field(default_factory=dict)
    errors: list[ErrorRecord] = field(default_factory=list)
    retry_counts: dict[str, int] = field(default_factory=dict)
    stage: str = "idle"
    intent: str = ""
    enrichment_requested: bool = False
    awaiting_decision: bool = False
    analysis: dict[str, Any] | None = None
    stage_history: list[dict[str, Any]] = field(default_factory=list)
    turn: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def total_retries(self) -> int:
        return sum(self.retry_counts.values())

    @property
    def stage_path(self) -> list[str]:
        if not self.stage_history:
            return [self.stage]
        path = [str(self.stage_history[0]["from"])]
        path.extend(str(entry["to"]) for entry in self.stage_history)
        return path

    def turn_path(self, turn: int | None = None) -> list[str]:
        """Stage path of one turn (the latest by default)."""
        wanted = self.turn if turn is None else turn
        entries = [e for e in self.stage_history if int(e.get("turn", 0)) == wanted]
        if not entries:
            return []
        return [str(entries[0]["from"]), *(str(e["to"]) for e in entries)]

    def failed_record_ids(self, stage: str) -> set[str]:
        return {e.record_id for e in self.errors if e.stage == stage and e.record_id}

    def pending_hitl_items(self) -> list[HITLItem]:
        return [item for item in self.hitl_queue.values() if item.status == "pending"]

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "input_records": [r.as_dict() for r in self.input_records.values()],
            "classifications": [c.as_dict() for c in self.classifications.values()],
            "qa_results": [q.as_dict() for q in self.qa_results.values()],
            "hitl_queue": [h.as_dict() for h in self.hitl_queue.values()],
            "hitl_decisions": [d.as_dict() for d in self.hitl_decisions],
            "enrichments": [e.as_dict() for e in self.enrichments.values()],
            "errors": [e.as_dict() for e in self.errors],
            "retry_counts": dict(self.retry_counts),
            "stage": self.stage,
            "intent": self.intent,
            "enrichment_requested": self.enrichment_requested,
            "awaiting_decision": self.awaiting_decision,
            "analysis": self.analysis,
            "stage_history": [dict(e) for e in self.stage_history],
            "turn": self.turn,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionState":
        return cls(
            session_id=str(data["session_id"]),
            input_records={
                r["id"]: InputRecord.from_dict(r) for r in data.get("input_records", [])
            },
            classifications={
                c["record_id"]: Classification.from_dict(c) for c in data.get("classifications", [])
            },
            qa_results={q["record_id"]: QAResult.from_dict(q) for q in data.get("qa_results", [])},
            hitl_queue={h["id"]: HITLItem.from_dict(h) for h in data.get("hitl_queue", [])},
            hitl_decisions=[HITLDecision.from_dict(d) for d in data.get("hitl_decisions", [])],
            enrichments={
                e["record_id"]: EnrichmentData.from_dict(e) for e in data.get("enrichments", [])
            },
            errors=[ErrorRecord.from_dict(e) for e in data.get("errors", [])],
            retry_counts={str(k): int(v) for k, v in (data.get("retry_counts") or {}).items()},
            stage=str(data.get("stage", "idle")),
            intent=str(data.get("intent", "")),
            enrichment_requested=bool(data.get("enrichment_requested", False)),
            awaiting_decision=bool(data.get("awaiting_decision", False)),
            analysis=data.get("analysis"),
            stage_history=[dict(e) for e in data.get("stage_history", [])],
            turn=int(data.get("turn", 0)),
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
        )


def new_session(session_id: str) -> SessionState:
    return SessionState(session_id=session_id)


def reduce_append(current: list[Any], update: Any) -> list[Any]:
    if update is None:
        return list(current)
    if not isinstance(update, (list, tuple)):
        update = [update]
    return [*current, *update]


def reduce_upsert(current: Mapping[str, Any], update: Any) -> dict[str, Any]:
    if update is None:
        return dict(current)
    if not isinstance(update, Mapping):
        raise TypeError("upsert updates must be a mapping keyed by id")
    merged = dict(current)
    merged.update(update)
    return merged


def reduce_replace(current: Any, update: Any) -> Any:
    return update


_REDUCER_FUNCS = {
    "append": reduce_append,
    "upsert": reduce_upsert,
    "replace": reduce_replace,
}


def merge_state(state: SessionState, updates: Mapping[str, Any]) -> SessionState:
    """Fold one stage's updates into ``state`` and return the new state."""
    if not updates:
        return state
    changes: dict[str, Any] = {}
    for key, value in updates.items():
        kind = REDUCERS.get(key)
        if kind is None:
            raise KeyError(f"unknown session state field: {key}")
        if key == "stage" and value not in STAGES:
            raise ValueError(f"unknown stage: {value}")
        changes[key] = _REDUCER_FUNCS[kind](getattr(state, key), value)
    return dataclasses.replace(state, **changes)
