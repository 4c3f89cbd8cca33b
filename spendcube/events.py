from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from spendcube.models import HITLItem

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

EVENT_TYPES: tuple[str, ...] = ("progress", "stage_change", "hitl_created")


class EventNotifier:
    """Fire-and-forget pipeline notifications.

    Listeners run inline and must return quickly; one that raises is logged
    and skipped, never propagated into the pipeline.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {name: [] for name in EVENT_TYPES}

    def subscribe(self, event_type: str, listener: Listener) -> Callable[[], None]:
        if event_type not in self._listeners:
            raise ValueError(f"unknown event type: {event_type}")
        self._listeners[event_type].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event_type]:
                self._listeners[event_type].remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, payload: Any) -> None:
        for listener in list(self._listeners[event_type]):
            try:
                listener(payload)
            except Exception:
                logger.warning("%s listener %r failed", event_type, listener, exc_info=True)

    def on_progress(self, payload: dict[str, Any]) -> None:
        self._emit("progress", payload)

    def on_stage_change(self, *, session_id: str, from_stage: str, to_stage: str, reason: str = "") -> None:
        self._emit(
            "stage_change",
            {"session_id": session_id, "from": from_stage, "to": to_stage, "reason": reason},
        )

    def on_hitl_created(self, item: HITLItem) -> None:
        self._emit("hitl_created", item)
