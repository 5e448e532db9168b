"""
In-process event bus so UI and notification layers can follow progress and
achievement changes without owning the computation.

Handlers are fire-and-forget: a failing handler is logged and never reaches
the engine or the other handlers.
"""
import logging
from threading import Lock
from typing import Any, Callable

logger = logging.getLogger(__name__)

CONTRIBUTION_RECORDED = "contribution_recorded"
PROGRESS_CHANGED = "progress_changed"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
QUEST_STATUS_CHANGED = "quest_status_changed"
PARTICIPANT_JOINED = "participant_joined"

EVENT_TYPES = (
    CONTRIBUTION_RECORDED,
    PROGRESS_CHANGED,
    ACHIEVEMENT_UNLOCKED,
    QUEST_STATUS_CHANGED,
    PARTICIPANT_JOINED,
)

Handler = Callable[[dict[str, Any]], None]


class EventBus:

    def __init__(self):
        self._lock = Lock()
        self._handlers: dict[str, list[Handler]] = {name: [] for name in EVENT_TYPES}

    def listen(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe handler to event; returns a callable that unsubscribes it."""
        with self._lock:
            if event not in self._handlers:
                raise KeyError(f"Unknown event: {event}")
            self._handlers[event].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event]:
                    self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        with self._lock:
            if event not in self._handlers:
                raise KeyError(f"Unknown event: {event}")
            handlers = list(self._handlers[event])
        logger.debug("Emitting %s with payload keys: %s", event, list(payload.keys()))
        for handler in handlers:
            try:
                handler({"event": event, **payload})
            except Exception:
                logger.exception("Handler %r failed for event %s", handler, event)
