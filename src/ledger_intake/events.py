"""
Plain observer callbacks for progress and status notifications.

Components emit named events at fixed checkpoints; listeners are ordinary
callables receiving keyword arguments. Notifications are fire-and-forget:
a failing listener is logged and never interrupts the emitter.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]

# Strategy selector checkpoints
STRATEGY_SELECTED = "strategy_selected"
EXTRACTION_STARTED = "extraction_started"
EXTRACTION_FINISHED = "extraction_finished"

# Orchestrator state changes
IMPORT_PROGRESS = "import_progress"

# Offline queue
PROCESS_QUEUED_IMAGE = "process_queued_image"
SYNC_PROGRESS = "sync_progress"

# Connectivity
CONNECTIVITY_CHANGED = "connectivity_changed"


class EventEmitter:
    """Registry of listeners keyed by event name."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        """Deliver an event to every listener registered for it."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(**payload)
            except Exception:
                logger.exception("Listener for %s failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))
