"""Event system: append-only execution log with streaming support."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from genflow.models import Event

logger = logging.getLogger(__name__)


class EventBus:
    """Append-only event log with subscription support."""

    def __init__(self, log_file: Path | None = None, max_history: int = 10000):
        self._log_file = log_file
        self._max_history = max_history
        self._subscribers: list[tuple[str | None, asyncio.Queue]] = []
        self._history: list[Event] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event, log it and notify subscribers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]
        self._persist(event)
        self._notify(event)
        logger.debug(f"Event: {event.type} [{event.execution_id}] {event.data}")

    def emit_simple(self, type: str, execution_id: str, **data):
        """Convenience: emit with keyword args."""
        self.emit(Event(type=type, execution_id=execution_id, data=data))

    def recent(self, limit: int = 50, offset: int = 0, execution_id: str | None = None) -> list[Event]:
        """Get recent events (paginated), optionally for a single execution."""
        history = self._history
        if execution_id is not None:
            history = [e for e in history if e.execution_id == execution_id]
        start = max(0, len(history) - offset - limit)
        end = len(history) - offset
        return history[start:end]

    def subscribe(self, execution_id: str | None = None) -> asyncio.Queue:
        """Subscribe to live events, optionally filtered to one execution."""
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append((execution_id, q))
        return q

    def unsubscribe(self, q: asyncio.Queue):
        self._subscribers = [(eid, sub) for eid, sub in self._subscribers if sub is not q]

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for execution_id, q in self._subscribers:
            if execution_id is not None and execution_id != event.execution_id:
                continue
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event queue full, dropping {event.type} for {event.execution_id}")
