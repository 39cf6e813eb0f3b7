from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    RUN_STARTED = "run_started"
    TARGET_STATUS = "target_status"
    TASK_UPDATED = "task_updated"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"
    MILESTONE_REACHED = "milestone_reached"
    AUTOPILOT_ENGAGED = "autopilot_engaged"
    AUTOPILOT_DISENGAGED = "autopilot_disengaged"
    AUTOPILOT_FINISHED = "autopilot_finished"


@dataclass(frozen=True, slots=True)
class Event:
    kind: EventKind
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )


EventHandler = Callable[[Event], None]


class EventBus:
    """Fan-out of engine notifications to subscribed handlers and streams."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._queues: list[asyncio.Queue[Event]] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, kind: EventKind, task_id: str | None = None, **payload: Any) -> Event:
        event = Event(kind=kind, task_id=task_id, payload=payload)
        logger.debug("event %s task=%s %s", kind, task_id, payload)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                # A faulty subscriber must not take the run down with it.
                logger.exception("Event handler failed for %s", kind)
        for queue in list(self._queues):
            queue.put_nowait(event)
        return event

    async def stream(self) -> AsyncIterator[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)
