"""
Event Log — append-only, per-run ordered event sequences with live tail.

The log assigns every event its sequence index on append. Readers attach at
any index and receive the buffered suffix followed by a live tail that ends
once the run's terminal event (``complete`` or ``error``) has been delivered.

All state is process-local and guarded by one ``asyncio.Condition`` per run.
A single pipeline task writes to a run's log. Any number of reader tasks
consume it independently, each with its own cursor.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tubelens.errors import EventLogClosedError, EventLogNotFoundError, ValidationError
from tubelens.middleware.metrics import run_events_appended_total

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    PROGRESS = "progress"
    PARTIAL = "partial"
    ITEM = "item"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.COMPLETE, EventKind.ERROR)


@dataclass(frozen=True)
class Event:
    run_id: str
    sequence_index: int
    kind: EventKind
    payload: dict[str, Any]
    created_at: float

    def to_frame(self) -> dict[str, Any]:
        """Wire shape: ``{"type": kind, ...payload}``."""
        return {"type": self.kind.value, **self.payload}


@dataclass
class _RunLog:
    events: list[Event] = field(default_factory=list)
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)
    closed_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.closed_at is not None


class EventLog:
    def __init__(
        self,
        retention_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._logs: dict[str, _RunLog] = {}

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._logs

    def open(self, run_id: str) -> None:
        self._logs.setdefault(run_id, _RunLog())

    def discard(self, run_id: str) -> None:
        """Forget a log that was opened for a run which never launched."""
        self._logs.pop(run_id, None)

    def _get(self, run_id: str) -> _RunLog:
        log = self._logs.get(run_id)
        if log is None:
            raise EventLogNotFoundError(f"No event log for run {run_id}")
        return log

    def last_index(self, run_id: str) -> int:
        """Index of the most recent event, or -1 if nothing was appended yet."""
        return len(self._get(run_id).events) - 1

    def is_terminal(self, run_id: str) -> bool:
        return self._get(run_id).terminal

    async def append(self, run_id: str, kind: EventKind | str, payload: dict[str, Any] | None = None) -> int:
        kind = EventKind(kind)
        log = self._get(run_id)
        async with log.condition:
            if log.terminal:
                raise EventLogClosedError(
                    f"Run {run_id} already has a terminal event; refusing to append {kind.value}"
                )
            index = len(log.events)
            log.events.append(
                Event(
                    run_id=run_id,
                    sequence_index=index,
                    kind=kind,
                    payload=dict(payload or {}),
                    created_at=time.time(),
                )
            )
            if kind.is_terminal:
                log.closed_at = self._clock()
            log.condition.notify_all()

        run_events_appended_total.labels(kind=kind.value).inc()
        return index

    def read_from(self, run_id: str, start_index: int = 0) -> AsyncIterator[Event]:
        """Return an iterator over the run's events starting at ``start_index``.

        Raises immediately (not on first iteration) when the run is unknown
        or past retention, so callers can map it to a response before any
        stream is opened.
        """
        if start_index < 0:
            raise ValidationError(f"startIndex must be >= 0, got {start_index}")
        log = self._get(run_id)
        return self._iterate(log, start_index)

    async def _iterate(self, log: _RunLog, cursor: int) -> AsyncIterator[Event]:
        while True:
            while cursor < len(log.events):
                event = log.events[cursor]
                cursor += 1
                yield event
                if event.kind.is_terminal:
                    return
            if log.terminal:
                return
            async with log.condition:
                await log.condition.wait_for(
                    lambda: cursor < len(log.events) or log.terminal
                )

    def sweep(self) -> int:
        """Drop terminal logs whose retention window has elapsed."""
        now = self._clock()
        expired = [
            run_id
            for run_id, log in self._logs.items()
            if log.closed_at is not None and now - log.closed_at >= self.retention_seconds
        ]
        for run_id in expired:
            del self._logs[run_id]
        if expired:
            logger.info("Swept %d expired event logs", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()
