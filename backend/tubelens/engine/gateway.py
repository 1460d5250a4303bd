"""
Stream Gateway — decides whether a request is served from cache, attached to
an in-flight run, or starts a new run, then renders the run's event log as SSE.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi.responses import StreamingResponse

from tubelens.engine.event_log import Event, EventKind, EventLog
from tubelens.engine.pipeline import PipelineRunner, StepContext, StepPipeline
from tubelens.engine.registry import CLAIM_ATTEMPTS, LogicalKey, RunRegistry, new_run_id
from tubelens.errors import ConflictError, StreamDetached, ValidationError
from tubelens.middleware.metrics import active_event_streams, dedup_attach_total
from tubelens.models import WorkflowRun

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


@dataclass
class Cached:
    result: Any


@dataclass
class Attached:
    run: WorkflowRun
    started: bool
    events: AsyncIterator[Event]


def format_frame(event: Event) -> str:
    data = json.dumps(event.to_frame(), default=str)
    return f"id: {event.sequence_index}\nevent: {event.kind.value}\ndata: {data}\n\n"


class StreamGateway:
    def __init__(self, events: EventLog, registry: RunRegistry, runner: PipelineRunner):
        self.events = events
        self.registry = registry
        self.runner = runner
        self._locks: dict[LogicalKey, asyncio.Lock] = {}
        self._lock_users: dict[LogicalKey, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: LogicalKey):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def resolve(
        self,
        key: LogicalKey,
        load_result: Callable[[LogicalKey], Awaitable[Any]],
        build_pipeline: Callable[[], StepPipeline],
        params: dict[str, Any] | None = None,
        start_index: int = 0,
    ) -> Cached | Attached:
        if start_index < 0:
            raise ValidationError(f"startIndex must be >= 0, got {start_index}")

        result = await load_result(key)
        if result is not None:
            return Cached(result)

        async with self._key_lock(key):
            claim = await self.registry.find_or_create(key)
            # Single worker process: a live run always has its log here
            if not claim.started and claim.run.run_id not in self.events:
                logger.warning("Run %s for %s has no event log in this process", claim.run.run_id, key)
                await self.registry.reclaim(
                    key, claim.run.run_id, reason="orphaned: event log not held by this process"
                )
                claim = await self.registry.find_or_create(key)

            run = claim.run
            if claim.started:
                # A run that finished between the cache check and the claim
                # has already persisted its result.
                result = await load_result(key)
                if result is not None:
                    await self.registry.reclaim(key, run.run_id, reason="superseded: result already persisted")
                    return Cached(result)

                self.events.open(run.run_id)
                ctx = StepContext(run=run, key=key, params=dict(params or {}))
                self.runner.launch(build_pipeline(), ctx)
            else:
                dedup_attach_total.labels(pipeline=key.pipeline).inc()
                logger.info("Attaching to in-flight run %s for %s", run.run_id, key)

            # A run started by this call has nothing a client could have seen yet
            cursor = 0 if claim.started else start_index
            return Attached(run=run, started=claim.started, events=self.events.read_from(run.run_id, cursor))

    async def start_next_version(
        self,
        subject_id: str,
        load_result: Callable[[LogicalKey], Awaitable[Any]],
        build_pipeline: Callable[[], StepPipeline],
        params: dict[str, Any] | None = None,
    ) -> Attached:
        """Start a new analysis at the next free version, never joining another run.

        The run's log is opened before the version is claimed so a concurrent
        ``resolve`` on that version attaches to it rather than treating it as
        orphaned.
        """
        for _ in range(CLAIM_ATTEMPTS):
            run_id = new_run_id()
            self.events.open(run_id)
            try:
                claim = await self.registry.claim_next_version(subject_id, run_id)
            except BaseException:
                self.events.discard(run_id)
                raise

            run = claim.run
            key = LogicalKey.analysis(subject_id, run.version)
            if await load_result(key) is None:
                ctx = StepContext(run=run, key=key, params=dict(params or {}))
                self.runner.launch(build_pipeline(), ctx)
                return Attached(run=run, started=True, events=self.events.read_from(run_id, 0))

            # A run for this version finished and released it after next_version was read.
            # Readers that attached in the meantime get a terminal event.
            reason = "superseded: result already persisted"
            await self.registry.reclaim(key, run_id, reason=reason)
            await self.events.append(run_id, EventKind.ERROR, {"phase": "starting", "message": reason})
        raise ConflictError(f"Could not start a new analysis version for {subject_id}")

    async def attach(self, run_id: str, start_index: int = 0) -> Attached:
        """Reconnect to a run by ID, bypassing key resolution."""
        events = self.events.read_from(run_id, start_index)
        run = await self.registry.lookup(run_id)
        return Attached(run=run, started=False, events=events)

    def sse_response(self, attached: Attached, headers: dict[str, str] | None = None) -> StreamingResponse:
        run_id = attached.run.run_id

        async def event_stream():
            last_index = None
            finished = False
            active_event_streams.inc()
            try:
                async with aclosing(attached.events) as events:
                    async for event in events:
                        last_index = event.sequence_index
                        yield format_frame(event)
                        if event.kind.is_terminal:
                            finished = True
                finished = True
            finally:
                active_event_streams.dec()
                if not finished:
                    detached = StreamDetached(f"Reader left run {run_id} after index {last_index}")
                    logger.info("%s: %s", type(detached).__name__, detached)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Run-Id": run_id, **(headers or {})},
        )
