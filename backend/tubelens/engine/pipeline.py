"""
Step Pipeline — drives one run through its named steps.

Each step is announced with a ``progress`` event before it starts. Generator
steps stream their intermediate output as they produce it:

    StepItem(payload)      → item event
    StepPartial(delta)     → partial event
    StepProgress(message)  → progress event
    StepResult(value)      → the step's output (otherwise the list of item payloads)

Steps never touch the event log or the run registry. Terminal bookkeeping
(status update, registry release, terminal event) happens here, exactly once.
An ``on_failure`` hook lets a workflow record the failure in its own tables
before the terminal event goes out.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tubelens.engine.event_log import EventKind, EventLog
from tubelens.engine.registry import LogicalKey, RunRegistry
from tubelens.middleware.metrics import pipeline_duration_seconds, pipeline_runs_total
from tubelens.middleware.request_context import bind_run_id
from tubelens.models import WorkflowRun

logger = logging.getLogger(__name__)


@dataclass
class StepItem:
    payload: dict[str, Any]


@dataclass
class StepPartial:
    delta: str


@dataclass
class StepProgress:
    message: str
    percent: int | None = None


@dataclass
class StepResult:
    value: Any


@dataclass
class StepContext:
    run: WorkflowRun
    key: LogicalKey
    params: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.run_id


StepFn = Callable[[StepContext], Awaitable[Any] | AsyncIterator[Any]]


@dataclass
class Step:
    name: str
    message: str
    percent: int
    fn: StepFn


class StepFailed(Exception):
    def __init__(self, phase: str, cause: BaseException):
        detail = str(cause) or type(cause).__name__
        super().__init__(f'Step "{phase}" failed: {detail}')
        self.phase = phase
        self.cause = cause


class StepPipeline:
    def __init__(
        self,
        name: str,
        steps: list[Step],
        summarize: Callable[[StepContext], dict[str, Any]] | None = None,
        on_failure: Callable[[StepContext, StepFailed], Awaitable[None]] | None = None,
    ):
        if not steps:
            raise ValueError("A pipeline needs at least one step")
        self.name = name
        self.steps = steps
        self.summarize = summarize or (lambda ctx: {})
        self.on_failure = on_failure

    async def execute(self, ctx: StepContext, events: EventLog, registry: RunRegistry) -> None:
        run_id = ctx.run_id
        t_start = time.time()
        phase = self.steps[0].name

        with bind_run_id(run_id):
            try:
                await registry.mark_running(run_id)
                for step in self.steps:
                    phase = step.name
                    await events.append(run_id, EventKind.PROGRESS, {
                        "phase": step.name, "message": step.message, "percent": step.percent,
                    })
                    logger.info("Run %s: step %s started", run_id, step.name)
                    ctx.outputs[step.name] = await self._run_step(step, ctx, events)
                summary = self.summarize(ctx)
            except asyncio.CancelledError:
                await self._fail(ctx, events, registry, StepFailed(phase, RuntimeError("run cancelled")), t_start)
                raise
            except Exception as exc:
                logger.exception("Run %s: step %s failed", run_id, phase)
                await self._fail(ctx, events, registry, StepFailed(phase, exc), t_start)
                return

            await self._complete(ctx, events, registry, summary, t_start)

    async def _run_step(self, step: Step, ctx: StepContext, events: EventLog) -> Any:
        if not inspect.isasyncgenfunction(step.fn):
            return await step.fn(ctx)

        items: list[dict[str, Any]] = []
        result: StepResult | None = None
        async for produced in step.fn(ctx):
            if isinstance(produced, StepItem):
                items.append(produced.payload)
                await events.append(ctx.run_id, EventKind.ITEM, produced.payload)
            elif isinstance(produced, StepPartial):
                await events.append(ctx.run_id, EventKind.PARTIAL, {
                    "phase": step.name, "delta": produced.delta,
                })
            elif isinstance(produced, StepProgress):
                percent = step.percent if produced.percent is None else produced.percent
                await events.append(ctx.run_id, EventKind.PROGRESS, {
                    "phase": step.name, "message": produced.message, "percent": percent,
                })
            elif isinstance(produced, StepResult):
                result = produced
            else:
                raise TypeError(f"Step {step.name} yielded unsupported value {produced!r}")
        return result.value if result is not None else items

    async def _complete(self, ctx, events, registry, summary, t_start) -> None:
        run_id = ctx.run_id
        try:
            await registry.mark_terminal(run_id, "completed", stats=summary)
        except Exception:
            # The result is already persisted; the status row needs manual reconciliation
            logger.exception("Run %s: completed but status update failed", run_id)
        await self._release(ctx, registry)
        await events.append(run_id, EventKind.COMPLETE, summary)

        duration = time.time() - t_start
        pipeline_runs_total.labels(pipeline=self.name, status="completed").inc()
        pipeline_duration_seconds.labels(pipeline=self.name).observe(duration)
        logger.info("Run %s completed in %.1fs", run_id, duration)

    async def _fail(self, ctx, events, registry, failure: StepFailed, t_start) -> None:
        run_id = ctx.run_id
        if self.on_failure is not None:
            try:
                await self.on_failure(ctx, failure)
            except Exception:
                logger.exception("Run %s: failure hook raised", run_id)
        try:
            await registry.mark_terminal(run_id, "failed", error_message=str(failure))
        except Exception:
            logger.exception("Run %s: failed and status update failed", run_id)
        await self._release(ctx, registry)
        await events.append(run_id, EventKind.ERROR, {"phase": failure.phase, "message": str(failure)})

        pipeline_runs_total.labels(pipeline=self.name, status="failed").inc()
        pipeline_duration_seconds.labels(pipeline=self.name).observe(time.time() - t_start)

    async def _release(self, ctx: StepContext, registry: RunRegistry) -> None:
        try:
            await registry.release(ctx.key, ctx.run_id)
        except Exception:
            logger.exception("Run %s: failed to release %s", ctx.run_id, ctx.key)


class PipelineRunner:
    """Owns the background tasks that execute pipelines."""

    def __init__(self, events: EventLog, registry: RunRegistry):
        self.events = events
        self.registry = registry
        self._tasks: set[asyncio.Task] = set()

    def launch(self, pipeline: StepPipeline, ctx: StepContext) -> asyncio.Task:
        task = asyncio.create_task(
            pipeline.execute(ctx, self.events, self.registry),
            name=f"{pipeline.name}:{ctx.run_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Launched %s pipeline for %s as %s", pipeline.name, ctx.key, ctx.run_id)
        return task

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("Cancelling %d in-flight pipeline runs", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
