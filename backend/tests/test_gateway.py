"""Tests for the stream gateway's run selection."""

import asyncio

import pytest
from sqlalchemy import select

from tubelens.engine.event_log import EventLog
from tubelens.engine.gateway import Attached, StreamGateway
from tubelens.engine.pipeline import PipelineRunner, Step, StepPipeline
from tubelens.engine.registry import LogicalKey, RunRegistry
from tubelens.errors import ConflictError
from tubelens.models import VideoAnalysis, WorkflowRun


def make_gateway(session_factory) -> StreamGateway:
    registry = RunRegistry(session_factory)
    events = EventLog()
    return StreamGateway(events, registry, PipelineRunner(events, registry))


def one_step_pipeline() -> StepPipeline:
    async def only(ctx):
        return None
    return StepPipeline("analysis", [Step("only", "Only...", 0, only)])


async def nothing_stored(key):
    return None


@pytest.mark.asyncio
class TestResolve:
    async def test_started_run_ignores_requested_start_index(self, session_factory):
        gateway = make_gateway(session_factory)
        resolved = await gateway.resolve(
            LogicalKey.analysis("abc", 1), nothing_stored, one_step_pipeline, start_index=5,
        )
        assert isinstance(resolved, Attached) and resolved.started
        sent = [e async for e in resolved.events]
        assert [e.sequence_index for e in sent] == [0, 1]
        assert sent[-1].kind.value == "complete"

    async def test_attached_reader_keeps_its_start_index(self, session_factory):
        gateway = make_gateway(session_factory)
        key = LogicalKey.analysis("abc", 1)
        release = asyncio.Event()

        def held_pipeline() -> StepPipeline:
            async def held(ctx):
                await release.wait()
            return StepPipeline("analysis", [Step("held", "Held...", 0, held)])

        first = await gateway.resolve(key, nothing_stored, held_pipeline)
        second = await gateway.resolve(key, nothing_stored, held_pipeline, start_index=1)
        assert not second.started
        assert second.run.run_id == first.run.run_id

        release.set()
        assert [e.sequence_index async for e in second.events] == [1]
        assert [e.sequence_index async for e in first.events] == [0, 1]


@pytest.mark.asyncio
class TestStartNextVersion:
    async def test_runs_get_consecutive_versions(self, session_factory):
        gateway = make_gateway(session_factory)
        a = await gateway.start_next_version("abc", nothing_stored, one_step_pipeline)
        b = await gateway.start_next_version("abc", nothing_stored, one_step_pipeline)
        assert (a.run.version, b.run.version) == (1, 2)
        assert a.started and b.started
        assert [e.kind.value async for e in a.events][-1] == "complete"
        assert [e.kind.value async for e in b.events][-1] == "complete"

    async def test_version_persisted_meanwhile_is_skipped(self, session_factory):
        gateway = make_gateway(session_factory)
        checked = []

        async def stored_once(key):
            checked.append(key.version)
            if len(checked) > 1:
                return None
            # Another run finished this version after next_version was read
            async with session_factory() as session:
                session.add(VideoAnalysis(subject_id="abc", version=key.version, run_id="run_other", result={}))
                await session.commit()
            return "stored"

        attached = await gateway.start_next_version("abc", stored_once, one_step_pipeline)
        assert attached.run.version == 2
        assert checked == [1, 2]
        assert [e.kind.value async for e in attached.events][-1] == "complete"

        async with session_factory() as session:
            superseded = (await session.execute(
                select(WorkflowRun).where(WorkflowRun.version == 1)
            )).scalar_one()
        assert superseded.status == "failed"
        assert superseded.error_message.startswith("superseded")
        leftover = [e async for e in gateway.events.read_from(superseded.run_id)]
        assert [e.kind.value for e in leftover] == ["error"]

    async def test_failed_claim_leaves_no_event_log(self, session_factory, monkeypatch):
        gateway = make_gateway(session_factory)

        async def exhausted(subject_id, run_id=None):
            raise ConflictError("no free version")

        monkeypatch.setattr(gateway.registry, "claim_next_version", exhausted)
        with pytest.raises(ConflictError):
            await gateway.start_next_version("abc", nothing_stored, one_step_pipeline)
        assert gateway.events._logs == {}
