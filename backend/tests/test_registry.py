"""Tests for the run registry: claiming, transitions, release and reclaim."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import delete, select, update

from tubelens.database import utcnow
from tubelens.engine.registry import LogicalKey, RunRegistry, new_run_id
from tubelens.errors import InvalidTransition, RunNotFoundError, ValidationError
from tubelens.models import ActiveRun, VideoAnalysis, WorkflowRun


class TestLogicalKey:
    def test_valid_keys(self):
        assert str(LogicalKey.analysis("dQw4w9WgXcQ", 3)) == "analysis:dQw4w9WgXcQ:v3"
        assert str(LogicalKey.extraction("dQw4w9WgXcQ")) == "extraction:dQw4w9WgXcQ:v1"

    def test_keys_are_hashable_and_compare_by_value(self):
        assert LogicalKey.analysis("abc", 1) == LogicalKey("analysis", "abc", 1)
        assert len({LogicalKey.analysis("abc", 1), LogicalKey.analysis("abc", 1)}) == 1

    @pytest.mark.parametrize("pipeline,subject_id,version", [
        ("summaries", "abc", 1),
        ("analysis", "", 1),
        ("analysis", "has space", 1),
        ("analysis", "x" * 65, 1),
        ("analysis", "abc", 0),
        ("analysis", "abc", -2),
        ("analysis", "abc", True),
        ("extraction", "abc", 2),
    ])
    def test_invalid_keys(self, pipeline, subject_id, version):
        with pytest.raises(ValidationError):
            LogicalKey(pipeline, subject_id, version)

    def test_run_ids_are_unique(self):
        ids = {new_run_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("run_") and len(i) == 36 for i in ids)


@pytest.mark.asyncio
class TestClaiming:
    async def test_first_claim_starts_a_pending_run(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)

        claim = await registry.find_or_create(key)
        assert claim.started
        assert claim.run.status == "pending"

        stored = await registry.lookup(claim.run.run_id)
        assert (stored.pipeline, stored.subject_id, stored.version) == ("analysis", "abc", 1)
        active = await registry.active_run(key)
        assert active.run_id == claim.run.run_id

    async def test_second_claim_attaches(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.extraction("abc")
        first = await registry.find_or_create(key)
        second = await registry.find_or_create(key)
        assert not second.started
        assert second.run.run_id == first.run.run_id

    async def test_concurrent_claims_agree_on_one_run(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 2)

        claims = await asyncio.gather(*(registry.find_or_create(key) for _ in range(8)))

        assert len({c.run.run_id for c in claims}) == 1
        assert sum(c.started for c in claims) == 1
        async with session_factory() as session:
            runs = (await session.execute(select(WorkflowRun))).scalars().all()
        assert len(runs) == 1

    async def test_distinct_keys_get_distinct_runs(self, session_factory):
        registry = RunRegistry(session_factory)
        a = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        b = await registry.find_or_create(LogicalKey.analysis("abc", 2))
        c = await registry.find_or_create(LogicalKey.extraction("abc"))
        assert a.started and b.started and c.started
        assert len({a.run.run_id, b.run.run_id, c.run.run_id}) == 3

    async def test_release_frees_the_key(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)
        first = await registry.find_or_create(key)
        await registry.mark_terminal(first.run.run_id, "completed")
        await registry.release(key, first.run.run_id)

        assert await registry.active_run(key) is None
        second = await registry.find_or_create(key)
        assert second.started
        assert second.run.run_id != first.run.run_id

    async def test_release_with_wrong_run_id_is_a_no_op(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)
        claim = await registry.find_or_create(key)
        await registry.release(key, "run_someone_else")
        assert (await registry.active_run(key)).run_id == claim.run.run_id

    async def test_terminal_run_left_in_registry_is_reclaimed(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)
        first = await registry.find_or_create(key)
        # Terminal but never released, e.g. a crash between the two writes
        await registry.mark_terminal(first.run.run_id, "completed")

        second = await registry.find_or_create(key)
        assert second.started
        assert second.run.run_id != first.run.run_id
        assert (await registry.lookup(first.run.run_id)).status == "completed"

    async def test_stale_run_is_reclaimed(self, session_factory):
        registry = RunRegistry(session_factory, stale_after_seconds=60)
        key = LogicalKey.extraction("abc")
        first = await registry.find_or_create(key)
        async with session_factory() as session:
            await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.run_id == first.run.run_id)
                .values(created_at=utcnow() - timedelta(minutes=5))
            )
            await session.commit()

        second = await registry.find_or_create(key)
        assert second.started
        old = await registry.lookup(first.run.run_id)
        assert old.status == "failed"
        assert old.error_message.startswith("orphaned")

    async def test_holder_released_between_insert_and_read(self, session_factory, monkeypatch):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)
        first = await registry.find_or_create(key)
        read_holder = registry._holder
        reads = []

        async def released_before_read(session, key):
            reads.append(key)
            if len(reads) == 1:
                # The holding run finishes and frees the key after our insert conflicted
                await session.execute(delete(ActiveRun).where(ActiveRun.run_id == first.run.run_id))
            return await read_holder(session, key)

        monkeypatch.setattr(registry, "_holder", released_before_read)
        second = await registry.find_or_create(key)

        assert second.started
        assert second.run.run_id != first.run.run_id
        assert reads == [key]
        assert (await registry.active_run(key)).run_id == second.run.run_id


@pytest.mark.asyncio
class TestTransitions:
    async def test_happy_path(self, session_factory):
        registry = RunRegistry(session_factory)
        claim = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        run_id = claim.run.run_id

        await registry.mark_running(run_id)
        running = await registry.lookup(run_id)
        assert running.status == "running"
        assert running.started_at is not None

        await registry.mark_terminal(run_id, "completed", stats={"sections": ["summary"]})
        done = await registry.lookup(run_id)
        assert done.status == "completed"
        assert done.completed_at is not None
        assert done.stats == {"sections": ["summary"]}

    async def test_pending_can_fail_directly(self, session_factory):
        registry = RunRegistry(session_factory)
        claim = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        await registry.mark_terminal(claim.run.run_id, "failed", error_message="boom")
        failed = await registry.lookup(claim.run.run_id)
        assert (failed.status, failed.error_message) == ("failed", "boom")

    async def test_terminal_runs_never_move(self, session_factory):
        registry = RunRegistry(session_factory)
        claim = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        run_id = claim.run.run_id
        await registry.mark_terminal(run_id, "completed")

        with pytest.raises(InvalidTransition):
            await registry.mark_terminal(run_id, "failed", error_message="late")
        with pytest.raises(InvalidTransition):
            await registry.mark_running(run_id)
        assert (await registry.lookup(run_id)).status == "completed"

    async def test_running_twice_is_invalid(self, session_factory):
        registry = RunRegistry(session_factory)
        claim = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        await registry.mark_running(claim.run.run_id)
        with pytest.raises(InvalidTransition):
            await registry.mark_running(claim.run.run_id)

    async def test_non_terminal_target_is_invalid(self, session_factory):
        registry = RunRegistry(session_factory)
        claim = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        with pytest.raises(InvalidTransition):
            await registry.mark_terminal(claim.run.run_id, "running")

    async def test_unknown_run(self, session_factory):
        registry = RunRegistry(session_factory)
        with pytest.raises(RunNotFoundError):
            await registry.mark_running("run_missing")
        with pytest.raises(RunNotFoundError):
            await registry.lookup("run_missing")


@pytest.mark.asyncio
class TestRecovery:
    async def test_reclaim_orphans_fails_in_flight_runs(self, session_factory):
        registry = RunRegistry(session_factory)
        pending = await registry.find_or_create(LogicalKey.analysis("abc", 1))
        running = await registry.find_or_create(LogicalKey.extraction("abc"))
        done = await registry.find_or_create(LogicalKey.analysis("xyz", 1))
        await registry.mark_running(running.run.run_id)
        await registry.mark_terminal(done.run.run_id, "completed")

        assert await registry.reclaim_orphans() == 2

        assert (await registry.lookup(pending.run.run_id)).status == "failed"
        assert (await registry.lookup(running.run.run_id)).error_message == "orphaned: process restarted"
        assert (await registry.lookup(done.run.run_id)).status == "completed"
        async with session_factory() as session:
            assert (await session.execute(select(ActiveRun))).scalars().all() == []

    async def test_reclaim_tolerates_terminal_run(self, session_factory):
        registry = RunRegistry(session_factory)
        key = LogicalKey.analysis("abc", 1)
        claim = await registry.find_or_create(key)
        await registry.mark_terminal(claim.run.run_id, "completed")
        await registry.reclaim(key, claim.run.run_id, reason="superseded")
        assert await registry.active_run(key) is None
        assert (await registry.lookup(claim.run.run_id)).status == "completed"


@pytest.mark.asyncio
class TestNextVersion:
    async def test_counts_persisted_and_in_flight_versions(self, session_factory):
        registry = RunRegistry(session_factory)
        assert await registry.next_version("abc") == 1

        async with session_factory() as session:
            session.add(VideoAnalysis(subject_id="abc", version=1, run_id="run_x", result={"analysis": {}}))
            session.add(VideoAnalysis(subject_id="abc", version=2, run_id="run_y", result={"analysis": {}}))
            await session.commit()
        assert await registry.next_version("abc") == 3

        await registry.find_or_create(LogicalKey.analysis("abc", 3))
        assert await registry.next_version("abc") == 4
        # Extraction claims and other subjects do not count
        await registry.find_or_create(LogicalKey.extraction("abc"))
        assert await registry.next_version("abc") == 4
        assert await registry.next_version("xyz") == 1

    async def test_concurrent_claims_take_distinct_versions(self, session_factory):
        registry = RunRegistry(session_factory)
        claims = await asyncio.gather(*(registry.claim_next_version("abc") for _ in range(4)))

        assert all(c.started for c in claims)
        assert sorted(c.run.version for c in claims) == [1, 2, 3, 4]
        assert len({c.run.run_id for c in claims}) == 4
        assert await registry.next_version("abc") == 5

    async def test_claim_next_version_keeps_the_given_run_id(self, session_factory):
        registry = RunRegistry(session_factory)
        await registry.find_or_create(LogicalKey.analysis("abc", 1))
        run_id = new_run_id()

        claim = await registry.claim_next_version("abc", run_id)
        assert claim.started
        assert (claim.run.run_id, claim.run.version) == (run_id, 2)
        assert (await registry.active_run(LogicalKey.analysis("abc", 2))).run_id == run_id
