"""
Run Registry — maps a logical work key to its in-flight run.

Dedup rests on one operation: ``find_or_create`` inserts into ``active_runs``
with ON CONFLICT DO NOTHING against the (pipeline, subject_id, version)
unique constraint, then reads back whichever row survived. Concurrent callers
racing on the same key therefore all observe the same run ID, and exactly one
of them sees ``started=True``.

Status transitions are single conditional UPDATEs so an illegal transition
can never be applied, only detected.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubelens.database import dialect_insert, utcnow
from tubelens.errors import ConflictError, InvalidTransition, RunNotFoundError, ValidationError
from tubelens.models import ActiveRun, VideoAnalysis, WorkflowRun
from tubelens.models.run import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

PIPELINES = ("analysis", "extraction", "slide_analysis")
CLAIM_ATTEMPTS = 5
_SUBJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class LogicalKey:
    pipeline: str
    subject_id: str
    version: int = 1

    def __post_init__(self):
        if self.pipeline not in PIPELINES:
            raise ValidationError(f"Unknown pipeline: {self.pipeline!r}")
        if not isinstance(self.subject_id, str) or not _SUBJECT_ID_RE.match(self.subject_id):
            raise ValidationError(f"Invalid subject id: {self.subject_id!r}")
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise ValidationError(f"Version must be a positive integer, got {self.version!r}")
        if self.pipeline != "analysis" and self.version != 1:
            raise ValidationError(f"{self.pipeline} keys are not versioned")

    @classmethod
    def analysis(cls, subject_id: str, version: int) -> "LogicalKey":
        return cls("analysis", subject_id, version)

    @classmethod
    def extraction(cls, subject_id: str) -> "LogicalKey":
        return cls("extraction", subject_id)

    @classmethod
    def slide_analysis(cls, subject_id: str) -> "LogicalKey":
        return cls("slide_analysis", subject_id)

    def __str__(self) -> str:
        return f"{self.pipeline}:{self.subject_id}:v{self.version}"


@dataclass
class RunClaim:
    run: WorkflowRun
    started: bool


def new_run_id() -> str:
    return f"run_{uuid4().hex}"


class RunRegistry:
    def __init__(self, session_factory: async_sessionmaker, stale_after_seconds: float = 3600.0):
        self.session_factory = session_factory
        self.stale_after = timedelta(seconds=stale_after_seconds)

    # ── Claiming ─────────────────────────────────────────────────────────────

    async def find_or_create(self, key: LogicalKey) -> RunClaim:
        claim = await self._claim(key)
        if claim.started:
            return claim

        if claim.run.is_terminal or self._is_stale(claim.run):
            logger.warning(
                "Reclaiming orphaned run %s for %s (status=%s, created_at=%s)",
                claim.run.run_id, key, claim.run.status, claim.run.created_at,
            )
            await self.reclaim(key, claim.run.run_id, reason="orphaned: reclaimed after timeout")
            claim = await self._claim(key)
        return claim

    async def claim_next_version(self, subject_id: str, run_id: str | None = None) -> RunClaim:
        """Claim the lowest free analysis version at or above ``next_version``.

        Each candidate version is claimed with the same conditional insert as
        ``find_or_create``; a version taken by a concurrent caller is skipped,
        so two callers never end up sharing a version.
        """
        run_id = run_id or new_run_id()
        version = await self.next_version(subject_id)
        for _ in range(CLAIM_ATTEMPTS):
            key = LogicalKey.analysis(subject_id, version)
            claim = await self._claim(key, run_id)
            if claim.started:
                return claim
            logger.info("Version %d of %s was claimed concurrently by %s", version, subject_id, claim.run.run_id)
            version += 1
        raise ConflictError(f"Could not claim a new analysis version for {subject_id}")

    async def _claim(self, key: LogicalKey, run_id: str | None = None) -> RunClaim:
        run_id = run_id or new_run_id()
        for _ in range(CLAIM_ATTEMPTS):
            async with self.session_factory() as session:
                stmt = (
                    dialect_insert(session, ActiveRun)
                    .values(
                        pipeline=key.pipeline,
                        subject_id=key.subject_id,
                        version=key.version,
                        run_id=run_id,
                        created_at=utcnow(),
                    )
                    .on_conflict_do_nothing(index_elements=["pipeline", "subject_id", "version"])
                    .returning(ActiveRun.run_id)
                )
                inserted = (await session.execute(stmt)).scalar_one_or_none()

                if inserted is not None:
                    run = WorkflowRun(
                        run_id=run_id,
                        pipeline=key.pipeline,
                        subject_id=key.subject_id,
                        version=key.version,
                        status="pending",
                    )
                    session.add(run)
                    await session.commit()
                    logger.info("Created run %s for %s", run_id, key)
                    return RunClaim(run=run, started=True)

                run = await self._holder(session, key)
                await session.commit()
            if run is not None:
                return RunClaim(run=run, started=False)
            # The holder released the key between our insert and the read
            logger.info("Run holding %s was released mid-claim, retrying", key)
        raise ConflictError(f"Could not claim {key} after {CLAIM_ATTEMPTS} attempts")

    async def _holder(self, session: AsyncSession, key: LogicalKey) -> WorkflowRun | None:
        return (await session.execute(
            select(WorkflowRun)
            .join(ActiveRun, ActiveRun.run_id == WorkflowRun.run_id)
            .where(
                ActiveRun.pipeline == key.pipeline,
                ActiveRun.subject_id == key.subject_id,
                ActiveRun.version == key.version,
            )
        )).scalar_one_or_none()

    def _is_stale(self, run: WorkflowRun) -> bool:
        return run.created_at is not None and utcnow() - run.created_at > self.stale_after

    async def reclaim(self, key: LogicalKey, run_id: str, reason: str) -> None:
        """Fail a run that can no longer make progress and free its key."""
        try:
            await self.mark_terminal(run_id, "failed", error_message=reason)
        except InvalidTransition:
            pass  # already terminal; only the registry row is stale
        await self.release(key, run_id)

    async def release(self, key: LogicalKey, run_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(ActiveRun).where(
                    ActiveRun.pipeline == key.pipeline,
                    ActiveRun.subject_id == key.subject_id,
                    ActiveRun.version == key.version,
                    ActiveRun.run_id == run_id,
                )
            )
            await session.commit()

    async def reclaim_orphans(self) -> int:
        """Fail every non-terminal run and clear the registry.

        Event logs live in this process only, and the service runs as a single
        worker (see ``Settings.web_concurrency``). At startup anything still in
        flight therefore belongs to a process that no longer exists.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.status.in_(["pending", "running"]))
                .values(
                    status="failed",
                    error_message="orphaned: process restarted",
                    completed_at=utcnow(),
                )
            )
            await session.execute(delete(ActiveRun))
            await session.commit()
        if result.rowcount:
            logger.warning("Marked %d orphaned runs as failed", result.rowcount)
        return result.rowcount or 0

    # ── Transitions ──────────────────────────────────────────────────────────

    async def mark_running(self, run_id: str) -> None:
        await self._transition(run_id, ("pending",), status="running", started_at=utcnow())

    async def mark_terminal(
        self,
        run_id: str,
        status: str,
        error_message: str | None = None,
        stats: dict | None = None,
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransition(f"{status!r} is not a terminal status")
        await self._transition(
            run_id,
            ("pending", "running"),
            status=status,
            error_message=error_message,
            stats=stats,
            completed_at=utcnow(),
        )

    async def _transition(self, run_id: str, allowed_from: tuple[str, ...], **values) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.run_id == run_id, WorkflowRun.status.in_(allowed_from))
                .values(**values)
            )
            await session.commit()
        if result.rowcount == 1:
            return

        current = await self.lookup(run_id)  # raises RunNotFoundError
        raise InvalidTransition(
            f"Run {run_id}: illegal transition {current.status} -> {values['status']}"
        )

    # ── Queries ──────────────────────────────────────────────────────────────

    async def lookup(self, run_id: str) -> WorkflowRun:
        async with self.session_factory() as session:
            run = (await session.execute(
                select(WorkflowRun).where(WorkflowRun.run_id == run_id)
            )).scalar_one_or_none()
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    async def active_run(self, key: LogicalKey) -> WorkflowRun | None:
        async with self.session_factory() as session:
            return await self._holder(session, key)

    async def next_version(self, subject_id: str) -> int:
        """One past the highest analysis version that is persisted or in flight."""
        async with self.session_factory() as session:
            persisted = (await session.execute(
                select(func.max(VideoAnalysis.version)).where(VideoAnalysis.subject_id == subject_id)
            )).scalar()
            in_flight = (await session.execute(
                select(func.max(ActiveRun.version)).where(
                    ActiveRun.pipeline == "analysis",
                    ActiveRun.subject_id == subject_id,
                )
            )).scalar()
        return max(persisted or 0, in_flight or 0) + 1
