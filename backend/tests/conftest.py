"""Shared test fixtures for backend tests."""

import asyncio
import json
import os
import tempfile
from typing import AsyncGenerator

# Settings are read at import time; point them at throwaway infrastructure first.
_TMP_DIR = tempfile.mkdtemp(prefix="tubelens-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/import.db"
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "test"
os.environ["WEB_CONCURRENCY"] = "1"

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from tubelens.api.deps import get_db, get_services  # noqa: E402
from tubelens.config import settings  # noqa: E402
from tubelens.database import Base, create_engine  # noqa: E402
from tubelens.errors import DependencyError  # noqa: E402
from tubelens.main import app  # noqa: E402
from tubelens.services.container import Services, build_services  # noqa: E402
from tubelens.services.slides_extractor import JobStatus, JobUpdate, SlidesExtractorClient  # noqa: E402

ANALYSIS_RESULT = {
    "reasoning": "A short talk; summary and takeaways are enough.",
    "schema": {
        "summary": {"type": "string", "description": "Detailed summary"},
        "key_takeaways": {"type": "string[]", "description": "Main points"},
    },
    "analysis": {
        "summary": "## Summary\nThe speaker explains event logs.",
        "key_takeaways": ["Logs are append-only", "Readers resume by index"],
    },
}

SEGMENTS = [
    {"start": 0.0, "end": 4.0, "text": "Welcome back to the channel."},
    {"start": 4.0, "end": 65.5, "text": "Today we talk about event logs."},
    {"start": 3725.0, "end": 3730.0, "text": "Thanks for watching."},
]


class FakeLLM:
    """Streams a canned JSON answer in small chunks.

    ``gate`` lets a test hold the stream open while it attaches more readers.
    """

    model = "fake-model"

    def __init__(self, result: dict | None = None, fail_with: Exception | None = None, chunk_size: int = 40):
        self.text = json.dumps(result or ANALYSIS_RESULT)
        self.fail_with = fail_with
        self.chunk_size = chunk_size
        self.gate = asyncio.Event()
        self.gate.set()
        self.calls: list[dict] = []

    async def stream(self, prompt, system=None, schema=None):
        self.calls.append({"prompt": prompt, "system": system, "schema": schema})
        await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        for i in range(0, len(self.text), self.chunk_size):
            yield self.text[i:i + self.chunk_size]
            await asyncio.sleep(0)

    async def generate(self, prompt, system=None, schema=None, images=None):
        return json.loads(self.text) if schema is not None else self.text

    async def describe_image(self, prompt, image_url, system=None):
        self.calls.append({"prompt": prompt, "system": system, "image_url": image_url})
        await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return f"# Slide\n\n![]({image_url})"

    async def is_available(self) -> bool:
        return True


def make_manifest(video_id: str, starts: list[float]) -> dict:
    segments = []
    for i, start in enumerate(starts):
        segments.append({"kind": "moving", "start_time": start - 1, "end_time": start, "duration": 1})
        segments.append({
            "kind": "static",
            "start_time": start,
            "end_time": start + 10,
            "duration": 10,
            "first_frame": {
                "frame_id": f"frame-{i}",
                "s3_uri": f"s3://slides/{video_id}/frame-{i}.webp",
                "has_text": i % 2 == 0,
                "text_confidence": 0.873,
                "duplicate_of": None,
                "skip_reason": None,
            },
        })
    return {video_id: {"segments": segments, "updated_at": "2026-10-19T09:00:00+00:00"}}


class FakeExtractor(SlidesExtractorClient):
    """Real manifest segmentation over canned job updates and manifests."""

    def __init__(self, manifests: dict[str, dict] | None = None, fail_job: str | None = None):
        super().__init__(
            base_url="http://extractor.test",
            password="test-password",
            image_base_url="http://images.test",
            job_timeout_seconds=5,
        )
        self.manifests = manifests or {}
        self.fail_job = fail_job
        self.gate = asyncio.Event()
        self.gate.set()
        self.triggered: list[str] = []

    async def trigger(self, video_id: str) -> None:
        self.triggered.append(video_id)

    async def watch(self, video_id: str):
        yield JobUpdate(status=JobStatus.DOWNLOADING, progress=10, message="Downloading video")
        await self.gate.wait()
        yield JobUpdate(status=JobStatus.EXTRACTING, progress=60, message="Extracting frames")
        if self.fail_job:
            yield JobUpdate(status=JobStatus.FAILED, progress=60, error=self.fail_job)
            return
        yield JobUpdate(
            status=JobStatus.COMPLETED,
            progress=100,
            message="Done",
            metadata_uri=f"s3://manifests/{video_id}/manifest.json",
        )

    async def fetch_manifest(self, uri: str) -> dict:
        video_id = uri.split("/")[3]
        if video_id not in self.manifests:
            raise DependencyError(f"Failed to fetch manifest from {uri}: HTTP 404")
        return self.manifests[video_id]


def parse_sse(body: str) -> list[dict]:
    """Split an SSE body into frames of {id, event, data}."""
    frames = []
    for block in body.strip().split("\n\n"):
        if not block:
            continue
        frame = {}
        for line in block.split("\n"):
            field, _, value = line.partition(": ")
            frame[field] = value
        frame["id"] = int(frame["id"])
        frame["data"] = json.loads(frame["data"])
        frames.append(frame)
    return frames


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """A fresh SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest_asyncio.fixture
async def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest_asyncio.fixture
async def services(session_factory, fake_llm, fake_extractor) -> AsyncGenerator[Services, None]:
    svc = build_services(settings, session_factory, llm=fake_llm, extractor=fake_extractor)
    yield svc
    await svc.runner.shutdown()


def _override_db(session_factory: async_sessionmaker):
    """Create a dependency override for get_db."""
    async def _get_db():
        async with session_factory() as session:
            yield session
    return _get_db


@pytest_asyncio.fixture
async def client(services: Services, session_factory) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_db] = _override_db(session_factory)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def wait_for_runs(services: Services, timeout: float = 5.0) -> None:
    """Wait until every launched pipeline task has finished."""
    async def _drain():
        while services.runner.active:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_drain(), timeout)
