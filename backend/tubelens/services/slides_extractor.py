"""
Client for the slides extractor service.

The extractor downloads a video, segments it into static and moving spans,
uploads key frames to S3-compatible storage and publishes a manifest. Job
progress is exposed as an SSE stream of JSON ``JobUpdate`` objects.
"""

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

import httpx

from tubelens.config import settings
from tubelens.errors import DependencyError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobUpdate:
    status: JobStatus
    progress: float = 0.0
    message: str = ""
    metadata_uri: str | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "JobUpdate":
        try:
            status = JobStatus(data.get("status"))
        except ValueError as exc:
            raise DependencyError(f"Unknown extractor job status: {data.get('status')!r}") from exc
        return cls(
            status=status,
            progress=float(data.get("progress") or 0),
            message=data.get("message") or "",
            metadata_uri=data.get("metadata_uri"),
            error=data.get("error"),
        )


@dataclass
class CandidateFrame:
    frame_id: str | None
    start_time: float
    end_time: float
    image_url: str | None
    has_text: bool
    text_confidence: int  # percent
    is_duplicate: bool
    chapter_index: int = 0


def parse_s3_uri(uri: str) -> tuple[str, str] | None:
    """``s3://bucket/path/to/key`` → (bucket, key)."""
    if not uri or not uri.startswith("s3://"):
        return None
    bucket, _, key = uri[len("s3://"):].partition("/")
    if not bucket or not key:
        return None
    return bucket, key


def build_object_url(base_url: str, bucket: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{bucket}/{key}"


def chapter_for(start_time: float, chapters: list[dict] | None) -> int | None:
    """Index of the last chapter starting at or before ``start_time``.

    Returns 0 when there are no chapters and None when the time falls before
    the first chapter or past the explicit end of its chapter.
    """
    if not chapters:
        return 0
    index = None
    for i, chapter in enumerate(chapters):
        if chapter["startTime"] <= start_time:
            index = i
    if index is None:
        return None
    end_time = chapters[index].get("endTime")
    if end_time is not None and start_time >= end_time:
        return None
    return index


class SlidesExtractorClient:
    def __init__(
        self,
        base_url: str | None = None,
        password: str | None = None,
        image_base_url: str | None = None,
        job_timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.slides_extractor_url).rstrip("/")
        self.password = password or settings.slides_api_password
        self.image_base_url = image_base_url or settings.slides_image_base_url
        self.job_timeout_seconds = job_timeout_seconds or settings.slides_job_timeout_seconds
        self.transport = transport

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.password}"}

    async def trigger(self, video_id: str) -> None:
        url = f"{self.base_url}/process/youtube/{video_id}"
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                resp = await client.post(url, headers=self._headers)
        except httpx.HTTPError as exc:
            raise DependencyError(f"Network error triggering extraction for video {video_id}: {exc}") from exc
        if resp.status_code >= 400:
            raise DependencyError(
                f"Failed to trigger extraction for video {video_id}: "
                f"HTTP {resp.status_code} - {resp.text[:200]}"
            )
        logger.info("Triggered extraction for %s", video_id)

    async def watch(self, video_id: str) -> AsyncIterator[JobUpdate]:
        """Yield job updates until the job completes or fails."""
        url = f"{self.base_url}/jobs/{video_id}/stream"
        deadline = time.monotonic() + self.job_timeout_seconds
        timeout = httpx.Timeout(connect=10.0, read=self.job_timeout_seconds, write=10.0, pool=10.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                async with client.stream("GET", url, headers=self._headers) as resp:
                    if resp.status_code == 404:
                        raise DependencyError(f"Extraction job not found for video {video_id}")
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode(errors="replace")
                        raise DependencyError(
                            f"Failed to check job status for video {video_id}: "
                            f"HTTP {resp.status_code} - {body[:100]}"
                        )

                    data_lines: list[str] = []
                    async for line in resp.aiter_lines():
                        if time.monotonic() > deadline:
                            raise DependencyError(
                                f"Extraction job for video {video_id} timed out after "
                                f"{self.job_timeout_seconds:.0f}s"
                            )
                        if line.startswith("data:"):
                            data_lines.append(line[5:].lstrip())
                            continue
                        if line or not data_lines:
                            continue  # comments, event/id fields, keep-alives

                        raw = "\n".join(data_lines)
                        data_lines = []
                        try:
                            update = JobUpdate.from_dict(json.loads(raw))
                        except json.JSONDecodeError:
                            logger.warning("Unparseable job event for %s: %s", video_id, raw[:200])
                            continue
                        yield update
                        if update.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                            return
        except httpx.HTTPError as exc:
            raise DependencyError(f"Job stream for video {video_id} failed: {exc}") from exc

        raise DependencyError(f"Job stream for video {video_id} ended before the job finished")

    async def fetch_manifest(self, uri: str) -> dict:
        parsed = parse_s3_uri(uri)
        if parsed is None:
            raise DependencyError(f"Invalid S3 URI: {uri}")
        url = build_object_url(self.image_base_url, *parsed)
        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self.transport) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise DependencyError(f"Failed to fetch manifest from {url}: {exc}") from exc
        if resp.status_code >= 400:
            raise DependencyError(f"Failed to fetch manifest from {url}: HTTP {resp.status_code}")
        try:
            manifest = resp.json()
        except ValueError as exc:
            raise DependencyError(f"Failed to parse manifest JSON from {url}: {exc}") from exc
        if not isinstance(manifest, dict):
            raise DependencyError(f"Manifest at {url} is not an object")
        return manifest

    def segment(self, video_id: str, manifest: dict, chapters: list[dict] | None = None) -> list[CandidateFrame]:
        """Static segments with a usable first frame, ordered by start time.

        With chapters, each frame is tagged with the chapter it starts in and
        frames falling outside every chapter are dropped.
        """
        video = manifest.get(video_id)
        if not isinstance(video, dict):
            raise DependencyError(f"Manifest has no entry for video {video_id}")

        frames = []
        for seg in video.get("segments") or []:
            if seg.get("kind") != "static":
                continue
            frame = seg.get("first_frame") or {}
            parsed = parse_s3_uri(frame.get("s3_uri") or "")
            if parsed is None:
                continue
            start_time = float(seg["start_time"])
            chapter_index = chapter_for(start_time, chapters)
            if chapter_index is None:
                continue
            frames.append(CandidateFrame(
                frame_id=frame.get("frame_id"),
                start_time=start_time,
                end_time=float(seg["end_time"]),
                image_url=build_object_url(self.image_base_url, *parsed),
                has_text=bool(frame.get("has_text")),
                text_confidence=round(float(frame.get("text_confidence") or 0) * 100),
                is_duplicate=frame.get("duplicate_of") is not None,
                chapter_index=chapter_index,
            ))
        frames.sort(key=lambda f: f.start_time)
        return frames
