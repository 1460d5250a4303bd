"""
Transcript store.

Transcripts are ingested from outside (YouTube scraping is not part of this
service) and read back by the analysis pipeline, formatted for the LLM as one
``[m:ss] text`` line per segment.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from tubelens.errors import ConflictError, TranscriptNotFoundError, ValidationError
from tubelens.models import Transcript

logger = logging.getLogger(__name__)


@dataclass
class TranscriptData:
    video_id: str
    title: str
    channel_name: str
    description: str | None
    transcript: str  # formatted for the LLM


def format_timestamp(seconds: float) -> str:
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"


def format_transcript_for_llm(segments: list[dict]) -> str:
    return "\n".join(f"[{format_timestamp(s['start'])}] {s['text']}" for s in segments)


class TranscriptStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_record(self, video_id: str) -> Transcript:
        async with self.session_factory() as session:
            row = (await session.execute(
                select(Transcript).where(Transcript.video_id == video_id)
            )).scalar_one_or_none()
        if row is None:
            raise TranscriptNotFoundError(f"No transcript found for video: {video_id}")
        return row

    async def get(self, video_id: str) -> TranscriptData:
        row = await self.get_record(video_id)
        segments = row.segments or []
        if not segments or not all(
            isinstance(s, dict) and "start" in s and "text" in s for s in segments
        ):
            raise ValidationError(f"Transcript for video {video_id} is malformed")
        return TranscriptData(
            video_id=row.video_id,
            title=row.title,
            channel_name=row.channel_name,
            description=row.description,
            transcript=format_transcript_for_llm(segments),
        )

    async def insert(
        self,
        video_id: str,
        title: str,
        segments: list[dict],
        channel_name: str = "",
        description: str | None = None,
    ) -> Transcript:
        row = Transcript(
            video_id=video_id,
            title=title,
            channel_name=channel_name,
            description=description,
            segments=segments,
        )
        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"Transcript for video {video_id} already exists")
        logger.info("Stored transcript for %s (%d segments)", video_id, len(segments))
        return row
