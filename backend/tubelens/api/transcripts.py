"""
Transcripts API — ingest and read back video transcripts.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tubelens.api.deps import get_db, get_services
from tubelens.errors import TranscriptNotFoundError
from tubelens.models import Transcript
from tubelens.schemas.schemas import TranscriptCreate, TranscriptOut
from tubelens.services.container import Services

router = APIRouter(prefix="/api/transcripts", tags=["transcripts"])


def _to_out(row: Transcript) -> TranscriptOut:
    return TranscriptOut(
        video_id=row.video_id,
        title=row.title,
        channel_name=row.channel_name,
        description=row.description,
        segments=row.segments,
        created_at=row.created_at.isoformat() if row.created_at else None,
    )


@router.post("", response_model=TranscriptOut, status_code=201)
async def create_transcript(body: TranscriptCreate, services: Services = Depends(get_services)):
    row = await services.transcripts.insert(
        video_id=body.video_id,
        title=body.title,
        segments=[s.model_dump() for s in body.segments],
        channel_name=body.channel_name,
        description=body.description,
    )
    return _to_out(row)


@router.get("/{video_id}", response_model=TranscriptOut)
async def get_transcript(video_id: str, db: AsyncSession = Depends(get_db)):
    row = (await db.execute(
        select(Transcript).where(Transcript.video_id == video_id)
    )).scalar_one_or_none()
    if row is None:
        raise TranscriptNotFoundError(f"No transcript found for video: {video_id}")
    return _to_out(row)
