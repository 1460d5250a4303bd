"""
Result cache — durable artifacts of completed runs.

Analyses are stored per (subject, version); extractions once per subject;
slide analyses once per slide.
The gateway consults these loaders before it claims or attaches to a run.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from tubelens.database import dialect_insert, utcnow
from tubelens.engine.registry import LogicalKey
from tubelens.models import SlideAnalysis, SlideExtraction, VideoAnalysis, VideoSlide

logger = logging.getLogger(__name__)


class ResultCache:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ── Analysis ─────────────────────────────────────────────────────────────

    async def load_analysis(self, key: LogicalKey) -> VideoAnalysis | None:
        async with self.session_factory() as session:
            return (await session.execute(
                select(VideoAnalysis).where(
                    VideoAnalysis.subject_id == key.subject_id,
                    VideoAnalysis.version == key.version,
                )
            )).scalar_one_or_none()

    async def save_analysis(
        self,
        key: LogicalKey,
        run_id: str,
        result: dict,
        additional_instructions: str | None = None,
    ) -> bool:
        """Persist an analysis. Returns False if this version was already stored."""
        async with self.session_factory() as session:
            stmt = (
                dialect_insert(session, VideoAnalysis)
                .values(
                    subject_id=key.subject_id,
                    version=key.version,
                    run_id=run_id,
                    result=result,
                    additional_instructions=additional_instructions,
                    created_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["subject_id", "version"])
                .returning(VideoAnalysis.id)
            )
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        if inserted is None:
            logger.warning("Analysis %s already persisted; keeping the existing result", key)
        return inserted is not None

    # ── Extraction ───────────────────────────────────────────────────────────

    async def extraction_record(self, subject_id: str) -> SlideExtraction | None:
        async with self.session_factory() as session:
            return (await session.execute(
                select(SlideExtraction).where(SlideExtraction.subject_id == subject_id)
            )).scalar_one_or_none()

    async def load_slides(self, subject_id: str) -> list[VideoSlide]:
        async with self.session_factory() as session:
            return list((await session.execute(
                select(VideoSlide)
                .where(VideoSlide.subject_id == subject_id)
                .order_by(VideoSlide.slide_index)
            )).scalars())

    async def load_extraction(self, key: LogicalKey) -> list[dict] | None:
        """Slides of a completed extraction, or None if there is none yet."""
        record = await self.extraction_record(key.subject_id)
        if record is None or record.status != "completed":
            return None
        return [slide.to_dict() for slide in await self.load_slides(key.subject_id)]

    async def save_extraction(
        self,
        subject_id: str,
        run_id: str,
        slides: list[dict],
        chapters: list[dict] | None = None,
    ) -> None:
        """Replace the subject's slides and mark its extraction completed, atomically."""
        async with self.session_factory() as session:
            await session.execute(delete(VideoSlide).where(VideoSlide.subject_id == subject_id))
            session.add_all(
                VideoSlide(
                    subject_id=subject_id,
                    slide_index=s["slideIndex"],
                    chapter_index=s["chapterIndex"],
                    frame_id=s.get("frameId"),
                    start_time=s["startTime"],
                    end_time=s["endTime"],
                    image_url=s.get("imageUrl"),
                    has_text=s.get("hasText", False),
                    text_confidence=s.get("textConfidence", 0),
                    is_duplicate=s.get("isDuplicate", False),
                )
                for s in slides
            )

            record = (await session.execute(
                select(SlideExtraction).where(SlideExtraction.subject_id == subject_id)
            )).scalar_one_or_none()
            if record is None:
                record = SlideExtraction(subject_id=subject_id)
                session.add(record)
            record.run_id = run_id
            record.status = "completed"
            record.total_slides = len(slides)
            record.chapters = chapters or None
            record.error_message = None
            await session.commit()
        logger.info("Saved %d slides for %s", len(slides), subject_id)

    async def record_extraction_failure(self, subject_id: str, run_id: str, error_message: str) -> None:
        """Mark the subject's extraction failed. A completed extraction is left untouched."""
        async with self.session_factory() as session:
            record = (await session.execute(
                select(SlideExtraction).where(SlideExtraction.subject_id == subject_id)
            )).scalar_one_or_none()
            if record is None:
                record = SlideExtraction(subject_id=subject_id, total_slides=0)
                session.add(record)
            elif record.status == "completed":
                logger.warning("Extraction for %s already completed; not recording failure of %s", subject_id, run_id)
                return
            record.run_id = run_id
            record.status = "failed"
            record.error_message = error_message
            await session.commit()

    # ── Slide analysis ───────────────────────────────────────────────────────

    async def load_slide_analyses(self, subject_id: str) -> list[SlideAnalysis]:
        async with self.session_factory() as session:
            return list((await session.execute(
                select(SlideAnalysis)
                .where(SlideAnalysis.subject_id == subject_id)
                .order_by(SlideAnalysis.slide_index)
            )).scalars())

    async def save_slide_analysis(self, subject_id: str, slide_index: int, run_id: str, markdown: str) -> None:
        """Store one slide's markdown, replacing an earlier analysis of the same slide."""
        async with self.session_factory() as session:
            row = (await session.execute(
                select(SlideAnalysis).where(
                    SlideAnalysis.subject_id == subject_id,
                    SlideAnalysis.slide_index == slide_index,
                )
            )).scalar_one_or_none()
            if row is None:
                row = SlideAnalysis(subject_id=subject_id, slide_index=slide_index)
                session.add(row)
            row.run_id = run_id
            row.markdown = markdown
            row.created_at = utcnow()
            await session.commit()
