from datetime import datetime

from sqlalchemy import String, Integer, Float, Boolean, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tubelens.database import Base, JSONType, utcnow


class SlideExtraction(Base):
    __tablename__ = "slide_extractions"

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="completed")  # completed, failed
    total_slides: Mapped[int] = mapped_column(Integer, default=0)
    chapters: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class VideoSlide(Base):
    __tablename__ = "video_slides"
    __table_args__ = (
        UniqueConstraint("subject_id", "slide_index", name="uq_video_slides_index"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), index=True)
    slide_index: Mapped[int] = mapped_column(Integer)
    chapter_index: Mapped[int] = mapped_column(Integer, default=0)
    frame_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    start_time: Mapped[float] = mapped_column(Float)
    end_time: Mapped[float] = mapped_column(Float)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_text: Mapped[bool] = mapped_column(Boolean, default=False)
    text_confidence: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "slideIndex": self.slide_index,
            "chapterIndex": self.chapter_index,
            "frameId": self.frame_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "imageUrl": self.image_url,
            "hasText": self.has_text,
            "textConfidence": self.text_confidence,
            "isDuplicate": self.is_duplicate,
        }


class SlideAnalysis(Base):
    """Markdown rendering of one extracted slide, produced by a vision model."""

    __tablename__ = "slide_analyses"
    __table_args__ = (
        UniqueConstraint("subject_id", "slide_index", name="uq_slide_analyses_index"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), index=True)
    slide_index: Mapped[int] = mapped_column(Integer)
    run_id: Mapped[str] = mapped_column(String(64))
    markdown: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "slideIndex": self.slide_index,
            "markdown": self.markdown,
            "runId": self.run_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
