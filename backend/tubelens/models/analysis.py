from datetime import datetime

from sqlalchemy import String, Integer, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tubelens.database import Base, JSONType, utcnow


class VideoAnalysis(Base):
    """Completed, versioned transcript analysis for one video."""

    __tablename__ = "video_analyses"
    __table_args__ = (
        UniqueConstraint("subject_id", "version", name="uq_video_analyses_version"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    run_id: Mapped[str] = mapped_column(String(64))
    result: Mapped[dict] = mapped_column(JSONType)
    additional_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
