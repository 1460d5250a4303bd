"""
WorkflowRun / ActiveRun models.

``workflow_runs`` keeps every execution attempt with its status history.
``active_runs`` is the run registry: at most one row per logical key, present
only while a run for that key is in flight.
"""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tubelens.database import Base, JSONType, utcnow

RUN_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    pipeline: Mapped[str] = mapped_column(String(20), index=True)  # analysis, extraction
    subject_id: Mapped[str] = mapped_column(String(64), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, running, completed, failed
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    stats: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "pipeline": self.pipeline,
            "subjectId": self.subject_id,
            "version": self.version,
            "status": self.status,
            "errorMessage": self.error_message,
            "stats": self.stats,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class ActiveRun(Base):
    __tablename__ = "active_runs"
    __table_args__ = (
        UniqueConstraint("pipeline", "subject_id", "version", name="uq_active_runs_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    pipeline: Mapped[str] = mapped_column(String(20))
    subject_id: Mapped[str] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, default=1)
    run_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
