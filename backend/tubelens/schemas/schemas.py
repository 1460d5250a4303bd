"""
Pydantic schemas for API request/response models.

The wire format is camelCase; attributes stay snake_case.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Transcripts ──

class TranscriptSegment(BaseModel):
    start: float = Field(ge=0)
    end: float = Field(ge=0)
    text: str


class TranscriptCreate(CamelModel):
    video_id: str = Field(pattern=r"^[A-Za-z0-9_-]{1,64}$")
    title: str = Field(min_length=1, max_length=500)
    channel_name: str = ""
    description: str | None = None
    segments: list[TranscriptSegment] = Field(min_length=1)


class TranscriptOut(CamelModel):
    video_id: str
    title: str
    channel_name: str
    description: str | None = None
    segments: list[TranscriptSegment]
    created_at: str | None = None


# ── Analysis ──

class AnalysisRequest(CamelModel):
    additional_instructions: str | None = Field(None, max_length=4000)


class AnalysisResultResponse(CamelModel):
    status: str = "completed"
    subject_id: str
    version: int
    result: dict
    created_at: str | None = None


class AnalysisVersionSummary(CamelModel):
    version: int
    created_at: str | None = None
    additional_instructions: str | None = None


class AnalysisVersionList(CamelModel):
    subject_id: str
    runs: list[AnalysisVersionSummary]
    latest_version: int | None = None


# ── Extraction ──

class Chapter(CamelModel):
    title: str
    start_time: float = Field(ge=0)
    end_time: float | None = Field(None, ge=0)

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("endTime must not precede startTime")
        return self


class ExtractionRequest(CamelModel):
    chapters: list[Chapter] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_order(self):
        starts = [c.start_time for c in self.chapters]
        if starts != sorted(starts):
            raise ValueError("chapters must be ordered by startTime")
        return self


class Slide(CamelModel):
    slide_index: int
    chapter_index: int
    frame_id: str | None = None
    start_time: float
    end_time: float
    image_url: str | None = None
    has_text: bool
    text_confidence: int
    is_duplicate: bool = False


class ExtractionStatus(CamelModel):
    status: str  # completed, in_progress, idle
    run_id: str | None = None
    total_slides: int = 0
    slides: list[Slide] | None = None
    error: str | None = None


# ── Slide analysis ──

class SlideAnalysisRequest(CamelModel):
    slide_indexes: list[int] | None = Field(None, min_length=1)

    @model_validator(mode="after")
    def _check_indexes(self):
        if self.slide_indexes is not None and any(i < 0 for i in self.slide_indexes):
            raise ValueError("slideIndexes must be >= 0")
        return self


class SlideMarkdown(CamelModel):
    slide_index: int
    markdown: str
    run_id: str
    created_at: str | None = None


class SlideAnalysisResults(CamelModel):
    subject_id: str
    results: list[SlideMarkdown]
