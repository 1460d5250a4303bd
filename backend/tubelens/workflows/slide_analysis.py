"""
Slide analysis workflow.

    loading    → pick the extracted slides to analyze and the transcript around each
    analyzing  → have the vision model render each slide as markdown, saving and
                 emitting one item event per slide as it finishes

Slides are picked from the video's completed extraction: the requested slide
indexes, or every slide that has an image.
"""

import logging
from dataclasses import dataclass

from tubelens.engine.pipeline import Step, StepContext, StepItem, StepPipeline, StepProgress, StepResult
from tubelens.errors import ValidationError
from tubelens.services.container import Services

logger = logging.getLogger(__name__)

CONTEXT_BUFFER_SECONDS = 10.0
ANALYZING_START_PERCENT = 10
ANALYZING_END_PERCENT = 95

SYSTEM_PROMPT = """\
You are an expert at reading presentation slides and turning them into clean markdown.
Reproduce the slide's text faithfully: headings, bullet lists, tables and code blocks.
Describe diagrams and charts briefly in prose. Use the transcript excerpt only to
disambiguate what is on the slide, never to add content that is not shown.
Respond with the markdown only.
"""


@dataclass
class PickedSlide:
    slide_index: int
    image_url: str
    start_time: float
    end_time: float
    video_title: str
    transcript_context: str


def transcript_context(segments: list[dict], start_time: float, end_time: float) -> str:
    """Text spoken while the slide was on screen, with a small buffer either side."""
    window_start = max(0.0, start_time - CONTEXT_BUFFER_SECONDS)
    window_end = end_time + CONTEXT_BUFFER_SECONDS
    return " ".join(
        s["text"] for s in segments
        if window_start <= s.get("start", -1) <= window_end
    )


def build_slide_prompt(slide: PickedSlide) -> str:
    parts = [
        f"Video: {slide.video_title}",
        f"Slide {slide.slide_index + 1}, shown from {slide.start_time:.0f}s to {slide.end_time:.0f}s.",
    ]
    if slide.transcript_context:
        parts.append(f"What the speaker says around this slide:\n{slide.transcript_context}")
    parts.append("Convert this slide to markdown.")
    return "\n\n".join(parts)


def build_slide_analysis_pipeline(services: Services) -> StepPipeline:
    async def loading(ctx: StepContext) -> list[PickedSlide]:
        subject_id = ctx.key.subject_id
        transcript = await services.transcripts.get_record(subject_id)
        slides = await services.results.load_slides(subject_id)
        if not slides:
            raise ValidationError(f"No extracted slides for video {subject_id}")

        wanted = ctx.params.get("slide_indexes")
        if wanted is not None:
            wanted = set(wanted)
            unknown = wanted - {s.slide_index for s in slides}
            if unknown:
                raise ValidationError(f"Unknown slide indexes: {sorted(unknown)}")
            slides = [s for s in slides if s.slide_index in wanted]

        picked = [
            PickedSlide(
                slide_index=s.slide_index,
                image_url=s.image_url,
                start_time=s.start_time,
                end_time=s.end_time,
                video_title=transcript.title,
                transcript_context=transcript_context(transcript.segments or [], s.start_time, s.end_time),
            )
            for s in slides
            if s.image_url
        ]
        if not picked:
            raise ValidationError("No slides selected for analysis")
        logger.info("Analyzing %d slides of %s", len(picked), subject_id)
        return picked

    async def analyzing(ctx: StepContext):
        picked: list[PickedSlide] = ctx.outputs["loading"]
        span = ANALYZING_END_PERCENT - ANALYZING_START_PERCENT
        for done, slide in enumerate(picked):
            yield StepProgress(
                f"Analyzing slide {slide.slide_index + 1} ({done + 1} of {len(picked)})...",
                percent=ANALYZING_START_PERCENT + done * span // len(picked),
            )
            markdown = await services.llm.describe_image(
                build_slide_prompt(slide), slide.image_url, system=SYSTEM_PROMPT,
            )
            await services.results.save_slide_analysis(ctx.key.subject_id, slide.slide_index, ctx.run_id, markdown)
            yield StepItem({"slideIndex": slide.slide_index, "markdown": markdown})
        yield StepResult(len(picked))

    def summarize(ctx: StepContext) -> dict:
        return {"subjectId": ctx.key.subject_id, "runId": ctx.run_id, "totalSlides": ctx.outputs["analyzing"]}

    return StepPipeline(
        "slide_analysis",
        [
            Step("loading", "Loading selected slides...", 0, loading),
            Step("analyzing", "Analyzing slides...", ANALYZING_START_PERCENT, analyzing),
        ],
        summarize=summarize,
    )
