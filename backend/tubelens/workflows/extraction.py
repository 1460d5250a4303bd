"""
Slide extraction workflow.

    starting    → ask the extractor service to process the video
    monitoring  → follow the extractor's job stream until it publishes a manifest
    fetching    → download the manifest
    processing  → turn static segments into slides, one item event per slide
    saving      → replace the video's stored slides

A failed run is recorded on the video's extraction row so the status endpoint
can report it after the event log has been swept.
"""

import logging
from contextlib import aclosing

from tubelens.engine.pipeline import (
    Step,
    StepContext,
    StepFailed,
    StepItem,
    StepPipeline,
    StepProgress,
    StepResult,
)
from tubelens.errors import DependencyError
from tubelens.services.container import Services
from tubelens.services.slides_extractor import CandidateFrame, JobStatus

logger = logging.getLogger(__name__)

MONITOR_START_PERCENT = 5
MONITOR_END_PERCENT = 55


def slide_payload(slide_index: int, frame: CandidateFrame) -> dict:
    return {
        "slideIndex": slide_index,
        "chapterIndex": frame.chapter_index,
        "frameId": frame.frame_id,
        "startTime": frame.start_time,
        "endTime": frame.end_time,
        "imageUrl": frame.image_url,
        "hasText": frame.has_text,
        "textConfidence": frame.text_confidence,
        "isDuplicate": frame.is_duplicate,
    }


def build_extraction_pipeline(services: Services) -> StepPipeline:
    extractor = services.extractor

    async def starting(ctx: StepContext) -> None:
        await extractor.trigger(ctx.key.subject_id)

    async def monitoring(ctx: StepContext):
        span = MONITOR_END_PERCENT - MONITOR_START_PERCENT
        async with aclosing(extractor.watch(ctx.key.subject_id)) as updates:
            async for update in updates:
                if update.status == JobStatus.FAILED:
                    raise DependencyError(update.error or "Extraction failed")
                if update.status == JobStatus.COMPLETED:
                    if not update.metadata_uri:
                        raise DependencyError("Extraction completed without a manifest URI")
                    yield StepResult(update.metadata_uri)
                    return
                progress = min(max(update.progress, 0.0), 100.0)
                yield StepProgress(
                    update.message or update.status.value,
                    percent=MONITOR_START_PERCENT + int(progress * span / 100),
                )
        raise DependencyError("Extractor job stream ended before the job finished")

    async def fetching(ctx: StepContext) -> dict:
        return await extractor.fetch_manifest(ctx.outputs["monitoring"])

    async def processing(ctx: StepContext):
        frames = extractor.segment(ctx.key.subject_id, ctx.outputs["fetching"], ctx.params.get("chapters"))
        logger.info("Manifest for %s yielded %d slides", ctx.key.subject_id, len(frames))
        for slide_index, frame in enumerate(frames):
            yield StepItem(slide_payload(slide_index, frame))

    async def saving(ctx: StepContext) -> int:
        slides = ctx.outputs["processing"]
        await services.results.save_extraction(
            ctx.key.subject_id, ctx.run_id, slides, chapters=ctx.params.get("chapters"),
        )
        return len(slides)

    def summarize(ctx: StepContext) -> dict:
        return {"subjectId": ctx.key.subject_id, "runId": ctx.run_id, "totalSlides": ctx.outputs["saving"]}

    async def record_failure(ctx: StepContext, failure: StepFailed) -> None:
        await services.results.record_extraction_failure(ctx.key.subject_id, ctx.run_id, str(failure))

    return StepPipeline(
        "extraction",
        [
            Step("starting", "Starting slide extraction...", 0, starting),
            Step("monitoring", "Waiting for the extractor to process the video...", MONITOR_START_PERCENT, monitoring),
            Step("fetching", "Fetching slide manifest...", 60, fetching),
            Step("processing", "Processing slides...", 70, processing),
            Step("saving", "Saving slides...", 95, saving),
        ],
        summarize=summarize,
        on_failure=record_failure,
    )
