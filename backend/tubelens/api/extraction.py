"""
Extraction API — slide extraction per video.

POST /api/extraction/{subject_id}
  Completed extraction as JSON, or an SSE stream of the (new or in-flight) run
GET  /api/extraction/{subject_id}/{run_id}
  Resume a run's stream from ?startIndex (or the Last-Event-ID header)
GET  /api/extraction/{subject_id}
  Current extraction status
"""

from fastapi import APIRouter, Depends

from tubelens.api.deps import get_services, get_start_index
from tubelens.engine.gateway import Cached
from tubelens.engine.registry import LogicalKey
from tubelens.errors import RunNotFoundError
from tubelens.schemas.schemas import ExtractionRequest, ExtractionStatus
from tubelens.services.container import Services
from tubelens.workflows.extraction import build_extraction_pipeline

router = APIRouter(prefix="/api/extraction", tags=["extraction"])


@router.post("/{subject_id}")
async def start_extraction(
    subject_id: str,
    body: ExtractionRequest | None = None,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    key = LogicalKey.extraction(subject_id)
    chapters = [c.model_dump(by_alias=True) for c in body.chapters] if body else []
    resolved = await services.gateway.resolve(
        key,
        load_result=services.results.load_extraction,
        build_pipeline=lambda: build_extraction_pipeline(services),
        params={"chapters": chapters},
        start_index=start_index,
    )
    if isinstance(resolved, Cached):
        return {"status": "completed", "totalSlides": len(resolved.result), "slides": resolved.result}
    return services.gateway.sse_response(resolved)


@router.get("/{subject_id}/{run_id}")
async def resume_extraction(
    subject_id: str,
    run_id: str,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    """Re-attach to an extraction run's event stream."""
    attached = await services.gateway.attach(run_id, start_index)
    if attached.run.pipeline != "extraction" or attached.run.subject_id != subject_id:
        raise RunNotFoundError(f"Run {run_id} is not an extraction of {subject_id}")
    return services.gateway.sse_response(attached)


@router.get("/{subject_id}", response_model=ExtractionStatus)
async def extraction_status(subject_id: str, services: Services = Depends(get_services)):
    key = LogicalKey.extraction(subject_id)

    slides = await services.results.load_extraction(key)
    if slides is not None:
        record = await services.results.extraction_record(subject_id)
        return ExtractionStatus(
            status="completed",
            run_id=record.run_id,
            total_slides=len(slides),
            slides=slides,
        )

    active = await services.registry.active_run(key)
    if active is not None:
        return ExtractionStatus(status="in_progress", run_id=active.run_id)

    record = await services.results.extraction_record(subject_id)
    if record is not None and record.status == "failed":
        return ExtractionStatus(status="idle", run_id=record.run_id, error=record.error_message)
    return ExtractionStatus(status="idle")
