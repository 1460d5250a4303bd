"""
Slide Analysis API — markdown renderings of extracted slides.

POST /api/slide-analysis/{subject_id}
  SSE stream of a new (or the in-flight) slide analysis run
GET  /api/slide-analysis/{subject_id}
  Stored markdown per slide
GET  /api/slide-analysis/{subject_id}/{run_id}
  Resume a run's stream from ?startIndex (or the Last-Event-ID header)
"""

from fastapi import APIRouter, Depends

from tubelens.api.deps import get_services, get_start_index
from tubelens.engine.registry import LogicalKey
from tubelens.errors import RunNotFoundError
from tubelens.schemas.schemas import SlideAnalysisRequest, SlideAnalysisResults
from tubelens.services.container import Services
from tubelens.workflows.slide_analysis import build_slide_analysis_pipeline

router = APIRouter(prefix="/api/slide-analysis", tags=["slide-analysis"])


async def _never_cached(key: LogicalKey) -> None:
    # Re-analysis is always explicit; stored markdown is read through GET
    return None


@router.post("/{subject_id}")
async def start_slide_analysis(
    subject_id: str,
    body: SlideAnalysisRequest | None = None,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    key = LogicalKey.slide_analysis(subject_id)
    resolved = await services.gateway.resolve(
        key,
        load_result=_never_cached,
        build_pipeline=lambda: build_slide_analysis_pipeline(services),
        params={"slide_indexes": body.slide_indexes if body else None},
        start_index=start_index,
    )
    return services.gateway.sse_response(resolved)


@router.get("/{subject_id}", response_model=SlideAnalysisResults)
async def list_slide_analyses(subject_id: str, services: Services = Depends(get_services)):
    LogicalKey.slide_analysis(subject_id)
    rows = await services.results.load_slide_analyses(subject_id)
    return SlideAnalysisResults(subject_id=subject_id, results=[row.to_dict() for row in rows])


@router.get("/{subject_id}/{run_id}")
async def resume_slide_analysis(
    subject_id: str,
    run_id: str,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    """Re-attach to a slide analysis run's event stream."""
    attached = await services.gateway.attach(run_id, start_index)
    if attached.run.pipeline != "slide_analysis" or attached.run.subject_id != subject_id:
        raise RunNotFoundError(f"Run {run_id} is not a slide analysis of {subject_id}")
    return services.gateway.sse_response(attached)
