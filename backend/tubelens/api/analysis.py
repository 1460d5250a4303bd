"""
Analysis API — versioned transcript analyses.

GET  /api/analysis/{subject_id}/{version}
  Cached result as JSON, or an SSE stream of the run computing exactly that version
GET  /api/analysis/{subject_id}
  List stored versions
POST /api/analysis/{subject_id}
  Start an analysis at the next free version
GET  /api/analysis/{subject_id}/runs/{run_id}
  Resume a run's stream from ?startIndex (or the Last-Event-ID header)
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tubelens.api.deps import get_db, get_services, get_start_index
from tubelens.engine.gateway import Cached
from tubelens.engine.registry import LogicalKey
from tubelens.errors import RunNotFoundError, ValidationError
from tubelens.models import VideoAnalysis
from tubelens.schemas.schemas import (
    AnalysisRequest,
    AnalysisResultResponse,
    AnalysisVersionList,
    AnalysisVersionSummary,
)
from tubelens.services.container import Services
from tubelens.workflows.analysis import build_analysis_pipeline

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


def parse_version(raw: str) -> int:
    try:
        version = int(raw)
    except ValueError:
        raise ValidationError(f"Version must be a positive integer, got {raw!r}")
    if version < 1:
        raise ValidationError(f"Version must be a positive integer, got {raw!r}")
    return version


def _result_response(row: VideoAnalysis) -> JSONResponse:
    body = AnalysisResultResponse(
        subject_id=row.subject_id,
        version=row.version,
        result=row.result,
        created_at=row.created_at.isoformat() if row.created_at else None,
    )
    return JSONResponse(content=body.model_dump(by_alias=True))


async def _serve(services: Services, key: LogicalKey, params: dict, start_index: int):
    resolved = await services.gateway.resolve(
        key,
        load_result=services.results.load_analysis,
        build_pipeline=lambda: build_analysis_pipeline(services),
        params=params,
        start_index=start_index,
    )
    if isinstance(resolved, Cached):
        return _result_response(resolved.result)
    return services.gateway.sse_response(resolved, headers={"X-Analysis-Version": str(key.version)})


@router.get("/{subject_id}", response_model=AnalysisVersionList)
async def list_analysis_versions(subject_id: str, db: AsyncSession = Depends(get_db)):
    """List stored analysis versions, newest first."""
    LogicalKey.analysis(subject_id, 1)
    rows = list((await db.execute(
        select(VideoAnalysis)
        .where(VideoAnalysis.subject_id == subject_id)
        .order_by(VideoAnalysis.version.desc())
    )).scalars())
    return AnalysisVersionList(
        subject_id=subject_id,
        runs=[
            AnalysisVersionSummary(
                version=r.version,
                created_at=r.created_at.isoformat() if r.created_at else None,
                additional_instructions=r.additional_instructions,
            )
            for r in rows
        ],
        latest_version=rows[0].version if rows else None,
    )


@router.post("/{subject_id}")
async def start_analysis(
    subject_id: str,
    body: AnalysisRequest | None = None,
    services: Services = Depends(get_services),
):
    """Start an analysis at the next version number."""
    LogicalKey.analysis(subject_id, 1)
    params = {"additional_instructions": body.additional_instructions if body else None}
    attached = await services.gateway.start_next_version(
        subject_id,
        load_result=services.results.load_analysis,
        build_pipeline=lambda: build_analysis_pipeline(services),
        params=params,
    )
    return services.gateway.sse_response(attached, headers={"X-Analysis-Version": str(attached.run.version)})


@router.get("/{subject_id}/runs/{run_id}")
async def resume_analysis(
    subject_id: str,
    run_id: str,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    """Re-attach to an analysis run's event stream."""
    attached = await services.gateway.attach(run_id, start_index)
    if attached.run.pipeline != "analysis" or attached.run.subject_id != subject_id:
        raise RunNotFoundError(f"Run {run_id} is not an analysis of {subject_id}")
    return services.gateway.sse_response(attached, headers={"X-Analysis-Version": str(attached.run.version)})


@router.get("/{subject_id}/{version}")
async def get_analysis(
    subject_id: str,
    version: str,
    start_index: int = Depends(get_start_index),
    services: Services = Depends(get_services),
):
    """
    Return the stored analysis for this exact version, or stream the run
    computing it. Never moves to another version.
    """
    key = LogicalKey.analysis(subject_id, parse_version(version))
    return await _serve(services, key, {}, start_index)
