"""
Prometheus metrics endpoint.

Exposes GET /metrics in Prometheus text exposition format. Point-in-time
gauges owned by the service container are refreshed on each scrape.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from tubelens.api.deps import get_services
from tubelens.middleware.metrics import pipeline_runs_in_flight
from tubelens.services.container import Services

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics(services: Services = Depends(get_services)):
    pipeline_runs_in_flight.set(services.runner.active)
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
