"""
Runs API — status of a single workflow run.
"""

from fastapi import APIRouter, Depends

from tubelens.api.deps import get_services
from tubelens.services.container import Services

router = APIRouter(prefix="/api/runs", tags=["runs"])


@router.get("/{run_id}")
async def get_run(run_id: str, services: Services = Depends(get_services)):
    """Run status record, plus the last event index while its log is retained."""
    run = await services.registry.lookup(run_id)
    data = run.to_dict()
    if run_id in services.events:
        data["lastEventIndex"] = services.events.last_index(run_id)
    return data
