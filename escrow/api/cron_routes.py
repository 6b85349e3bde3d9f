from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from escrow.api.auth import require_cron_secret
from escrow.api.schemas import AutoReleaseStatus, SweepResponse
from escrow.utils.time import iso_now
from escrow.wiring import Components, get_components

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.get("/auto-release", response_model=AutoReleaseStatus, dependencies=[Depends(require_cron_secret)])
async def auto_release_status(comps: Components = Depends(get_components)):
    """Dry run: how many escrows the next sweep would release. Writes nothing."""
    count = await run_in_threadpool(comps.scheduler.count_eligible)
    return AutoReleaseStatus(eligibleCount=count, timestamp=iso_now())


@router.post("/auto-release", response_model=SweepResponse, dependencies=[Depends(require_cron_secret)])
async def auto_release_run(comps: Components = Depends(get_components)):
    result = await run_in_threadpool(comps.scheduler.run)
    return SweepResponse(**result.to_dict())
