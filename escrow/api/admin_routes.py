from fastapi import APIRouter, Body, Depends
from starlette.concurrency import run_in_threadpool

from escrow.api.auth import require_admin
from escrow.api.schemas import ResolveDisputeRequest
from escrow.core import state_machine as sm
from escrow.store.models import to_doc
from escrow.wiring import Components, get_components
import escrow.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/intents/{reference}")
def get_intent_snapshot(reference: str, _=Depends(require_admin), comps: Components = Depends(get_components)):
    """Full intent document plus what may happen to it next."""
    intent = comps.escrow.get_intent(reference)
    return {
        "intent": to_doc(intent),
        "terminal": intent.is_terminal(),
        "allowedEvents": sm.allowed_events(intent.status),
        "disputeBlocked": comps.gate.is_blocked(intent.engagementId),
    }


@router.get("/disputes/{engagement_id}")
def get_dispute(engagement_id: str, _=Depends(require_admin), comps: Components = Depends(get_components)):
    return to_doc(comps.disputes.get_dispute(engagement_id))


@router.post("/disputes/{engagement_id}/resolve")
async def resolve_dispute(
    engagement_id: str,
    req: ResolveDisputeRequest = Body(...),
    admin_id: str = Depends(require_admin),
    comps: Components = Depends(get_components),
):
    return await run_in_threadpool(comps.disputes.resolve_dispute, admin_id, engagement_id, req.outcome, req.notes)


@router.get("/metrics")
def get_metrics(_=Depends(require_admin)):
    """Counters backed by Redis."""
    return metrics.get_metrics_snapshot()
