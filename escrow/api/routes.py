from typing import Optional

from fastapi import APIRouter, Depends, Body
from starlette.concurrency import run_in_threadpool

from escrow.api.auth import require_caller
from escrow.api.schemas import (
    DisputeRequest,
    InitializeRequest,
    InitializeResponse,
    VerifyRequest,
    VerifyResponse,
)
from escrow.wiring import Components, get_components

router = APIRouter()


async def _initialize(comps: Components, caller: str, req: InitializeRequest, provider: Optional[str]):
    out = await run_in_threadpool(
        comps.escrow.initialize_escrow,
        caller,
        req.engagementId,
        req.amount,
        req.payerEmail,
        req.itemDescription,
        provider or req.provider,
    )
    return InitializeResponse(**out)


@router.post("/api/escrow/initialize", response_model=InitializeResponse)
async def initialize_payment(
    req: InitializeRequest = Body(...),
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await _initialize(comps, caller, req, None)


@router.post("/api/payments/{provider}/initialize", response_model=InitializeResponse)
async def initialize_provider_payment(
    provider: str,
    req: InitializeRequest = Body(...),
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await _initialize(comps, caller, req, provider)


@router.post("/api/payments/{provider}/verify", response_model=VerifyResponse)
async def verify_payment(
    provider: str,
    req: VerifyRequest = Body(...),
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    out = await run_in_threadpool(comps.escrow.verify_payment, caller, req.reference, provider)
    return VerifyResponse(**out)


@router.get("/api/escrow/intents/{reference}")
async def get_payment(
    reference: str,
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await run_in_threadpool(comps.escrow.get_intent_for, caller, reference)


@router.post("/api/engagements/{engagement_id}/request-completion")
async def request_completion(
    engagement_id: str,
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await run_in_threadpool(comps.escrow.request_completion, caller, engagement_id)


@router.post("/api/engagements/{engagement_id}/approve-completion")
async def approve_completion(
    engagement_id: str,
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await run_in_threadpool(comps.escrow.approve_completion, caller, engagement_id)


@router.post("/api/engagements/{engagement_id}/disputes", status_code=201)
async def open_dispute(
    engagement_id: str,
    req: DisputeRequest = Body(...),
    caller: str = Depends(require_caller),
    comps: Components = Depends(get_components),
):
    return await run_in_threadpool(comps.disputes.open_dispute, caller, engagement_id, req.reason)
