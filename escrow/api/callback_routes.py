"""
Provider-facing endpoints. Webhooks are always acknowledged (providers retry
on non-2xx) except when the store is down, where a retry is what we want.
Browser returns are reconciled server side before picking the result page.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

import escrow.observability.metrics as metrics
from escrow.api.normalize import extract_params, forwardable_query
from escrow.api.schemas import WebhookAck
from escrow.core.errors import EscrowError, StoreUnavailable
from escrow.core.ingestion import APPLIED, DUPLICATE
from escrow.observability.logging import log
from escrow.wiring import Components, HttpConfig, get_components

router = APIRouter(tags=["callbacks"])


def _result_page(http: HttpConfig, funded: bool, query: str) -> RedirectResponse:
    url = http.page_url(http.success_page_path if funded else http.error_page_path)
    if query:
        url = f"{url}?{query}"
    # 303 so the browser follows with GET regardless of how it arrived
    return RedirectResponse(url, status_code=303)


def _callback_failed_page(http: HttpConfig) -> RedirectResponse:
    return RedirectResponse(f"{http.page_url(http.error_page_path)}?error=callback_failed", status_code=303)


def _ack(result) -> WebhookAck:
    return WebhookAck(
        processed=result.status in (APPLIED, DUPLICATE),
        result=result.status,
        reference=result.reference,
    )


async def _run_webhook(provider: str, fn, *args) -> WebhookAck:
    try:
        result = await run_in_threadpool(fn, *args)
    except StoreUnavailable:
        raise
    except EscrowError as e:
        log(event="webhook_processing_failed", provider=provider, errorType=type(e).__name__, error=e.message)
        return WebhookAck(processed=False, error=e.code)
    return _ack(result)


async def _signed_webhook(request: Request, comps: Components, provider: str) -> WebhookAck:
    params, raw, content_type = await extract_params(request)
    if not raw.strip() and params:
        # Query-string delivery: nothing is signed, so the outcome is pulled from the provider
        log(event="webhook_query_fallback", provider=provider, reference=params.get("reference"))
        return await _run_webhook(provider, comps.ingestion.reconcile_redirect, provider, params)

    adapter = comps.registry.get(provider)
    if not adapter.verify_signature(raw, request.headers):
        metrics.incr(metrics.CALLBACK_BAD_SIGNATURE)
        log(event="webhook_signature_invalid", provider=provider)
        return WebhookAck(processed=False, error="invalid_signature")
    return await _run_webhook(provider, comps.ingestion.ingest, provider, raw, content_type)


@router.post("/api/payments/paystack/webhook", response_model=WebhookAck)
async def paystack_webhook(request: Request, comps: Components = Depends(get_components)):
    return await _signed_webhook(request, comps, "paystack")


@router.post("/api/payments/tradesafe/webhook", response_model=WebhookAck)
async def tradesafe_webhook(request: Request, comps: Components = Depends(get_components)):
    return await _signed_webhook(request, comps, "tradesafe")


@router.get("/api/payments/paystack/callback")
async def paystack_return(request: Request, comps: Components = Depends(get_components)):
    params = dict(request.query_params)
    try:
        result = await run_in_threadpool(comps.ingestion.reconcile_redirect, "paystack", params)
    except Exception as e:
        log(event="redirect_reconcile_failed", provider="paystack", errorType=type(e).__name__, error=str(e)[:300])
        return _callback_failed_page(comps.http)
    log(event="redirect_reconciled", provider="paystack", reference=result.reference, result=result.status,
        intentStatus=result.intentStatus)
    return _result_page(comps.http, result.funded, forwardable_query(params))


@router.api_route("/tradesafe/callback", methods=["GET", "POST"])
async def tradesafe_callback(request: Request, comps: Components = Depends(get_components)):
    try:
        params, _raw, _ct = await extract_params(request)
    except Exception as e:
        log(event="callback_parse_failed", provider="tradesafe", errorType=type(e).__name__, error=str(e)[:300])
        return _callback_failed_page(comps.http)

    adapter = comps.registry.get("tradesafe")
    if adapter.is_webhook_shape(params):
        # Server-to-server notification: acknowledge with JSON, never redirect.
        # The `signature` field here has no documented scheme and is not checked.
        ack = await _run_webhook("tradesafe", comps.ingestion.ingest, "tradesafe", params, "")
        return JSONResponse(ack.model_dump())

    try:
        result = await run_in_threadpool(comps.ingestion.reconcile_redirect, "tradesafe", params)
    except Exception as e:
        log(event="redirect_reconcile_failed", provider="tradesafe", errorType=type(e).__name__, error=str(e)[:300])
        return _callback_failed_page(comps.http)
    log(event="redirect_reconciled", provider="tradesafe", reference=result.reference, result=result.status,
        intentStatus=result.intentStatus, claimedSuccess=adapter.is_success_action(params))
    return _result_page(comps.http, result.funded, forwardable_query(params))
