import time

import httpx

from escrow.observability.logging import log
from escrow.settings import settings


def deliver_notification_job(notification: dict):
    """
    Background job: POST one notification to the marketplace webhook.
    Failures raise so RQ records the job as failed; nothing upstream waits on it.
    """
    if not settings.NOTIFY_WEBHOOK_URL:
        return False

    start = time.time()
    kind = notification.get("kind")
    try:
        with httpx.Client(timeout=settings.NOTIFY_TIMEOUT_SEC) as client:
            resp = client.post(settings.NOTIFY_WEBHOOK_URL, json=notification)
        elapsed_ms = int((time.time() - start) * 1000)
        if 200 <= resp.status_code < 300:
            log(event="notification_delivered", kind=kind, reference=notification.get("reference"),
                statusCode=int(resp.status_code), elapsedMs=elapsed_ms)
            return True
        log(event="notification_delivery_failed", kind=kind, reference=notification.get("reference"),
            statusCode=int(resp.status_code), elapsedMs=elapsed_ms, responseText=(resp.text or "")[:300])
        raise RuntimeError(f"Notification webhook returned {resp.status_code}")
    except httpx.HTTPError as e:
        log(event="notification_delivery_exception", kind=kind, reference=notification.get("reference"),
            errorType=type(e).__name__, error=str(e)[:300])
        raise


def run_auto_release_job():
    """Sweep entry point for deployments that trigger it through the queue instead of HTTP."""
    # Lazy import: wiring pulls in every component
    from escrow.wiring import get_components

    try:
        log(event="auto_release_job_start")
        result = get_components().scheduler.run()
        return result.to_dict()
    except Exception as e:
        log(event="auto_release_job_exception", errorType=type(e).__name__, error=str(e)[:300])
        raise
