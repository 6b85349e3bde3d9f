"""
Provider-side money movement after a release or refund has been committed.

The state transition is the source of truth; a payout that fails here is
recorded on the intent (payoutStatus=failed) for manual follow-up and does
not roll the transition back.
"""
import escrow.observability.metrics as metrics
from escrow.observability.logging import log


def _record(intents, intent, payout_status: str):
    try:
        return intents.update_fields(intent, {"payoutStatus": payout_status})
    except Exception as e:
        log(event="payout_status_write_failed", reference=intent.reference, payoutStatus=payout_status,
            errorType=type(e).__name__, error=str(e)[:200])
        return intent


def _settle(registry, intents, intent, op: str):
    adapter = registry.get(intent.provider)
    try:
        status = adapter.trigger_payout(intent) if op == "payout" else adapter.trigger_refund(intent)
        ok = True
    except Exception as e:
        metrics.incr(metrics.PAYOUT_FAILED)
        log(event=f"{op}_trigger_failed", reference=intent.reference, provider=intent.provider,
            errorType=type(e).__name__, error=str(e)[:300])
        status, ok = "failed", False
    else:
        log(event=f"{op}_triggered", reference=intent.reference, provider=intent.provider, payoutStatus=status)
    return _record(intents, intent, status), ok


def release_funds(registry, intents, intent):
    """Returns (intent, ok)."""
    return _settle(registry, intents, intent, "payout")


def refund_funds(registry, intents, intent):
    return _settle(registry, intents, intent, "refund")
