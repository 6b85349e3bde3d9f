"""
Callback Ingestion
------------------
Turns provider signals (webhooks, browser returns, explicit verification
pulls) into at most one state transition per intent outcome.

Providers redeliver, browsers refresh, and webhooks race the redirect. The
rules that keep that safe:
  - the adapter normalizes first; informational states are acknowledged and dropped
  - an outcome the intent already reflects is a duplicate: no write, no error
  - every write is guarded on the status we read; a lost race re-reads and re-decides
  - a conflicting outcome on a settled intent is logged and acknowledged, never applied
  - funding only lands on the intent that holds its engagement's claim
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

import escrow.observability.metrics as metrics
from escrow.core import state_machine as sm
from escrow.core.errors import ConcurrentModification, InvalidTransition
from escrow.notify import dispatcher as notify
from escrow.observability.logging import log
from escrow.providers.base import Outcome, ProviderCallbackEvent, RawPayload
from escrow.utils.time import now_ms

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNKNOWN_REFERENCE = "unknown_reference"
AMOUNT_MISMATCH = "amount_mismatch"
REJECTED = "rejected"
CONFLICT = "conflict"
PENDING = "pending"
SUPERSEDED = "superseded"

_OUTCOME_EVENTS = {
    Outcome.FUNDED: sm.CALLBACK_FUNDED,
    Outcome.FAILED: sm.CALLBACK_FAILED,
    Outcome.CANCELLED: sm.CALLBACK_CANCELLED,
}

_OUTCOME_NOTIFICATIONS = {
    Outcome.FUNDED: notify.PAYMENT_FUNDED,
    Outcome.FAILED: notify.PAYMENT_FAILED,
    Outcome.CANCELLED: notify.PAYMENT_CANCELLED,
}


@dataclass
class IngestResult:
    status: str
    reference: Optional[str] = None
    outcome: Optional[str] = None
    intentStatus: Optional[str] = None

    @property
    def funded(self) -> bool:
        return self.intentStatus in sm.FUNDED_OR_LATER

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def already_reflects(status: str, outcome: Outcome) -> bool:
    if outcome == Outcome.FUNDED:
        return status in sm.FUNDED_OR_LATER
    if outcome == Outcome.FAILED:
        return status == sm.FAILED
    if outcome == Outcome.CANCELLED:
        return status == sm.CANCELLED
    return False


class CallbackIngestion:
    def __init__(self, registry, intents, state_machine, engagements, dispatcher, cas_retries: int = 3):
        self.registry = registry
        self.intents = intents
        self.state_machine = state_machine
        self.engagements = engagements
        self.dispatcher = dispatcher
        self.cas_retries = max(0, int(cas_retries))

    def ingest(self, provider: str, raw_payload: RawPayload, content_type: str = "") -> IngestResult:
        adapter = self.registry.get(provider)
        metrics.incr(metrics.CALLBACK_RECEIVED)
        event = adapter.normalize_callback(raw_payload, content_type)
        if event is None:
            metrics.incr(metrics.CALLBACK_IGNORED)
            log(event="callback_ignored", provider=adapter.name)
            return IngestResult(status=IGNORED)
        return self.ingest_event(event)

    def _lookup(self, event: ProviderCallbackEvent):
        intent = self.intents.get(event.reference) if event.reference else None
        if intent is None and event.providerTransactionRef:
            intent = self.intents.get_by_provider_ref(event.provider, event.providerTransactionRef)
        return intent

    def ingest_event(self, event: ProviderCallbackEvent) -> IngestResult:
        outcome = Outcome(event.outcome)
        intent = self._lookup(event)
        if intent is None:
            metrics.incr(metrics.CALLBACK_UNKNOWN)
            log(event="callback_unknown_reference", provider=event.provider, reference=event.reference,
                providerTransactionRef=event.providerTransactionRef, outcome=outcome.value)
            return IngestResult(status=UNKNOWN_REFERENCE, reference=event.reference or None, outcome=outcome.value)

        if intent.provider and intent.provider != event.provider:
            metrics.incr(metrics.CALLBACK_REJECTED)
            log(event="callback_provider_mismatch", reference=intent.reference,
                intentProvider=intent.provider, callbackProvider=event.provider)
            return IngestResult(status=REJECTED, reference=intent.reference, outcome=outcome.value,
                                intentStatus=intent.status)

        for attempt in range(self.cas_retries + 1):
            if attempt > 0:
                intent = self.intents.get(intent.reference)

            if already_reflects(intent.status, outcome):
                metrics.incr(metrics.CALLBACK_DUPLICATE)
                log(event="callback_duplicate", reference=intent.reference, status=intent.status,
                    outcome=outcome.value)
                return IngestResult(status=DUPLICATE, reference=intent.reference, outcome=outcome.value,
                                    intentStatus=intent.status)

            if outcome == Outcome.FUNDED and event.amount is not None and int(event.amount) != int(intent.amount):
                metrics.incr(metrics.CALLBACK_AMOUNT_MISMATCH)
                log(event="callback_amount_mismatch", reference=intent.reference, provider=event.provider,
                    expectedAmount=intent.amount, reportedAmount=event.amount)
                return IngestResult(status=AMOUNT_MISMATCH, reference=intent.reference, outcome=outcome.value,
                                    intentStatus=intent.status)

            try:
                if outcome == Outcome.FUNDED and not self._hold_engagement(intent):
                    metrics.incr(metrics.CALLBACK_SUPERSEDED)
                    log(event="callback_superseded_intent", reference=intent.reference,
                        engagementId=intent.engagementId, provider=event.provider, reportedAmount=event.amount,
                        action="manual_reconciliation")
                    return IngestResult(status=SUPERSEDED, reference=intent.reference, outcome=outcome.value,
                                        intentStatus=intent.status)
                intent = self._apply(intent, outcome)
            except ConcurrentModification:
                log(event="callback_write_conflict", reference=intent.reference, attempt=attempt + 1)
                continue
            except InvalidTransition as e:
                metrics.incr(metrics.CALLBACK_REJECTED)
                log(event="callback_conflicting_outcome", reference=intent.reference, status=e.current,
                    outcome=outcome.value, provider=event.provider)
                return IngestResult(status=REJECTED, reference=intent.reference, outcome=outcome.value,
                                    intentStatus=intent.status)

            metrics.incr(metrics.CALLBACK_APPLIED)
            self._after_applied(intent, outcome)
            return IngestResult(status=APPLIED, reference=intent.reference, outcome=outcome.value,
                                intentStatus=intent.status)

        log(event="callback_cas_exhausted", reference=intent.reference, attempts=self.cas_retries + 1)
        return IngestResult(status=CONFLICT, reference=intent.reference, outcome=outcome.value,
                            intentStatus=intent.status)

    def _hold_engagement(self, intent) -> bool:
        """
        An expired attempt that is paid late takes its engagement's claim back
        while the newer attempt is still unfunded; the newer one is cancelled.
        Returns False when a newer attempt already holds funds.
        Raises ConcurrentModification if the claim moves under us.
        """
        if intent.status not in (sm.CREATED, sm.AWAITING_CALLBACK):
            # Not fundable; the transition itself rejects it
            return True
        claim = self.intents.get_claim(intent.engagementId)
        if claim is None or claim.reference == intent.reference:
            return True
        newer = self.intents.get(claim.reference)
        if newer is not None and newer.status in sm.FUNDED_OR_LATER:
            return False

        self.intents.reassign_claim(intent.engagementId, claim.reference, intent.reference)
        log(event="engagement_claim_reassigned", engagementId=intent.engagementId, reference=intent.reference,
            previousReference=claim.reference)
        if newer is not None and newer.status in (sm.CREATED, sm.AWAITING_CALLBACK):
            try:
                self.state_machine.apply(newer, sm.CALLBACK_CANCELLED, {"failureReason": "superseded_by_late_funding"})
            except (ConcurrentModification, InvalidTransition) as e:
                # The newer attempt moved on concurrently; both may now hold funds
                log(event="superseded_intent_cancel_failed", reference=newer.reference,
                    supersededBy=intent.reference, errorType=type(e).__name__, action="manual_reconciliation")
        return True

    def _apply(self, intent, outcome: Outcome):
        ts = now_ms()
        if outcome == Outcome.FUNDED:
            if intent.status == sm.CREATED:
                # Funding raced ahead of our own acknowledgement write
                intent = self.state_machine.apply(intent, sm.PROVIDER_ACKNOWLEDGED)
            return self.state_machine.apply(intent, sm.CALLBACK_FUNDED, {"fundedAt": ts})
        return self.state_machine.apply(
            intent, _OUTCOME_EVENTS[outcome], {"failureReason": f"provider_{outcome.value}"}
        )

    def _after_applied(self, intent, outcome: Outcome) -> None:
        eng = self.engagements.mirror_intent(intent)

        # One notification per applied outcome: funding tells the worker work can
        # start, a failed or cancelled attempt goes back to the payer.
        recipient = intent.payerId
        if outcome == Outcome.FUNDED and eng is not None and eng.workerId:
            recipient = eng.workerId
        self.dispatcher.dispatch(_OUTCOME_NOTIFICATIONS[outcome], intent.engagementId, recipient,
                                 actor_id=intent.payerId, reference=intent.reference, amount=intent.amount)

    def reconcile_redirect(self, provider: str, params: Mapping[str, Any]) -> IngestResult:
        """
        Browser return from the provider's checkout. The redirect itself is
        never trusted: status is pulled from the provider and ingested like any
        other callback.
        """
        adapter = self.registry.get(provider)
        reference = adapter.reference_from_params(params)
        intent = self.intents.get(reference) if reference else None
        if intent is None:
            tx_ref = str(params.get("transactionId") or params.get("id") or "").strip()
            intent = self.intents.get_by_provider_ref(adapter.name, tx_ref) if tx_ref else None
        if intent is None:
            log(event="redirect_unknown_reference", provider=adapter.name, reference=reference)
            return IngestResult(status=UNKNOWN_REFERENCE, reference=reference or None)
        return self.reconcile_intent(intent)

    def reconcile_intent(self, intent) -> IngestResult:
        adapter = self.registry.get(intent.provider)
        event = adapter.fetch_status(intent)
        if event is None:
            log(event="reconcile_pending", reference=intent.reference, status=intent.status)
            return IngestResult(status=PENDING, reference=intent.reference, intentStatus=intent.status)
        if not event.reference:
            event.reference = intent.reference
        result = self.ingest_event(event)
        fresh = self.intents.get(intent.reference)
        if fresh is not None:
            result.intentStatus = fresh.status
        return result
