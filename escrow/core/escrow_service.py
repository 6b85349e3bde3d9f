"""
Escrow lifecycle operations driven by the parties: funding an engagement,
asking for release, approving release, and explicit payment verification.
"""
import secrets
import string
from typing import Any, Dict, Optional

from escrow.core import state_machine as sm
from escrow.core.errors import (
    ConcurrentModification,
    DisputeOpen,
    EscrowError,
    Forbidden,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from escrow.core.settlement import release_funds
from escrow.core.validation import clean_item_description, require_id, validate_amount, validate_email
from escrow.notify import dispatcher as notify
from escrow.observability.logging import log
from escrow.store.models import PaymentIntent, to_doc
from escrow.utils.time import minutes_to_ms, now_ms

# Where each provider sends the payer's browser after checkout
CALLBACK_PATHS = {
    "paystack": "/api/payments/paystack/callback",
    "tradesafe": "/tradesafe/callback",
}

_B36 = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    out = ""
    while n:
        n, rem = divmod(n, 36)
        out = _B36[rem] + out
    return out or "0"


def new_reference() -> str:
    rand = "".join(secrets.choice(_B36) for _ in range(8))
    return f"ESC_{_base36(now_ms())}_{rand}"


def intent_view(intent: PaymentIntent) -> Dict[str, Any]:
    """Party-facing view; contact details stay server side."""
    doc = to_doc(intent)
    doc.pop("payerEmail", None)
    return doc


class EscrowService:
    def __init__(self, registry, intents, state_machine, engagements, gate, dispatcher, ingestion,
                 base_url: str = "", intent_ttl_minutes: float = 30, currency: str = "ZAR"):
        self.registry = registry
        self.intents = intents
        self.state_machine = state_machine
        self.engagements = engagements
        self.gate = gate
        self.dispatcher = dispatcher
        self.ingestion = ingestion
        self.base_url = (base_url or "").rstrip("/")
        self.intent_ttl_ms = minutes_to_ms(intent_ttl_minutes)
        self.currency = currency or "ZAR"

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------
    def initialize_escrow(
        self,
        caller_id: str,
        engagement_id: str,
        amount,
        payer_email: str,
        item_description: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        engagement_id = require_id(engagement_id, "engagementId")
        amount = validate_amount(amount)
        payer_email = validate_email(payer_email)
        description = clean_item_description(item_description)
        adapter = self.registry.get(provider)

        eng = self.engagements.require(engagement_id)
        if eng.employerId and eng.employerId != caller_id:
            raise Forbidden("Only the engagement's employer can fund it", engagementId=engagement_id)

        reference = new_reference()
        created_at = now_ms()
        expires_at = created_at + self.intent_ttl_ms
        self.intents.claim_engagement(engagement_id, reference, expires_at)

        callback_url = f"{self.base_url}{CALLBACK_PATHS.get(adapter.name, '/payment/callback')}"
        metadata = {
            "engagementId": engagement_id,
            "payerId": caller_id,
            "reference": reference,
            "title": eng.title,
            "itemDescription": description,
        }
        try:
            init = adapter.initialize(payer_email, amount, reference, callback_url, metadata)
        except Exception as e:
            self.intents.release_claim(engagement_id, reference)
            log(event="escrow_initialize_provider_failed", reference=reference, engagementId=engagement_id,
                provider=adapter.name, errorType=type(e).__name__, error=str(e)[:300])
            raise

        intent = PaymentIntent(
            reference=reference,
            engagementId=engagement_id,
            payerId=caller_id,
            payerEmail=payer_email,
            amount=amount,
            currency=self.currency,
            itemDescription=description,
            provider=adapter.name,
            providerTransactionRef=init.providerTransactionRef,
            providerAllocationRef=init.providerAllocationRef,
            status=sm.CREATED,
            createdAt=created_at,
            updatedAt=created_at,
            expiresAt=expires_at,
        )
        try:
            self.intents.create(intent)
            self.intents.link_provider_ref(adapter.name, init.providerTransactionRef, reference)
        except EscrowError as e:
            # The provider holds a live transaction we have no record of
            log(event="intent_persist_failed_after_provider_ack", reference=reference,
                providerTransactionRef=init.providerTransactionRef, provider=adapter.name,
                engagementId=engagement_id, errorType=type(e).__name__, error=str(e)[:300])
            raise StoreUnavailable("Payment could not be recorded", reference=reference) from e

        try:
            intent = self.state_machine.apply(intent, sm.PROVIDER_ACKNOWLEDGED)
        except (ConcurrentModification, InvalidTransition):
            # A provider callback landed first and already moved the intent on
            intent = self.intents.get(reference) or intent
            log(event="intent_ack_superseded", reference=reference, status=intent.status)

        self.engagements.mirror_intent(intent)
        log(event="escrow_initialized", reference=reference, engagementId=engagement_id,
            provider=adapter.name, amount=amount)
        return {
            "reference": reference,
            "redirectUrl": init.redirectUrl,
            "providerTransactionRef": init.providerTransactionRef,
            "provider": adapter.name,
        }

    # ------------------------------------------------------------------
    # Completion & release
    # ------------------------------------------------------------------
    def _current_intent(self, engagement_id: str) -> PaymentIntent:
        intent = self.intents.current_for_engagement(engagement_id)
        if intent is None:
            raise NotFound(f"No escrow payment for engagement {engagement_id}", engagementId=engagement_id)
        return intent

    def request_completion(self, caller_id: str, engagement_id: str) -> Dict[str, Any]:
        eng = self.engagements.require(engagement_id)
        if caller_id != eng.workerId:
            raise Forbidden("Only the engagement's worker can request completion", engagementId=engagement_id)

        intent = self._current_intent(engagement_id)
        ts = now_ms()
        intent = self.state_machine.apply(intent, sm.COMPLETION_REQUESTED_EVENT, {"completionRequestedAt": ts})

        self.engagements.mirror_intent(intent, completion_requested_at=ts)
        self.dispatcher.dispatch(notify.COMPLETION_REQUESTED, engagement_id, eng.employerId, actor_id=caller_id,
                                 reference=intent.reference, amount=intent.amount)
        return intent_view(intent)

    def approve_completion(self, caller_id: str, engagement_id: str) -> Dict[str, Any]:
        eng = self.engagements.require(engagement_id)
        if caller_id != eng.employerId:
            raise Forbidden("Only the engagement's employer can approve completion", engagementId=engagement_id)
        if self.gate.is_blocked(engagement_id):
            raise DisputeOpen("Release is blocked while a dispute is open", engagementId=engagement_id)

        intent = self._current_intent(engagement_id)
        intent = self.state_machine.apply(
            intent, sm.EMPLOYER_APPROVED, {"releasedAt": now_ms(), "releasedVia": "employer_approval"}
        )

        intent, _ = release_funds(self.registry, self.intents, intent)
        self.engagements.mirror_intent(intent)
        self.dispatcher.dispatch(notify.PAYMENT_RELEASED, engagement_id, eng.workerId, actor_id=caller_id,
                                 reference=intent.reference, amount=intent.amount, releasedVia="employer_approval")
        return intent_view(intent)

    # ------------------------------------------------------------------
    # Verification & lookup
    # ------------------------------------------------------------------
    def get_intent(self, reference: str) -> PaymentIntent:
        intent = self.intents.get(reference)
        if intent is None:
            raise NotFound(f"Payment {reference} not found", reference=reference)
        return intent

    def get_intent_for(self, caller_id: str, reference: str) -> Dict[str, Any]:
        intent = self.get_intent(reference)
        if caller_id != intent.payerId:
            eng = self.engagements.get(intent.engagementId)
            if eng is None or caller_id not in (eng.employerId, eng.workerId):
                raise Forbidden("Not a party to this payment", reference=reference)
        return intent_view(intent)

    def verify_payment(self, caller_id: str, reference: str, provider: Optional[str] = None) -> Dict[str, Any]:
        reference = require_id(reference, "reference")
        intent = self.get_intent(reference)
        if intent.payerId != caller_id:
            raise Forbidden("Only the payer can verify this payment", reference=reference)
        if provider and provider.lower() != intent.provider:
            raise ValidationError(f"Payment {reference} was not made with {provider}", reference=reference)

        result = self.ingestion.reconcile_intent(intent)
        return {
            "reference": reference,
            "status": result.intentStatus or intent.status,
            "result": result.status,
            "funded": result.funded,
        }
