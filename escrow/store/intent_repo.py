"""
PaymentIntentStore backed by the DocumentStore contract.

Collections:
  payment_intents/<reference>                 the intent document
  escrow_claims/<engagementId>                which reference may be live for an engagement
  provider_refs/<provider>:<providerTxRef>    reverse lookup for callbacks keyed by provider ids
Index:
  completion_requested                        reference scored by completionRequestedAt
"""
from typing import List, Optional

from escrow.core import state_machine as sm
from escrow.core.errors import ConcurrentModification, DuplicateIntent
from escrow.observability.logging import log
from escrow.store.document_store import DocumentExists, DocumentStore
from escrow.store.models import EngagementClaim, PaymentIntent, from_doc, to_doc
from escrow.utils.time import now_ms

INTENTS = "payment_intents"
CLAIMS = "escrow_claims"
PROVIDER_REFS = "provider_refs"
COMPLETION_INDEX = "completion_requested"


class IntentRepo:
    def __init__(self, store: DocumentStore):
        self.store = store

    # ------------------------------------------------------------------
    # Intent documents
    # ------------------------------------------------------------------
    def create(self, intent: PaymentIntent) -> PaymentIntent:
        intent.updatedAt = intent.updatedAt or intent.createdAt or now_ms()
        try:
            self.store.create(INTENTS, intent.reference, to_doc(intent))
        except DocumentExists:
            raise DuplicateIntent(f"reference {intent.reference} already exists", reference=intent.reference)
        return intent

    def get(self, reference: str) -> Optional[PaymentIntent]:
        if not reference:
            return None
        return from_doc(PaymentIntent, self.store.get(INTENTS, reference))

    def link_provider_ref(self, provider: str, provider_ref: str, reference: str) -> None:
        if not provider_ref:
            return
        try:
            self.store.create(PROVIDER_REFS, f"{provider}:{provider_ref}", {"reference": reference})
        except DocumentExists:
            pass

    def get_by_provider_ref(self, provider: str, provider_ref: str) -> Optional[PaymentIntent]:
        if not provider_ref:
            return None
        link = self.store.get(PROVIDER_REFS, f"{provider}:{provider_ref}")
        if not link:
            return None
        return self.get(link.get("reference") or "")

    def transition(self, reference: str, expected_status: str, new_status: str, changes: dict) -> PaymentIntent:
        """Compare-and-write of the status field; the only way status changes."""
        ts = now_ms()
        update = dict(changes)
        update["status"] = new_status
        update["updatedAt"] = ts
        if new_status == sm.COMPLETION_REQUESTED and not update.get("completionRequestedAt"):
            update["completionRequestedAt"] = ts

        # The sweep finds intents only through this index, so the entry lands
        # before the status does and a failure here aborts the transition.
        # Entries whose write then loses are filtered (and pruned) on read.
        if new_status == sm.COMPLETION_REQUESTED:
            self.store.index_add(COMPLETION_INDEX, reference, int(update["completionRequestedAt"]))

        doc = self.store.conditional_update(INTENTS, reference, {"status": expected_status}, update)
        intent = from_doc(PaymentIntent, doc)

        if expected_status == sm.COMPLETION_REQUESTED:
            self._drop_from_index(reference)
        return intent

    def _drop_from_index(self, reference: str) -> None:
        try:
            self.store.index_remove(COMPLETION_INDEX, reference)
        except Exception as e:
            log(event="intent_index_remove_failed", reference=reference, error=str(e)[:200])

    def update_fields(self, intent: PaymentIntent, changes: dict) -> PaymentIntent:
        """Non-status bookkeeping (payout status etc.), still guarded on the read status."""
        update = dict(changes)
        update.pop("status", None)
        update["updatedAt"] = now_ms()
        doc = self.store.conditional_update(INTENTS, intent.reference, {"status": intent.status}, update)
        return from_doc(PaymentIntent, doc)

    def eligible_for_auto_release(self, cutoff_ms: int, limit: int = 500) -> List[PaymentIntent]:
        out: List[PaymentIntent] = []
        for reference in self.store.index_range(COMPLETION_INDEX, cutoff_ms, limit=limit):
            intent = self.get(reference)
            if intent is None or intent.is_terminal():
                # Left behind by a failed removal; pre-terminal entries may belong to an in-flight write
                self._drop_from_index(reference)
                continue
            if intent.status != sm.COMPLETION_REQUESTED:
                continue
            if int(intent.completionRequestedAt or 0) <= 0 or int(intent.completionRequestedAt) > cutoff_ms:
                continue
            out.append(intent)
        return out

    def count_due_for_auto_release(self, cutoff_ms: int) -> int:
        return self.store.index_count(COMPLETION_INDEX, cutoff_ms)

    # ------------------------------------------------------------------
    # Engagement claims (one live intent per engagement)
    # ------------------------------------------------------------------
    def get_claim(self, engagement_id: str) -> Optional[EngagementClaim]:
        return from_doc(EngagementClaim, self.store.get(CLAIMS, engagement_id))

    def current_for_engagement(self, engagement_id: str) -> Optional[PaymentIntent]:
        claim = self.get_claim(engagement_id)
        if claim is None:
            return None
        return self.get(claim.reference)

    def claim_engagement(self, engagement_id: str, reference: str, expires_at: int) -> EngagementClaim:
        """
        Reserve the engagement for `reference`. Rejects with DuplicateIntent while
        another intent (or an in-flight initialization) is still live.
        """
        ts = now_ms()
        claim = EngagementClaim(engagementId=engagement_id, reference=reference, expiresAt=expires_at, claimedAt=ts)
        try:
            self.store.create(CLAIMS, engagement_id, to_doc(claim))
            return claim
        except DocumentExists:
            pass

        existing = self.get_claim(engagement_id)
        if existing is None:
            raise ConcurrentModification(f"claim for {engagement_id} vanished during read", engagementId=engagement_id)

        current = self.get(existing.reference)
        if current is not None and current.is_live(ts):
            raise DuplicateIntent(
                f"Engagement {engagement_id} already has an active payment ({current.status})",
                engagementId=engagement_id, reference=current.reference, status=current.status,
            )
        if current is None and ts < int(existing.expiresAt or 0):
            # Initialization for the previous reference is still in flight.
            raise DuplicateIntent(
                f"Engagement {engagement_id} has a payment initialization in progress",
                engagementId=engagement_id, reference=existing.reference,
            )

        try:
            self.store.conditional_update(
                CLAIMS, engagement_id, {"reference": existing.reference}, to_doc(claim)
            )
        except ConcurrentModification:
            raise DuplicateIntent(
                f"Engagement {engagement_id} was claimed by a concurrent request",
                engagementId=engagement_id,
            )
        return claim

    def reassign_claim(self, engagement_id: str, from_reference: str, to_reference: str) -> None:
        """Hand the claim from one reference to another; raises ConcurrentModification if it moved."""
        self.store.conditional_update(
            CLAIMS, engagement_id, {"reference": from_reference},
            {"reference": to_reference, "claimedAt": now_ms()},
        )

    def release_claim(self, engagement_id: str, reference: str) -> None:
        try:
            self.store.conditional_update(CLAIMS, engagement_id, {"reference": reference}, {"expiresAt": 0})
        except ConcurrentModification:
            # Someone else already owns the claim; nothing of ours to release.
            pass
