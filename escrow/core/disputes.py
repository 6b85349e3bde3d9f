"""
Disputes freeze an engagement's escrow until an admin resolves them with a
release to the worker or a refund to the employer.
"""
from typing import Any, Dict, Optional

from escrow.core import state_machine as sm
from escrow.core.errors import ConcurrentModification, Forbidden, InvalidTransition, NotFound, ValidationError
from escrow.core.settlement import refund_funds, release_funds
from escrow.core.validation import sanitize_text, validate_dispute_reason
from escrow.notify import dispatcher as notify
from escrow.observability.logging import log
from escrow.store import dispute_repo
from escrow.store.models import Dispute, to_doc
from escrow.utils.time import now_ms

RESOLUTIONS = {
    "release": (sm.DISPUTE_RESOLVED_RELEASE, dispute_repo.RESOLVED_RELEASED, "released"),
    "refund": (sm.DISPUTE_RESOLVED_REFUND, dispute_repo.RESOLVED_REFUNDED, "refunded"),
}

NOTES_MAX = 1000


class DisputeService:
    def __init__(self, disputes, intents, state_machine, engagements, registry, dispatcher):
        self.disputes = disputes
        self.intents = intents
        self.state_machine = state_machine
        self.engagements = engagements
        self.registry = registry
        self.dispatcher = dispatcher

    def _set_flag(self, engagement_id: str, value: bool) -> None:
        try:
            self.engagements.set_dispute_flag(engagement_id, value)
        except Exception as e:
            log(event="engagement_dispute_flag_write_failed", engagementId=engagement_id, value=value,
                errorType=type(e).__name__, error=str(e)[:200])

    def open_dispute(self, caller_id: str, engagement_id: str, reason) -> Dict[str, Any]:
        eng = self.engagements.require(engagement_id)
        if caller_id not in (eng.employerId, eng.workerId):
            raise Forbidden("Only the parties to an engagement can open a dispute", engagementId=engagement_id)
        clean_reason = validate_dispute_reason(reason)

        intent = self.intents.current_for_engagement(engagement_id)
        if intent is None:
            raise NotFound(f"No escrow payment for engagement {engagement_id}", engagementId=engagement_id)
        # Reject before a dispute record exists when the table has no such edge
        sm.next_status(intent.status, sm.DISPUTE_OPENED, intent.reference)

        dispute = self.disputes.open(Dispute(
            engagementId=engagement_id,
            reference=intent.reference,
            openedBy=caller_id,
            reason=clean_reason,
            status=dispute_repo.OPEN,
            openedAt=now_ms(),
        ))

        try:
            intent = self.state_machine.apply(intent, sm.DISPUTE_OPENED)
        except (InvalidTransition, ConcurrentModification):
            fresh = self.intents.get(intent.reference) or intent
            self.disputes.close(engagement_id, dispute_repo.VOID, {"resolvedAt": now_ms()})
            log(event="dispute_open_lost_race", engagementId=engagement_id, reference=intent.reference,
                currentStatus=fresh.status)
            raise InvalidTransition(fresh.status, sm.DISPUTE_OPENED, intent.reference)

        self._set_flag(engagement_id, True)
        self.engagements.mirror_intent(intent)

        other = eng.workerId if caller_id == eng.employerId else eng.employerId
        self.dispatcher.dispatch(notify.DISPUTE_OPENED, engagement_id, other, actor_id=caller_id,
                                 reference=intent.reference, amount=intent.amount)
        log(event="dispute_opened", engagementId=engagement_id, reference=intent.reference, openedBy=caller_id,
            reason=clean_reason)
        return to_doc(dispute)

    def get_dispute(self, engagement_id: str) -> Dispute:
        dispute = self.disputes.get(engagement_id)
        if dispute is None:
            raise NotFound(f"No dispute for engagement {engagement_id}", engagementId=engagement_id)
        return dispute

    def resolve_dispute(self, admin_id: str, engagement_id: str, outcome: str,
                        notes: Optional[str] = None) -> Dict[str, Any]:
        key = (outcome or "").strip().lower()
        if key not in RESOLUTIONS:
            raise ValidationError("outcome must be 'release' or 'refund'", outcome=outcome)
        event, dispute_status, resolution = RESOLUTIONS[key]

        dispute = self.get_dispute(engagement_id)
        if dispute.status != dispute_repo.OPEN:
            raise NotFound(f"No open dispute for engagement {engagement_id}", engagementId=engagement_id)
        intent = self.intents.get(dispute.reference or "")
        if intent is None:
            raise NotFound(f"Payment {dispute.reference} not found", reference=dispute.reference)

        ts = now_ms()
        changes: Dict[str, Any] = {"resolution": resolution}
        if key == "release":
            changes.update({"releasedAt": ts, "releasedVia": "dispute"})
        intent = self.state_machine.apply(intent, event, changes)

        clean_notes = sanitize_text(notes)[:NOTES_MAX] if notes else None
        dispute = self.disputes.close(engagement_id, dispute_status, {
            "resolvedAt": ts,
            "resolvedBy": admin_id,
            "resolutionNotes": clean_notes,
        })
        self._set_flag(engagement_id, False)

        if key == "release":
            intent, _ = release_funds(self.registry, self.intents, intent)
        else:
            intent, _ = refund_funds(self.registry, self.intents, intent)
        eng = self.engagements.mirror_intent(intent)

        parties = (eng.employerId, eng.workerId) if eng else (intent.payerId,)
        for recipient in parties:
            self.dispatcher.dispatch(notify.DISPUTE_RESOLVED, engagement_id, recipient, actor_id=admin_id,
                                     reference=intent.reference, amount=intent.amount, resolution=resolution)
        money_kind, money_to = (
            (notify.PAYMENT_RELEASED, eng.workerId if eng else None) if key == "release"
            else (notify.PAYMENT_REFUNDED, intent.payerId)
        )
        self.dispatcher.dispatch(money_kind, engagement_id, money_to, actor_id=admin_id,
                                 reference=intent.reference, amount=intent.amount, releasedVia="dispute")

        log(event="dispute_resolved", engagementId=engagement_id, reference=intent.reference,
            resolution=resolution, resolvedBy=admin_id)
        return {"dispute": to_doc(dispute), "intentStatus": intent.status, "payoutStatus": intent.payoutStatus}
