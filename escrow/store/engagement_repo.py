"""
Engagement documents are owned by the marketplace. The escrow engine reads
the parties and writes only its mirror fields (escrow*, completionRequestedAt,
hasOpenDispute).
"""
from typing import Any, Dict, Optional

from escrow.core.errors import ConcurrentModification, NotFound
from escrow.observability.logging import log
from escrow.store.document_store import DocumentExists, DocumentStore
from escrow.store.models import Engagement, from_doc, to_doc
from escrow.utils.time import now_ms

ENGAGEMENTS = "engagements"

# Mirror writes carry no expected fields, so a conflict only means a concurrent
# writer bumped the version; re-applying on top is safe.
_MIRROR_WRITE_ATTEMPTS = 3


class EngagementRepo:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, engagement_id: str) -> Optional[Engagement]:
        if not engagement_id:
            return None
        return from_doc(Engagement, self.store.get(ENGAGEMENTS, engagement_id))

    def require(self, engagement_id: str) -> Engagement:
        eng = self.get(engagement_id)
        if eng is None:
            raise NotFound(f"Engagement {engagement_id} not found", engagementId=engagement_id)
        return eng

    def create(self, engagement: Engagement) -> Engagement:
        try:
            self.store.create(ENGAGEMENTS, engagement.engagementId, to_doc(engagement))
        except DocumentExists:
            pass
        return self.require(engagement.engagementId)

    def _write(self, engagement_id: str, changes: Dict[str, Any]) -> Engagement:
        for attempt in range(1, _MIRROR_WRITE_ATTEMPTS + 1):
            try:
                return from_doc(Engagement, self.store.conditional_update(ENGAGEMENTS, engagement_id, {}, changes))
            except ConcurrentModification:
                if attempt == _MIRROR_WRITE_ATTEMPTS:
                    raise
        raise ConcurrentModification(f"engagement {engagement_id} write kept conflicting")

    def record_escrow_status(
        self,
        engagement_id: str,
        status: str,
        reference: str,
        completion_requested_at: Optional[int] = None,
    ) -> Engagement:
        changes: Dict[str, Any] = {
            "escrowStatus": status,
            "escrowReference": reference,
            "escrowUpdatedAt": now_ms(),
        }
        if completion_requested_at is not None:
            changes["completionRequestedAt"] = int(completion_requested_at)
        return self._write(engagement_id, changes)

    def set_dispute_flag(self, engagement_id: str, has_open_dispute: bool) -> Engagement:
        return self._write(engagement_id, {"hasOpenDispute": bool(has_open_dispute)})

    def mirror_intent(self, intent, completion_requested_at: Optional[int] = None) -> Optional[Engagement]:
        """Best-effort copy of the intent's status onto the engagement; failures are logged only."""
        try:
            return self.record_escrow_status(
                intent.engagementId, intent.status, intent.reference, completion_requested_at
            )
        except Exception as e:
            log(event="engagement_mirror_write_failed", reference=intent.reference,
                engagementId=intent.engagementId, errorType=type(e).__name__, error=str(e)[:200])
            return None
