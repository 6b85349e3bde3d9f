from typing import Any, Dict, Optional

from escrow.core.errors import ConcurrentModification, DisputeOpen
from escrow.store.document_store import DocumentExists, DocumentStore
from escrow.store.models import Dispute, from_doc, to_doc

DISPUTES = "disputes"

OPEN = "open"
RESOLVED_RELEASED = "resolved-released"
RESOLVED_REFUNDED = "resolved-refunded"
# Opened but the intent had already moved past a disputable status
VOID = "void"


class DisputeRepo:
    """One dispute record per engagement; reopening reuses the same document."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, engagement_id: str) -> Optional[Dispute]:
        if not engagement_id:
            return None
        return from_doc(Dispute, self.store.get(DISPUTES, engagement_id))

    def open(self, dispute: Dispute) -> Dispute:
        """
        Raises DisputeOpen while a dispute is already open for the
        engagement; two concurrent openers get exactly one winner.
        """
        try:
            self.store.create(DISPUTES, dispute.engagementId, to_doc(dispute))
            return dispute
        except DocumentExists:
            pass

        existing = self.get(dispute.engagementId)
        if existing is not None and existing.status == OPEN:
            raise DisputeOpen(
                "A dispute is already open for this engagement", engagementId=dispute.engagementId
            )
        try:
            doc = self.store.conditional_update(
                DISPUTES, dispute.engagementId, {"status": existing.status if existing else None}, to_doc(dispute)
            )
        except ConcurrentModification:
            raise DisputeOpen(
                "A dispute is already open for this engagement", engagementId=dispute.engagementId
            )
        return from_doc(Dispute, doc)

    def close(self, engagement_id: str, status: str, changes: Optional[Dict[str, Any]] = None) -> Dispute:
        update = dict(changes or {})
        update["status"] = status
        return from_doc(Dispute, self.store.conditional_update(DISPUTES, engagement_id, {"status": OPEN}, update))
