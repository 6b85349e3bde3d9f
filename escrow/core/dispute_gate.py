from escrow.store.dispute_repo import OPEN, DisputeRepo
from escrow.store.engagement_repo import EngagementRepo


class DisputeGate:
    """
    Answers "may funds for this engagement move right now?". Reads fresh on
    every call; a dispute opened a moment ago must block the next release.
    """

    def __init__(self, disputes: DisputeRepo, engagements: EngagementRepo):
        self.disputes = disputes
        self.engagements = engagements

    def is_blocked(self, engagement_id: str) -> bool:
        dispute = self.disputes.get(engagement_id)
        if dispute is not None and dispute.status == OPEN:
            return True
        eng = self.engagements.get(engagement_id)
        return bool(eng is not None and eng.hasOpenDispute)
