from dataclasses import asdict, dataclass, field, fields as dc_fields
from typing import Any, Dict, Optional, Type, TypeVar

from escrow.core import state_machine as sm

T = TypeVar("T")


@dataclass
class PaymentIntent:
    # Identity
    reference: str = ""
    engagementId: str = ""

    # Payer & money (amount is in minor currency units)
    payerId: str = ""
    payerEmail: str = ""
    amount: int = 0
    currency: str = "ZAR"
    itemDescription: Optional[str] = None

    # Provider side
    provider: str = ""
    providerTransactionRef: Optional[str] = None
    # Trust-account provider only: the allocation that is accepted on release
    providerAllocationRef: Optional[str] = None

    # Lifecycle
    status: str = sm.CREATED
    resolution: Optional[str] = None  # released/refunded when settled through a dispute
    failureReason: Optional[str] = None

    # Timestamps (epoch ms)
    createdAt: int = 0
    updatedAt: int = 0
    expiresAt: int = 0
    fundedAt: Optional[int] = None
    completionRequestedAt: Optional[int] = None
    releasedAt: Optional[int] = None
    releasedVia: Optional[str] = None  # employer_approval/auto_release/dispute

    # Money movement at the provider after release/refund
    payoutStatus: str = "none"  # none/triggered/not_required/failed

    def is_terminal(self) -> bool:
        return sm.is_terminal(self.status)

    def is_live(self, now_ms: int) -> bool:
        """
        Live intents block a new funding attempt for the same engagement.
        Un-acknowledged/unfunded intents stop counting once expiresAt passes.
        """
        if self.is_terminal():
            return False
        if self.status in (sm.CREATED, sm.AWAITING_CALLBACK):
            return now_ms < int(self.expiresAt or 0)
        return True


@dataclass
class Dispute:
    engagementId: str = ""
    reference: Optional[str] = None
    openedBy: str = ""
    reason: str = ""
    status: str = "open"  # open/resolved-released/resolved-refunded/void
    openedAt: int = 0
    resolvedAt: Optional[int] = None
    resolvedBy: Optional[str] = None
    resolutionNotes: Optional[str] = None


@dataclass
class Engagement:
    engagementId: str = ""
    employerId: str = ""
    workerId: str = ""
    title: Optional[str] = None
    completionRequestedAt: Optional[int] = None
    hasOpenDispute: bool = False

    # Escrow mirror fields (written only through EngagementRepo.record_escrow_status)
    escrowStatus: Optional[str] = None
    escrowReference: Optional[str] = None
    escrowUpdatedAt: Optional[int] = None


@dataclass
class EngagementClaim:
    """Per-engagement pointer to the intent currently allowed to be live."""
    engagementId: str = ""
    reference: str = ""
    expiresAt: int = 0
    claimedAt: int = 0


def to_doc(obj) -> Dict[str, Any]:
    return asdict(obj)


def from_doc(cls: Type[T], data: Optional[Dict[str, Any]]) -> Optional[T]:
    """Drop unknown fields so cls(**kwargs) never explodes on older/newer documents."""
    if data is None:
        return None
    allowed = {f.name for f in dc_fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in allowed})
