"""
Escrow lifecycle states and the authoritative transition table.

Every mutation of PaymentIntent.status goes through EscrowStateMachine.apply,
which validates (status, event) against TRANSITIONS and commits with the
store's compare-and-write guarded on the status the caller read.
"""
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import escrow.observability.metrics as metrics
from escrow.core.errors import InvalidTransition
from escrow.observability.logging import log

# Intent has been recorded; provider transaction exists but our ack write has not landed
CREATED = "Created"

# Provider acknowledged; waiting for the funding callback
AWAITING_CALLBACK = "AwaitingCallback"

# Funds are held in escrow
FUNDED = "Funded"

# Worker asked for release; auto-release clock is running
COMPLETION_REQUESTED = "CompletionRequested"

# Dispute is open; neither routine nor automatic release may proceed
DISPUTED = "Disputed"

# Terminal states
RELEASED = "Released"
FAILED = "Failed"
CANCELLED = "Cancelled"
REFUNDED = "Refunded"

ALL_STATUSES: Tuple[str, ...] = (
    CREATED, AWAITING_CALLBACK, FUNDED, COMPLETION_REQUESTED, DISPUTED,
    RELEASED, FAILED, CANCELLED, REFUNDED,
)
TERMINAL: FrozenSet[str] = frozenset({RELEASED, FAILED, CANCELLED, REFUNDED})

# Statuses at which funds have reached escrow at some point
FUNDED_OR_LATER: FrozenSet[str] = frozenset({FUNDED, COMPLETION_REQUESTED, DISPUTED, RELEASED, REFUNDED})

# Events
PROVIDER_ACKNOWLEDGED = "provider_acknowledged"
CALLBACK_FUNDED = "callback_funded"
CALLBACK_FAILED = "callback_failed"
CALLBACK_CANCELLED = "callback_cancelled"
COMPLETION_REQUESTED_EVENT = "completion_requested"
DISPUTE_OPENED = "dispute_opened"
EMPLOYER_APPROVED = "employer_approved"
AUTO_RELEASE_ELAPSED = "auto_release_elapsed"
DISPUTE_RESOLVED_RELEASE = "dispute_resolved_release"
DISPUTE_RESOLVED_REFUND = "dispute_resolved_refund"

TRANSITIONS: Dict[Tuple[str, str], str] = {
    (CREATED, PROVIDER_ACKNOWLEDGED): AWAITING_CALLBACK,
    (CREATED, CALLBACK_FAILED): FAILED,
    (CREATED, CALLBACK_CANCELLED): CANCELLED,
    (AWAITING_CALLBACK, CALLBACK_FUNDED): FUNDED,
    (AWAITING_CALLBACK, CALLBACK_FAILED): FAILED,
    (AWAITING_CALLBACK, CALLBACK_CANCELLED): CANCELLED,
    (FUNDED, COMPLETION_REQUESTED_EVENT): COMPLETION_REQUESTED,
    (FUNDED, DISPUTE_OPENED): DISPUTED,
    (COMPLETION_REQUESTED, DISPUTE_OPENED): DISPUTED,
    (COMPLETION_REQUESTED, EMPLOYER_APPROVED): RELEASED,
    (COMPLETION_REQUESTED, AUTO_RELEASE_ELAPSED): RELEASED,
    (DISPUTED, DISPUTE_RESOLVED_RELEASE): RELEASED,
    (DISPUTED, DISPUTE_RESOLVED_REFUND): REFUNDED,
}


def next_status(current: str, event: str, reference: Optional[str] = None) -> str:
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(current, event, reference) from None


def is_terminal(status: str) -> bool:
    return status in TERMINAL


def allowed_events(status: str) -> List[str]:
    return sorted(event for (frm, event) in TRANSITIONS if frm == status)


class EscrowStateMachine:
    """Applies validated transitions to stored intents."""

    def __init__(self, intents):
        # intents: IntentRepo (duck-typed to avoid an import cycle with the store layer)
        self.intents = intents

    def apply(self, intent, event: str, changes: Optional[Mapping[str, Any]] = None):
        """
        Move `intent` along `event`, guarded on the status it was read with.

        Raises InvalidTransition if the table has no such edge (nothing is
        written) and ConcurrentModification if the stored status moved on since
        the read. Returns the committed intent.
        """
        to_status = next_status(intent.status, event, intent.reference)
        committed = self.intents.transition(
            intent.reference,
            expected_status=intent.status,
            new_status=to_status,
            changes=dict(changes or {}),
        )
        log(
            event="escrow_transition",
            reference=intent.reference,
            engagementId=intent.engagementId,
            fromStatus=intent.status,
            toStatus=to_status,
            trigger=event,
        )
        metrics.incr(metrics.TRANSITIONS)
        return committed
