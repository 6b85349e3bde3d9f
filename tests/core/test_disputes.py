import threading

import pytest

from escrow.core import state_machine as sm
from escrow.core.errors import DisputeOpen, Forbidden, InvalidTransition, NotFound, ValidationError
from escrow.notify import dispatcher as notify
from escrow.store import dispute_repo

from conftest import seed_intent

REASON = "The work was never delivered as agreed"


def test_worker_opens_dispute_on_funded_escrow(components, engagement, inbox):
    seed_intent(components, status=sm.FUNDED)

    doc = components.disputes.open_dispute("worker-1", "eng-1", REASON)

    assert doc["status"] == dispute_repo.OPEN
    assert doc["openedBy"] == "worker-1"
    assert doc["reference"] == "ESC_TEST_1"
    assert components.intents.get("ESC_TEST_1").status == sm.DISPUTED
    eng = components.engagements.get("eng-1")
    assert eng.hasOpenDispute is True
    assert eng.escrowStatus == sm.DISPUTED
    assert components.gate.is_blocked("eng-1")
    assert [n["kind"] for n in inbox.recent("employer-1")] == [notify.DISPUTE_OPENED]


def test_reason_is_sanitized_and_length_checked(components, engagement):
    seed_intent(components, status=sm.FUNDED)
    with pytest.raises(ValidationError):
        components.disputes.open_dispute("worker-1", "eng-1", "<b>short</b>")
    with pytest.raises(ValidationError):
        components.disputes.open_dispute("worker-1", "eng-1", "x" * 1001)

    doc = components.disputes.open_dispute("employer-1", "eng-1", "<script>alert(1)</script>Not finished at all")
    assert doc["reason"] == "Not finished at all"


def test_outsiders_cannot_dispute(components, engagement):
    seed_intent(components, status=sm.FUNDED)
    with pytest.raises(Forbidden):
        components.disputes.open_dispute("stranger", "eng-1", REASON)


def test_dispute_requires_funded_escrow(components, engagement):
    seed_intent(components, status=sm.AWAITING_CALLBACK)
    with pytest.raises(InvalidTransition):
        components.disputes.open_dispute("worker-1", "eng-1", REASON)
    assert components.disputes_repo.get("eng-1") is None


def test_dispute_without_payment(components, engagement):
    with pytest.raises(NotFound):
        components.disputes.open_dispute("worker-1", "eng-1", REASON)


def test_second_open_is_rejected(components, engagement):
    seed_intent(components, status=sm.COMPLETION_REQUESTED, completionRequestedAt=1)
    components.disputes.open_dispute("worker-1", "eng-1", REASON)
    with pytest.raises(InvalidTransition):
        components.disputes.open_dispute("employer-1", "eng-1", REASON)


def test_repo_open_has_one_winner(components, engagement):
    from escrow.store.models import Dispute

    n = 8
    barrier = threading.Barrier(n)
    outcomes = []

    def opener(i):
        barrier.wait()
        try:
            components.disputes_repo.open(Dispute(engagementId="eng-1", openedBy=f"u{i}", reason=REASON,
                                                  status=dispute_repo.OPEN))
            outcomes.append("won")
        except DisputeOpen:
            outcomes.append("lost")

    threads = [threading.Thread(target=opener, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert outcomes.count("won") == 1


def test_resolve_with_release(components, engagement, adapters, inbox):
    seed_intent(components, status=sm.FUNDED)
    components.disputes.open_dispute("employer-1", "eng-1", REASON)

    out = components.disputes.resolve_dispute("admin-7", "eng-1", "release", notes="Evidence <i>reviewed</i>")

    assert out["intentStatus"] == sm.RELEASED
    assert out["payoutStatus"] == "triggered"
    assert out["dispute"]["status"] == dispute_repo.RESOLVED_RELEASED
    assert out["dispute"]["resolvedBy"] == "admin-7"
    assert out["dispute"]["resolutionNotes"] == "Evidence reviewed"
    intent = components.intents.get("ESC_TEST_1")
    assert intent.resolution == "released"
    assert intent.releasedVia == "dispute"
    assert adapters["paystack"].payouts == ["ESC_TEST_1"]
    assert components.engagements.get("eng-1").hasOpenDispute is False
    assert not components.gate.is_blocked("eng-1")
    kinds = [n["kind"] for n in inbox.recent("worker-1")]
    assert notify.DISPUTE_RESOLVED in kinds
    assert notify.PAYMENT_RELEASED in kinds


def test_resolve_with_refund(components, engagement, adapters, inbox):
    seed_intent(components, status=sm.COMPLETION_REQUESTED, completionRequestedAt=1)
    components.disputes.open_dispute("worker-1", "eng-1", REASON)

    out = components.disputes.resolve_dispute("admin-7", "eng-1", "refund")

    assert out["intentStatus"] == sm.REFUNDED
    assert components.intents.get("ESC_TEST_1").resolution == "refunded"
    assert adapters["paystack"].refunds == ["ESC_TEST_1"]
    assert notify.PAYMENT_REFUNDED in [n["kind"] for n in inbox.recent("employer-1")]
    # Auto-release can no longer touch it
    assert components.scheduler.count_eligible(now=10**13) == 0


def test_resolve_rejects_bad_outcome_and_closed_dispute(components, engagement):
    seed_intent(components, status=sm.FUNDED)
    components.disputes.open_dispute("worker-1", "eng-1", REASON)

    with pytest.raises(ValidationError):
        components.disputes.resolve_dispute("admin-7", "eng-1", "split")

    components.disputes.resolve_dispute("admin-7", "eng-1", "release")
    with pytest.raises(NotFound):
        components.disputes.resolve_dispute("admin-7", "eng-1", "refund")


def test_resolve_unknown_dispute(components, engagement):
    with pytest.raises(NotFound):
        components.disputes.resolve_dispute("admin-7", "eng-1", "release")
