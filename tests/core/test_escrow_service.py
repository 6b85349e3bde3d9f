from unittest.mock import patch

import pytest

from escrow.core import state_machine as sm
from escrow.core.errors import (
    DisputeOpen,
    DuplicateIntent,
    Forbidden,
    InvalidTransition,
    NotFound,
    ProviderUnavailable,
    StoreUnavailable,
    ValidationError,
)
from escrow.core.escrow_service import intent_view, new_reference
from escrow.notify import dispatcher as notify
from escrow.providers.base import Outcome

from conftest import seed_intent


def _init(components, **kw):
    args = dict(caller_id="employer-1", engagement_id="eng-1", amount=50000, payer_email="employer@example.com")
    args.update(kw)
    return components.escrow.initialize_escrow(**args)


def test_reference_format():
    ref = new_reference()
    prefix, stamp, rand = ref.split("_")
    assert prefix == "ESC"
    assert stamp.isalnum() and stamp.upper() == stamp
    assert len(rand) == 8
    assert new_reference() != ref


def test_initialize_creates_awaiting_intent(components, engagement, adapters):
    out = _init(components, item_description="Roof <b>repair</b>")

    assert out["provider"] == "paystack"
    assert out["redirectUrl"].startswith("https://paystack.example/checkout/")
    intent = components.intents.get(out["reference"])
    assert intent.status == sm.AWAITING_CALLBACK
    assert intent.amount == 50000
    assert intent.itemDescription == "Roof repair"
    assert intent.providerTransactionRef == out["providerTransactionRef"]
    assert intent.expiresAt > intent.createdAt

    call = adapters["paystack"].initialize_calls[0]
    assert call["callback_url"].endswith("/api/payments/paystack/callback")
    assert call["metadata"]["engagementId"] == "eng-1"
    assert components.engagements.get("eng-1").escrowStatus == sm.AWAITING_CALLBACK


def test_initialize_with_named_provider(components, engagement, adapters):
    out = _init(components, provider="tradesafe")
    assert out["provider"] == "tradesafe"
    assert adapters["tradesafe"].initialize_calls[0]["callback_url"].endswith("/tradesafe/callback")
    assert components.intents.get(out["reference"]).providerAllocationRef


@pytest.mark.parametrize("amount", [0, -100, 10.5, "500", None, True])
def test_bad_amount_rejected_before_any_provider_call(components, engagement, adapters, amount):
    with pytest.raises(ValidationError):
        _init(components, amount=amount)
    assert adapters["paystack"].initialize_calls == []
    assert components.intents.get_claim("eng-1") is None


def test_bad_email_rejected(components, engagement, adapters):
    with pytest.raises(ValidationError):
        _init(components, payer_email="not-an-email")
    assert adapters["paystack"].initialize_calls == []


def test_unknown_provider_rejected(components, engagement):
    with pytest.raises(ValidationError):
        _init(components, provider="stripe")


def test_only_employer_can_fund(components, engagement, adapters):
    with pytest.raises(Forbidden):
        _init(components, caller_id="worker-1")
    assert adapters["paystack"].initialize_calls == []


def test_unknown_engagement(components):
    with pytest.raises(NotFound):
        _init(components, engagement_id="eng-missing")


def test_second_funding_attempt_is_a_duplicate(components, engagement, adapters):
    _init(components)
    with pytest.raises(DuplicateIntent) as exc:
        _init(components)
    assert exc.value.status_code == 409
    assert len(adapters["paystack"].initialize_calls) == 1


def test_provider_failure_frees_the_engagement(components, engagement, adapters):
    adapters["paystack"].initialize_error = ProviderUnavailable("paystack down")
    with pytest.raises(ProviderUnavailable):
        _init(components)

    adapters["paystack"].initialize_error = None
    out = _init(components)
    assert components.intents.get(out["reference"]).status == sm.AWAITING_CALLBACK


def test_persist_failure_after_provider_ack(components, engagement, adapters):
    with patch.object(components.intents, "create", side_effect=StoreUnavailable("write failed")):
        with pytest.raises(StoreUnavailable) as exc:
            _init(components)
    assert exc.value.status_code == 500
    assert len(adapters["paystack"].initialize_calls) == 1


def test_request_completion_is_worker_only(components, engagement, inbox):
    seed_intent(components, status=sm.FUNDED)

    with pytest.raises(Forbidden):
        components.escrow.request_completion("employer-1", "eng-1")

    view = components.escrow.request_completion("worker-1", "eng-1")
    assert view["status"] == sm.COMPLETION_REQUESTED
    assert view["completionRequestedAt"]
    assert "payerEmail" not in view
    assert components.engagements.get("eng-1").completionRequestedAt == view["completionRequestedAt"]
    assert [n["kind"] for n in inbox.recent("employer-1")] == [notify.COMPLETION_REQUESTED]


def test_request_completion_before_funding_is_invalid(components, engagement):
    seed_intent(components, status=sm.AWAITING_CALLBACK)
    with pytest.raises(InvalidTransition):
        components.escrow.request_completion("worker-1", "eng-1")


def test_approve_completion_releases(components, engagement, adapters, inbox):
    seed_intent(components, status=sm.COMPLETION_REQUESTED, completionRequestedAt=1)

    with pytest.raises(Forbidden):
        components.escrow.approve_completion("worker-1", "eng-1")

    view = components.escrow.approve_completion("employer-1", "eng-1")
    assert view["status"] == sm.RELEASED
    assert view["releasedVia"] == "employer_approval"
    assert view["payoutStatus"] == "triggered"
    assert adapters["paystack"].payouts == ["ESC_TEST_1"]
    assert [n["kind"] for n in inbox.recent("worker-1")] == [notify.PAYMENT_RELEASED]


def test_approve_blocked_by_open_dispute(components, engagement, adapters):
    seed_intent(components, status=sm.COMPLETION_REQUESTED, completionRequestedAt=1)
    components.engagements.set_dispute_flag("eng-1", True)

    with pytest.raises(DisputeOpen):
        components.escrow.approve_completion("employer-1", "eng-1")
    assert components.intents.get("ESC_TEST_1").status == sm.COMPLETION_REQUESTED
    assert adapters["paystack"].payouts == []


def test_get_intent_for_parties_only(components, engagement):
    seed_intent(components)
    assert components.escrow.get_intent_for("worker-1", "ESC_TEST_1")["reference"] == "ESC_TEST_1"
    assert "payerEmail" not in components.escrow.get_intent_for("employer-1", "ESC_TEST_1")
    with pytest.raises(Forbidden):
        components.escrow.get_intent_for("stranger", "ESC_TEST_1")
    with pytest.raises(NotFound):
        components.escrow.get_intent_for("employer-1", "ESC_NOPE")


def test_verify_payment_reconciles_with_provider(components, engagement, adapters):
    seed_intent(components)

    pending = components.escrow.verify_payment("employer-1", "ESC_TEST_1")
    assert pending == {"reference": "ESC_TEST_1", "status": sm.AWAITING_CALLBACK, "result": "pending",
                       "funded": False}

    adapters["paystack"].remote_outcome = Outcome.FUNDED
    funded = components.escrow.verify_payment("employer-1", "ESC_TEST_1", provider="paystack")
    assert funded["status"] == sm.FUNDED
    assert funded["funded"] is True

    # Already funded: verification is idempotent
    again = components.escrow.verify_payment("employer-1", "ESC_TEST_1")
    assert again["result"] == "duplicate"
    assert again["funded"] is True


def test_verify_payment_checks_payer_and_provider(components, engagement):
    seed_intent(components)
    with pytest.raises(Forbidden):
        components.escrow.verify_payment("worker-1", "ESC_TEST_1")
    with pytest.raises(ValidationError):
        components.escrow.verify_payment("employer-1", "ESC_TEST_1", provider="tradesafe")


def test_intent_view_hides_email(components, engagement):
    intent = seed_intent(components)
    assert "payerEmail" not in intent_view(intent)


def test_completion_request_fails_whole_when_sweep_index_is_down(components, engagement, inbox):
    seed_intent(components, status=sm.FUNDED)

    with patch.object(components.store, "index_add", side_effect=StoreUnavailable("index add failed")):
        with pytest.raises(StoreUnavailable):
            components.escrow.request_completion("worker-1", "eng-1")

    # Nothing committed, so the worker can simply retry
    assert components.intents.get("ESC_TEST_1").status == sm.FUNDED
    assert inbox.recent("employer-1") == []

    components.escrow.request_completion("worker-1", "eng-1")
    assert components.intents.get("ESC_TEST_1").status == sm.COMPLETION_REQUESTED
