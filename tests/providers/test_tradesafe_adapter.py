import hashlib
import hmac
import json

import httpx
import pytest

from escrow.core.errors import ProviderRejected
from escrow.providers.base import Outcome
from escrow.providers import tradesafe
from escrow.providers.tradesafe import TradeSafeAdapter, to_major, to_minor
from escrow.store.models import PaymentIntent


class GraphQLStub:
    """Answers the OAuth endpoint and GraphQL operations by operation name."""

    def __init__(self, responses):
        self.responses = responses
        self.operations = []
        self.token_requests = 0

    def __call__(self, request):
        if str(request.url) == tradesafe.AUTH_URL:
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        payload = json.loads(request.content)
        op = payload["query"].split()[1].split("(")[0]
        self.operations.append((op, payload["variables"]))
        return httpx.Response(200, json=self.responses[op])


def _adapter(stub):
    client = httpx.Client(transport=httpx.MockTransport(stub))
    return TradeSafeAdapter(client_id="cid", client_secret="sec", client=client)


def _init_responses():
    return {
        "tokenCreate": {"data": {"tokenCreate": {"id": "buyer-tok"}}},
        "apiProfile": {"data": {"apiProfile": {"token": "platform-tok"}}},
        "transactionCreate": {"data": {"transactionCreate": {
            "id": "tx-1", "state": "CREATED", "allocations": [{"id": "alloc-1", "value": 500.0}]}}},
        "checkoutLink": {"data": {"checkoutLink": "https://pay.tradesafe.test/tx-1"}},
    }


def test_amount_conversion():
    assert to_major(50000) == 500.0
    assert to_major(1999) == 19.99
    assert to_minor("19.99") == 1999
    assert to_minor(None) is None
    assert to_minor(0) is None


def test_initialize_runs_the_four_step_flow():
    stub = GraphQLStub(_init_responses())

    result = _adapter(stub).initialize("a@b.co", 50000, "ESC_1", "https://app/cb",
                                       {"engagementId": "eng-1", "payerId": "employer-1"})

    assert [op for op, _ in stub.operations] == ["tokenCreate", "apiProfile", "transactionCreate", "checkoutLink"]
    create_input = stub.operations[2][1]["input"]
    assert create_input["reference"] == "ESC_1"
    assert create_input["allocations"]["create"][0]["value"] == 500.0
    assert create_input["parties"]["create"][1] == {"token": "platform-tok", "role": "SELLER"}
    assert result.providerTransactionRef == "tx-1"
    assert result.providerAllocationRef == "alloc-1"
    assert result.redirectUrl == "https://pay.tradesafe.test/tx-1"


def test_initialize_uses_seller_token_when_given():
    stub = GraphQLStub(_init_responses())
    _adapter(stub).initialize("a@b.co", 100, "ESC_1", "https://app/cb", {"sellerToken": "worker-tok"})
    assert "apiProfile" not in [op for op, _ in stub.operations]


def test_access_token_is_cached():
    stub = GraphQLStub(_init_responses())
    adapter = _adapter(stub)
    adapter.initialize("a@b.co", 100, "ESC_1", "https://app/cb")
    adapter.initialize("a@b.co", 100, "ESC_2", "https://app/cb")
    assert stub.token_requests == 1


def test_graphql_errors_are_rejections():
    responses = _init_responses()
    responses["tokenCreate"] = {"errors": [{"message": "email invalid"}]}
    with pytest.raises(ProviderRejected):
        _adapter(GraphQLStub(responses)).initialize("bad", 100, "ESC_1", "https://app/cb")


@pytest.mark.parametrize("state,outcome", [
    ("FUNDS_DEPOSITED", Outcome.FUNDED),
    ("FUNDS_RECEIVED", Outcome.FUNDED),
    ("INITIATED", Outcome.FUNDED),
    ("CANCELLED", Outcome.CANCELLED),
    ("DECLINED", Outcome.FAILED),
    ("MYSTERY", Outcome.FAILED),
])
def test_webhook_states(state, outcome):
    adapter = TradeSafeAdapter(client_id="", client_secret="")
    event = adapter.normalize_callback({"type": "Transaction", "state": state, "reference": "ESC_1",
                                        "id": "tx-1", "balance": "500.00", "signature": "x"})
    assert event.outcome == outcome
    assert event.reference == "ESC_1"
    assert event.providerTransactionRef == "tx-1"
    assert event.amount == 50000


def test_informational_states_are_dropped():
    adapter = TradeSafeAdapter(client_id="", client_secret="")
    assert adapter.normalize_callback({"state": "DELIVERY_COMPLETE", "reference": "ESC_1"}) is None
    assert adapter.normalize_callback({"state": "CREATED", "reference": "ESC_1"}) is None
    assert adapter.normalize_callback({"state": "", "reference": "ESC_1"}) is None


def test_fetch_status_sums_allocations():
    stub = GraphQLStub({"transaction": {"data": {"transaction": {
        "id": "tx-1", "state": "FUNDS_RECEIVED", "reference": "ESC_1",
        "allocations": [{"value": 300.0}, {"value": 200.0}]}}}})
    intent = PaymentIntent(reference="ESC_1", providerTransactionRef="tx-1", provider="tradesafe")

    event = _adapter(stub).fetch_status(intent)

    assert event.outcome == Outcome.FUNDED
    assert event.amount == 50000


def test_fetch_status_after_delivery_started_counts_as_funded():
    # The funding webhook was missed; the transaction has already moved on to delivery
    stub = GraphQLStub({"transaction": {"data": {"transaction": {
        "id": "tx-1", "state": "INITIATED", "reference": "ESC_1", "allocations": [{"value": 500.0}]}}}})
    intent = PaymentIntent(reference="ESC_1", providerTransactionRef="tx-1", provider="tradesafe")

    event = _adapter(stub).fetch_status(intent)

    assert event.outcome == Outcome.FUNDED
    assert event.amount == 50000


def test_payout_accepts_allocation_and_refund_cancels():
    stub = GraphQLStub({
        "allocationAcceptDelivery": {"data": {"allocationAcceptDelivery": {"id": "alloc-1", "state": "ACCEPTED"}}},
        "transactionCancel": {"data": {"transactionCancel": {"id": "tx-1", "state": "CANCELLED"}}},
    })
    adapter = _adapter(stub)
    intent = PaymentIntent(reference="ESC_1", providerTransactionRef="tx-1", providerAllocationRef="alloc-1")

    assert adapter.trigger_payout(intent) == "triggered"
    assert adapter.trigger_refund(intent) == "triggered"
    assert stub.operations[0] == ("allocationAcceptDelivery", {"id": "alloc-1"})
    assert stub.operations[1][0] == "transactionCancel"


def test_payout_without_allocation_is_rejected():
    with pytest.raises(ProviderRejected):
        TradeSafeAdapter(client_id="", client_secret="").trigger_payout(PaymentIntent(reference="ESC_1"))


def test_callback_shapes():
    adapter = TradeSafeAdapter(client_id="", client_secret="")
    assert adapter.is_webhook_shape({"type": "Transaction", "state": "X", "signature": "s"})
    assert not adapter.is_webhook_shape({"reference": "ESC_1", "action": "success"})
    assert adapter.is_success_action({"action": "SUCCESS"})
    assert not adapter.is_success_action({"action": "failure"})


def test_webhook_signature_is_hmac_sha256_of_body():
    adapter = TradeSafeAdapter(client_id="cid", client_secret="sec")
    body = b'{"state":"FUNDS_RECEIVED","reference":"ESC_1"}'
    good = hmac.new(b"sec", body, hashlib.sha256).hexdigest()

    assert adapter.verify_signature(body, {"X-TradeSafe-Signature": good.upper()})
    assert not adapter.verify_signature(body + b" ", {"x-tradesafe-signature": good})
    assert not adapter.verify_signature(body, {})


def test_webhook_signature_needs_a_client_secret():
    body = b"{}"
    sig = hmac.new(b"", body, hashlib.sha256).hexdigest()
    assert not TradeSafeAdapter(client_id="", client_secret="").verify_signature(body, {"x-tradesafe-signature": sig})


def test_signature_check_can_be_disabled():
    adapter = TradeSafeAdapter(client_id="", client_secret="", verify_signatures=False)
    assert adapter.verify_signature(b"{}", {})
