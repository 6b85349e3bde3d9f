import hashlib
import hmac
import json

import httpx
import pytest

from escrow.core.errors import ProviderRejected, ProviderUnavailable
from escrow.providers.base import Outcome
from escrow.providers.paystack import PaystackAdapter
from escrow.store.models import PaymentIntent

SECRET = "sk_test_abc123"


def _adapter(handler, **kw):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PaystackAdapter(secret_key=SECRET, base_url="https://paystack.test", client=client, **kw)


def test_initialize_posts_minor_units_and_returns_checkout():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": True,
            "data": {"authorization_url": "https://checkout.paystack.com/abc", "access_code": "abc",
                     "reference": "ESC_1"},
        })

    result = _adapter(handler).initialize("a@b.co", 50000, "ESC_1", "https://app/cb", {"engagementId": "eng-1"})

    assert seen["url"] == "https://paystack.test/transaction/initialize"
    assert seen["auth"] == f"Bearer {SECRET}"
    assert seen["body"]["amount"] == 50000
    assert seen["body"]["reference"] == "ESC_1"
    assert seen["body"]["callback_url"] == "https://app/cb"
    assert seen["body"]["metadata"] == {"engagementId": "eng-1"}
    assert result.redirectUrl == "https://checkout.paystack.com/abc"
    assert result.providerTransactionRef == "abc"


def test_initialize_status_false_is_rejected():
    adapter = _adapter(lambda r: httpx.Response(200, json={"status": False, "message": "Invalid key"}))
    with pytest.raises(ProviderRejected):
        adapter.initialize("a@b.co", 100, "ESC_1", "https://app/cb")


def test_initialize_5xx_is_unavailable():
    adapter = _adapter(lambda r: httpx.Response(503, text="down"))
    with pytest.raises(ProviderUnavailable) as exc:
        adapter.initialize("a@b.co", 100, "ESC_1", "https://app/cb")
    assert exc.value.status_code == 500
    assert "503" not in exc.value.to_dict()["message"]


def test_initialize_transport_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderUnavailable):
        _adapter(handler).initialize("a@b.co", 100, "ESC_1", "https://app/cb")


def test_initialize_4xx_is_rejected():
    adapter = _adapter(lambda r: httpx.Response(400, json={"status": False, "message": "bad email"}))
    with pytest.raises(ProviderRejected):
        adapter.initialize("not-an-email", 100, "ESC_1", "https://app/cb")


@pytest.mark.parametrize("status,outcome", [
    ("success", Outcome.FUNDED),
    ("failed", Outcome.FAILED),
    ("reversed", Outcome.FAILED),
    ("abandoned", Outcome.CANCELLED),
    ("something_new", Outcome.FAILED),
])
def test_charge_webhook_outcomes(status, outcome):
    adapter = PaystackAdapter(secret_key=SECRET)
    body = json.dumps({"event": "charge.success",
                       "data": {"reference": "ESC_1", "status": status, "amount": 50000, "id": 99}})
    event = adapter.normalize_callback(body, "application/json")
    assert event.outcome == outcome
    assert event.reference == "ESC_1"
    assert event.amount == 50000
    assert event.providerTransactionRef == "99"


def test_pending_and_non_charge_events_are_informational():
    adapter = PaystackAdapter(secret_key=SECRET)
    assert adapter.normalize_callback({"event": "charge.success", "data": {"reference": "ESC_1", "status": "ongoing"}}) is None
    assert adapter.normalize_callback({"event": "transfer.success", "data": {"reference": "ESC_1", "status": "success"}}) is None


def test_browser_return_uses_trxref():
    adapter = PaystackAdapter(secret_key=SECRET)
    event = adapter.normalize_callback("trxref=ESC_9&status=success", "application/x-www-form-urlencoded")
    assert event.reference == "ESC_9"
    assert event.outcome == Outcome.FUNDED
    assert adapter.reference_from_params({"trxref": "ESC_9"}) == "ESC_9"


def test_fetch_status_reads_verify_endpoint():
    def handler(request):
        assert request.url.path == "/transaction/verify/ESC_1"
        return httpx.Response(200, json={"status": True, "data": {"status": "success", "amount": 700}})

    intent = PaymentIntent(reference="ESC_1", amount=700, provider="paystack")
    event = _adapter(handler).fetch_status(intent)
    assert event.outcome == Outcome.FUNDED
    assert event.reference == "ESC_1"
    assert event.amount == 700


def test_payout_and_refund_need_no_provider_call():
    def handler(request):
        raise AssertionError("no HTTP expected")

    intent = PaymentIntent(reference="ESC_1")
    adapter = _adapter(handler)
    assert adapter.trigger_payout(intent) == "not_required"
    assert adapter.trigger_refund(intent) == "not_required"


def test_signature_is_hmac_sha512_of_raw_body():
    adapter = PaystackAdapter(secret_key=SECRET)
    body = b'{"event":"charge.success"}'
    good = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    assert adapter.verify_signature(body, {"X-Paystack-Signature": good})
    assert not adapter.verify_signature(body, {"x-paystack-signature": "0" * 128})
    assert not adapter.verify_signature(body, {})


def test_signature_check_can_be_disabled():
    adapter = PaystackAdapter(secret_key=SECRET, verify_signatures=False)
    assert adapter.verify_signature(b"{}", {})
