from typing import Any, Dict, List, Optional

import pytest

from escrow.core import state_machine as sm
from escrow.providers.base import (
    InitResult,
    Outcome,
    ProviderAdapter,
    ProviderCallbackEvent,
    parse_raw_payload,
)
from escrow.providers.registry import ProviderRegistry
from escrow.notify.dispatcher import MemoryInbox, NotificationDispatcher
from escrow.settings import settings
from escrow.store.document_store import MemoryDocumentStore
from escrow.store.models import Engagement, PaymentIntent
from escrow.utils.time import now_ms
from escrow.wiring import build_components


class FakeAdapter(ProviderAdapter):
    """In-process provider: callbacks are {reference, outcome, amount?} dicts."""

    def __init__(self, name: str):
        super().__init__(timeout_sec=1)
        self.name = name
        self.initialize_calls: List[Dict[str, Any]] = []
        self.initialize_error: Optional[Exception] = None
        self.remote_outcome: Optional[Outcome] = None
        self.remote_amount: Optional[int] = None
        self.payouts: List[str] = []
        self.refunds: List[str] = []
        self.payout_error: Optional[Exception] = None

    def initialize(self, payer_email, amount, reference, callback_url, metadata=None):
        self.initialize_calls.append({
            "payer_email": payer_email, "amount": amount, "reference": reference,
            "callback_url": callback_url, "metadata": metadata,
        })
        if self.initialize_error is not None:
            raise self.initialize_error
        return InitResult(
            providerTransactionRef=f"{self.name}-tx-{reference}",
            redirectUrl=f"https://{self.name}.example/checkout/{reference}",
            providerAllocationRef=f"{self.name}-alloc-{reference}",
        )

    def normalize_callback(self, raw_payload, content_type=""):
        raw = parse_raw_payload(raw_payload, content_type)
        outcome = raw.get("outcome")
        if outcome not in ("funded", "failed", "cancelled"):
            return None
        return ProviderCallbackEvent(
            provider=self.name,
            reference=str(raw.get("reference") or ""),
            outcome=Outcome(outcome),
            providerTransactionRef=raw.get("providerTransactionRef"),
            amount=int(raw["amount"]) if raw.get("amount") is not None else None,
            rawPayload=raw,
        )

    def fetch_status(self, intent):
        if self.remote_outcome is None:
            return None
        return ProviderCallbackEvent(
            provider=self.name,
            reference=intent.reference,
            outcome=self.remote_outcome,
            amount=self.remote_amount,
        )

    def trigger_payout(self, intent):
        if self.payout_error is not None:
            raise self.payout_error
        self.payouts.append(intent.reference)
        return "triggered"

    def trigger_refund(self, intent):
        self.refunds.append(intent.reference)
        return "triggered"


class RecordingEnqueue:
    def __init__(self):
        self.items = []

    def __call__(self, notification):
        self.items.append(notification)


@pytest.fixture(autouse=True)
def _no_metrics(monkeypatch):
    # Counters go to Redis; unit tests run without one.
    monkeypatch.setattr(settings, "ENABLE_METRICS", False)


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def adapters():
    return {"paystack": FakeAdapter("paystack"), "tradesafe": FakeAdapter("tradesafe")}


@pytest.fixture
def inbox():
    return MemoryInbox(max_items=50)


@pytest.fixture
def components(store, adapters, inbox):
    registry = ProviderRegistry(adapters.values(), default="paystack")
    dispatcher = NotificationDispatcher(inbox, enqueue=RecordingEnqueue(), deliver_webhook=False)
    return build_components(settings, store=store, registry=registry, dispatcher=dispatcher)


@pytest.fixture
def engagement(components):
    return components.engagements.create(
        Engagement(engagementId="eng-1", employerId="employer-1", workerId="worker-1", title="Fix the roof")
    )


def seed_intent(components, status=sm.AWAITING_CALLBACK, reference="ESC_TEST_1", engagement_id="eng-1",
                amount=50000, provider="paystack", **fields) -> PaymentIntent:
    """Write an intent straight into the store, bypassing the provider."""
    ts = now_ms()
    intent = PaymentIntent(
        reference=reference,
        engagementId=engagement_id,
        payerId="employer-1",
        payerEmail="employer@example.com",
        amount=amount,
        provider=provider,
        providerTransactionRef=f"{provider}-tx-{reference}",
        providerAllocationRef=f"{provider}-alloc-{reference}",
        status=status,
        createdAt=ts,
        updatedAt=ts,
        expiresAt=ts + 30 * 60 * 1000,
        **fields,
    )
    components.intents.create(intent)
    components.intents.link_provider_ref(provider, intent.providerTransactionRef, reference)
    components.intents.claim_engagement(engagement_id, reference, intent.expiresAt)
    if status == sm.COMPLETION_REQUESTED:
        components.store.index_add("completion_requested", reference, int(fields.get("completionRequestedAt") or ts))
    return intent


@pytest.fixture
def client(components):
    from fastapi.testclient import TestClient

    from escrow.main import app
    from escrow.wiring import get_components

    app.dependency_overrides[get_components] = lambda: components
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides = {}
