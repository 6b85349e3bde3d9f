"""
Trust-account escrow provider (TradeSafe, GraphQL over OAuth2 client credentials).

The provider holds funds itself: release accepts the allocation's delivery,
refund cancels the transaction. Values cross the wire in major units.

Webhooks on /api/payments/tradesafe/webhook are signed: `x-tradesafe-signature`
is the hex HMAC-SHA256 of the raw body keyed with the client secret.
Notifications on /tradesafe/callback carry a `signature` field but no documented
way to verify it, so they are not authenticated.
"""
import hashlib
import hmac
import threading
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from escrow.core.errors import ProviderRejected
from escrow.observability.logging import log
from escrow.providers.base import (
    InitResult,
    Outcome,
    ProviderAdapter,
    ProviderCallbackEvent,
    RawPayload,
    parse_raw_payload,
)

AUTH_URL = "https://auth.tradesafe.co.za/oauth/token"
SANDBOX_API = "https://api-developer.tradesafe.dev/graphql"
PRODUCTION_API = "https://api.tradesafe.co.za/graphql"

# Refresh the cached access token this long before it expires
TOKEN_REFRESH_MARGIN_SEC = 300

_STATE_OUTCOMES = {
    "FUNDS_DEPOSITED": Outcome.FUNDED,
    "FUNDS_RECEIVED": Outcome.FUNDED,
    # Delivery only starts once funds are held
    "INITIATED": Outcome.FUNDED,
    "COMPLETED": Outcome.FUNDED,
    "CANCELLED": Outcome.CANCELLED,
    "DECLINED": Outcome.FAILED,
    "FAILED": Outcome.FAILED,
}
# Transaction/allocation lifecycle states that say nothing about funding
_INFORMATIONAL = {"CREATED", "IN_TRANSIT", "DELIVERY_COMPLETE", "ACCEPTED", "PENDING"}

# Browser-return action tokens
SUCCESS_ACTIONS = {"success", "completed", "funds_deposited", "funds_received"}

TOKEN_CREATE = """
mutation tokenCreate($input: TokenInput!) {
  tokenCreate(input: $input) { id name }
}
"""

API_PROFILE = """
query apiProfile { apiProfile { token } }
"""

TRANSACTION_CREATE = """
mutation transactionCreate($input: CreateTransactionInput!) {
  transactionCreate(input: $input) {
    id state reference
    allocations { id value state }
  }
}
"""

TRANSACTION = """
query transaction($id: ID!) {
  transaction(id: $id) {
    id state reference
    allocations { id value state }
  }
}
"""

CHECKOUT_LINK = """
mutation checkoutLink($transactionId: ID!, $embed: Boolean) {
  checkoutLink(transactionId: $transactionId, embed: $embed)
}
"""

ACCEPT_DELIVERY = """
mutation allocationAcceptDelivery($id: ID!) {
  allocationAcceptDelivery(id: $id) { id state }
}
"""

TRANSACTION_CANCEL = """
mutation transactionCancel($id: ID!, $comment: String!) {
  transactionCancel(id: $id, comment: $comment) { id state }
}
"""


def to_major(amount_minor: int) -> float:
    return round(int(amount_minor) / 100.0, 2)


def to_minor(value) -> Optional[int]:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if v <= 0:
        return None
    return int(round(v * 100))


class TradeSafeAdapter(ProviderAdapter):
    name = "tradesafe"
    signs_callbacks = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = "sandbox",
        days_to_deliver: int = 7,
        days_to_inspect: int = 7,
        verify_signatures: bool = True,
        timeout_sec: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout_sec=timeout_sec, client=client)
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.environment = (environment or "sandbox").lower()
        self.days_to_deliver = int(days_to_deliver)
        self.days_to_inspect = int(days_to_inspect)
        self.verify_signatures = bool(verify_signatures)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def api_url(self) -> str:
        return PRODUCTION_API if self.environment == "production" else SANDBOX_API

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SEC:
                return self._token
            data = self._request(
                "POST",
                AUTH_URL,
                op="authenticate",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            token = data.get("access_token")
            if not token:
                raise ProviderRejected("tradesafe authentication returned no access_token", provider=self.name)
            self._token = str(token)
            self._token_expires_at = time.time() + float(data.get("expires_in") or 0)
            return self._token

    def _graphql(self, query: str, variables: Optional[Dict[str, Any]], op: str) -> Dict[str, Any]:
        token = self._access_token()
        result = self._request(
            "POST",
            self.api_url,
            op=op,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json={"query": query, "variables": variables or {}},
        )
        errors = result.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else {}
            message = (first.get("message") if isinstance(first, dict) else None) or "unknown error"
            log(event="provider_call_rejected", provider=self.name, op=op, message=message)
            raise ProviderRejected(f"tradesafe {op} error: {message}", provider=self.name, op=op)
        return result.get("data") or {}

    def initialize(self, payer_email, amount, reference, callback_url, metadata=None) -> InitResult:
        meta = dict(metadata or {})
        title = str(meta.get("title") or meta.get("itemDescription") or f"Engagement {meta.get('engagementId', '')}").strip()
        description = str(meta.get("itemDescription") or title)

        buyer = self._graphql(
            TOKEN_CREATE,
            {"input": {"user": {
                "givenName": meta.get("payerGivenName") or "Employer",
                "familyName": meta.get("payerFamilyName") or str(meta.get("payerId") or "Account"),
                "email": payer_email,
                "mobile": meta.get("payerMobile") or "",
            }}},
            op="tokenCreate",
        )
        buyer_token = (buyer.get("tokenCreate") or {}).get("id")
        if not buyer_token:
            raise ProviderRejected("tradesafe tokenCreate returned no id", provider=self.name)

        # Worker payout token when the marketplace has one, otherwise the platform's own profile
        seller_token = meta.get("sellerToken")
        if not seller_token:
            profile = self._graphql(API_PROFILE, None, op="apiProfile")
            seller_token = (profile.get("apiProfile") or {}).get("token")

        created = self._graphql(
            TRANSACTION_CREATE,
            {"input": {
                "title": title,
                "description": description,
                "industry": "GENERAL_GOODS_SERVICES",
                "currency": "ZAR",
                "feeAllocation": "SELLER",
                "reference": reference,
                "allocations": {"create": [{
                    "title": title,
                    "description": description,
                    "value": to_major(amount),
                    "daysToDeliver": self.days_to_deliver,
                    "daysToInspect": self.days_to_inspect,
                }]},
                "parties": {"create": [
                    {"token": buyer_token, "role": "BUYER"},
                    {"token": seller_token, "role": "SELLER"},
                ]},
            }},
            op="transactionCreate",
        )
        tx = created.get("transactionCreate") or {}
        tx_id = tx.get("id")
        if not tx_id:
            raise ProviderRejected("tradesafe transactionCreate returned no id", provider=self.name)
        allocations = tx.get("allocations") or []
        allocation_id = allocations[0].get("id") if allocations and isinstance(allocations[0], dict) else None

        link = self._graphql(CHECKOUT_LINK, {"transactionId": tx_id, "embed": False}, op="checkoutLink")
        checkout_url = link.get("checkoutLink") or ""
        if not checkout_url:
            raise ProviderRejected("tradesafe checkoutLink returned no url", provider=self.name)

        log(event="provider_initialized", provider=self.name, reference=reference,
            providerTransactionRef=tx_id, environment=self.environment)
        return InitResult(providerTransactionRef=str(tx_id), redirectUrl=checkout_url,
                          providerAllocationRef=allocation_id)

    def _event(self, state: str, reference: str, tx_id: Optional[str], amount: Optional[int],
               raw: Dict[str, Any]) -> Optional[ProviderCallbackEvent]:
        state = (state or "").strip().upper()
        if not state or state in _INFORMATIONAL:
            return None
        if not reference and not tx_id:
            return None
        return ProviderCallbackEvent(
            provider=self.name,
            reference=reference,
            outcome=_STATE_OUTCOMES.get(state, Outcome.FAILED),
            providerTransactionRef=tx_id,
            amount=amount,
            rawPayload=raw,
        )

    def normalize_callback(self, raw_payload: RawPayload, content_type: str = "") -> Optional[ProviderCallbackEvent]:
        raw = parse_raw_payload(raw_payload, content_type)
        tx = raw.get("transaction") if isinstance(raw.get("transaction"), Mapping) else {}
        state = str(tx.get("state") or raw.get("state") or "")
        reference = str(tx.get("reference") or raw.get("reference") or "").strip()
        tx_id = tx.get("id") or raw.get("transactionId") or raw.get("id")
        return self._event(
            state,
            reference,
            str(tx_id) if tx_id else None,
            to_minor(raw.get("balance") or raw.get("value")),
            raw,
        )

    def fetch_status(self, intent) -> Optional[ProviderCallbackEvent]:
        if not intent.providerTransactionRef:
            return None
        data = self._graphql(TRANSACTION, {"id": intent.providerTransactionRef}, op="transaction")
        tx = data.get("transaction") or {}
        if not tx:
            return None
        allocations = tx.get("allocations") or []
        value = sum(float(a.get("value") or 0) for a in allocations if isinstance(a, dict))
        return self._event(
            str(tx.get("state") or ""),
            str(tx.get("reference") or intent.reference),
            str(tx.get("id") or intent.providerTransactionRef),
            to_minor(value),
            {"transaction": tx},
        )

    def trigger_payout(self, intent) -> str:
        if not intent.providerAllocationRef:
            raise ProviderRejected("intent has no allocation to accept", reference=intent.reference)
        self._graphql(ACCEPT_DELIVERY, {"id": intent.providerAllocationRef}, op="allocationAcceptDelivery")
        return "triggered"

    def trigger_refund(self, intent) -> str:
        if not intent.providerTransactionRef:
            raise ProviderRejected("intent has no provider transaction to cancel", reference=intent.reference)
        self._graphql(
            TRANSACTION_CANCEL,
            {"id": intent.providerTransactionRef, "comment": f"Dispute resolved with refund ({intent.reference})"},
            op="transactionCancel",
        )
        return "triggered"

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.verify_signatures:
            return True
        signature = self.header(headers, "x-tradesafe-signature").lower()
        if not signature or not self.client_secret:
            return False
        expected = hmac.new(self.client_secret.encode("utf-8"), raw_body or b"", hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def reference_from_params(self, params) -> str:
        return str(params.get("reference") or "").strip()

    def is_webhook_shape(self, params: Mapping[str, Any]) -> bool:
        return all(k in params for k in ("type", "state", "signature"))

    def is_success_action(self, params: Mapping[str, Any]) -> bool:
        action = str(params.get("action") or params.get("status") or "").strip().lower()
        return action in SUCCESS_ACTIONS
