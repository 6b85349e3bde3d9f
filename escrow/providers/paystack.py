"""
Card/bank provider (Paystack).

Amounts are exchanged in minor units, so no conversion happens here.
Funds settle to the platform balance; there is no provider-side escrow
to release or cancel afterwards.
"""
import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

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

CHANNELS = ["card", "bank_transfer", "eft"]

# transaction.status values as Paystack reports them
_STATUS_OUTCOMES = {
    "success": Outcome.FUNDED,
    "failed": Outcome.FAILED,
    "reversed": Outcome.FAILED,
    "abandoned": Outcome.CANCELLED,
}
# Still in progress at the provider; not a funding outcome
_INFORMATIONAL = {"pending", "ongoing", "processing", "queued", "send_otp", "send_birthday", "send_pin"}


def _to_int(v) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


class PaystackAdapter(ProviderAdapter):
    name = "paystack"
    signs_callbacks = True

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        currency: str = "ZAR",
        verify_signatures: bool = True,
        timeout_sec: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout_sec=timeout_sec, client=client)
        self.secret_key = secret_key or ""
        self.base_url = (base_url or "").rstrip("/")
        self.currency = currency or "ZAR"
        self.verify_signatures = bool(verify_signatures)

    @property
    def test_mode(self) -> bool:
        return self.secret_key.startswith("sk_test_")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def initialize(self, payer_email, amount, reference, callback_url, metadata=None) -> InitResult:
        body = {
            "email": payer_email,
            "amount": int(amount),
            "reference": reference,
            "callback_url": callback_url,
            "currency": self.currency,
            "channels": CHANNELS,
            "metadata": dict(metadata or {}),
        }
        data = self._request(
            "POST", f"{self.base_url}/transaction/initialize", op="initialize", headers=self._headers(), json=body
        )
        if not data.get("status"):
            raise ProviderRejected(
                f"paystack initialize rejected: {data.get('message') or 'unknown error'}",
                provider=self.name, op="initialize",
            )
        d = data.get("data") or {}
        redirect_url = d.get("authorization_url") or ""
        if not redirect_url:
            raise ProviderRejected("paystack initialize returned no authorization_url", provider=self.name)

        log(event="provider_initialized", provider=self.name, reference=reference, testMode=self.test_mode)
        return InitResult(
            providerTransactionRef=str(d.get("access_code") or d.get("reference") or reference),
            redirectUrl=redirect_url,
        )

    def _event_from_transaction(self, tx: Mapping[str, Any], raw: Dict[str, Any]) -> Optional[ProviderCallbackEvent]:
        reference = str(tx.get("reference") or "").strip()
        if not reference:
            return None
        status = str(tx.get("status") or "").strip().lower()
        if status in _INFORMATIONAL:
            return None
        # Anything Paystack did not report as one of the known outcomes is not money we hold
        outcome = _STATUS_OUTCOMES.get(status, Outcome.FAILED)
        return ProviderCallbackEvent(
            provider=self.name,
            reference=reference,
            outcome=outcome,
            providerTransactionRef=str(tx.get("id")) if tx.get("id") is not None else None,
            amount=_to_int(tx.get("amount")),
            rawPayload=raw,
        )

    def normalize_callback(self, raw_payload: RawPayload, content_type: str = "") -> Optional[ProviderCallbackEvent]:
        raw = parse_raw_payload(raw_payload, content_type)
        event_type = str(raw.get("event") or "").strip().lower()
        if event_type:
            # transfer.*, subscription.* etc. never move an escrow intent
            if not event_type.startswith("charge."):
                return None
            tx = raw.get("data") if isinstance(raw.get("data"), Mapping) else {}
            return self._event_from_transaction(tx, raw)
        # Browser return (?trxref=&reference=) or a flat transaction object
        tx = dict(raw)
        tx.setdefault("reference", raw.get("trxref"))
        return self._event_from_transaction(tx, raw)

    def fetch_status(self, intent) -> Optional[ProviderCallbackEvent]:
        data = self._request(
            "GET",
            f"{self.base_url}/transaction/verify/{quote(intent.reference, safe='')}",
            op="verify",
            headers=self._headers(),
        )
        if not data.get("status"):
            log(event="provider_verify_unresolved", provider=self.name, reference=intent.reference,
                message=data.get("message"))
            return None
        tx = dict(data.get("data") or {})
        tx.setdefault("reference", intent.reference)
        return self._event_from_transaction(tx, data)

    def trigger_payout(self, intent) -> str:
        return "not_required"

    def trigger_refund(self, intent) -> str:
        return "not_required"

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.verify_signatures:
            return True
        signature = self.header(headers, "x-paystack-signature")
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_body or b"", hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def reference_from_params(self, params) -> str:
        return str(params.get("reference") or params.get("trxref") or "").strip()
