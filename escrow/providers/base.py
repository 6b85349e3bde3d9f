"""
Provider adapter contract.

Adapters are the only place provider-native vocabulary exists. Everything
that crosses this boundary is an Outcome (funded/failed/cancelled) carried
by a ProviderCallbackEvent; informational provider states normalize to None.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl

import httpx

from escrow.core.errors import ProviderRejected, ProviderUnavailable
from escrow.observability.logging import log


class Outcome(str, Enum):
    FUNDED = "funded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ProviderCallbackEvent:
    provider: str
    reference: str
    outcome: Outcome
    providerTransactionRef: Optional[str] = None
    amount: Optional[int] = None  # minor units
    rawPayload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitResult:
    providerTransactionRef: str
    redirectUrl: str
    providerAllocationRef: Optional[str] = None


RawPayload = Union[None, bytes, str, Mapping[str, Any]]


def parse_raw_payload(raw: RawPayload, content_type: str = "") -> Dict[str, Any]:
    """
    Flatten whatever the provider sent (JSON object, form body, query string,
    or an already-parsed mapping) into a plain dict.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    text = str(raw).strip()
    if not text:
        return {}

    ct = (content_type or "").lower()
    if "json" in ct or text[:1] in ("{", "["):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
        if "json" in ct:
            return {}

    return {k: v for k, v in parse_qsl(text.lstrip("?"), keep_blank_values=True)}


class ProviderAdapter:
    """Base class; concrete adapters override every method below."""

    name = ""
    # False when the provider offers no verifiable signature on callbacks
    signs_callbacks = False

    def __init__(self, timeout_sec: float = 10.0, client: Optional[httpx.Client] = None):
        self.timeout_sec = float(timeout_sec)
        self._client = client

    def initialize(
        self,
        payer_email: str,
        amount: int,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitResult:
        raise NotImplementedError

    def normalize_callback(self, raw_payload: RawPayload, content_type: str = "") -> Optional[ProviderCallbackEvent]:
        raise NotImplementedError

    def fetch_status(self, intent) -> Optional[ProviderCallbackEvent]:
        raise NotImplementedError

    def trigger_payout(self, intent) -> str:
        """Returns the payoutStatus to record (triggered/not_required)."""
        raise NotImplementedError

    def trigger_refund(self, intent) -> str:
        raise NotImplementedError

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return True

    @staticmethod
    def header(headers: Mapping[str, str], name: str) -> str:
        name = name.lower()
        for k, v in (headers or {}).items():
            if k.lower() == name:
                return (v or "").strip()
        return ""

    def reference_from_params(self, params: Mapping[str, Any]) -> str:
        return str(params.get("reference") or "").strip()

    # ------------------------------------------------------------------
    # HTTP plumbing shared by adapters
    # ------------------------------------------------------------------
    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout_sec)
        return self._client

    def _request(self, method: str, url: str, op: str, **kwargs) -> Dict[str, Any]:
        """
        One provider call. Transport errors, timeouts and 5xx become
        ProviderUnavailable; 4xx becomes ProviderRejected. Never retried here.
        """
        try:
            resp = self._http().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            log(event="provider_call_failed", provider=self.name, op=op, errorType=type(e).__name__, error=str(e)[:300])
            raise ProviderUnavailable(f"{self.name} {op} failed: {type(e).__name__}", provider=self.name, op=op) from e

        if resp.status_code >= 500:
            log(event="provider_call_failed", provider=self.name, op=op, statusCode=resp.status_code)
            raise ProviderUnavailable(f"{self.name} {op} returned {resp.status_code}", provider=self.name, op=op)

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400:
            message = (data.get("message") if isinstance(data, dict) else None) or resp.text[:200]
            log(event="provider_call_rejected", provider=self.name, op=op, statusCode=resp.status_code, message=message)
            raise ProviderRejected(f"{self.name} {op} rejected: {message}", provider=self.name, op=op)
        return data if isinstance(data, dict) else {}
