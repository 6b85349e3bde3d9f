import json
import time
from escrow.settings import settings

SERVICE = "escrow"

# Keys whose values never reach stdout verbatim when PII redaction is enabled
SENSITIVE_KEYS = {
    "payerEmail", "email", "rawPayload", "payload", "reason",
    "notes", "signature", "accessToken", "secret",
}
EMAIL_KEYS = {"payerEmail", "email"}


def _mask_email(v: str) -> str:
    # j***@example.com keeps the domain for support lookups
    local, sep, domain = v.partition("@")
    if not sep:
        return f"[REDACTED:{len(v)}chars]"
    return f"{local[:1]}***@{domain}"


def _redact(key: str, v):
    if key in EMAIL_KEYS and isinstance(v, str) and v:
        return _mask_email(v)
    if key in SENSITIVE_KEYS:
        if isinstance(v, str) and v:
            return f"[REDACTED:{len(v)}chars]"
        if isinstance(v, dict):
            return {k: "[REDACTED]" for k in v}
        return v
    if isinstance(v, dict):
        return {k: _redact(k, val) for k, val in v.items()}
    return v


def log(event: str, **fields):
    """One JSON line per event on stdout."""
    payload = {"ts": int(time.time()), "service": SERVICE, "event": event}
    if settings.ENABLE_PII_REDACTION:
        payload.update({k: _redact(k, v) for k, v in fields.items()})
    else:
        payload.update(fields)
    print(json.dumps(payload, ensure_ascii=False, default=str))
