"""
Input checks that run before anything touches a provider or the store.
"""
import re

from escrow.core.errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DISPUTE_REASON_MIN = 10
DISPUTE_REASON_MAX = 1000
ITEM_DESCRIPTION_MAX = 500

_SCRIPT_BLOCK_RE = re.compile(r"<\s*script[^>]*>.*?<\s*/\s*script\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_JS_PROTO_RE = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_ATTR_RE = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def validate_amount(amount) -> int:
    """Positive whole number of minor currency units."""
    if isinstance(amount, bool) or amount is None:
        raise ValidationError("Amount must be a positive integer (minor units)", amount=amount)
    if isinstance(amount, float):
        if not amount.is_integer():
            raise ValidationError("Amount must be a whole number of minor units", amount=amount)
        amount = int(amount)
    if not isinstance(amount, int):
        raise ValidationError("Amount must be a positive integer (minor units)", amount=amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", amount=amount)
    return amount


def validate_email(email) -> str:
    value = (email or "").strip() if isinstance(email, str) else ""
    if not value or not EMAIL_RE.match(value):
        raise ValidationError("A valid payer email is required")
    return value


def sanitize_text(text) -> str:
    """Strip markup and script vectors from free text before it is stored."""
    if not isinstance(text, str):
        return ""
    s = _SCRIPT_BLOCK_RE.sub("", text)
    s = _TAG_RE.sub("", s)
    s = _JS_PROTO_RE.sub("", s)
    s = _EVENT_ATTR_RE.sub("", s)
    return s.strip()


def validate_dispute_reason(reason) -> str:
    clean = sanitize_text(reason)
    if len(clean) < DISPUTE_REASON_MIN:
        raise ValidationError(f"Dispute reason must be at least {DISPUTE_REASON_MIN} characters")
    if len(clean) > DISPUTE_REASON_MAX:
        raise ValidationError(f"Dispute reason must be at most {DISPUTE_REASON_MAX} characters")
    return clean


def clean_item_description(text):
    if text is None:
        return None
    clean = sanitize_text(text)
    return clean[:ITEM_DESCRIPTION_MAX] or None


def require_id(value, name: str) -> str:
    v = (value or "").strip() if isinstance(value, str) else ""
    if not v:
        raise ValidationError(f"{name} is required")
    return v
