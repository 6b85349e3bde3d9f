"""
Error taxonomy for the escrow engine.

Every error carries the HTTP status the API layer maps it to. Callers that
need caller-specific handling (ingestion vs. sweep) catch the concrete class.
Errors that wrap provider or store detail set `public_message`; the detail
stays in the log line.
"""
from typing import Any, Dict, Optional


class EscrowError(Exception):
    status_code = 500
    code = "escrow_error"
    public_message: Optional[str] = None

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.public_message or self.message}


class ValidationError(EscrowError):
    status_code = 400
    code = "validation_error"


class Unauthorized(EscrowError):
    status_code = 401
    code = "unauthorized"


class Forbidden(EscrowError):
    status_code = 403
    code = "forbidden"


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


class DuplicateIntent(EscrowError):
    status_code = 409
    code = "duplicate_intent"


class InvalidTransition(EscrowError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, event: str, reference: Optional[str] = None):
        super().__init__(
            f"Event '{event}' is not allowed from status '{current}'",
            current=current, event=event, reference=reference,
        )
        self.current = current
        self.event = event
        self.reference = reference


class ConcurrentModification(EscrowError):
    status_code = 409
    code = "concurrent_modification"


class ProviderUnavailable(EscrowError):
    status_code = 500
    code = "provider_unavailable"
    public_message = "Payment could not be processed, please retry"


class ProviderRejected(EscrowError):
    status_code = 500
    code = "provider_rejected"
    public_message = "Payment could not be processed, please retry"


class UnknownReference(EscrowError):
    status_code = 404
    code = "unknown_reference"


class StoreUnavailable(EscrowError):
    status_code = 500
    code = "store_unavailable"
    public_message = "Service temporarily unavailable, please retry"


class DisputeOpen(EscrowError):
    status_code = 409
    code = "dispute_open"
