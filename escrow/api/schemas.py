from typing import Any, List, Literal, Optional
from pydantic import BaseModel

# amount and reason stay loosely typed so the services reject bad input with
# their own 400s instead of request-model errors.

class InitializeRequest(BaseModel):
    engagementId: str = ""
    amount: Any = None  # minor units
    payerEmail: str = ""
    itemDescription: Optional[str] = None
    provider: Optional[str] = None

class InitializeResponse(BaseModel):
    reference: str
    redirectUrl: str
    providerTransactionRef: str
    provider: str

class VerifyRequest(BaseModel):
    reference: str = ""

class VerifyResponse(BaseModel):
    reference: str
    status: str
    result: str
    funded: bool

class DisputeRequest(BaseModel):
    reason: Any = None

class ResolveDisputeRequest(BaseModel):
    outcome: str = ""  # release / refund
    notes: Optional[str] = None

class WebhookAck(BaseModel):
    received: bool = True
    processed: bool
    result: Optional[str] = None
    reference: Optional[str] = None
    error: Optional[str] = None

class AutoReleaseStatus(BaseModel):
    status: Literal["ok"] = "ok"
    eligibleCount: int
    timestamp: str

class SweepItem(BaseModel):
    reference: str
    engagementId: str
    outcome: str
    success: bool
    error: Optional[str] = None

class SweepResponse(BaseModel):
    success: bool
    timestamp: str
    processed: int
    succeeded: int
    failed: int
    skipped: int
    results: List[SweepItem]
