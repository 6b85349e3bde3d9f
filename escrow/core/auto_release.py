"""
Auto-Release Scheduler
----------------------
Releases escrow for engagements where the worker requested completion and
the employer has not acted within the grace period, unless a dispute is open.

Each sweep recomputes eligibility from the store; there is no cross-sweep
state. Items are processed independently: one failure never stops the batch,
and a concurrent release (employer approval, another sweep) is reported as a
skip rather than a failure.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import escrow.observability.metrics as metrics
from escrow.core import state_machine as sm
from escrow.core.errors import ConcurrentModification
from escrow.core.settlement import release_funds
from escrow.notify import dispatcher as notify
from escrow.observability.logging import log
from escrow.utils.time import days_to_ms, now_ms, iso_now

RELEASED = "released"
RELEASED_PAYOUT_FAILED = "released_payout_failed"
SKIPPED_DISPUTE = "skipped_dispute"
SKIPPED_ALREADY_RELEASED = "skipped_already_released"
FAILED = "failed"

_SKIPS = (SKIPPED_DISPUTE, SKIPPED_ALREADY_RELEASED)


@dataclass
class ItemResult:
    reference: str
    engagementId: str
    outcome: str
    success: bool
    error: Optional[str] = None


@dataclass
class SweepResult:
    timestamp: str = ""
    results: List[ItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.outcome in _SKIPS)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and r.outcome not in _SKIPS)

    @property
    def processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "timestamp": self.timestamp,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [asdict(r) for r in self.results],
        }


class AutoReleaseScheduler:
    def __init__(self, intents, state_machine, gate, engagements, registry, dispatcher,
                 grace_days: float = 7, batch_limit: int = 500):
        self.intents = intents
        self.state_machine = state_machine
        self.gate = gate
        self.engagements = engagements
        self.registry = registry
        self.dispatcher = dispatcher
        self.grace_days = float(grace_days)
        self.batch_limit = int(batch_limit)

    def cutoff(self, now: Optional[int] = None) -> int:
        return int(now if now is not None else now_ms()) - days_to_ms(self.grace_days)

    def eligible(self, now: Optional[int] = None):
        return self.intents.eligible_for_auto_release(self.cutoff(now), limit=self.batch_limit)

    def count_eligible(self, now: Optional[int] = None) -> int:
        """Due entries in the completion index, uncapped by batch_limit."""
        return self.intents.count_due_for_auto_release(self.cutoff(now))

    def run(self, now: Optional[int] = None) -> SweepResult:
        result = SweepResult(timestamp=iso_now())
        candidates = self.eligible(now)
        log(event="auto_release_sweep_start", eligibleCount=len(candidates), graceDays=self.grace_days)

        for intent in candidates:
            result.results.append(self._release_one(intent))

        summary = result.to_dict()
        summary.pop("results")
        failed_refs = [r.reference for r in result.results if not r.success and r.outcome not in _SKIPS]
        metrics.record_sweep(summary, failed_refs)
        log(event="auto_release_sweep_done", processed=result.processed, succeeded=result.succeeded,
            failed=result.failed, skipped=result.skipped, failedReferences=failed_refs)
        return result

    def _release_one(self, intent) -> ItemResult:
        ref, eng_id = intent.reference, intent.engagementId
        try:
            if self.gate.is_blocked(eng_id):
                log(event="auto_release_skipped_dispute", reference=ref, engagementId=eng_id)
                return ItemResult(ref, eng_id, SKIPPED_DISPUTE, False)

            try:
                released = self.state_machine.apply(
                    intent, sm.AUTO_RELEASE_ELAPSED, {"releasedAt": now_ms(), "releasedVia": "auto_release"}
                )
            except ConcurrentModification:
                fresh = self.intents.get(ref)
                if fresh is not None and fresh.status == sm.RELEASED:
                    return ItemResult(ref, eng_id, SKIPPED_ALREADY_RELEASED, False)
                log(event="auto_release_conflict", reference=ref,
                    currentStatus=fresh.status if fresh else None)
                return ItemResult(ref, eng_id, FAILED, False, "conflict")

            released, payout_ok = release_funds(self.registry, self.intents, released)
            eng = self.engagements.mirror_intent(released)

            worker_id = eng.workerId if eng else None
            employer_id = eng.employerId if eng else released.payerId
            for recipient in (worker_id, employer_id):
                self.dispatcher.dispatch(notify.PAYMENT_RELEASED, eng_id, recipient, reference=ref,
                                         amount=released.amount, releasedVia="auto_release")

            if not payout_ok:
                return ItemResult(ref, eng_id, RELEASED_PAYOUT_FAILED, False, "payout_trigger_failed")
            log(event="auto_release_succeeded", reference=ref, engagementId=eng_id)
            return ItemResult(ref, eng_id, RELEASED, True)
        except Exception as e:
            log(event="auto_release_failed", reference=ref, engagementId=eng_id,
                errorType=type(e).__name__, error=str(e)[:300])
            return ItemResult(ref, eng_id, FAILED, False, str(e)[:300] or type(e).__name__)
