"""
Escrow Metrics
--------------
Redis counters for callback ingestion, state transitions and the
auto-release sweep, plus the snapshot served by /admin/metrics.

Every write is best effort: a metrics failure is logged and never changes
the outcome of the operation being counted.
"""
from __future__ import annotations

import json
from typing import Dict

from escrow.observability.logging import log
from escrow.settings import settings
from escrow.store.redis_conn import get_redis

PREFIX = "metrics:escrow:"

CALLBACK_RECEIVED = "callback:received"
CALLBACK_APPLIED = "callback:applied"
CALLBACK_DUPLICATE = "callback:duplicate"
CALLBACK_UNKNOWN = "callback:unknown_reference"
CALLBACK_REJECTED = "callback:rejected"
CALLBACK_IGNORED = "callback:ignored"
CALLBACK_AMOUNT_MISMATCH = "callback:amount_mismatch"
CALLBACK_BAD_SIGNATURE = "callback:bad_signature"
CALLBACK_SUPERSEDED = "callback:superseded"
TRANSITIONS = "transitions"
SWEEPS_RUN = "sweep:runs"
AUTO_RELEASE_SUCCEEDED = "sweep:succeeded"
AUTO_RELEASE_FAILED = "sweep:failed"
AUTO_RELEASE_SKIPPED = "sweep:skipped"
PAYOUT_FAILED = "payout:failed"
NOTIFY_FAILED = "notify:failed"

COUNTERS = (
    CALLBACK_RECEIVED, CALLBACK_APPLIED, CALLBACK_DUPLICATE, CALLBACK_UNKNOWN,
    CALLBACK_REJECTED, CALLBACK_IGNORED, CALLBACK_AMOUNT_MISMATCH, CALLBACK_BAD_SIGNATURE, CALLBACK_SUPERSEDED,
    TRANSITIONS, SWEEPS_RUN, AUTO_RELEASE_SUCCEEDED, AUTO_RELEASE_FAILED,
    AUTO_RELEASE_SKIPPED, PAYOUT_FAILED, NOTIFY_FAILED,
)

K_LAST_SWEEP = PREFIX + "sweep:last"
K_RECENT_FAILED = PREFIX + "sweep:failed_recent"  # LPUSH reference (trim window)


def incr(counter: str, n: int = 1) -> None:
    if not settings.ENABLE_METRICS or n <= 0:
        return
    try:
        get_redis().incr(PREFIX + counter, int(n))
    except Exception as e:
        log(event="metrics_write_failed", counter=counter, error=str(e)[:200])


def record_sweep(summary: Dict, failed_references=()) -> None:
    """Counters plus a copy of the last sweep summary for the admin snapshot."""
    incr(SWEEPS_RUN)
    incr(AUTO_RELEASE_SUCCEEDED, int(summary.get("succeeded", 0)))
    incr(AUTO_RELEASE_FAILED, int(summary.get("failed", 0)))
    incr(AUTO_RELEASE_SKIPPED, int(summary.get("skipped", 0)))
    if not settings.ENABLE_METRICS:
        return
    try:
        r = get_redis()
        r.set(K_LAST_SWEEP, json.dumps(summary, default=str))
        for ref in failed_references:
            r.lpush(K_RECENT_FAILED, ref)
        r.ltrim(K_RECENT_FAILED, 0, 49)
    except Exception as e:
        log(event="metrics_write_failed", counter="sweep:last", error=str(e)[:200])


def get_metrics_snapshot() -> dict:
    r = get_redis()
    counters = {}
    for name in COUNTERS:
        try:
            counters[name] = int(r.get(PREFIX + name) or 0)
        except (TypeError, ValueError):
            counters[name] = 0

    try:
        last_sweep = json.loads(r.get(K_LAST_SWEEP) or "null")
    except ValueError:
        last_sweep = None

    recent_failed = [str(x) for x in (r.lrange(K_RECENT_FAILED, 0, 19) or [])]

    return {
        "counters": counters,
        "lastSweep": last_sweep,
        "recentFailedReleases": recent_failed,
        "autoReleaseGraceDays": float(settings.AUTO_RELEASE_GRACE_DAYS),
        "autoReleaseCadenceHours": float(settings.AUTO_RELEASE_CADENCE_HOURS),
    }
