#!/usr/bin/env python3
"""
Cron-side trigger for the auto-release sweep. Schedule it every
AUTO_RELEASE_CADENCE_HOURS; it calls the HTTP endpoint so the sweep runs
inside the service with the service's configuration.

  python scripts/run_auto_release.py            # run the sweep
  python scripts/run_auto_release.py --dry-run  # only report the eligible count
  python scripts/run_auto_release.py --queue    # hand the sweep to an rq worker instead
"""
import json
import os
import sys

import httpx
from dotenv import load_dotenv

load_dotenv()


def enqueue_sweep() -> int:
    from escrow.queue.jobs import run_auto_release_job
    from escrow.queue.rq_conn import get_queue

    timeout = int(os.getenv("AUTO_RELEASE_JOB_TIMEOUT_SEC", "600"))
    job = get_queue().enqueue(run_auto_release_job, job_timeout=timeout)
    print(f"Enqueued auto-release job {job.id}")
    return 0


def main(argv) -> int:
    if "--queue" in argv:
        return enqueue_sweep()

    base_url = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")
    secret = os.getenv("CRON_SECRET", "")
    if not secret:
        print("CRON_SECRET is not set")
        return 2

    method = "GET" if "--dry-run" in argv else "POST"
    try:
        with httpx.Client(timeout=float(os.getenv("AUTO_RELEASE_HTTP_TIMEOUT_SEC", "120"))) as client:
            resp = client.request(method, f"{base_url}/api/cron/auto-release",
                                  headers={"Authorization": f"Bearer {secret}"})
    except httpx.HTTPError as e:
        print(f"Auto-release call failed: {type(e).__name__}: {e}")
        return 1

    print(json.dumps(resp.json() if resp.content else {}, indent=2))
    if resp.status_code != 200:
        return 1
    body = resp.json()
    # Non-zero exit lets the scheduler alert on partial failures
    return 1 if int(body.get("failed", 0) or 0) > 0 else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
