import time
from datetime import datetime, timezone

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def days_to_ms(days: float) -> int:
    return int(float(days) * DAY_MS)


def minutes_to_ms(minutes: float) -> int:
    return int(float(minutes) * MINUTE_MS)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()
