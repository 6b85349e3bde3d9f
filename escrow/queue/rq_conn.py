from typing import Optional

from redis import Redis
from rq import Queue, Retry
from escrow.settings import settings

# Delivery jobs get a few spaced retries from RQ itself; the caller never waits.
NOTIFY_RETRY = Retry(max=3, interval=[10, 60, 300])


def get_queue(name: Optional[str] = None) -> Queue:
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name or settings.RQ_QUEUE_NAME, connection=conn)


def enqueue_notification(notification: dict):
    from escrow.queue.jobs import deliver_notification_job

    return get_queue().enqueue(
        deliver_notification_job,
        notification,
        retry=NOTIFY_RETRY,
        job_timeout=int(settings.NOTIFY_TIMEOUT_SEC) + 30,
    )
