"""
Notification Dispatcher
-----------------------
Best-effort fan-out of escrow events to the people involved. Each
notification lands in the recipient's inbox list and, when a webhook is
configured, is queued for delivery by an RQ worker.

Nothing here may fail the state change that triggered it: every error is
logged as notification_dispatch_failed and swallowed.
"""
import json
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Dict, List, Optional

import escrow.observability.metrics as metrics
from escrow.observability.logging import log
from escrow.utils.time import now_ms

PAYMENT_FUNDED = "payment_funded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_CANCELLED = "payment_cancelled"
COMPLETION_REQUESTED = "completion_requested"
PAYMENT_RELEASED = "payment_released"
PAYMENT_REFUNDED = "payment_refunded"
DISPUTE_OPENED = "dispute_opened"
DISPUTE_RESOLVED = "dispute_resolved"

KINDS = frozenset({
    PAYMENT_FUNDED, PAYMENT_FAILED, PAYMENT_CANCELLED, COMPLETION_REQUESTED,
    PAYMENT_RELEASED, PAYMENT_REFUNDED, DISPUTE_OPENED, DISPUTE_RESOLVED,
})


class RedisInbox:
    KEY = "escrow:inbox:{recipient}"

    def __init__(self, redis, max_items: int = 200):
        self.r = redis
        self.max_items = int(max_items)

    def push(self, recipient_id: str, item: Dict[str, Any]) -> None:
        key = self.KEY.format(recipient=recipient_id)
        self.r.lpush(key, json.dumps(item, default=str))
        self.r.ltrim(key, 0, self.max_items - 1)

    def recent(self, recipient_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        raw = self.r.lrange(self.KEY.format(recipient=recipient_id), 0, max(0, int(limit) - 1)) or []
        return [json.loads(x) for x in raw]


class MemoryInbox:
    def __init__(self, max_items: int = 200):
        self._lock = threading.Lock()
        self._items = defaultdict(lambda: deque(maxlen=int(max_items)))

    def push(self, recipient_id, item):
        with self._lock:
            self._items[recipient_id].appendleft(dict(item))

    def recent(self, recipient_id, limit=20):
        with self._lock:
            return list(self._items.get(recipient_id, ()))[: int(limit)]


def _default_enqueue(notification: Dict[str, Any]) -> None:
    # Lazy import keeps RQ out of the import path of callers that never deliver
    from escrow.queue.rq_conn import enqueue_notification

    enqueue_notification(notification)


class NotificationDispatcher:
    def __init__(
        self,
        inbox,
        enqueue: Optional[Callable[[Dict[str, Any]], Any]] = None,
        deliver_webhook: bool = False,
    ):
        self.inbox = inbox
        self.enqueue = enqueue or _default_enqueue
        self.deliver_webhook = bool(deliver_webhook)

    def dispatch(
        self,
        kind: str,
        engagement_id: str,
        recipient_id: Optional[str],
        actor_id: Optional[str] = None,
        reference: Optional[str] = None,
        amount: Optional[int] = None,
        **context: Any,
    ) -> bool:
        """Returns True when the notification was recorded; False when it was dropped."""
        if not recipient_id:
            return False
        notification = {
            "kind": kind,
            "engagementId": engagement_id,
            "recipientId": recipient_id,
            "actorId": actor_id,
            "reference": reference,
            "amount": amount,
            "createdAt": now_ms(),
            "context": context,
        }
        try:
            if kind not in KINDS:
                raise ValueError(f"unknown notification kind {kind!r}")
            self.inbox.push(recipient_id, notification)
            if self.deliver_webhook:
                self.enqueue(notification)
            log(event="notification_dispatched", kind=kind, engagementId=engagement_id,
                recipientId=recipient_id, reference=reference)
            return True
        except Exception as e:
            metrics.incr(metrics.NOTIFY_FAILED)
            log(event="notification_dispatch_failed", kind=kind, engagementId=engagement_id,
                recipientId=recipient_id, reference=reference, errorType=type(e).__name__, error=str(e)[:300])
            return False
