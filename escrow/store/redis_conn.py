from typing import Optional

from redis import ConnectionPool, Redis
from escrow.settings import settings

_pool: Optional[ConnectionPool] = None


def get_redis() -> Redis:
    # One pool per process; metrics and inbox writes call this on every event
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(settings.REDIS_URL, decode_responses=True)
    return Redis(connection_pool=_pool)
