"""
Seed an engagement document for local/dev runs. Engagements belong to the
marketplace; the escrow engine only reads parties from them and mirrors its
own status back. Idempotent: an existing engagement is left untouched.

Usage:
  python scripts/seed_engagement.py <engagementId> <employerId> <workerId> [title]
"""
import sys

from escrow.store.document_store import RedisDocumentStore
from escrow.store.engagement_repo import EngagementRepo
from escrow.store.models import Engagement, to_doc
from escrow.store.redis_conn import get_redis


def main(argv) -> int:
    if len(argv) < 4:
        print(__doc__)
        return 2
    engagement_id, employer_id, worker_id = argv[1], argv[2], argv[3]
    title = argv[4] if len(argv) > 4 else None

    repo = EngagementRepo(RedisDocumentStore(get_redis()))
    eng = repo.create(Engagement(engagementId=engagement_id, employerId=employer_id,
                                 workerId=worker_id, title=title))
    print(f"Engagement {engagement_id}: {to_doc(eng)}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
