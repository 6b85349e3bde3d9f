"""
Document Store
--------------
The persistence contract the escrow engine relies on:

  create(collection, key, doc)                     insert-if-absent
  get(collection, key)                             read by primary key
  conditional_update(collection, key, expected, changes)
                                                   compare-expected-then-write

plus a small score index used by the auto-release sweep.

`conditional_update` is the one primitive that linearizes writers. Both
implementations commit it as a single atomic compare-and-write against a
per-document version, so a caller whose expected fields no longer match (or
who lost the race between its read and its write) gets
ConcurrentModification instead of a silent overwrite.
"""
from __future__ import annotations

import copy
import json
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from escrow.core.errors import ConcurrentModification, NotFound, StoreUnavailable


class DocumentExists(Exception):
    """Raised by create() when the key is already taken."""


class DocumentStore:
    def create(self, collection: str, key: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def conditional_update(
        self,
        collection: str,
        key: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def index_add(self, index: str, member: str, score: float) -> None:
        raise NotImplementedError

    def index_remove(self, index: str, member: str) -> None:
        raise NotImplementedError

    def index_range(self, index: str, max_score: float, limit: int = 500) -> List[str]:
        raise NotImplementedError

    def index_count(self, index: str, max_score: float) -> int:
        raise NotImplementedError


def _mismatch(doc: Mapping[str, Any], expected: Mapping[str, Any]) -> Optional[str]:
    for field, value in expected.items():
        if doc.get(field) != value:
            return field
    return None


# Version-guarded write: the document is only replaced if nobody else wrote
# since the caller's read.
_CAS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'version')
if not current then
  return -1
end
if current ~= ARGV[1] then
  return 0
end
redis.call('HSET', KEYS[1], 'doc', ARGV[2], 'version', tostring(tonumber(current) + 1))
return 1
"""

_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'doc', ARGV[1], 'version', '1')
return 1
"""


class RedisDocumentStore(DocumentStore):
    PREFIX = "escrow:doc:"
    INDEX_PREFIX = "escrow:idx:"

    def __init__(self, redis: Redis):
        self.r = redis

    def _key(self, collection: str, key: str) -> str:
        return f"{self.PREFIX}{collection}:{key}"

    def _read(self, collection: str, key: str) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        try:
            raw_doc, version = self.r.hmget(self._key(collection, key), "doc", "version")
        except RedisError as e:
            raise StoreUnavailable(f"read failed: {e}", collection=collection, key=key) from e
        if not raw_doc or version is None:
            return None, None
        return str(version), json.loads(raw_doc)

    def create(self, collection, key, doc):
        try:
            created = self.r.eval(_CREATE_SCRIPT, 1, self._key(collection, key), json.dumps(doc))
        except RedisError as e:
            raise StoreUnavailable(f"create failed: {e}", collection=collection, key=key) from e
        if int(created) != 1:
            raise DocumentExists(f"{collection}/{key}")
        return dict(doc)

    def get(self, collection, key):
        _, doc = self._read(collection, key)
        return doc

    def conditional_update(self, collection, key, expected, changes):
        version, doc = self._read(collection, key)
        if doc is None:
            raise NotFound(f"{collection}/{key} does not exist", collection=collection, key=key)
        field = _mismatch(doc, expected)
        if field is not None:
            raise ConcurrentModification(
                f"{collection}/{key}: expected {field}={expected[field]!r}, found {doc.get(field)!r}",
                collection=collection, key=key, field=field,
            )
        merged = {**doc, **dict(changes)}
        try:
            ok = self.r.eval(_CAS_SCRIPT, 1, self._key(collection, key), version, json.dumps(merged))
        except RedisError as e:
            raise StoreUnavailable(f"conditional update failed: {e}", collection=collection, key=key) from e
        ok = int(ok)
        if ok == -1:
            raise NotFound(f"{collection}/{key} does not exist", collection=collection, key=key)
        if ok == 0:
            raise ConcurrentModification(
                f"{collection}/{key}: version moved past {version}",
                collection=collection, key=key, field="version",
            )
        return merged

    def index_add(self, index, member, score):
        try:
            self.r.zadd(f"{self.INDEX_PREFIX}{index}", {member: float(score)})
        except RedisError as e:
            raise StoreUnavailable(f"index add failed: {e}", index=index) from e

    def index_remove(self, index, member):
        try:
            self.r.zrem(f"{self.INDEX_PREFIX}{index}", member)
        except RedisError as e:
            raise StoreUnavailable(f"index remove failed: {e}", index=index) from e

    def index_range(self, index, max_score, limit=500):
        try:
            return list(self.r.zrangebyscore(
                f"{self.INDEX_PREFIX}{index}", "-inf", float(max_score), start=0, num=int(limit)
            ) or [])
        except RedisError as e:
            raise StoreUnavailable(f"index range failed: {e}", index=index) from e

    def index_count(self, index, max_score):
        try:
            return int(self.r.zcount(f"{self.INDEX_PREFIX}{index}", "-inf", float(max_score)) or 0)
        except RedisError as e:
            raise StoreUnavailable(f"index count failed: {e}", index=index) from e


class MemoryDocumentStore(DocumentStore):
    """Process-local store with the same compare-and-write semantics as Redis."""

    def __init__(self):
        self._lock = threading.Lock()
        self._docs: Dict[Tuple[str, str], Tuple[int, Dict[str, Any]]] = {}
        self._indexes: Dict[str, Dict[str, float]] = {}

    def create(self, collection, key, doc):
        with self._lock:
            if (collection, key) in self._docs:
                raise DocumentExists(f"{collection}/{key}")
            self._docs[(collection, key)] = (1, copy.deepcopy(dict(doc)))
        return dict(doc)

    def get(self, collection, key):
        with self._lock:
            entry = self._docs.get((collection, key))
            return copy.deepcopy(entry[1]) if entry else None

    def conditional_update(self, collection, key, expected, changes):
        with self._lock:
            entry = self._docs.get((collection, key))
            if entry is None:
                raise NotFound(f"{collection}/{key} does not exist", collection=collection, key=key)
            version, doc = entry
            field = _mismatch(doc, expected)
            if field is not None:
                raise ConcurrentModification(
                    f"{collection}/{key}: expected {field}={expected[field]!r}, found {doc.get(field)!r}",
                    collection=collection, key=key, field=field,
                )
            merged = {**doc, **copy.deepcopy(dict(changes))}
            self._docs[(collection, key)] = (version + 1, merged)
            return copy.deepcopy(merged)

    def index_add(self, index, member, score):
        with self._lock:
            self._indexes.setdefault(index, {})[member] = float(score)

    def index_remove(self, index, member):
        with self._lock:
            self._indexes.get(index, {}).pop(member, None)

    def index_range(self, index, max_score, limit=500):
        with self._lock:
            members = sorted(
                ((score, m) for m, score in self._indexes.get(index, {}).items() if score <= max_score)
            )
        return [m for _, m in members[: int(limit)]]

    def index_count(self, index, max_score):
        with self._lock:
            return sum(1 for score in self._indexes.get(index, {}).values() if score <= max_score)
