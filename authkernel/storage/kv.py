"""Single-table key-value backend on Redis.

Every item lives under a composite key ``TENANT#{tenant}|{ENTITY}#{key parts}``
so the tenant is part of every partition and sort key. Secondary index keys
(``GSI1|TENANT#{tenant}#{ENTITY}#{field}#{value}``) back unique constraints and
equality filters; a per-entity sorted set keeps creation order for listing.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from authkernel.logging import get_logger
from authkernel.storage.common import (
    CodeRepository,
    ConsumeResult,
    ConsumeStatus,
    EntitySpec,
    EntityStore,
    Repository,
    conflict,
    entity_from_record,
    unique_values,
)
from authkernel.storage.errors import StorageUnavailable
from authkernel.storage.filters import Term, filter_records, parse_query
from authkernel.storage.models import utcnow

_MAX_WATCH_RETRIES = 16


def escape_part(value: Any) -> str:
    return str(value).replace("%", "%25").replace("#", "%23").replace("|", "%7C")


def partition_key(tenant_id: str) -> str:
    return f"TENANT#{escape_part(tenant_id)}"


def sort_key(spec: EntitySpec, key: Sequence[str]) -> str:
    return "#".join([spec.sort_key_prefix, *(escape_part(part) for part in key)])


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class _KVRepository(Repository):
    def __init__(self, spec: EntitySpec, store: "KVStore"):
        super().__init__(spec)
        self.store = store

    @property
    def client(self) -> Redis:
        return self.store.client

    # -- key layout ---------------------------------------------------------

    def _item_key(self, tenant_id: str, key: Sequence[str]) -> str:
        return f"{self.store.prefix}{partition_key(tenant_id)}|{sort_key(self.spec, key)}"

    def _listing_key(self, tenant_id: str) -> str:
        return f"{self.store.prefix}{partition_key(tenant_id)}|IDX#{self.spec.sort_key_prefix}"

    def _gsi_key(self, tenant_id: str, *parts: Any) -> str:
        encoded = "#".join(escape_part(p) for p in parts)
        return f"{self.store.prefix}GSI1|{partition_key(tenant_id)}#{self.spec.sort_key_prefix}#{encoded}"

    def _unique_keys(self, tenant_id: str, record: Dict[str, Any]) -> List[Tuple[Tuple[str, ...], str]]:
        keys = []
        for fields, values in unique_values(self.spec, record):
            parts: List[Any] = ["UNIQUE"]
            for name, value in zip(fields, values):
                parts.extend([name, value])
            keys.append((fields, self._gsi_key(tenant_id, *parts)))
        return keys

    def _index_keys(self, tenant_id: str, record: Dict[str, Any]) -> List[str]:
        return [
            self._gsi_key(tenant_id, name, record[name])
            for name in self.spec.indexed
            if record.get(name) is not None
        ]

    # -- (de)serialization --------------------------------------------------

    def _hash_fields(self, record: Dict[str, Any]) -> Dict[str, str]:
        data = {k: v for k, v in record.items() if k != "used_at"}
        fields = {"data": json.dumps(data, default=_json_default)}
        if "used_at" in self.spec.field_names:
            used_at = record.get("used_at")
            fields["used_at"] = used_at.isoformat() if used_at else ""
        expires_at = record.get("expires_at")
        if isinstance(expires_at, datetime):
            fields["expires_epoch"] = repr(expires_at.timestamp())
        return fields

    def _decode(self, raw: Dict[str, str]) -> Optional[Dict[str, Any]]:
        if not raw or "data" not in raw:
            return None
        record = json.loads(raw["data"])
        if "used_at" in raw:
            record["used_at"] = raw["used_at"] or None
        for name in self.spec.datetime_fields:
            if isinstance(record.get(name), str):
                record[name] = _parse_dt(record[name])
        return record

    def _score(self, record: Dict[str, Any]) -> float:
        created = record.get("created_at")
        return created.timestamp() if isinstance(created, datetime) else 0.0

    def _expire_at(self, record: Dict[str, Any]) -> Optional[int]:
        expires_at = record.get("expires_at")
        if self.spec.name != "codes" or not isinstance(expires_at, datetime):
            return None
        reaped = expires_at + timedelta(seconds=self.store.code_retention_seconds)
        return int(reaped.timestamp())

    # -- primitives ---------------------------------------------------------

    def _insert(self, tenant_id: str, record: Dict[str, Any]) -> None:
        key = self.spec.key_of(record)
        item = self._item_key(tenant_id, key)
        sk = sort_key(self.spec, key)
        unique_keys = self._unique_keys(tenant_id, record)
        with self.store._guard(), self.client.pipeline() as pipe:
            for _attempt in range(_MAX_WATCH_RETRIES):
                try:
                    pipe.watch(item, *[k for _, k in unique_keys])
                    if pipe.exists(item):
                        raise conflict(self.spec, self.spec.key_fields)
                    for fields, ukey in unique_keys:
                        if pipe.exists(ukey):
                            raise conflict(self.spec, fields)
                    pipe.multi()
                    pipe.hset(item, mapping=self._hash_fields(record))
                    pipe.zadd(self._listing_key(tenant_id), {sk: self._score(record)})
                    for _fields, ukey in unique_keys:
                        pipe.set(ukey, sk)
                    for ikey in self._index_keys(tenant_id, record):
                        pipe.sadd(ikey, sk)
                    expire_at = self._expire_at(record)
                    if expire_at is not None:
                        pipe.expireat(item, expire_at)
                    pipe.execute()
                    return
                except WatchError:
                    continue
            raise StorageUnavailable(
                f"{self.spec.name} write contention", backend=self.store.backend
            )

    def _fetch(self, tenant_id: str, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        with self.store._guard():
            return self._decode(self.client.hgetall(self._item_key(tenant_id, key)))

    def _candidate_sort_keys(self, tenant_id: str, terms: Sequence[Term]) -> List[str]:
        listing = self.client.zrange(self._listing_key(tenant_id), 0, -1)
        narrowed = None
        for term in terms:
            if term.op == "=" and term.field in self.spec.indexed:
                members = self.client.smembers(self._gsi_key(tenant_id, term.field, term.value))
                narrowed = set(members) if narrowed is None else narrowed & set(members)
        if narrowed is None:
            return list(listing)
        return [sk for sk in listing if sk in narrowed]

    def _select(
        self, tenant_id: str, *, q: Optional[str], offset: int, limit: int, sort: Optional[str]
    ) -> Tuple[List[Dict[str, Any]], int]:
        terms = parse_query(self.spec, q)
        prefix = f"{self.store.prefix}{partition_key(tenant_id)}|"
        with self.store._guard():
            candidates = self._candidate_sort_keys(tenant_id, terms)
            pipe = self.client.pipeline(transaction=False)
            for sk in candidates:
                pipe.hgetall(prefix + sk)
            raw_items = pipe.execute() if candidates else []
        # reaped items (expired codes) leave stale index members behind
        records = [r for r in (self._decode(raw) for raw in raw_items) if r is not None]
        return filter_records(self.spec, records, q=q, offset=offset, limit=limit, sort=sort)

    def _merge(self, tenant_id: str, key: Tuple[str, ...], patch: Dict[str, Any]) -> bool:
        item = self._item_key(tenant_id, key)
        sk = sort_key(self.spec, key)
        with self.store._guard(), self.client.pipeline() as pipe:
            for _attempt in range(_MAX_WATCH_RETRIES):
                try:
                    pipe.watch(item)
                    current = self._decode(pipe.hgetall(item))
                    if current is None:
                        pipe.unwatch()
                        return False
                    merged = {**current, **patch}
                    old_unique = dict(self._unique_keys(tenant_id, current))
                    new_unique = dict(self._unique_keys(tenant_id, merged))
                    added = [(f, k) for f, k in new_unique.items() if old_unique.get(f) != k]
                    if added:
                        pipe.watch(item, *[k for _, k in added])
                    for fields, ukey in added:
                        if pipe.exists(ukey):
                            raise conflict(self.spec, fields)
                    old_index = set(self._index_keys(tenant_id, current))
                    new_index = set(self._index_keys(tenant_id, merged))
                    pipe.multi()
                    pipe.hset(item, mapping=self._hash_fields(merged))
                    for fields, ukey in old_unique.items():
                        if new_unique.get(fields) != ukey:
                            pipe.delete(ukey)
                    for _fields, ukey in added:
                        pipe.set(ukey, sk)
                    for ikey in old_index - new_index:
                        pipe.srem(ikey, sk)
                    for ikey in new_index - old_index:
                        pipe.sadd(ikey, sk)
                    pipe.execute()
                    return True
                except WatchError:
                    continue
            raise StorageUnavailable(
                f"{self.spec.name} write contention", backend=self.store.backend
            )

    def _delete(self, tenant_id: str, key: Tuple[str, ...]) -> bool:
        item = self._item_key(tenant_id, key)
        sk = sort_key(self.spec, key)
        with self.store._guard(), self.client.pipeline() as pipe:
            for _attempt in range(_MAX_WATCH_RETRIES):
                try:
                    pipe.watch(item)
                    current = self._decode(pipe.hgetall(item))
                    if current is None:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(item)
                    pipe.zrem(self._listing_key(tenant_id), sk)
                    for _fields, ukey in self._unique_keys(tenant_id, current):
                        pipe.delete(ukey)
                    for ikey in self._index_keys(tenant_id, current):
                        pipe.srem(ikey, sk)
                    pipe.execute()
                    return True
                except WatchError:
                    continue
            raise StorageUnavailable(
                f"{self.spec.name} write contention", backend=self.store.backend
            )


class _KVCodeRepository(_KVRepository, CodeRepository):
    # Atomic check-and-set on the item's used_at field
    _CONSUME_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 'not_found'
end
local used = redis.call('HGET', key, 'used_at')
if used and used ~= '' then
  return 'already_used'
end
local expires = tonumber(redis.call('HGET', key, 'expires_epoch'))
if expires == nil or tonumber(ARGV[2]) >= expires then
  return 'expired'
end
redis.call('HSET', key, 'used_at', ARGV[1])
return 'consumed'
"""

    def __init__(self, spec: EntitySpec, store: "KVStore"):
        super().__init__(spec, store)
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)

    def consume(
        self, tenant_id: str, code_id: str, code_type: str, now: Optional[datetime] = None
    ) -> ConsumeResult:
        now = now or utcnow()
        key = self.spec.normalize_key((code_id, code_type))
        item = self._item_key(tenant_id, key)
        with self.store._guard():
            outcome = self._consume(keys=[item], args=[now.isoformat(), repr(now.timestamp())])
            status = ConsumeStatus(outcome)
            if status is not ConsumeStatus.CONSUMED:
                return ConsumeResult(status=status)
            record = self._decode(self.client.hgetall(item))
        if record is None:
            return ConsumeResult(status=ConsumeStatus.NOT_FOUND)
        return ConsumeResult(status=status, code=entity_from_record(self.spec, record))


class KVStore(EntityStore):
    """Redis-backed single-table store."""

    backend = "kv"

    def __init__(
        self,
        redis_url: str,
        *,
        client: Optional[Redis] = None,
        prefix: str = "authkernel:",
        code_retention_seconds: int = 86400,
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.prefix = prefix
        self.code_retention_seconds = code_retention_seconds
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        super().__init__()

    def _repository(self, spec: EntitySpec) -> Repository:
        cls = _KVCodeRepository if spec.name == "codes" else _KVRepository
        return cls(spec, self)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error("kv_store_unavailable", error=str(exc))
            raise StorageUnavailable("key-value store unavailable", backend=self.backend) from exc

    def verify_connection(self) -> None:
        with self._guard():
            self.client.ping()

    ping = verify_connection

    def close(self) -> None:
        self.client.close()
