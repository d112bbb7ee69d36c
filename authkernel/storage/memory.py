from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.storage.common import (
    CodeRepository,
    ConsumeResult,
    ConsumeStatus,
    EntitySpec,
    EntityStore,
    Repository,
    consume_status,
    conflict,
    entity_from_record,
    unique_values,
)
from authkernel.storage.filters import filter_records
from authkernel.storage.models import utcnow

Table = Dict[Tuple[str, Tuple[str, ...]], Dict[str, Any]]


class _MemoryRepository(Repository):
    def __init__(self, spec: EntitySpec, table: Table, lock: threading.RLock):
        super().__init__(spec)
        self._table = table
        self._lock = lock

    def _check_unique(
        self, tenant_id: str, record: Dict[str, Any], skip: Optional[Tuple[str, ...]] = None
    ) -> None:
        wanted = unique_values(self.spec, record)
        if not wanted:
            return
        for (tenant, key), existing in self._table.items():
            if tenant != tenant_id or key == skip:
                continue
            for fields, values in wanted:
                if tuple(existing.get(name) for name in fields) == values:
                    raise conflict(self.spec, fields)

    def _insert(self, tenant_id: str, record: Dict[str, Any]) -> None:
        key = self.spec.key_of(record)
        with self._lock:
            if (tenant_id, key) in self._table:
                raise conflict(self.spec, self.spec.key_fields)
            self._check_unique(tenant_id, record)
            self._table[(tenant_id, key)] = copy.deepcopy(record)

    def _fetch(self, tenant_id: str, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table.get((tenant_id, key))
            return copy.deepcopy(record) if record is not None else None

    def _select(
        self, tenant_id: str, *, q: Optional[str], offset: int, limit: int, sort: Optional[str]
    ) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            records = [
                copy.deepcopy(record)
                for (tenant, _key), record in self._table.items()
                if tenant == tenant_id
            ]
        return filter_records(self.spec, records, q=q, offset=offset, limit=limit, sort=sort)

    def _merge(self, tenant_id: str, key: Tuple[str, ...], patch: Dict[str, Any]) -> bool:
        with self._lock:
            current = self._table.get((tenant_id, key))
            if current is None:
                return False
            merged = {**current, **copy.deepcopy(patch)}
            self._check_unique(tenant_id, merged, skip=key)
            self._table[(tenant_id, key)] = merged
            return True

    def _delete(self, tenant_id: str, key: Tuple[str, ...]) -> bool:
        with self._lock:
            return self._table.pop((tenant_id, key), None) is not None


class _MemoryCodeRepository(_MemoryRepository, CodeRepository):
    def consume(
        self, tenant_id: str, code_id: str, code_type: str, now: Optional[datetime] = None
    ) -> ConsumeResult:
        now = now or utcnow()
        key = self.spec.normalize_key((code_id, code_type))
        # the store lock makes check-and-set one step, like a conditional write
        with self._lock:
            record = self._table.get((tenant_id, key))
            status = consume_status(record, now)
            if status is not ConsumeStatus.CONSUMED:
                return ConsumeResult(status=status)
            record["used_at"] = now
            consumed = copy.deepcopy(record)
        return ConsumeResult(
            status=ConsumeStatus.CONSUMED, code=entity_from_record(self.spec, consumed)
        )


class MemoryStore(EntityStore):
    """In-process backend; all tables share one RLock."""

    backend = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self._tables: Dict[str, Table] = {}
        super().__init__()

    def _repository(self, spec: EntitySpec) -> Repository:
        table: Table = self._tables.setdefault(spec.name, {})
        cls = _MemoryCodeRepository if spec.name == "codes" else _MemoryRepository
        return cls(spec, table, self._data_lock)
