from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authkernel.logging import get_logger
from authkernel.storage.common import (
    ENTITIES,
    CodeRepository,
    ConsumeResult,
    ConsumeStatus,
    EntitySpec,
    EntityStore,
    Repository,
    consume_status,
    entity_from_record,
)
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.filters import Term, parse_query, parse_sort
from authkernel.storage.models import utcnow

_COMPARISONS = {"=": "=", "!=": "IS DISTINCT FROM", ">": ">", ">=": ">=", "<": "<", "<=": "<="}


def _ident(name: str) -> str:
    # identifiers only ever come from the entity registry
    return '"' + name.replace('"', '""') + '"'


def column_type(spec: EntitySpec, name: str) -> str:
    if name in spec.json_fields:
        return "JSONB"
    kind = spec.field_type(name)
    if kind is bool:
        return "BOOLEAN"
    if kind is int:
        return "INTEGER"
    if kind is datetime:
        return "TIMESTAMPTZ"
    return "TEXT"


def primary_key(spec: EntitySpec) -> Tuple[str, ...]:
    fields = [spec.tenant_field]
    fields.extend(name for name in spec.key_fields if name != spec.tenant_field)
    return tuple(fields)


def table_ddl(spec: EntitySpec) -> List[str]:
    """CREATE statements for one entity table and its secondary indexes."""
    columns = []
    for name in spec.field_names:
        required = name in primary_key(spec) or name == "created_at"
        columns.append(
            f"{_ident(name)} {column_type(spec, name)}{' NOT NULL' if required else ''}"
        )
    columns.append(f"PRIMARY KEY ({', '.join(_ident(n) for n in primary_key(spec))})")
    for fields in spec.unique:
        cols = ", ".join(_ident(n) for n in (spec.tenant_field, *fields))
        columns.append(f"UNIQUE ({cols})")
    statements = [
        f"CREATE TABLE IF NOT EXISTS {_ident(spec.name)} (\n    "
        + ",\n    ".join(columns)
        + "\n)"
    ]
    for name in spec.indexed:
        index = f"{spec.name}_{name}_idx"
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {_ident(index)} ON {_ident(spec.name)} "
            f"({_ident(spec.tenant_field)}, {_ident(name)})"
        )
    return statements


def _like_pattern(needle: str) -> str:
    escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def compile_terms(spec: EntitySpec, terms: Sequence[Term]) -> Tuple[List[str], List[Any]]:
    """Translate parsed filter terms into WHERE fragments plus parameters."""
    clauses: List[str] = []
    params: List[Any] = []
    for term in terms:
        if term.op in ("search", "not_search"):
            parts = [f"COALESCE({_ident(n)}, '') ILIKE %s" for n in spec.searchable]
            params.extend(_like_pattern(term.value) for _ in spec.searchable)
            joined = "(" + " OR ".join(parts) + ")"
            clauses.append(joined if term.op == "search" else f"NOT {joined}")
            continue
        column = _ident(term.field)
        if term.op == "exists":
            clauses.append(f"({column} IS NOT NULL AND {column}::text <> '')")
        elif term.op == "missing":
            clauses.append(f"({column} IS NULL OR {column}::text = '')")
        else:
            clauses.append(f"{column} {_COMPARISONS[term.op]} %s")
            params.append(term.value.value if isinstance(term.value, Enum) else term.value)
    return clauses, params


class _PostgresRepository(Repository):
    def __init__(self, spec: EntitySpec, store: "PostgresStore"):
        super().__init__(spec)
        self.store = store
        self.table = _ident(spec.name)

    def _dump(self, name: str, value: Any) -> Any:
        if name in self.spec.json_fields and value is not None:
            return json.dumps(value)
        return value

    def _where_key(self, tenant_id: str, key: Tuple[str, ...]) -> Tuple[str, List[Any]]:
        match = {self.spec.tenant_field: tenant_id, **self.spec.key_match(key)}
        clause = " AND ".join(f"{_ident(n)} = %s" for n in match)
        return clause, list(match.values())

    def _conflict(self, exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        return ConstraintViolation(
            f"{self.spec.name} already exists",
            {"entity": self.spec.name, "constraint": constraint},
        )

    def _insert(self, tenant_id: str, record: Dict[str, Any]) -> None:
        names = list(record.keys())
        query = "INSERT INTO {} ({}) VALUES ({})".format(
            self.table,
            ", ".join(_ident(n) for n in names),
            ", ".join(["%s"] * len(names)),
        )
        try:
            with self.store._connect() as conn:
                conn.execute(query, [self._dump(n, record[n]) for n in names])
        except errors.UniqueViolation as exc:
            raise self._conflict(exc) from exc

    def _fetch(self, tenant_id: str, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        clause, params = self._where_key(tenant_id, key)
        with self.store._connect() as conn:
            row = conn.execute(f"SELECT * FROM {self.table} WHERE {clause}", params).fetchone()
        return dict(row) if row else None

    def _select(
        self, tenant_id: str, *, q: Optional[str], offset: int, limit: int, sort: Optional[str]
    ) -> Tuple[List[Dict[str, Any]], int]:
        clauses, params = compile_terms(self.spec, parse_query(self.spec, q))
        clauses.insert(0, f"{_ident(self.spec.tenant_field)} = %s")
        params.insert(0, tenant_id)
        where = " AND ".join(clauses)
        field, descending = parse_sort(self.spec, sort)
        direction = "DESC NULLS LAST" if descending else "ASC NULLS FIRST"
        order = ", ".join(
            [f"{_ident(field)} {direction}"] + [_ident(n) for n in self.spec.key_fields]
        )
        with self.store._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} WHERE {where} ORDER BY {order} LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM {self.table} WHERE {where}", params
            ).fetchone()
        return [dict(r) for r in rows], int(total_row["total"]) if total_row else 0

    def _merge(self, tenant_id: str, key: Tuple[str, ...], patch: Dict[str, Any]) -> bool:
        clause, key_params = self._where_key(tenant_id, key)
        assignments = ", ".join(f"{_ident(n)} = %s" for n in patch)
        values = [self._dump(n, v) for n, v in patch.items()]
        try:
            with self.store._connect() as conn:
                cur = conn.execute(
                    f"UPDATE {self.table} SET {assignments} WHERE {clause}",
                    [*values, *key_params],
                )
                return cur.rowcount > 0
        except errors.UniqueViolation as exc:
            raise self._conflict(exc) from exc

    def _delete(self, tenant_id: str, key: Tuple[str, ...]) -> bool:
        clause, params = self._where_key(tenant_id, key)
        with self.store._connect() as conn:
            cur = conn.execute(f"DELETE FROM {self.table} WHERE {clause}", params)
            return cur.rowcount > 0


class _PostgresCodeRepository(_PostgresRepository, CodeRepository):
    def consume(
        self, tenant_id: str, code_id: str, code_type: str, now: Optional[datetime] = None
    ) -> ConsumeResult:
        now = now or utcnow()
        key = self.spec.normalize_key((code_id, code_type))
        clause, params = self._where_key(tenant_id, key)
        with self.store._connect() as conn:
            row = conn.execute(
                f"UPDATE {self.table} SET used_at = %s WHERE {clause} "
                "AND used_at IS NULL AND expires_at > %s RETURNING *",
                [now, *params, now],
            ).fetchone()
            if row:
                return ConsumeResult(
                    status=ConsumeStatus.CONSUMED, code=entity_from_record(self.spec, row)
                )
            current = conn.execute(
                f"SELECT * FROM {self.table} WHERE {clause}", params
            ).fetchone()
        status = consume_status(current, now)
        if status is ConsumeStatus.CONSUMED:
            # lost a race between the conditional update and the read
            status = ConsumeStatus.ALREADY_USED
        return ConsumeResult(status=status)


class PostgresStore(EntityStore):
    """Relational backend: one table per entity, nested values in JSONB."""

    backend = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        super().__init__()
        if ensure_schema:
            self.ensure_schema()

    def _repository(self, spec: EntitySpec) -> Repository:
        cls = _PostgresCodeRepository if spec.name == "codes" else _PostgresRepository
        return cls(spec, self)

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(
                "relational store unavailable", backend=self.backend
            ) from exc

    def ensure_schema(self) -> None:
        """Create missing tables; existing tables are left untouched."""
        with self._connect() as conn:
            for spec in ENTITIES.values():
                for statement in table_ddl(spec):
                    conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(ENTITIES))

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
