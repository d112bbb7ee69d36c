from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import OperationalError, errors

from authkernel.storage.common import ENTITIES, ConsumeStatus
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.filters import parse_query
from authkernel.storage.models import User, utcnow
from authkernel.storage.postgres import PostgresStore, compile_terms, table_ddl


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, responses=None, error=None):
        self.conn = FakeConnection(list(responses or []))
        self.error = error
        self.closed = False

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn

    def close(self):
        self.closed = True


def _store(**pool_kwargs) -> PostgresStore:
    return PostgresStore("postgresql://unused", pool=FakePool(**pool_kwargs), ensure_schema=False)


def test_table_ddl_scopes_keys_and_unique_constraints_by_tenant():
    create, *indexes = table_ddl(ENTITIES["users"])
    assert 'CREATE TABLE IF NOT EXISTS "users"' in create
    assert 'PRIMARY KEY ("tenant_id", "user_id")' in create
    assert 'UNIQUE ("tenant_id", "email", "connection")' in create
    assert '"app_metadata" JSONB' in create
    assert '"last_login" TIMESTAMPTZ' in create
    assert '"login_count" INTEGER' in create
    assert indexes == [
        'CREATE INDEX IF NOT EXISTS "users_email_idx" ON "users" ("tenant_id", "email")'
    ]


def test_code_table_key_includes_code_type():
    create = table_ddl(ENTITIES["codes"])[0]
    assert 'PRIMARY KEY ("tenant_id", "code_id", "code_type")' in create


def test_compile_terms_builds_parameterized_clauses():
    spec = ENTITIES["users"]
    clauses, params = compile_terms(
        spec, parse_query(spec, 'email:"a@b.c" -blocked:true login_count:>2 _exists_:last_login')
    )
    assert clauses == [
        '"email" = %s',
        '"blocked" IS DISTINCT FROM %s',
        '"login_count" > %s',
        "(\"last_login\" IS NOT NULL AND \"last_login\"::text <> '')",
    ]
    assert params == ["a@b.c", True, 2]


def test_compile_terms_escapes_like_wildcards_in_search():
    spec = ENTITIES["roles"]
    clauses, params = compile_terms(spec, parse_query(spec, "50%_off"))
    assert clauses[0].startswith("(COALESCE(")
    assert params == ["%50\\%\\_off%"] * len(spec.searchable)


def test_insert_maps_unique_violation_to_constraint_violation():
    store = _store(responses=[errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation):
        store.users.create("t1", User(user_id="auth0|1", tenant_id="t1", email="a@b.c"))


def test_insert_serializes_json_columns():
    store = _store()
    store.users.create(
        "t1", User(user_id="auth0|1", tenant_id="t1", email="a@b.c", app_metadata={"k": 1})
    )
    query, params = store.pool.conn.executed[0]
    assert query.startswith('INSERT INTO "users"')
    assert '{"k": 1}' in params


def test_update_reports_whether_a_row_matched():
    store = _store(responses=[FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    assert store.users.update("t1", "auth0|1", {"name": "Ann"}) is True
    assert store.users.update("t1", "auth0|2", {"name": "Bob"}) is False
    query, params = store.pool.conn.executed[0]
    assert query.startswith('UPDATE "users" SET "name" = %s, "updated_at" = %s')
    assert params[-2:] == ["t1", "auth0|1"]


def test_consume_uses_a_single_conditional_update():
    now = utcnow()
    row = {
        "code_id": "c1",
        "code_type": "authorization_code",
        "tenant_id": "t1",
        "expires_at": now + timedelta(seconds=60),
        "used_at": now,
        "created_at": now,
    }
    store = _store(responses=[FakeCursor(rows=[row])])
    result = store.codes.consume("t1", "c1", "authorization_code", now)
    assert result.status is ConsumeStatus.CONSUMED
    query, _ = store.pool.conn.executed[0]
    assert "used_at IS NULL AND expires_at > %s RETURNING *" in query
    assert len(store.pool.conn.executed) == 1


def test_consume_reports_why_a_code_was_rejected():
    now = utcnow()
    used = {
        "code_id": "c1",
        "code_type": "authorization_code",
        "tenant_id": "t1",
        "expires_at": now + timedelta(seconds=60),
        "used_at": now - timedelta(seconds=1),
        "created_at": now,
    }
    store = _store(responses=[FakeCursor(), FakeCursor(rows=[used])])
    assert store.codes.consume("t1", "c1", "authorization_code", now).status is ConsumeStatus.ALREADY_USED

    store = _store(responses=[FakeCursor(), FakeCursor()])
    assert store.codes.consume("t1", "c1", "authorization_code", now).status is ConsumeStatus.NOT_FOUND


def test_connection_failures_surface_as_storage_unavailable():
    store = _store(error=OperationalError("connection refused"))
    with pytest.raises(StorageUnavailable) as excinfo:
        store.users.get("t1", "auth0|1")
    assert excinfo.value.backend == "postgres"
    with pytest.raises(StorageUnavailable):
        store.ping()


def test_ping_and_close():
    store = _store()
    store.ping()
    assert store.pool.conn.executed == [("SELECT 1", None)]
    store.close()
    assert store.pool.closed
