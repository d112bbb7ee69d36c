"""List filter parsing and in-process evaluation."""

from datetime import datetime, timezone

import pytest

from authkernel.storage.common import ENTITIES
from authkernel.storage.errors import InvalidFilter
from authkernel.storage.filters import Term, filter_records, parse_query, parse_sort

USERS = ENTITIES["users"]


def _user(user_id, email, **extra):
    record = {
        "user_id": user_id,
        "tenant_id": "t1",
        "email": email,
        "connection": "Username-Password-Authentication",
        "name": None,
        "nickname": None,
        "given_name": None,
        "family_name": None,
        "login_count": 0,
        "blocked": False,
        "last_login": None,
        "created_at": datetime(2024, 1, int(user_id[-1]), tzinfo=timezone.utc),
    }
    record.update(extra)
    return record


RECORDS = [
    _user("u1", "ann@example.com", name="Ann Smith", login_count=5),
    _user("u2", "bob@example.com", name="Bob Jones", login_count=1, connection="github"),
    _user(
        "u3",
        "cat@example.org",
        login_count=3,
        last_login=datetime(2024, 2, 1, tzinfo=timezone.utc),
    ),
]


def _ids(q=None, sort=None):
    page, _ = filter_records(USERS, RECORDS, q=q, offset=0, limit=50, sort=sort)
    return [r["user_id"] for r in page]


def test_empty_query_matches_everything():
    assert parse_query(USERS, None) == []
    assert parse_query(USERS, "   ") == []
    assert _ids() == ["u1", "u2", "u3"]


def test_field_equality_with_quotes_and_equals_sign():
    assert _ids('email:"bob@example.com"') == ["u2"]
    assert _ids("email=cat@example.org") == ["u3"]


def test_negation_and_ranges():
    assert _ids("-connection:github") == ["u1", "u3"]
    assert _ids("login_count:>=3") == ["u1", "u3"]
    assert _ids("login_count:<3") == ["u2"]
    assert _ids("-login_count:>3") == ["u2", "u3"]


def test_exists_terms():
    assert _ids("_exists_:last_login") == ["u3"]
    assert _ids("-_exists_:last_login") == ["u1", "u2"]


def test_free_text_search_is_case_insensitive_over_searchable_fields():
    assert _ids("SMITH") == ["u1"]
    assert _ids("example.com") == ["u1", "u2"]


def test_terms_are_anded():
    assert _ids('example.com login_count:>1') == ["u1"]


def test_bool_and_int_values_are_coerced():
    terms = parse_query(USERS, "blocked:true login_count:2")
    assert terms == [Term("blocked", "=", True), Term("login_count", "=", 2)]


def test_unknown_field_is_rejected():
    with pytest.raises(InvalidFilter):
        parse_query(USERS, "favourite_colour:blue")


def test_json_fields_are_not_filterable():
    with pytest.raises(InvalidFilter):
        parse_query(USERS, "app_metadata:x")


def test_invalid_typed_value_is_rejected():
    with pytest.raises(InvalidFilter):
        parse_query(USERS, "login_count:many")
    with pytest.raises(InvalidFilter):
        parse_query(USERS, "blocked:maybe")


def test_free_text_on_entity_without_searchable_fields():
    with pytest.raises(InvalidFilter):
        parse_query(ENTITIES["codes"], "anything")


def test_sort_parsing_and_descending_order():
    assert parse_sort(USERS, None) == ("created_at", False)
    assert parse_sort(USERS, "login_count:-1") == ("login_count", True)
    assert _ids(sort="login_count:-1") == ["u1", "u3", "u2"]
    with pytest.raises(InvalidFilter):
        parse_sort(USERS, "login_count:up")


def test_paging_reports_total_of_all_matches():
    page, total = filter_records(USERS, RECORDS, q=None, offset=1, limit=1, sort=None)
    assert [r["user_id"] for r in page] == ["u2"]
    assert total == 3
