"""Entity registry and record helpers shared by every storage backend.

Backends never see model classes directly: they persist *records* (plain
dicts whose values are JSON-compatible, except datetimes) and hand them back
through :func:`entity_from_record`. Each entity is described once by an
:class:`EntitySpec` so the memory, relational and key-value backends agree on
keys, unique constraints, searchable fields and nested JSON values.
"""

from __future__ import annotations

import copy
import dataclasses
import typing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

from authkernel.storage.errors import ConstraintViolation, InvalidFilter
from authkernel.storage.models import (
    ActionStep,
    AuthParams,
    Authenticator,
    Client,
    ClientGrant,
    Code,
    Flow,
    Hook,
    LoginSession,
    Organization,
    OrganizationMember,
    Password,
    PipelineState,
    RefreshToken,
    ResourceServer,
    ResourceServerScope,
    Role,
    RolePermission,
    Tenant,
    User,
    UserPermission,
    UserRole,
    utcnow,
)

T = TypeVar("T")

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 100

Key = typing.Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class EntitySpec:
    name: str
    model: type
    key_fields: Tuple[str, ...]
    sort_key_prefix: str
    tenant_field: str = "tenant_id"
    unique: Tuple[Tuple[str, ...], ...] = ()
    searchable: Tuple[str, ...] = ()
    indexed: Tuple[str, ...] = ()
    decoders: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(self.model))

    def field_type(self, name: str) -> type:
        hint = _type_hints(self.model).get(name, str)
        args = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        origin = typing.get_origin(hint)
        if origin is typing.Union and len(args) == 1:
            hint = args[0]
            origin = typing.get_origin(hint)
        if origin in (list, dict, tuple):
            return origin
        return hint if isinstance(hint, type) else str

    @property
    def json_fields(self) -> Tuple[str, ...]:
        return tuple(
            name
            for name in self.field_names
            if self.field_type(name) in (list, dict, tuple)
            or dataclasses.is_dataclass(self.field_type(name))
        )

    @property
    def datetime_fields(self) -> Tuple[str, ...]:
        return tuple(n for n in self.field_names if self.field_type(n) is datetime)

    @property
    def filterable(self) -> Tuple[str, ...]:
        return tuple(n for n in self.field_names if n not in self.json_fields)

    @property
    def has_updated_at(self) -> bool:
        return "updated_at" in self.field_names

    def normalize_key(self, key: Key) -> Tuple[str, ...]:
        parts = (key,) if isinstance(key, str) else tuple(key)
        if len(parts) != len(self.key_fields):
            raise InvalidFilter(
                f"{self.name} key expects {len(self.key_fields)} part(s), got {len(parts)}"
            )
        return tuple(str(part.value if isinstance(part, Enum) else part) for part in parts)

    def key_of(self, record: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(str(record[name]) for name in self.key_fields)

    def key_match(self, key: Tuple[str, ...]) -> Dict[str, str]:
        return dict(zip(self.key_fields, key))


_HINT_CACHE: Dict[type, Dict[str, Any]] = {}


def _type_hints(model: type) -> Dict[str, Any]:
    hints = _HINT_CACHE.get(model)
    if hints is None:
        hints = typing.get_type_hints(model)
        _HINT_CACHE[model] = hints
    return hints


def _decode_list(item_decoder: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def decode(values: Any) -> List[Any]:
        return [item_decoder(v) for v in (values or [])]

    return decode


ENTITIES: Dict[str, EntitySpec] = {
    spec.name: spec
    for spec in (
        EntitySpec(
            "tenants",
            Tenant,
            key_fields=("id",),
            sort_key_prefix="TENANT",
            tenant_field="id",
            searchable=("friendly_name",),
        ),
        EntitySpec(
            "clients",
            Client,
            key_fields=("client_id",),
            sort_key_prefix="CLIENT",
            searchable=("name",),
        ),
        EntitySpec(
            "users",
            User,
            key_fields=("user_id",),
            sort_key_prefix="USER",
            unique=(("email", "connection"),),
            searchable=("email", "name", "nickname", "given_name", "family_name"),
            indexed=("email",),
        ),
        EntitySpec(
            "passwords", Password, key_fields=("user_id",), sort_key_prefix="PASSWORD"
        ),
        EntitySpec(
            "authenticators",
            Authenticator,
            key_fields=("user_id",),
            sort_key_prefix="AUTHENTICATOR",
        ),
        EntitySpec(
            "login_sessions",
            LoginSession,
            key_fields=("id",),
            sort_key_prefix="LOGIN",
            indexed=("client_id",),
            decoders={
                "auth_params": AuthParams.from_dict,
                "pipeline_state": PipelineState.from_dict,
            },
        ),
        EntitySpec(
            "codes",
            Code,
            key_fields=("code_id", "code_type"),
            sort_key_prefix="CODE",
            indexed=("user_id", "login_id"),
        ),
        EntitySpec(
            "refresh_tokens",
            RefreshToken,
            key_fields=("id",),
            sort_key_prefix="REFRESH",
            indexed=("user_id", "client_id"),
        ),
        EntitySpec(
            "flows",
            Flow,
            key_fields=("id",),
            sort_key_prefix="FLOW",
            searchable=("name",),
            decoders={"actions": _decode_list(ActionStep.from_dict)},
        ),
        EntitySpec(
            "hooks",
            Hook,
            key_fields=("hook_id",),
            sort_key_prefix="HOOK",
            indexed=("trigger_id", "flow_id"),
        ),
        EntitySpec(
            "resource_servers",
            ResourceServer,
            key_fields=("id",),
            sort_key_prefix="RESOURCE_SERVER",
            unique=(("identifier",),),
            searchable=("name", "identifier"),
            indexed=("identifier",),
            decoders={"scopes": _decode_list(ResourceServerScope.from_dict)},
        ),
        EntitySpec(
            "client_grants",
            ClientGrant,
            key_fields=("id",),
            sort_key_prefix="CLIENT_GRANT",
            unique=(("client_id", "audience"),),
            indexed=("client_id", "audience"),
        ),
        EntitySpec(
            "roles",
            Role,
            key_fields=("id",),
            sort_key_prefix="ROLE",
            unique=(("name",),),
            searchable=("name", "description"),
        ),
        EntitySpec(
            "role_permissions",
            RolePermission,
            key_fields=("role_id", "resource_server_identifier", "permission_name"),
            sort_key_prefix="ROLE_PERMISSION",
            indexed=("role_id", "resource_server_identifier"),
        ),
        EntitySpec(
            "user_permissions",
            UserPermission,
            key_fields=(
                "user_id",
                "resource_server_identifier",
                "permission_name",
                "organization_id",
            ),
            sort_key_prefix="USER_PERMISSION",
            indexed=("user_id",),
        ),
        EntitySpec(
            "user_roles",
            UserRole,
            key_fields=("user_id", "role_id", "organization_id"),
            sort_key_prefix="USER_ROLE",
            indexed=("user_id", "role_id"),
        ),
        EntitySpec(
            "organizations",
            Organization,
            key_fields=("id",),
            sort_key_prefix="ORGANIZATION",
            unique=(("name",),),
            searchable=("name", "display_name"),
        ),
        EntitySpec(
            "organization_members",
            OrganizationMember,
            key_fields=("organization_id", "user_id"),
            sort_key_prefix="ORGANIZATION_MEMBER",
            indexed=("organization_id", "user_id"),
        ),
    )
}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _plain(dataclasses.asdict(value))
    return value


def record_from_entity(spec: EntitySpec, entity: Any) -> Dict[str, Any]:
    if not isinstance(entity, spec.model):
        raise TypeError(f"{spec.name} expects {spec.model.__name__}, got {type(entity).__name__}")
    return {f.name: _plain(getattr(entity, f.name)) for f in dataclasses.fields(entity)}


def entity_from_record(spec: EntitySpec, record: Mapping[str, Any]) -> Any:
    kwargs: Dict[str, Any] = {}
    for name in spec.field_names:
        if name not in record:
            continue
        value = copy.deepcopy(record[name])
        decoder = spec.decoders.get(name)
        if decoder is not None and value is not None:
            value = decoder(value)
        kwargs[name] = value
    return spec.model(**kwargs)


def normalize_patch(spec: EntitySpec, patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a partial update and convert it to record form."""
    unknown = [name for name in patch if name not in spec.field_names]
    if unknown:
        raise InvalidFilter(f"unknown {spec.name} field(s): {', '.join(sorted(unknown))}")
    frozen = set(spec.key_fields) | {spec.tenant_field, "created_at"}
    touched = [name for name in patch if name in frozen]
    if touched:
        raise InvalidFilter(f"{spec.name} field(s) cannot be updated: {', '.join(sorted(touched))}")
    normalized = {name: _plain(value) for name, value in patch.items()}
    if spec.has_updated_at and "updated_at" not in normalized:
        normalized["updated_at"] = utcnow()
    return normalized


def unique_values(
    spec: EntitySpec, record: Mapping[str, Any]
) -> List[Tuple[Tuple[str, ...], Tuple[Any, ...]]]:
    """Return (fields, values) for each unique constraint the record participates in."""
    result = []
    for fields in spec.unique:
        values = tuple(record.get(name) for name in fields)
        if any(v is None for v in values):
            continue
        result.append((fields, values))
    return result


def conflict(spec: EntitySpec, fields: Tuple[str, ...]) -> ConstraintViolation:
    return ConstraintViolation(
        f"{spec.name} already exists", {"entity": spec.name, "fields": list(fields)}
    )


def clamp_paging(page: Optional[int], per_page: Optional[int]) -> Tuple[int, int]:
    page = max(0, int(page or 0))
    if per_page is None:
        per_page = DEFAULT_PER_PAGE
    per_page = min(MAX_PER_PAGE, max(1, int(per_page)))
    return page, per_page


@dataclass
class ListResult(Generic[T]):
    items: List[T]
    start: int
    limit: int
    total: Optional[int] = None


class ConsumeStatus(str, Enum):
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


@dataclass
class ConsumeResult:
    status: ConsumeStatus
    code: Optional[Code] = None


def consume_status(record: Optional[Mapping[str, Any]], now: datetime) -> ConsumeStatus:
    """Status a consume of ``record`` at ``now`` would have."""
    if record is None:
        return ConsumeStatus.NOT_FOUND
    if record.get("used_at") is not None:
        return ConsumeStatus.ALREADY_USED
    expires_at = record.get("expires_at")
    if expires_at is None or expires_at <= now:
        return ConsumeStatus.EXPIRED
    return ConsumeStatus.CONSUMED


class Repository(Generic[T]):
    """Tenant-scoped CRUD surface for one entity.

    ``get`` returns ``None`` for a missing row, ``update`` merges the patch and
    returns whether a row matched, ``remove`` is idempotent and returns whether a
    row existed. Backends implement the ``_``-prefixed primitives.
    """

    def __init__(self, spec: EntitySpec):
        self.spec = spec

    def create(self, tenant_id: str, entity: T) -> T:
        record = record_from_entity(self.spec, entity)
        if record.get(self.spec.tenant_field) != tenant_id:
            raise InvalidFilter(
                f"{self.spec.name} {self.spec.tenant_field} does not match tenant {tenant_id!r}"
            )
        self._insert(tenant_id, record)
        return entity_from_record(self.spec, record)

    def get(self, tenant_id: str, key: Key) -> Optional[T]:
        record = self._fetch(tenant_id, self.spec.normalize_key(key))
        return entity_from_record(self.spec, record) if record is not None else None

    def list(
        self,
        tenant_id: str,
        *,
        q: Optional[str] = None,
        page: Optional[int] = 0,
        per_page: Optional[int] = DEFAULT_PER_PAGE,
        include_totals: bool = False,
        sort: Optional[str] = None,
    ) -> ListResult[T]:
        page, per_page = clamp_paging(page, per_page)
        records, total = self._select(
            tenant_id, q=q, offset=page * per_page, limit=per_page, sort=sort
        )
        return ListResult(
            items=[entity_from_record(self.spec, r) for r in records],
            start=page * per_page,
            limit=per_page,
            total=total if include_totals else None,
        )

    def list_all(self, tenant_id: str, q: Optional[str] = None) -> List[T]:
        items: List[T] = []
        page = 0
        while True:
            result = self.list(tenant_id, q=q, page=page, per_page=MAX_PER_PAGE)
            items.extend(result.items)
            if len(result.items) < MAX_PER_PAGE:
                return items
            page += 1

    def update(self, tenant_id: str, key: Key, patch: Mapping[str, Any]) -> bool:
        normalized = normalize_patch(self.spec, patch)
        return self._merge(tenant_id, self.spec.normalize_key(key), normalized)

    def remove(self, tenant_id: str, key: Key) -> bool:
        return self._delete(tenant_id, self.spec.normalize_key(key))

    # -- backend primitives ------------------------------------------------

    def _insert(self, tenant_id: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _fetch(self, tenant_id: str, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _select(
        self, tenant_id: str, *, q: Optional[str], offset: int, limit: int, sort: Optional[str]
    ) -> Tuple[List[Dict[str, Any]], int]:
        raise NotImplementedError

    def _merge(self, tenant_id: str, key: Tuple[str, ...], patch: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def _delete(self, tenant_id: str, key: Tuple[str, ...]) -> bool:
        raise NotImplementedError


class CodeRepository(Repository[Code]):
    """Adds the single atomic check-and-set consumption primitive."""

    def consume(
        self, tenant_id: str, code_id: str, code_type: str, now: Optional[datetime] = None
    ) -> ConsumeResult:
        raise NotImplementedError


class EntityStore:
    """Container exposing one repository attribute per registered entity."""

    backend = "abstract"

    def __init__(self) -> None:
        for name, spec in ENTITIES.items():
            setattr(self, name, self._repository(spec))

    def _repository(self, spec: EntitySpec) -> Repository:
        raise NotImplementedError

    def repository(self, name: str) -> Repository:
        if name not in ENTITIES:
            raise KeyError(name)
        return getattr(self, name)

    def ping(self) -> None:
        """Raise StorageUnavailable when the backend cannot serve requests."""
        return None

    def close(self) -> None:
        return None

    # attribute declarations for type checkers
    tenants: Repository[Tenant]
    clients: Repository[Client]
    users: Repository[User]
    passwords: Repository[Password]
    authenticators: Repository[Authenticator]
    login_sessions: Repository[LoginSession]
    codes: CodeRepository
    refresh_tokens: Repository[RefreshToken]
    flows: Repository[Flow]
    hooks: Repository[Hook]
    resource_servers: Repository[ResourceServer]
    client_grants: Repository[ClientGrant]
    roles: Repository[Role]
    role_permissions: Repository[RolePermission]
    user_permissions: Repository[UserPermission]
    user_roles: Repository[UserRole]
    organizations: Repository[Organization]
    organization_members: Repository[OrganizationMember]
