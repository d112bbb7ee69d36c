"""Scope resolution, token minting and verification, and the token endpoint grants."""

import base64
import json
import time

import pytest

from authkernel.config import Settings
from authkernel.service.codes import CodeIssuer
from authkernel.service.errors import (
    AccessDeniedError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTargetError,
    InvalidTokenError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from authkernel.service.tokens import TokenService, encode_jwt, key_id, management_audience
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import (
    Client,
    ClientGrant,
    Organization,
    OrganizationMember,
    OrganizationUsage,
    ResourceServer,
    ResourceServerScope,
    Role,
    RolePermission,
    Tenant,
    TokenDialect,
    User,
    UserPermission,
    UserRole,
)

ISSUER = "https://auth.example.test/"
API = "https://api.example.com/"
SECRET = "tenant-default-secret-0123456789abcdef"


def _segment(token: str, index: int) -> dict:
    part = token.split(".")[index]
    return json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))


def _claims(token: str) -> dict:
    return _segment(token, 1)


@pytest.fixture
def tokens():
    store = MemoryStore()
    settings = Settings(jwt_secret=SECRET, issuer=ISSUER)
    store.tenants.create("t1", Tenant(id="t1", friendly_name="Acme"))
    store.resource_servers.create(
        "t1",
        ResourceServer(
            id="rs1",
            tenant_id="t1",
            identifier=API,
            name="Items API",
            scopes=[ResourceServerScope("read:items"), ResourceServerScope("write:items")],
        ),
    )
    store.clients.create(
        "t1",
        Client(
            client_id="web-app",
            tenant_id="t1",
            name="Web",
            client_secret="web-secret-value-123",
            callbacks=["https://app.example.com/cb"],
            grant_types=["authorization_code", "refresh_token"],
        ),
    )
    store.clients.create(
        "t1",
        Client(
            client_id="m2m",
            tenant_id="t1",
            name="Worker",
            client_secret="m2m-secret-value-123",
            grant_types=["client_credentials"],
        ),
    )
    store.users.create(
        "t1",
        User(
            user_id="auth0|ann",
            tenant_id="t1",
            email="ann@example.com",
            name="Ann",
            email_verified=True,
        ),
    )
    return TokenService(store, settings, CodeIssuer(store, settings))


def _rs(tokens, **changes):
    if changes:
        tokens.store.resource_servers.update("t1", "rs1", changes)
    return tokens.store.resource_servers.get("t1", "rs1")


def _user(tokens):
    return tokens.store.users.get("t1", "auth0|ann")


def _client(tokens, client_id="web-app"):
    return tokens.store.clients.get("t1", client_id)


# -- JWT encode / decode ------------------------------------------------------------


def _payload(**overrides):
    payload = {"iss": ISSUER, "aud": API, "exp": int(time.time()) + 60, "tenant_id": "t1"}
    payload.update(overrides)
    return payload


def test_decode_accepts_valid_token(tokens):
    token = encode_jwt(_payload(sub="auth0|ann"), SECRET)
    assert tokens.decode_token("t1", token, issuer=ISSUER, audience=API)["sub"] == "auth0|ann"


@pytest.mark.parametrize(
    "overrides",
    [
        {"iss": "https://evil.test/"},
        {"aud": "https://other/"},
        {"tenant_id": "t2"},
        {"tenant_id": None},
        {"exp": 1},
    ],
)
def test_decode_rejects_bad_claims(tokens, overrides):
    token = encode_jwt(_payload(**overrides), SECRET)
    with pytest.raises(InvalidTokenError):
        tokens.decode_token("t1", token, issuer=ISSUER, audience=API)


def test_decode_rejects_tampering_unknown_keys_and_alg_none(tokens):
    token = encode_jwt(_payload(sub="auth0|ann"), SECRET)
    header, payload, signature = token.split(".")
    forged = base64.urlsafe_b64encode(
        json.dumps(_payload(sub="auth0|admin")).encode()
    ).decode().rstrip("=")
    with pytest.raises(InvalidTokenError):
        tokens.decode_token("t1", f"{header}.{forged}.{signature}", issuer=ISSUER)
    with pytest.raises(InvalidTokenError):
        tokens.decode_token("t1", encode_jwt(_payload(), "some-other-secret-value"), issuer=ISSUER)
    none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    with pytest.raises(InvalidTokenError):
        tokens.decode_token("t1", f"{none_header}.{payload}.", issuer=ISSUER)
    with pytest.raises(InvalidTokenError):
        tokens.decode_token("t1", "not-a-jwt", issuer=ISSUER)


def test_expiry_allows_small_clock_skew(tokens):
    token = encode_jwt(_payload(exp=int(time.time()) - 5), SECRET)
    assert tokens.decode_token("t1", token, issuer=ISSUER)


def test_resource_server_secret_signs_its_tokens(tokens):
    rs = _rs(tokens, signing_secret="api-specific-secret-abcdef123456")
    resolution = tokens.calculate_scopes_and_permissions("t1", None, rs, "read:items")
    issued = tokens.create_auth_tokens(
        "t1", client=_client(tokens, "m2m"), resource_server=rs, resolution=resolution, issuer=ISSUER
    )
    header = _segment(issued["access_token"], 0)
    assert header["kid"] == key_id("api-specific-secret-abcdef123456")
    assert tokens.decode_token("t1", issued["access_token"], issuer=ISSUER, audience=API)


# -- scope resolution ---------------------------------------------------------------


def test_unknown_scopes_are_dropped_silently(tokens):
    resolution = tokens.calculate_scopes_and_permissions(
        "t1", _user(tokens), _rs(tokens), "openid email read:items delete:everything read:items"
    )
    assert resolution.scopes == ["read:items"]
    assert resolution.identity_scopes == ["openid", "email"]
    assert resolution.permissions is None
    assert resolution.granted == "openid email read:items"


def test_enforced_policies_intersect_with_user_permissions(tokens):
    rs = _rs(tokens, enforce_policies=True, token_dialect=TokenDialect.ACCESS_TOKEN_AUTHZ)
    store = tokens.store
    store.user_permissions.create(
        "t1",
        UserPermission(
            tenant_id="t1", user_id="auth0|ann", resource_server_identifier=API, permission_name="read:items"
        ),
    )
    store.roles.create("t1", Role(id="r1", tenant_id="t1", name="editor"))
    store.role_permissions.create(
        "t1",
        RolePermission(tenant_id="t1", role_id="r1", resource_server_identifier=API, permission_name="write:items"),
    )
    store.user_roles.create("t1", UserRole(tenant_id="t1", user_id="auth0|ann", role_id="r1", organization_id="org_x"))

    resolution = tokens.calculate_scopes_and_permissions("t1", _user(tokens), rs, "read:items write:items")
    assert resolution.scopes == ["read:items"]
    assert resolution.permissions == ["read:items"]

    in_org = tokens.calculate_scopes_and_permissions(
        "t1", _user(tokens), rs, "write:items", organization_id="org_x"
    )
    assert in_org.scopes == ["write:items"]
    assert in_org.permissions == ["read:items", "write:items"]


def test_authz_dialect_without_enforcement_omits_permissions(tokens):
    rs = _rs(tokens, enforce_policies=False, token_dialect=TokenDialect.ACCESS_TOKEN_AUTHZ)
    tokens.store.user_permissions.create(
        "t1",
        UserPermission(
            tenant_id="t1", user_id="auth0|ann", resource_server_identifier=API, permission_name="read:items"
        ),
    )
    issued = tokens.issue_user_tokens(
        "t1", user=_user(tokens), client=_client(tokens), audience=rs.identifier, scope="read:items", issuer=ISSUER
    )
    claims = tokens.decode_token("t1", issued["access_token"], issuer=ISSUER, audience=API)
    assert claims["scope"] == "read:items"
    assert "permissions" not in claims


def test_offline_access_requires_resource_server_consent(tokens):
    rs = _rs(tokens, allow_offline_access=False)
    resolution = tokens.calculate_scopes_and_permissions("t1", _user(tokens), rs, "openid offline_access")
    assert resolution.identity_scopes == ["openid"]


def test_no_resource_server_yields_identity_scopes_only(tokens):
    resolution = tokens.calculate_scopes_and_permissions("t1", _user(tokens), None, "openid read:items")
    assert resolution.scopes == []
    assert resolution.identity_scopes == ["openid"]


def test_unknown_audience_is_invalid_target(tokens):
    with pytest.raises(InvalidTargetError):
        tokens.resolve_resource_server("t1", "https://nowhere/")
    assert tokens.resolve_resource_server("t1", None) is None
    tokens.store.tenants.update("t1", "t1", {"audience": API})
    assert tokens.resolve_resource_server("t1", None).identifier == API


# -- minting ------------------------------------------------------------------------


def test_user_tokens_with_openid_and_offline_access(tokens):
    issued = tokens.issue_user_tokens(
        "t1",
        user=_user(tokens),
        client=_client(tokens),
        audience=API,
        scope="openid profile email offline_access read:items",
        issuer=ISSUER,
        session_id="ls1",
        nonce="n-123",
    )
    access = _claims(issued["access_token"])
    assert access["aud"] == [API, f"{ISSUER}userinfo"]
    assert access["scope"] == "read:items"
    assert access["sub"] == "auth0|ann"
    assert access["azp"] == "web-app"
    assert access["sid"] == "ls1"
    assert access["exp"] - access["iat"] == tokens.settings.default_token_lifetime

    id_token = _claims(issued["id_token"])
    assert id_token["aud"] == "web-app"
    assert id_token["nonce"] == "n-123"
    assert id_token["email"] == "ann@example.com"
    assert id_token["name"] == "Ann"

    assert issued["refresh_token"]
    assert issued["scope"] == "openid profile email offline_access read:items"


def test_blocked_user_and_foreign_organization_are_denied(tokens):
    tokens.store.organizations.create("t1", Organization(id="org_1", tenant_id="t1", name="acme"))
    with pytest.raises(AccessDeniedError):
        tokens.issue_user_tokens(
            "t1", user=_user(tokens), client=_client(tokens), audience=API, scope="openid", organization="acme"
        )
    tokens.store.organization_members.create(
        "t1", OrganizationMember(tenant_id="t1", organization_id="org_1", user_id="auth0|ann")
    )
    issued = tokens.issue_user_tokens(
        "t1", user=_user(tokens), client=_client(tokens), audience=API, scope="openid", organization="acme"
    )
    assert _claims(issued["access_token"])["org_id"] == "org_1"

    tokens.store.users.update("t1", "auth0|ann", {"blocked": True})
    with pytest.raises(AccessDeniedError):
        tokens.issue_user_tokens(
            "t1", user=_user(tokens), client=_client(tokens), audience=API, scope="openid"
        )


def test_management_audience_is_never_issued_to_users(tokens):
    tokens.store.resource_servers.create(
        "t1",
        ResourceServer(id="mgmt", tenant_id="t1", identifier=management_audience(ISSUER), name="Management"),
    )
    with pytest.raises(AccessDeniedError):
        tokens.resolve_user_resource_server("t1", management_audience(ISSUER))
    with pytest.raises(AccessDeniedError):
        tokens.issue_user_tokens(
            "t1",
            user=_user(tokens),
            client=_client(tokens),
            audience=management_audience(ISSUER),
            scope="openid",
            issuer=ISSUER,
        )
    tokens.store.tenants.update("t1", "t1", {"audience": management_audience(ISSUER)})
    with pytest.raises(AccessDeniedError):
        tokens.issue_user_tokens(
            "t1", user=_user(tokens), client=_client(tokens), audience=None, scope="openid", issuer=ISSUER
        )


def test_userinfo_returns_profile_claims(tokens):
    issued = tokens.issue_user_tokens(
        "t1", user=_user(tokens), client=_client(tokens), audience=None, scope="openid", issuer=ISSUER
    )
    assert _claims(issued["access_token"])["aud"] == f"{ISSUER}userinfo"
    claims = tokens.userinfo("t1", issued["access_token"], issuer=ISSUER)
    assert claims["sub"] == "auth0|ann"
    assert claims["email_verified"] is True
    with pytest.raises(InvalidTokenError):
        tokens.userinfo("t2", issued["access_token"], issuer=ISSUER)


# -- token endpoint -----------------------------------------------------------------


def _grant(tokens, **extra):
    tokens.store.client_grants.create(
        "t1",
        ClientGrant(id="cg1", tenant_id="t1", client_id="m2m", audience=API, scope=["read:items"], **extra),
    )


def test_exchange_validates_grant_type_and_client(tokens):
    with pytest.raises(InvalidRequestError):
        tokens.exchange("t1", {"client_id": "m2m"})
    with pytest.raises(UnsupportedGrantTypeError):
        tokens.exchange("t1", {"grant_type": "password", "client_id": "m2m"})
    with pytest.raises(InvalidClientError):
        tokens.exchange(
            "t1", {"grant_type": "client_credentials", "client_id": "m2m", "client_secret": "wrong"}
        )
    with pytest.raises(UnauthorizedClientError):
        tokens.exchange(
            "t1",
            {"grant_type": "client_credentials", "client_id": "web-app", "client_secret": "web-secret-value-123"},
        )


def test_client_credentials_uses_grant_scopes(tokens):
    _grant(tokens)
    basic = "Basic " + base64.b64encode(b"m2m:m2m-secret-value-123").decode()
    issued = tokens.exchange(
        "t1",
        {"grant_type": "client_credentials", "audience": API, "scope": "read:items write:items"},
        authorization=basic,
        issuer=ISSUER,
    )
    claims = _claims(issued["access_token"])
    assert claims["sub"] == "m2m@clients"
    assert claims["gty"] == "client-credentials"
    assert claims["scope"] == "read:items"
    assert issued["scope"] == "read:items"
    assert "id_token" not in issued and "refresh_token" not in issued


def test_client_credentials_requires_audience_and_grant(tokens):
    form = {"grant_type": "client_credentials", "client_id": "m2m", "client_secret": "m2m-secret-value-123"}
    with pytest.raises(InvalidRequestError):
        tokens.exchange("t1", form)
    with pytest.raises(AccessDeniedError):
        tokens.exchange("t1", {**form, "audience": API})
    with pytest.raises(InvalidTargetError):
        tokens.exchange("t1", {**form, "audience": "https://nowhere/"})


def test_client_credentials_organization_usage(tokens):
    _grant(tokens, organization_usage=OrganizationUsage.DENY)
    tokens.store.organizations.create("t1", Organization(id="org_1", tenant_id="t1", name="acme"))
    form = {
        "grant_type": "client_credentials",
        "client_id": "m2m",
        "client_secret": "m2m-secret-value-123",
        "audience": API,
    }
    with pytest.raises(AccessDeniedError):
        tokens.exchange("t1", {**form, "organization": "acme"})

    tokens.store.client_grants.update(
        "t1", "cg1", {"organization_usage": OrganizationUsage.REQUIRE, "organization_ids": ["org_1"]}
    )
    with pytest.raises(AccessDeniedError):
        tokens.exchange("t1", form)
    issued = tokens.exchange("t1", {**form, "organization": "acme"})
    assert _claims(issued["access_token"])["org_id"] == "org_1"


def test_refresh_token_grant_and_revocation(tokens):
    issued = tokens.issue_user_tokens(
        "t1",
        user=_user(tokens),
        client=_client(tokens),
        audience=API,
        scope="openid offline_access read:items",
        issuer=ISSUER,
    )
    form = {
        "grant_type": "refresh_token",
        "client_id": "web-app",
        "client_secret": "web-secret-value-123",
        "refresh_token": issued["refresh_token"],
    }
    refreshed = tokens.exchange("t1", form, issuer=ISSUER)
    assert _claims(refreshed["access_token"])["scope"] == "read:items"
    assert "refresh_token" not in refreshed

    with pytest.raises(InvalidGrantError):
        tokens.exchange("t1", {**form, "scope": "read:items write:items"}, issuer=ISSUER)

    assert tokens.revoke_refresh_token("t1", _client(tokens), issued["refresh_token"]) is True
    with pytest.raises(InvalidGrantError):
        tokens.exchange("t1", form, issuer=ISSUER)
    with pytest.raises(InvalidGrantError):
        tokens.exchange("t1", {**form, "refresh_token": "unknown"}, issuer=ISSUER)
