import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from authkernel.app import app
from authkernel.service.runtime import get_runtime
from authkernel.service.tokens import encode_jwt, management_audience
from authkernel.storage.models import (
    Client,
    ClientGrant,
    RefreshToken,
    ResourceServer,
    ResourceServerScope,
    Tenant,
)

TENANT = "default"
CALLBACK = "https://app.example.com/cb"
API = "https://api.example.com/"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def runtime():
    rt = get_runtime()
    issuer = rt.settings.issuer
    store = rt.store
    store.tenants.create(TENANT, Tenant(id=TENANT, friendly_name="Default"))
    store.resource_servers.create(
        TENANT,
        ResourceServer(
            id="mgmt",
            tenant_id=TENANT,
            identifier=management_audience(issuer),
            name="Management API",
            scopes=[ResourceServerScope("read:users"), ResourceServerScope("update:users")],
        ),
    )
    store.clients.create(
        TENANT,
        Client(
            client_id="admin-cli",
            tenant_id=TENANT,
            name="Admin CLI",
            client_secret="admin-cli-secret-0123456789",
            grant_types=["client_credentials"],
        ),
    )
    store.client_grants.create(
        TENANT,
        ClientGrant(
            id="cg_admin",
            tenant_id=TENANT,
            client_id="admin-cli",
            audience=management_audience(issuer),
            scope=["read:users", "update:users"],
        ),
    )
    return rt


@pytest.fixture
def admin(client, runtime):
    resp = client.post(
        "/oauth/token",
        data={
            "grant_type": "client_credentials",
            "client_id": "admin-cli",
            "client_secret": "admin-cli-secret-0123456789",
            "audience": management_audience(runtime.settings.issuer),
        },
    )
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _create_app_client(client, admin, **extra):
    body = {"name": "Web", "callbacks": [CALLBACK], "client_secret": "web-secret-0123456789"}
    body.update(extra)
    resp = client.post("/api/v2/clients", json=body, headers=admin)
    assert resp.status_code == 201
    return resp.json()["data"]


def _create_user(client, admin, email="ann@example.com", password="correct horse"):
    resp = client.post(
        "/api/v2/users", json={"email": email, "password": password, "name": "Ann"}, headers=admin
    )
    assert resp.status_code == 201
    return resp.json()["data"]


# -- health & headers ---------------------------------------------------------------


def test_healthz_reports_storage(client, runtime):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["storage"] == {"status": "healthy", "type": "memory"}
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_healthz_fails_when_storage_is_down(client, runtime, monkeypatch):
    from authkernel.storage.errors import StorageUnavailable

    def broken():
        raise StorageUnavailable("down", backend="memory")

    monkeypatch.setattr(runtime.store, "ping", broken)
    resp = client.get("/healthz")
    assert resp.status_code == 503
    assert resp.json()["checks"]["storage"]["status"] == "unhealthy"


# -- management authentication ------------------------------------------------------


def test_management_requires_bearer_token(client, runtime):
    resp = client.get("/api/v2/users")
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "invalid_token"
    assert body["request_id"]


def test_management_rejects_tokens_for_other_audiences(client, runtime):
    runtime.store.resource_servers.create(
        TENANT, ResourceServer(id="api", tenant_id=TENANT, identifier=API, name="API")
    )
    runtime.store.client_grants.create(
        TENANT, ClientGrant(id="cg_api", tenant_id=TENANT, client_id="admin-cli", audience=API)
    )
    token = client.post(
        "/oauth/token",
        data={
            "grant_type": "client_credentials",
            "client_id": "admin-cli",
            "client_secret": "admin-cli-secret-0123456789",
            "audience": API,
        },
    ).json()["access_token"]
    resp = client.get("/api/v2/users", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_management_rejects_end_user_tokens(client, admin, runtime):
    issuer = runtime.settings.issuer
    app_client = _create_app_client(client, admin)
    _create_user(client, admin)
    resp = client.get(
        "/authorize",
        params={
            "client_id": app_client["client_id"],
            "response_type": "code",
            "redirect_uri": CALLBACK,
            "audience": management_audience(issuer),
        },
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "access_denied"

    user_token = encode_jwt(
        {
            "iss": issuer,
            "sub": "auth0|ann",
            "aud": management_audience(issuer),
            "tenant_id": TENANT,
            "exp": int(time.time()) + 60,
        },
        runtime.settings.jwt_secret,
    )
    denied = client.get("/api/v2/users", headers={"Authorization": f"Bearer {user_token}"})
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "access_denied"


def test_management_tokens_are_tenant_bound(client, admin):
    resp = client.get("/api/v2/users", headers={**admin, "X-Tenant-ID": "other"})
    assert resp.status_code == 401


# -- management CRUD ----------------------------------------------------------------


def test_user_crud_and_listing(client, admin):
    created = _create_user(client, admin)
    assert created["user_id"].startswith("auth0|")
    assert "password" not in created and "password_hash" not in created
    _create_user(client, admin, email="bob@example.com")

    listed = client.get(
        "/api/v2/users", params={"q": 'email:"ann@example.com"', "include_totals": "true"}, headers=admin
    ).json()["data"]
    assert listed["total"] == 1
    assert listed["items"][0]["name"] == "Ann"

    page = client.get("/api/v2/users", params={"per_page": 1, "page": 1, "sort": "email:1"}, headers=admin)
    assert page.json()["data"]["items"][0]["email"] == "bob@example.com"
    assert page.json()["data"]["total"] is None

    user_url = f"/api/v2/users/{created['user_id']}"
    patched = client.patch(user_url, json={"nickname": "annie"}, headers=admin).json()["data"]
    assert patched["nickname"] == "annie"
    assert patched["name"] == "Ann"

    assert client.delete(user_url, headers=admin).json()["data"] == {"deleted": True}
    assert client.delete(user_url, headers=admin).json()["data"] == {"deleted": False}
    missing = client.get(user_url, headers=admin)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


def test_duplicate_email_is_a_conflict(client, admin):
    _create_user(client, admin)
    resp = client.post("/api/v2/users", json={"email": "ann@example.com"}, headers=admin)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_bad_filter_is_a_validation_error(client, admin):
    resp = client.get("/api/v2/users", params={"q": "password_hash:x"}, headers=admin)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_public_clients_get_no_secret(client, admin):
    created = _create_app_client(client, admin, token_endpoint_auth_method="none", client_secret=None)
    assert created["client_secret"] is None


def test_permissions_must_be_resource_server_scopes(client, admin):
    user = _create_user(client, admin)
    client.post(
        "/api/v2/resource-servers",
        json={"identifier": API, "name": "API", "scopes": [{"value": "read:items"}]},
        headers=admin,
    )
    url = f"/api/v2/users/{user['user_id']}/permissions"
    bad = client.post(
        url,
        json={"permissions": [{"resource_server_identifier": API, "permission_name": "nuke"}]},
        headers=admin,
    )
    assert bad.status_code == 400

    body = {"permissions": [{"resource_server_identifier": API, "permission_name": "read:items"}]}
    assert client.post(url, json=body, headers=admin).status_code == 201
    assert client.post(url, json=body, headers=admin).status_code == 201
    assert len(client.get(url, headers=admin).json()["data"]) == 1
    removed = client.request("DELETE", url, json=body, headers=admin)
    assert removed.json()["data"] == {"removed": 1}


def test_deleting_a_role_removes_its_assignments(client, admin):
    user = _create_user(client, admin)
    role = client.post("/api/v2/roles", json={"name": "editor"}, headers=admin).json()["data"]
    roles_url = f"/api/v2/users/{user['user_id']}/roles"
    assert client.post(roles_url, json={"roles": [role["id"]]}, headers=admin).status_code == 201
    assert len(client.get(roles_url, headers=admin).json()["data"]) == 1

    client.delete(f"/api/v2/roles/{role['id']}", headers=admin)
    assert client.get(roles_url, headers=admin).json()["data"] == []


def test_deleting_a_user_removes_its_assignments(client, admin, runtime):
    user = _create_user(client, admin)
    user_id = user["user_id"]
    client.post(
        "/api/v2/resource-servers",
        json={"identifier": API, "name": "API", "scopes": [{"value": "read:items"}]},
        headers=admin,
    )
    permission = {"permissions": [{"resource_server_identifier": API, "permission_name": "read:items"}]}
    assert client.post(f"/api/v2/users/{user_id}/permissions", json=permission, headers=admin).status_code == 201
    role = client.post("/api/v2/roles", json={"name": "editor"}, headers=admin).json()["data"]
    assert client.post(f"/api/v2/users/{user_id}/roles", json={"roles": [role["id"]]}, headers=admin).status_code == 201
    org = client.post("/api/v2/organizations", json={"name": "acme"}, headers=admin).json()["data"]
    members_url = f"/api/v2/organizations/{org['id']}/members"
    assert client.post(members_url, json={"members": [user_id]}, headers=admin).status_code == 201
    runtime.store.refresh_tokens.create(
        TENANT,
        RefreshToken(
            id="rt-hash",
            tenant_id=TENANT,
            client_id="admin-cli",
            user_id=user_id,
            expires_at=datetime.now(timezone.utc) + timedelta(days=1),
        ),
    )

    assert client.delete(f"/api/v2/users/{user_id}", headers=admin).json()["data"] == {"deleted": True}
    q = f'user_id:"{user_id}"'
    assert runtime.store.user_permissions.list_all(TENANT, q=q) == []
    assert runtime.store.user_roles.list_all(TENANT, q=q) == []
    assert runtime.store.refresh_tokens.get(TENANT, "rt-hash") is None
    assert client.get(members_url, headers=admin).json()["data"] == []

    recreated = client.post(
        "/api/v2/users", json={"email": "ann@example.com", "user_id": user_id}, headers=admin
    )
    assert recreated.status_code == 201
    assert client.get(f"/api/v2/users/{user_id}/permissions", headers=admin).json()["data"] == []


def test_deleting_an_organization_removes_scoped_assignments(client, admin, runtime):
    user = _create_user(client, admin)
    org = client.post("/api/v2/organizations", json={"name": "acme"}, headers=admin).json()["data"]
    role = client.post("/api/v2/roles", json={"name": "editor"}, headers=admin).json()["data"]
    roles_url = f"/api/v2/users/{user['user_id']}/roles"
    body = {"roles": [role["id"]], "organization_id": org["id"]}
    assert client.post(roles_url, json=body, headers=admin).status_code == 201

    client.delete(f"/api/v2/organizations/{org['id']}", headers=admin)
    assert runtime.store.user_roles.list_all(TENANT, q=f'organization_id:"{org["id"]}"') == []


def test_client_grant_scope_must_exist_on_the_audience(client, admin, runtime):
    app_client = _create_app_client(client, admin, grant_types=["client_credentials"])
    resp = client.post(
        "/api/v2/client-grants",
        json={
            "client_id": app_client["client_id"],
            "audience": management_audience(runtime.settings.issuer),
            "scope": ["delete:everything"],
        },
        headers=admin,
    )
    assert resp.status_code == 400


def test_flows_are_validated_before_storage(client, admin):
    resp = client.post(
        "/api/v2/flows",
        json={"name": "bad", "actions": [{"id": "s1", "type": "AUTH0", "action": "DANCE"}]},
        headers=admin,
    )
    assert resp.status_code == 400
    hook = client.post("/api/v2/hooks", json={"flow_id": "af_missing"}, headers=admin)
    assert hook.status_code == 404


# -- login over HTTP ----------------------------------------------------------------


def _authorize(client, client_id, **params):
    query = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": CALLBACK,
        "scope": "openid email",
        "state": "abc",
    }
    query.update(params)
    resp = client.get("/authorize", params=query)
    assert resp.status_code == 200
    return resp.json()["data"]


def test_login_flow_and_token_exchange(client, admin):
    app_client = _create_app_client(client, admin)
    _create_user(client, admin)

    session = _authorize(client, app_client["client_id"], nonce="n-1")
    assert session["prompt"] == "identifier"
    login_url = f"/u/login/{session['login_id']}"
    step = client.post(f"{login_url}/identifier", json={"username": "ann@example.com"})
    assert step.json()["data"]["prompt"] == "password"
    assert "no-store" in step.headers["Cache-Control"]

    done = client.post(f"{login_url}/password", json={"password": "correct horse"}).json()["data"]
    assert done["stage"] == "COMPLETED"
    redirect = urlparse(done["result"]["redirect_url"])
    code = parse_qs(redirect.query)["code"][0]

    resp = client.post(
        "/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CALLBACK,
            "client_id": app_client["client_id"],
            "client_secret": "web-secret-0123456789",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    tokens = resp.json()
    assert tokens["token_type"] == "Bearer"
    assert tokens["id_token"]
    assert "refresh_token" not in tokens

    info = client.get("/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert info.status_code == 200
    assert info.json()["email"] == "ann@example.com"

    reused = client.post(
        "/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CALLBACK,
            "client_id": app_client["client_id"],
            "client_secret": "web-secret-0123456789",
        },
    )
    assert reused.status_code == 400
    assert reused.json()["error"] == "invalid_grant"


def test_login_errors_use_the_envelope(client, admin):
    app_client = _create_app_client(client, admin)
    _create_user(client, admin)
    session = _authorize(client, app_client["client_id"])
    login_url = f"/u/login/{session['login_id']}"

    early = client.post(f"{login_url}/password", json={"password": "correct horse"})
    assert early.status_code == 409
    assert early.json()["error"]["code"] == "invalid_state"

    client.post(f"{login_url}/identifier", json={"username": "ann@example.com"})
    wrong = client.post(f"{login_url}/password", json={"password": "nope"})
    assert wrong.status_code == 403
    assert wrong.json()["error"]["message"] == "wrong email or password"

    cancelled = client.post(f"{login_url}/cancel").json()["data"]
    assert cancelled["stage"] == "ABANDONED"
    assert client.get("/u/login/unknown").status_code == 404


def test_authorize_rejects_unregistered_redirect(client, admin):
    app_client = _create_app_client(client, admin)
    resp = client.get(
        "/authorize",
        params={"client_id": app_client["client_id"], "response_type": "code", "redirect_uri": "https://evil/"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_request"


def test_pipeline_abort_hides_step_details(client, admin):
    app_client = _create_app_client(client, admin)
    _create_user(client, admin)
    flow = client.post(
        "/api/v2/flows",
        json={
            "name": "strict",
            "actions": [
                {"id": "lookup", "type": "AUTH0", "action": "GET_USER", "params": {"user_id": "auth0|gone"}}
            ],
        },
        headers=admin,
    ).json()["data"]
    assert client.post("/api/v2/hooks", json={"flow_id": flow["id"]}, headers=admin).status_code == 201

    session = _authorize(client, app_client["client_id"])
    login_url = f"/u/login/{session['login_id']}"
    client.post(f"{login_url}/identifier", json={"username": "ann@example.com"})
    resp = client.post(f"{login_url}/password", json={"password": "correct horse"})
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "pipeline_aborted"
    assert "lookup" not in error["message"]
    assert client.get(login_url).json()["data"]["stage"] == "ABANDONED"


# -- OAuth error bodies -------------------------------------------------------------


def test_token_endpoint_errors_follow_rfc6749(client, runtime):
    missing = client.post("/oauth/token", data={"client_id": "admin-cli"})
    assert missing.status_code == 400
    assert missing.json() == {"error": "invalid_request", "error_description": "grant_type is required"}

    bad_secret = client.post(
        "/oauth/token",
        data={"grant_type": "client_credentials", "client_id": "admin-cli", "client_secret": "wrong"},
    )
    assert bad_secret.status_code == 401
    assert bad_secret.json()["error"] == "invalid_client"
    assert "WWW-Authenticate" in bad_secret.headers

    unsupported = client.post(
        "/oauth/token", data={"grant_type": "password", "client_id": "admin-cli"}
    )
    assert unsupported.json()["error"] == "unsupported_grant_type"


def test_basic_auth_and_revocation(client, runtime):
    resp = client.post(
        "/oauth/token",
        data={"grant_type": "client_credentials", "audience": management_audience(runtime.settings.issuer)},
        auth=("admin-cli", "admin-cli-secret-0123456789"),
    )
    assert resp.status_code == 200
    assert resp.json()["scope"] == "read:users update:users"

    revoked = client.post(
        "/oauth/revoke", data={"token": "not-a-real-token"}, auth=("admin-cli", "admin-cli-secret-0123456789")
    )
    assert revoked.status_code == 200


def test_userinfo_requires_a_valid_token(client, runtime):
    resp = client.get("/userinfo", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_token"
    assert resp.headers["WWW-Authenticate"].startswith("Bearer")
