# annotations are evaluated eagerly here: _register_resource builds routes whose
# body types are closure variables FastAPI must see as real classes
import secrets
import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from authkernel.api.schemas import (
    AuthorizationResultResponse,
    ClientGrantPatch,
    ClientGrantRequest,
    ClientPatch,
    ClientRequest,
    ConsentRequest,
    Envelope,
    FlowPatch,
    FlowRequest,
    HookPatch,
    HookRequest,
    IdentifierRequest,
    ListResponse,
    LoginSessionResponse,
    MembersRequest,
    MfaCodeRequest,
    MfaEnrollmentResponse,
    OrganizationPatch,
    OrganizationRequest,
    PasswordRequest,
    PermissionsRequest,
    ResourceServerPatch,
    ResourceServerRequest,
    RolePatch,
    RoleRequest,
    TokenResponse,
    UserCreateRequest,
    UserPatch,
    UserRolesRequest,
)
from authkernel.logging import get_logger
from authkernel.service.errors import (
    AccessDeniedError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from authkernel.service.login_session import AuthorizationResult, StepOutcome
from authkernel.service.mfa import confirm_totp, enroll_totp
from authkernel.service.pipeline import entity_view, validate_actions
from authkernel.service.runtime import Runtime, get_runtime
from authkernel.service.tokens import management_audience
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    ActionStep,
    Client,
    ClientGrant,
    Flow,
    Hook,
    LoginSession,
    Organization,
    OrganizationMember,
    Password,
    ResourceServer,
    ResourceServerScope,
    Role,
    RolePermission,
    User,
    UserPermission,
    UserRole,
)

logger = get_logger(__name__)

router = APIRouter()

_HIDDEN_FIELDS = frozenset({"password_hash", "secret", "signing_secret"})


def get_tenant_id(
    x_tenant_id: Optional[str] = Header(default=None),
    tenant_id: Optional[str] = Query(default=None),
) -> str:
    return x_tenant_id or tenant_id or get_runtime().settings.default_tenant_id


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise InvalidTokenError("bearer token required")
    return authorization[7:].strip()


async def require_management_token(
    tenant_id: str = Depends(get_tenant_id),
    authorization: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    runtime = get_runtime()
    issuer = runtime.settings.issuer
    payload = runtime.tokens.decode_token(
        tenant_id,
        _bearer_token(authorization),
        issuer=issuer,
        audience=management_audience(issuer),
    )
    if payload.get("gty") != "client-credentials":
        logger.warning("management_token_not_client_credentials", tenant_id=tenant_id, sub=payload.get("sub"))
        raise AccessDeniedError("management API requires a client_credentials token")
    return payload


management = APIRouter(
    prefix="/api/v2", tags=["management"], dependencies=[Depends(require_management_token)]
)


def _view(entity_name: str, entity: Any) -> Dict[str, Any]:
    return {k: v for k, v in entity_view(entity_name, entity).items() if k not in _HIDDEN_FIELDS}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:22]}"


def _require(runtime: Runtime, entity_name: str, tenant_id: str, key: Any) -> Any:
    found = runtime.store.repository(entity_name).get(tenant_id, key)
    if found is None:
        raise NotFoundError(f"{entity_name} not found", detail={"id": key if isinstance(key, str) else list(key)})
    return found


# -- authorization & login steps ------------------------------------------------------


def _session_response(
    session: LoginSession, result: Optional[AuthorizationResult] = None, prompt: Optional[str] = None
) -> LoginSessionResponse:
    return LoginSessionResponse(
        login_id=session.id,
        client_id=session.client_id,
        stage=session.stage.value,
        prompt=prompt,
        state=session.auth_params.state,
        expires_at=session.expires_at,
        result=(
            AuthorizationResultResponse(
                redirect_uri=result.redirect_uri,
                response_mode=result.response_mode,
                redirect_url=result.redirect_url(),
                params=result.params,
            )
            if result
            else None
        ),
    )


@router.get("/authorize", response_model=Envelope, tags=["login"])
async def authorize(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Validate an authorization request and open a login session."""
    runtime = get_runtime()
    params = {k: v for k, v in request.query_params.items() if k != "tenant_id"}
    session = runtime.logins.start(
        tenant_id,
        params,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_session_response(session, prompt="identifier"))


@router.get("/u/login/{login_id}", response_model=Envelope, tags=["login"])
async def get_login_session(login_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    session = runtime.logins.get(tenant_id, login_id)
    return Envelope(status="ok", data=_session_response(session, prompt=StepOutcome(session).prompt))


@router.post("/u/login/{login_id}/identifier", response_model=Envelope, tags=["login"])
async def submit_identifier(
    login_id: str, body: IdentifierRequest, tenant_id: str = Depends(get_tenant_id)
):
    outcome = get_runtime().logins.submit_identifier(
        tenant_id, login_id, body.username, connection=body.connection
    )
    return Envelope(status="ok", data=_session_response(outcome.session, prompt=outcome.prompt))


@router.post("/u/login/{login_id}/password", response_model=Envelope, tags=["login"])
async def submit_password(login_id: str, body: PasswordRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    outcome = await runtime.logins.submit_password(
        tenant_id, login_id, body.password, issuer=runtime.settings.issuer
    )
    return Envelope(
        status="ok", data=_session_response(outcome.session, outcome.result, outcome.prompt)
    )


@router.post("/u/login/{login_id}/mfa", response_model=Envelope, tags=["login"])
async def submit_mfa(login_id: str, body: MfaCodeRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    outcome = await runtime.logins.submit_mfa(
        tenant_id, login_id, body.code, issuer=runtime.settings.issuer
    )
    return Envelope(
        status="ok", data=_session_response(outcome.session, outcome.result, outcome.prompt)
    )


@router.post("/u/login/{login_id}/consent", response_model=Envelope, tags=["login"])
async def submit_consent(login_id: str, body: ConsentRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    outcome = await runtime.logins.submit_consent(
        tenant_id, login_id, accept=body.accept, scopes=body.scopes, issuer=runtime.settings.issuer
    )
    return Envelope(
        status="ok", data=_session_response(outcome.session, outcome.result, outcome.prompt)
    )


@router.post("/u/login/{login_id}/cancel", response_model=Envelope, tags=["login"])
async def cancel_login(login_id: str, tenant_id: str = Depends(get_tenant_id)):
    session = get_runtime().logins.cancel(tenant_id, login_id)
    return Envelope(status="ok", data=_session_response(session))


# -- OAuth endpoints -------------------------------------------------------------------

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@router.post("/oauth/token", tags=["oauth"])
async def token(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    authorization: Optional[str] = Header(default=None),
):
    """Token endpoint for the authorization_code, client_credentials and refresh_token grants."""
    runtime = get_runtime()
    form = {k: v for k, v in (await request.form()).items() if isinstance(v, str)}
    issued = runtime.tokens.exchange(
        tenant_id, form, authorization=authorization, issuer=runtime.settings.issuer
    )
    body = TokenResponse(**issued).model_dump(exclude_none=True)
    return JSONResponse(content=body, headers=_NO_STORE)


@router.post("/oauth/revoke", tags=["oauth"])
async def revoke(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    authorization: Optional[str] = Header(default=None),
):
    runtime = get_runtime()
    form = {k: v for k, v in (await request.form()).items() if isinstance(v, str)}
    client = runtime.tokens.authenticate_client(tenant_id, form, authorization)
    if form.get("token"):
        runtime.tokens.revoke_refresh_token(tenant_id, client, form["token"])
    return JSONResponse(content={}, headers=_NO_STORE)


@router.get("/userinfo", tags=["oauth"])
async def userinfo(
    tenant_id: str = Depends(get_tenant_id),
    authorization: Optional[str] = Header(default=None),
):
    runtime = get_runtime()
    claims = runtime.tokens.userinfo(
        tenant_id, _bearer_token(authorization), issuer=runtime.settings.issuer
    )
    return JSONResponse(content=claims, headers=_NO_STORE)


# -- management API: generic list/get/patch/delete ------------------------------------------

PreparePatch = Callable[[Runtime, str, str, Dict[str, Any]], Dict[str, Any]]
OnDelete = Callable[[Runtime, str, str], None]


def _register_resource(
    path: str,
    entity_name: str,
    patch_model: type,
    *,
    prepare_patch: Optional[PreparePatch] = None,
    on_delete: Optional[OnDelete] = None,
) -> None:
    @management.get(f"/{path}", response_model=Envelope, name=f"list_{entity_name}")
    async def list_items(
        tenant_id: str = Depends(get_tenant_id),
        page: int = Query(0, ge=0),
        per_page: int = Query(50, ge=1, le=100),
        include_totals: bool = False,
        q: Optional[str] = None,
        sort: Optional[str] = None,
    ):
        result = get_runtime().store.repository(entity_name).list(
            tenant_id, q=q, page=page, per_page=per_page, include_totals=include_totals, sort=sort
        )
        return Envelope(
            status="ok",
            data=ListResponse(
                items=[_view(entity_name, item) for item in result.items],
                start=result.start,
                limit=result.limit,
                total=result.total,
            ),
        )

    @management.get(f"/{path}/{{item_id}}", response_model=Envelope, name=f"get_{entity_name}")
    async def get_item(item_id: str, tenant_id: str = Depends(get_tenant_id)):
        item = _require(get_runtime(), entity_name, tenant_id, item_id)
        return Envelope(status="ok", data=_view(entity_name, item))

    @management.patch(f"/{path}/{{item_id}}", response_model=Envelope, name=f"update_{entity_name}")
    async def update_item(item_id: str, body: patch_model, tenant_id: str = Depends(get_tenant_id)):
        runtime = get_runtime()
        _require(runtime, entity_name, tenant_id, item_id)
        changes = body.model_dump(exclude_unset=True)
        if prepare_patch is not None:
            changes = prepare_patch(runtime, tenant_id, item_id, changes)
        repo = runtime.store.repository(entity_name)
        if changes and not repo.update(tenant_id, item_id, changes):
            raise NotFoundError(f"{entity_name} not found", detail={"id": item_id})
        logger.info("management_update", entity=entity_name, tenant_id=tenant_id, fields=sorted(changes))
        return Envelope(status="ok", data=_view(entity_name, repo.get(tenant_id, item_id)))

    @management.delete(f"/{path}/{{item_id}}", response_model=Envelope, name=f"delete_{entity_name}")
    async def delete_item(item_id: str, tenant_id: str = Depends(get_tenant_id)):
        runtime = get_runtime()
        if on_delete is not None:
            on_delete(runtime, tenant_id, item_id)
        existed = runtime.store.repository(entity_name).remove(tenant_id, item_id)
        logger.info("management_delete", entity=entity_name, tenant_id=tenant_id, existed=existed)
        return Envelope(status="ok", data={"deleted": existed})


def _created(entity_name: str, entity: Any) -> JSONResponse:
    envelope = Envelope(status="ok", data=_view(entity_name, entity))
    return JSONResponse(status_code=201, content=envelope.model_dump(mode="json"))


# -- clients ------------------------------------------------------------------------------


@management.post("/clients", status_code=201, response_model=Envelope)
async def create_client(body: ClientRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    public = body.token_endpoint_auth_method == "none"
    client = Client(
        client_id=body.client_id or secrets.token_urlsafe(24),
        tenant_id=tenant_id,
        name=body.name,
        client_secret=None if public else (body.client_secret or secrets.token_urlsafe(48)),
        callbacks=body.callbacks,
        is_first_party=body.is_first_party,
        token_endpoint_auth_method=body.token_endpoint_auth_method,
        grant_types=list(body.grant_types),
    )
    return _created("clients", runtime.store.clients.create(tenant_id, client))


_register_resource("clients", "clients", ClientPatch)


# -- users ----------------------------------------------------------------------------------


def _user_patch(runtime: Runtime, tenant_id: str, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    password = changes.pop("password", None)
    if password:
        digest = runtime.password_hasher.hash(password)
        if not runtime.store.passwords.update(tenant_id, user_id, {"password_hash": digest}):
            runtime.store.passwords.create(
                tenant_id, Password(user_id=user_id, tenant_id=tenant_id, password_hash=digest)
            )
    return changes


def _remove_user_assignments(runtime: Runtime, tenant_id: str, q: str) -> None:
    for grant in runtime.store.user_permissions.list_all(tenant_id, q=q):
        runtime.store.user_permissions.remove(
            tenant_id,
            (
                grant.user_id,
                grant.resource_server_identifier,
                grant.permission_name,
                grant.organization_id,
            ),
        )
    for assignment in runtime.store.user_roles.list_all(tenant_id, q=q):
        runtime.store.user_roles.remove(
            tenant_id, (assignment.user_id, assignment.role_id, assignment.organization_id)
        )


def _user_delete(runtime: Runtime, tenant_id: str, user_id: str) -> None:
    q = f'user_id:"{user_id}"'
    runtime.store.passwords.remove(tenant_id, user_id)
    runtime.store.authenticators.remove(tenant_id, user_id)
    _remove_user_assignments(runtime, tenant_id, q)
    for member in runtime.store.organization_members.list_all(tenant_id, q=q):
        runtime.store.organization_members.remove(tenant_id, (member.organization_id, user_id))
    for token in runtime.store.refresh_tokens.list_all(tenant_id, q=q):
        runtime.store.refresh_tokens.remove(tenant_id, token.id)
    logger.info("user_assignments_removed", tenant_id=tenant_id, user_id=user_id)


@management.post("/users", status_code=201, response_model=Envelope)
async def create_user(body: UserCreateRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    profile = body.model_dump(exclude_none=True, exclude={"email", "connection", "password", "user_id"})
    user = runtime.store.users.create(
        tenant_id,
        User(
            user_id=body.user_id or f"auth0|{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            email=body.email,
            connection=body.connection,
            **profile,
        ),
    )
    if body.password:
        runtime.store.passwords.create(
            tenant_id,
            Password(
                user_id=user.user_id,
                tenant_id=tenant_id,
                password_hash=runtime.password_hasher.hash(body.password),
            ),
        )
    logger.info("user_created", tenant_id=tenant_id, user_id=user.user_id)
    return _created("users", user)


_register_resource(
    "users", "users", UserPatch, prepare_patch=_user_patch, on_delete=_user_delete
)


@management.get("/users/{user_id}/permissions", response_model=Envelope)
async def list_user_permissions(user_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "users", tenant_id, user_id)
    items = runtime.store.user_permissions.list_all(tenant_id, q=f'user_id:"{user_id}"')
    return Envelope(status="ok", data=[_view("user_permissions", p) for p in items])


@management.post("/users/{user_id}/permissions", status_code=201, response_model=Envelope)
async def assign_user_permissions(
    user_id: str, body: PermissionsRequest, tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    _require(runtime, "users", tenant_id, user_id)
    for ref in body.permissions:
        _require_permission(runtime, tenant_id, ref.resource_server_identifier, ref.permission_name)
        try:
            runtime.store.user_permissions.create(
                tenant_id,
                UserPermission(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    resource_server_identifier=ref.resource_server_identifier,
                    permission_name=ref.permission_name,
                    organization_id=body.organization_id or "",
                ),
            )
        except ConstraintViolation:
            logger.info("user_permission_exists", tenant_id=tenant_id, user_id=user_id)
    return Envelope(status="ok", data={"assigned": len(body.permissions)})


@management.delete("/users/{user_id}/permissions", response_model=Envelope)
async def remove_user_permissions(
    user_id: str, body: PermissionsRequest = Body(...), tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    removed = sum(
        runtime.store.user_permissions.remove(
            tenant_id,
            (user_id, ref.resource_server_identifier, ref.permission_name, body.organization_id or ""),
        )
        for ref in body.permissions
    )
    return Envelope(status="ok", data={"removed": removed})


@management.get("/users/{user_id}/roles", response_model=Envelope)
async def list_user_roles(user_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "users", tenant_id, user_id)
    items = runtime.store.user_roles.list_all(tenant_id, q=f'user_id:"{user_id}"')
    return Envelope(status="ok", data=[_view("user_roles", r) for r in items])


@management.post("/users/{user_id}/roles", status_code=201, response_model=Envelope)
async def assign_user_roles(user_id: str, body: UserRolesRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "users", tenant_id, user_id)
    for role_id in body.roles:
        _require(runtime, "roles", tenant_id, role_id)
        try:
            runtime.store.user_roles.create(
                tenant_id,
                UserRole(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    role_id=role_id,
                    organization_id=body.organization_id or "",
                ),
            )
        except ConstraintViolation:
            logger.info("user_role_exists", tenant_id=tenant_id, user_id=user_id, role_id=role_id)
    return Envelope(status="ok", data={"assigned": len(body.roles)})


@management.delete("/users/{user_id}/roles", response_model=Envelope)
async def remove_user_roles(
    user_id: str, body: UserRolesRequest = Body(...), tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    removed = sum(
        runtime.store.user_roles.remove(tenant_id, (user_id, role_id, body.organization_id or ""))
        for role_id in body.roles
    )
    return Envelope(status="ok", data={"removed": removed})


@management.post("/users/{user_id}/authenticators", status_code=201, response_model=Envelope)
async def enroll_authenticator(user_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    user = _require(runtime, "users", tenant_id, user_id)
    tenant = runtime.store.tenants.get(tenant_id, tenant_id)
    enrollment = enroll_totp(
        runtime.store,
        runtime.totp,
        tenant_id,
        user,
        issuer=tenant.friendly_name if tenant else tenant_id,
    )
    return Envelope(
        status="ok",
        data=MfaEnrollmentResponse(secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri),
    )


@management.post("/users/{user_id}/authenticators/confirm", response_model=Envelope)
async def confirm_authenticator(
    user_id: str, body: MfaCodeRequest, tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    if not confirm_totp(runtime.store, runtime.totp, tenant_id, user_id, body.code):
        raise ValidationError("invalid code")
    return Envelope(status="ok", data={"confirmed": True})


@management.delete("/users/{user_id}/authenticators", response_model=Envelope)
async def delete_authenticator(user_id: str, tenant_id: str = Depends(get_tenant_id)):
    existed = get_runtime().store.authenticators.remove(tenant_id, user_id)
    return Envelope(status="ok", data={"deleted": existed})


# -- flows & hooks --------------------------------------------------------------------------


def _action_steps(models: List[Any]) -> List[ActionStep]:
    steps = [ActionStep.from_dict(m.model_dump()) for m in models]
    validate_actions(steps)
    return steps


def _flow_patch(runtime: Runtime, tenant_id: str, flow_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    if changes.get("actions") is not None:
        validate_actions([ActionStep.from_dict(a) for a in changes["actions"]])
    return changes


@management.post("/flows", status_code=201, response_model=Envelope)
async def create_flow(body: FlowRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    flow = Flow(
        id=_new_id("af"), tenant_id=tenant_id, name=body.name, actions=_action_steps(body.actions)
    )
    return _created("flows", runtime.store.flows.create(tenant_id, flow))


_register_resource("flows", "flows", FlowPatch, prepare_patch=_flow_patch)


def _hook_patch(runtime: Runtime, tenant_id: str, hook_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    if changes.get("flow_id"):
        _require(runtime, "flows", tenant_id, changes["flow_id"])
    return changes


@management.post("/hooks", status_code=201, response_model=Envelope)
async def create_hook(body: HookRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "flows", tenant_id, body.flow_id)
    hook = Hook(
        hook_id=_new_id("hk"),
        tenant_id=tenant_id,
        trigger_id=body.trigger_id,
        flow_id=body.flow_id,
        enabled=body.enabled,
        priority=body.priority,
    )
    return _created("hooks", runtime.store.hooks.create(tenant_id, hook))


_register_resource("hooks", "hooks", HookPatch, prepare_patch=_hook_patch)


# -- resource servers & client grants -----------------------------------------------------------


def _require_permission(runtime: Runtime, tenant_id: str, identifier: str, permission: str) -> None:
    resource_server = runtime.tokens.find_resource_server(tenant_id, identifier)
    if resource_server is None:
        raise NotFoundError("resource server not found", detail={"identifier": identifier})
    if permission not in resource_server.scope_values():
        raise ValidationError(
            "permission is not a scope of the resource server",
            detail={"identifier": identifier, "permission_name": permission},
        )


@management.post("/resource-servers", status_code=201, response_model=Envelope)
async def create_resource_server(body: ResourceServerRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    resource_server = ResourceServer(
        id=uuid.uuid4().hex,
        tenant_id=tenant_id,
        identifier=body.identifier,
        name=body.name,
        scopes=[ResourceServerScope(value=s.value, description=s.description) for s in body.scopes],
        signing_alg=body.signing_alg,
        signing_secret=body.signing_secret,
        token_dialect=body.token_dialect,
        enforce_policies=body.enforce_policies,
        token_lifetime=body.token_lifetime,
        token_lifetime_for_web=body.token_lifetime_for_web,
        allow_offline_access=body.allow_offline_access,
    )
    return _created("resource_servers", runtime.store.resource_servers.create(tenant_id, resource_server))


_register_resource("resource-servers", "resource_servers", ResourceServerPatch)


def _check_grant_scope(runtime: Runtime, tenant_id: str, audience: str, scope: List[str]) -> None:
    resource_server = runtime.tokens.resolve_resource_server(tenant_id, audience)
    unknown = sorted(set(scope) - set(resource_server.scope_values()))
    if unknown:
        raise ValidationError("scope not defined by the resource server", detail={"scopes": unknown})


def _client_grant_patch(
    runtime: Runtime, tenant_id: str, grant_id: str, changes: Dict[str, Any]
) -> Dict[str, Any]:
    if changes.get("scope") is not None:
        grant = _require(runtime, "client_grants", tenant_id, grant_id)
        _check_grant_scope(runtime, tenant_id, grant.audience, changes["scope"])
    return changes


@management.post("/client-grants", status_code=201, response_model=Envelope)
async def create_client_grant(body: ClientGrantRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "clients", tenant_id, body.client_id)
    _check_grant_scope(runtime, tenant_id, body.audience, body.scope)
    grant = ClientGrant(
        id=_new_id("cgr"),
        tenant_id=tenant_id,
        client_id=body.client_id,
        audience=body.audience,
        scope=body.scope,
        organization_usage=body.organization_usage,
        allow_any_organization=body.allow_any_organization,
        organization_ids=body.organization_ids,
    )
    return _created("client_grants", runtime.store.client_grants.create(tenant_id, grant))


_register_resource("client-grants", "client_grants", ClientGrantPatch, prepare_patch=_client_grant_patch)


# -- roles ----------------------------------------------------------------------------------


def _role_delete(runtime: Runtime, tenant_id: str, role_id: str) -> None:
    for grant in runtime.store.role_permissions.list_all(tenant_id, q=f'role_id:"{role_id}"'):
        runtime.store.role_permissions.remove(
            tenant_id, (role_id, grant.resource_server_identifier, grant.permission_name)
        )
    for assignment in runtime.store.user_roles.list_all(tenant_id, q=f'role_id:"{role_id}"'):
        runtime.store.user_roles.remove(
            tenant_id, (assignment.user_id, role_id, assignment.organization_id)
        )


@management.post("/roles", status_code=201, response_model=Envelope)
async def create_role(body: RoleRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    role = Role(id=_new_id("rol"), tenant_id=tenant_id, name=body.name, description=body.description)
    return _created("roles", runtime.store.roles.create(tenant_id, role))


_register_resource("roles", "roles", RolePatch, on_delete=_role_delete)


@management.get("/roles/{role_id}/permissions", response_model=Envelope)
async def list_role_permissions(role_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "roles", tenant_id, role_id)
    items = runtime.store.role_permissions.list_all(tenant_id, q=f'role_id:"{role_id}"')
    return Envelope(status="ok", data=[_view("role_permissions", p) for p in items])


@management.post("/roles/{role_id}/permissions", status_code=201, response_model=Envelope)
async def assign_role_permissions(
    role_id: str, body: PermissionsRequest, tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    _require(runtime, "roles", tenant_id, role_id)
    for ref in body.permissions:
        _require_permission(runtime, tenant_id, ref.resource_server_identifier, ref.permission_name)
        try:
            runtime.store.role_permissions.create(
                tenant_id,
                RolePermission(
                    tenant_id=tenant_id,
                    role_id=role_id,
                    resource_server_identifier=ref.resource_server_identifier,
                    permission_name=ref.permission_name,
                ),
            )
        except ConstraintViolation:
            logger.info("role_permission_exists", tenant_id=tenant_id, role_id=role_id)
    return Envelope(status="ok", data={"assigned": len(body.permissions)})


@management.delete("/roles/{role_id}/permissions", response_model=Envelope)
async def remove_role_permissions(
    role_id: str, body: PermissionsRequest = Body(...), tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    removed = sum(
        runtime.store.role_permissions.remove(
            tenant_id, (role_id, ref.resource_server_identifier, ref.permission_name)
        )
        for ref in body.permissions
    )
    return Envelope(status="ok", data={"removed": removed})


# -- organizations ------------------------------------------------------------------------------


def _organization_delete(runtime: Runtime, tenant_id: str, organization_id: str) -> None:
    for member in runtime.store.organization_members.list_all(
        tenant_id, q=f'organization_id:"{organization_id}"'
    ):
        runtime.store.organization_members.remove(tenant_id, (organization_id, member.user_id))
    _remove_user_assignments(runtime, tenant_id, f'organization_id:"{organization_id}"')


@management.post("/organizations", status_code=201, response_model=Envelope)
async def create_organization(body: OrganizationRequest, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    organization = Organization(
        id=_new_id("org"), tenant_id=tenant_id, name=body.name, display_name=body.display_name
    )
    return _created("organizations", runtime.store.organizations.create(tenant_id, organization))


_register_resource(
    "organizations", "organizations", OrganizationPatch, on_delete=_organization_delete
)


@management.get("/organizations/{organization_id}/members", response_model=Envelope)
async def list_organization_members(organization_id: str, tenant_id: str = Depends(get_tenant_id)):
    runtime = get_runtime()
    _require(runtime, "organizations", tenant_id, organization_id)
    members = runtime.store.organization_members.list_all(
        tenant_id, q=f'organization_id:"{organization_id}"'
    )
    return Envelope(status="ok", data=[_view("organization_members", m) for m in members])


@management.post("/organizations/{organization_id}/members", status_code=201, response_model=Envelope)
async def add_organization_members(
    organization_id: str, body: MembersRequest, tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    _require(runtime, "organizations", tenant_id, organization_id)
    for user_id in body.members:
        _require(runtime, "users", tenant_id, user_id)
        try:
            runtime.store.organization_members.create(
                tenant_id,
                OrganizationMember(tenant_id=tenant_id, organization_id=organization_id, user_id=user_id),
            )
        except ConstraintViolation:
            logger.info("organization_member_exists", tenant_id=tenant_id, organization_id=organization_id)
    return Envelope(status="ok", data={"added": len(body.members)})


@management.delete("/organizations/{organization_id}/members", response_model=Envelope)
async def remove_organization_members(
    organization_id: str, body: MembersRequest = Body(...), tenant_id: str = Depends(get_tenant_id)
):
    runtime = get_runtime()
    removed = sum(
        runtime.store.organization_members.remove(tenant_id, (organization_id, user_id))
        for user_id in body.members
    )
    return Envelope(status="ok", data={"removed": removed})


router.include_router(management)
