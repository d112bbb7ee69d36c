from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    INVITE = "invite"
    OTP = "otp"


class TokenDialect(str, Enum):
    ACCESS_TOKEN = "access_token"
    ACCESS_TOKEN_AUTHZ = "access_token_authz"


class OrganizationUsage(str, Enum):
    DENY = "deny"
    ALLOW = "allow"
    REQUIRE = "require"


class FlowActionType(str, Enum):
    AUTH0 = "AUTH0"
    EMAIL = "EMAIL"


class LoginStage(str, Enum):
    STARTED = "STARTED"
    IDENTIFIER_ENTERED = "IDENTIFIER_ENTERED"
    CREDENTIAL_VERIFIED = "CREDENTIAL_VERIFIED"
    MFA_PENDING = "MFA_PENDING"
    MFA_VERIFIED = "MFA_VERIFIED"
    CONSENT_PENDING = "CONSENT_PENDING"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


TERMINAL_STAGES = frozenset({LoginStage.COMPLETED, LoginStage.ABANDONED})


@dataclass
class Tenant:
    id: str
    friendly_name: str
    audience: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    signing_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Client:
    client_id: str
    tenant_id: str
    name: str
    client_secret: Optional[str] = None
    callbacks: List[str] = field(default_factory=list)
    is_first_party: bool = True
    # "none" marks a public client (SPA/native) that must use PKCE
    token_endpoint_auth_method: str = "client_secret_post"
    grant_types: List[str] = field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    user_id: str
    tenant_id: str
    email: str
    connection: str = "Username-Password-Authentication"
    provider: str = "auth0"
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    phone_number: Optional[str] = None
    app_metadata: Dict[str, Any] = field(default_factory=dict)
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    blocked: bool = False
    login_count: int = 0
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Password:
    user_id: str
    tenant_id: str
    password_hash: str
    algorithm: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Authenticator:
    """A TOTP enrollment; ``secret`` is stored sealed, never in clear text."""

    user_id: str
    tenant_id: str
    secret: str
    type: str = "totp"
    confirmed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthParams:
    client_id: str
    response_type: str = "code"
    response_mode: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    audience: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    ui_locales: Optional[str] = None
    prompt: Optional[str] = None
    act_as: Optional[str] = None
    organization: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthParams":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def scopes(self) -> List[str]:
        return (self.scope or "").split()

    def prompts(self) -> List[str]:
        return (self.prompt or "").split()


# --- pipeline_state: one dataclass per stage, tagged by ``stage`` ---------


@dataclass(frozen=True)
class Started:
    stage: LoginStage = field(default=LoginStage.STARTED, init=False)


@dataclass(frozen=True)
class IdentifierEntered:
    username: str
    connection: str
    stage: LoginStage = field(default=LoginStage.IDENTIFIER_ENTERED, init=False)


@dataclass(frozen=True)
class CredentialVerified:
    user_id: str
    connection: str
    stage: LoginStage = field(default=LoginStage.CREDENTIAL_VERIFIED, init=False)


@dataclass(frozen=True)
class MfaPending:
    user_id: str
    connection: str
    failed_attempts: int = 0
    stage: LoginStage = field(default=LoginStage.MFA_PENDING, init=False)


@dataclass(frozen=True)
class MfaVerified:
    user_id: str
    connection: str
    stage: LoginStage = field(default=LoginStage.MFA_VERIFIED, init=False)


@dataclass(frozen=True)
class ConsentPending:
    user_id: str
    connection: str
    scopes: Tuple[str, ...] = ()
    stage: LoginStage = field(default=LoginStage.CONSENT_PENDING, init=False)


@dataclass(frozen=True)
class Completed:
    user_id: str
    connection: str
    granted_scopes: Tuple[str, ...] = ()
    code_id: Optional[str] = None
    stage: LoginStage = field(default=LoginStage.COMPLETED, init=False)


@dataclass(frozen=True)
class Abandoned:
    reason: str
    previous: LoginStage
    stage: LoginStage = field(default=LoginStage.ABANDONED, init=False)


StageState = Union[
    Started,
    IdentifierEntered,
    CredentialVerified,
    MfaPending,
    MfaVerified,
    ConsentPending,
    Completed,
    Abandoned,
]

_STAGE_TYPES = {
    LoginStage.STARTED: Started,
    LoginStage.IDENTIFIER_ENTERED: IdentifierEntered,
    LoginStage.CREDENTIAL_VERIFIED: CredentialVerified,
    LoginStage.MFA_PENDING: MfaPending,
    LoginStage.MFA_VERIFIED: MfaVerified,
    LoginStage.CONSENT_PENDING: ConsentPending,
    LoginStage.COMPLETED: Completed,
    LoginStage.ABANDONED: Abandoned,
}


def stage_from_dict(data: Dict[str, Any]) -> StageState:
    stage = LoginStage(data["stage"])
    cls = _STAGE_TYPES[stage]
    kwargs = {
        k: v
        for k, v in data.items()
        if k != "stage" and k in cls.__dataclass_fields__
    }
    for tuple_field in ("scopes", "granted_scopes"):
        if tuple_field in kwargs:
            kwargs[tuple_field] = tuple(kwargs[tuple_field] or ())
    if "previous" in kwargs:
        kwargs["previous"] = LoginStage(kwargs["previous"])
    return cls(**kwargs)


@dataclass
class PipelineState:
    """Forward-only stage marker plus attributes accumulated by actions."""

    step: StageState = field(default_factory=Started)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def stage(self) -> LoginStage:
        return self.step.stage

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineState":
        return cls(
            step=stage_from_dict(data.get("step") or {"stage": LoginStage.STARTED.value}),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class LoginSession:
    id: str
    tenant_id: str
    client_id: str
    auth_params: AuthParams
    expires_at: datetime
    pipeline_state: PipelineState = field(default_factory=PipelineState)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def stage(self) -> LoginStage:
        return self.pipeline_state.stage


@dataclass
class Code:
    code_id: str
    code_type: CodeType
    tenant_id: str
    expires_at: datetime
    user_id: Optional[str] = None
    login_id: Optional[str] = None
    connection_id: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    code_verifier: Optional[str] = None
    redirect_uri: Optional[str] = None
    nonce: Optional[str] = None
    state: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.code_type = CodeType(self.code_type)


@dataclass
class RefreshToken:
    id: str
    tenant_id: str
    client_id: str
    user_id: str
    expires_at: datetime
    audience: Optional[str] = None
    scope: str = ""
    organization: Optional[str] = None
    login_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActionStep:
    id: str
    type: FlowActionType
    action: str
    params: Dict[str, Any] = field(default_factory=dict)
    alias: Optional[str] = None
    allow_failure: bool = False
    mask_output: bool = False

    def __post_init__(self) -> None:
        self.type = FlowActionType(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionStep":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def output_key(self) -> str:
        return self.alias or self.id


@dataclass
class Flow:
    id: str
    tenant_id: str
    name: str
    actions: List[ActionStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Hook:
    """Binds a flow to a trigger point such as ``post-login``."""

    hook_id: str
    tenant_id: str
    trigger_id: str
    flow_id: str
    enabled: bool = True
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ResourceServerScope:
    value: str
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ResourceServerScope":
        if isinstance(data, str):
            return cls(value=data)
        return cls(value=data["value"], description=data.get("description"))


@dataclass
class ResourceServer:
    id: str
    tenant_id: str
    identifier: str
    name: str
    scopes: List[ResourceServerScope] = field(default_factory=list)
    signing_alg: str = "HS256"
    signing_secret: Optional[str] = None
    token_dialect: TokenDialect = TokenDialect.ACCESS_TOKEN
    enforce_policies: bool = False
    token_lifetime: Optional[int] = None
    token_lifetime_for_web: Optional[int] = None
    allow_offline_access: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.token_dialect = TokenDialect(self.token_dialect)

    def scope_values(self) -> List[str]:
        return [scope.value for scope in self.scopes]


@dataclass
class ClientGrant:
    id: str
    tenant_id: str
    client_id: str
    audience: str
    scope: List[str] = field(default_factory=list)
    organization_usage: OrganizationUsage = OrganizationUsage.DENY
    allow_any_organization: bool = False
    organization_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.organization_usage = OrganizationUsage(self.organization_usage)


@dataclass
class Role:
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RolePermission:
    tenant_id: str
    role_id: str
    resource_server_identifier: str
    permission_name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserPermission:
    tenant_id: str
    user_id: str
    resource_server_identifier: str
    permission_name: str
    # "" means tenant-wide rather than scoped to one organization
    organization_id: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRole:
    tenant_id: str
    user_id: str
    role_id: str
    organization_id: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Organization:
    id: str
    tenant_id: str
    name: str
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OrganizationMember:
    tenant_id: str
    organization_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
