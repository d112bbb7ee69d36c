from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkernel.storage.models import FlowActionType, OrganizationUsage, TokenDialect

MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON values."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_dict_field(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


def _normalize_unicode(value: str) -> str:
    # strip zero-width and bidi override characters before NFKC
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(len(l) > 63 or not _EMAIL_DOMAIN_LABEL.match(l) for l in labels):
        raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_request",
        "invalid_client",
        "invalid_token",
        "unauthorized_client",
        "invalid_grant",
        "code_expired",
        "already_used",
        "code_not_found",
        "unsupported_grant_type",
        "invalid_target",
        "access_denied",
        "session_expired",
        "invalid_state",
        "pipeline_aborted",
        "not_found",
        "conflict",
        "unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OAuthError(BaseModel):
    """RFC 6749 error body used by the token and userinfo endpoints."""

    error: str
    error_description: Optional[str] = None


# -- login flow -----------------------------------------------------------------


class AuthorizationResultResponse(BaseModel):
    redirect_uri: Optional[str] = None
    response_mode: str
    redirect_url: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class LoginSessionResponse(BaseModel):
    login_id: str
    client_id: str
    stage: str
    prompt: Optional[str] = None
    state: Optional[str] = None
    expires_at: datetime
    result: Optional[AuthorizationResultResponse] = None


class IdentifierRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254)
    connection: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class PasswordRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8, pattern=r"^\d+$")


class ConsentRequest(BaseModel):
    accept: bool
    scopes: Optional[List[str]] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str = ""
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None


# -- management API ----------------------------------------------------------------


class ListResponse(BaseModel):
    items: List[Dict[str, Any]]
    start: int
    limit: int
    total: Optional[int] = None


class ActionStepModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., min_length=1, max_length=128)
    alias: Optional[str] = Field(default=None, max_length=100)
    type: FlowActionType
    action: str = Field(..., min_length=1, max_length=64)
    allow_failure: bool = False
    mask_output: bool = False
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params")
    @classmethod
    def _validate_params(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validate_dict_field(value) or {}


class FlowRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    actions: List[ActionStepModel] = Field(default_factory=list)


class FlowPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=150)
    actions: Optional[List[ActionStepModel]] = None


class HookRequest(BaseModel):
    trigger_id: Literal["post-login"] = "post-login"
    flow_id: str = Field(..., min_length=1)
    enabled: bool = True
    priority: int = 0


class HookPatch(BaseModel):
    flow_id: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None


class ResourceServerScopeModel(BaseModel):
    value: str = Field(..., min_length=1, max_length=280)
    description: Optional[str] = None


class ResourceServerRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    identifier: str = Field(..., min_length=1, max_length=600)
    name: str = Field(..., min_length=1, max_length=200)
    scopes: List[ResourceServerScopeModel] = Field(default_factory=list)
    signing_alg: Literal["HS256"] = "HS256"
    signing_secret: Optional[str] = Field(default=None, min_length=16)
    token_dialect: TokenDialect = TokenDialect.ACCESS_TOKEN
    enforce_policies: bool = False
    token_lifetime: Optional[int] = Field(default=None, ge=1, le=2592000)
    token_lifetime_for_web: Optional[int] = Field(default=None, ge=1, le=2592000)
    allow_offline_access: bool = True


class ResourceServerPatch(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    scopes: Optional[List[ResourceServerScopeModel]] = None
    signing_secret: Optional[str] = Field(default=None, min_length=16)
    token_dialect: Optional[TokenDialect] = None
    enforce_policies: Optional[bool] = None
    token_lifetime: Optional[int] = Field(default=None, ge=1, le=2592000)
    token_lifetime_for_web: Optional[int] = Field(default=None, ge=1, le=2592000)
    allow_offline_access: Optional[bool] = None


class ClientGrantRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    client_id: str = Field(..., min_length=1)
    audience: str = Field(..., min_length=1)
    scope: List[str] = Field(default_factory=list)
    organization_usage: OrganizationUsage = OrganizationUsage.DENY
    allow_any_organization: bool = False
    organization_ids: List[str] = Field(default_factory=list)


class ClientGrantPatch(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    scope: Optional[List[str]] = None
    organization_usage: Optional[OrganizationUsage] = None
    allow_any_organization: Optional[bool] = None
    organization_ids: Optional[List[str]] = None


GrantTypeName = Literal["authorization_code", "client_credentials", "refresh_token"]


class ClientRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    client_id: Optional[str] = Field(default=None, min_length=8, max_length=128)
    client_secret: Optional[str] = Field(default=None, min_length=16)
    callbacks: List[str] = Field(default_factory=list)
    is_first_party: bool = True
    token_endpoint_auth_method: Literal["none", "client_secret_post", "client_secret_basic"] = (
        "client_secret_post"
    )
    grant_types: List[GrantTypeName] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )


class ClientPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    callbacks: Optional[List[str]] = None
    is_first_party: Optional[bool] = None
    token_endpoint_auth_method: Optional[
        Literal["none", "client_secret_post", "client_secret_basic"]
    ] = None
    grant_types: Optional[List[GrantTypeName]] = None


class _UserProfile(BaseModel):
    name: Optional[str] = Field(default=None, max_length=300)
    given_name: Optional[str] = Field(default=None, max_length=150)
    family_name: Optional[str] = Field(default=None, max_length=150)
    nickname: Optional[str] = Field(default=None, max_length=300)
    picture: Optional[str] = Field(default=None, max_length=2048)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    email_verified: Optional[bool] = None
    blocked: Optional[bool] = None
    app_metadata: Optional[Dict[str, Any]] = None
    user_metadata: Optional[Dict[str, Any]] = None

    @field_validator("app_metadata", "user_metadata")
    @classmethod
    def _validate_metadata(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value)


class UserCreateRequest(_UserProfile):
    email: str
    connection: str = "Username-Password-Authentication"
    password: Optional[str] = None
    user_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value)


class UserPatch(_UserProfile):
    email: Optional[str] = None
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value)


class PermissionRef(BaseModel):
    resource_server_identifier: str = Field(..., min_length=1)
    permission_name: str = Field(..., min_length=1)


class PermissionsRequest(BaseModel):
    permissions: List[PermissionRef] = Field(..., min_length=1)
    organization_id: Optional[str] = None


class UserRolesRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1)
    organization_id: Optional[str] = None


class RoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


class RolePatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


class OrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, pattern=r"^[a-z0-9_-]+$")
    display_name: Optional[str] = Field(default=None, max_length=255)


class OrganizationPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50, pattern=r"^[a-z0-9_-]+$")
    display_name: Optional[str] = Field(default=None, max_length=255)


class MembersRequest(BaseModel):
    members: List[str] = Field(..., min_length=1)


class MfaEnrollmentResponse(BaseModel):
    secret: str
    otpauth_uri: str
