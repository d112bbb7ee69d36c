from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from authkernel.config import Settings
from authkernel.logging import get_logger
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
from authkernel.storage.common import EntityStore
from authkernel.storage.models import (
    Client,
    ClientGrant,
    CodeType,
    Completed,
    Organization,
    OrganizationUsage,
    RefreshToken,
    ResourceServer,
    Tenant,
    TokenDialect,
    User,
    utcnow,
)

logger = get_logger(__name__)

IDENTITY_SCOPES = ("openid", "profile", "email", "address", "phone", "offline_access")

_PROFILE_CLAIMS = ("name", "given_name", "family_name", "nickname", "picture")

SUPPORTED_GRANTS = ("authorization_code", "client_credentials", "refresh_token")

CLOCK_SKEW_LEEWAY_SECONDS = 30


def management_audience(issuer: str) -> str:
    return f"{issuer}api/v2/"


@dataclass
class ScopeResolution:
    """Outcome of intersecting a requested scope with what may be granted.

    ``scopes`` holds resource-server scopes only; ``identity_scopes`` the OIDC
    scopes that shape the id_token and refresh token. ``permissions`` is
    ``None`` unless the resource server emits a permissions claim.
    """

    scopes: List[str] = field(default_factory=list)
    identity_scopes: List[str] = field(default_factory=list)
    permissions: Optional[List[str]] = None

    @property
    def granted(self) -> str:
        return " ".join(self.identity_scopes + self.scopes)


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def key_id(secret: str) -> str:
    """Stable, non-reversible identifier of a signing secret."""
    return hashlib.sha256(secret.encode()).hexdigest()[:16]


def encode_jwt(payload: Mapping[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT", "kid": key_id(secret)}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(dict(payload), separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{_encode_segment(signature)}"


def _split_jwt(token: str) -> Tuple[dict, dict, str, str]:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
        header = json.loads(_decode_segment(header_b64))
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        raise InvalidTokenError("malformed token") from exc
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise InvalidTokenError("malformed token")
    return header, payload, f"{header_b64}.{payload_b64}", sig_b64


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def parse_basic_auth(authorization: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not authorization or not authorization.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(authorization[6:].strip()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidClientError("malformed basic credentials") from exc
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("malformed basic credentials")
    return client_id, client_secret


class TokenService:
    """Resolves scopes and permissions, mints tokens and serves the token grants."""

    def __init__(self, store: EntityStore, settings: Settings, codes: CodeIssuer):
        self.store = store
        self.settings = settings
        self.codes = codes

    # -- lookups -------------------------------------------------------------

    def _tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.store.tenants.get(tenant_id, tenant_id)

    def find_resource_server(self, tenant_id: str, audience: str) -> Optional[ResourceServer]:
        matches = self.store.resource_servers.list(
            tenant_id, q=f'identifier:"{audience}"', per_page=1
        ).items
        return matches[0] if matches else None

    def resolve_resource_server(
        self, tenant_id: str, audience: Optional[str]
    ) -> Optional[ResourceServer]:
        """Resource server for ``audience`` (or the tenant default audience).

        Returns ``None`` when neither is set; an unknown audience is an error.
        """
        if not audience:
            tenant = self._tenant(tenant_id)
            audience = tenant.audience if tenant else None
            if not audience:
                return None
        resource_server = self.find_resource_server(tenant_id, audience)
        if resource_server is None:
            raise InvalidTargetError(f"service not found: {audience}")
        return resource_server

    def resolve_user_resource_server(
        self, tenant_id: str, audience: Optional[str], issuer: Optional[str] = None
    ) -> Optional[ResourceServer]:
        """Like :meth:`resolve_resource_server`, but the management API is
        reserved for client_credentials tokens and never issued to end users."""
        resource_server = self.resolve_resource_server(tenant_id, audience)
        reserved = management_audience(issuer or self.settings.issuer)
        if resource_server is not None and resource_server.identifier == reserved:
            logger.warning("management_audience_denied", tenant_id=tenant_id)
            raise AccessDeniedError("audience is not available to user grants")
        return resource_server

    def resolve_organization(self, tenant_id: str, organization: str) -> Organization:
        found = self.store.organizations.get(tenant_id, organization)
        if found is None:
            matches = self.store.organizations.list(
                tenant_id, q=f'name:"{organization}"', per_page=1
            ).items
            found = matches[0] if matches else None
        if found is None:
            raise AccessDeniedError("organization not found")
        return found

    def effective_permissions(
        self,
        tenant_id: str,
        user_id: str,
        resource_server_identifier: str,
        organization_id: Optional[str] = None,
    ) -> Set[str]:
        """Direct grants plus grants inherited through roles.

        Assignments scoped to an organization only count for tokens issued for
        that organization; tenant-wide assignments always count.
        """
        scopes_in = {"", organization_id or ""}
        permissions = {
            p.permission_name
            for p in self.store.user_permissions.list_all(
                tenant_id,
                q=f'user_id:"{user_id}" resource_server_identifier:"{resource_server_identifier}"',
            )
            if p.organization_id in scopes_in
        }
        role_ids = {
            r.role_id
            for r in self.store.user_roles.list_all(tenant_id, q=f'user_id:"{user_id}"')
            if r.organization_id in scopes_in
        }
        for role_id in sorted(role_ids):
            permissions.update(
                rp.permission_name
                for rp in self.store.role_permissions.list_all(
                    tenant_id,
                    q=f'role_id:"{role_id}" resource_server_identifier:"{resource_server_identifier}"',
                )
            )
        return permissions

    def _emits_permissions(self, resource_server: Optional[ResourceServer]) -> bool:
        return bool(
            resource_server
            and resource_server.enforce_policies
            and resource_server.token_dialect is TokenDialect.ACCESS_TOKEN_AUTHZ
        )

    def calculate_scopes_and_permissions(
        self,
        tenant_id: str,
        user: Optional[User],
        resource_server: Optional[ResourceServer],
        requested_scope: Optional[str],
        *,
        organization_id: Optional[str] = None,
    ) -> ScopeResolution:
        """Intersect the requested scope with what the resource server and user allow.

        Scope outside those grants is dropped rather than rejected.
        """
        requested = _dedupe((requested_scope or "").split())
        identity = [s for s in requested if s in IDENTITY_SCOPES]
        if resource_server is None:
            return ScopeResolution(scopes=[], identity_scopes=identity)

        declared = set(resource_server.scope_values())
        scopes = [s for s in requested if s in declared]
        user_permissions: Optional[Set[str]] = None
        if user is not None and resource_server.enforce_policies:
            user_permissions = self.effective_permissions(
                tenant_id, user.user_id, resource_server.identifier, organization_id
            )
            scopes = [s for s in scopes if s in user_permissions]

        permissions = None
        if self._emits_permissions(resource_server):
            permissions = sorted(user_permissions) if user_permissions is not None else list(scopes)
        if not resource_server.allow_offline_access:
            identity = [s for s in identity if s != "offline_access"]
        return ScopeResolution(scopes=scopes, identity_scopes=identity, permissions=permissions)

    # -- signing ---------------------------------------------------------------

    def _tenant_secret(self, tenant: Optional[Tenant]) -> str:
        return (tenant.signing_secret if tenant else None) or self.settings.jwt_secret

    def _signing_secret(
        self, tenant: Optional[Tenant], resource_server: Optional[ResourceServer]
    ) -> str:
        if resource_server is not None and resource_server.signing_secret:
            return resource_server.signing_secret
        return self._tenant_secret(tenant)

    def _candidate_secrets(self, tenant_id: str, audiences: List[str]) -> List[str]:
        tenant = self._tenant(tenant_id)
        candidates: List[str] = []
        for audience in audiences:
            resource_server = self.find_resource_server(tenant_id, audience)
            if resource_server is not None and resource_server.signing_secret:
                candidates.append(resource_server.signing_secret)
        candidates.append(self._tenant_secret(tenant))
        candidates.append(self.settings.jwt_secret)
        return _dedupe(candidates)

    def decode_token(
        self,
        tenant_id: str,
        token: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify signature, issuer, audience and expiry of a minted token."""
        header, payload, signing_input, signature = _split_jwt(token)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("unsupported token algorithm")
        aud = payload.get("aud")
        audiences = [aud] if isinstance(aud, str) else [a for a in aud or [] if isinstance(a, str)]
        secret = next(
            (s for s in self._candidate_secrets(tenant_id, audiences) if key_id(s) == header.get("kid")),
            None,
        )
        if secret is None:
            raise InvalidTokenError("unknown signing key")
        expected = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected, signature):
            raise InvalidTokenError("invalid token signature")
        if payload.get("iss") != (issuer or self.settings.issuer):
            raise InvalidTokenError("invalid token issuer")
        if payload.get("tenant_id") != tenant_id:
            raise InvalidTokenError("token issued for another tenant")
        if audience is not None and audience not in audiences:
            raise InvalidTokenError("invalid token audience")
        try:
            exp = float(payload.get("exp"))
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError("token has no expiry") from exc
        if exp <= time.time() - CLOCK_SKEW_LEEWAY_SECONDS:
            raise InvalidTokenError("token expired")
        return payload

    # -- minting ---------------------------------------------------------------

    def _lifetime(self, resource_server: Optional[ResourceServer], for_web: bool) -> int:
        if for_web:
            return (
                resource_server.token_lifetime_for_web if resource_server else None
            ) or self.settings.default_token_lifetime_for_web
        return (
            resource_server.token_lifetime if resource_server else None
        ) or self.settings.default_token_lifetime

    def _id_token_claims(self, user: User, identity_scopes: List[str]) -> Dict[str, Any]:
        claims: Dict[str, Any] = {}
        if "profile" in identity_scopes:
            for name in _PROFILE_CLAIMS:
                value = getattr(user, name)
                if value is not None:
                    claims[name] = value
            claims["updated_at"] = user.updated_at.isoformat()
        if "email" in identity_scopes:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        if "phone" in identity_scopes and user.phone_number:
            claims["phone_number"] = user.phone_number
        return claims

    def _store_refresh_token(
        self,
        tenant_id: str,
        *,
        client: Client,
        user: User,
        resource_server: Optional[ResourceServer],
        resolution: ScopeResolution,
        organization_id: Optional[str],
        login_id: Optional[str],
    ) -> str:
        token = secrets.token_urlsafe(48)
        self.store.refresh_tokens.create(
            tenant_id,
            RefreshToken(
                id=hash_refresh_token(token),
                tenant_id=tenant_id,
                client_id=client.client_id,
                user_id=user.user_id,
                expires_at=utcnow() + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
                audience=resource_server.identifier if resource_server else None,
                scope=resolution.granted,
                organization=organization_id,
                login_id=login_id,
            ),
        )
        return token

    def create_auth_tokens(
        self,
        tenant_id: str,
        *,
        client: Client,
        resource_server: Optional[ResourceServer],
        resolution: ScopeResolution,
        user: Optional[User] = None,
        issuer: Optional[str] = None,
        organization_id: Optional[str] = None,
        session_id: Optional[str] = None,
        nonce: Optional[str] = None,
        for_web: bool = False,
        issue_refresh: bool = True,
    ) -> Dict[str, Any]:
        """Mint the access token and, for user grants, the id and refresh tokens."""
        issuer = issuer or self.settings.issuer
        tenant = self._tenant(tenant_id)
        now = int(time.time())
        expires_in = self._lifetime(resource_server, for_web)
        wants_openid = user is not None and "openid" in resolution.identity_scopes

        userinfo_audience = f"{issuer}userinfo"
        if resource_server is not None:
            audience: Any = resource_server.identifier
            if wants_openid:
                audience = [resource_server.identifier, userinfo_audience]
            scope_claim = " ".join(resolution.scopes)
        else:
            audience = userinfo_audience
            scope_claim = " ".join(s for s in resolution.identity_scopes if s != "offline_access")

        access_payload: Dict[str, Any] = {
            "iss": issuer,
            "sub": user.user_id if user else f"{client.client_id}@clients",
            "aud": audience,
            "iat": now,
            "exp": now + expires_in,
            "jti": uuid.uuid4().hex,
            "azp": client.client_id,
            "scope": scope_claim,
            "tenant_id": tenant_id,
        }
        if user is None:
            access_payload["gty"] = "client-credentials"
        elif session_id:
            access_payload["sid"] = session_id
        if organization_id:
            access_payload["org_id"] = organization_id
        if resolution.permissions is not None:
            access_payload["permissions"] = list(resolution.permissions)

        response: Dict[str, Any] = {
            "access_token": encode_jwt(access_payload, self._signing_secret(tenant, resource_server)),
            "token_type": "Bearer",
            "expires_in": expires_in,
            "scope": resolution.granted if user else " ".join(resolution.scopes),
        }

        if wants_openid:
            id_payload: Dict[str, Any] = {
                "iss": issuer,
                "sub": user.user_id,
                "aud": client.client_id,
                "iat": now,
                "exp": now + self.settings.id_token_lifetime,
                "tenant_id": tenant_id,
                **self._id_token_claims(user, resolution.identity_scopes),
            }
            if session_id:
                id_payload["sid"] = session_id
            if nonce:
                id_payload["nonce"] = nonce
            if organization_id:
                id_payload["org_id"] = organization_id
            response["id_token"] = encode_jwt(id_payload, self._tenant_secret(tenant))

        if (
            issue_refresh
            and user is not None
            and "offline_access" in resolution.identity_scopes
            and "refresh_token" in client.grant_types
        ):
            response["refresh_token"] = self._store_refresh_token(
                tenant_id,
                client=client,
                user=user,
                resource_server=resource_server,
                resolution=resolution,
                organization_id=organization_id,
                login_id=session_id,
            )

        logger.info(
            "tokens_issued",
            tenant_id=tenant_id,
            client_id=client.client_id,
            audience=resource_server.identifier if resource_server else None,
            user_grant=user is not None,
            id_token="id_token" in response,
            refresh_token="refresh_token" in response,
        )
        return response

    def issue_user_tokens(
        self,
        tenant_id: str,
        *,
        user: User,
        client: Client,
        audience: Optional[str],
        scope: Optional[str],
        issuer: Optional[str] = None,
        organization: Optional[str] = None,
        session_id: Optional[str] = None,
        nonce: Optional[str] = None,
        for_web: bool = False,
        issue_refresh: bool = True,
    ) -> Dict[str, Any]:
        if user.blocked:
            raise AccessDeniedError("user is blocked")
        resource_server = self.resolve_user_resource_server(tenant_id, audience, issuer)
        organization_id = None
        if organization:
            organization_id = self.resolve_organization(tenant_id, organization).id
            member = self.store.organization_members.get(tenant_id, (organization_id, user.user_id))
            if member is None:
                raise AccessDeniedError("user is not a member of the organization")
        resolution = self.calculate_scopes_and_permissions(
            tenant_id, user, resource_server, scope, organization_id=organization_id
        )
        return self.create_auth_tokens(
            tenant_id,
            client=client,
            resource_server=resource_server,
            resolution=resolution,
            user=user,
            issuer=issuer,
            organization_id=organization_id,
            session_id=session_id,
            nonce=nonce,
            for_web=for_web,
            issue_refresh=issue_refresh,
        )

    # -- token endpoint ----------------------------------------------------------

    def authenticate_client(
        self, tenant_id: str, form: Mapping[str, Any], authorization: Optional[str] = None
    ) -> Client:
        basic_id, basic_secret = parse_basic_auth(authorization)
        client_id = basic_id or form.get("client_id")
        client_secret = basic_secret if basic_id else form.get("client_secret")
        if not client_id:
            raise InvalidClientError("client authentication required")
        client = self.store.clients.get(tenant_id, client_id)
        if client is None:
            raise InvalidClientError("unknown client")
        if client.token_endpoint_auth_method == "none":
            return client
        if not client_secret or not client.client_secret:
            raise InvalidClientError("client authentication failed")
        if not hmac.compare_digest(client_secret.encode(), client.client_secret.encode()):
            logger.warning("client_auth_failed", tenant_id=tenant_id, client_id=client_id)
            raise InvalidClientError("client authentication failed")
        return client

    def exchange(
        self,
        tenant_id: str,
        form: Mapping[str, Any],
        *,
        authorization: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> Dict[str, Any]:
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequestError("grant_type is required")
        if grant_type not in SUPPORTED_GRANTS:
            raise UnsupportedGrantTypeError(f"unsupported grant_type {grant_type}")
        client = self.authenticate_client(tenant_id, form, authorization)
        if grant_type not in client.grant_types:
            raise UnauthorizedClientError(f"client may not use grant_type {grant_type}")
        handler = {
            "authorization_code": self._authorization_code_grant,
            "client_credentials": self._client_credentials_grant,
            "refresh_token": self._refresh_token_grant,
        }[grant_type]
        return handler(tenant_id, client, form, issuer)

    def _authorization_code_grant(
        self, tenant_id: str, client: Client, form: Mapping[str, Any], issuer: Optional[str]
    ) -> Dict[str, Any]:
        code_id = form.get("code")
        if not code_id:
            raise InvalidRequestError("code is required")
        pending = self.codes.get(tenant_id, code_id, CodeType.AUTHORIZATION_CODE)
        if pending is None:
            raise InvalidGrantError("invalid authorization code")
        session = (
            self.store.login_sessions.get(tenant_id, pending.login_id) if pending.login_id else None
        )
        if session is None or session.client_id != client.client_id:
            raise InvalidGrantError("authorization code was issued to another client")
        if pending.redirect_uri and form.get("redirect_uri") != pending.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")
        if client.token_endpoint_auth_method == "none" and not (
            pending.code_challenge or session.auth_params.code_challenge
        ):
            raise InvalidGrantError("public clients must use PKCE")

        code = self.codes.consume(
            tenant_id,
            code_id,
            CodeType.AUTHORIZATION_CODE,
            code_verifier=form.get("code_verifier"),
            check_pkce=True,
        )
        user = self.store.users.get(tenant_id, code.user_id) if code.user_id else None
        if user is None:
            raise InvalidGrantError("authorization code subject no longer exists")
        params = session.auth_params
        step = session.pipeline_state.step
        scope = " ".join(step.granted_scopes) if isinstance(step, Completed) else params.scope
        return self.issue_user_tokens(
            tenant_id,
            user=user,
            client=client,
            audience=params.audience,
            scope=scope,
            issuer=issuer,
            organization=params.organization,
            session_id=session.id,
            nonce=code.nonce or params.nonce,
            for_web=client.token_endpoint_auth_method == "none",
        )

    def _check_grant_organization(
        self, tenant_id: str, grant: ClientGrant, organization: Optional[str]
    ) -> Optional[str]:
        if not organization:
            if grant.organization_usage is OrganizationUsage.REQUIRE:
                raise AccessDeniedError("an organization is required for this audience")
            return None
        if grant.organization_usage is OrganizationUsage.DENY:
            raise AccessDeniedError("organizations are not allowed for this client grant")
        organization_id = self.resolve_organization(tenant_id, organization).id
        if not grant.allow_any_organization and organization_id not in grant.organization_ids:
            raise AccessDeniedError("organization is not allowed for this client grant")
        return organization_id

    def _client_credentials_grant(
        self, tenant_id: str, client: Client, form: Mapping[str, Any], issuer: Optional[str]
    ) -> Dict[str, Any]:
        if client.token_endpoint_auth_method == "none":
            raise UnauthorizedClientError("public clients cannot use client_credentials")
        resource_server = self.resolve_resource_server(tenant_id, form.get("audience"))
        if resource_server is None:
            raise InvalidRequestError("audience is required")
        grants = self.store.client_grants.list(
            tenant_id,
            q=f'client_id:"{client.client_id}" audience:"{resource_server.identifier}"',
            per_page=1,
        ).items
        if not grants:
            logger.warning(
                "client_grant_missing",
                tenant_id=tenant_id,
                client_id=client.client_id,
                audience=resource_server.identifier,
            )
            raise AccessDeniedError("client is not authorized to access this audience")
        grant = grants[0]
        organization_id = self._check_grant_organization(tenant_id, grant, form.get("organization"))
        requested = form.get("scope") or " ".join(grant.scope)
        allowed = set(grant.scope)
        resolution = self.calculate_scopes_and_permissions(
            tenant_id, None, resource_server, " ".join(s for s in requested.split() if s in allowed)
        )
        resolution.identity_scopes = []
        return self.create_auth_tokens(
            tenant_id,
            client=client,
            resource_server=resource_server,
            resolution=resolution,
            issuer=issuer,
            organization_id=organization_id,
        )

    def _refresh_token_grant(
        self, tenant_id: str, client: Client, form: Mapping[str, Any], issuer: Optional[str]
    ) -> Dict[str, Any]:
        raw = form.get("refresh_token")
        if not raw:
            raise InvalidRequestError("refresh_token is required")
        stored = self.store.refresh_tokens.get(tenant_id, hash_refresh_token(raw))
        if stored is None:
            raise InvalidGrantError("invalid refresh token")
        if stored.client_id != client.client_id:
            raise InvalidGrantError("refresh token was issued to another client")
        if stored.revoked_at is not None:
            raise InvalidGrantError("refresh token revoked")
        if stored.expires_at <= utcnow():
            raise InvalidGrantError("refresh token expired")
        original = stored.scope.split()
        requested = (form.get("scope") or "").split()
        if requested and not set(requested) <= set(original):
            raise InvalidGrantError("requested scope exceeds the original grant")
        user = self.store.users.get(tenant_id, stored.user_id)
        if user is None:
            raise InvalidGrantError("refresh token subject no longer exists")
        return self.issue_user_tokens(
            tenant_id,
            user=user,
            client=client,
            audience=stored.audience,
            scope=" ".join(requested or original),
            issuer=issuer,
            organization=stored.organization,
            session_id=stored.login_id,
            issue_refresh=False,
        )

    def revoke_refresh_token(self, tenant_id: str, client: Client, token: str) -> bool:
        stored = self.store.refresh_tokens.get(tenant_id, hash_refresh_token(token))
        if stored is None or stored.client_id != client.client_id:
            return False
        return self.store.refresh_tokens.update(
            tenant_id, stored.id, {"revoked_at": utcnow()}
        )

    def userinfo(
        self, tenant_id: str, access_token: str, *, issuer: Optional[str] = None
    ) -> Dict[str, Any]:
        issuer = issuer or self.settings.issuer
        payload = self.decode_token(
            tenant_id, access_token, issuer=issuer, audience=f"{issuer}userinfo"
        )
        user = self.store.users.get(tenant_id, payload.get("sub", ""))
        if user is None:
            raise InvalidTokenError("token subject no longer exists")
        claims = {"sub": user.user_id}
        claims.update(self._id_token_claims(user, ["profile", "email", "phone"]))
        return claims
