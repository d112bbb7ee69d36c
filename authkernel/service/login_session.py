"""Login session state machine.

A session moves forward through the stages in :class:`LoginStage`; each
submitted step is checked against the stage it presupposes and the result is
persisted before the call returns, so any worker can resume the session from
the stored ``pipeline_state`` alone. Expired sessions are abandoned lazily on
the next read.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.codes import PKCE_METHODS, CodeIssuer
from authkernel.service.errors import (
    AccessDeniedError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PipelineAbortedError,
    ServiceError,
    SessionExpiredError,
    ValidationError,
)
from authkernel.service.mfa import TotpVerifier
from authkernel.service.pipeline import POST_LOGIN_TRIGGER, ActionExecutor, entity_view
from authkernel.service.tokens import TokenService
from authkernel.storage.common import EntityStore
from authkernel.storage.models import (
    Abandoned,
    AuthParams,
    Client,
    CodeType,
    Completed,
    ConsentPending,
    CredentialVerified,
    IdentifierEntered,
    LoginSession,
    LoginStage,
    MfaPending,
    MfaVerified,
    PipelineState,
    StageState,
    TERMINAL_STAGES,
    User,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_CONNECTION = "Username-Password-Authentication"
MAX_MFA_ATTEMPTS = 5

_RESPONSE_TYPE_ORDER = ("code", "id_token", "token")
RESPONSE_TYPES = frozenset(
    {
        "code",
        "token",
        "id_token",
        "id_token token",
        "code id_token",
        "code token",
        "code id_token token",
    }
)
RESPONSE_MODES = ("query", "fragment", "form_post")

# step name -> stages the step may be submitted in
_STEP_STAGES = {
    "identifier": {LoginStage.STARTED},
    "password": {LoginStage.IDENTIFIER_ENTERED},
    "mfa": {LoginStage.MFA_PENDING},
    "consent": {LoginStage.CONSENT_PENDING},
}

_NEXT_PROMPT = {
    LoginStage.STARTED: "identifier",
    LoginStage.IDENTIFIER_ENTERED: "password",
    LoginStage.MFA_PENDING: "mfa",
    LoginStage.CONSENT_PENDING: "consent",
}


def normalize_response_type(response_type: Optional[str]) -> str:
    words = set((response_type or "").split())
    ordered = " ".join(w for w in _RESPONSE_TYPE_ORDER if w in words)
    if not words or ordered not in RESPONSE_TYPES or len(ordered.split()) != len(words):
        raise InvalidRequestError(
            "unsupported response_type", detail={"response_type": response_type}
        )
    return ordered


@dataclass
class AuthorizationResult:
    """Parameters returned to the client's redirect_uri on completion."""

    redirect_uri: Optional[str]
    response_mode: str
    params: Dict[str, Any] = field(default_factory=dict)

    def redirect_url(self) -> Optional[str]:
        """URL to redirect to; ``None`` for form_post or when no redirect_uri is known."""
        if not self.redirect_uri or self.response_mode == "form_post":
            return None
        encoded = urlencode({k: v for k, v in self.params.items() if v is not None})
        if self.response_mode == "fragment":
            return f"{self.redirect_uri}#{encoded}"
        separator = "&" if "?" in self.redirect_uri else "?"
        return f"{self.redirect_uri}{separator}{encoded}"


@dataclass
class StepOutcome:
    session: LoginSession
    result: Optional[AuthorizationResult] = None

    @property
    def stage(self) -> LoginStage:
        return self.session.stage

    @property
    def prompt(self) -> Optional[str]:
        return _NEXT_PROMPT.get(self.session.stage)


class LoginSessionManager:
    def __init__(
        self,
        store: EntityStore,
        settings: Settings,
        *,
        codes: CodeIssuer,
        tokens: TokenService,
        pipeline: ActionExecutor,
        totp: TotpVerifier,
        password_hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codes = codes
        self.tokens = tokens
        self.pipeline = pipeline
        self.totp = totp
        self.password_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.clock = clock

    # -- session lifecycle ----------------------------------------------------

    def start(
        self,
        tenant_id: str,
        auth_params: Union[AuthParams, Mapping[str, Any]],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginSession:
        """Validate an authorize request and open a login session for it."""
        params = (
            auth_params if isinstance(auth_params, AuthParams) else AuthParams.from_dict(dict(auth_params))
        )
        if not params.client_id:
            raise InvalidRequestError("client_id is required")
        client = self.store.clients.get(tenant_id, params.client_id)
        if client is None:
            raise InvalidRequestError("unknown client", detail={"client_id": params.client_id})

        params.response_type = normalize_response_type(params.response_type)
        params.redirect_uri = self._check_redirect_uri(client, params.redirect_uri)
        if params.response_mode and params.response_mode not in RESPONSE_MODES:
            raise InvalidRequestError("unsupported response_mode")
        if params.code_challenge:
            params.code_challenge_method = params.code_challenge_method or "plain"
            if params.code_challenge_method not in PKCE_METHODS:
                raise InvalidRequestError("unsupported code_challenge_method")
        elif params.code_challenge_method:
            raise InvalidRequestError("code_challenge_method given without code_challenge")
        if "id_token" in params.response_type.split() and not params.nonce:
            raise InvalidRequestError("nonce is required for id_token responses")
        if params.audience:
            self.tokens.resolve_user_resource_server(tenant_id, params.audience)

        now = self.clock()
        session = LoginSession(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            client_id=client.client_id,
            auth_params=params,
            expires_at=now + timedelta(seconds=self.settings.login_session_ttl_seconds),
            ip=ip,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )
        created = self.store.login_sessions.create(tenant_id, session)
        logger.info(
            "login_session_created",
            tenant_id=tenant_id,
            login_id=created.id,
            client_id=client.client_id,
            response_type=params.response_type,
        )
        return created

    @staticmethod
    def _check_redirect_uri(client: Client, redirect_uri: Optional[str]) -> Optional[str]:
        if redirect_uri is None:
            return client.callbacks[0] if client.callbacks else None
        if redirect_uri not in client.callbacks:
            raise InvalidRequestError(
                "redirect_uri is not registered for this client",
                detail={"redirect_uri": redirect_uri},
            )
        return redirect_uri

    def get(self, tenant_id: str, login_id: str) -> LoginSession:
        return self._load(tenant_id, login_id)

    def cancel(self, tenant_id: str, login_id: str, reason: str = "cancelled") -> LoginSession:
        session = self._load(tenant_id, login_id)
        if session.stage in TERMINAL_STAGES:
            raise InvalidTransitionError(
                "login session is already finished", detail={"stage": session.stage.value}
            )
        return self._abandon(session, reason)

    def _load(self, tenant_id: str, login_id: str) -> LoginSession:
        session = self.store.login_sessions.get(tenant_id, login_id)
        if session is None:
            raise NotFoundError("login session not found", detail={"login_id": login_id})
        step = session.pipeline_state.step
        if isinstance(step, Abandoned) and step.reason == "expired":
            raise SessionExpiredError("login session expired")
        if session.expires_at <= self.clock():
            if session.stage not in TERMINAL_STAGES:
                self._abandon(session, "expired")
            raise SessionExpiredError("login session expired")
        return session

    def _require(self, session: LoginSession, step_name: str) -> None:
        if session.stage in _STEP_STAGES[step_name]:
            return
        if session.stage is LoginStage.COMPLETED:
            message = "login session is already completed"
        elif session.stage is LoginStage.ABANDONED:
            message = "login session was abandoned"
        else:
            message = f"{step_name} step is not allowed in stage {session.stage.value}"
        raise InvalidTransitionError(
            message, detail={"stage": session.stage.value, "step": step_name}
        )

    def _advance(
        self,
        session: LoginSession,
        step: StageState,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> LoginSession:
        state = PipelineState(
            step=step, attributes={**session.pipeline_state.attributes, **(attributes or {})}
        )
        self.store.login_sessions.update(session.tenant_id, session.id, {"pipeline_state": state})
        logger.info(
            "login_session_transition",
            tenant_id=session.tenant_id,
            login_id=session.id,
            from_stage=session.stage.value,
            to_stage=step.stage.value,
        )
        return dataclasses.replace(session, pipeline_state=state, updated_at=self.clock())

    def _abandon(self, session: LoginSession, reason: str) -> LoginSession:
        return self._advance(session, Abandoned(reason=reason, previous=session.stage))

    # -- steps ------------------------------------------------------------------

    def submit_identifier(
        self,
        tenant_id: str,
        login_id: str,
        username: str,
        *,
        connection: Optional[str] = None,
    ) -> StepOutcome:
        session = self._load(tenant_id, login_id)
        self._require(session, "identifier")
        username = (username or "").strip().lower()
        if not username:
            raise ValidationError("username is required")
        session = self._advance(
            session,
            IdentifierEntered(username=username, connection=connection or DEFAULT_CONNECTION),
        )
        return StepOutcome(session)

    def _find_user(self, tenant_id: str, email: str, connection: str) -> Optional[User]:
        matches = self.store.users.list(
            tenant_id, q=f'email:"{email}" connection:"{connection}"', per_page=1
        ).items
        return matches[0] if matches else None

    def verify_password(self, tenant_id: str, user_id: str, password: str) -> bool:
        record = self.store.passwords.get(tenant_id, user_id)
        if record is None:
            logger.warning("password_record_missing", tenant_id=tenant_id, user_id=user_id)
            return False
        if record.algorithm != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=record.algorithm)
            return False
        try:
            return self.password_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", tenant_id=tenant_id, user_id=user_id)
            return False

    async def submit_password(
        self, tenant_id: str, login_id: str, password: str, *, issuer: Optional[str] = None
    ) -> StepOutcome:
        session = self._load(tenant_id, login_id)
        self._require(session, "password")
        step = session.pipeline_state.step
        user = self._find_user(tenant_id, step.username, step.connection)
        # same error for unknown users and wrong passwords
        if user is None or not self.verify_password(tenant_id, user.user_id, password or ""):
            raise AccessDeniedError("wrong email or password")
        if user.blocked:
            raise AccessDeniedError("user is blocked")

        session = self._advance(
            session, CredentialVerified(user_id=user.user_id, connection=step.connection)
        )
        authenticator = self.store.authenticators.get(tenant_id, user.user_id)
        if authenticator is not None and authenticator.confirmed:
            session = self._advance(
                session, MfaPending(user_id=user.user_id, connection=step.connection)
            )
            return StepOutcome(session)
        return await self._after_authentication(session, user, issuer)

    async def submit_mfa(
        self, tenant_id: str, login_id: str, code: str, *, issuer: Optional[str] = None
    ) -> StepOutcome:
        session = self._load(tenant_id, login_id)
        self._require(session, "mfa")
        step: MfaPending = session.pipeline_state.step
        authenticator = self.store.authenticators.get(tenant_id, step.user_id)
        secret = self.totp.unseal(authenticator.secret) if authenticator else None
        if not secret or not self.totp.verify(secret, code or ""):
            attempts = step.failed_attempts + 1
            if attempts >= MAX_MFA_ATTEMPTS:
                logger.warning("mfa_lockout_triggered", tenant_id=tenant_id, login_id=login_id)
                self._abandon(session, "mfa_attempts_exceeded")
                raise AccessDeniedError("too many invalid codes")
            self._advance(session, dataclasses.replace(step, failed_attempts=attempts))
            raise AccessDeniedError("invalid code", detail={"attempts_remaining": MAX_MFA_ATTEMPTS - attempts})

        user = self.store.users.get(tenant_id, step.user_id)
        if user is None or user.blocked:
            self._abandon(session, "user_unavailable")
            raise AccessDeniedError("user is not allowed to log in")
        session = self._advance(session, MfaVerified(user_id=step.user_id, connection=step.connection))
        return await self._after_authentication(session, user, issuer)

    async def submit_consent(
        self,
        tenant_id: str,
        login_id: str,
        *,
        accept: bool,
        scopes: Optional[Iterable[str]] = None,
        issuer: Optional[str] = None,
    ) -> StepOutcome:
        session = self._load(tenant_id, login_id)
        self._require(session, "consent")
        step: ConsentPending = session.pipeline_state.step
        if not accept:
            self._abandon(session, "consent_denied")
            raise AccessDeniedError("user did not consent")
        granted = step.scopes
        if scopes is not None:
            chosen = set(scopes)
            granted = tuple(s for s in step.scopes if s in chosen)
        user = self.store.users.get(tenant_id, step.user_id)
        if user is None or user.blocked:
            self._abandon(session, "user_unavailable")
            raise AccessDeniedError("user is not allowed to log in")
        return await self._complete(
            session, user, connection=step.connection, granted_scopes=granted, issuer=issuer
        )

    # -- completion -------------------------------------------------------------

    def _consent_required(self, session: LoginSession) -> bool:
        client = self.store.clients.get(session.tenant_id, session.client_id)
        return client is None or not client.is_first_party or "consent" in session.auth_params.prompts()

    async def _after_authentication(
        self, session: LoginSession, user: User, issuer: Optional[str]
    ) -> StepOutcome:
        step = session.pipeline_state.step
        requested = tuple(session.auth_params.scopes())
        if self._consent_required(session):
            session = self._advance(
                session,
                ConsentPending(user_id=user.user_id, connection=step.connection, scopes=requested),
            )
            return StepOutcome(session)
        return await self._complete(
            session, user, connection=step.connection, granted_scopes=requested, issuer=issuer
        )

    def _pipeline_context(self, session: LoginSession, user: User) -> Dict[str, Any]:
        client = self.store.clients.get(session.tenant_id, session.client_id)
        return {
            "tenant_id": session.tenant_id,
            "user": entity_view("users", user),
            "client": {
                "client_id": session.client_id,
                "name": client.name if client else None,
            },
            "login_session": {
                "id": session.id,
                "ip": session.ip,
                "user_agent": session.user_agent,
            },
            "auth_params": dataclasses.asdict(session.auth_params),
        }

    async def _complete(
        self,
        session: LoginSession,
        user: User,
        *,
        connection: str,
        granted_scopes: tuple,
        issuer: Optional[str],
    ) -> StepOutcome:
        tenant_id = session.tenant_id
        try:
            await self.pipeline.run_trigger(
                tenant_id, POST_LOGIN_TRIGGER, self._pipeline_context(session, user)
            )
        except PipelineAbortedError:
            self._abandon(session, "pipeline_aborted")
            raise

        # actions may have changed the user
        user = self.store.users.get(tenant_id, user.user_id)
        if user is None or user.blocked:
            self._abandon(session, "user_unavailable")
            raise AccessDeniedError("user is not allowed to log in")

        params = session.auth_params
        client = self.store.clients.get(tenant_id, session.client_id)
        if client is None:
            self._abandon(session, "client_removed")
            raise AccessDeniedError("client no longer exists")
        response_types = params.response_type.split()
        scope = " ".join(granted_scopes)
        if "id_token" in response_types and "openid" not in granted_scopes:
            scope = " ".join(("openid",) + tuple(granted_scopes))

        try:
            result_params, code_id = self._authorization_response(
                session, user, client, connection=connection, scope=scope, issuer=issuer
            )
        except ServiceError as exc:
            logger.warning(
                "login_session_issuance_failed",
                tenant_id=tenant_id,
                login_id=session.id,
                error_code=exc.error_code,
            )
            self._abandon(session, "issuance_failed")
            raise

        self.store.users.update(
            tenant_id,
            user.user_id,
            {"last_login": self.clock(), "login_count": user.login_count + 1},
        )
        session = self._advance(
            session,
            Completed(
                user_id=user.user_id,
                connection=connection,
                granted_scopes=tuple(scope.split()),
                code_id=code_id,
            ),
        )
        response_mode = params.response_mode or ("query" if response_types == ["code"] else "fragment")
        logger.info(
            "login_session_completed",
            tenant_id=tenant_id,
            login_id=session.id,
            user_id=user.user_id,
            response_type=params.response_type,
        )
        return StepOutcome(
            session,
            AuthorizationResult(
                redirect_uri=params.redirect_uri,
                response_mode=response_mode,
                params=result_params,
            ),
        )

    def _authorization_response(
        self,
        session: LoginSession,
        user: User,
        client: Client,
        *,
        connection: str,
        scope: str,
        issuer: Optional[str],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """Code and/or tokens for the redirect, by response type."""
        tenant_id = session.tenant_id
        params = session.auth_params
        response_types = params.response_type.split()
        result_params: Dict[str, Any] = {}
        code_id = None
        if "code" in response_types:
            code = self.codes.create(
                tenant_id,
                CodeType.AUTHORIZATION_CODE,
                {
                    "user_id": user.user_id,
                    "login_id": session.id,
                    "connection_id": connection,
                    "redirect_uri": params.redirect_uri,
                    "nonce": params.nonce,
                    "state": params.state,
                },
            )
            code_id = code.code_id
            result_params["code"] = code.code_id
        if "token" in response_types or "id_token" in response_types:
            issued = self.tokens.issue_user_tokens(
                tenant_id,
                user=user,
                client=client,
                audience=params.audience,
                scope=scope,
                issuer=issuer,
                organization=params.organization,
                session_id=session.id,
                nonce=params.nonce,
                for_web=True,
                issue_refresh=False,
            )
            if "token" in response_types:
                for name in ("access_token", "token_type", "expires_in", "scope"):
                    result_params[name] = issued[name]
            if "id_token" in response_types and "id_token" in issued:
                result_params["id_token"] = issued["id_token"]
        if params.state is not None:
            result_params["state"] = params.state
        return result_params, code_id
