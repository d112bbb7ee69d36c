from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeNotFoundError,
    InvalidGrantError,
    ValidationError,
)
from authkernel.storage.common import ConsumeStatus, EntityStore
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Code, CodeType, utcnow

logger = get_logger(__name__)

PKCE_METHODS = ("S256", "plain")

_PAYLOAD_FIELDS = (
    "user_id",
    "login_id",
    "connection_id",
    "code_challenge",
    "code_challenge_method",
    "code_verifier",
    "redirect_uri",
    "nonce",
    "state",
)

_MAX_ID_ATTEMPTS = 3


def s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code: Code, code_verifier: Optional[str]) -> None:
    """Check ``code_verifier`` against the challenge bound to ``code``.

    Raises:
        InvalidGrantError: verifier missing or mismatched, or unknown method.
    """
    if not code.code_challenge:
        return
    if not code_verifier:
        raise InvalidGrantError("code_verifier is required")
    method = code.code_challenge_method or "plain"
    if method == "S256":
        try:
            computed = s256_challenge(code_verifier)
        except UnicodeEncodeError as exc:
            raise InvalidGrantError("invalid code_verifier") from exc
    elif method == "plain":
        computed = code_verifier
    else:
        raise InvalidGrantError(f"unsupported code_challenge_method {method}")
    if not hmac.compare_digest(computed.encode(), code.code_challenge.encode()):
        raise InvalidGrantError("invalid code_verifier")


class CodeIssuer:
    """Creates and atomically consumes single-use codes."""

    def __init__(self, store: EntityStore, settings: Settings):
        self.store = store
        self.settings = settings

    def ttl_for(self, code_type: CodeType, requested: Optional[int] = None) -> int:
        code_type = CodeType(code_type)
        defaults = {
            CodeType.AUTHORIZATION_CODE: self.settings.authorization_code_ttl_seconds,
            CodeType.EMAIL_VERIFICATION: self.settings.email_verification_ttl_seconds,
            CodeType.PASSWORD_RESET: self.settings.password_reset_ttl_seconds,
            CodeType.INVITE: self.settings.invite_ttl_seconds,
            CodeType.OTP: self.settings.otp_ttl_seconds,
        }
        if code_type is CodeType.INVITE and requested:
            return max(1, min(int(requested), self.settings.invite_max_ttl_seconds))
        return defaults[code_type]

    def _session_challenge(self, tenant_id: str, login_id: Optional[str]) -> dict:
        if not login_id:
            return {}
        session = self.store.login_sessions.get(tenant_id, login_id)
        if session is None or not session.auth_params.code_challenge:
            return {}
        return {
            "code_challenge": session.auth_params.code_challenge,
            "code_challenge_method": session.auth_params.code_challenge_method or "plain",
            "redirect_uri": session.auth_params.redirect_uri,
            "nonce": session.auth_params.nonce,
        }

    def create(
        self,
        tenant_id: str,
        code_type: CodeType,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Code:
        code_type = CodeType(code_type)
        payload = dict(payload or {})
        unknown = set(payload) - set(_PAYLOAD_FIELDS)
        if unknown:
            raise ValidationError(
                "unsupported code payload fields", detail={"fields": sorted(unknown)}
            )
        if not payload.get("code_challenge"):
            for name, value in self._session_challenge(tenant_id, payload.get("login_id")).items():
                if payload.get(name) is None:
                    payload[name] = value
        method = payload.get("code_challenge_method")
        if payload.get("code_challenge") and method and method not in PKCE_METHODS:
            raise ValidationError("unsupported code_challenge_method", detail={"method": method})

        created_at = now or utcnow()
        expires_at = created_at + timedelta(seconds=self.ttl_for(code_type, ttl_seconds))
        for attempt in range(_MAX_ID_ATTEMPTS):
            code = Code(
                code_id=secrets.token_urlsafe(32),
                code_type=code_type,
                tenant_id=tenant_id,
                expires_at=expires_at,
                created_at=created_at,
                **payload,
            )
            try:
                stored = self.store.codes.create(tenant_id, code)
            except ConstraintViolation:
                logger.warning("code_id_collision", tenant_id=tenant_id, attempt=attempt)
                continue
            logger.info(
                "code_created",
                tenant_id=tenant_id,
                code_type=code_type.value,
                login_id=stored.login_id,
                expires_at=stored.expires_at.isoformat(),
            )
            return stored
        raise ValidationError("could not allocate a unique code id")

    def get(self, tenant_id: str, code_id: str, code_type: CodeType) -> Optional[Code]:
        return self.store.codes.get(tenant_id, (code_id, CodeType(code_type)))

    def consume(
        self,
        tenant_id: str,
        code_id: str,
        code_type: CodeType,
        *,
        code_verifier: Optional[str] = None,
        check_pkce: bool = False,
        now: Optional[datetime] = None,
    ) -> Code:
        """Consume a code exactly once.

        With ``check_pkce`` the verifier is checked against the stored challenge
        before the conditional write; a wrong verifier leaves the code usable.
        """
        code_type = CodeType(code_type)
        now = now or utcnow()
        if check_pkce:
            existing = self.get(tenant_id, code_id, code_type)
            if existing is None:
                raise CodeNotFoundError("code not found")
            if not existing.code_challenge and existing.login_id:
                # older codes may predate the copied challenge
                fallback = self._session_challenge(tenant_id, existing.login_id)
                existing.code_challenge = fallback.get("code_challenge")
                existing.code_challenge_method = fallback.get("code_challenge_method")
            verify_pkce(existing, code_verifier)

        result = self.store.codes.consume(tenant_id, code_id, code_type.value, now)
        if result.status is ConsumeStatus.CONSUMED:
            logger.info("code_consumed", tenant_id=tenant_id, code_type=code_type.value)
            return result.code
        logger.warning(
            "code_consume_rejected",
            tenant_id=tenant_id,
            code_type=code_type.value,
            status=result.status.value,
        )
        if result.status is ConsumeStatus.EXPIRED:
            raise CodeExpiredError("code expired")
        if result.status is ConsumeStatus.ALREADY_USED:
            raise CodeAlreadyUsedError("code already used")
        raise CodeNotFoundError("code not found")
