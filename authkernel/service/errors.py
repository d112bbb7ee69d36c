from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, a stable ``error_code``
    for the management envelope and an ``oauth_error`` used by the OAuth
    endpoints (``/oauth/token``, ``/userinfo``):

    - validation_error / invalid_request (400)
    - invalid_client, invalid_token (401)
    - invalid_grant, code_expired, already_used, code_not_found (400)
    - invalid_target, unsupported_grant_type (400)
    - access_denied, unauthorized_client, pipeline_aborted (403)
    - not_found (404)
    - conflict, invalid_state (409)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    oauth_error: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def oauth_description(self) -> str:
        return self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidRequestError(ValidationError):
    """Malformed protocol parameters (400)."""
    error_code = "invalid_request"


class InvalidClientError(ServiceError):
    """Client authentication failed (401)."""
    status_code = 401
    error_code = "invalid_client"
    oauth_error = "invalid_client"


class InvalidGrantError(ServiceError):
    """Grant, code, verifier or refresh token rejected (400)."""
    status_code = 400
    error_code = "invalid_grant"
    oauth_error = "invalid_grant"


class CodeExpiredError(InvalidGrantError):
    error_code = "code_expired"


class CodeAlreadyUsedError(InvalidGrantError):
    error_code = "already_used"


class CodeNotFoundError(InvalidGrantError):
    error_code = "code_not_found"


class UnauthorizedClientError(ServiceError):
    """Client is not allowed to use the requested grant (403)."""
    status_code = 403
    error_code = "unauthorized_client"
    oauth_error = "unauthorized_client"


class InvalidTokenError(ServiceError):
    """Bearer token missing, malformed, expired or badly signed (401)."""
    status_code = 401
    error_code = "invalid_token"
    oauth_error = "invalid_token"


class UnsupportedGrantTypeError(ServiceError):
    status_code = 400
    error_code = "unsupported_grant_type"
    oauth_error = "unsupported_grant_type"


class InvalidTargetError(ServiceError):
    """Requested audience is not a known resource server (400)."""
    status_code = 400
    error_code = "invalid_target"
    oauth_error = "invalid_target"


class AccessDeniedError(ServiceError):
    """Access denied - no grant or membership allows the request (403)."""
    status_code = 403
    error_code = "access_denied"
    oauth_error = "access_denied"


class SessionExpiredError(ServiceError):
    """Login session has expired (401)."""
    status_code = 401
    error_code = "session_expired"
    oauth_error = "login_required"


class InvalidTransitionError(ServiceError):
    """Step submitted in a login stage that does not allow it (409)."""
    status_code = 409
    error_code = "invalid_state"


class PipelineAbortedError(ServiceError):
    """An action step failed without ``allow_failure`` (403).

    ``step_id`` and ``cause`` are kept for logs and the caller; the HTTP layer
    renders only a generic authentication failure.
    """

    status_code = 403
    error_code = "pipeline_aborted"
    oauth_error = "access_denied"

    def __init__(self, step_id: str, cause: str, **kwargs) -> None:
        super().__init__(f"action step {step_id} failed: {cause}", **kwargs)
        self.step_id = step_id
        self.cause = cause

    @property
    def oauth_description(self) -> str:
        return "authentication failed"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UnavailableError(ServiceError):
    """Backing store unreachable; the request failed without partial writes (503)."""
    status_code = 503
    error_code = "unavailable"
    oauth_error = "temporarily_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidRequestError",
    "InvalidClientError",
    "InvalidGrantError",
    "CodeExpiredError",
    "CodeAlreadyUsedError",
    "CodeNotFoundError",
    "UnauthorizedClientError",
    "InvalidTokenError",
    "UnsupportedGrantTypeError",
    "InvalidTargetError",
    "AccessDeniedError",
    "SessionExpiredError",
    "InvalidTransitionError",
    "PipelineAbortedError",
    "NotFoundError",
    "ConflictError",
    "UnavailableError",
]
