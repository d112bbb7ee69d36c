from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from authkernel.api.schemas import Envelope, ErrorBody, OAuthError
from authkernel.logging import get_logger
from authkernel.service.errors import PipelineAbortedError, ServiceError
from authkernel.storage.errors import ConstraintViolation, InvalidFilter, StorageUnavailable

logger = get_logger(__name__)

# endpoints answering with RFC 6749 error bodies instead of the envelope
OAUTH_PATHS = frozenset({"/oauth/token", "/oauth/revoke", "/userinfo"})

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "invalid_token",
    403: "access_denied",
    404: "not_found",
    409: "conflict",
    503: "unavailable",
    500: "server_error",
}

_STATUS_TO_OAUTH = {
    400: "invalid_request",
    401: "invalid_client",
    403: "access_denied",
    503: "temporarily_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _oauth_response(status_code: int, error: str, description: str | None) -> JSONResponse:
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{error}"'
    body = OAuthError(error=error, error_description=description)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _is_oauth(request: Request) -> bool:
    return request.url.path in OAUTH_PATHS


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if _is_oauth(request):
            return _oauth_response(409, "invalid_request", exc.message)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(InvalidFilter)
    async def handle_invalid_filter(request: Request, exc: InvalidFilter):
        logger.warning("invalid_filter", path=request.url.path, error=str(exc))
        if _is_oauth(request):
            return _oauth_response(400, "invalid_request", str(exc))
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            message=exc.message,
        )
        if _is_oauth(request):
            return _oauth_response(503, "temporarily_unavailable", "service unavailable")
        return _error_response(503, "service unavailable", code="unavailable")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if _is_oauth(request):
            return _oauth_response(exc.status_code, exc.oauth_error, exc.oauth_description)
        if isinstance(exc, PipelineAbortedError):
            # step ids and causes stay in the logs
            return _error_response(exc.status_code, exc.oauth_description, code=exc.error_code)
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        if _is_oauth(request):
            return _oauth_response(
                exc.status_code, _STATUS_TO_OAUTH.get(exc.status_code, "invalid_request"), message
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if _is_oauth(request):
            return _oauth_response(500, "server_error", "internal server error")
        return _error_response(500, "internal server error", code="server_error")
