from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tenantidp.api.schemas import Envelope, ErrorBody, OAuthErrorBody
from tenantidp.logging import get_logger
from tenantidp.service.errors import ServiceError
from tenantidp.storage.errors import ConstraintViolation, UnknownTenantError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

# RFC 6749 codes used when an envelope-style code reaches a protocol endpoint
_STATUS_TO_OAUTH_CODE = {
    400: "invalid_request",
    401: "invalid_client",
    403: "access_denied",
    404: "invalid_request",
    405: "invalid_request",
    409: "invalid_request",
    429: "rate_limited",
    500: "server_error",
}

_ENVELOPE_ONLY_CODES = frozenset({"validation_error", "unauthorized", "forbidden", "not_found", "conflict"})

_API_PREFIX = "/v1"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _is_protocol_request(request: Request) -> bool:
    """Everything outside the /v1 API speaks the OAuth 2.0 error dialect."""
    return not request.url.path.startswith(_API_PREFIX)


def _www_authenticate(request: Request, error_code: str, message: str) -> str:
    if error_code == "invalid_client" and request.url.path == "/token":
        return 'Basic realm="tenantidp"'
    description = message.replace('"', "'")
    return f'Bearer realm="tenantidp", error="{error_code}", error_description="{description}"'


def _oauth_error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str | None = None,
    *,
    retry_after: int | None = None,
) -> JSONResponse:
    error_code = code or _STATUS_TO_OAUTH_CODE.get(status_code, "server_error")
    if error_code in _ENVELOPE_ONLY_CODES:
        error_code = _STATUS_TO_OAUTH_CODE.get(status_code, "invalid_request")
    body = OAuthErrorBody(error=error_code, error_description=message)
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if status_code == 401:
        headers["WWW-Authenticate"] = _www_authenticate(request, error_code, message)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _envelope_error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    retry_after: int | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    retry_after: int | None = None,
) -> JSONResponse:
    if _is_protocol_request(request):
        return _oauth_error_response(request, status_code, message, code, retry_after=retry_after)
    return _envelope_error_response(status_code, message, details, code, retry_after=retry_after)


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
        return _error_response(request, 409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(UnknownTenantError)
    async def handle_unknown_tenant(request: Request, exc: UnknownTenantError):
        logger.warning(
            "unknown_tenant",
            path=request.url.path,
            method=request.method,
            tenant_id=exc.tenant_id,
        )
        code = "invalid_request" if _is_protocol_request(request) else "validation_error"
        return _error_response(request, 400, "Unknown tenant", code=code)

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
        return _error_response(
            request,
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            retry_after=exc.detail.get("retry_after") if exc.detail else None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=details,
        )
        message = details[0]["msg"] if details else "invalid request"
        return _error_response(request, 400, message, details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail produced by routes._http_error
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        return _error_response(request, exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(request, 500, "internal server error", code="server_error")
