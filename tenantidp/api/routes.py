from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Header, HTTPException, Request, Response

from tenantidp.api.schemas import (
    AuthResponse,
    BootstrapTokenResponse,
    Envelope,
    LoginRequest,
    SessionResponse,
    SignupRequest,
)
from tenantidp.logging import get_logger
from tenantidp.service.errors import MalformedRequestError, RateLimitedError
from tenantidp.service.runtime import Runtime, check_rate_limit, get_runtime
from tenantidp.storage.models import LoginSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
TENANT_COOKIE = "tenant_id"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
    tenant_id: Optional[str] = None,
) -> RateLimitInfo:
    """Enforce a fixed-window limit, optionally adding headers to ``response``.

    Raises:
        RateLimitedError: when the window is exhausted
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True, tenant_id=tenant_id
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )
    return info


def client_ip(request: Request) -> str:
    """Peer address of the connection; forwarded headers are not trusted."""
    return request.client.host if request.client else "unknown"


def resolve_tenant_id(*candidates: Optional[str]) -> Optional[str]:
    """Pick the tenant named by query, header, or cookie; all supplied values must agree."""
    supplied = {value.strip() for value in candidates if value and value.strip()}
    if len(supplied) > 1:
        raise MalformedRequestError("Conflicting tenant_id values in request")
    return supplied.pop() if supplied else None


def apply_session_cookies(response: Response, session: LoginSession, *, secure: bool) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    for name, value in ((SESSION_COOKIE, session.id), (TENANT_COOKIE, session.tenant_id)):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=secure,
            samesite="lax",
            expires=expires_at,
            path="/",
        )


def clear_session_cookies(response: Response, *, secure: bool) -> None:
    for name in (SESSION_COOKIE, TENANT_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, samesite="lax")


def _require_tenant(runtime: Runtime, header_tenant: Optional[str], cookie_tenant: Optional[str]) -> str:
    tenant_id = resolve_tenant_id(header_tenant, cookie_tenant)
    if not tenant_id:
        raise _http_error("validation_error", "X-Tenant-ID header is required", status_code=400)
    if not runtime.router.has_tenant(tenant_id):
        raise _http_error("validation_error", "Unknown tenant", status_code=400)
    return tenant_id


async def _require_session(
    runtime: Runtime, tenant_id: str, session_id: Optional[str]
) -> LoginSession:
    session = await runtime.auth.resolve_session(tenant_id, session_id)
    if session is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return session


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    response: Response,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
):
    """Create a user in the tenant named by ``X-Tenant-ID`` and open a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered in this tenant
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    tenant_id = _require_tenant(runtime, x_tenant_id, tenant_cookie)
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
        tenant_id=tenant_id,
    )
    user, session = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        tenant_id=tenant_id,
        handle=body.handle,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    apply_session_cookies(response, session, secure=runtime.settings.session_cookie_secure)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
            tenant_id=tenant_id,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
):
    """Authenticate with email and password inside one tenant.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    tenant_id = _require_tenant(runtime, x_tenant_id, tenant_cookie)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
        tenant_id=tenant_id,
    )
    user, session = await runtime.auth.login(body.email, body.password, tenant_id=tenant_id)
    if not user or not session:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    apply_session_cookies(response, session, secure=runtime.settings.session_cookie_secure)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
            tenant_id=tenant_id,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    tenant_id = _require_tenant(runtime, x_tenant_id, tenant_cookie)
    session_id = session_header or session_cookie
    if session_id:
        session = await _require_session(runtime, tenant_id, session_id)
        await runtime.auth.logout(tenant_id, session.id)
    clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    tenant_id = _require_tenant(runtime, x_tenant_id, tenant_cookie)
    session = await _require_session(runtime, tenant_id, session_header or session_cookie)
    user = runtime.router.store_for(tenant_id).get_user(session.user_id)
    if user is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=user.id,
            tenant_id=tenant_id,
            email=user.email,
            session_expires_at=session.expires_at,
        ),
    )


@router.post("/auth/bootstrap-token", response_model=Envelope, status_code=201, tags=["auth"])
async def bootstrap_token(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    """Mint a single-use token that an API client can hand to ``/authorize``.

    Used by frontends that hold a session outside the browser cookie jar of the
    identity provider, e.g. after the passwordless handoff.
    """
    runtime = get_runtime()
    tenant_id = _require_tenant(runtime, x_tenant_id, tenant_cookie)
    session = await _require_session(runtime, tenant_id, session_header or session_cookie)
    token = await runtime.auth.issue_bootstrap_token(session)
    return Envelope(
        status="ok",
        data=BootstrapTokenResponse(
            bootstrap_token=token,
            expires_in=runtime.settings.bootstrap_token_ttl_seconds,
            tenant_id=tenant_id,
        ),
    )
