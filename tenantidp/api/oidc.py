from __future__ import annotations

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote_plus

from fastapi import APIRouter, Cookie, Form, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from tenantidp.api.pages import login_page
from tenantidp.api.routes import (
    SESSION_COOKIE,
    TENANT_COOKIE,
    _enforce_rate_limit,
    apply_session_cookies,
    client_ip,
    resolve_tenant_id,
)
from tenantidp.logging import get_logger
from tenantidp.service.clients import BAD_SECRET_MESSAGE
from tenantidp.service.errors import ClientAuthError, MalformedRequestError, ServiceError
from tenantidp.service.oidc import append_query
from tenantidp.service.runtime import get_runtime
from tenantidp.storage.errors import UnknownTenantError

logger = get_logger(__name__)

router = APIRouter(tags=["oidc"])

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
_GENERIC_LOGIN_ERROR = "We could not sign you in with those details."

# Checked after the rate limit so oversized requests still count against it
_TOKEN_FIELD_LIMITS = {
    "grant_type": 64,
    "code": 4096,
    "redirect_uri": 2048,
    "client_id": 256,
    "client_secret": 512,
}


def _parse_basic_credentials(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode ``client_secret_basic`` credentials.

    Returns None when no Basic header is present; raises on a malformed one.
    """
    if not authorization:
        return None
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise ClientAuthError(BAD_SECRET_MESSAGE) from None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep or not client_id:
        raise ClientAuthError(BAD_SECRET_MESSAGE)
    # RFC 6749 section 2.3.1: both parts are form-urlencoded before encoding
    return unquote_plus(client_id), unquote_plus(client_secret)


@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(
        runtime.oidc.discovery_document(),
        headers={"Cache-Control": "public, max-age=3600"},
    )


@router.get("/jwks")
async def jwks():
    runtime = get_runtime()
    return JSONResponse(runtime.oidc.jwks(), headers={"Cache-Control": "public, max-age=3600"})


@router.get("/authorize")
async def authorize(
    client_id: Optional[str] = Query(None, max_length=256),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    response_type: Optional[str] = Query(None, max_length=64),
    scope: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=512),
    nonce: Optional[str] = Query(None, max_length=512),
    tenant_id: Optional[str] = Query(None, max_length=64),
    bootstrap_token: Optional[str] = Query(None, max_length=256),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    tenant_cookie: Optional[str] = Cookie(None, alias=TENANT_COOKIE),
):
    """Authorization endpoint; answers with a redirect to the client or to /login."""
    runtime = get_runtime()
    outcome = await runtime.oidc.authorize(
        tenant_id=resolve_tenant_id(tenant_id, x_tenant_id, tenant_cookie),
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        nonce=nonce,
        session_id=session_header or session_cookie,
        bootstrap_token=bootstrap_token,
    )
    return RedirectResponse(outcome.location, status_code=302, headers=_NO_STORE)


@router.post("/token")
async def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    authorization: Optional[str] = Header(None),
):
    """Authorization code exchange."""
    runtime = get_runtime()
    basic_error: Optional[ServiceError] = None
    try:
        basic = _parse_basic_credentials(authorization)
    except ClientAuthError as exc:
        basic, basic_error = None, exc

    if basic is not None:
        basic_id, basic_secret = basic
        if client_id and client_id != basic_id:
            basic_error = ClientAuthError(BAD_SECRET_MESSAGE)
        if client_secret and basic_secret:
            basic_error = basic_error or MalformedRequestError(
                "client credentials supplied by more than one method"
            )
        client_id = client_id or basic_id
        client_secret = client_secret or basic_secret

    rate_client = (client_id or "anonymous")[: _TOKEN_FIELD_LIMITS["client_id"]]
    await _enforce_rate_limit(
        runtime,
        f"token:{rate_client}:{client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
        runtime.settings.token_rate_limit_window_seconds,
    )
    if basic_error is not None:
        raise basic_error
    fields = {
        "grant_type": grant_type,
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    for name, value in fields.items():
        if value and len(value) > _TOKEN_FIELD_LIMITS[name]:
            raise MalformedRequestError(f"{name} is too long")

    tokens = await runtime.oidc.exchange_code(
        grant_type=grant_type,
        code=code,
        redirect_uri=redirect_uri,
        client_id=client_id,
        client_secret=client_secret,
    )
    return JSONResponse(tokens, headers=_NO_STORE)


@router.get("/userinfo")
async def userinfo(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    return JSONResponse(runtime.oidc.userinfo(authorization), headers=_NO_STORE)


def _client_name(runtime, tenant_id: Optional[str], client_id: str) -> str:
    if not tenant_id or not runtime.router.has_tenant(tenant_id):
        return ""
    for client in runtime.router.config_for(tenant_id).clients:
        if client.client_id == client_id:
            return client.name or ""
    return ""


@router.get("/login", response_class=HTMLResponse)
async def login_form(
    client_id: str = Query(..., max_length=256),
    redirect_uri: str = Query(..., max_length=2048),
    response_type: str = Query("code", max_length=64),
    scope: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=512),
    nonce: Optional[str] = Query(None, max_length=512),
    tenant_id: Optional[str] = Query(None, max_length=64),
):
    runtime = get_runtime()
    html = login_page(
        action=runtime.oidc.endpoint("/login"),
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope or runtime.settings.default_scope,
        tenant_id=tenant_id,
        state=state,
        nonce=nonce,
        client_name=_client_name(runtime, tenant_id, client_id),
    )
    return HTMLResponse(html, headers=_NO_STORE)


@router.post("/login")
async def login_submit(
    request: Request,
    email: str = Form(..., max_length=254),
    password: Optional[str] = Form(None, max_length=128),
    client_id: str = Form(..., max_length=256),
    redirect_uri: str = Form(..., max_length=2048),
    response_type: str = Form("code", max_length=64),
    scope: Optional[str] = Form(None, max_length=512),
    state: Optional[str] = Form(None, max_length=512),
    nonce: Optional[str] = Form(None, max_length=512),
    tenant_id: Optional[str] = Form(None, max_length=64),
):
    """Interactive login that resumes the authorization request it was started from."""
    runtime = get_runtime()
    scope = scope or runtime.settings.default_scope
    email = email.strip().lower()

    def _render_error(message: str, status_code: int = 401) -> HTMLResponse:
        html = login_page(
            action=runtime.oidc.endpoint("/login"),
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            tenant_id=tenant_id,
            state=state,
            nonce=nonce,
            client_name=_client_name(runtime, tenant_id, client_id),
            email=email,
            error=message,
        )
        return HTMLResponse(html, status_code=status_code, headers=_NO_STORE)

    await _enforce_rate_limit(
        runtime,
        f"login:{email}:{client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )

    if tenant_id:
        if not runtime.router.has_tenant(tenant_id):
            raise UnknownTenantError(tenant_id)
        resolved_tenant = tenant_id
    else:
        found = runtime.users.find_by_email_across_tenants(email)
        if found is None:
            return _render_error(_GENERIC_LOGIN_ERROR)
        resolved_tenant = found[1]

    authorize_params = {
        "tenant_id": resolved_tenant,
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": response_type,
        "scope": scope,
    }
    if state:
        authorize_params["state"] = state
    if nonce:
        authorize_params["nonce"] = nonce
    return_url = append_query(runtime.oidc.endpoint("/authorize"), authorize_params)

    if not password:
        frontend_login_url = runtime.router.config_for(resolved_tenant).frontend_login_url
        if not frontend_login_url:
            return _render_error("Password is required.", status_code=400)
        handoff = append_query(
            frontend_login_url,
            {
                "oidc_flow": "true",
                "oidc_return_url": return_url,
                "oidc_tenant_id": resolved_tenant,
            },
        )
        logger.info("oidc_login_handoff", tenant_id=resolved_tenant, client_id=client_id)
        return RedirectResponse(handoff, status_code=302, headers=_NO_STORE)

    user, session = await runtime.auth.login(email, password, tenant_id=resolved_tenant)
    if not user or not session:
        return _render_error(_GENERIC_LOGIN_ERROR)
    response = RedirectResponse(return_url, status_code=302, headers=_NO_STORE)
    apply_session_cookies(response, session, secure=runtime.settings.session_cookie_secure)
    return response
