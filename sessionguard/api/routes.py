from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Request, Response

from sessionguard.api.schemas import (
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    StatusResponse,
    TokenResponse,
)
from sessionguard.service.errors import InvalidCredentialsError, InvalidRequestError
from sessionguard.service.rotation import IssuedTokens
from sessionguard.service.runtime import get_runtime

router = APIRouter(prefix="/auth", tags=["auth"])

API_VERSION = "1"
REFRESH_COOKIE = "refresh_token"
# Refresh cookie is only ever sent back to the auth endpoints
_COOKIE_PATH = "/auth"
_MAX_AGENT_LENGTH = 500


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    client_ip = request.client.host if request.client else None
    agent = request.headers.get("user-agent")
    return client_ip, agent[:_MAX_AGENT_LENGTH] if agent else None


def _apply_refresh_cookie(response: Response, tokens: IssuedTokens) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        REFRESH_COOKIE,
        path=_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _token_response(response: Response, tokens: IssuedTokens) -> TokenResponse:
    _apply_refresh_cookie(response, tokens)
    response.headers["Cache-Control"] = "no-store"
    return TokenResponse(**tokens.as_response())


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a new refresh chain."""
    runtime = get_runtime()
    client_ip, client_agent = _client_meta(request)
    try:
        user = runtime.credentials.authenticate(body.email, body.password)
    except InvalidCredentialsError:
        runtime.monitor.login_failed(client_ip=client_ip, reason="invalid_credentials")
        raise
    tokens = await runtime.authority.issue(
        user.id, client_ip=client_ip, client_agent=client_agent
    )
    runtime.monitor.login_succeeded(user.id, client_ip=client_ip)
    return _token_response(response, tokens)


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in."""
    runtime = get_runtime()
    if not runtime.settings.register_enabled:
        raise InvalidRequestError("registration is disabled", status_code=403, error_code="forbidden")
    client_ip, client_agent = _client_meta(request)
    user = runtime.credentials.register(body.email, body.password)
    tokens = await runtime.authority.issue(
        user.id, client_ip=client_ip, client_agent=client_agent
    )
    return _token_response(response, tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate a refresh token.

    The body wins over the cookie when both are present. Every rejection of
    the presented token answers ``invalid_token`` regardless of cause.
    """
    runtime = get_runtime()
    secret = (body.refresh_token if body else None) or refresh_cookie
    client_ip, client_agent = _client_meta(request)
    tokens = await runtime.authority.refresh(
        secret, client_ip=client_ip, client_agent=client_agent
    )
    return _token_response(response, tokens)


@router.post("/logout", status_code=204, response_class=Response)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    secret = (body.refresh_token if body else None) or refresh_cookie
    access_token = body.access_token if body else None
    await runtime.authority.logout(secret, access_token)
    _clear_refresh_cookie(response)
    return None


@router.get("/status", response_model=StatusResponse)
async def status():
    runtime = get_runtime()
    methods = ["password", "refresh_token"]
    if runtime.settings.register_enabled:
        methods.append("register")
    return StatusResponse(auth_methods=methods, api_version=API_VERSION)
