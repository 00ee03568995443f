from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from edenauth.api.schemas import (
    MAX_TOKEN_LENGTH,
    AuthResponse,
    Envelope,
    LogoutResponse,
    SigninRequest,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
)
from edenauth.logging import get_logger
from edenauth.service.auth import AuthContext
from edenauth.service.errors import RateLimitedError, UserNotFoundError
from edenauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int
) -> None:
    decision = await runtime.rate_limiter.check(key, limit, window_seconds)
    if not decision.allowed:
        logger.warning("rate_limited", key=key, retry_after=decision.retry_after_seconds)
        raise RateLimitedError(retry_after_seconds=decision.retry_after_seconds)


def _set_cookie(response: Response, name: str, value: str, *, max_age: int, secure: bool) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _clear_cookie(response: Response, name: str, *, secure: bool) -> None:
    response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


async def get_user(
    request: Request,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the caller's identity from the access cookie or a bearer header."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(access_token or _extract_bearer(authorization))
    request.state.identity = ctx
    return ctx


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest, request: Request):
    """Create a customer account.

    Raises:
        409: If the email is already registered
        429: If too many signups came from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.signup_rate_limit,
        runtime.settings.signup_rate_window_seconds,
    )
    user = await runtime.auth.sign_up(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=AuthResponse(user=UserResponse.from_user(user)))


@router.post("/signin", response_model=Envelope)
async def signin(body: SigninRequest, request: Request, response: Response):
    """Authenticate with email and password and set both auth cookies.

    Raises:
        401: If the credentials are invalid
        423: If the account is locked after repeated failures
        429: If too many attempts came from this client
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"signin:{client_ip}",
        runtime.settings.signin_rate_limit,
        runtime.settings.signin_rate_window_seconds,
    )
    result = await runtime.auth.sign_in(
        email=body.email,
        password=body.password,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip,
    )
    secure = runtime.settings.is_production
    _set_cookie(
        response,
        ACCESS_COOKIE,
        result.access_token,
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        secure=secure,
    )
    _set_cookie(
        response,
        REFRESH_COOKIE,
        result.refresh_token,
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        secure=secure,
    )
    return Envelope(status="ok", data=AuthResponse(user=UserResponse.from_user(result.user)))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Mint a new access token from a live refresh session.

    The refresh token itself is left unchanged.
    """
    runtime = get_runtime()
    token = refresh_token or (body.refresh_token if body else None)
    result = await runtime.auth.refresh_access_token(token)
    _set_cookie(
        response,
        ACCESS_COOKIE,
        result.access_token,
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        secure=runtime.settings.is_production,
    )
    return Envelope(status="ok", data=AuthResponse(user=UserResponse.from_user(result.user)))


async def _lenient_body_token(request: Request) -> Optional[str]:
    """Refresh token from a JSON body, ignoring bodies that do not parse."""
    try:
        data = await request.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("refresh_token")
    if not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
        return None
    return token


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """End the session and clear both auth cookies.

    The body is read without validation so that a malformed request still
    logs the caller out.
    """
    runtime = get_runtime()
    token = refresh_token or await _lenient_body_token(request)
    await runtime.auth.logout(token)
    secure = runtime.settings.is_production
    _clear_cookie(response, ACCESS_COOKIE, secure=secure)
    _clear_cookie(response, REFRESH_COOKIE, secure=secure)
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user)):
    """Return the signed-in customer's profile."""
    runtime = get_runtime()
    user = await runtime.auth.get_user_by_id(principal.user_id)
    if not user:
        raise UserNotFoundError()
    return Envelope(status="ok", data=UserResponse.from_user(user))
