from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from gatehouse.api.schemas import (
    SORTABLE_POST_COLUMNS,
    SORTABLE_USER_COLUMNS,
    AuthResponse,
    Envelope,
    LoginRequest,
    PageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    PostCreateRequest,
    PostResponse,
    PostUpdateRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
    UserUpdateRequest,
    parse_sort,
)
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthContext, AuthResult, Credentials, RegistrationData
from gatehouse.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from gatehouse.service.rate_limit import RateLimitResult
from gatehouse.service.runtime import Runtime, get_runtime
from gatehouse.storage.models import QueryOptions, SortField

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> Optional[str]:
    """Client address for throttling and session metadata.

    Forwarding headers are only believed when the socket peer is a trusted
    proxy. ``X-Forwarded-For`` is then walked right to left and the first hop
    that is not itself a trusted proxy wins.
    """
    peer = request.client.host if request.client else None
    trusted = set(trusted_proxies)
    if peer is None or peer not in trusted:
        return peer
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if hop not in trusted:
                return hop
        if hops:
            return hops[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitResult:
    """Count a hit against ``key`` and raise 429 once ``limit`` is exceeded."""
    result = await runtime.rate_limiter.hit(key, limit, window_seconds)
    if response is not None:
        for name, value in result.headers().items():
            response.headers[name] = value
    if not result.allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError(
            "Too many requests, please try again later", retry_after=result.retry_after
        )
    return result


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Access token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Access token required")
    return token.strip()


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


def _query_options(
    page: int, limit: int, search: Optional[str], sort: Optional[str], allowed: frozenset
) -> QueryOptions:
    try:
        pairs = parse_sort(sort, allowed)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "sort"}) from exc
    return QueryOptions(
        page=page,
        limit=limit,
        search=search.strip() if search and search.strip() else None,
        sort_by=[SortField(column=column, order=order) for column, order in pairs],
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse(**asdict(result.user)),
        token=result.token,
        session_id=result.session_id,
        expires_in=result.expires_in,
    )


# ---------------------------------------------------------------------------
# Auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and open its first session.

    Raises:
        409: If the email is already registered
        429: If this address has registered too often
    """
    runtime = get_runtime()
    ip_address = client_ip(request, runtime.settings.trusted_proxies)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip_address or 'unknown'}",
        runtime.settings.register_rate_limit_max,
        runtime.settings.register_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        RegistrationData(name=body.name, email=body.email, password=body.password),
        ip_address=ip_address,
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are invalid
        429: If the email or client address is locked out
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        Credentials(email=body.email, password=body.password),
        ip_address=client_ip(request, runtime.settings.trusted_proxies),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    result = await runtime.auth.refresh_session(principal.session_id)
    return Envelope(
        status="ok",
        data=TokenResponse(
            token=result.token, session_id=result.session_id, expires_in=result.expires_in
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse(**asdict(user)))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    records = await runtime.auth.get_all_user_sessions(
        principal.user_id, principal.session_id
    )
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[SessionResponse.from_record(r) for r in records]),
    )


@router.get("/auth/sessions/current", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    record = await runtime.auth.get_current_session(principal.session_id, principal.user_id)
    return Envelope(status="ok", data=SessionResponse.from_record(record))


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_other_sessions(
        principal.session_id, principal.user_id
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(session_id, principal.user_id)
    return Envelope(status="ok", data={"message": "Session revoked"})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Mail a reset link if the address is registered.

    The response is identical either way so callers cannot probe for accounts.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.password_reset_rate_limit_max,
        runtime.settings.password_reset_rate_limit_window_seconds,
    )
    token = await runtime.auth.create_password_reset_token(body.email)
    if token:
        await asyncio.to_thread(
            runtime.email.send_password_reset,
            body.email,
            token,
            runtime.settings.password_reset_ttl_seconds,
        )
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=client_ip(request, runtime.settings.trusted_proxies),
    )
    return Envelope(status="ok", data={"status": "password_reset"})


# ---------------------------------------------------------------------------
# Users


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort: Optional[str] = Query(None, max_length=200),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    options = _query_options(page, limit, search, sort, SORTABLE_USER_COLUMNS)
    payload = await runtime.users.get_all_users(options)
    return Envelope(status="ok", data=PageResponse(**payload))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.users.find_by_id(user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=UserResponse(**user))


@router.get("/users/{user_id}/posts", response_model=Envelope, tags=["posts"])
async def list_user_posts(
    user_id: str = Path(..., min_length=1, max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Optional[str] = Query(None, max_length=200),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    options = _query_options(page, limit, None, sort, SORTABLE_POST_COLUMNS)
    payload = await runtime.posts.get_posts_by_user(user_id, options)
    return Envelope(status="ok", data=PageResponse(**payload))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(body: UserUpdateRequest, principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    if body.name is None and body.email is None:
        raise ValidationError("nothing to update")
    user = await runtime.users.update_user(
        principal.user_id, name=body.name, email=body.email
    )
    return Envelope(status="ok", data=UserResponse(**user))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    deleted = await runtime.users.delete_user(principal.user_id)
    if not deleted:
        raise NotFoundError("user not found")
    revoked = await runtime.auth.invalidate_all_user_sessions(principal.user_id)
    return Envelope(status="ok", data={"deleted": True, "sessions_revoked": revoked})


# ---------------------------------------------------------------------------
# Posts


@router.get("/posts", response_model=Envelope, tags=["posts"])
async def list_posts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort: Optional[str] = Query(None, max_length=200),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    options = _query_options(page, limit, search, sort, SORTABLE_POST_COLUMNS)
    payload = await runtime.posts.get_all_posts(options)
    return Envelope(status="ok", data=PageResponse(**payload))


@router.post("/posts", response_model=Envelope, status_code=201, tags=["posts"])
async def create_post(body: PostCreateRequest, principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    post = await runtime.posts.create_post(principal.user_id, body.title, body.content)
    return Envelope(status="ok", data=PostResponse(**post))


@router.get("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def get_post(
    post_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    post = await runtime.posts.find_by_id(post_id)
    if not post:
        raise NotFoundError("post not found")
    return Envelope(status="ok", data=PostResponse(**post))


@router.patch("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def update_post(
    body: PostUpdateRequest,
    post_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    if body.title is None and body.content is None:
        raise ValidationError("nothing to update")
    post = await runtime.posts.update_post(
        post_id, principal.user_id, title=body.title, content=body.content
    )
    return Envelope(status="ok", data=PostResponse(**post))


@router.delete("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def delete_post(
    post_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.posts.delete_post(post_id, principal.user_id)
    return Envelope(status="ok", data={"deleted": True})
