from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from throttlecove.api.deps import optional_auth, require_auth, require_roles, require_token
from throttlecove.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    SessionInfoResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
    WhoAmIResponse,
)
from throttlecove.logging import get_logger
from throttlecove.service.auth import AuthContext, RequestContext
from throttlecove.service.runtime import check_rate_limit, get_runtime
from throttlecove.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_USER_AGENT_LENGTH = 512


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
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token from ``key``'s bucket; 429 when it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("auth_rate_limited", key=key, retry_after=reset_seconds)
        raise _http_error(
            "rate_limited",
            "too many authentication attempts, try again later",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


def _request_context(request: Request) -> RequestContext:
    user_agent = request.headers.get("user-agent")
    return RequestContext(
        ip_addr=request.client.host if request.client else None,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
    )


async def _enforce_auth_rate_limit(
    runtime, action: str, context: RequestContext, identifier: str, response: Response
) -> None:
    await _enforce_rate_limit(
        runtime,
        f"auth:{action}:{context.ip_addr or 'unknown'}:{identifier.lower()}",
        runtime.settings.auth_rate_limit_attempts,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and its first session.

    Raises:
        400: duplicate_user when the username or email is taken
        429: too many attempts from this client
    """
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_auth_rate_limit(runtime, "register", context, body.username, response)
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        body.full_name,
        context=context,
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with a username or email address and a password.

    Raises:
        401: invalid_credentials, without saying which part was wrong
        423: account_locked after too many consecutive failures
        429: too many attempts from this client
    """
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_auth_rate_limit(runtime, "login", context, body.username, response)
    result = await runtime.auth.login(body.username, body.password, context=context)
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(require_token)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, context=_request_context(request))
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_current_session(principal: AuthContext = Depends(require_auth)):
    """Return the caller's user record and the session their token is bound to."""
    runtime = get_runtime()
    user, session = await runtime.auth.get_session_identity(principal.session_id)
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            user=UserResponse.from_user(user),
            session=SessionResponse.from_session(session, current_id=principal.session_id),
        ),
    )


@router.get("/auth/whoami", response_model=Envelope, tags=["auth"])
async def whoami(principal: Optional[AuthContext] = Depends(optional_auth)):
    if principal is None:
        return Envelope(status="ok", data=WhoAmIResponse(authenticated=False))
    return Envelope(
        status="ok",
        data=WhoAmIResponse(
            authenticated=True,
            user_id=principal.user_id,
            username=principal.username,
            role=Role(principal.role).value,
            session_id=principal.session_id,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse.from_session(s, current_id=principal.session_id)
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_auth),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session_for_user(principal.user_id, session_id)
    return Envelope(status="ok", data={"message": "session revoked", "session_id": session_id})


@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(require_auth),
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    for required in ("full_name", "email"):
        if required in fields and fields[required] is None:
            raise _http_error(
                "validation_error", f"{required} cannot be cleared", status_code=400
            )
    user = await runtime.auth.update_profile(principal.user_id, fields)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(require_auth),
):
    """Change the caller's password after re-checking the current one.

    Other sessions are revoked when ``REVOKE_SESSIONS_ON_PASSWORD_CHANGE``
    is on; the session making this request stays valid.
    """
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "changed", "revoked_sessions": revoked})


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(principal: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.user_id)
    return Envelope(status="ok", data={"message": "account deleted"})


@router.get(
    "/admin/users",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_auth)],
)
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500, description="Maximum users to return"),
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    runtime = get_runtime()
    users = await asyncio.to_thread(runtime.store.list_users, limit=limit)
    logger.info("admin_list_users", admin_id=principal.user_id, returned=len(users))
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )


@router.post(
    "/admin/sessions/cleanup",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_auth)],
)
async def admin_cleanup_sessions(
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    runtime = get_runtime()
    purged = await asyncio.to_thread(runtime.auth.cleanup_expired_sessions)
    logger.info("admin_sessions_cleanup", admin_id=principal.user_id, purged=purged)
    return Envelope(status="ok", data={"purged": purged})
