from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from throttlecove.logging import get_security_logger
from throttlecove.service.auth import AuthContext
from throttlecove.service.errors import ForbiddenError, UnauthorizedError
from throttlecove.service.runtime import get_runtime
from throttlecove.storage.models import Role

security_log = get_security_logger()


async def require_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Bearer-token guard.

    Missing header -> 401, failed verification -> 403, revoked or expired
    session -> 401 when ``SESSION_CHECK_ON_REQUEST`` is on.
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    request.state.auth = ctx
    return ctx


async def require_token(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Like ``require_auth`` but trusts the signature alone.

    Logout uses this so that repeating it after the session is gone still
    succeeds.
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, check_session=False)
    request.state.auth = ctx
    return ctx


async def optional_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    if not authorization:
        return None
    runtime = get_runtime()
    try:
        ctx = await runtime.auth.authenticate(authorization)
    except (UnauthorizedError, ForbiddenError):
        return None
    request.state.auth = ctx
    return ctx


def require_roles(*roles: Role):
    """Role gate; declare it after ``require_auth`` in a route's dependencies."""
    allowed = {Role(role) for role in roles}

    async def _check(request: Request) -> AuthContext:
        ctx: Optional[AuthContext] = getattr(request.state, "auth", None)
        if ctx is None:
            raise UnauthorizedError("Authentication required")
        if Role(ctx.role) not in allowed:
            security_log.warning(
                "role_check_failed",
                user_id=ctx.user_id,
                role=Role(ctx.role).value,
                required=sorted(r.value for r in allowed),
                path=request.url.path,
            )
            raise ForbiddenError("Insufficient permissions")
        return ctx

    return _check
