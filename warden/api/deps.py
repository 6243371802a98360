from __future__ import annotations

from typing import Awaitable, Callable, Dict, Optional

from fastapi import Depends, Header, Request

from warden.service.auth import AuthContext
from warden.service.runtime import get_runtime

# Parameter source meaning "the authenticated caller's own id"
CALLER = "@caller"


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_permission(
    permission: str, **param_sources: str
) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency that evaluates ``permission`` against the caller's captured scope.

    Each keyword names a request-time parameter and where its value comes
    from: ``CALLER`` for the caller's user id, anything else is read from
    the path parameters. With no keywords ``userId`` is bound to the caller.
    """
    sources = param_sources or {"userId": CALLER}

    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        params: Dict[str, str] = {}
        for key, source in sources.items():
            value = ctx.user_id if source == CALLER else request.path_params.get(source)
            if value is not None:
                params[key] = str(value)
        ctx.require(permission, params)
        return ctx

    return _dependency


def client_metadata(request: Request) -> Dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_addr": request.client.host if request.client else None,
    }
