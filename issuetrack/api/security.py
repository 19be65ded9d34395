from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request, Response

from issuetrack.service.auth import AuthContext
from issuetrack.service.rate_limit import client_identity
from issuetrack.service.rbac import ensure_role
from issuetrack.service.runtime import get_runtime
from issuetrack.storage.models import Role

BEARER_PREFIX = "Bearer "


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    return authorization[len(BEARER_PREFIX):].strip() or None


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the bearer token into the request principal.

    Missing, malformed and expired tokens all fail with the same 401 so the
    response never tells a caller which one it was.
    """
    runtime = get_runtime()
    principal = runtime.auth.authenticate(_bearer_token(authorization))
    request.state.principal = principal
    return principal


def require_role(*roles: Role):
    """Dependency factory: authenticate, then demand one of ``roles``."""
    allowed = frozenset(roles)

    async def _require_role(principal: AuthContext = Depends(get_user)) -> AuthContext:
        ensure_role(principal.role, allowed)
        return principal

    return _require_role


async def _enforce(policy_name: str, request: Request, response: Response) -> None:
    runtime = get_runtime()
    limiter = runtime.rate_limiter
    await limiter.enforce(
        client_identity(request), limiter.policy(policy_name), response=response
    )


async def auth_rate_limit(request: Request, response: Response) -> None:
    await _enforce("auth", request, response)


async def api_rate_limit(request: Request, response: Response) -> None:
    await _enforce("api", request, response)


async def public_rate_limit(request: Request, response: Response) -> None:
    await _enforce("public", request, response)
