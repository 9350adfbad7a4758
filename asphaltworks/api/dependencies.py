from __future__ import annotations

from typing import Callable, Optional

from fastapi import Cookie, Depends, Header, Request

from asphaltworks.service.runtime import get_runtime
from asphaltworks.service.session import (
    extract_token,
    require_permission,
    require_roles,
    require_verified_email,
)
from asphaltworks.storage.models import User


def client_ip(request: Request) -> Optional[str]:
    """Caller address; ``X-Forwarded-For`` is honoured only behind a trusted proxy."""
    settings = get_runtime().settings
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else None


async def current_user(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
) -> User:
    runtime = get_runtime()
    return await runtime.sessions.resolve(extract_token(authorization, token))


async def optional_user(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
) -> Optional[User]:
    runtime = get_runtime()
    return await runtime.sessions.resolve_optional(extract_token(authorization, token))


async def verified_user(user: User = Depends(current_user)) -> User:
    return require_verified_email(user)


def require_roles_dep(*roles: str) -> Callable:
    async def _dependency(user: User = Depends(current_user)) -> User:
        return require_roles(user, roles)

    return _dependency


def require_permission_dep(permission: str) -> Callable:
    async def _dependency(user: User = Depends(current_user)) -> User:
        return require_permission(user, permission)

    return _dependency


def require_role_or_permission(roles: tuple[str, ...], permission: str) -> Callable:
    """Pass when the caller holds one of ``roles`` or the named permission."""

    async def _dependency(user: User = Depends(current_user)) -> User:
        if user.role in roles:
            return user
        return require_permission(user, permission)

    return _dependency


get_admin_user = require_roles_dep("admin")
get_staff_user = require_roles_dep("admin", "moderator")
