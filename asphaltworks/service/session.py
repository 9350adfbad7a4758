from __future__ import annotations

from typing import Iterable, Optional, Protocol

from asphaltworks.logging import get_logger
from asphaltworks.service.errors import AuthenticationError, AuthorizationError
from asphaltworks.service.tokens import TokenIssuer
from asphaltworks.storage.models import User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


def extract_token(authorization: Optional[str], cookie_token: Optional[str] = None) -> Optional[str]:
    """Bearer header wins over the ``token`` cookie."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if cookie_token and cookie_token.strip():
        return cookie_token.strip()
    return None


class SessionResolver:
    """Turns a presented access token into a live ``User``.

    The token only proves who the caller was when it was issued; the user
    row is re-read on every request so deactivation and deletion take
    effect before the token expires.
    """

    def __init__(self, store: SessionStore, tokens: TokenIssuer) -> None:
        self.store = store
        self.tokens = tokens

    async def resolve(self, token: Optional[str]) -> User:
        if not token:
            raise AuthenticationError("authentication required", reason="token_missing")
        user_id = self.tokens.decode_access_token(token)
        user = self.store.get_user(user_id)
        if not user:
            logger.warning("session_user_not_found", user_id=user_id)
            raise AuthenticationError("user not found", reason="user_not_found")
        if not user.is_active:
            logger.info("session_user_deactivated", user_id=user_id)
            raise AuthenticationError("account deactivated", reason="account_deactivated")
        return user

    async def resolve_optional(self, token: Optional[str]) -> Optional[User]:
        """Like ``resolve`` but anonymous on any failure."""
        if not token:
            return None
        try:
            return await self.resolve(token)
        except AuthenticationError as exc:
            logger.debug("optional_auth_ignored", reason=exc.reason)
            return None


def has_permission(user: User, permission: str) -> bool:
    if user.role == "admin":
        return True
    return permission in (user.permissions or [])


def require_roles(user: User, roles: Iterable[str]) -> User:
    allowed = list(roles)
    if user.role not in allowed:
        raise AuthorizationError(
            "insufficient role",
            detail={"reason": "insufficient_role", "required": allowed, "current": user.role},
        )
    return user


def require_permission(user: User, permission: str) -> User:
    if not has_permission(user, permission):
        raise AuthorizationError(
            "insufficient permissions",
            detail={
                "reason": "insufficient_permission",
                "required": permission,
                "current": list(user.permissions or []),
            },
        )
    return user


def require_verified_email(user: User) -> User:
    if not user.is_email_verified:
        raise AuthorizationError(
            "email verification required", detail={"reason": "email_not_verified"}
        )
    return user


def check_ownership(user: User, owner_id: Optional[str]) -> None:
    if user.role == "admin":
        return
    if owner_id is None or owner_id != user.id:
        raise AuthorizationError("not the owner of this resource", detail={"reason": "not_owner"})
