from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from asphaltworks.config import Settings
from asphaltworks.logging import get_logger
from asphaltworks.service.auth import conflict_from, normalize_email
from asphaltworks.service.credentials import CredentialManager
from asphaltworks.service.email import EmailDispatcher
from asphaltworks.service.errors import NotFoundError, ValidationError
from asphaltworks.storage.errors import ConstraintViolation
from asphaltworks.storage.models import ROLES, ListQuery, Page, User, utcnow

logger = get_logger(__name__)

TEMP_PASSWORD_BYTES = 12
RECENT_USERS_DAYS = 7

ADMIN_EDITABLE_FIELDS = (
    "username",
    "email",
    "first_name",
    "last_name",
    "role",
    "permissions",
    "is_active",
    "is_email_verified",
    "phone_number",
    "timezone",
    "language",
)


def _validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError("invalid role", detail={"field": "role", "allowed": list(ROLES)})
    return role


class UserDirectory:
    """Admin-side user management.

    The acting admin is passed explicitly so self-targeting operations
    (delete, deactivate, demote) can be refused.
    """

    def __init__(
        self,
        store,
        credentials: CredentialManager,
        mailer: EmailDispatcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.mailer = mailer
        self.settings = settings

    def _require(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"id": user_id})
        return user

    def get(self, user_id: str) -> User:
        return self._require(user_id)

    def list(
        self,
        query: ListQuery,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Page[User]:
        if role is not None:
            query.filters["role"] = _validate_role(role)
        if is_active is not None:
            query.filters["is_active"] = is_active
        return self.store.list_users(query)

    def by_role(self, role: str, query: ListQuery) -> Page[User]:
        return self.list(query, role=role)

    def search(self, q: str, *, limit: int = 10) -> List[User]:
        term = (q or "").strip()
        if len(term) < 2:
            raise ValidationError(
                "search must contain at least 2 characters", detail={"field": "q"}
            )
        page = self.store.list_users(
            ListQuery(page=1, limit=limit, sort_by="first_name", sort_order="asc", search=term)
        )
        return page.items

    def stats(self) -> Dict[str, Any]:
        return self.store.user_stats(recent_since=utcnow() - timedelta(days=RECENT_USERS_DAYS))

    async def create(
        self,
        actor: User,
        *,
        username: str,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: str = "user",
        permissions: Optional[Iterable[str]] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        **profile: Any,
    ) -> User:
        _validate_role(role)
        email = normalize_email(email)
        token = token_digest = expires = None
        if not is_email_verified:
            token = self.credentials.generate_token()
            token_digest = self.credentials.digest(token)
            expires = utcnow() + timedelta(hours=self.settings.email_verification_ttl_hours)
        password_hash, algo = await self.credentials.hash_async(password)
        try:
            user = self.store.create_user(
                username.strip(),
                email,
                role=role,
                permissions=list(permissions or []),
                is_active=is_active,
                is_email_verified=is_email_verified,
                verification_token=token_digest,
                verification_expires=expires,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                **{k: v for k, v in profile.items() if v is not None},
            )
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc
        self.store.save_password(user.id, password_hash, algo)
        logger.info("admin_created_user", actor_id=actor.id, user_id=user.id, role=role)
        if token and is_active:
            self.mailer.submit(
                self.mailer.service.send_email_verification, user.email, user.first_name, token
            )
        return user

    def update(self, actor: User, user_id: str, changes: Dict[str, Any]) -> User:
        target = self._require(user_id)
        updates = {k: v for k, v in changes.items() if k in ADMIN_EDITABLE_FIELDS and v is not None}
        if target.id == actor.id:
            if updates.get("is_active") is False:
                raise ValidationError("you cannot deactivate your own account")
            if "role" in updates and updates["role"] != actor.role:
                raise ValidationError("you cannot change your own role")
        if "role" in updates:
            _validate_role(updates["role"])
        if "email" in updates:
            updates["email"] = normalize_email(updates["email"])
        if "permissions" in updates:
            updates["permissions"] = list(updates["permissions"])
        if updates.get("is_active") is False:
            updates.update(refresh_token=None, refresh_token_expires=None)
        token = None
        # a new address needs its own confirmation unless the admin vouches for it
        if updates.get("email", target.email) != target.email and not updates.get(
            "is_email_verified"
        ):
            token = self.credentials.generate_token()
            updates.update(
                is_email_verified=False,
                email_verification_token=self.credentials.digest(token),
                email_verification_expires=utcnow()
                + timedelta(hours=self.settings.email_verification_ttl_hours),
            )
        try:
            updated = self.store.update_user(user_id, **updates)
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"id": user_id})
        logger.info("admin_updated_user", actor_id=actor.id, user_id=user_id, fields=sorted(updates))
        if token and updated.is_active:
            self.mailer.submit(
                self.mailer.service.send_email_verification,
                updated.email,
                updated.first_name,
                token,
            )
        return updated

    def delete(self, actor: User, user_id: str) -> None:
        self._require(user_id)
        if user_id == actor.id:
            raise ValidationError("you cannot delete your own account")
        self.store.delete_user(user_id)
        logger.info("admin_deleted_user", actor_id=actor.id, user_id=user_id)

    async def reset_password(
        self,
        actor: User,
        user_id: str,
        *,
        new_password: Optional[str] = None,
        send_email: bool = True,
    ) -> Optional[str]:
        """Set a new password; returns the generated one when none was given."""
        target = self._require(user_id)
        password = new_password or self.credentials.generate_token(TEMP_PASSWORD_BYTES)
        password_hash, algo = await self.credentials.hash_async(password)
        self.store.replace_password(target.id, password_hash, algo)
        logger.info("admin_reset_password", actor_id=actor.id, user_id=user_id)
        if send_email:
            self.mailer.submit(
                self.mailer.service.send_temporary_password,
                target.email,
                target.first_name,
                password,
            )
        return None if new_password else password

    def toggle_status(self, actor: User, user_id: str) -> User:
        target = self._require(user_id)
        if target.id == actor.id:
            raise ValidationError("you cannot deactivate your own account")
        self.store.set_users_active([target.id], not target.is_active)
        logger.info(
            "admin_toggled_status", actor_id=actor.id, user_id=user_id, active=not target.is_active
        )
        return self._require(user_id)

    def _others(self, actor: User, user_ids: Iterable[str]) -> List[str]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid and uid != actor.id]
        if not ids:
            raise ValidationError("no users to update", detail={"field": "userIds"})
        return ids

    def bulk_set_active(self, actor: User, user_ids: Iterable[str], active: bool) -> int:
        count = self.store.set_users_active(self._others(actor, user_ids), active)
        logger.info("admin_bulk_status", actor_id=actor.id, active=active, updated=count)
        return count

    def bulk_delete(self, actor: User, user_ids: Iterable[str]) -> int:
        count = self.store.delete_users(self._others(actor, user_ids))
        logger.info("admin_bulk_delete", actor_id=actor.id, deleted=count)
        return count

