from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Tuple

from asphaltworks.config import Settings
from asphaltworks.logging import get_logger, redact_email
from asphaltworks.service.credentials import CredentialManager
from asphaltworks.service.email import EmailDispatcher
from asphaltworks.service.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from asphaltworks.service.tokens import IssuedTokens, TokenIssuer
from asphaltworks.storage.errors import ConstraintViolation
from asphaltworks.storage.models import User, ensure_utc, utcnow

logger = get_logger(__name__)

PROFILE_FIELDS = (
    "username",
    "email",
    "first_name",
    "last_name",
    "phone_number",
    "timezone",
    "language",
)

_CONFLICT_MESSAGES = {
    "email": "an account with this email already exists",
    "username": "this username is already taken",
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def conflict_from(exc: ConstraintViolation) -> ConflictError:
    field = exc.detail.get("field") if isinstance(exc.detail, dict) else None
    return ConflictError(
        _CONFLICT_MESSAGES.get(field, str(exc)), detail={"field": field} if field else None
    )


class UserStore(Protocol):
    def create_user(self, username: str, email: str, **kwargs: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def replace_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]: ...

    def get_user_by_refresh_token(self, token_digest: str) -> Optional[User]: ...

    def rotate_refresh_token(
        self, user_id: str, expected_digest: str, new_digest: str, expires_at: datetime
    ) -> bool: ...

    def clear_refresh_token(self, user_id: str) -> None: ...

    def record_login_failure(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def record_login_success(
        self,
        user_id: str,
        *,
        refresh_digest: str,
        refresh_expires: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def consume_verification_token(
        self, token_digest: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def complete_password_reset(
        self,
        token_digest: str,
        password_hash: str,
        password_algo: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...


class AuthService:
    """Account lifecycle: registration, login, refresh, recovery, verification.

    Every state change that must not race (lock counter, refresh rotation,
    token consumption) is delegated to a single store call. Outbound email
    goes through the dispatcher and never blocks or fails a request.
    """

    def __init__(
        self,
        store: UserStore,
        credentials: CredentialManager,
        tokens: TokenIssuer,
        mailer: EmailDispatcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.mailer = mailer
        self.settings = settings

    def _now(self) -> datetime:
        return utcnow()

    def _new_verification_token(self, now: datetime) -> Tuple[str, str, datetime]:
        token = self.credentials.generate_token()
        expires = now + timedelta(hours=self.settings.email_verification_ttl_hours)
        return token, self.credentials.digest(token), expires

    def _check_available(self, *, email: str, username: str) -> None:
        if self.store.get_user_by_email(email):
            raise ConflictError(_CONFLICT_MESSAGES["email"], detail={"field": "email"})
        if self.store.get_user_by_username(username):
            raise ConflictError(_CONFLICT_MESSAGES["username"], detail={"field": "username"})

    async def register(
        self,
        *,
        username: str,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> User:
        email = normalize_email(email)
        username = username.strip()
        self._check_available(email=email, username=username)
        password_hash, algo = await self.credentials.hash_async(password)
        now = self._now()
        token, token_digest, expires = self._new_verification_token(now)
        try:
            user = self.store.create_user(
                username,
                email,
                role="user",
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                verification_token=token_digest,
                verification_expires=expires,
            )
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc
        self.store.save_password(user.id, password_hash, algo)
        logger.info("user_registered", user_id=user.id)
        self.mailer.submit(
            self.mailer.service.send_email_verification, user.email, user.first_name, token
        )
        return user

    async def login(self, *, email: str, password: str) -> Tuple[User, IssuedTokens]:
        invalid = AuthenticationError("invalid email or password", reason="invalid_credentials")
        email = normalize_email(email)
        now = self._now()
        user = self.store.get_user_by_email(email)
        if not user:
            await asyncio.to_thread(self.credentials.burn_verify, password)
            logger.info("login_failed", reason="unknown_email", email=redact_email(email))
            raise invalid

        if user.is_locked(now):
            logger.warning("login_rejected_locked", user_id=user.id)
            raise AuthenticationError(
                "account temporarily locked after too many failed attempts",
                reason="account_locked",
                detail={"lockUntil": ensure_utc(user.lock_until).isoformat()},
            )

        record = self.store.get_password_record(user.id)
        verified = False
        if record:
            verified = await self.credentials.verify_async(record[0], password, algo=record[1])
        else:
            await asyncio.to_thread(self.credentials.burn_verify, password)
        if not verified:
            updated = self.store.record_login_failure(
                user.id,
                max_attempts=self.settings.max_login_attempts,
                lock_for=timedelta(minutes=self.settings.lockout_minutes),
                now=now,
            )
            attempts = updated.login_attempts if updated else None
            logger.info("login_failed", reason="bad_password", user_id=user.id, attempts=attempts)
            if updated and updated.is_locked(now):
                logger.warning("account_locked", user_id=user.id, lock_until=updated.lock_until)
                self.mailer.submit(
                    self.mailer.service.send_account_locked,
                    updated.email,
                    updated.first_name,
                    ensure_utc(updated.lock_until),
                )
            raise invalid

        if not user.is_active:
            logger.info("login_rejected_deactivated", user_id=user.id)
            raise AuthenticationError("account deactivated", reason="account_deactivated")

        if self.credentials.needs_rehash(record[0]):
            new_hash, algo = await self.credentials.hash_async(password)
            self.store.save_password(user.id, new_hash, algo)
            logger.info("password_rehashed", user_id=user.id)

        issued = self.tokens.issue(user.id, now=now)
        updated = self.store.record_login_success(
            user.id,
            refresh_digest=issued.refresh_digest,
            refresh_expires=issued.refresh_expires_at,
            now=now,
        )
        logger.info("login_succeeded", user_id=user.id)
        return updated or user, issued

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, IssuedTokens]:
        """Exchange a refresh token for a new pair; the old one stops working."""
        if not refresh_token:
            raise AuthenticationError("refresh token missing", reason="token_missing")
        invalid = AuthenticationError("invalid refresh token", reason="token_invalid")
        digest = self.credentials.digest(refresh_token)
        user = self.store.get_user_by_refresh_token(digest)
        if not user:
            logger.info("refresh_rejected", reason="unknown_token")
            raise invalid
        now = self._now()
        expires = ensure_utc(user.refresh_token_expires)
        if expires is not None and expires <= now:
            self.store.clear_refresh_token(user.id)
            raise AuthenticationError("refresh token expired", reason="token_expired")
        if not user.is_active:
            raise AuthenticationError("account deactivated", reason="account_deactivated")
        issued = self.tokens.issue(user.id, now=now)
        if not self.store.rotate_refresh_token(
            user.id, digest, issued.refresh_digest, issued.refresh_expires_at
        ):
            # another request rotated this token first
            logger.warning("refresh_rotation_conflict", user_id=user.id)
            raise invalid
        logger.info("refresh_rotated", user_id=user.id)
        return user, issued

    async def logout(self, user: User) -> None:
        self.store.clear_refresh_token(user.id)
        logger.info("logout", user_id=user.id)

    async def change_password(self, user: User, *, current_password: str, new_password: str) -> None:
        record = self.store.get_password_record(user.id)
        if not record or not await self.credentials.verify_async(
            record[0], current_password, algo=record[1]
        ):
            logger.info("password_change_rejected", user_id=user.id)
            raise ValidationError(
                "current password is incorrect", detail={"field": "currentPassword"}
            )
        password_hash, algo = await self.credentials.hash_async(new_password)
        self.store.replace_password(user.id, password_hash, algo)
        logger.info("password_changed", user_id=user.id)
        self.mailer.submit(self.mailer.service.send_password_changed, user.email, user.first_name)

    async def forgot_password(self, email: str) -> None:
        """Issue a reset link if the account exists; the caller learns nothing either way."""
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            return
        token = self.credentials.generate_token()
        self.store.update_user(
            user.id,
            reset_password_token=self.credentials.digest(token),
            reset_password_expires=self._now()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        logger.info("password_reset_requested", user_id=user.id)
        self.mailer.submit(
            self.mailer.service.send_password_reset, user.email, user.first_name, token
        )

    async def reset_password(self, token: str, new_password: str) -> User:
        password_hash, algo = await self.credentials.hash_async(new_password)
        user = self.store.complete_password_reset(
            self.credentials.digest(token), password_hash, algo, now=self._now()
        )
        if not user:
            logger.info("password_reset_rejected")
            raise ValidationError(
                "invalid or expired reset token", detail={"reason": "invalid_reset_token"}
            )
        logger.info("password_reset_completed", user_id=user.id)
        return user

    async def verify_email(self, token: str) -> User:
        user = self.store.consume_verification_token(
            self.credentials.digest(token), now=self._now()
        )
        if not user:
            logger.info("email_verification_rejected")
            raise ValidationError(
                "invalid or expired verification token",
                detail={"reason": "invalid_verification_token"},
            )
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> None:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("verification_resend_unknown_email", email=redact_email(email))
            return
        if user.is_email_verified:
            raise ValidationError("email already verified", detail={"reason": "already_verified"})
        token, token_digest, expires = self._new_verification_token(self._now())
        self.store.update_user(
            user.id, email_verification_token=token_digest, email_verification_expires=expires
        )
        logger.info("verification_resent", user_id=user.id)
        self.mailer.submit(
            self.mailer.service.send_email_verification, user.email, user.first_name, token
        )

    async def update_profile(self, user: User, changes: dict[str, Any]) -> User:
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
        if "email" in updates:
            updates["email"] = normalize_email(updates["email"])
        if "username" in updates:
            updates["username"] = updates["username"].strip()
        token = None
        if "email" in updates and updates["email"] != user.email:
            token, token_digest, expires = self._new_verification_token(self._now())
            updates.update(
                is_email_verified=False,
                email_verification_token=token_digest,
                email_verification_expires=expires,
            )
        if not updates:
            return user
        try:
            updated = self.store.update_user(user.id, **updates)
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc
        if updated is None:
            raise AuthenticationError("user not found", reason="user_not_found")
        logger.info("profile_updated", user_id=user.id, fields=sorted(changes))
        if token:
            self.mailer.submit(
                self.mailer.service.send_email_verification,
                updated.email,
                updated.first_name,
                token,
            )
        return updated
