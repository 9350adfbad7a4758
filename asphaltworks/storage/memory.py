from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from asphaltworks.logging import get_logger
from asphaltworks.storage.errors import ConstraintViolation
from asphaltworks.storage.models import (
    ContentItem,
    ListQuery,
    Page,
    User,
    ensure_utc,
    utcnow,
)

_USER_FIELDS = {f.name for f in fields(User)}
_USER_DATETIME_FIELDS = {
    "email_verification_expires",
    "reset_password_expires",
    "refresh_token_expires",
    "lock_until",
    "last_login",
    "created_at",
    "updated_at",
}
_USER_SEARCH_FIELDS = ("username", "email", "first_name", "last_name")
_USER_SORT_FIELDS = {
    "created_at",
    "updated_at",
    "username",
    "email",
    "first_name",
    "last_name",
    "role",
    "last_login",
}


def _sort_key(value: Any) -> tuple:
    # None sorts last in ascending order, first in descending order
    if value is None:
        return (1, "")
    if isinstance(value, str):
        return (0, value.lower())
    return (0, value)


class MemoryStore:
    """In-process store for users and content, optionally persisted to JSON.

    Every read-modify-write on a record runs under ``_data_lock`` so the
    conditional updates (refresh rotation, token consumption, lock counter)
    behave like single-row atomic updates in Postgres.
    """

    def __init__(self, fs_root: str = "/tmp/asphaltworks", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.content: Dict[str, Dict[int, ContentItem]] = {}
        self._content_seq: Dict[str, int] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def _find_conflict(
        self, *, email: Optional[str], username: Optional[str], exclude_id: Optional[str]
    ) -> Optional[str]:
        for existing in self.users.values():
            if exclude_id and existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                return "email"
            if username is not None and existing.username.lower() == username.lower():
                return "username"
        return None

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        permissions: Optional[Sequence[str]] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires: Optional[datetime] = None,
        **profile: Any,
    ) -> User:
        with self._data_lock:
            conflict = self._find_conflict(email=email, username=username, exclude_id=None)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            unknown = set(profile) - _USER_FIELDS
            if unknown:
                raise ValueError(f"unknown user fields: {sorted(unknown)}")
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                permissions=list(permissions or []),
                is_active=is_active,
                is_email_verified=is_email_verified,
                email_verification_token=verification_token,
                email_verification_expires=verification_expires,
                **profile,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username.lower() == username.lower()),
                None,
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_FIELDS
        if unknown or "id" in changes:
            raise ValueError(f"cannot update user fields: {sorted(unknown | ({'id'} & set(changes)))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            conflict = self._find_conflict(
                email=changes.get("email"),
                username=changes.get("username"),
                exclude_id=user_id,
            )
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self._persist_state()
            return True

    def delete_users(self, user_ids: Iterable[str]) -> int:
        with self._data_lock:
            removed = 0
            for user_id in set(user_ids):
                if self.users.pop(user_id, None) is not None:
                    self.credentials.pop(user_id, None)
                    removed += 1
            if removed:
                self._persist_state()
            return removed

    def set_users_active(self, user_ids: Iterable[str], active: bool) -> int:
        with self._data_lock:
            updated = 0
            now = utcnow()
            for user_id in set(user_ids):
                user = self.users.get(user_id)
                if not user:
                    continue
                user.is_active = active
                if not active:
                    user.refresh_token = None
                    user.refresh_token_expires = None
                user.updated_at = now
                updated += 1
            if updated:
                self._persist_state()
            return updated

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def replace_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        """Store a new hash and drop the refresh and reset tokens in one step."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self.credentials[user_id] = (password_hash, password_algo)
            user.refresh_token = None
            user.refresh_token_expires = None
            user.reset_password_token = None
            user.reset_password_expires = None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def get_user_by_refresh_token(self, token_digest: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.refresh_token == token_digest),
                None,
            )
            return replace(user) if user else None

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_digest: str,
        new_digest: str,
        expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token != expected_digest:
                return False
            user.refresh_token = new_digest
            user.refresh_token_expires = expires_at
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def clear_refresh_token(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token is None:
                return
            user.refresh_token = None
            user.refresh_token_expires = None
            user.updated_at = utcnow()
            self._persist_state()

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_for: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            lock_until = ensure_utc(user.lock_until)
            if lock_until and lock_until <= now:
                # expired lock: start counting again
                user.login_attempts = 0
                user.lock_until = None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts and not user.is_locked(now):
                user.lock_until = now + lock_for
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def record_login_success(
        self,
        user_id: str,
        *,
        refresh_digest: str,
        refresh_expires: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts = 0
            user.lock_until = None
            user.last_login = now
            user.refresh_token = refresh_digest
            user.refresh_token_expires = refresh_expires
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def consume_verification_token(
        self, token_digest: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            for user in self.users.values():
                if user.email_verification_token != token_digest:
                    continue
                expires = ensure_utc(user.email_verification_expires)
                if not expires or expires <= now:
                    return None
                user.is_email_verified = True
                user.email_verification_token = None
                user.email_verification_expires = None
                user.updated_at = now
                self._persist_state()
                return replace(user)
            return None

    def complete_password_reset(
        self,
        token_digest: str,
        password_hash: str,
        password_algo: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            for user in self.users.values():
                if user.reset_password_token != token_digest:
                    continue
                expires = ensure_utc(user.reset_password_expires)
                if not expires or expires <= now:
                    return None
                self.credentials[user.id] = (password_hash, password_algo)
                user.reset_password_token = None
                user.reset_password_expires = None
                user.refresh_token = None
                user.refresh_token_expires = None
                user.login_attempts = 0
                user.lock_until = None
                user.updated_at = now
                self._persist_state()
                return replace(user)
            return None

    def list_users(self, query: ListQuery) -> Page[User]:
        with self._data_lock:
            users = list(self.users.values())
        if query.search:
            needle = query.search.lower()
            users = [
                u
                for u in users
                if any(needle in (getattr(u, f) or "").lower() for f in _USER_SEARCH_FIELDS)
            ]
        for name, value in query.filters.items():
            users = [u for u in users if getattr(u, name, None) == value]
        sort_by = query.sort_by if query.sort_by in _USER_SORT_FIELDS else "created_at"
        users.sort(key=lambda u: _sort_key(getattr(u, sort_by)), reverse=query.descending)
        window = users[query.offset : query.offset + query.limit]
        return Page(
            items=[replace(u) for u in window],
            total=len(users),
            page=query.page,
            limit=query.limit,
        )

    def user_stats(self, *, recent_since: datetime) -> Dict[str, Any]:
        with self._data_lock:
            users = list(self.users.values())
        by_role: Dict[str, int] = {}
        for user in users:
            by_role[user.role] = by_role.get(user.role, 0) + 1
        active = sum(1 for u in users if u.is_active)
        verified = sum(1 for u in users if u.is_email_verified)
        return {
            "total": len(users),
            "active": active,
            "inactive": len(users) - active,
            "verified": verified,
            "unverified": len(users) - verified,
            "recent": sum(1 for u in users if ensure_utc(u.created_at) >= recent_since),
            "by_role": by_role,
        }

    # ------------------------------------------------------------------
    # content
    # ------------------------------------------------------------------

    def create_content(
        self,
        kind: str,
        data: Dict[str, Any],
        *,
        slug: Optional[str] = None,
        author_id: Optional[str] = None,
    ) -> ContentItem:
        with self._data_lock:
            bucket = self.content.setdefault(kind, {})
            if slug and any(item.slug == slug for item in bucket.values()):
                raise ConstraintViolation("slug already exists", {"field": "slug"})
            next_id = self._content_seq.get(kind, 0) + 1
            self._content_seq[kind] = next_id
            item = ContentItem(
                id=next_id, kind=kind, data=dict(data), slug=slug, author_id=author_id
            )
            bucket[next_id] = item
            self._persist_state()
            return replace(item, data=dict(item.data))

    def get_content(self, kind: str, item_id: int) -> Optional[ContentItem]:
        with self._data_lock:
            item = self.content.get(kind, {}).get(item_id)
            return replace(item, data=dict(item.data)) if item else None

    def get_content_by_slug(self, kind: str, slug: str) -> Optional[ContentItem]:
        with self._data_lock:
            item = next(
                (i for i in self.content.get(kind, {}).values() if i.slug == slug), None
            )
            return replace(item, data=dict(item.data)) if item else None

    def slug_exists(self, kind: str, slug: str, *, exclude_id: Optional[int] = None) -> bool:
        with self._data_lock:
            return any(
                item.slug == slug and item.id != exclude_id
                for item in self.content.get(kind, {}).values()
            )

    def update_content(
        self,
        kind: str,
        item_id: int,
        changes: Dict[str, Any],
        *,
        slug: Optional[str] = None,
    ) -> Optional[ContentItem]:
        with self._data_lock:
            item = self.content.get(kind, {}).get(item_id)
            if not item:
                return None
            if slug is not None:
                if self.slug_exists(kind, slug, exclude_id=item_id):
                    raise ConstraintViolation("slug already exists", {"field": "slug"})
                item.slug = slug
            item.data.update(changes)
            item.updated_at = utcnow()
            self._persist_state()
            return replace(item, data=dict(item.data))

    def delete_content(self, kind: str, item_id: int) -> bool:
        with self._data_lock:
            removed = self.content.get(kind, {}).pop(item_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def list_content(
        self, kind: str, query: ListQuery, *, search_fields: Sequence[str] = ()
    ) -> Page[ContentItem]:
        with self._data_lock:
            items = [replace(i, data=dict(i.data)) for i in self.content.get(kind, {}).values()]
        if query.search and search_fields:
            needle = query.search.lower()
            items = [
                i
                for i in items
                if any(needle in str(i.data.get(f) or "").lower() for f in search_fields)
            ]
        for name, value in query.filters.items():
            items = [i for i in items if i.data.get(name) == value]
        if query.sort_by in {"id", "created_at", "updated_at"}:
            items.sort(key=lambda i: getattr(i, query.sort_by), reverse=query.descending)
        else:
            items.sort(
                key=lambda i: _sort_key(i.data.get(query.sort_by)), reverse=query.descending
            )
        window = items[query.offset : query.offset + query.limit]
        return Page(items=window, total=len(items), page=query.page, limit=query.limit)

    def count_content_by(self, kind: str, field_name: str) -> Dict[str, int]:
        with self._data_lock:
            counts: Dict[str, int] = {}
            for item in self.content.get(kind, {}).values():
                key = str(item.data.get(field_name))
                counts[key] = counts.get(key, 0) + 1
            return counts

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "content": [
                self._serialize_content(item)
                for bucket in self.content.values()
                for item in bucket.values()
            ],
            "content_seq": self._content_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.content = {}
        for raw in data.get("content", []):
            item = self._deserialize_content(raw)
            self.content.setdefault(item.kind, {})[item.id] = item
        self._content_seq = {k: int(v) for k, v in data.get("content_seq", {}).items()}
        self.logger.info(
            "memory_store_loaded", users=len(self.users), path=str(path)
        )
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        raw = asdict(user)
        for name in _USER_DATETIME_FIELDS:
            if raw.get(name) is not None:
                raw[name] = raw[name].isoformat()
        return raw

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        values = {k: v for k, v in data.items() if k in _USER_FIELDS}
        for name in _USER_DATETIME_FIELDS:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        return User(**values)

    @staticmethod
    def _serialize_content(item: ContentItem) -> dict:
        return {
            "id": item.id,
            "kind": item.kind,
            "slug": item.slug,
            "author_id": item.author_id,
            "data": item.data,
            "created_at": item.created_at.isoformat(),
            "updated_at": item.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_content(data: dict) -> ContentItem:
        return ContentItem(
            id=int(data["id"]),
            kind=data["kind"],
            slug=data.get("slug"),
            author_id=data.get("author_id"),
            data=data.get("data") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
