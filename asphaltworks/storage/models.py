from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

ROLES = ("admin", "moderator", "user")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    """Identity and credential state for one account.

    Token columns hold SHA-256 digests of the tokens handed to clients,
    never the raw values. The password hash lives in the credential table.
    """

    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    is_email_verified: bool = False
    phone_number: Optional[str] = None
    timezone: str = "Europe/Paris"
    language: str = "fr"
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_token_expires: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        lock_until = ensure_utc(self.lock_until)
        return bool(lock_until and lock_until > (now or utcnow()))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ContentItem:
    id: int
    kind: str
    data: Dict[str, Any]
    slug: Optional[str] = None
    author_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ListQuery:
    """Pagination, sorting, search and equality filters for list endpoints."""

    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"
    search: Optional[str] = None
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def offset(self) -> int:
        return (max(1, self.page) - 1) * self.limit

    @property
    def descending(self) -> bool:
        return self.sort_order.lower() != "asc"


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)

    def pagination(self) -> Dict[str, int]:
        return {
            "current_page": self.page,
            "total_pages": self.total_pages,
            "total_items": self.total,
            "items_per_page": self.limit,
        }
