from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel

from asphaltworks.storage.models import ContentItem, Page, User


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class Envelope(ApiModel):
    """Success envelope: ``{success, message?, data?, requestId?}``."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    request_id: Optional[str] = None

    @model_serializer(mode="wrap")
    def _serialize(self, handler):
        return _drop_none(handler(self))


class FieldError(ApiModel):
    field: str
    message: str


class ErrorEnvelope(ApiModel):
    """Error envelope: ``{success:false, message, code, errors?, details?, retryAfter?}``."""

    success: Literal[False] = False
    message: str
    code: str
    errors: Optional[List[FieldError]] = None
    details: Optional[Any] = None
    retry_after: Optional[int] = None

    @model_serializer(mode="wrap")
    def _serialize(self, handler):
        return _drop_none(handler(self))


# ---------------------------------------------------------------------------
# field validators
# ---------------------------------------------------------------------------

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
_NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s'-]+$")
_PASSWORD_SPECIALS = "@$!%*?&"
_PHONE_PATTERN = re.compile(r"^(?:\+33\s?|0)[1-9](?:[\s.-]?\d{2}){4}$")
TOKEN_PATTERN = r"^[a-f0-9]{32,128}$"


def _normalize_unicode(value: str) -> str:
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in _PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "password must contain a lowercase letter, an uppercase letter, "
            f"a digit and one of {_PASSWORD_SPECIALS}"
        )
    return value


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 3 <= len(value) <= 30:
        raise ValueError("username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits and underscores")
    return value


def _validate_person_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 2 <= len(value) <= 50:
        raise ValueError("must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("may only contain letters, spaces, hyphens and apostrophes")
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not _PHONE_PATTERN.match(value.strip()):
        raise ValueError("invalid French phone number")
    return value.strip()


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------


class RegisterRequest(ApiModel):
    username: str
    email: str
    password: str
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_register_names(cls, value: str) -> str:
        return _validate_person_name(value)


class LoginRequest(ApiModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(ApiModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class EmailRequest(ApiModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(ApiModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    confirm_password: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("password confirmation does not match")
        return self


class ProfileUpdateRequest(ApiModel):
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[Literal["fr", "en"]] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("username")
    @classmethod
    def _validate_profile_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_profile_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_person_name(value)

    @field_validator("phone_number")
    @classmethod
    def _validate_profile_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class UserResponse(ApiModel):
    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    permissions: List[str] = Field(default_factory=list)
    is_active: bool
    is_email_verified: bool
    phone_number: Optional[str] = None
    timezone: str
    language: str
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Public view of a user; token digests and lock state never leave the server."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            role=user.role,
            permissions=list(user.permissions or []),
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            phone_number=user.phone_number,
            timezone=user.timezone,
            language=user.language,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(ApiModel):
    user: UserResponse
    token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class RefreshResponse(ApiModel):
    token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class AuthStatusResponse(ApiModel):
    authenticated: bool
    user: Optional[UserResponse] = None


# ---------------------------------------------------------------------------
# admin users
# ---------------------------------------------------------------------------

Role = Literal["admin", "moderator", "user"]


class AdminCreateUserRequest(RegisterRequest):
    role: Role = "user"
    permissions: List[str] = Field(default_factory=list, max_length=50)
    is_active: bool = True
    is_email_verified: bool = False
    phone_number: Optional[str] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[Literal["fr", "en"]] = None

    @field_validator("phone_number")
    @classmethod
    def _validate_admin_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class AdminUpdateUserRequest(ProfileUpdateRequest):
    role: Optional[Role] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None


class AdminResetPasswordRequest(ApiModel):
    new_password: Optional[str] = None
    send_email: bool = True

    @field_validator("new_password")
    @classmethod
    def _validate_admin_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class BulkUsersRequest(ApiModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=500)


class UserStatsResponse(ApiModel):
    total: int
    active: int
    inactive: int
    verified: int
    unverified: int
    recent: int
    by_role: Dict[str, int]


# ---------------------------------------------------------------------------
# content
# ---------------------------------------------------------------------------


class PaginationResponse(ApiModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class PageResponse(ApiModel):
    items: List[Any]
    pagination: PaginationResponse


def content_to_dict(item: ContentItem) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"id": item.id}
    if item.slug is not None:
        payload["slug"] = item.slug
    payload.update({to_camel(k): v for k, v in item.data.items()})
    if item.author_id is not None:
        payload["authorId"] = item.author_id
    payload["createdAt"] = item.created_at
    payload["updatedAt"] = item.updated_at
    return payload


def page_response(page: Page, items: List[Any]) -> PageResponse:
    return PageResponse(
        items=items, pagination=PaginationResponse(**page.pagination())
    )


class ServiceCreate(ApiModel):
    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    short_description: Optional[str] = Field(default=None, max_length=500)
    icon: Optional[str] = Field(default=None, max_length=100)
    image: Optional[str] = Field(default=None, max_length=500)
    price: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, max_length=50)
    order: Optional[int] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    slug: Optional[str] = Field(default=None, max_length=250)


class ServiceUpdate(ServiceCreate):
    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, min_length=10, max_length=5000)


class ProjectCreate(ApiModel):
    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    category: Optional[str] = Field(default=None, max_length=50)
    location: Optional[str] = Field(default=None, max_length=200)
    client: Optional[str] = Field(default=None, max_length=200)
    completion_date: Optional[str] = None
    images: Optional[List[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    slug: Optional[str] = Field(default=None, max_length=250)


class ProjectUpdate(ProjectCreate):
    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, min_length=10, max_length=5000)


class BlogCreate(ApiModel):
    title: str = Field(..., min_length=5, max_length=200)
    content: str = Field(..., min_length=20, max_length=50000)
    excerpt: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=50)
    tags: Optional[List[str]] = Field(default=None, max_length=30)
    status: Optional[Literal["draft", "published"]] = None
    is_featured: Optional[bool] = None
    slug: Optional[str] = Field(default=None, max_length=250)


class BlogUpdate(BlogCreate):
    title: Optional[str] = Field(default=None, min_length=5, max_length=200)
    content: Optional[str] = Field(default=None, min_length=20, max_length=50000)


class TestimonialCreate(ApiModel):
    client_name: str = Field(..., min_length=2, max_length=100)
    email: Optional[str] = None
    company: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=100)
    testimonial_text: str = Field(..., min_length=10, max_length=2000)
    rating: int = Field(..., ge=1, le=5)

    @field_validator("email")
    @classmethod
    def _validate_testimonial_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class TestimonialUpdate(ApiModel):
    client_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    company: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=100)
    testimonial_text: Optional[str] = Field(default=None, min_length=10, max_length=2000)
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    display_order: Optional[int] = None


class ContactCreate(ApiModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str
    phone: Optional[str] = None
    company: Optional[str] = Field(default=None, max_length=100)
    subject: Optional[str] = Field(default=None, max_length=200)
    message: str = Field(..., min_length=10, max_length=5000)
    project_type: Optional[str] = Field(default=None, max_length=100)
    budget: Optional[str] = Field(default=None, max_length=50)
    timeline: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_contact_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_contact_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class ContactUpdate(ApiModel):
    status: Optional[Literal["new", "read", "replied", "closed"]] = None
    priority: Optional[Literal["low", "medium", "high"]] = None
    is_read: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=5000)


# ---------------------------------------------------------------------------
# misc
# ---------------------------------------------------------------------------


class UploadResponse(ApiModel):
    filename: str
    url: str
    size: int
    content_type: str


class RateLimitInfoResponse(ApiModel):
    ip: Optional[str]
    limit: int
    remaining: int
    reset: int
