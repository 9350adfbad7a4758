from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from asphaltworks.logging import get_logger
from asphaltworks.service.email import EmailDispatcher
from asphaltworks.service.errors import ConflictError, NotFoundError, ValidationError
from asphaltworks.service.session import check_ownership
from asphaltworks.service.slug import slugify, unique_slug
from asphaltworks.storage.errors import ConstraintViolation
from asphaltworks.storage.models import ContentItem, ListQuery, Page, User, utcnow

logger = get_logger(__name__)

STAFF_ROLES = ("admin", "moderator")
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class ContentKind:
    """How one content collection is searched, filtered and shown to the public."""

    name: str
    search_fields: Tuple[str, ...]
    filters: Tuple[str, ...]
    sort_fields: Tuple[str, ...] = ("created_at", "updated_at")
    slug_source: Optional[str] = None
    # public callers only see items where this field is true
    active_field: Optional[str] = "is_active"
    published_only: bool = False
    owned: bool = False
    defaults: Dict[str, Any] = field(default_factory=dict)


KINDS: Dict[str, ContentKind] = {
    kind.name: kind
    for kind in (
        ContentKind(
            "services",
            search_fields=("title", "description"),
            filters=("category", "is_featured"),
            sort_fields=("created_at", "updated_at", "title", "order", "price"),
            slug_source="title",
            defaults={"is_active": True, "is_featured": False, "order": 0},
        ),
        ContentKind(
            "projects",
            search_fields=("title", "description", "location"),
            filters=("category", "is_featured"),
            sort_fields=("created_at", "updated_at", "title", "completion_date"),
            slug_source="title",
            defaults={"is_active": True, "is_featured": False, "images": []},
        ),
        ContentKind(
            "blog",
            search_fields=("title", "content", "excerpt"),
            filters=("category", "status"),
            sort_fields=("created_at", "updated_at", "title", "published_at"),
            slug_source="title",
            active_field=None,
            published_only=True,
            owned=True,
            defaults={"status": "draft", "is_featured": False, "tags": []},
        ),
        ContentKind(
            "testimonials",
            search_fields=("client_name", "testimonial_text"),
            filters=("is_featured",),
            sort_fields=("created_at", "updated_at", "rating", "display_order"),
            defaults={"is_active": False, "is_featured": False, "display_order": 0},
        ),
        ContentKind(
            "contacts",
            search_fields=("name", "email", "subject", "message"),
            filters=("status", "priority"),
            sort_fields=("created_at", "updated_at", "status", "priority"),
            active_field=None,
            defaults={
                "status": "new",
                "priority": "medium",
                "is_read": False,
                "source": "website",
            },
        ),
    )
}


def is_staff(user: Optional[User]) -> bool:
    return bool(user and user.role in STAFF_ROLES)


class ContentService:
    """CRUD over the content collections with slugs and public visibility rules."""

    def __init__(self, store, mailer: EmailDispatcher) -> None:
        self.store = store
        self.mailer = mailer

    def kind(self, name: str) -> ContentKind:
        try:
            return KINDS[name]
        except KeyError:
            raise NotFoundError("unknown content type", detail={"kind": name}) from None

    def _visible(self, rules: ContentKind, item: ContentItem, viewer: Optional[User]) -> bool:
        if is_staff(viewer):
            return True
        if rules.active_field and not item.data.get(rules.active_field):
            return False
        if rules.published_only and item.data.get("status") != "published":
            return False
        return True

    def _slug_for(
        self, rules: ContentKind, source: str, *, exclude_id: Optional[int] = None
    ) -> str:
        base = slugify(source, fallback=rules.name)
        return unique_slug(
            base,
            lambda candidate, exclude: self.store.slug_exists(rules.name, candidate, exclude_id=exclude),
            exclude_id=exclude_id,
        )

    def list(
        self,
        kind: str,
        query: ListQuery,
        *,
        viewer: Optional[User] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Page[ContentItem]:
        rules = self.kind(kind)
        query.limit = max(1, min(query.limit, MAX_PAGE_SIZE))
        query.page = max(1, query.page)
        if query.sort_by not in rules.sort_fields:
            query.sort_by = "created_at"
        for name, value in (filters or {}).items():
            if value is None:
                continue
            if name in rules.filters or (name == rules.active_field and is_staff(viewer)):
                query.filters[name] = value
        if not is_staff(viewer):
            if rules.active_field:
                query.filters[rules.active_field] = True
            if rules.published_only:
                query.filters["status"] = "published"
        return self.store.list_content(rules.name, query, search_fields=rules.search_fields)

    def get(self, kind: str, ref: str | int, *, viewer: Optional[User] = None) -> ContentItem:
        rules = self.kind(kind)
        item = None
        if isinstance(ref, int) or (str(ref).isascii() and str(ref).isdigit()):
            item = self.store.get_content(rules.name, int(ref))
        elif rules.slug_source:
            item = self.store.get_content_by_slug(rules.name, str(ref))
        if not item or not self._visible(rules, item, viewer):
            raise NotFoundError(f"{rules.name} item not found", detail={"id": str(ref)})
        return item

    def create(
        self, kind: str, data: Dict[str, Any], *, author: Optional[User] = None
    ) -> ContentItem:
        rules = self.kind(kind)
        payload = {**rules.defaults, **{k: v for k, v in data.items() if v is not None}}
        payload.pop("slug", None)
        slug = None
        if rules.slug_source:
            source = data.get("slug") or payload.get(rules.slug_source)
            if not source:
                raise ValidationError(
                    f"{rules.slug_source} is required", detail={"field": rules.slug_source}
                )
            slug = self._slug_for(rules, source)
        if rules.published_only and payload.get("status") == "published":
            payload.setdefault("published_at", utcnow().isoformat())
        try:
            item = self.store.create_content(
                rules.name,
                payload,
                slug=slug,
                author_id=author.id if (author and rules.owned) else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("slug already exists", detail={"field": "slug"}) from exc
        logger.info(
            "content_created",
            kind=rules.name,
            item_id=item.id,
            author_id=author.id if author else None,
        )
        return item

    def update(
        self, kind: str, item_id: int, changes: Dict[str, Any], *, actor: User
    ) -> ContentItem:
        rules = self.kind(kind)
        current = self.store.get_content(rules.name, item_id)
        if not current:
            raise NotFoundError(f"{rules.name} item not found", detail={"id": str(item_id)})
        if rules.owned:
            check_ownership(actor, current.author_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        requested_slug = updates.pop("slug", None)
        slug = None
        if rules.slug_source:
            source = requested_slug
            if source is None and rules.slug_source in updates:
                if updates[rules.slug_source] != current.data.get(rules.slug_source):
                    source = updates[rules.slug_source]
            if source:
                slug = self._slug_for(rules, source, exclude_id=item_id)
        if (
            rules.published_only
            and updates.get("status") == "published"
            and not current.data.get("published_at")
        ):
            updates.setdefault("published_at", utcnow().isoformat())
        try:
            item = self.store.update_content(rules.name, item_id, updates, slug=slug)
        except ConstraintViolation as exc:
            raise ConflictError("slug already exists", detail={"field": "slug"}) from exc
        if not item:
            raise NotFoundError(f"{rules.name} item not found", detail={"id": str(item_id)})
        logger.info("content_updated", kind=rules.name, item_id=item_id, actor_id=actor.id)
        return item

    def delete(self, kind: str, item_id: int, *, actor: User) -> None:
        rules = self.kind(kind)
        current = self.store.get_content(rules.name, item_id)
        if not current:
            raise NotFoundError(f"{rules.name} item not found", detail={"id": str(item_id)})
        if rules.owned:
            check_ownership(actor, current.author_id)
        self.store.delete_content(rules.name, item_id)
        logger.info("content_deleted", kind=rules.name, item_id=item_id, actor_id=actor.id)

    # contacts

    def submit_contact(
        self,
        data: Dict[str, Any],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> ContentItem:
        payload = {
            k: v
            for k, v in data.items()
            if k not in {"status", "priority", "is_read", "notes"}
        }
        item = self.create(
            "contacts", {**payload, "ip_address": ip_address, "user_agent": user_agent}
        )
        self.mailer.submit(self.mailer.service.send_contact_notification, dict(item.data))
        if item.data.get("email"):
            self.mailer.submit(
                self.mailer.service.send_contact_confirmation,
                item.data["email"],
                item.data.get("name") or "",
            )
        return item

    def mark_contact_read(self, item_id: int, *, actor: User) -> ContentItem:
        current = self.store.get_content("contacts", item_id)
        if not current:
            raise NotFoundError("contacts item not found", detail={"id": str(item_id)})
        changes: Dict[str, Any] = {"is_read": True}
        if current.data.get("status") == "new":
            changes["status"] = "read"
        return self.update("contacts", item_id, changes, actor=actor)

    def contact_stats(self) -> Dict[str, Any]:
        by_status = self.store.count_content_by("contacts", "status")
        read_counts = self.store.count_content_by("contacts", "is_read")
        return {
            "total": sum(by_status.values()),
            "unread": read_counts.get("False", 0),
            "by_status": by_status,
        }
