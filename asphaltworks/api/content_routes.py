from typing import Callable, Literal, Optional, Type

from fastapi import APIRouter, Depends, Query, Request
from pydantic.alias_generators import to_snake

from asphaltworks.api.admission import user_rate_limit
from asphaltworks.api.dependencies import (
    client_ip,
    get_staff_user,
    optional_user,
    require_role_or_permission,
)
from asphaltworks.api.routes import ok
from asphaltworks.api.schemas import (
    ApiModel,
    BlogCreate,
    BlogUpdate,
    ContactCreate,
    ContactUpdate,
    Envelope,
    ProjectCreate,
    ProjectUpdate,
    ServiceCreate,
    ServiceUpdate,
    TestimonialCreate,
    TestimonialUpdate,
    content_to_dict,
    page_response,
)
from asphaltworks.service.runtime import get_runtime
from asphaltworks.storage.models import ListQuery, User

CONTENT_CREATE_LIMIT = 30
CONTENT_CREATE_WINDOW_SECONDS = 60 * 60

get_contact_manager = require_role_or_permission(("admin",), "contacts:manage")
_content_create_limit = user_rate_limit(
    "content-create", CONTENT_CREATE_LIMIT, CONTENT_CREATE_WINDOW_SECONDS
)


def _content_query(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("createdAt", alias="sortBy", max_length=50),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    category: Optional[str] = Query(None, max_length=50),
    status: Optional[str] = Query(None, max_length=20),
    priority: Optional[str] = Query(None, max_length=20),
    is_featured: Optional[bool] = Query(None, alias="isFeatured"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
) -> ListQuery:
    query = ListQuery(
        page=page,
        limit=limit,
        search=search or None,
        sort_by=to_snake(sort_by),
        sort_order=sort_order,
    )
    # the service keeps only the filters each kind allows
    query.filters = {
        "category": category,
        "status": status,
        "priority": priority,
        "is_featured": is_featured,
        "is_active": is_active,
    }
    return query


def _list(kind: str, query: ListQuery, viewer: Optional[User]):
    runtime = get_runtime()
    requested, query.filters = query.filters, {}
    page = runtime.content.list(kind, query, viewer=viewer, filters=requested)
    return page_response(page, [content_to_dict(item) for item in page.items])


def build_content_router(
    kind: str,
    create_model: Type[ApiModel],
    update_model: Type[ApiModel],
    *,
    writer: Callable,
    public_create: bool = False,
) -> APIRouter:
    """CRUD routes for one content kind under ``/api/<kind>``."""
    router = APIRouter(prefix=f"/api/{kind}", tags=[kind])
    creator = optional_user if public_create else writer

    @router.get("", response_model=Envelope)
    async def list_items(
        query: ListQuery = Depends(_content_query),
        viewer: Optional[User] = Depends(optional_user),
    ):
        return ok(_list(kind, query, viewer))

    @router.get("/{ref}", response_model=Envelope)
    async def get_item(ref: str, viewer: Optional[User] = Depends(optional_user)):
        runtime = get_runtime()
        return ok(content_to_dict(runtime.content.get(kind, ref, viewer=viewer)))

    @router.post(
        "",
        response_model=Envelope,
        status_code=201,
        dependencies=[Depends(_content_create_limit)],
    )
    async def create_item(body: create_model, author: Optional[User] = Depends(creator)):  # type: ignore[valid-type]
        runtime = get_runtime()
        data = body.model_dump(exclude_unset=True)
        item = runtime.content.create(kind, data, author=author)
        message = "submitted for review" if public_create else "created"
        return ok(content_to_dict(item), message)

    @router.put("/{item_id}", response_model=Envelope)
    async def update_item(
        item_id: int,
        body: update_model,  # type: ignore[valid-type]
        actor: User = Depends(writer),
    ):
        runtime = get_runtime()
        item = runtime.content.update(kind, item_id, body.model_dump(exclude_unset=True), actor=actor)
        return ok(content_to_dict(item), "updated")

    @router.delete("/{item_id}", response_model=Envelope)
    async def delete_item(item_id: int, actor: User = Depends(writer)):
        runtime = get_runtime()
        runtime.content.delete(kind, item_id, actor=actor)
        return ok(message="deleted")

    return router


services_router = build_content_router(
    "services", ServiceCreate, ServiceUpdate, writer=get_staff_user
)
projects_router = build_content_router(
    "projects", ProjectCreate, ProjectUpdate, writer=get_staff_user
)
blog_router = build_content_router(
    "blog", BlogCreate, BlogUpdate, writer=get_staff_user
)
testimonials_router = build_content_router(
    "testimonials",
    TestimonialCreate,
    TestimonialUpdate,
    writer=get_staff_user,
    public_create=True,
)


contacts_router = APIRouter(prefix="/api/contacts", tags=["contacts"])


@contacts_router.post("", response_model=Envelope, status_code=201)
async def submit_contact(body: ContactCreate, request: Request):
    """Public contact form; notifies the site admin and acknowledges the sender."""
    runtime = get_runtime()
    item = runtime.content.submit_contact(
        body.model_dump(exclude_unset=True),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok({"id": item.id}, "message sent, we will get back to you shortly")


@contacts_router.get("", response_model=Envelope)
async def list_contacts(
    query: ListQuery = Depends(_content_query),
    actor: User = Depends(get_contact_manager),
):
    return ok(_list("contacts", query, actor))


@contacts_router.get("/stats", response_model=Envelope)
async def contact_stats(actor: User = Depends(get_contact_manager)):
    runtime = get_runtime()
    stats = runtime.content.contact_stats()
    return ok({"total": stats["total"], "unread": stats["unread"], "byStatus": stats["by_status"]})


@contacts_router.get("/{item_id}", response_model=Envelope)
async def get_contact(item_id: int, actor: User = Depends(get_contact_manager)):
    runtime = get_runtime()
    return ok(content_to_dict(runtime.content.get("contacts", item_id, viewer=actor)))


@contacts_router.put("/{item_id}", response_model=Envelope)
async def update_contact(
    item_id: int, body: ContactUpdate, actor: User = Depends(get_contact_manager)
):
    runtime = get_runtime()
    item = runtime.content.update(
        "contacts", item_id, body.model_dump(exclude_unset=True), actor=actor
    )
    return ok(content_to_dict(item), "updated")


@contacts_router.patch("/{item_id}/read", response_model=Envelope)
async def mark_contact_read(item_id: int, actor: User = Depends(get_contact_manager)):
    runtime = get_runtime()
    return ok(content_to_dict(runtime.content.mark_contact_read(item_id, actor=actor)))


@contacts_router.delete("/{item_id}", response_model=Envelope)
async def delete_contact(item_id: int, actor: User = Depends(get_contact_manager)):
    runtime = get_runtime()
    runtime.content.delete("contacts", item_id, actor=actor)
    return ok(message="deleted")


routers = [
    services_router,
    projects_router,
    blog_router,
    testimonials_router,
    contacts_router,
]
